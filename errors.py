"""Exceptions raised by the trip tracker. str(exc) is safe to show to the user."""


class TripTrackerError(Exception):
    """Base exception for all tracker errors."""
    pass


class ValidationError(TripTrackerError):
    """User input is missing or malformed."""
    pass


class PreconditionError(TripTrackerError):
    """Action attempted in the wrong trip state."""
    pass


class RemoteError(TripTrackerError):
    """The remote record or object store failed the request."""
    pass


class RemoteTimeout(RemoteError):
    """A remote call did not complete within the request timeout."""
    pass


class StoreUnavailable(RemoteError):
    """The remote store could not be reached (DNS, refused connection, transport error)."""
    pass


class RecordNotFound(RemoteError):
    """No remote record matched the requested id."""
    pass


class CacheError(TripTrackerError):
    """The local trip cache could not be read or written."""
    pass
