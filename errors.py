"""Error taxonomy shared by the inventory ledger and the summary generator."""

FALLBACK_NOTE = "Fallback AI used (OpenAI quota/billing issue)."


class LibraryError(Exception):
    """Base class for every error raised by the ledger or the generator."""
    pass


class ValidationError(LibraryError, ValueError):
    """Malformed or missing required input."""
    pass


class AuthRequiredError(LibraryError):
    """The action needs an authenticated identity."""
    pass


class PermissionDeniedError(LibraryError):
    """The caller's role is not allowed to perform the action."""
    pass


class NotFoundError(LibraryError, LookupError):
    pass


class OutOfStockError(LibraryError):
    """No copies available; re-fetch the book before trying again."""
    pass


class ConcurrentUpdateError(LibraryError):
    """The book kept changing underneath a guarded update."""
    pass


class ServiceDegraded(LibraryError):
    """External text generation is unavailable in a recoverable way.

    Never reaches callers of the generator: it is turned into the fallback
    payload and ``note`` becomes the advisory note on that payload.
    """

    def __init__(self, message: str, note: str = FALLBACK_NOTE) -> None:
        super().__init__(message)
        self.note = note


class ServiceError(LibraryError):
    """Unexpected failure from an external dependency."""
    pass
