"""Error taxonomy for toll notice acquisition."""
from typing import Optional


class TollWatchError(Exception):
    """Base class for all engine errors."""


class InputError(TollWatchError):
    """Malformed plate, jurisdiction or query parameter. Never retried."""


class AuthenticationError(TollWatchError):
    """Caller identity could not be established."""


class PortalError(TollWatchError):
    """Failure while driving the toll portal."""

    kind = "network"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class PortalTransientError(PortalError):
    """Navigation, timeout or blocking problem that may clear up on retry."""


class NavigationFailed(PortalTransientError):
    """Search page shell did not load within its sub-timeout."""


class ResultWaitTimeout(PortalTransientError):
    """Neither a results table nor a no-results message appeared in time."""


class PortalStructureError(PortalError):
    """Page rendered but not in the expected shape."""

    kind = "structure"


class TerminalError(TollWatchError):
    """Search failed after the retry policy was exhausted."""

    def __init__(self, cause: BaseException, attempts: int):
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"Search failed after {attempts} attempt(s): {cause}")

    @property
    def cause_kind(self) -> str:
        """'structure' when the portal layout looks broken, 'network' otherwise."""
        return getattr(self.cause, "kind", "network")

    @property
    def user_message(self) -> str:
        if self.cause_kind == "structure":
            return (
                "The toll notice website returned a page we could not read. "
                "Its layout may have changed; please report this issue."
            )
        return (
            "The toll notice website is not responding right now. "
            "Please try again in a few minutes."
        )


class PersistenceUnavailable(TollWatchError):
    """Destination table does not exist (environment not migrated)."""


class PersistenceRowError(TollWatchError):
    """A single row could not be written."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class NoticeNotFound(TollWatchError):
    """No toll notice with that id for this tenant."""
