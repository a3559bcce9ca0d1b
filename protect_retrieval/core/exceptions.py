"""
Retrieval error taxonomy.

Stage errors (SessionLaunchError, AuthenticationError, ResourceNotFoundError,
RetrievalTimeoutError) are raised inside the pipeline. The orchestrator
classifies them and re-raises a single VideoRetrievalError carrying a `kind`
discriminator, the stage that failed and the original cause.
"""
from enum import Enum
from typing import Optional


class RetrievalErrorKind(str, Enum):
    """Failure classes a caller can build a retry policy on"""
    SESSION = "session"
    AUTHENTICATION = "authentication"
    RESOURCE_NOT_FOUND = "resource_not_found"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


class RetrievalStageError(Exception):
    """Base class for errors raised by one pipeline stage."""
    kind: RetrievalErrorKind = RetrievalErrorKind.UNEXPECTED


class SessionLaunchError(RetrievalStageError):
    """The browser process, context or page could not be created."""
    kind = RetrievalErrorKind.SESSION


class SessionClosedError(RetrievalStageError):
    """A session-owned object was requested after release began."""
    kind = RetrievalErrorKind.SESSION


class AuthenticationError(RetrievalStageError):
    """
    Login against the Protect console failed.

    Raised for missing credentials, an unreachable console, a missing login
    form, or credentials the controller rejected.
    """
    kind = RetrievalErrorKind.AUTHENTICATION


class ResourceNotFoundError(RetrievalStageError):
    """The event/device combination has no retrievable clip (expired, wrong device)."""
    kind = RetrievalErrorKind.RESOURCE_NOT_FOUND


class RetrievalTimeoutError(RetrievalStageError, TimeoutError):
    """A page or network wait exceeded its budget."""
    kind = RetrievalErrorKind.TIMEOUT


class VideoRetrievalError(Exception):
    """
    The single error type callers of the orchestrator observe.

    Attributes:
        kind: Classified failure kind
        stage: Pipeline stage that failed ("session", "credentials",
            "authentication", "locate")
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        message: str,
        kind: RetrievalErrorKind = RetrievalErrorKind.UNEXPECTED,
        stage: str = "unknown",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.stage = stage
        self.cause = cause

    def __repr__(self) -> str:
        return f"VideoRetrievalError(kind={self.kind.value!r}, stage={self.stage!r}, message={self.message!r})"
