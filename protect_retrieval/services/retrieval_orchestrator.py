"""
RetrievalOrchestrator: one event clip per call, one browser session per call.

Pipeline per call:
    resolve credentials -> acquire session -> log in -> locate clip

Every failure surfaces as a single VideoRetrievalError carrying the failure
kind and the stage that failed. The session is released exactly once on every
path (success, failure, timeout, caller cancellation) and its release
completes before the call returns. The whole call is bounded by
Settings.retrieval_budget_seconds: the stage timeouts plus the release
allowance.

No retries happen here; see protect_retrieval.core.retry for caller policy.
"""
import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import ValidationError

from protect_retrieval.core.config import Settings, settings as default_settings
from protect_retrieval.core.exceptions import (
    AuthenticationError,
    RetrievalErrorKind,
    RetrievalStageError,
    VideoRetrievalError,
)
from protect_retrieval.core.logging_config import clear_retrieval_id, set_retrieval_id
from protect_retrieval.schemas.credentials import UnifiCredentials, mask_password, mask_username
from protect_retrieval.schemas.retrieval import RetrievalOutcome, RetrievalRequest, event_id_from_link
from protect_retrieval.services.authentication import AuthenticationFlow
from protect_retrieval.services.browser_session import (
    BrowserSessionManager,
    ScopedSession,
    release_shielded,
)
from protect_retrieval.services.credential_provider import CredentialProvider, CredentialProviderError
from protect_retrieval.services.video_locator import VideoLocator

logger = logging.getLogger(__name__)

CredentialSource = Union[UnifiCredentials, CredentialProvider]

STAGE_REQUEST = "request"
STAGE_CREDENTIALS = "credentials"
STAGE_SESSION = "session"
STAGE_AUTHENTICATION = "authentication"
STAGE_LOCATE = "locate"

# Playwright wording for operations on a page/context/browser that is gone
_CLOSED_TARGET_PATTERNS = (
    "target page, context or browser has been closed",
    "target closed",
    "browser has been closed",
    "disposed",
)
_DISPOSED_WORD = re.compile("disposed", re.IGNORECASE)


class RetrievalState(str, Enum):
    """Lifecycle of one retrieval call"""
    IDLE = "idle"
    SESSION_ACQUIRED = "session_acquired"
    AUTHENTICATING = "authenticating"
    LOCATING = "locating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RELEASED = "released"


@dataclass
class RetrievalAttempt:
    """State history of one retrieval call"""
    retrieval_id: str
    event_id: str
    device_name: str = ""
    state: RetrievalState = RetrievalState.IDLE
    history: List[RetrievalState] = field(default_factory=lambda: [RetrievalState.IDLE])
    error: Optional[VideoRetrievalError] = None
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    def transition(self, state: RetrievalState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000


def _is_closed_target_message(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in _CLOSED_TARGET_PATTERNS)


def scrub_message(message: str, credentials: Optional[UnifiCredentials] = None) -> str:
    """
    Make an error message safe to surface to callers.

    Credential values are masked and browser teardown wording is replaced.
    """
    text = (message or "").strip().splitlines()[0] if (message or "").strip() else ""
    if credentials is not None:
        if credentials.password:
            text = text.replace(credentials.password, mask_password(credentials.password))
        if len(credentials.username) > 3:
            text = text.replace(credentials.username, mask_username(credentials.username))
    if _is_closed_target_message(text):
        text = "browser session closed unexpectedly"
    return _DISPOSED_WORD.sub("closed", text)


def classify_error(
    error: BaseException,
    stage: str,
    credentials: Optional[UnifiCredentials] = None,
    budget_seconds: Optional[float] = None,
) -> VideoRetrievalError:
    """Map any pipeline exception to a VideoRetrievalError."""
    if isinstance(error, VideoRetrievalError):
        return error

    if isinstance(error, RetrievalStageError):
        kind = error.kind
        detail = scrub_message(str(error), credentials)
    elif isinstance(error, CredentialProviderError):
        kind = RetrievalErrorKind.AUTHENTICATION
        detail = scrub_message(str(error), credentials)
    elif isinstance(error, PlaywrightTimeoutError):
        kind = RetrievalErrorKind.TIMEOUT
        detail = "browser operation timed out"
    elif isinstance(error, PlaywrightError):
        if _is_closed_target_message(str(error)):
            kind = RetrievalErrorKind.SESSION
        else:
            kind = RetrievalErrorKind.UNEXPECTED
        detail = scrub_message(str(error), credentials)
    elif isinstance(error, TimeoutError):
        kind = RetrievalErrorKind.TIMEOUT
        if budget_seconds is not None:
            detail = f"retrieval exceeded its {budget_seconds:g}s budget"
        else:
            detail = "operation timed out"
    else:
        kind = RetrievalErrorKind.UNEXPECTED
        detail = scrub_message(str(error), credentials) or type(error).__name__

    return VideoRetrievalError(
        f"Video retrieval failed during {stage}: {detail or kind.value}",
        kind=kind,
        stage=stage,
        cause=error,
    )


class RetrievalOrchestrator:
    """
    Sequences session acquisition, login and clip location.

    Collaborators are injected for testing; by default they are built from
    the global settings.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        session_manager: Optional[BrowserSessionManager] = None,
        authentication: Optional[AuthenticationFlow] = None,
        locator: Optional[VideoLocator] = None,
    ):
        self._settings = config or default_settings
        self._sessions = session_manager or BrowserSessionManager(self._settings)
        self._authentication = authentication or AuthenticationFlow(self._settings)
        self._locator = locator or VideoLocator(self._settings)
        self.last_attempt: Optional[RetrievalAttempt] = None

    async def retrieve_video(
        self,
        event_local_link: str,
        device_name: Optional[str],
        credentials: CredentialSource,
    ) -> RetrievalOutcome:
        """
        Retrieve the clip for one event.

        Args:
            event_local_link: Event URL on the local console
            device_name: Camera name reported by the event
            credentials: UnifiCredentials, or a CredentialProvider resolved
                inside the call

        Returns:
            Successful RetrievalOutcome

        Raises:
            VideoRetrievalError: On any failure
        """
        static = credentials if isinstance(credentials, UnifiCredentials) else UnifiCredentials()
        try:
            request = RetrievalRequest(
                event_local_link=event_local_link,
                device_name=device_name,
                credentials=static,
            )
        except ValidationError as e:
            detail = "; ".join(err["msg"] for err in e.errors())
            raise VideoRetrievalError(
                f"Video retrieval failed during {STAGE_REQUEST}: {detail}",
                kind=RetrievalErrorKind.UNEXPECTED,
                stage=STAGE_REQUEST,
                cause=e,
            ) from e

        provider = None if isinstance(credentials, UnifiCredentials) else credentials
        return await self.retrieve(request, credentials_provider=provider)

    async def retrieve(
        self,
        request: RetrievalRequest,
        credentials_provider: Optional[CredentialProvider] = None,
    ) -> RetrievalOutcome:
        """
        Retrieve the clip described by a request.

        Raises:
            VideoRetrievalError: On any failure
        """
        source: CredentialSource = credentials_provider or request.credentials
        attempt = RetrievalAttempt(
            retrieval_id=str(uuid.uuid4()),
            event_id=request.event_id,
            device_name=request.device_name,
        )
        self.last_attempt = attempt
        token = set_retrieval_id(attempt.retrieval_id)
        try:
            return await self._run(attempt, request, source)
        finally:
            clear_retrieval_id(token)

    async def retrieve_outcome(
        self,
        request: RetrievalRequest,
        credentials_provider: Optional[CredentialProvider] = None,
    ) -> RetrievalOutcome:
        """Like retrieve(), but failures are returned as RetrievalOutcome.error."""
        try:
            return await self.retrieve(request, credentials_provider=credentials_provider)
        except VideoRetrievalError as e:
            return RetrievalOutcome.failure(e, event_id=request.event_id)

    async def _run(
        self,
        attempt: RetrievalAttempt,
        request: RetrievalRequest,
        source: CredentialSource,
    ) -> RetrievalOutcome:
        budget = self._settings.retrieval_budget_seconds
        # Release runs after the stages and has its own share of the budget
        stage_budget = budget - self._settings.release_budget_seconds
        session: Optional[ScopedSession] = None
        credentials: Optional[UnifiCredentials] = None
        stage = STAGE_CREDENTIALS

        logger.info(
            "Video retrieval started",
            extra={
                "event_type": "retrieval_start",
                "event_id": attempt.event_id,
                "device_name": attempt.device_name,
                "budget_seconds": budget,
            }
        )

        try:
            try:
                async with asyncio.timeout(stage_budget):
                    credentials = await self._resolve_credentials(source)

                    stage = STAGE_SESSION
                    session = await self._sessions.acquire()
                    attempt.transition(RetrievalState.SESSION_ACQUIRED)

                    stage = STAGE_AUTHENTICATION
                    attempt.transition(RetrievalState.AUTHENTICATING)
                    authenticated = await self._authentication.login(
                        session, credentials, event_id=attempt.event_id
                    )

                    stage = STAGE_LOCATE
                    attempt.transition(RetrievalState.LOCATING)
                    artifact = await self._locator.locate(
                        authenticated, request.event_local_link, request.device_name
                    )
            except asyncio.CancelledError:
                attempt.transition(RetrievalState.FAILED)
                logger.info(
                    "Video retrieval cancelled",
                    extra={"event_type": "retrieval_cancelled", "event_id": attempt.event_id, "stage": stage}
                )
                raise
            except Exception as e:
                error = classify_error(e, stage, credentials or _credentials_hint(source), budget)
                attempt.error = error
                attempt.transition(RetrievalState.FAILED)
                logger.warning(
                    error.message,
                    extra={
                        "event_type": "retrieval_failed",
                        "event_id": attempt.event_id,
                        "stage": error.stage,
                        "error_kind": error.kind.value,
                        "error_type": type(e).__name__,
                    }
                )
                raise error from e

            attempt.transition(RetrievalState.SUCCEEDED)
            logger.info(
                "Video retrieval succeeded",
                extra={
                    "event_type": "retrieval_success",
                    "event_id": attempt.event_id,
                    "source": artifact.source,
                    "file_size_bytes": artifact.size_bytes,
                }
            )
            return RetrievalOutcome.success(artifact, event_id=attempt.event_id)
        finally:
            if session is not None:
                await release_shielded(session)
            attempt.transition(RetrievalState.RELEASED)
            attempt.finished_at = time.monotonic()

    async def _resolve_credentials(self, source: CredentialSource) -> UnifiCredentials:
        if isinstance(source, UnifiCredentials):
            credentials = source
        else:
            try:
                credentials = await source.get_credentials()
            except CredentialProviderError:
                raise
            except Exception as e:
                raise CredentialProviderError(
                    f"Credential provider failed: {str(e) or type(e).__name__}"
                ) from e
            if not isinstance(credentials, UnifiCredentials):
                raise CredentialProviderError(
                    f"Credential provider returned {type(credentials).__name__}, not UnifiCredentials"
                )

        if not credentials.hostname:
            raise AuthenticationError("Hostname is required in Unifi credentials")
        if not credentials.is_valid():
            raise AuthenticationError("Username and password are required in Unifi credentials")
        return credentials


def _credentials_hint(source: CredentialSource) -> Optional[UnifiCredentials]:
    return source if isinstance(source, UnifiCredentials) else None


# Singleton instance
_orchestrator: Optional[RetrievalOrchestrator] = None


def get_retrieval_orchestrator() -> RetrievalOrchestrator:
    """Get the process-wide RetrievalOrchestrator, creating it on first call."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RetrievalOrchestrator()
    return _orchestrator


def reset_retrieval_orchestrator() -> None:
    """Drop the singleton (useful for testing)."""
    global _orchestrator
    _orchestrator = None
