"""Tests for RetrievalOrchestrator

Covers the full pipeline against the fake browser stack, the exactly-once
release guarantee on every exit path, and error classification.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from protect_retrieval.core.exceptions import (
    AuthenticationError,
    ResourceNotFoundError,
    RetrievalErrorKind,
    RetrievalTimeoutError,
    SessionLaunchError,
    VideoRetrievalError,
)
from protect_retrieval.core.logging_config import get_retrieval_id
from protect_retrieval.schemas.retrieval import RetrievalRequest, VideoArtifact
from protect_retrieval.services.authentication import AuthenticationFlow
from protect_retrieval.services.browser_session import BrowserSessionManager
from protect_retrieval.services.credential_provider import (
    CachingCredentialProvider,
    StaticCredentialProvider,
)
from protect_retrieval.services.retrieval_orchestrator import (
    RetrievalOrchestrator,
    RetrievalState,
    classify_error,
    get_retrieval_orchestrator,
    reset_retrieval_orchestrator,
    scrub_message,
)
from protect_retrieval.services.video_locator import VideoLocator
from tests.conftest import make_credentials, make_settings
from tests.mocks import EVENT_URL, create_browser_stack, create_closed_target_error


def _mock_session():
    session = MagicMock()
    session.release = AsyncMock()
    return session


def _signed_url_artifact():
    return VideoArtifact(source="signed_url", url=f"{EVENT_URL}/export")


def _mocked_orchestrator(settings, session=None, login=None, locate=None, acquire=None):
    """Orchestrator whose collaborators are mocks."""
    manager = MagicMock()
    manager.acquire = acquire or AsyncMock(return_value=session or _mock_session())
    authentication = MagicMock()
    authentication.login = login or AsyncMock(side_effect=lambda s, c, **kw: MagicMock(session=s))
    locator = MagicMock()
    locator.locate = locate or AsyncMock(return_value=_signed_url_artifact())
    orchestrator = RetrievalOrchestrator(
        settings,
        session_manager=manager,
        authentication=authentication,
        locator=locator,
    )
    return orchestrator, manager, authentication, locator


class TestEndToEnd:
    """Full pipeline against the fake browser stack"""

    @pytest.mark.asyncio
    async def test_successful_retrieval(self, orchestrator, browser_stack, credentials):
        outcome = await orchestrator.retrieve_video(EVENT_URL, "Front Door", credentials)

        assert outcome.ok is True
        assert outcome.error is None
        assert outcome.event_id == "65f1c0de0123abcd"
        assert outcome.artifact.source == "download"
        assert outcome.artifact.file_path.exists()

        assert browser_stack.page.closed is True
        assert browser_stack.playwright.stopped is True
        assert browser_stack.page.listener_total() == 0

        attempt = orchestrator.last_attempt
        assert attempt.history == [
            RetrievalState.IDLE,
            RetrievalState.SESSION_ACQUIRED,
            RetrievalState.AUTHENTICATING,
            RetrievalState.LOCATING,
            RetrievalState.SUCCEEDED,
            RetrievalState.RELEASED,
        ]
        assert attempt.duration_ms is not None

    @pytest.mark.asyncio
    async def test_listeners_removed_before_page_close(self, orchestrator, browser_stack, credentials):
        await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        journal = browser_stack.journal
        last_off = max(i for i, entry in enumerate(journal) if entry[0] == "off")
        first_close = min(i for i, entry in enumerate(journal) if entry[0] == "close")
        assert last_off < first_close

    @pytest.mark.asyncio
    async def test_rejected_login_releases_session(self, orchestrator, browser_stack, credentials):
        browser_stack.page.accept_login = False

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        error = exc_info.value
        assert error.kind == RetrievalErrorKind.AUTHENTICATION
        assert error.stage == "authentication"
        assert credentials.password not in error.message
        assert browser_stack.playwright.stopped is True

    @pytest.mark.asyncio
    async def test_provider_credentials(self, orchestrator, credentials):
        provider = CachingCredentialProvider(StaticCredentialProvider(credentials))

        outcome = await orchestrator.retrieve_video(EVENT_URL, "", provider)

        assert outcome.ok is True


class TestReleaseGuarantee:
    """The session is released exactly once whatever fails"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage,error,kind", [
        ("authentication", AuthenticationError("rejected"), RetrievalErrorKind.AUTHENTICATION),
        ("locate", ResourceNotFoundError("expired"), RetrievalErrorKind.RESOURCE_NOT_FOUND),
        ("locate", RetrievalTimeoutError("slow"), RetrievalErrorKind.TIMEOUT),
        ("locate", RuntimeError("boom"), RetrievalErrorKind.UNEXPECTED),
    ])
    async def test_release_once_per_failing_stage(self, test_settings, credentials, stage, error, kind):
        session = _mock_session()
        failing = AsyncMock(side_effect=error)
        if stage == "authentication":
            orchestrator, *_ = _mocked_orchestrator(test_settings, session=session, login=failing)
        else:
            orchestrator, *_ = _mocked_orchestrator(test_settings, session=session, locate=failing)

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert exc_info.value.kind == kind
        assert exc_info.value.stage == stage
        assert exc_info.value.cause is error
        session.release.assert_awaited_once()
        assert orchestrator.last_attempt.history[-2:] == [RetrievalState.FAILED, RetrievalState.RELEASED]

    @pytest.mark.asyncio
    async def test_release_once_on_success(self, test_settings, credentials):
        session = _mock_session()
        orchestrator, *_ = _mocked_orchestrator(test_settings, session=session)

        outcome = await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert outcome.ok is True
        session.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_launch_failure_has_nothing_to_release(self, test_settings, credentials):
        orchestrator, _, authentication, _ = _mocked_orchestrator(
            test_settings,
            acquire=AsyncMock(side_effect=SessionLaunchError("Browser launch failed: no chromium")),
        )

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert exc_info.value.kind == RetrievalErrorKind.SESSION
        assert exc_info.value.stage == "session"
        authentication.login.assert_not_awaited()
        assert orchestrator.last_attempt.history == [
            RetrievalState.IDLE,
            RetrievalState.FAILED,
            RetrievalState.RELEASED,
        ]

    @pytest.mark.asyncio
    async def test_sequential_failures_never_mention_disposed(self, test_settings, credentials):
        """Repeated failing calls each get a fresh session and a clean message"""
        sessions = [_mock_session() for _ in range(3)]
        orchestrator, *_ = _mocked_orchestrator(
            test_settings,
            acquire=AsyncMock(side_effect=sessions),
            login=AsyncMock(side_effect=PlaywrightError("Cannot access a disposed object.")),
        )

        for _ in range(3):
            with pytest.raises(VideoRetrievalError) as exc_info:
                await orchestrator.retrieve_video(EVENT_URL, "", credentials)
            assert "disposed" not in exc_info.value.message.lower()
            assert "disposed" not in str(exc_info.value).lower()
            assert exc_info.value.kind == RetrievalErrorKind.SESSION

        for session in sessions:
            session.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_target_error_reworded(self, test_settings, credentials):
        orchestrator, *_ = _mocked_orchestrator(
            test_settings,
            locate=AsyncMock(side_effect=create_closed_target_error()),
        )

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert "browser session closed unexpectedly" in exc_info.value.message
        assert "Target page" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_caller_cancellation_still_releases(self, test_settings, credentials):
        session = _mock_session()
        entered = asyncio.Event()

        async def hanging_login(*args, **kwargs):
            entered.set()
            await asyncio.sleep(60)

        orchestrator, *_ = _mocked_orchestrator(
            test_settings, session=session, login=AsyncMock(side_effect=hanging_login)
        )

        task = asyncio.create_task(orchestrator.retrieve_video(EVENT_URL, "", credentials))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        session.release.assert_awaited_once()
        assert orchestrator.last_attempt.state == RetrievalState.RELEASED

    @pytest.mark.asyncio
    async def test_budget_exceeded_is_timeout(self, tmp_path, credentials):
        settings = make_settings(
            tmp_path,
            BROWSER_LAUNCH_TIMEOUT_SECONDS=0.02,
            NAVIGATION_TIMEOUT_SECONDS=0.02,
            LOGIN_TIMEOUT_SECONDS=0.02,
            PAGE_READY_TIMEOUT_SECONDS=0.02,
            DOWNLOAD_TIMEOUT_SECONDS=0.02,
            LISTENER_DRAIN_TIMEOUT_SECONDS=0.02,
        )
        session = _mock_session()

        async def hanging_locate(*args, **kwargs):
            await asyncio.sleep(60)

        orchestrator, *_ = _mocked_orchestrator(
            settings, session=session, locate=AsyncMock(side_effect=hanging_locate)
        )

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert exc_info.value.kind == RetrievalErrorKind.TIMEOUT
        assert exc_info.value.stage == "locate"
        assert "budget" in exc_info.value.message
        session.release.assert_awaited_once()


class TestRealSessionLifecycle:
    """Orchestrator over real session, login and locator against fresh fake stacks"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("unreachable,kind", [
        ("console", RetrievalErrorKind.AUTHENTICATION),
        ("event", RetrievalErrorKind.RESOURCE_NOT_FOUND),
    ])
    async def test_three_unreachable_calls_never_mention_disposed(
        self, test_settings, clip_storage, credentials, unreachable, kind
    ):
        stacks = [create_browser_stack() for _ in range(3)]
        for stack in stacks:
            error = PlaywrightError(f"net::ERR_CONNECTION_REFUSED at {EVENT_URL}")
            if unreachable == "console":
                stack.page.goto_error = error
            else:
                stack.page.goto_errors[EVENT_URL] = error
        starts = iter(stacks)
        manager = BrowserSessionManager(test_settings, playwright_factory=lambda: next(starts).factory())
        orchestrator = RetrievalOrchestrator(
            test_settings,
            session_manager=manager,
            authentication=AuthenticationFlow(test_settings),
            locator=VideoLocator(test_settings, storage=clip_storage, click_settle_seconds=0),
        )

        for stack in stacks:
            with pytest.raises(VideoRetrievalError) as exc_info:
                await orchestrator.retrieve_video(EVENT_URL, "Front Door", credentials)

            assert exc_info.value.kind == kind
            assert "disposed" not in str(exc_info.value).lower()
            assert stack.page.listener_total() == 0
            assert stack.page.closed is True
            assert stack.playwright.stopped is True

        assert manager.acquired_count == 3
        assert manager.released_count == 3
        assert manager.active_sessions == 0

    @pytest.mark.asyncio
    async def test_hung_teardown_stays_within_budget(self, tmp_path, credentials):
        """Stage timeout plus a release where every close hangs fits the budget"""
        settings = make_settings(
            tmp_path,
            BROWSER_LAUNCH_TIMEOUT_SECONDS=0.05,
            NAVIGATION_TIMEOUT_SECONDS=0.05,
            LOGIN_TIMEOUT_SECONDS=0.05,
            PAGE_READY_TIMEOUT_SECONDS=0.05,
            DOWNLOAD_TIMEOUT_SECONDS=0.05,
            LISTENER_DRAIN_TIMEOUT_SECONDS=0.1,
        )
        stack = create_browser_stack()
        for resource in (stack.page, stack.context, stack.browser):
            resource.close_delay = 60
        stack.playwright.stop_delay = 60
        manager = BrowserSessionManager(settings, playwright_factory=stack.factory)

        async def hanging_locate(*args, **kwargs):
            await asyncio.sleep(60)

        locator = MagicMock()
        locator.locate = AsyncMock(side_effect=hanging_locate)
        orchestrator = RetrievalOrchestrator(
            settings,
            session_manager=manager,
            authentication=AuthenticationFlow(settings),
            locator=locator,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)
        elapsed = loop.time() - started

        assert exc_info.value.kind == RetrievalErrorKind.TIMEOUT
        assert elapsed <= settings.retrieval_budget_seconds
        assert manager.released_count == 1


class TestCredentials:
    """Credential resolution happens before any browser work"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"username": ""},
        {"password": ""},
        {"hostname": ""},
    ])
    async def test_incomplete_credentials_skip_browser(self, test_settings, overrides):
        orchestrator, manager, _, _ = _mocked_orchestrator(test_settings)

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", make_credentials(**overrides))

        assert exc_info.value.kind == RetrievalErrorKind.AUTHENTICATION
        assert exc_info.value.stage == "credentials"
        manager.acquire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_is_authentication_kind(self, test_settings):
        orchestrator, manager, _, _ = _mocked_orchestrator(test_settings)
        provider = CachingCredentialProvider(StaticCredentialProvider(make_credentials(password="")))

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", provider)

        assert exc_info.value.kind == RetrievalErrorKind.AUTHENTICATION
        assert "Password required" in exc_info.value.message
        manager.acquire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_exception_is_authentication_kind(self, test_settings):
        """Any error raised by a provider, not just CredentialProviderError"""
        orchestrator, manager, _, _ = _mocked_orchestrator(test_settings)
        provider = MagicMock()
        provider.get_credentials = AsyncMock(side_effect=RuntimeError("secrets backend unreachable"))

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", provider)

        assert exc_info.value.kind == RetrievalErrorKind.AUTHENTICATION
        assert exc_info.value.stage == "credentials"
        assert "secrets backend unreachable" in exc_info.value.message
        assert isinstance(exc_info.value.cause.__cause__, RuntimeError)
        manager.acquire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_returning_wrong_type_is_authentication_kind(self, test_settings):
        orchestrator, manager, _, _ = _mocked_orchestrator(test_settings)
        provider = MagicMock()
        provider.get_credentials = AsyncMock(return_value={"username": "admin"})

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", provider)

        assert exc_info.value.kind == RetrievalErrorKind.AUTHENTICATION
        manager.acquire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_password_masked_in_unexpected_errors(self, test_settings, credentials):
        orchestrator, *_ = _mocked_orchestrator(
            test_settings,
            locate=AsyncMock(side_effect=RuntimeError(f"bad form value {credentials.password}")),
        )

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert credentials.password not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_event_link(self, test_settings, credentials):
        orchestrator, manager, _, _ = _mocked_orchestrator(test_settings)

        with pytest.raises(VideoRetrievalError) as exc_info:
            await orchestrator.retrieve_video("not-a-url", "", credentials)

        assert exc_info.value.stage == "request"
        manager.acquire.assert_not_awaited()


class TestOutcomeVariants:
    @pytest.mark.asyncio
    async def test_retrieve_outcome_returns_failure(self, test_settings, credentials):
        orchestrator, *_ = _mocked_orchestrator(
            test_settings,
            locate=AsyncMock(side_effect=ResourceNotFoundError("Event expired")),
        )
        request = RetrievalRequest(event_local_link=EVENT_URL, credentials=credentials)

        outcome = await orchestrator.retrieve_outcome(request)

        assert outcome.ok is False
        assert outcome.artifact is None
        assert outcome.error.kind == RetrievalErrorKind.RESOURCE_NOT_FOUND
        assert outcome.error.stage == "locate"
        assert outcome.event_id == "65f1c0de0123abcd"

    @pytest.mark.asyncio
    async def test_retrieve_outcome_returns_success(self, test_settings, credentials):
        orchestrator, *_ = _mocked_orchestrator(test_settings)
        request = RetrievalRequest(event_local_link=EVENT_URL, credentials=credentials)

        outcome = await orchestrator.retrieve_outcome(request)

        assert outcome.ok is True
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_retrieval_id_scoped_to_call(self, test_settings, credentials):
        seen = []

        async def locate(*args, **kwargs):
            seen.append(get_retrieval_id())
            return _signed_url_artifact()

        orchestrator, *_ = _mocked_orchestrator(test_settings, locate=AsyncMock(side_effect=locate))

        await orchestrator.retrieve_video(EVENT_URL, "", credentials)

        assert seen[0] == orchestrator.last_attempt.retrieval_id
        assert get_retrieval_id() is None


class TestClassifyError:
    """Tests for classify_error and scrub_message"""

    def test_video_retrieval_error_passthrough(self):
        error = VideoRetrievalError("x", kind=RetrievalErrorKind.TIMEOUT, stage="locate")
        assert classify_error(error, "session") is error

    def test_playwright_timeout(self):
        result = classify_error(PlaywrightTimeoutError("Timeout 30000ms exceeded."), "locate")
        assert result.kind == RetrievalErrorKind.TIMEOUT

    def test_builtin_timeout_mentions_budget(self):
        result = classify_error(TimeoutError(), "authentication", budget_seconds=42.0)
        assert result.kind == RetrievalErrorKind.TIMEOUT
        assert "42s budget" in result.message

    def test_message_names_stage(self):
        result = classify_error(ResourceNotFoundError("Event gone"), "locate")
        assert result.message == "Video retrieval failed during locate: Event gone"

    def test_scrub_masks_credentials(self):
        creds = make_credentials(username="protect-admin", password="hunter22")
        text = scrub_message("user protect-admin pass hunter22", creds)
        assert "hunter22" not in text
        assert "protect-admin" not in text
        assert "pro**********" in text

    def test_scrub_rewords_disposed(self):
        assert "disposed" not in scrub_message("Object has been DISPOSED").lower()


class TestSingleton:
    def test_get_returns_same_instance(self):
        reset_retrieval_orchestrator()
        try:
            assert get_retrieval_orchestrator() is get_retrieval_orchestrator()
        finally:
            reset_retrieval_orchestrator()
