"""Pytest fixtures and configuration for test suite

This module provides:
1. Factory functions for settings and credentials with test-friendly defaults
2. Fixtures wiring the retrieval services to a fake browser stack

Factory Functions:
    - make_settings(**overrides) -> Settings
    - make_credentials(**overrides) -> UnifiCredentials

No test launches a real browser: services receive a FakePlaywrightFactory
from tests.mocks instead of playwright's async_playwright.
"""
import pytest

from protect_retrieval.core.config import Settings
from protect_retrieval.schemas.credentials import UnifiCredentials
from protect_retrieval.services.authentication import AuthenticationFlow
from protect_retrieval.services.browser_session import BrowserSessionManager
from protect_retrieval.services.clip_storage import ClipStorage
from protect_retrieval.services.diagnostics import ScreenshotRecorder
from protect_retrieval.services.retrieval_orchestrator import RetrievalOrchestrator
from protect_retrieval.services.video_locator import VideoLocator
from tests.mocks import CONSOLE_HOST, create_browser_stack


# =============================================================================
# Factory Functions for Test Objects
# =============================================================================

def make_settings(download_dir=None, **overrides) -> Settings:
    """
    Factory function to create Settings isolated from the environment's .env.

    Timeouts default to small values so failing waits finish quickly.

    Example:
        settings = make_settings(tmp_path, BROWSER_SHARED_PROCESS=True)
    """
    values = {
        "DOWNLOAD_DIRECTORY": str(download_dir) if download_dir else "/tmp",
        "SCREENSHOT_DIRECTORY": None,
        "BROWSER_LAUNCH_TIMEOUT_SECONDS": 2.0,
        "NAVIGATION_TIMEOUT_SECONDS": 2.0,
        "LOGIN_TIMEOUT_SECONDS": 2.0,
        "PAGE_READY_TIMEOUT_SECONDS": 1.0,
        "DOWNLOAD_TIMEOUT_SECONDS": 2.0,
        "LISTENER_DRAIN_TIMEOUT_SECONDS": 0.5,
        "DEVICE_METADATA": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_credentials(
    hostname: str = CONSOLE_HOST,
    username: str = "protect-admin",
    password: str = "s3cret-Passw0rd",
    **overrides
) -> UnifiCredentials:
    """Factory function to create UnifiCredentials for the fake console."""
    return UnifiCredentials(hostname=hostname, username=username, password=password, **overrides)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def test_settings(tmp_path):
    """Settings whose download directory is a per-test temp dir."""
    return make_settings(tmp_path / "downloads")


@pytest.fixture
def credentials():
    return make_credentials()


@pytest.fixture
def browser_stack():
    """Fake browser stack wired for a successful retrieval."""
    return create_browser_stack()


@pytest.fixture
def session_manager(test_settings, browser_stack):
    return BrowserSessionManager(test_settings, playwright_factory=browser_stack.factory)


@pytest.fixture
def clip_storage(test_settings):
    return ClipStorage(test_settings)


@pytest.fixture
def orchestrator(test_settings, session_manager, clip_storage):
    """Orchestrator wired to the fake browser stack."""
    screenshots = ScreenshotRecorder(test_settings)
    return RetrievalOrchestrator(
        test_settings,
        session_manager=session_manager,
        authentication=AuthenticationFlow(test_settings, screenshots=screenshots),
        locator=VideoLocator(
            test_settings,
            storage=clip_storage,
            screenshots=screenshots,
            click_settle_seconds=0,
        ),
    )
