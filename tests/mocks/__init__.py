"""
Mock Factories Package

Fake Playwright objects for browser-free tests of the retrieval pipeline.
"""
from tests.mocks.browser_mocks import (
    CONSOLE_HOST,
    CONSOLE_URL,
    DASHBOARD_URL,
    EVENT_URL,
    LOGIN_URL,
    BrowserStack,
    FakeDownload,
    FakePage,
    FakeResponse,
    create_browser_stack,
    create_closed_target_error,
)

__all__ = [
    "CONSOLE_HOST",
    "CONSOLE_URL",
    "DASHBOARD_URL",
    "EVENT_URL",
    "LOGIN_URL",
    "BrowserStack",
    "FakeDownload",
    "FakePage",
    "FakeResponse",
    "create_browser_stack",
    "create_closed_target_error",
]
