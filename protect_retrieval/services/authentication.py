"""
Protect console login.

Drives the console's login form in a ScopedSession's page. One attempt per
call; the caller decides whether a failed login is worth another try.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from protect_retrieval.core.config import Settings, settings as default_settings
from protect_retrieval.core.exceptions import AuthenticationError
from protect_retrieval.schemas.credentials import UnifiCredentials
from protect_retrieval.services.browser_session import ScopedSession
from protect_retrieval.services.diagnostics import STAGE_LOGIN, ScreenshotRecorder

logger = logging.getLogger(__name__)

# UniFi OS login form (field names differ between console firmware versions)
USERNAME_SELECTOR = (
    "input[name='username'], input[type='email'], "
    "input[id*='username'], input[id*='email']"
)
PASSWORD_SELECTOR = "input[name='password'], input[type='password'], input[id*='password']"
SUBMIT_SELECTOR = "button[type='submit']"
LOGIN_ERROR_SELECTOR = "[role='alert'], [data-testid*='error']"

LOGIN_ROUTE = "/login"


def is_login_route(url: str) -> bool:
    return LOGIN_ROUTE in urlparse(url).path


def _left_login_route(url: str) -> bool:
    return not is_login_route(url)


@dataclass
class AuthenticatedSession:
    """A ScopedSession whose page holds a logged-in console cookie"""
    session: ScopedSession
    hostname: str
    base_url: str
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def page(self) -> Any:
        return self.session.page


class AuthenticationFlow:
    """Logs a browser session into the Protect console."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        screenshots: Optional[ScreenshotRecorder] = None,
    ):
        self._settings = config or default_settings
        self._screenshots = screenshots or ScreenshotRecorder(self._settings)

    async def login(
        self,
        session: ScopedSession,
        credentials: UnifiCredentials,
        event_id: str = "session",
    ) -> AuthenticatedSession:
        """
        Log in with the given credentials.

        Args:
            session: Freshly acquired browser session
            credentials: Console hostname, username and password
            event_id: Label used for diagnostic screenshots

        Returns:
            AuthenticatedSession bound to the same browser session

        Raises:
            AuthenticationError: Invalid credentials, unreachable console,
                missing login form or rejected credentials. Messages never
                contain the username or password.
        """
        if not credentials.hostname:
            raise AuthenticationError("Hostname is required in Unifi credentials")
        if not credentials.is_valid():
            raise AuthenticationError("Username and password are required in Unifi credentials")

        page = session.page
        base_url = credentials.base_url
        nav_timeout = self._settings.NAVIGATION_TIMEOUT_SECONDS
        login_timeout = self._settings.LOGIN_TIMEOUT_SECONDS

        logger.info(
            "Logging in to Protect console",
            extra={
                "event_type": "auth_login_start",
                "session_id": session.session_id,
                **credentials.masked(),
            }
        )

        try:
            await page.goto(base_url, wait_until="networkidle", timeout=nav_timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise AuthenticationError(
                f"Protect console {credentials.hostname} did not respond within {nav_timeout:g}s"
            ) from e
        except PlaywrightError as e:
            raise AuthenticationError(
                f"Protect console {credentials.hostname} is unreachable"
            ) from e

        await self._screenshots.capture(page, event_id, STAGE_LOGIN)

        username_field = await self._find_field(page, USERNAME_SELECTOR)
        password_field = await self._find_field(page, PASSWORD_SELECTOR)

        if username_field is None or password_field is None:
            if not is_login_route(page.url) and urlparse(page.url).netloc:
                logger.info(
                    "Console session already authenticated",
                    extra={
                        "event_type": "auth_login_skipped",
                        "session_id": session.session_id,
                    }
                )
                return AuthenticatedSession(session=session, hostname=credentials.hostname, base_url=base_url)
            raise AuthenticationError(f"Login form not found on Protect console {credentials.hostname}")

        try:
            await username_field.fill(credentials.username)
            await password_field.fill(credentials.password)

            submit = await page.query_selector(SUBMIT_SELECTOR)
            if submit is not None:
                await submit.click()
            else:
                await password_field.press("Enter")
        except PlaywrightError as e:
            raise AuthenticationError("Login form could not be submitted") from e

        await self._await_login_result(page, login_timeout)

        logger.info(
            "Logged in to Protect console",
            extra={
                "event_type": "auth_login_success",
                "session_id": session.session_id,
                "hostname": credentials.hostname,
            }
        )
        return AuthenticatedSession(session=session, hostname=credentials.hostname, base_url=base_url)

    async def _find_field(self, page: Any, selector: str) -> Any:
        try:
            return await page.wait_for_selector(
                selector,
                state="visible",
                timeout=self._settings.PAGE_READY_TIMEOUT_SECONDS * 1000,
            )
        except PlaywrightTimeoutError:
            return None

    async def _await_login_result(self, page: Any, timeout: float) -> None:
        """
        Wait until the page leaves the login form or shows an error banner.

        Raises:
            AuthenticationError: Banner shown, timeout, or page failure
        """
        left_login = asyncio.ensure_future(self._left_login_form(page, timeout))
        banner = asyncio.ensure_future(
            page.wait_for_selector(LOGIN_ERROR_SELECTOR, state="visible", timeout=timeout * 1000)
        )

        try:
            pending = {left_login, banner}
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if left_login in done:
                    break
                if banner in done and banner.exception() is None:
                    break
        finally:
            for task in (left_login, banner):
                if not task.done():
                    task.cancel()
            await asyncio.gather(left_login, banner, return_exceptions=True)

        if left_login.done() and not left_login.cancelled() and left_login.exception() is None:
            return

        if banner.done() and not banner.cancelled() and banner.exception() is None:
            logger.warning(
                "Protect console showed a login error",
                extra={"event_type": "auth_login_rejected", "reason": "error_banner"}
            )
            raise AuthenticationError("Protect console rejected the supplied credentials")

        error = left_login.exception()
        if isinstance(error, PlaywrightTimeoutError):
            logger.warning(
                "Protect console did not leave the login page",
                extra={"event_type": "auth_login_rejected", "reason": "timeout", "timeout_seconds": timeout}
            )
            raise AuthenticationError(
                f"Protect console rejected the supplied credentials (still on login page after {timeout:g}s)"
            ) from error
        raise AuthenticationError("Login did not complete") from error

    @staticmethod
    async def _left_login_form(page: Any, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        await page.wait_for_url(_left_login_route, timeout=timeout * 1000)
        # Consoles that serve the form outside /login are only logged in once it is gone
        remaining = max(deadline - loop.time(), 0.001)
        await page.wait_for_selector(PASSWORD_SELECTOR, state="hidden", timeout=remaining * 1000)
