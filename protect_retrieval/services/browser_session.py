"""
Browser session lifecycle for Protect video retrieval.

Provides functionality to:
- Launch a headless Chromium (per session, or one shared process with an
  isolated context per session)
- Track every event listener registered on a session's page/context
- Track asynchronous work scheduled by those listeners
- Release a session exactly once: listeners are deregistered in reverse
  registration order, pending callback work is drained or cancelled, and
  only then are the page, context and browser closed

A session never reaches the caller half-initialized: if any launch step
fails, whatever was already allocated is closed before SessionLaunchError
is raised.
"""
import asyncio
import inspect
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Set

from playwright.async_api import async_playwright

from protect_retrieval.core.config import Settings, settings as default_settings
from protect_retrieval.core.exceptions import SessionClosedError, SessionLaunchError

logger = logging.getLogger(__name__)

# Chromium flags for running inside containers/Lambda-style sandboxes against
# a console with a self-signed certificate
CHROMIUM_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--ignore-certificate-errors",
    "--no-first-run",
    "--no-zygote",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-extensions",
    "--disable-default-apps",
    "--disable-background-networking",
)

# Releases that outlived a cancelled caller; kept referenced until they finish
_background_releases: Set[asyncio.Task] = set()


@dataclass
class ListenerHandle:
    """A listener registered through a ScopedSession"""
    target: Any
    event: str
    dispatch: Callable[..., None]
    callback: Callable[..., Any]
    active: bool = True


class ScopedSession:
    """
    One browser page/context owned by exactly one retrieval call.

    Listener callbacks registered through on() are wrapped so that:
    - calls arriving after release began are dropped
    - coroutine results are scheduled as tracked tasks, which release()
      drains (or cancels) before any browser object is closed

    Attributes:
        session_id: Short identifier used in logs
    """

    def __init__(
        self,
        session_id: str,
        page: Any,
        context: Any,
        browser: Any = None,
        playwright: Any = None,
        drain_timeout: float = 5.0,
        on_release: Optional[Callable[["ScopedSession"], None]] = None,
    ):
        self.session_id = session_id
        self._page = page
        self._context = context
        # Only set when this session owns the browser process
        self._browser = browser
        self._playwright = playwright
        self._drain_timeout = drain_timeout
        self._on_release = on_release

        self._listeners: List[ListenerHandle] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._released = False
        self._released_event = asyncio.Event()

    @property
    def page(self) -> Any:
        self._ensure_open()
        return self._page

    @property
    def context(self) -> Any:
        self._ensure_open()
        return self._context

    @property
    def released(self) -> bool:
        return self._released

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def pending_task_count(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def _ensure_open(self) -> None:
        if self._closing:
            raise SessionClosedError(f"Browser session {self.session_id} has already been released")

    def on(self, event: str, callback: Callable[..., Any], target: Any = None) -> ListenerHandle:
        """
        Register an event listener on the page (or another session-owned emitter).

        Args:
            event: Playwright event name ("download", "response", ...)
            callback: Sync function or coroutine function
            target: Emitter to register on; defaults to the page

        Returns:
            Handle that can be passed to off()
        """
        self._ensure_open()
        emitter = target if target is not None else self._page

        def dispatch(*args: Any) -> None:
            if self._closing or not handle.active:
                return
            try:
                result = callback(*args)
            except Exception as e:
                logger.warning(
                    f"Listener for '{event}' raised {type(e).__name__}",
                    extra={
                        "event_type": "browser_listener_error",
                        "session_id": self.session_id,
                        "listener_event": event,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    }
                )
                return
            if inspect.isawaitable(result):
                self.spawn(result)

        handle = ListenerHandle(target=emitter, event=event, dispatch=dispatch, callback=callback)
        emitter.on(event, dispatch)
        self._listeners.append(handle)
        return handle

    def off(self, handle: ListenerHandle) -> None:
        """Deregister a listener before release."""
        if not handle.active:
            return
        handle.active = False
        if handle in self._listeners:
            self._listeners.remove(handle)
        handle.target.remove_listener(handle.event, handle.dispatch)

    def spawn(self, awaitable: Awaitable[Any]) -> Optional[asyncio.Task]:
        """
        Schedule session-bound async work that release() will wait for.

        Returns None (and discards the work) once release has begun.
        """
        if self._closing:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return None
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                f"Session task failed: {type(error).__name__}",
                extra={
                    "event_type": "browser_session_task_error",
                    "session_id": self.session_id,
                    "error_type": type(error).__name__,
                    "error_message": str(error),
                }
            )

    async def release(self) -> None:
        """
        Tear the session down. Safe to call more than once; never raises.

        A concurrent second call waits for the first teardown to finish.
        """
        if self._closing:
            await self._released_event.wait()
            return
        self._closing = True

        try:
            self._deregister_listeners()
            await self._drain_tasks()
            await self._close_resources()
        finally:
            self._released = True
            self._released_event.set()
            if self._on_release is not None:
                self._on_release(self)
            logger.debug(
                "Browser session released",
                extra={
                    "event_type": "browser_session_released",
                    "session_id": self.session_id,
                }
            )

    def _deregister_listeners(self) -> None:
        while self._listeners:
            handle = self._listeners.pop()
            handle.active = False
            try:
                handle.target.remove_listener(handle.event, handle.dispatch)
            except Exception as e:
                logger.warning(
                    f"Could not remove '{handle.event}' listener: {type(e).__name__}",
                    extra={
                        "event_type": "browser_listener_remove_error",
                        "session_id": self.session_id,
                        "listener_event": handle.event,
                        "error_message": str(e),
                    }
                )

    async def _drain_tasks(self) -> None:
        pending = {t for t in self._tasks if not t.done()}
        if not pending:
            return

        _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
        if still_running:
            logger.info(
                f"Cancelling {len(still_running)} listener task(s) before close",
                extra={
                    "event_type": "browser_session_tasks_cancelled",
                    "session_id": self.session_id,
                    "cancelled_count": len(still_running),
                }
            )
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _close_resources(self) -> None:
        steps = [("page", self._page, "close"), ("context", self._context, "close")]
        if self._browser is not None:
            steps.append(("browser", self._browser, "close"))
        if self._playwright is not None:
            steps.append(("playwright", self._playwright, "stop"))

        for name, resource, method in steps:
            if resource is None:
                continue
            try:
                await asyncio.wait_for(getattr(resource, method)(), timeout=self._drain_timeout)
            except Exception as e:
                logger.warning(
                    f"Error closing browser {name}: {type(e).__name__}",
                    extra={
                        "event_type": "browser_session_close_error",
                        "session_id": self.session_id,
                        "resource": name,
                        "error_message": str(e),
                    }
                )


async def release_shielded(session: ScopedSession) -> None:
    """
    Release a session even when the awaiting task is being cancelled.

    If the caller is cancelled mid-release the teardown keeps running in the
    background and the cancellation propagates.
    """
    task = asyncio.ensure_future(session.release())
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        _background_releases.add(task)
        task.add_done_callback(_background_releases.discard)
        raise


class BrowserSessionManager:
    """
    Creates and disposes browser sessions for retrieval calls.

    Each acquire() returns a session with its own context and page. In shared
    process mode the browser process is launched once and reused, and a
    session's release closes only its own context.

    Attributes:
        acquired_count: Sessions handed out so far
        released_count: Sessions fully released so far
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        headless: Optional[bool] = None,
        shared_process: Optional[bool] = None,
        launch_args: Sequence[str] = CHROMIUM_ARGS,
    ):
        self._settings = config or default_settings
        self._playwright_factory = playwright_factory
        self._headless = self._settings.BROWSER_HEADLESS if headless is None else headless
        self._shared = self._settings.BROWSER_SHARED_PROCESS if shared_process is None else shared_process
        self._launch_args = list(launch_args)

        self._shared_playwright: Any = None
        self._shared_browser: Any = None
        self._shared_lock = asyncio.Lock()
        self._active: Set[ScopedSession] = set()

        self.acquired_count = 0
        self.released_count = 0

    @property
    def active_sessions(self) -> int:
        return len(self._active)

    async def acquire(self) -> ScopedSession:
        """
        Launch (or reuse) a browser and open a fresh context and page.

        Returns:
            A fully initialized ScopedSession

        Raises:
            SessionLaunchError: If any launch step fails or exceeds
                BROWSER_LAUNCH_TIMEOUT_SECONDS
        """
        session_id = uuid.uuid4().hex[:12]
        timeout = self._settings.BROWSER_LAUNCH_TIMEOUT_SECONDS

        logger.info(
            "Launching browser session",
            extra={
                "event_type": "browser_session_launch_start",
                "session_id": session_id,
                "headless": self._headless,
                "shared_process": self._shared,
            }
        )

        try:
            async with asyncio.timeout(timeout):
                session = await self._open_session(session_id)
        except TimeoutError as e:
            logger.warning(
                "Browser session launch timed out",
                extra={
                    "event_type": "browser_session_launch_timeout",
                    "session_id": session_id,
                    "timeout_seconds": timeout,
                }
            )
            raise SessionLaunchError(f"Browser session did not start within {timeout:g}s") from e
        except Exception as e:
            detail = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
            logger.error(
                f"Browser session launch failed: {type(e).__name__}",
                extra={
                    "event_type": "browser_session_launch_error",
                    "session_id": session_id,
                    "error_type": type(e).__name__,
                    "error_message": detail,
                }
            )
            raise SessionLaunchError(f"Browser launch failed: {detail}") from e

        self._active.add(session)
        self.acquired_count += 1
        return session

    @asynccontextmanager
    async def session(self) -> AsyncIterator[ScopedSession]:
        """
        Scoped acquisition: the session is released on every exit path.

        Usage:
            async with manager.session() as session:
                await session.page.goto(url)
        """
        scoped = await self.acquire()
        try:
            yield scoped
        finally:
            await release_shielded(scoped)

    async def _open_session(self, session_id: str) -> ScopedSession:
        playwright = browser = context = page = None
        try:
            if self._shared:
                browser = await self._get_shared_browser()
            else:
                playwright = await self._playwright_factory().start()
                browser = await self._launch_browser(playwright)

            context = await browser.new_context(
                viewport=self._settings.viewport,
                accept_downloads=True,
                ignore_https_errors=True,
            )
            page = await context.new_page()
        except BaseException:
            # Covers cancellation from the launch timeout as well
            await self._discard_partial(
                session_id,
                page=page,
                context=context,
                browser=None if self._shared else browser,
                playwright=playwright,
            )
            raise

        return ScopedSession(
            session_id=session_id,
            page=page,
            context=context,
            browser=None if self._shared else browser,
            playwright=playwright,
            drain_timeout=self._settings.LISTENER_DRAIN_TIMEOUT_SECONDS,
            on_release=self._session_released,
        )

    async def _launch_browser(self, playwright: Any) -> Any:
        args = self._launch_args + [
            f"--window-size={self._settings.BROWSER_VIEWPORT_WIDTH},{self._settings.BROWSER_VIEWPORT_HEIGHT}"
        ]
        return await playwright.chromium.launch(headless=self._headless, args=args)

    async def _get_shared_browser(self) -> Any:
        async with self._shared_lock:
            if self._shared_browser is not None and self._shared_browser.is_connected():
                return self._shared_browser

            if self._shared_playwright is None:
                self._shared_playwright = await self._playwright_factory().start()
            try:
                self._shared_browser = await self._launch_browser(self._shared_playwright)
            except BaseException:
                playwright, self._shared_playwright = self._shared_playwright, None
                await self._discard_partial("shared", playwright=playwright)
                raise

            logger.info(
                "Shared browser process launched",
                extra={"event_type": "browser_shared_process_launched"}
            )
            return self._shared_browser

    async def _discard_partial(self, session_id: str, **resources: Any) -> None:
        for name in ("page", "context", "browser", "playwright"):
            resource = resources.get(name)
            if resource is None:
                continue
            closer = resource.stop if name == "playwright" else resource.close
            try:
                await asyncio.wait_for(closer(), timeout=self._settings.LISTENER_DRAIN_TIMEOUT_SECONDS)
            except Exception as e:
                logger.warning(
                    f"Error discarding partially launched {name}: {type(e).__name__}",
                    extra={
                        "event_type": "browser_session_partial_cleanup_error",
                        "session_id": session_id,
                        "resource": name,
                        "error_message": str(e),
                    }
                )

    def _session_released(self, session: ScopedSession) -> None:
        if session in self._active:
            self._active.discard(session)
            self.released_count += 1

    async def aclose(self) -> None:
        """Release any live sessions and stop the shared browser process."""
        for session in list(self._active):
            await session.release()

        async with self._shared_lock:
            browser, self._shared_browser = self._shared_browser, None
            playwright, self._shared_playwright = self._shared_playwright, None
            await self._discard_partial("shared", browser=browser, playwright=playwright)


# Singleton instance
_session_manager: Optional[BrowserSessionManager] = None


def get_browser_session_manager() -> BrowserSessionManager:
    """Get the process-wide BrowserSessionManager, creating it on first call."""
    global _session_manager
    if _session_manager is None:
        _session_manager = BrowserSessionManager()
    return _session_manager


async def reset_browser_session_manager() -> None:
    """Close and drop the singleton (useful for testing and shutdown)."""
    global _session_manager
    if _session_manager is not None:
        await _session_manager.aclose()
    _session_manager = None
