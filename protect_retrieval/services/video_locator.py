"""
Event clip location and download.

Provides functionality to:
- Open an event page on an authenticated console session
- Detect expired/missing events (HTTP 404/410 or a not-found page)
- Trigger the clip download, by download control or by device-specific
  archive/download button coordinates
- Save the clip into the download directory, from the browser download or
  from the export response body when no download arrives

All page listeners are registered through the ScopedSession so that release
removes them before the page closes.
"""
import asyncio
import logging
import re
from typing import Any, Optional, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from protect_retrieval.core.config import Settings, settings as default_settings
from protect_retrieval.core.exceptions import (
    AuthenticationError,
    ResourceNotFoundError,
    RetrievalStageError,
    RetrievalTimeoutError,
    SessionClosedError,
)
from protect_retrieval.schemas.retrieval import VideoArtifact, event_id_from_link
from protect_retrieval.services.authentication import AuthenticatedSession, is_login_route
from protect_retrieval.services.clip_storage import ClipStorage
from protect_retrieval.services.diagnostics import (
    STAGE_FIRST_CLICK,
    STAGE_PAGE_LOAD,
    STAGE_SECOND_CLICK,
    ScreenshotRecorder,
)

logger = logging.getLogger(__name__)

DOWNLOAD_SELECTOR = "button[aria-label*='Download' i], [data-testid*='download' i]"

# Lowercase page text shown by Protect for expired or deleted events
NOT_FOUND_MARKERS = (
    "event not found",
    "event does not exist",
    "no longer available",
    "could not be found",
)

NOT_FOUND_STATUSES = (404, 410)

# Pause between the archive click and the download click while the menu opens
CLICK_SETTLE_SECONDS = 1.0

EXPORT_PATH_MARKER = "/video/export"

_FILENAME_PATTERN = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def is_clip_response(response: Any) -> bool:
    """True for a successful controller response that carries the exported clip."""
    if response.status != 200:
        return False
    headers = response.headers
    content_type = headers.get("content-type", "")
    disposition = headers.get("content-disposition", "")
    if EXPORT_PATH_MARKER in response.url:
        return True
    return content_type.startswith("video/") and "attachment" in disposition


class VideoLocator:
    """Finds and downloads the clip for one event on an authenticated session."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        storage: Optional[ClipStorage] = None,
        screenshots: Optional[ScreenshotRecorder] = None,
        click_settle_seconds: float = CLICK_SETTLE_SECONDS,
    ):
        self._settings = config or default_settings
        self._storage = storage or ClipStorage(self._settings)
        self._screenshots = screenshots or ScreenshotRecorder(self._settings)
        self._click_settle_seconds = click_settle_seconds

    async def locate(
        self,
        authenticated: AuthenticatedSession,
        event_local_link: str,
        device_name: str = "",
    ) -> VideoArtifact:
        """
        Retrieve the clip for an event.

        Args:
            authenticated: Logged-in session
            event_local_link: Event URL on the local console
            device_name: Camera name, used to pick click coordinates

        Returns:
            VideoArtifact for the clip saved in the download directory

        Raises:
            ResourceNotFoundError: Event missing/expired, or the download failed
            AuthenticationError: Console redirected back to the login page
            RetrievalTimeoutError: A page or download wait exceeded its budget
            SessionClosedError: The page closed underneath the navigation
        """
        session = authenticated.session
        page = session.page
        event_id = event_id_from_link(event_local_link)
        loop = asyncio.get_running_loop()
        download_future: asyncio.Future = loop.create_future()
        response_future: asyncio.Future = loop.create_future()
        armed = False

        def on_download(download: Any) -> None:
            logger.info(
                "Clip download started",
                extra={
                    "event_type": "clip_download_started",
                    "event_id": event_id,
                    "suggested_filename": download.suggested_filename,
                }
            )
            if not download_future.done():
                download_future.set_result(download)

        def on_response(response: Any) -> None:
            if not armed or response_future.done():
                return
            if is_clip_response(response):
                response_future.set_result(response)

        session.on("download", on_download)
        session.on("response", on_response)

        await self._open_event_page(page, event_local_link, event_id)

        armed = True
        await self._trigger_download(page, event_id, device_name)

        timeout = self._settings.DOWNLOAD_TIMEOUT_SECONDS
        try:
            async with asyncio.timeout(timeout):
                await asyncio.wait(
                    (download_future, response_future), return_when=asyncio.FIRST_COMPLETED
                )
                # The browser download wins when both arrived
                if not download_future.done():
                    artifact = await self._save_response(response_future.result(), event_id)
                    if artifact is not None:
                        return artifact
                    await download_future
                return await self._save_download(download_future.result(), event_id)
        except TimeoutError as e:
            if isinstance(e, RetrievalStageError):
                raise
            raise RetrievalTimeoutError(
                f"Clip for event {event_id} was not delivered within {timeout:g}s"
            ) from e

    async def _open_event_page(self, page: Any, event_local_link: str, event_id: str) -> None:
        nav_timeout = self._settings.NAVIGATION_TIMEOUT_SECONDS
        try:
            response = await page.goto(
                event_local_link, wait_until="networkidle", timeout=nav_timeout * 1000
            )
        except PlaywrightTimeoutError as e:
            raise RetrievalTimeoutError(
                f"Event page for {event_id} did not load within {nav_timeout:g}s"
            ) from e
        except PlaywrightError as e:
            if page.is_closed():
                raise SessionClosedError("Browser page closed while opening the event page") from e
            raise ResourceNotFoundError(f"Event page for {event_id} is unreachable") from e

        if response is not None and response.status in NOT_FOUND_STATUSES:
            raise ResourceNotFoundError(
                f"Event {event_id} not found on the Protect console (HTTP {response.status})"
            )

        if is_login_route(page.url):
            raise AuthenticationError("Protect console redirected to login while opening the event page")

        ready_timeout = self._settings.PAGE_READY_TIMEOUT_SECONDS
        try:
            await page.wait_for_function(
                "document.readyState === 'complete'", timeout=ready_timeout * 1000
            )
        except PlaywrightTimeoutError as e:
            raise RetrievalTimeoutError(
                f"Event page for {event_id} was not ready within {ready_timeout:g}s"
            ) from e

        await self._screenshots.capture(page, event_id, STAGE_PAGE_LOAD)

        try:
            body_text = (await page.inner_text("body")).casefold()
        except PlaywrightError:
            body_text = ""
        if any(marker in body_text for marker in NOT_FOUND_MARKERS):
            raise ResourceNotFoundError(f"Event {event_id} is no longer available on the Protect console")

    async def _trigger_download(self, page: Any, event_id: str, device_name: str) -> None:
        try:
            control = await page.query_selector(DOWNLOAD_SELECTOR)
            if control is not None:
                await control.click()
                logger.debug(
                    "Clicked download control",
                    extra={"event_type": "clip_download_triggered", "event_id": event_id, "method": "selector"}
                )
                return

            targets = self._settings.device_metadata.click_targets_for(
                device_name,
                self._settings.DEFAULT_ARCHIVE_BUTTON_X,
                self._settings.DEFAULT_ARCHIVE_BUTTON_Y,
            )
            await self._click(page, targets.archive_button)
            await self._screenshots.capture(page, event_id, STAGE_FIRST_CLICK)
            await asyncio.sleep(self._click_settle_seconds)
            await self._click(page, targets.download_button)
            await self._screenshots.capture(page, event_id, STAGE_SECOND_CLICK)
        except PlaywrightTimeoutError as e:
            raise RetrievalTimeoutError(f"Download control for event {event_id} did not respond") from e
        except PlaywrightError as e:
            raise RetrievalStageError(f"Download of event {event_id} could not be triggered") from e

        logger.debug(
            "Clicked archive and download buttons",
            extra={
                "event_type": "clip_download_triggered",
                "event_id": event_id,
                "method": "coordinates",
                "device_name": device_name,
                "archive_button": list(targets.archive_button),
                "download_button": list(targets.download_button),
            }
        )

    @staticmethod
    async def _click(page: Any, point: Tuple[int, int]) -> None:
        x, y = point
        await page.mouse.click(x, y)

    async def _save_download(self, download: Any, event_id: str) -> VideoArtifact:
        path = self._storage.temp_clip_path(event_id)
        try:
            failure = await download.failure()
            if not failure:
                await download.save_as(str(path))
        except PlaywrightError as e:
            self._storage.cleanup_temp_file(path)
            raise ResourceNotFoundError(f"Download of event {event_id} could not be saved") from e

        if failure:
            logger.warning(
                "Clip download failed",
                extra={"event_type": "clip_download_failed", "event_id": event_id, "reason": failure}
            )
            raise ResourceNotFoundError(f"Download of event {event_id} failed: {failure}")

        size = path.stat().st_size if path.exists() else 0
        if size == 0:
            self._storage.cleanup_temp_file(path)
            raise ResourceNotFoundError(f"Download of event {event_id} produced an empty file")

        logger.info(
            "Clip download completed",
            extra={
                "event_type": "clip_download_success",
                "event_id": event_id,
                "file_path": str(path),
                "file_size_bytes": size,
            }
        )
        return VideoArtifact(
            source="download",
            file_path=path,
            filename=download.suggested_filename,
            size_bytes=size,
            content_type="video/mp4",
        )

    async def _save_response(self, response: Any, event_id: str) -> Optional[VideoArtifact]:
        """
        Write an export response body into the download directory.

        The export URL is only valid for the console session, so the clip is
        materialized before the session is released. Returns None when the
        body is unavailable (e.g. the response became a browser download).
        """
        try:
            body = await response.body()
        except PlaywrightError as e:
            logger.info(
                "Export response body unavailable, waiting for browser download",
                extra={"event_type": "clip_export_body_unavailable", "event_id": event_id, "error": str(e)}
            )
            return None
        if not body:
            return None

        path = self._storage.temp_clip_path(event_id)
        path.write_bytes(body)
        headers = response.headers

        logger.info(
            "Clip saved from export response",
            extra={
                "event_type": "clip_download_success",
                "event_id": event_id,
                "file_path": str(path),
                "file_size_bytes": len(body),
                "method": "export_response",
            }
        )
        return VideoArtifact(
            source="download",
            file_path=path,
            url=response.url,
            filename=_disposition_filename(headers.get("content-disposition", "")) or path.name,
            size_bytes=len(body),
            content_type=headers.get("content-type") or "video/mp4",
        )


def _disposition_filename(disposition: str) -> Optional[str]:
    match = _FILENAME_PATTERN.search(disposition)
    return match.group(1) if match else None
