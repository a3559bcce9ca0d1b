"""Diagnostic screenshots of the Protect UI at each retrieval step"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from protect_retrieval.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Capture points used by the retrieval pipeline
STAGE_LOGIN = "login"
STAGE_PAGE_LOAD = "pageload"
STAGE_FIRST_CLICK = "firstclick"
STAGE_SECOND_CLICK = "secondclick"


class ScreenshotRecorder:
    """
    Saves page screenshots into SCREENSHOT_DIRECTORY.

    Disabled when no directory is configured. A failed capture is logged and
    never interrupts the retrieval.
    """

    def __init__(self, config: Optional[Settings] = None, directory: Optional[str] = None):
        cfg = config or default_settings
        target = directory or cfg.SCREENSHOT_DIRECTORY
        self.directory: Optional[Path] = Path(target) if target else None

    @property
    def enabled(self) -> bool:
        return self.directory is not None

    async def capture(self, page: Any, event_id: str, stage: str) -> Optional[Path]:
        """
        Screenshot the page.

        Returns:
            Path of the saved image, or None when disabled or failed
        """
        if self.directory is None:
            return None

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        path = self.directory / f"{event_id}_{timestamp}_{stage}-screenshot.png"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path))
        except Exception as e:
            logger.warning(
                f"Screenshot '{stage}' failed: {type(e).__name__}",
                extra={
                    "event_type": "screenshot_error",
                    "event_id": event_id,
                    "stage": stage,
                    "error_message": str(e),
                }
            )
            return None

        logger.debug(
            f"Screenshot '{stage}' saved",
            extra={
                "event_type": "screenshot_saved",
                "event_id": event_id,
                "stage": stage,
                "file_path": str(path),
            }
        )
        return path
