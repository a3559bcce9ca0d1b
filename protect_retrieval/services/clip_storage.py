"""
ClipStorage for downloaded Protect event clips

Provides functionality to:
- Ensure the download directory exists
- Build unique temporary paths for browser downloads
- Remove a temporary clip once the caller has consumed it
- Clean up clips left behind by crashed or abandoned retrievals
"""
import logging
import re
import time
from pathlib import Path
from typing import Optional, Union

from protect_retrieval.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Default age after which leftover clips are removed
MAX_CLIP_AGE_HOURS = 1

TEMP_CLIP_PREFIX = "temp_"
CLIP_SUFFIX = ".mp4"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class ClipStorage:
    """
    Owns the directory browser downloads are saved into.

    Attributes:
        directory: Absolute path of the download directory
    """

    def __init__(self, config: Optional[Settings] = None, directory: Optional[Union[str, Path]] = None):
        cfg = config or default_settings
        self.directory = Path(directory or cfg.DOWNLOAD_DIRECTORY).expanduser().resolve()

    def ensure_directory(self) -> Path:
        """Create the download directory if it doesn't exist."""
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(
                "Created clip download directory",
                extra={
                    "event_type": "clip_dir_created",
                    "path": str(self.directory)
                }
            )
        return self.directory

    def temp_clip_path(self, event_id: str) -> Path:
        """
        Get a unique file path for a clip being downloaded.

        Args:
            event_id: Protect event identifier

        Returns:
            Path of the form <directory>/temp_<event_id>_<ticks>.mp4
        """
        self.ensure_directory()
        safe_id = _UNSAFE_CHARS.sub("_", event_id) or "event"
        # 100ns ticks keep concurrent retrievals of one event apart
        ticks = time.time_ns() // 100
        return self.directory / f"{TEMP_CLIP_PREFIX}{safe_id}_{ticks}{CLIP_SUFFIX}"

    def cleanup_temp_file(self, path: Union[str, Path, None]) -> bool:
        """
        Delete a downloaded clip.

        Returns:
            True if the file was deleted, False if missing or not deletable
        """
        if not path:
            return False
        clip_path = Path(path)

        if not clip_path.exists():
            logger.debug(
                "Clip not found for cleanup",
                extra={
                    "event_type": "clip_cleanup_not_found",
                    "file_path": str(clip_path)
                }
            )
            return False

        try:
            file_size = clip_path.stat().st_size
            clip_path.unlink()
            logger.info(
                "Clip deleted successfully",
                extra={
                    "event_type": "clip_cleanup_success",
                    "file_path": str(clip_path),
                    "file_size_bytes": file_size
                }
            )
            return True
        except OSError as e:
            logger.warning(
                f"Failed to delete clip: {e}",
                extra={
                    "event_type": "clip_cleanup_error",
                    "file_path": str(clip_path),
                    "error_message": str(e)
                }
            )
            return False

    def cleanup_old_clips(self, max_age_hours: float = MAX_CLIP_AGE_HOURS) -> int:
        """
        Delete temporary clips older than max_age_hours.

        Returns:
            Count of deleted files
        """
        if not self.directory.exists():
            return 0

        cutoff_time = time.time() - (max_age_hours * 3600)
        deleted_count = 0

        for clip_path in self.directory.glob(f"{TEMP_CLIP_PREFIX}*{CLIP_SUFFIX}"):
            try:
                mtime = clip_path.stat().st_mtime
                if mtime < cutoff_time:
                    clip_path.unlink()
                    deleted_count += 1
                    logger.info(
                        "Deleted old clip",
                        extra={
                            "event_type": "clip_age_cleanup",
                            "file_path": str(clip_path),
                            "file_age_hours": (time.time() - mtime) / 3600
                        }
                    )
            except OSError as e:
                logger.warning(
                    f"Failed to check/delete clip: {e}",
                    extra={
                        "event_type": "clip_age_cleanup_error",
                        "file_path": str(clip_path),
                        "error_message": str(e)
                    }
                )

        if deleted_count > 0:
            logger.info(
                f"Age-based cleanup completed: deleted {deleted_count} clips",
                extra={
                    "event_type": "clip_age_cleanup_complete",
                    "deleted_count": deleted_count
                }
            )

        return deleted_count
