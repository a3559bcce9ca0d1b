"""Retrieval configuration using Pydantic Settings"""
import json
import logging
from functools import cached_property
from typing import Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from protect_retrieval.schemas.device import DeviceMetadataCollection

logger = logging.getLogger(__name__)

# Resources closed on release: page, context, browser, playwright
RELEASE_CLOSE_STEPS = 4


class Settings(BaseSettings):
    """Retrieval settings loaded from environment variables"""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # File logging only when set

    # Storage
    DOWNLOAD_DIRECTORY: str = "/tmp"
    SCREENSHOT_DIRECTORY: Optional[str] = None  # Diagnostic screenshots disabled when unset

    # Browser
    BROWSER_HEADLESS: bool = True
    # Reuse one browser process across retrievals; each retrieval still gets its own context
    BROWSER_SHARED_PROCESS: bool = False
    BROWSER_VIEWPORT_WIDTH: int = 1920
    BROWSER_VIEWPORT_HEIGHT: int = 1080

    # Stage timeouts (seconds)
    BROWSER_LAUNCH_TIMEOUT_SECONDS: float = 30.0
    NAVIGATION_TIMEOUT_SECONDS: float = 20.0
    LOGIN_TIMEOUT_SECONDS: float = 15.0
    PAGE_READY_TIMEOUT_SECONDS: float = 10.0
    DOWNLOAD_TIMEOUT_SECONDS: float = 100.0
    LISTENER_DRAIN_TIMEOUT_SECONDS: float = 5.0

    # Protect UI click targets for devices without metadata
    DEFAULT_ARCHIVE_BUTTON_X: int = 1205
    DEFAULT_ARCHIVE_BUTTON_Y: int = 240
    # JSON: {"devices": [{"deviceName": ..., "deviceMac": ..., "archiveButtonX": ..., "archiveButtonY": ...}]}
    DEVICE_METADATA: str = ""

    # Read only by SettingsCredentialProvider, never by the retrieval core
    UNIFI_HOSTNAME: str = ""
    UNIFI_USERNAME: str = ""
    UNIFI_PASSWORD: str = ""

    @field_validator(
        'BROWSER_LAUNCH_TIMEOUT_SECONDS',
        'NAVIGATION_TIMEOUT_SECONDS',
        'LOGIN_TIMEOUT_SECONDS',
        'PAGE_READY_TIMEOUT_SECONDS',
        'DOWNLOAD_TIMEOUT_SECONDS',
        'LISTENER_DRAIN_TIMEOUT_SECONDS',
        mode='after'
    )
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        """Every stage wait must be bounded."""
        if v <= 0:
            raise ValueError("Timeouts must be greater than zero")
        return v

    @field_validator('LOG_LEVEL', mode='after')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def viewport(self) -> dict:
        return {"width": self.BROWSER_VIEWPORT_WIDTH, "height": self.BROWSER_VIEWPORT_HEIGHT}

    @property
    def release_budget_seconds(self) -> float:
        """Upper bound for session release: the listener drain plus one slot per closed resource."""
        return self.LISTENER_DRAIN_TIMEOUT_SECONDS * (1 + RELEASE_CLOSE_STEPS)

    @property
    def retrieval_budget_seconds(self) -> float:
        """Upper bound for one retrieval call: every stage timeout plus release."""
        return (
            self.BROWSER_LAUNCH_TIMEOUT_SECONDS
            + self.NAVIGATION_TIMEOUT_SECONDS  # login page
            + self.LOGIN_TIMEOUT_SECONDS
            + self.NAVIGATION_TIMEOUT_SECONDS  # event page
            + self.PAGE_READY_TIMEOUT_SECONDS
            + self.DOWNLOAD_TIMEOUT_SECONDS
            + self.release_budget_seconds
        )

    @cached_property
    def device_metadata(self) -> DeviceMetadataCollection:
        """
        Parse DEVICE_METADATA into a collection.

        An empty or unparseable value yields an empty collection so that
        retrievals fall back to the default click targets.
        """
        if not self.DEVICE_METADATA.strip():
            return DeviceMetadataCollection()
        try:
            return DeviceMetadataCollection.model_validate(json.loads(self.DEVICE_METADATA))
        except (ValueError, ValidationError) as e:
            logger.warning(
                f"Ignoring unparseable DEVICE_METADATA: {type(e).__name__}",
                extra={
                    "event_type": "device_metadata_parse_error",
                    "error_type": type(e).__name__,
                }
            )
            return DeviceMetadataCollection()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
