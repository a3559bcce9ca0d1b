"""Pydantic schemas for per-device Protect UI metadata"""
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

# Download button position relative to the archive button in the event viewer
DOWNLOAD_BUTTON_OFFSET_X = -179
DOWNLOAD_BUTTON_OFFSET_Y = 18


class DeviceMetadata(BaseModel):
    """Name/MAC mapping and archive button coordinates for one camera"""

    model_config = ConfigDict(populate_by_name=True)

    device_name: str = Field(..., alias="deviceName", description="Human-readable device name")
    device_mac: str = Field(..., alias="deviceMac", description="Device MAC address")
    archive_button_x: int = Field(..., alias="archiveButtonX", ge=0)
    archive_button_y: int = Field(..., alias="archiveButtonY", ge=0)


class ClickTargets(BaseModel):
    """Viewport coordinates of the archive and download controls"""

    archive_button: Tuple[int, int]
    download_button: Tuple[int, int]

    @classmethod
    def from_archive_button(cls, x: int, y: int) -> "ClickTargets":
        return cls(
            archive_button=(x, y),
            download_button=(x + DOWNLOAD_BUTTON_OFFSET_X, y + DOWNLOAD_BUTTON_OFFSET_Y),
        )


class DeviceMetadataCollection(BaseModel):
    """Collection of device metadata entries loaded from configuration"""

    devices: List[DeviceMetadata] = Field(default_factory=list)

    def find_by_name(self, device_name: Optional[str]) -> Optional[DeviceMetadata]:
        if not device_name:
            return None
        wanted = device_name.casefold()
        return next((d for d in self.devices if d.device_name.casefold() == wanted), None)

    def find_by_mac(self, device_mac: Optional[str]) -> Optional[DeviceMetadata]:
        if not device_mac:
            return None
        wanted = device_mac.casefold()
        return next((d for d in self.devices if d.device_mac.casefold() == wanted), None)

    def get_device_name(self, device_mac: str) -> str:
        """Human-readable name for a MAC, or the MAC itself when unmapped."""
        device = self.find_by_mac(device_mac)
        return device.device_name if device else device_mac

    def get_device_mac(self, device_name: str) -> Optional[str]:
        device = self.find_by_name(device_name)
        return device.device_mac if device else None

    def click_targets_for(
        self,
        device_name: Optional[str],
        default_x: int,
        default_y: int,
    ) -> ClickTargets:
        """
        Resolve archive/download click coordinates for a device.

        Args:
            device_name: Camera name from the event (matched case-insensitively)
            default_x: Archive button X used when the device is not configured
            default_y: Archive button Y used when the device is not configured

        Returns:
            ClickTargets for the archive button and the download button
        """
        device = self.find_by_name(device_name)
        if device is None:
            return ClickTargets.from_archive_button(default_x, default_y)
        return ClickTargets.from_archive_button(device.archive_button_x, device.archive_button_y)
