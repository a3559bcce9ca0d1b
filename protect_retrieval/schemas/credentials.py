"""Pydantic schema for UniFi Protect console credentials"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Usernames keep this many leading characters when masked
USERNAME_VISIBLE_CHARS = 3


def mask_username(username: Optional[str]) -> str:
    """
    Mask a username for logging.

    Usernames longer than 3 characters keep the first 3 characters and
    replace the rest with '*'. Shorter usernames are returned unchanged.
    """
    if not username:
        return ""
    if len(username) <= USERNAME_VISIBLE_CHARS:
        return username
    return username[:USERNAME_VISIBLE_CHARS] + "*" * (len(username) - USERNAME_VISIBLE_CHARS)


def mask_password(password: Optional[str]) -> str:
    """Mask a password entirely, preserving only its length."""
    return "*" * len(password or "")


def credentials_are_valid(username: Optional[str], password: Optional[str]) -> bool:
    """Both username and password must be present and non-empty."""
    return bool(username) and bool(password)


class UnifiCredentials(BaseModel):
    """
    Credentials for a local UniFi Protect console.

    Every field defaults to an empty string; null input is normalized to an
    empty string as well. The password never appears in repr().
    """

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(default="", description="Hostname or IP address of the Protect console")
    username: str = Field(default="", description="Protect login username")
    password: str = Field(default="", repr=False, description="Protect login password")

    @field_validator('hostname', 'username', 'password', mode='before')
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    def is_valid(self) -> bool:
        """Check that the login pair is usable."""
        return credentials_are_valid(self.username, self.password)

    @property
    def base_url(self) -> str:
        """Console base URL; https is assumed when the hostname carries no scheme."""
        host = self.hostname.strip().rstrip("/")
        if not host:
            return ""
        if "://" in host:
            return host
        return f"https://{host}"

    def masked(self) -> Dict[str, str]:
        """Log-safe view of these credentials."""
        return {
            "hostname": self.hostname,
            "username": mask_username(self.username),
            "password": mask_password(self.password),
        }
