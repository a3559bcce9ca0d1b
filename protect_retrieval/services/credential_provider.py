"""
Credential providers for the Protect console.

The retrieval core never looks credentials up on its own: callers inject a
CredentialProvider (or a ready UnifiCredentials) into each retrieval call.
Secret-store backed providers live outside this package; the providers here
cover static values, environment settings and caching.
"""
import asyncio
import logging
from typing import Optional, Protocol, runtime_checkable

from protect_retrieval.core.config import Settings, settings as default_settings
from protect_retrieval.schemas.credentials import UnifiCredentials

logger = logging.getLogger(__name__)


class CredentialProviderError(Exception):
    """The provider could not supply usable credentials."""
    pass


@runtime_checkable
class CredentialProvider(Protocol):
    """Capability that supplies console credentials."""

    async def get_credentials(self) -> UnifiCredentials:
        ...


class StaticCredentialProvider:
    """Returns the credentials it was constructed with."""

    def __init__(self, credentials: UnifiCredentials):
        self._credentials = credentials

    async def get_credentials(self) -> UnifiCredentials:
        return self._credentials


class SettingsCredentialProvider:
    """Reads UNIFI_HOSTNAME / UNIFI_USERNAME / UNIFI_PASSWORD from Settings."""

    def __init__(self, config: Optional[Settings] = None):
        self._settings = config or default_settings

    async def get_credentials(self) -> UnifiCredentials:
        return UnifiCredentials(
            hostname=self._settings.UNIFI_HOSTNAME,
            username=self._settings.UNIFI_USERNAME,
            password=self._settings.UNIFI_PASSWORD,
        )


class CachingCredentialProvider:
    """
    Caches the first complete credentials returned by another provider.

    Incomplete credentials (missing hostname, username or password) raise
    CredentialProviderError and are never cached, so a later call can pick
    up a corrected secret.
    """

    def __init__(self, inner: CredentialProvider):
        self._inner = inner
        self._cached: Optional[UnifiCredentials] = None
        self._lock = asyncio.Lock()

    async def get_credentials(self) -> UnifiCredentials:
        if self._cached is not None:
            return self._cached

        async with self._lock:
            if self._cached is not None:
                return self._cached

            credentials = await self._inner.get_credentials()

            missing = [
                name for name in ("hostname", "username", "password")
                if not getattr(credentials, name)
            ]
            if missing:
                logger.error(
                    "Credential provider returned incomplete credentials",
                    extra={
                        "event_type": "credentials_incomplete",
                        "missing_fields": missing,
                    }
                )
                raise CredentialProviderError(
                    f"{', '.join(f.capitalize() for f in missing)} required in Unifi credentials"
                )

            self._cached = credentials
            logger.info(
                "Cached Unifi credentials",
                extra={
                    "event_type": "credentials_cached",
                    **credentials.masked(),
                }
            )
            return credentials

    def invalidate(self) -> None:
        """Drop the cached value (e.g. after the secret was rotated)."""
        self._cached = None
