"""Pydantic schemas for credentials, device metadata and retrieval results"""

from protect_retrieval.schemas.credentials import (
    UnifiCredentials,
    credentials_are_valid,
    mask_password,
    mask_username,
)
from protect_retrieval.schemas.device import (
    ClickTargets,
    DeviceMetadata,
    DeviceMetadataCollection,
)
from protect_retrieval.schemas.retrieval import (
    RetrievalFailure,
    RetrievalOutcome,
    RetrievalRequest,
    VideoArtifact,
)

__all__ = [
    "UnifiCredentials",
    "credentials_are_valid",
    "mask_password",
    "mask_username",
    "ClickTargets",
    "DeviceMetadata",
    "DeviceMetadataCollection",
    "RetrievalFailure",
    "RetrievalOutcome",
    "RetrievalRequest",
    "VideoArtifact",
]
