"""Pydantic schemas for retrieval requests and outcomes"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from protect_retrieval.core.exceptions import RetrievalErrorKind, VideoRetrievalError
from protect_retrieval.schemas.credentials import UnifiCredentials


class RetrievalRequest(BaseModel):
    """One event clip to retrieve. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    event_local_link: str = Field(..., description="Event URL on the local Protect console")
    device_name: str = Field(default="", description="Camera name reported by the event")
    credentials: UnifiCredentials = Field(default_factory=UnifiCredentials)

    @field_validator('event_local_link', mode='after')
    @classmethod
    def validate_event_link(cls, v: str) -> str:
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("event_local_link must be an absolute http(s) URL")
        return v.strip()

    @field_validator('device_name', mode='before')
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @property
    def event_id(self) -> str:
        """Last path segment of the event link (e.g. the Protect event ID)."""
        return event_id_from_link(self.event_local_link)


def event_id_from_link(event_local_link: str) -> str:
    segments = [s for s in urlparse(event_local_link).path.split("/") if s]
    return segments[-1] if segments else "event"


class VideoArtifact(BaseModel):
    """
    Reference to a retrieved clip.

    A "download" artifact points at a file saved in the download directory;
    its url, when set, records the export response the bytes came from. A
    "signed_url" artifact carries a URL fetchable without the console session.
    """

    source: Literal["download", "signed_url"]
    file_path: Optional[Path] = None
    url: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: Optional[int] = Field(None, ge=0)
    content_type: Optional[str] = None
    retrieved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode='after')
    def check_reference(self) -> "VideoArtifact":
        if self.source == "download" and self.file_path is None:
            raise ValueError("download artifacts require file_path")
        if self.source == "signed_url" and not self.url:
            raise ValueError("signed_url artifacts require url")
        return self

    def read_bytes(self) -> bytes:
        if self.file_path is None:
            raise ValueError("Only download artifacts carry local bytes")
        return self.file_path.read_bytes()


class RetrievalFailure(BaseModel):
    """Classified failure carried by a RetrievalOutcome"""

    kind: RetrievalErrorKind
    stage: str
    message: str

    @classmethod
    def from_error(cls, error: VideoRetrievalError) -> "RetrievalFailure":
        return cls(kind=error.kind, stage=error.stage, message=error.message)


class RetrievalOutcome(BaseModel):
    """Either an artifact or a classified failure, never both and never neither."""

    artifact: Optional[VideoArtifact] = None
    error: Optional[RetrievalFailure] = None
    event_id: Optional[str] = None

    @model_validator(mode='after')
    def check_exclusive(self) -> "RetrievalOutcome":
        if (self.artifact is None) == (self.error is None):
            raise ValueError("RetrievalOutcome requires exactly one of artifact or error")
        return self

    @property
    def ok(self) -> bool:
        return self.artifact is not None

    @classmethod
    def success(cls, artifact: VideoArtifact, event_id: Optional[str] = None) -> "RetrievalOutcome":
        return cls(artifact=artifact, event_id=event_id)

    @classmethod
    def failure(cls, error: VideoRetrievalError, event_id: Optional[str] = None) -> "RetrievalOutcome":
        return cls(error=RetrievalFailure.from_error(error), event_id=event_id)
