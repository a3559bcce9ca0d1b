"""
Headless-browser retrieval of UniFi Protect event clips.

Usage:
    from protect_retrieval import RetrievalOrchestrator, UnifiCredentials, setup_logging

    setup_logging()
    outcome = await RetrievalOrchestrator().retrieve_video(
        event_local_link, device_name, UnifiCredentials(hostname=..., username=..., password=...)
    )
"""
from protect_retrieval.core.exceptions import RetrievalErrorKind, VideoRetrievalError
from protect_retrieval.core.logging_config import setup_logging
from protect_retrieval.schemas import RetrievalOutcome, RetrievalRequest, UnifiCredentials, VideoArtifact
from protect_retrieval.services.retrieval_orchestrator import RetrievalOrchestrator

__version__ = "0.1.0"

__all__ = [
    "RetrievalErrorKind",
    "VideoRetrievalError",
    "RetrievalOutcome",
    "RetrievalRequest",
    "UnifiCredentials",
    "VideoArtifact",
    "RetrievalOrchestrator",
    "setup_logging",
]
