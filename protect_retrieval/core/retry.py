"""
Caller-side retry/backoff policy for video retrieval.

The retrieval pipeline itself never retries: one call is one attempt with
one browser session. Callers that want backoff wrap the orchestrator with
retry_retrieval() and choose which failure kinds are worth another attempt.
"""

import asyncio
import logging
import random
from functools import wraps
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from protect_retrieval.core.exceptions import RetrievalErrorKind, VideoRetrievalError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_kinds: Sequence[RetrievalErrorKind] = (
            RetrievalErrorKind.SESSION,
            RetrievalErrorKind.TIMEOUT,
        ),
    ):
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts (including first)
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Whether to add random jitter to delays
            retryable_kinds: Failure kinds that trigger another attempt
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_kinds = frozenset(retryable_kinds)

    def is_retryable(self, error: VideoRetrievalError) -> bool:
        return error.kind in self.retryable_kinds


# Browser launch hiccups and slow controllers
RETRY_TRANSIENT = RetryConfig(
    max_attempts=3,
    base_delay=2.0,
    max_delay=30.0,
)

# The clip may not be exported yet right after the webhook fires
RETRY_AWAIT_CLIP = RetryConfig(
    max_attempts=4,
    base_delay=15.0,
    max_delay=120.0,
    retryable_kinds=(
        RetrievalErrorKind.SESSION,
        RetrievalErrorKind.TIMEOUT,
        RetrievalErrorKind.RESOURCE_NOT_FOUND,
    ),
)

# Single attempt
RETRY_NEVER = RetryConfig(max_attempts=1, retryable_kinds=())


def calculate_delay(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate delay for a given attempt number.

    Args:
        attempt: Zero-based attempt number
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )

    if config.jitter:
        # ±25% so concurrent webhooks do not relaunch browsers in lockstep
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def retry_retrieval(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig = RETRY_TRANSIENT,
    operation_name: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Execute a retrieval call with caller-defined retry logic.

    Only VideoRetrievalError whose kind is in config.retryable_kinds is
    retried; every other exception propagates immediately.

    Args:
        func: Async callable, typically RetrievalOrchestrator.retrieve
        *args: Positional arguments for func
        config: Retry configuration
        operation_name: Name for logging (defaults to func name)
        **kwargs: Keyword arguments for func

    Returns:
        Result of the first successful call

    Raises:
        The last VideoRetrievalError if all attempts fail

    Example:
        outcome = await retry_retrieval(
            orchestrator.retrieve,
            request,
            config=RETRY_AWAIT_CLIP,
        )
    """
    op_name = operation_name or getattr(func, '__name__', 'retrieval')

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except VideoRetrievalError as e:
            if not config.is_retryable(e):
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"{op_name} failed (attempt {attempt + 1}/{config.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}",
                    extra={
                        "event_type": "retrieval_retry_attempt",
                        "operation": op_name,
                        "attempt": attempt + 1,
                        "max_attempts": config.max_attempts,
                        "delay_seconds": delay,
                        "error_kind": e.kind.value,
                        "error_stage": e.stage,
                    }
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"{op_name} failed after {config.max_attempts} attempts: {e}",
                    extra={
                        "event_type": "retrieval_retry_exhausted",
                        "operation": op_name,
                        "attempts": config.max_attempts,
                        "error_kind": e.kind.value,
                        "error_stage": e.stage,
                    }
                )
                raise

    raise RuntimeError(f"{op_name} made no attempts")


def with_retry(
    config: RetryConfig = RETRY_TRANSIENT,
    operation_name: Optional[str] = None,
):
    """
    Decorator form of retry_retrieval.

    Usage:
        @with_retry(config=RETRY_AWAIT_CLIP)
        async def fetch_clip(request):
            return await orchestrator.retrieve(request)
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_retrieval(
                func, *args,
                config=config,
                operation_name=op_name,
                **kwargs
            )
        return wrapper
    return decorator
