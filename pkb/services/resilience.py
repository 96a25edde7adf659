"""
Resilience utilities for PKB.

Provides:
- The pipeline's error taxonomy
- Retry logic for transient failures (with abort-on-signal exceptions)
"""
import functools
import logging
import time
from typing import Callable, TypeVar, Optional, Any
from dataclasses import dataclass

logger = logging.getLogger(__name__)

T = TypeVar('T')


class PipelineError(Exception):
    """Base class for FRF pipeline failures."""


class RateLimitedError(PipelineError):
    """
    The extraction service refused the request for quota reasons.

    Aborts the whole pipeline run: every further call would fail the same way.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ExtractionFailedError(PipelineError):
    """Transient extraction failure (timeout, connection, 5xx). Retried once."""


class PersistenceFailedError(PipelineError):
    """A single fact/relationship/followup could not be committed."""

    def __init__(self, item_kind: str, message: str):
        self.item_kind = item_kind
        super().__init__(f"{item_kind}: {message}")


class ContactFailedError(PipelineError):
    """Loading or batching a contact's communications failed."""

    def __init__(self, contact_id: str, message: str):
        self.contact_id = contact_id
        super().__init__(f"contact {contact_id}: {message}")


class NotFoundError(Exception):
    """Raised by stores when an id does not exist (or is soft-deleted)."""


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)
    abort_exceptions: tuple = ()  # re-raised immediately, never retried


DEFAULT_RETRY_CONFIG = RetryConfig()


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], Any] = time.sleep,
):
    """
    Decorator for sync functions with retry logic.

    Args:
        config: Retry configuration
        on_retry: Optional callback on each retry (retry_num, exception)
        sleep: Sleep function (injectable for tests)
    """
    cfg = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(cfg.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except cfg.abort_exceptions:
                    raise
                except cfg.retryable_exceptions as e:
                    last_exception = e

                    if attempt < cfg.max_retries:
                        delay = min(
                            cfg.base_delay * (cfg.exponential_base ** attempt),
                            cfg.max_delay
                        )
                        logger.warning(
                            f"Retry {attempt + 1}/{cfg.max_retries} for {func.__name__}: {e}. "
                            f"Waiting {delay:.1f}s..."
                        )

                        if on_retry:
                            on_retry(attempt + 1, e)

                        if delay > 0:
                            sleep(delay)
                    else:
                        logger.error(
                            f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator

