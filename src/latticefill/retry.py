from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from .errors import RATE_LIMIT_PATTERN, EmbeddingAPIError, EmbeddingDimensionError
from .log import get_logger

logger = get_logger("latticefill.retry")

T = TypeVar("T")


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, EmbeddingDimensionError):
        return False
    if isinstance(exc, EmbeddingAPIError):
        return exc.rate_limited
    return bool(RATE_LIMIT_PATTERN.search(str(exc)))


def with_retries(
    operation: Callable[[], T],
    max_retries: int,
    base_delay_ms: int,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Run `operation` with exponential backoff on rate limits.

    Returns the first non-empty result, or None once retries are exhausted or
    a non-retryable error occurs. An empty result counts as retryable.
    EmbeddingDimensionError propagates on first occurrence.
    """
    for attempt in range(max_retries + 1):
        remaining = attempt < max_retries
        try:
            result = operation()
        except EmbeddingDimensionError:
            raise
        except Exception as e:
            if not is_rate_limited(e):
                logger.warning(f"Embedding attempt {attempt + 1} failed, not retrying: {e}")
                return None
            if not remaining:
                logger.warning(
                    f"Rate limited on final attempt {attempt + 1}/{max_retries + 1}: {e}"
                )
                return None
            reason = f"rate limited ({e})"
        else:
            if result:
                return result
            if not remaining:
                logger.warning(
                    f"No embedding values after {attempt + 1} attempt(s); giving up"
                )
                return None
            reason = "empty response"

        delay_ms = base_delay_ms * (2 ** attempt)
        logger.info(
            f"Embedding retry {attempt + 1}/{max_retries} in {delay_ms}ms: {reason}"
        )
        sleep(delay_ms / 1000.0)
    return None
