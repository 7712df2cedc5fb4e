from __future__ import annotations

import re
from typing import Optional

# Phrasing used by embedding providers when throttling (OpenAI, Gemini).
RATE_LIMIT_PATTERN = re.compile(
    r"rate[ _-]?limit|too many requests|quota|resource[ _]?exhausted|"
    r"resource has been exhausted",
    flags=re.IGNORECASE,
)


class LatticefillError(Exception):
    """Base class for errors raised by the backfill pipeline."""


class ConfigError(LatticefillError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class EmbeddingAPIError(LatticefillError):
    """Provider or transport failure for a single embedding request."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        rate_limited: Optional[bool] = None,
    ) -> None:
        self.status = status
        self.message = message
        if rate_limited is None:
            rate_limited = status == 429 or bool(RATE_LIMIT_PATTERN.search(message))
        self.rate_limited = rate_limited
        super().__init__(message if status is None else f"[{status}] {message}")


class EmbeddingDimensionError(EmbeddingAPIError):
    """The provider returned a vector of the wrong length. Never retried."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            rate_limited=False,
        )


class StorageError(LatticefillError):
    """A database fetch or write failed."""
