"""Exponential-backoff retry wrapper for whole ingestion runs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from .errors import QueryError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = (QueryError, StorageError)


class RetryPolicy(BaseModel):
    """Retry settings; ``max_attempts=None`` retries until success."""

    max_attempts: int | None = Field(5, ge=1)
    base_delay_s: float = Field(2.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay_s: float = Field(3600.0, ge=0.0)

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based)."""
        return min(self.base_delay_s * self.multiplier ** (attempt - 1), self.max_delay_s)

    def run(
        self,
        func: Callable[[], T],
        *,
        job_name: str = "job",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return func()
            except RETRYABLE as exc:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    logger.error("%s: giving up after %d attempts: %s", job_name, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s: attempt %d failed (%s), retrying in %.1fs", job_name, attempt, exc, delay
                )
                sleep(delay)
