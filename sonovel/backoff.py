from __future__ import annotations

import random

from .config import CrawlConfig


class BackoffStrategy:
    """Retry budget plus a uniformly jittered delay between attempts.

    Retries are off unless enabled; when on, a request gets `max_retries`
    extra attempts, each preceded by a sleep drawn from
    [min_ms, max_ms] milliseconds."""

    def __init__(self, enabled: bool = True, max_retries: int = 5, min_ms: int = 2000, max_ms: int = 4000) -> None:
        self._enabled = enabled
        self._max_retries = max(0, max_retries)
        self._min_ms = max(0, min_ms)
        self._max_ms = max(0, max_ms)

    @classmethod
    def from_config(cls, crawl: CrawlConfig) -> "BackoffStrategy":
        return cls(
            enabled=crawl.enable_retry,
            max_retries=crawl.max_retries,
            min_ms=crawl.retry_min_interval,
            max_ms=crawl.retry_max_interval,
        )

    @property
    def retries(self) -> int:
        return self._max_retries if self._enabled else 0

    @property
    def attempts(self) -> int:
        """Total attempts including the first one."""
        return 1 + self.retries

    def get_sleep(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        if self._max_ms <= self._min_ms:
            return self._min_ms / 1000.0
        return random.uniform(self._min_ms, self._max_ms) / 1000.0
