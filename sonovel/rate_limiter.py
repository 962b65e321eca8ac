from __future__ import annotations

import random
from typing import Optional

from .cancel import CancelToken


class Throttle:
    """Politeness pause taken by a worker after each successful item.

    The pause is drawn uniformly from [min_ms, max_ms) milliseconds and is
    skipped entirely when max_ms <= min_ms. It wakes early when the token
    is cancelled."""

    def __init__(self, min_ms: int = 200, max_ms: int = 400) -> None:
        self._min_ms = max(0, min_ms)
        self._max_ms = max(0, max_ms)

    @property
    def enabled(self) -> bool:
        return self._max_ms > self._min_ms

    def interval(self) -> float:
        """Next pause in seconds (0 when disabled)."""
        if not self.enabled:
            return 0.0
        return random.uniform(self._min_ms, self._max_ms) / 1000.0

    def pause(self, token: Optional[CancelToken] = None) -> bool:
        """Sleep one interval. Returns True if the token fired during the pause."""
        seconds = self.interval()
        if token is None:
            token = CancelToken()
        return token.sleep(seconds)
