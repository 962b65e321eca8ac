from __future__ import annotations

import threading

from .errors import DownloadCancelled


class CancelToken:
    """Thread-safe, one-shot cancellation signal shared by a batch.

    Any participant may call cancel(); every suspension point (fetch,
    throttle sleep, retry backoff, admission) checks it. Once set it
    stays set."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason = ""

    def cancel(self, reason: str = "") -> bool:
        """Signal cancellation. Returns True only for the call that flipped the flag."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancel. Returns True if cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DownloadCancelled(self._reason or "download cancelled")
