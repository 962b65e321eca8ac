from __future__ import annotations

import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Sequence

from .cancel import CancelToken
from .errors import DownloadCancelled
from .models import BatchResult, BatchState, Chapter, ItemError
from .rate_limiter import Throttle

logger = logging.getLogger(__name__)

WorkFn = Callable[[Chapter, CancelToken], str]
ProgressFn = Callable[[int, int], None]
ErrorFn = Callable[[str], None]

MAX_AUTO_THREADS = 8


def resolve_threads(threads: Optional[int]) -> int:
    """Explicit positive value, else min(2 x cpu count, 8)."""
    if threads is not None and threads > 0:
        return threads
    return min(2 * (os.cpu_count() or 1), MAX_AUTO_THREADS)


class _Batch:
    def __init__(self, total: int) -> None:
        self.total = total
        self.completed = 0
        self.lock = threading.Lock()
        self.errors: "queue.Queue[ItemError]" = queue.Queue()
        self.done: List[Chapter] = []

    def drain_errors(self) -> List[ItemError]:
        out: List[ItemError] = []
        while True:
            try:
                out.append(self.errors.get_nowait())
            except queue.Empty:
                return out


class BatchCoordinator:
    """Runs one fetch+extract job per chapter on a bounded thread pool.

    A counting gate keeps at most `limit` items in flight. All items share
    one CancelToken: the first hard failure cancels it (fail-fast), after
    which nothing new is admitted and running items bail out at their next
    suspension point. Each successful item reports progress and then
    holds its slot for a throttle pause.
    """

    def __init__(self, threads: Optional[int] = None, throttle: Optional[Throttle] = None) -> None:
        self._limit = resolve_threads(threads)
        self._throttle = throttle if throttle is not None else Throttle(0, 0)

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._active = 0

    @property
    def limit(self) -> int:
        return self._limit

    def run(
        self,
        chapters: Sequence[Chapter],
        work: WorkFn,
        token: Optional[CancelToken] = None,
        on_progress: Optional[ProgressFn] = None,
        on_error: Optional[ErrorFn] = None,
    ) -> BatchResult:
        """Execute `work` for every chapter and summarise the outcome.

        `work` returns the chapter content; it is stored on the chapter.
        The result is COMPLETED only if every item succeeded and the token
        never fired.
        """
        token = token if token is not None else CancelToken()
        batch = _Batch(total=len(chapters))
        start = time.monotonic()
        futures: List[Future] = []

        with ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix="chapter") as executor:
            for chapter in chapters:
                if token.cancelled:
                    logger.info("batch cancelled, not scheduling remaining chapters")
                    break
                if not self._admit(token):
                    logger.info("batch cancelled while waiting for a free worker")
                    break
                futures.append(
                    executor.submit(self._run_item, batch, chapter, work, token, on_progress, on_error)
                )
            wait(futures)

        errors = batch.drain_errors()
        if token.cancelled:
            state = BatchState.FAILED if errors else BatchState.CANCELLED
        elif batch.completed == batch.total:
            state = BatchState.COMPLETED
        else:
            state = BatchState.FAILED

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "batch %s in %.2fs: %d/%d completed, %d error(s)",
            state.value, elapsed_ms / 1000.0, batch.completed, batch.total, len(errors),
        )
        return BatchResult(
            state=state,
            completed=batch.completed,
            total=batch.total,
            errors=errors,
            chapters=sorted(batch.done, key=lambda c: c.order),
            elapsed_ms=elapsed_ms,
        )

    def _admit(self, token: CancelToken) -> bool:
        with self._cv:
            while self._active >= self._limit and not token.cancelled:
                self._cv.wait(timeout=0.5)
            if token.cancelled:
                return False
            self._active += 1
            return True

    def _release(self) -> None:
        with self._cv:
            self._active = max(0, self._active - 1)
            self._cv.notify_all()

    def _run_item(
        self,
        batch: _Batch,
        chapter: Chapter,
        work: WorkFn,
        token: CancelToken,
        on_progress: Optional[ProgressFn],
        on_error: Optional[ErrorFn],
    ) -> None:
        try:
            if token.cancelled:
                return
            try:
                content = work(chapter, token)
            except DownloadCancelled:
                return
            except Exception as exc:  # noqa: BLE001
                message = f"chapter {chapter.order} ({chapter.title}) failed: {exc}"
                batch.errors.put(
                    ItemError(order=chapter.order, url=chapter.url, error=str(exc), error_type=type(exc).__name__)
                )
                logger.warning(message)
                if on_error is not None:
                    on_error(message)
                token.cancel(message)
                return

            with batch.lock:
                chapter.content = content
                batch.done.append(chapter)
                batch.completed += 1
                if on_progress is not None:
                    on_progress(batch.completed, batch.total)

            self._throttle.pause(token)
        finally:
            self._release()
