"""Tests for the BatchCoordinator."""

import os
import threading
import time
import unittest

from sonovel.cancel import CancelToken
from sonovel.controller import MAX_AUTO_THREADS, BatchCoordinator, resolve_threads
from sonovel.errors import FetchError
from sonovel.models import BatchState, Chapter
from sonovel.rate_limiter import Throttle


def _chapters(n):
    return [Chapter(order=i, title=f"第{i}章", url=f"https://example.com/{i}.html") for i in range(1, n + 1)]


class TestResolveThreads(unittest.TestCase):
    """Verify the worker cap."""

    def test_explicit_value(self):
        """A positive value is used as is."""
        self.assertEqual(resolve_threads(3), 3)

    def test_auto_value(self):
        """None, zero and negatives mean min(2 x cpu, 8)."""
        expected = min(2 * (os.cpu_count() or 1), MAX_AUTO_THREADS)
        for value in (None, 0, -1):
            self.assertEqual(resolve_threads(value), expected)


class TestBatchCompletion(unittest.TestCase):
    """Verify successful batches."""

    def test_all_items_complete(self):
        """Every item succeeds: COMPLETED, contents stored, order restored."""
        chapters = _chapters(6)

        def work(chapter, token):
            time.sleep(0.01 * (7 - chapter.order))
            return f"content {chapter.order}"

        result = BatchCoordinator(threads=3).run(chapters, work)
        self.assertEqual(result.state, BatchState.COMPLETED)
        self.assertTrue(result.success)
        self.assertEqual(result.completed, 6)
        self.assertEqual(result.errors, [])
        self.assertEqual([c.order for c in result.chapters], [1, 2, 3, 4, 5, 6])
        self.assertEqual(result.chapters[0].content, "content 1")

    def test_progress_is_monotonic(self):
        """on_progress sees 1..n exactly once each."""
        seen = []
        lock = threading.Lock()

        def on_progress(current, total):
            with lock:
                seen.append((current, total))

        BatchCoordinator(threads=4).run(_chapters(8), lambda c, t: "x", on_progress=on_progress)
        self.assertEqual(sorted(seen), [(i, 8) for i in range(1, 9)])

    def test_worker_cap_respected(self):
        """No more than `threads` items run at once."""
        active = [0]
        peak = [0]
        lock = threading.Lock()

        def work(chapter, token):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1
            return ""

        BatchCoordinator(threads=2).run(_chapters(8), work)
        self.assertLessEqual(peak[0], 2)

    def test_empty_batch(self):
        """Zero items is trivially complete."""
        result = BatchCoordinator(threads=2).run([], lambda c, t: "")
        self.assertEqual(result.state, BatchState.COMPLETED)
        self.assertEqual(result.total, 0)


class TestBatchFailure(unittest.TestCase):
    """Verify fail-fast and external cancellation."""

    def test_one_failure_fails_the_batch(self):
        """10 chapters, 2 threads, one permanent failure: FAILED with < 10 done."""
        errors = []

        def work(chapter, token):
            if chapter.order == 3:
                raise FetchError(chapter.url, 3, status_code=500)
            time.sleep(0.02)
            token.raise_if_cancelled()
            return "ok"

        token = CancelToken()
        result = BatchCoordinator(threads=2).run(_chapters(10), work, token=token, on_error=errors.append)
        self.assertEqual(result.state, BatchState.FAILED)
        self.assertLess(result.completed, 10)
        self.assertTrue(token.cancelled)
        self.assertEqual(result.first_error.order, 3)
        self.assertEqual(result.first_error.error_type, "FetchError")
        self.assertEqual(len(errors), 1)

    def test_external_cancel(self):
        """Cancelling from outside stops admission; state is CANCELLED."""
        token = CancelToken()
        started = []

        def work(chapter, token):
            started.append(chapter.order)
            if chapter.order == 2:
                token.cancel("user stop")
            time.sleep(0.01)
            return "ok"

        result = BatchCoordinator(threads=1).run(_chapters(10), work, token=token)
        self.assertEqual(result.state, BatchState.CANCELLED)
        self.assertEqual(result.errors, [])
        self.assertLess(len(started), 10)

    def test_pre_cancelled_token_admits_nothing(self):
        """A token cancelled up front means no work runs."""
        token = CancelToken()
        token.cancel()
        calls = []
        result = BatchCoordinator(threads=2).run(_chapters(5), lambda c, t: calls.append(c) or "", token=token)
        self.assertEqual(calls, [])
        self.assertEqual(result.completed, 0)
        self.assertEqual(result.state, BatchState.CANCELLED)

    def test_cancel_cuts_throttle_short(self):
        """Workers sleeping in the throttle wake when the batch is cancelled."""
        token = CancelToken()

        def work(chapter, token):
            if chapter.order == 2:
                raise RuntimeError("broken page")
            return "ok"

        start = time.time()
        result = BatchCoordinator(threads=2, throttle=Throttle(5000, 6000)).run(_chapters(4), work, token=token)
        self.assertLess(time.time() - start, 3.0)
        self.assertEqual(result.state, BatchState.FAILED)


if __name__ == "__main__":
    unittest.main()
