"""Tests for the Fetcher retry loop."""

import threading
import time
import unittest
from unittest import mock

import requests

from sonovel.cancel import CancelToken
from sonovel.config import CrawlConfig
from sonovel.errors import DownloadCancelled, FetchError
from sonovel.fetcher import FORM_CONTENT_TYPE, Fetcher


def _resp(status=200, content=b"<html></html>", url="https://example.com/"):
    return mock.Mock(status_code=status, content=content, url=url)


def _fetcher(**overrides):
    params = dict(max_retries=2, retry_min_interval=0, retry_max_interval=0)
    params.update(overrides)
    return Fetcher(crawl=CrawlConfig(**params))


class TestFetchRetries(unittest.TestCase):
    """Verify the attempt budget and status handling."""

    def test_first_attempt_success(self):
        """A 200 on the first try is returned without retrying."""
        with mock.patch.object(requests.Session, "request", return_value=_resp(content=b"ok")) as req:
            resp = _fetcher().fetch("https://example.com/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"ok")
        self.assertEqual(req.call_count, 1)

    def test_non_200_is_retried(self):
        """A non-200 answer counts as a failed attempt."""
        with mock.patch.object(requests.Session, "request", side_effect=[_resp(503), _resp(200)]) as req:
            resp = _fetcher().fetch("https://example.com/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(req.call_count, 2)

    def test_exhaustion_makes_k_plus_one_attempts(self):
        """With k retries a failing URL is requested k+1 times."""
        with mock.patch.object(requests.Session, "request", return_value=_resp(500)) as req:
            with self.assertRaises(FetchError) as ctx:
                _fetcher(max_retries=3).fetch("https://example.com/")
        self.assertEqual(req.call_count, 4)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(ctx.exception.status_code, 500)

    def test_retry_disabled(self):
        """With retry off only one attempt is made."""
        with mock.patch.object(requests.Session, "request", return_value=_resp(404)) as req:
            with self.assertRaises(FetchError):
                _fetcher(enable_retry=False).fetch("https://example.com/")
        self.assertEqual(req.call_count, 1)

    def test_transport_error_is_wrapped(self):
        """The last transport exception is kept as the cause."""
        boom = requests.ConnectionError("refused")
        with mock.patch.object(requests.Session, "request", side_effect=boom):
            with self.assertRaises(FetchError) as ctx:
                _fetcher(max_retries=1).fetch("https://example.com/")
        self.assertIs(ctx.exception.cause, boom)
        self.assertFalse(ctx.exception.timed_out)

    def test_timeout_is_flagged(self):
        """A timeout cause marks the FetchError as timed out."""
        with mock.patch.object(requests.Session, "request", side_effect=requests.Timeout("read timed out")):
            with self.assertRaises(FetchError) as ctx:
                _fetcher(max_retries=0).fetch("https://example.com/")
        self.assertTrue(ctx.exception.timed_out)


class TestFetchRequest(unittest.TestCase):
    """Verify what is sent on the wire."""

    def test_post_body_is_form_encoded(self):
        """A body is sent as bytes with the form content type."""
        with mock.patch.object(requests.Session, "request", return_value=_resp()) as req:
            _fetcher().fetch("https://example.com/s", method="post", body="searchkey=%E4%BB%99", headers={"Cookie": "a=b"})
        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["method"], "POST")
        self.assertEqual(kwargs["data"], b"searchkey=%E4%BB%99")
        self.assertEqual(kwargs["headers"]["Content-Type"], FORM_CONTENT_TYPE)
        self.assertEqual(kwargs["headers"]["Cookie"], "a=b")
        self.assertIn("User-Agent", kwargs["headers"])

    def test_get_has_no_body(self):
        """GET requests carry no data and no form content type."""
        with mock.patch.object(requests.Session, "request", return_value=_resp()) as req:
            _fetcher().fetch("https://example.com/")
        kwargs = req.call_args.kwargs
        self.assertIsNone(kwargs["data"])
        self.assertNotIn("Content-Type", kwargs["headers"])

    def test_with_crawl_shares_cookies(self):
        """A derived fetcher shares the cookie jar."""
        base = _fetcher()
        derived = base.with_crawl(CrawlConfig(max_retries=0))
        self.assertIs(derived.cookies, base.cookies)
        self.assertEqual(derived.max_attempts, 1)


class TestFetchCancellation(unittest.TestCase):
    """Verify cancellation wins over fetch failure."""

    def test_cancelled_before_fetch(self):
        """A cancelled token stops the fetch before any request."""
        token = CancelToken()
        token.cancel("stop")
        with mock.patch.object(requests.Session, "request", return_value=_resp()) as req:
            with self.assertRaises(DownloadCancelled):
                _fetcher().fetch("https://example.com/", token=token)
        self.assertEqual(req.call_count, 0)

    def test_cancel_interrupts_backoff(self):
        """Cancelling during a long retry sleep aborts promptly."""
        token = CancelToken()
        fetcher = _fetcher(max_retries=3, retry_min_interval=5000, retry_max_interval=6000)
        timer = threading.Timer(0.1, token.cancel)
        with mock.patch.object(requests.Session, "request", return_value=_resp(500)) as req:
            timer.start()
            start = time.time()
            with self.assertRaises(DownloadCancelled):
                fetcher.fetch("https://example.com/", token=token)
            elapsed = time.time() - start
        timer.cancel()
        self.assertLess(elapsed, 2.0)
        self.assertEqual(req.call_count, 1)


if __name__ == "__main__":
    unittest.main()
