from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Optional

import requests
from curl_cffi import requests as curl_requests
from requests.cookies import RequestsCookieJar

from .backoff import BackoffStrategy
from .cancel import CancelToken
from .config import Config, CrawlConfig
from .errors import DownloadCancelled, FetchError
from .models import FetchResponse

logger = logging.getLogger(__name__)

_UA_POOL = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1",
]

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def random_ua() -> str:
    return random.choice(_UA_POOL)


class Fetcher:
    """Single-URL HTTP fetcher with retry, proxy and a shared cookie jar.

    Every attempt gets its own session so per-call settings never leak
    between threads; only the cookie jar is shared. Only HTTP 200 counts
    as success.
    """

    def __init__(
        self,
        crawl: Optional[CrawlConfig] = None,
        proxy: Optional[str] = None,
        backoff: Optional[BackoffStrategy] = None,
        cookies: Optional[RequestsCookieJar] = None,
    ) -> None:
        crawl = crawl if crawl is not None else CrawlConfig()
        self._timeout = crawl.timeout
        self._impersonate = crawl.impersonate or None
        self._proxy = proxy
        self._backoff = backoff if backoff is not None else BackoffStrategy.from_config(crawl)
        self._cookies = cookies if cookies is not None else RequestsCookieJar()

    @classmethod
    def from_config(cls, config: Config, crawl: Optional[CrawlConfig] = None) -> "Fetcher":
        return cls(crawl=crawl or config.crawl, proxy=config.proxy.url)

    def with_crawl(self, crawl: CrawlConfig) -> "Fetcher":
        """A fetcher with other retry/timeout settings sharing this one's cookies and proxy."""
        return Fetcher(crawl=crawl, proxy=self._proxy, cookies=self._cookies)

    @property
    def cookies(self) -> RequestsCookieJar:
        return self._cookies

    @property
    def max_attempts(self) -> int:
        return self._backoff.attempts

    def fetch(
        self,
        url: str,
        method: str = "GET",
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancelToken] = None,
    ) -> FetchResponse:
        """Fetch `url`, retrying per the backoff policy.

        Raises DownloadCancelled as soon as `token` fires (including during
        the backoff sleep) and FetchError once every attempt has failed.
        """
        method = method.upper()
        attempts = self._backoff.attempts
        last_exc: Optional[BaseException] = None
        last_status: Optional[int] = None

        for attempt in range(1, attempts + 1):
            if token is not None:
                token.raise_if_cancelled()

            if attempt > 1:
                delay = self._backoff.get_sleep(attempt - 1)
                logger.info("retrying %s (%d/%d) in %.2fs", url, attempt - 1, attempts - 1, delay)
                if token is not None:
                    if token.sleep(delay):
                        raise DownloadCancelled(token.reason or "download cancelled")
                elif delay > 0:
                    time.sleep(delay)

            try:
                response = self._send(method, url, body, headers)
            except Exception as exc:  # noqa: BLE001
                last_exc, last_status = exc, None
                logger.debug("attempt %d for %s failed: %s", attempt, url, exc)
                continue

            if response.status_code == 200:
                return response
            last_exc, last_status = None, response.status_code
            logger.debug("attempt %d for %s returned HTTP %d", attempt, url, response.status_code)

        if token is not None:
            token.raise_if_cancelled()
        raise FetchError(url, attempts, cause=last_exc, status_code=last_status)

    def _headers(self, body: Optional[str], headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = {"User-Agent": random_ua()}
        if body:
            merged["Content-Type"] = FORM_CONTENT_TYPE
        if headers:
            merged.update(headers)
        return merged

    def _proxies(self) -> Optional[Dict[str, str]]:
        if not self._proxy:
            return None
        return {"http": self._proxy, "https": self._proxy}

    def _send(self, method: str, url: str, body: Optional[str], headers: Optional[Dict[str, str]]) -> FetchResponse:
        if self._impersonate:
            return self._send_impersonated(method, url, body, headers)

        session = requests.Session()
        session.cookies = self._cookies
        proxies = self._proxies()
        if proxies:
            session.proxies.update(proxies)
        try:
            resp = session.request(
                method=method,
                url=url,
                data=body.encode("utf-8") if body else None,
                headers=self._headers(body, headers),
                timeout=self._timeout,
            )
            return FetchResponse(status_code=resp.status_code, content=resp.content, url=str(resp.url))
        finally:
            session.close()

    def _send_impersonated(
        self, method: str, url: str, body: Optional[str], headers: Optional[Dict[str, str]]
    ) -> FetchResponse:
        session = curl_requests.Session()
        for cookie in self._cookies:
            session.cookies.jar.set_cookie(cookie)
        kwargs: Dict[str, Any] = {
            "data": body.encode("utf-8") if body else None,
            "headers": self._headers(body, headers),
            "timeout": self._timeout,
            "impersonate": self._impersonate,
        }
        proxies = self._proxies()
        if proxies:
            kwargs["proxies"] = proxies
        try:
            resp = session.request(method, url, **kwargs)
            for cookie in session.cookies.jar:
                self._cookies.set_cookie(cookie)
            return FetchResponse(status_code=resp.status_code, content=resp.content, url=str(resp.url))
        finally:
            session.close()
