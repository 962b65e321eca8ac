from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import quote_plus, urlencode

from .cancel import CancelToken
from .errors import DownloadCancelled, NovelError, is_timeout
from .extractor import Extractor, Fragment, join_url, parse_html
from .fetcher import Fetcher
from .models import Rule, SearchResult
from .ranking import MAX_RESULTS, rank_results
from .rules import RuleRepository

logger = logging.getLogger(__name__)

PLACEHOLDER = "%s"
MAX_EXTRA_PAGES = 3
MAX_CONCURRENT_SOURCES = 10
SOURCE_RETRIES = 2


@dataclass(frozen=True)
class SearchRequest:
    url: str
    method: str = "GET"
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


def _fill(value: str, keyword: str) -> str:
    return value.replace(PLACEHOLDER, keyword) if PLACEHOLDER in value else value


def build_post_data(template: str, keyword: str) -> str:
    """Form-encode a POST body template, substituting `keyword` for "%s".

    The template is normally a JSON object; a loose ``{k: v, k2: v2}``
    form is accepted too. Keys are emitted in sorted order.
    """
    if not template:
        return ""

    pairs: List[Tuple[str, str]] = []
    try:
        data = json.loads(template)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        for key, value in data.items():
            if isinstance(value, str):
                pairs.append((str(key), _fill(value, keyword)))
            else:
                pairs.append((str(key), json.dumps(value)))
    else:
        body = template.strip()
        if body.startswith("{") and body.endswith("}"):
            body = body[1:-1]
        for chunk in body.split(","):
            chunk = chunk.strip()
            if ":" not in chunk:
                continue
            key, value = chunk.split(":", 1)
            key = key.strip().strip("\"'")
            value = value.strip().strip("\"'")
            pairs.append((key, _fill(value, keyword)))

    pairs.sort(key=lambda kv: kv[0])
    return urlencode(pairs)


def build_search_request(rule: Rule, keyword: str) -> SearchRequest:
    search = rule.search
    headers: Dict[str, str] = {}
    if search.cookies:
        headers["Cookie"] = search.cookies

    if search.method == "post":
        return SearchRequest(
            url=search.url.replace(PLACEHOLDER, keyword),
            method="POST",
            body=build_post_data(search.data, keyword),
            headers=headers,
        )
    return SearchRequest(
        url=search.url.replace(PLACEHOLDER, quote_plus(keyword)),
        method="GET",
        headers=headers,
    )


class SearchParser:
    """Turns one search-results page into SearchResults using a rule."""

    def __init__(self, extractor: Extractor) -> None:
        self._extractor = extractor

    def parse(
        self, content: Union[str, bytes], page_url: str, rule: Rule, allow_pagination: bool = True
    ) -> Tuple[List[SearchResult], List[str]]:
        """Return (results, extra page URLs to visit)."""
        soup = parse_html(content)
        search = rule.search
        ex = self._extractor

        containers = ex.select(soup, search.result)
        if not containers and search.book_name and rule.book.book_name:
            detail = self._from_detail_page(soup, page_url, rule)
            if detail is not None:
                return [detail], []

        results: List[SearchResult] = []
        for node in containers:
            result = self._from_container(node, page_url, rule)
            if result is not None:
                results.append(result)

        pages: List[str] = []
        if allow_pagination and search.pagination and search.next_page:
            pages = self._next_pages(soup, page_url, rule)
        return results, pages

    def _from_container(self, node: Fragment, page_url: str, rule: Rule) -> Optional[SearchResult]:
        search = rule.search
        ex = self._extractor
        book_name = ex.resolve(node, search.book_name)
        if not book_name:
            return None
        url = ex.resolve_abs(node, search.book_name, "href", page_url)
        return SearchResult(
            source_id=rule.id,
            source_name=rule.name,
            url=url or page_url,
            book_name=book_name,
            author=ex.resolve(node, search.author),
            category=ex.resolve(node, search.category),
            word_count=ex.resolve(node, search.word_count),
            status=ex.resolve(node, search.status),
            latest_chapter=ex.resolve(node, search.latest_chapter),
            last_update_time=ex.resolve(node, search.last_update_time),
        )

    def _from_detail_page(self, soup: Fragment, page_url: str, rule: Rule) -> Optional[SearchResult]:
        # exact-match queries on some sites redirect straight to the book page
        ex = self._extractor
        book = rule.book
        book_name = ex.resolve(soup, book.book_name)
        if not book_name:
            return None
        logger.debug("search for %s landed on a detail page: %s", rule.name, page_url)
        return SearchResult(
            source_id=rule.id,
            source_name=rule.name,
            url=page_url,
            book_name=book_name,
            author=ex.resolve(soup, book.author),
            category=ex.resolve(soup, book.category),
            word_count=ex.resolve(soup, book.word_count),
            status=ex.resolve(soup, book.status),
            latest_chapter=ex.resolve(soup, book.latest_chapter),
            last_update_time=ex.resolve(soup, book.last_update_time),
        )

    def _next_pages(self, soup: Fragment, page_url: str, rule: Rule) -> List[str]:
        seen = {page_url}
        pages: List[str] = []
        for node in self._extractor.select(soup, rule.search.next_page):
            href = node.get("href") if hasattr(node, "get") else None
            if not href:
                continue
            url = join_url(page_url, str(href).strip())
            if url and url not in seen:
                seen.add(url)
                pages.append(url)
        return pages[:MAX_EXTRA_PAGES]


class SourceSearcher:
    """Runs a search against one rule: request, parse, one level of pagination."""

    def __init__(self, fetcher: Fetcher, extractor: Extractor, limit: int = 0) -> None:
        self._fetcher = fetcher
        self._parser = SearchParser(extractor)
        self._limit = limit

    def search(self, rule: Rule, keyword: str, token: Optional[CancelToken] = None) -> List[SearchResult]:
        request = build_search_request(rule, keyword)
        logger.info("searching %s (%d): %s [%s]", rule.name, rule.id, request.url, request.method)
        start = time.monotonic()
        response = self._fetcher.fetch(
            request.url, method=request.method, body=request.body, headers=request.headers, token=token
        )
        logger.debug("search %s (%d) answered in %.2fs", rule.name, rule.id, time.monotonic() - start)

        results, pages = self._parser.parse(response.content, response.url, rule, allow_pagination=True)
        for page_url in pages:
            try:
                page = self._fetcher.fetch(page_url, headers={"Referer": response.url}, token=token)
            except DownloadCancelled:
                raise
            except NovelError as exc:
                logger.warning("search page %s for %s skipped: %s", page_url, rule.name, exc)
                continue
            extra, _ = self._parser.parse(page.content, page.url, rule, allow_pagination=False)
            results.extend(extra)

        logger.info("source %s (%d) returned %d result(s)", rule.name, rule.id, len(results))
        if self._limit > 0:
            results = results[: self._limit]
        return results


class SearchAggregator:
    """Searches every searchable rule concurrently and ranks the merged list.

    A failing source is logged and skipped; the aggregate never raises
    because of one source.
    """

    def __init__(
        self,
        rules: RuleRepository,
        rule_file: str,
        searcher: SourceSearcher,
        max_workers: int = MAX_CONCURRENT_SOURCES,
        retries: int = SOURCE_RETRIES,
        retry_wait: float = 2.0,
        limit: int = MAX_RESULTS,
    ) -> None:
        self._rules = rules
        self._rule_file = rule_file
        self._searcher = searcher
        self._max_workers = max_workers
        self._retries = retries
        self._retry_wait = retry_wait
        self._limit = limit

    def aggregate(self, keyword: str, token: Optional[CancelToken] = None) -> List[SearchResult]:
        rules = self._rules.get_searchable(self._rule_file)
        merged: List[SearchResult] = []
        if rules:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="search") as executor:
                for found in executor.map(lambda r: self._search_one(r, keyword, token), rules):
                    merged.extend(found)
        ranked = rank_results(keyword, merged, limit=self._limit)
        logger.info("aggregated search for %r: %d merged, %d after ranking", keyword, len(merged), len(ranked))
        return ranked

    def _search_one(self, rule: Rule, keyword: str, token: Optional[CancelToken]) -> List[SearchResult]:
        attempts = self._retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._searcher.search(rule, keyword, token=token)
            except DownloadCancelled:
                return []
            except Exception as exc:  # noqa: BLE001
                if is_timeout(exc):
                    logger.warning("source %s (%d) timed out, not retrying: %s", rule.name, rule.id, exc)
                    return []
                if attempt >= attempts:
                    logger.warning("source %s (%d) failed: %s", rule.name, rule.id, exc)
                    return []
                logger.info("source %s (%d) error: %s, retry %d/%d", rule.name, rule.id, exc, attempt, self._retries)
                wait = self._retry_wait * attempt
                if token is not None:
                    if token.sleep(wait):
                        return []
                elif wait > 0:
                    time.sleep(wait)
        return []
