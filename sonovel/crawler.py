from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

from .book import BookParser, source_id_from_url
from .cancel import CancelToken
from .config import Config
from .controller import BatchCoordinator
from .errors import BatchError, ConfigError, ExtractionError, FetchError, NovelError
from .extractor import Extractor
from .fetcher import Fetcher
from .models import Chapter, Rule, SearchResult
from .rate_limiter import Throttle
from .registry import TaskRegistry
from .rules import RuleRepository
from .search import SearchAggregator, SourceSearcher
from .storage import LogProgressSink, ProgressSink
from .writer import ChapterCache, writer_for

logger = logging.getLogger(__name__)


class Crawler:
    """Wires rules, fetcher, extractor, coordinator and writers together.

    Every collaborator can be injected; anything left out is built from
    the config.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        rules: Optional[RuleRepository] = None,
        fetcher: Optional[Fetcher] = None,
        extractor: Optional[Extractor] = None,
        registry: Optional[TaskRegistry] = None,
        sink: Optional[ProgressSink] = None,
        search_fetcher: Optional[Fetcher] = None,
        search_retry_wait: float = 2.0,
    ) -> None:
        self.config = config if config is not None else Config()
        self.rules = rules if rules is not None else RuleRepository()
        self.fetcher = fetcher if fetcher is not None else Fetcher.from_config(self.config)
        self.extractor = extractor if extractor is not None else Extractor()
        self.registry = registry if registry is not None else TaskRegistry()
        self.sink = sink if sink is not None else LogProgressSink()
        # search retries are done per source by the aggregator, not per request
        if search_fetcher is None:
            search_fetcher = self.fetcher.with_crawl(replace(self.config.crawl, enable_retry=False))
        self.search_fetcher = search_fetcher
        self._search_retry_wait = search_retry_wait

    @property
    def rule_file(self) -> str:
        return self.config.source.active_rules

    # -- search -------------------------------------------------------

    def search(
        self, keyword: str, source_id: Optional[int] = None, token: Optional[CancelToken] = None
    ) -> List[SearchResult]:
        """Search one source, or every searchable source when the id is negative."""
        sid = self.config.source.source_id if source_id is None else source_id
        searcher = SourceSearcher(self.search_fetcher, self.extractor, limit=self.config.source.search_limit)
        if sid < 0:
            aggregator = SearchAggregator(
                self.rules, self.rule_file, searcher, retry_wait=self._search_retry_wait
            )
            return aggregator.aggregate(keyword, token=token)

        rule = self.rules.require(self.rule_file, sid)
        if rule.search.disabled:
            raise ConfigError(f"search is disabled for source {rule.name} ({rule.id})")
        return searcher.search(rule, keyword, token=token)

    # -- download -----------------------------------------------------

    def resolve_rule(self, book_url: str, source_id: Optional[int] = None) -> Rule:
        """Explicit id, then the configured id, then a `sourceId` query parameter."""
        sid = source_id if source_id is not None and source_id > 0 else None
        if sid is None and self.config.source.source_id > 0:
            sid = self.config.source.source_id
        if sid is None:
            sid = source_id_from_url(book_url)
        if sid is None:
            raise ConfigError(f"no source id given for {book_url}")
        return self.rules.require(self.rule_file, sid)

    def crawl(
        self,
        book_url: str,
        source_id: Optional[int] = None,
        download_id: Optional[str] = None,
        fmt: Optional[str] = None,
    ) -> str:
        """Download a whole book and write it; returns the output path.

        With a `download_id` the registered task's token and client are
        used (the task is registered on the fly if needed) and the task is
        removed when the download ends, whatever the outcome.
        """
        rule = self.resolve_rule(book_url, source_id)
        fmt = fmt or self.config.download.extname
        writer = writer_for(fmt)
        crawl = self.config.crawl.merged_with(rule.crawl)
        fetcher = self.fetcher.with_crawl(crawl)
        parser = BookParser(fetcher, self.extractor)
        download = self.config.download

        token = CancelToken()
        target = ""
        if download_id:
            task = self.registry.get_or_add(download_id)
            token = task.token
            target = task.client_id

        cache: Optional[ChapterCache] = None
        try:
            try:
                book = parser.parse_book(book_url, rule, token=token)
                chapters = parser.parse_toc(book_url, rule, token=token)
                if not chapters:
                    raise ExtractionError(f"no chapters found for {book_url}")
            except NovelError as exc:
                self.sink.on_error(target, str(exc))
                raise

            cache = ChapterCache.for_book(download.download_path, book, fmt, len(chapters))
            coordinator = BatchCoordinator(
                threads=crawl.threads, throttle=Throttle(crawl.min_interval, crawl.max_interval)
            )
            logger.info(
                "downloading %s (%s): %d chapter(s), %d thread(s)",
                book.book_name, book.author, len(chapters), coordinator.limit,
            )
            self.sink.on_progress(target, 0, len(chapters))

            def work(chapter: Chapter, tok: CancelToken) -> str:
                content = parser.parse_chapter(chapter.url, rule, token=tok)
                cache.save(chapter, content)
                return content

            result = coordinator.run(
                chapters,
                work,
                token=token,
                on_progress=lambda current, total: self.sink.on_progress(target, current, total),
                on_error=lambda message: self.sink.on_error(target, message),
            )
            if not result.success:
                self.sink.on_error(target, f"download {result.state.value}")
                raise BatchError(result)

            cover = None
            if writer.embeds_cover and book.cover_url:
                cover = self._fetch_cover(fetcher, book.cover_url, token)
            path = writer.write(book, result.chapters, download.download_path, cover=cover)
            self.sink.on_complete(target, result.total)
            return path
        finally:
            if cache is not None and not download.preserve_chapter_cache:
                cache.clear()
            if download_id:
                self.registry.remove(download_id)

    def _fetch_cover(self, fetcher: Fetcher, url: str, token: CancelToken) -> Optional[bytes]:
        """Download the cover image; a failed fetch only loses the cover."""
        try:
            return fetcher.fetch(url, token=token).content or None
        except FetchError as exc:
            logger.warning("cover %s not downloaded: %s", url, exc)
            return None

    def cancel(self, download_id: str) -> bool:
        return self.registry.cancel(download_id)
