"""End-to-end tests for the Crawler facade with canned pages."""

import json
import os
import shutil
import tempfile
import unittest
import zipfile
from dataclasses import replace

from sonovel.config import Config, CrawlConfig, DownloadConfig, SourceConfig
from sonovel.crawler import Crawler
from sonovel.errors import BatchError, ConfigError, DownloadCancelled, ExtractionError, FetchError
from sonovel.models import BatchState, FetchResponse, Rule
from sonovel.registry import TaskRegistry
from sonovel.rules import RuleRepository
from sonovel.storage import ChannelProgressSink

ENCODED = "%E4%BB%99%E9%80%86"
BOOK_URL = "https://www.example.com/book/123.html"
COVER_URL = "https://www.example.com/cover/123.gif"


class FakeFetcher:
    """Serves canned pages by URL."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def with_crawl(self, crawl):
        return self

    def fetch(self, url, method="GET", body=None, headers=None, token=None):
        self.calls.append(url)
        if token is not None:
            token.raise_if_cancelled()
        if url not in self.pages:
            raise FetchError(url, 1, status_code=404)
        return FetchResponse(200, self.pages[url].encode("utf-8"), url)


def _html(body):
    return f'<html><head><meta charset="utf-8"><title>t</title></head><body>{body}</body></html>'


RULES = [
    Rule.from_dict(
        {
            "id": 1,
            "url": "https://www.example.com/",
            "name": "示例",
            "search": {
                "url": "https://www.example.com/s?q=%s",
                "result": "li",
                "bookName": "a",
                "author": "span",
            },
            "book": {"bookName": "h1", "author": ".author", "coverUrl": "img.cover"},
            "toc": {"url": "https://www.example.com/book/%s/", "item": "dd a"},
            "chapter": {"content": "#content"},
        }
    ),
    Rule.from_dict({"id": 2, "name": "停用", "search": {"disabled": True}}),
]

PAGES = {
    BOOK_URL: _html("<h1>仙逆</h1><p class='author'>耳根</p><img class='cover' src='/cover/123.gif'>"),
    COVER_URL: "GIF89a-cover",
    "https://www.example.com/book/123/": _html(
        "<dl>"
        "<dd><a href='/book/123/1.html'>第一章</a></dd>"
        "<dd><a href='/book/123/2.html'>第二章</a></dd>"
        "<dd><a href='/book/123/3.html'>第三章</a></dd>"
        "</dl>"
    ),
    "https://www.example.com/book/123/1.html": _html("<div id='content'><p>一</p></div>"),
    "https://www.example.com/book/123/2.html": _html("<div id='content'><p>二</p></div>"),
    "https://www.example.com/book/123/3.html": _html("<div id='content'><p>三</p></div>"),
    f"https://www.example.com/s?q={ENCODED}": _html(
        "<ul><li><a href='/book/123.html'>仙逆</a><span>耳根</span></li>"
        "<li><a href='/book/124.html'>仙逆外传</a><span>某人</span></li></ul>"
    ),
}


class CrawlerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.config = Config(
            download=DownloadConfig(download_path=self.tmp, extname="txt"),
            source=SourceConfig(active_rules="rules.json", source_id=-1, search_limit=10),
            crawl=CrawlConfig(threads=2, min_interval=0, max_interval=0, enable_retry=False),
        )
        self.rules = RuleRepository(search_dirs=[])
        self.rules.preload("rules.json", RULES)
        self.registry = TaskRegistry()
        self.sink = ChannelProgressSink()
        self.pages = dict(PAGES)
        self.fetcher = FakeFetcher(self.pages)
        self.crawler = self.make_crawler(self.fetcher)

    def make_crawler(self, fetcher, config=None):
        return Crawler(
            config=config or self.config,
            rules=self.rules,
            fetcher=fetcher,
            registry=self.registry,
            sink=self.sink,
            search_retry_wait=0,
        )

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def drain(self, client_id):
        out = []
        while True:
            msg = self.sink.get(client_id)
            if msg is None:
                return out
            out.append(json.loads(msg))


class TestCrawl(CrawlerTestCase):
    """Verify the book download pipeline."""

    def test_download_writes_book(self):
        """A full download writes chapters in order and reports progress."""
        self.sink.connect("c1")
        self.registry.add("dl-1", client_id="c1")
        path = self.crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")

        self.assertEqual(os.path.basename(path), "仙逆(耳根).txt")
        with open(path, encoding="utf-8") as f:
            content = f.read()
        self.assertLess(content.index("第一章"), content.index("第二章"))
        self.assertLess(content.index("第二章"), content.index("第三章"))
        self.assertIn("　　二\n", content)

        msgs = self.drain("c1")
        types = [m["type"] for m in msgs]
        self.assertEqual(types[0], "connected")
        self.assertEqual(msgs[1], {"type": "book-download", "index": 0, "total": 3})
        self.assertEqual(sorted(m["index"] for m in msgs if m["type"] == "book-download")[-1], 3)
        self.assertEqual(msgs[-1], {"type": "book-download-complete", "total": 3})
        self.assertNotIn("dl-1", self.registry)
        # chapter cache removed by default
        self.assertEqual(os.listdir(self.tmp), ["仙逆(耳根).txt"])
        self.assertNotIn(COVER_URL, self.fetcher.calls)

    def test_injected_registry_is_used(self):
        """An empty registry passed in is the one the crawler uses."""
        registry = TaskRegistry()
        crawler = Crawler(config=self.config, rules=self.rules, fetcher=self.fetcher, registry=registry)
        self.assertIs(crawler.registry, registry)

    def test_cancel_during_download(self):
        """Cancelling through the caller's registry mid-batch ends it as CANCELLED."""
        registry = self.registry
        chapter_url = "https://www.example.com/book/123/1.html"

        class CancellingFetcher(FakeFetcher):
            def fetch(self, url, method="GET", body=None, headers=None, token=None):
                if url == chapter_url:
                    self.cancelled = registry.cancel("dl-1")
                return super().fetch(url, method, body, headers, token)

        fetcher = CancellingFetcher(self.pages)
        crawler = self.make_crawler(fetcher)
        self.sink.connect("c1")
        registry.add("dl-1", client_id="c1")

        with self.assertRaises(BatchError) as ctx:
            crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")
        self.assertTrue(fetcher.cancelled)
        self.assertEqual(ctx.exception.result.state, BatchState.CANCELLED)
        self.assertEqual(ctx.exception.result.errors, [])
        self.assertIn("book-download-error", [m["type"] for m in self.drain("c1")])
        self.assertEqual(os.listdir(self.tmp), [])
        self.assertNotIn("dl-1", registry)

    def test_book_page_failure_reported(self):
        """A failure before the batch starts still reaches the client."""
        del self.pages[BOOK_URL]
        self.sink.connect("c1")
        self.registry.add("dl-1", client_id="c1")
        with self.assertRaises(FetchError):
            self.crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")
        msgs = self.drain("c1")
        self.assertEqual(msgs[-1]["type"], "book-download-error")
        self.assertNotIn("dl-1", self.registry)

    def test_empty_toc_reported(self):
        """An empty table of contents is an ExtractionError sent to the client."""
        self.pages["https://www.example.com/book/123/"] = _html("<dl></dl>")
        self.sink.connect("c1")
        self.registry.add("dl-1", client_id="c1")
        with self.assertRaises(ExtractionError):
            self.crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")
        self.assertEqual(self.drain("c1")[-1]["type"], "book-download-error")

    def test_preserve_chapter_cache(self):
        """With preserve_chapter_cache the per-chapter files stay on disk."""
        config = replace(self.config, download=replace(self.config.download, preserve_chapter_cache=True))
        self.make_crawler(self.fetcher, config).crawl(BOOK_URL, source_id=1)
        cache_dir = os.path.join(self.tmp, "仙逆 (耳根) TXT")
        self.assertEqual(sorted(os.listdir(cache_dir)), ["1_第一章.txt", "2_第二章.txt", "3_第三章.txt"])
        with open(os.path.join(cache_dir, "2_第二章.txt"), encoding="utf-8") as f:
            self.assertEqual(f.read(), "二")

    def test_epub_format(self):
        """The format argument selects the writer and the cover is embedded."""
        path = self.crawler.crawl(BOOK_URL, source_id=1, fmt="epub")
        self.assertTrue(path.endswith(".epub"))
        with zipfile.ZipFile(path) as zf:
            self.assertEqual(zf.read("OEBPS/Images/cover.gif"), b"GIF89a-cover")

    def test_epub_without_cover(self):
        """A cover that cannot be fetched does not fail the download."""
        del self.pages[COVER_URL]
        path = self.crawler.crawl(BOOK_URL, source_id=1, fmt="epub")
        with zipfile.ZipFile(path) as zf:
            self.assertFalse([n for n in zf.namelist() if n.startswith("OEBPS/Images/")])

    def test_chapter_failure_fails_download(self):
        """A failing chapter raises BatchError, reports it and writes nothing."""
        del self.pages["https://www.example.com/book/123/2.html"]
        self.sink.connect("c1")
        self.registry.add("dl-1", client_id="c1")
        with self.assertRaises(BatchError) as ctx:
            self.crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")
        self.assertEqual(ctx.exception.result.first_error.order, 2)
        self.assertIn("book-download-error", [m["type"] for m in self.drain("c1")])
        self.assertEqual(os.listdir(self.tmp), [])
        self.assertNotIn("dl-1", self.registry)

    def test_cancelled_task(self):
        """A task cancelled before it starts stops at the first fetch."""
        task = self.registry.add("dl-1")
        self.crawler.cancel("dl-1")
        self.assertTrue(task.token.cancelled)
        with self.assertRaises(DownloadCancelled):
            self.crawler.crawl(BOOK_URL, source_id=1, download_id="dl-1")
        self.assertEqual(self.fetcher.calls, [BOOK_URL])
        self.assertNotIn("dl-1", self.registry)

    def test_source_id_from_url(self):
        """Without an explicit id the sourceId query parameter picks the rule."""
        self.assertEqual(self.crawler.resolve_rule(BOOK_URL + "?sourceId=1").id, 1)

    def test_missing_source_id(self):
        """No id anywhere is a ConfigError."""
        with self.assertRaises(ConfigError):
            self.crawler.resolve_rule(BOOK_URL)

    def test_unknown_source_id(self):
        """An id not in the rule file is a ConfigError."""
        with self.assertRaises(ConfigError):
            self.crawler.crawl(BOOK_URL, source_id=42)


class TestCrawlerSearch(CrawlerTestCase):
    """Verify single-source and aggregated search dispatch."""

    def test_aggregate_by_default(self):
        """source_id -1 searches every enabled rule and ranks."""
        results = self.crawler.search("仙逆")
        self.assertEqual([r.book_name for r in results], ["仙逆", "仙逆外传"])
        self.assertEqual(results[0].url, BOOK_URL)

    def test_single_source(self):
        """An explicit id searches that rule only."""
        results = self.crawler.search("仙逆", source_id=1)
        self.assertEqual(len(results), 2)

    def test_single_source_disabled(self):
        """Searching a disabled rule is a ConfigError."""
        with self.assertRaises(ConfigError):
            self.crawler.search("仙逆", source_id=2)

    def test_single_source_missing(self):
        """Searching an unknown rule is a ConfigError."""
        with self.assertRaises(ConfigError):
            self.crawler.search("仙逆", source_id=99)


if __name__ == "__main__":
    unittest.main()
