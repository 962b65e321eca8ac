from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from .cancel import CancelToken
from .errors import ConfigError, ExtractionError
from .extractor import Extractor, Fragment, join_url, parse_html
from .fetcher import Fetcher
from .locator import Locator, LocatorKind
from .models import Book, Chapter, ChapterRule, Rule

logger = logging.getLogger(__name__)

DEFAULT_BOOK_NAME = "未知书名"
DEFAULT_AUTHOR = "未知作者"

MAX_CHAPTER_PAGES = 20
MAX_TOC_PAGES = 50

_BOOK_ID_PATTERNS = (
    re.compile(r"/book/(\d+)\.html"),
    re.compile(r"/book/(\d+)/?"),
    re.compile(r"[?&]id=(\d+)"),
    re.compile(r"/book/[a-zA-Z]*(\d+)\.html"),
    re.compile(r"/book/(\d+)$"),
)

# "name(author)" with ascii or full-width parentheses
_TITLE_PAREN = re.compile(r"^(.+?)[(（](.+?)[)）]")

_AUTHOR_SELECTORS = ("meta[name='author']", ".author", "#author", "[class*='author']")


def extract_book_id(url: str) -> str:
    for pattern in _BOOK_ID_PATTERNS:
        m = pattern.search(url)
        if m:
            return m.group(1)
    return ""


def source_id_from_url(url: str) -> Optional[int]:
    """The `sourceId` query parameter, if present and numeric."""
    values = parse_qs(urlparse(url).query).get("sourceId")
    if not values:
        return None
    try:
        return int(values[0])
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# fallback chains
# ---------------------------------------------------------------------------


@dataclass
class BookPage:
    """What the fallback strategies look at: the parsed page and its URL."""

    url: str
    soup: BeautifulSoup

    @property
    def title(self) -> str:
        node = self.soup.find("title")
        return node.get_text().strip() if node is not None else ""

    def query(self, name: str) -> str:
        values = parse_qs(urlparse(self.url).query).get(name)
        return values[0].strip() if values else ""


Strategy = Callable[[BookPage], str]


class FallbackChain:
    """Ordered (name, strategy) pairs; the first non-empty answer wins."""

    def __init__(self, strategies: Sequence[Tuple[str, Strategy]], default: str) -> None:
        self.strategies = list(strategies)
        self.default = default

    def resolve(self, page: BookPage) -> Tuple[str, str]:
        """Return (value, strategy name); ("<default>", "default") when all miss."""
        for name, strategy in self.strategies:
            value = strategy(page).strip()
            if value:
                return value, name
        return self.default, "default"


def from_query(param: str) -> Strategy:
    return lambda page: page.query(param)


def from_og_meta(prop: str) -> Strategy:
    def strategy(page: BookPage) -> str:
        node = page.soup.find("meta", attrs={"property": prop})
        return str(node.get("content", "")) if node is not None else ""

    return strategy


def from_h1(page: BookPage) -> str:
    node = page.soup.find("h1")
    return node.get_text().strip() if node is not None else ""


def from_author_elements(page: BookPage) -> str:
    for selector in _AUTHOR_SELECTORS:
        node = page.soup.select_one(selector)
        if node is None:
            continue
        text = node.get_text().strip()
        if text:
            return text
        content = node.get("content")
        if content:
            return str(content).strip()
    return ""


def from_title_paren(group: int) -> Strategy:
    def strategy(page: BookPage) -> str:
        m = _TITLE_PAREN.match(page.title)
        return m.group(group).strip() if m else ""

    return strategy


def from_title_dash(index: int) -> Strategy:
    def strategy(page: BookPage) -> str:
        parts = page.title.split(" - ")
        if len(parts) < 2:
            return ""
        value = parts[index].strip()
        if index > 0:
            # "author,extra words"
            value = value.split(",")[0].strip()
        return value

    return strategy


BOOK_NAME_CHAIN = FallbackChain(
    [
        ("url-query", from_query("bookName")),
        ("og-meta", from_og_meta("og:novel:book_name")),
        ("h1", from_h1),
        ("title-parens", from_title_paren(1)),
        ("title-dash", from_title_dash(0)),
    ],
    default=DEFAULT_BOOK_NAME,
)

AUTHOR_CHAIN = FallbackChain(
    [
        ("url-query", from_query("author")),
        ("og-meta", from_og_meta("og:novel:author")),
        ("author-element", from_author_elements),
        ("title-parens", from_title_paren(2)),
        ("title-dash", from_title_dash(1)),
    ],
    default=DEFAULT_AUTHOR,
)


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------


class BookParser:
    """Book page, table of contents and chapter pages for one rule."""

    def __init__(
        self,
        fetcher: Fetcher,
        extractor: Extractor,
        name_chain: FallbackChain = BOOK_NAME_CHAIN,
        author_chain: FallbackChain = AUTHOR_CHAIN,
    ) -> None:
        self._fetcher = fetcher
        self._extractor = extractor
        self._name_chain = name_chain
        self._author_chain = author_chain

    def parse_book(self, url: str, rule: Rule, token: Optional[CancelToken] = None) -> Book:
        response = self._fetcher.fetch(url, token=token)
        soup = parse_html(response.content)
        ex = self._extractor
        b = rule.book

        book = Book(
            url=url,
            source_id=rule.id,
            book_name=ex.resolve(soup, b.book_name),
            author=ex.resolve(soup, b.author),
            intro=ex.resolve(soup, b.intro),
            category=ex.resolve(soup, b.category),
            latest_chapter=ex.resolve(soup, b.latest_chapter),
            last_update_time=ex.resolve(soup, b.last_update_time),
            status=ex.resolve(soup, b.status),
            word_count=ex.resolve(soup, b.word_count),
        )
        cover = ex.resolve_attr(soup, b.cover_url, "src") or ex.resolve_attr(soup, b.cover_url, "content")
        book.cover_url = join_url(response.url, cover)

        page = BookPage(url=url, soup=soup)
        if not book.book_name:
            book.book_name, how = self._name_chain.resolve(page)
            logger.debug("book name %r from %s", book.book_name, how)
        if not book.author:
            book.author, how = self._author_chain.resolve(page)
            logger.debug("author %r from %s", book.author, how)

        logger.info("parsed book %s (%s) from %s", book.book_name, book.author, url)
        return book

    def toc_url(self, book_url: str, rule: Rule) -> str:
        template = rule.toc.url
        if not template:
            return book_url
        url = template
        if "%s" in url:
            book_id = extract_book_id(book_url)
            if not book_id:
                raise ConfigError(f"cannot extract a book id from {book_url}")
            url = url.replace("%s", book_id)
        if "%s" in url:
            raise ConfigError(f"toc url still has a placeholder: {url}")
        return url

    def parse_toc(self, book_url: str, rule: Rule, token: Optional[CancelToken] = None) -> List[Chapter]:
        toc = rule.toc
        url = self.toc_url(book_url, rule)
        logger.debug("toc url for %s is %s", book_url, url)

        entries: List[Tuple[str, str]] = []
        next_page = toc.next_page if toc.pagination else None
        for page_url, soup in self._pages(url, next_page, MAX_TOC_PAGES, token):
            base = toc.base_uri or rule.url or page_url
            for item in self._extractor.select(soup, toc.item):
                link = _link_of(item)
                if link is None:
                    continue
                href = str(link.get("href", "")).strip()
                if not href:
                    continue
                entries.append((item.get_text().strip(), join_url(base, href)))

        if toc.is_desc:
            entries.reverse()
        chapters = [Chapter(order=i, title=title, url=href) for i, (title, href) in enumerate(entries, start=1)]
        logger.info("toc for %s: %d chapter(s)", book_url, len(chapters))
        return chapters

    def parse_chapter(self, url: str, rule: Rule, token: Optional[CancelToken] = None) -> str:
        """Chapter text across its pages, with filter tags and filter text removed."""
        cr = rule.chapter
        next_page = cr.next_page if cr.pagination else None
        parts: List[str] = []
        for _, soup in self._pages(url, next_page, MAX_CHAPTER_PAGES, token, strip=cr.filter_tag):
            text = self._content(soup, cr)
            if text:
                parts.append(text)
        return apply_filter(cr.filter_txt, "\n".join(parts))

    def _pages(
        self,
        url: str,
        next_page: Optional[Locator],
        limit: int,
        token: Optional[CancelToken],
        strip: str = "",
    ) -> Iterator[Tuple[str, BeautifulSoup]]:
        visited = set()
        while url and url not in visited and len(visited) < limit:
            visited.add(url)
            response = self._fetcher.fetch(url, token=token)
            soup = parse_html(response.content)
            if strip:
                remove_tags(soup, strip)
            yield response.url, soup
            if not next_page:
                return
            url = self._extractor.resolve_abs(soup, next_page, "href", response.url)

    def _content(self, soup: Fragment, rule: ChapterRule) -> str:
        loc = rule.content
        if loc.is_empty:
            return ""
        if loc.transform is not None or loc.kind is LocatorKind.META:
            return self._extractor.resolve(soup, loc)
        nodes = self._extractor.select(soup, loc)
        return paragraphs_text(nodes[0]) if nodes else ""


def _link_of(item: Fragment) -> Optional[Tag]:
    if isinstance(item, Tag) and item.name == "a":
        return item
    return item.find("a", href=True)


def paragraphs_text(node: Fragment) -> str:
    """Text of `node` with one paragraph per line (handles both <p> and <br> layouts)."""
    lines = (line.strip() for line in node.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def remove_tags(soup: Fragment, selectors: str) -> int:
    """Decompose every element matched by the whitespace/comma separated selectors."""
    removed = 0
    for selector in re.split(r"[\s,]+", selectors.strip()):
        if not selector:
            continue
        try:
            found = soup.select(selector)
        except Exception as exc:  # noqa: BLE001
            logger.debug("filter tag %r is not a valid selector: %s", selector, exc)
            continue
        for node in found:
            node.decompose()
            removed += 1
    return removed


def apply_filter(pattern: str, content: str) -> str:
    if not pattern:
        return content
    try:
        return re.sub(pattern, "", content)
    except re.error as exc:
        raise ExtractionError(f"invalid filter pattern {pattern!r}: {exc}") from exc
