from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .locator import EMPTY, Locator, parse_locator

if TYPE_CHECKING:
    from .cancel import CancelToken


def _loc(data: Dict[str, Any], key: str) -> Locator:
    value = data.get(key)
    return parse_locator(value) if isinstance(value, str) else EMPTY


def _str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _int(data: Dict[str, Any], key: str, default: int = 0) -> int:
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SearchRule:
    disabled: bool = False
    url: str = ""
    method: str = "get"
    data: str = ""
    cookies: str = ""
    result: Locator = EMPTY
    book_name: Locator = EMPTY
    author: Locator = EMPTY
    category: Locator = EMPTY
    word_count: Locator = EMPTY
    status: Locator = EMPTY
    latest_chapter: Locator = EMPTY
    last_update_time: Locator = EMPTY
    pagination: bool = False
    next_page: Locator = EMPTY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchRule":
        return cls(
            disabled=bool(data.get("disabled", False)),
            url=_str(data, "url"),
            method=(_str(data, "method") or "get").lower(),
            data=_str(data, "data"),
            cookies=_str(data, "cookies"),
            result=_loc(data, "result"),
            book_name=_loc(data, "bookName"),
            author=_loc(data, "author"),
            category=_loc(data, "category"),
            word_count=_loc(data, "wordCount"),
            status=_loc(data, "status"),
            latest_chapter=_loc(data, "latestChapter"),
            last_update_time=_loc(data, "lastUpdateTime"),
            pagination=bool(data.get("pagination", False)),
            next_page=_loc(data, "nextPage"),
        )


@dataclass(frozen=True)
class BookRule:
    url: str = ""
    book_name: Locator = EMPTY
    author: Locator = EMPTY
    intro: Locator = EMPTY
    category: Locator = EMPTY
    cover_url: Locator = EMPTY
    latest_chapter: Locator = EMPTY
    last_update_time: Locator = EMPTY
    status: Locator = EMPTY
    word_count: Locator = EMPTY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookRule":
        return cls(
            url=_str(data, "url"),
            book_name=_loc(data, "bookName"),
            author=_loc(data, "author"),
            intro=_loc(data, "intro"),
            category=_loc(data, "category"),
            cover_url=_loc(data, "coverUrl"),
            latest_chapter=_loc(data, "latestChapter"),
            last_update_time=_loc(data, "lastUpdateTime"),
            status=_loc(data, "status"),
            word_count=_loc(data, "wordCount"),
        )


@dataclass(frozen=True)
class TocRule:
    base_uri: str = ""
    url: str = ""
    item: Locator = EMPTY
    is_desc: bool = False
    pagination: bool = False
    next_page: Locator = EMPTY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TocRule":
        return cls(
            base_uri=_str(data, "baseUri"),
            url=_str(data, "url"),
            item=_loc(data, "item"),
            is_desc=bool(data.get("isDesc", False)),
            pagination=bool(data.get("pagination", False)),
            next_page=_loc(data, "nextPage"),
        )


@dataclass(frozen=True)
class ChapterRule:
    title: Locator = EMPTY
    content: Locator = EMPTY
    paragraph_tag_closed: bool = False
    paragraph_tag: str = ""
    filter_txt: str = ""
    filter_tag: str = ""
    pagination: bool = False
    next_page: Locator = EMPTY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChapterRule":
        return cls(
            title=_loc(data, "title"),
            content=_loc(data, "content"),
            paragraph_tag_closed=bool(data.get("paragraphTagClosed", False)),
            paragraph_tag=_str(data, "paragraphTag"),
            filter_txt=data.get("filterTxt") or "",
            filter_tag=_str(data, "filterTag"),
            pagination=bool(data.get("pagination", False)),
            next_page=_loc(data, "nextPage"),
        )


@dataclass(frozen=True)
class CrawlRule:
    """Per-source overrides; zero means "use the global setting"."""

    threads: int = 0
    min_interval: int = 0
    max_interval: int = 0
    max_attempts: int = 0
    retry_min_interval: int = 0
    retry_max_interval: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlRule":
        return cls(
            threads=_int(data, "threads"),
            min_interval=_int(data, "minInterval"),
            max_interval=_int(data, "maxInterval"),
            max_attempts=_int(data, "maxAttempts"),
            retry_min_interval=_int(data, "retryMinInterval"),
            retry_max_interval=_int(data, "retryMaxInterval"),
        )


@dataclass(frozen=True)
class Rule:
    id: int
    url: str = ""
    name: str = ""
    comment: str = ""
    language: str = ""
    search: SearchRule = field(default_factory=SearchRule)
    book: BookRule = field(default_factory=BookRule)
    toc: TocRule = field(default_factory=TocRule)
    chapter: ChapterRule = field(default_factory=ChapterRule)
    crawl: CrawlRule = field(default_factory=CrawlRule)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        if not isinstance(data, dict):
            raise ValueError("rule entry must be a JSON object")
        if "id" not in data:
            raise ValueError("rule entry is missing 'id'")
        return cls(
            id=int(data["id"]),
            url=_str(data, "url"),
            name=_str(data, "name"),
            comment=_str(data, "comment"),
            language=_str(data, "language"),
            search=SearchRule.from_dict(data.get("search") or {}),
            book=BookRule.from_dict(data.get("book") or {}),
            toc=TocRule.from_dict(data.get("toc") or {}),
            chapter=ChapterRule.from_dict(data.get("chapter") or {}),
            crawl=CrawlRule.from_dict(data.get("crawl") or {}),
        )


@dataclass
class Book:
    url: str
    source_id: int = 0
    book_name: str = ""
    author: str = ""
    intro: str = ""
    category: str = ""
    cover_url: str = ""
    latest_chapter: str = ""
    last_update_time: str = ""
    status: str = ""
    word_count: str = ""


@dataclass
class Chapter:
    order: int  # 1-based, unique within a book
    title: str
    url: str
    content: str = ""


@dataclass
class SearchResult:
    source_id: int
    url: str = ""
    source_name: str = ""
    book_name: str = ""
    author: str = ""
    category: str = ""
    word_count: str = ""
    status: str = ""
    latest_chapter: str = ""
    last_update_time: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class FetchResponse:
    status_code: int
    content: bytes
    url: str


@dataclass(frozen=True)
class DownloadTask:
    task_id: str
    client_id: str
    token: "CancelToken"


class BatchState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemError:
    order: int
    url: str
    error: str
    error_type: str


@dataclass(frozen=True)
class BatchResult:
    state: BatchState
    completed: int
    total: int
    errors: List[ItemError]
    chapters: List[Chapter]
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return self.state is BatchState.COMPLETED

    @property
    def first_error(self) -> Optional[ItemError]:
        return self.errors[0] if self.errors else None
