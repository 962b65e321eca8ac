from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

JS_MARKER = "@js:"
XPATH_PREFIXES = ("/", "(")
META_PREFIX = "meta["


class LocatorKind(str, Enum):
    EMPTY = "empty"
    CSS = "css"
    XPATH = "xpath"
    META = "meta"


@dataclass(frozen=True)
class Locator:
    """A rule field parsed once at load time.

    `query` is the selector/expression without any @js: suffix and
    `transform` is the JS source after the marker (None when absent)."""

    kind: LocatorKind
    query: str = ""
    transform: Optional[str] = None
    raw: str = ""

    @property
    def is_empty(self) -> bool:
        return self.kind is LocatorKind.EMPTY

    @property
    def base(self) -> "Locator":
        """The same locator with its transform stripped."""
        if self.transform is None:
            return self
        return Locator(kind=self.kind, query=self.query, raw=self.query)

    def __bool__(self) -> bool:
        return not self.is_empty

    def __str__(self) -> str:
        return self.raw


EMPTY = Locator(LocatorKind.EMPTY)


def _classify(query: str) -> LocatorKind:
    if not query:
        return LocatorKind.EMPTY
    if query.startswith(XPATH_PREFIXES):
        return LocatorKind.XPATH
    if query.startswith(META_PREFIX):
        return LocatorKind.META
    return LocatorKind.CSS


def parse_locator(raw: Optional[str]) -> Locator:
    """Turn a rule string into a Locator.

    The text before the first "@js:" decides the kind; everything after it
    is transform code. A bare "@js:code" has an empty base and so yields
    EMPTY, matching what resolving an empty selector would produce.
    """
    if raw is None:
        return EMPTY
    raw = raw.strip()
    if not raw:
        return EMPTY

    transform: Optional[str] = None
    query = raw
    if JS_MARKER in raw:
        query, transform = raw.split(JS_MARKER, 1)
        query = query.strip()
        transform = transform.strip()

    kind = _classify(query)
    if kind is LocatorKind.EMPTY:
        return EMPTY
    return Locator(kind=kind, query=query, transform=transform, raw=raw)
