from __future__ import annotations

import logging
from typing import Any, List, Optional, Union
from urllib.parse import urljoin

import lxml.html
from bs4 import BeautifulSoup, Tag
from lxml import etree

from .errors import TransformError
from .locator import Locator, LocatorKind
from .sandbox import JsSandbox

logger = logging.getLogger(__name__)

Fragment = Union[BeautifulSoup, Tag]

HTML_PARSER = "lxml"


def parse_html(markup: Union[str, bytes]) -> BeautifulSoup:
    """Parse a page. Bytes are passed through so bs4 can sniff the charset (gbk pages)."""
    return BeautifulSoup(markup, HTML_PARSER)


def join_url(base: str, ref: str) -> str:
    if not ref:
        return ""
    if not base:
        return ref
    return urljoin(base, ref)


class Extractor:
    """Resolves parsed Locators against bs4 fragments.

    Every method is read-only with respect to the fragment and returns ""
    (or an empty list) when nothing matches; callers decide on fallbacks.
    """

    def __init__(self, sandbox: Optional[JsSandbox] = None) -> None:
        self._sandbox = sandbox if sandbox is not None else JsSandbox()

    # -- text ---------------------------------------------------------

    def resolve(self, fragment: Optional[Fragment], locator: Locator) -> str:
        if fragment is None or locator.is_empty:
            return ""
        if locator.transform is not None:
            text = self.resolve(fragment, locator.base)
            return self._transform(locator, text)
        if locator.kind is LocatorKind.XPATH:
            return self._xpath_text(fragment, locator.query)
        if locator.kind is LocatorKind.META:
            return self._meta_attr(fragment, locator.query, "content")
        return self._css_text(fragment, locator.query)

    # -- attributes ---------------------------------------------------

    def resolve_attr(self, fragment: Optional[Fragment], locator: Locator, attr: str) -> str:
        if fragment is None or locator.is_empty:
            return ""
        if locator.transform is not None:
            value = self.resolve_attr(fragment, locator.base, attr)
            if not value:
                return ""
            return self._transform(locator, value)
        if locator.kind is LocatorKind.XPATH:
            return self._xpath_attr(fragment, locator.query, attr)
        if locator.kind is LocatorKind.META:
            return self._meta_attr(fragment, locator.query, attr)
        return self._css_attr(fragment, locator.query, attr)

    def resolve_abs(self, fragment: Optional[Fragment], locator: Locator, attr: str, base_url: str) -> str:
        """Attribute lookup followed by a join against `base_url`."""
        return join_url(base_url, self.resolve_attr(fragment, locator, attr))

    # -- element lists ------------------------------------------------

    def select(self, fragment: Optional[Fragment], locator: Locator) -> List[Fragment]:
        """All elements matched by a container/item locator (transforms ignored)."""
        if fragment is None or locator.is_empty:
            return []
        if locator.kind is LocatorKind.XPATH:
            return self._xpath_elements(fragment, locator.query)
        scope = _root(fragment) if locator.kind is LocatorKind.META else fragment
        try:
            return list(scope.select(locator.query))
        except Exception as exc:  # noqa: BLE001
            # soupsieve raises SelectorSyntaxError (a ValueError) on bad selectors
            logger.debug("css selector %r failed: %s", locator.query, exc)
            return []

    # -- strategies ---------------------------------------------------

    def _transform(self, locator: Locator, text: str) -> str:
        if not locator.transform:
            return text
        try:
            return self._sandbox.run(locator.transform, text)
        except TransformError as exc:
            logger.warning("transform for %r failed, keeping raw value: %s", locator.raw, exc)
            return text

    def _first_css(self, fragment: Fragment, query: str) -> Optional[Tag]:
        try:
            return fragment.select_one(query)
        except Exception as exc:  # noqa: BLE001
            logger.debug("css selector %r failed: %s", query, exc)
            return None

    def _css_text(self, fragment: Fragment, query: str) -> str:
        node = self._first_css(fragment, query)
        if node is None:
            return ""
        return node.get_text().strip()

    def _css_attr(self, fragment: Fragment, query: str, attr: str) -> str:
        node = self._first_css(fragment, query)
        if node is None:
            return ""
        return _attr(node, attr)

    def _meta_attr(self, fragment: Fragment, query: str, attr: str) -> str:
        # meta tags live in <head>, outside whatever sub-tree we were handed
        node = self._first_css(_root(fragment), query)
        if node is None:
            return ""
        if node.has_attr(attr):
            return _attr(node, attr)
        if attr == "href" and node.has_attr("content"):
            return _attr(node, "content")
        return ""

    def _xpath_first(self, fragment: Fragment, expr: str) -> Any:
        tree = _to_lxml(fragment)
        if tree is None:
            return None
        try:
            found = tree.xpath(expr)
        except etree.XPathError as exc:
            logger.debug("xpath %r failed: %s", expr, exc)
            return None
        if isinstance(found, list):
            return found[0] if found else None
        # scalar results: count(), string(), boolean()
        return found

    def _xpath_text(self, fragment: Fragment, expr: str) -> str:
        node = self._xpath_first(fragment, expr)
        if node is None:
            return ""
        if isinstance(node, etree._Element):
            if isinstance(node.tag, str) and node.tag.lower() == "meta":
                return (node.get("content") or "").strip()
            return node.text_content().strip()
        if isinstance(node, bool):
            return "true" if node else "false"
        if isinstance(node, float) and node.is_integer():
            return str(int(node))
        return str(node).strip()

    def _xpath_attr(self, fragment: Fragment, expr: str, attr: str) -> str:
        node = self._xpath_first(fragment, expr)
        if node is None:
            return ""
        if not isinstance(node, etree._Element):
            # "//a/@href" already selected the attribute value
            return str(node).strip()
        value = node.get(attr)
        if value is None and attr == "href" and str(node.tag).lower() == "meta":
            value = node.get("content")
        return value or ""

    def _xpath_elements(self, fragment: Fragment, expr: str) -> List[Fragment]:
        tree = _to_lxml(fragment)
        if tree is None:
            return []
        try:
            found = tree.xpath(expr)
        except etree.XPathError as exc:
            logger.debug("xpath %r failed: %s", expr, exc)
            return []
        if not isinstance(found, list):
            return []
        out: List[Fragment] = []
        for node in found:
            if not isinstance(node, etree._Element):
                continue
            markup = lxml.html.tostring(node, encoding="unicode")
            wrapped = BeautifulSoup(markup, HTML_PARSER)
            # lets meta lookups inside the detached copy reach the page <head>
            wrapped.source_document = _root(fragment)
            # unwrap the html/body shell lxml-parser adds around a fragment
            first = wrapped.body.find(True) if wrapped.body else wrapped.find(True)
            out.append(first if first is not None else wrapped)
        return out


def _attr(node: Tag, attr: str) -> str:
    value = node.get(attr)
    if value is None:
        return ""
    if isinstance(value, list):
        # bs4 returns multi-valued attributes (class, rel) as lists
        return " ".join(value).strip()
    return str(value).strip()


def _root(fragment: Fragment) -> Fragment:
    """Top of the tree; for an XPath-selected copy, the document it was cut from."""
    node = fragment
    while node.parent is not None:
        node = node.parent
    return vars(node).get("source_document", node)


def _to_lxml(fragment: Fragment) -> Optional[Any]:
    markup = str(fragment)
    if not markup.strip():
        return None
    try:
        return lxml.html.document_fromstring(markup)
    except (etree.ParserError, ValueError) as exc:
        logger.debug("cannot re-parse fragment for xpath: %s", exc)
        return None
