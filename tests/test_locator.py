"""Tests for locator parsing."""

import unittest

from sonovel.locator import EMPTY, LocatorKind, parse_locator


class TestParseLocator(unittest.TestCase):
    """Verify the kind, query and transform split."""

    def test_empty_and_none(self):
        """Blank and missing strings yield the EMPTY locator."""
        self.assertIs(parse_locator(None), EMPTY)
        self.assertIs(parse_locator(""), EMPTY)
        self.assertIs(parse_locator("   "), EMPTY)
        self.assertFalse(parse_locator(""))

    def test_css(self):
        """A plain selector is CSS with no transform."""
        loc = parse_locator("div.info > h1")
        self.assertEqual(loc.kind, LocatorKind.CSS)
        self.assertEqual(loc.query, "div.info > h1")
        self.assertIsNone(loc.transform)

    def test_xpath_prefixes(self):
        """Leading "/", "//" and "(" mean XPath."""
        for raw in ("/html/body/h1", "//div[@id='info']/p[1]", "(//a)[2]"):
            self.assertEqual(parse_locator(raw).kind, LocatorKind.XPATH, raw)

    def test_meta_prefix(self):
        """A meta[ prefix selects the metadata strategy."""
        loc = parse_locator("meta[property='og:novel:author']")
        self.assertEqual(loc.kind, LocatorKind.META)

    def test_js_suffix(self):
        """Code after @js: becomes the transform; the base keeps its kind."""
        loc = parse_locator("#info > p:nth-child(2)@js:r=r.replace('作者：','');")
        self.assertEqual(loc.kind, LocatorKind.CSS)
        self.assertEqual(loc.query, "#info > p:nth-child(2)")
        self.assertEqual(loc.transform, "r=r.replace('作者：','');")
        self.assertIsNone(loc.base.transform)
        self.assertEqual(loc.base.query, loc.query)

    def test_js_with_empty_base_is_empty(self):
        """A bare @js: snippet has nothing to resolve."""
        self.assertIs(parse_locator("@js:r='x'"), EMPTY)

    def test_only_first_marker_splits(self):
        """A second @js: belongs to the code."""
        loc = parse_locator("h1@js:r=r+'@js:'")
        self.assertEqual(loc.transform, "r=r+'@js:'")

    def test_str_is_raw(self):
        """str() gives back the original rule text."""
        self.assertEqual(str(parse_locator("  h1@js:r=r ")), "h1@js:r=r")


if __name__ == "__main__":
    unittest.main()
