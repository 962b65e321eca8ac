"""Rule-driven novel crawler.

Searches and downloads serialized novels from sites described by JSON
rule files instead of per-site scraping code.

Key modules:
    locator     -- Locator / LocatorKind, parsed once per rule field
    extractor   -- Extractor resolving locators against bs4 fragments
    sandbox     -- JsSandbox for @js: text transforms
    fetcher     -- Fetcher with retry, proxy and a shared cookie jar
    controller  -- BatchCoordinator for bounded, fail-fast chapter batches
    search      -- SourceSearcher and SearchAggregator
    ranking     -- similarity scoring and result ranking
    book        -- BookParser (book page, toc, chapters) and fallback chains
    crawler     -- Crawler wiring everything together
    rules       -- RuleRepository read-through cache
    registry    -- TaskRegistry of cancellable downloads
    storage     -- ProgressSink implementations
    writer      -- TxtWriter and EpubWriter
    config      -- Config dataclasses and INI loading
    backoff     -- BackoffStrategy for retry delays
    rate_limiter-- Throttle between chapter fetches
"""

__version__ = "0.1.0"
