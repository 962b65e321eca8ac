from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import List, Optional

from sonovel.config import Config, load_config
from sonovel.crawler import Crawler
from sonovel.errors import NovelError
from sonovel.models import SearchResult

logger = logging.getLogger("sonovel")


def _apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    if args.source_id is not None:
        config = replace(config, source=replace(config.source, source_id=args.source_id))
    if args.format:
        config = replace(config, download=replace(config.download, extname=args.format))
    if args.threads is not None:
        config = replace(config, crawl=replace(config.crawl, threads=args.threads))
    if args.output:
        config = replace(config, download=replace(config.download, download_path=args.output))
    return config


def _print_results(results: List[SearchResult]) -> None:
    if not results:
        print("no results")
        return
    for i, r in enumerate(results, start=1):
        print(
            f"{i:3d}. [{r.source_id}:{r.source_name}] {r.book_name} / {r.author} "
            f"| {r.latest_chapter} | {r.url}"
        )


def run(args: argparse.Namespace) -> int:
    config = _apply_overrides(load_config(args.config), args)
    crawler = Crawler(config)

    if args.search:
        _print_results(crawler.search(args.search))
        return 0

    if args.download:
        path = crawler.crawl(args.download, download_id=args.download_id)
        print(f"saved to {path}")
        return 0

    print("Nothing to do. Use --search KEYWORD or --download URL.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Search and download novels using JSON rule files")
    parser.add_argument("--search", metavar="KEYWORD", help="Search for a book name or author")
    parser.add_argument("--download", metavar="URL", help="Download the book at URL")

    parser.add_argument("--source-id", type=int, default=None, help="Rule id to use (-1 searches all sources)")
    parser.add_argument("--format", choices=["epub", "txt"], default=None, help="Output format")
    parser.add_argument("--output", default=None, help="Download directory")
    parser.add_argument("--threads", type=int, default=None, help="Chapter download threads (<=0 for auto)")
    parser.add_argument("--download-id", default=None, help="Id to register the download under")

    parser.add_argument("--config", default=None, help="Path to config.ini")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return run(args)
    except NovelError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
