from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from .errors import ConfigError
from .models import CrawlRule

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.ini"
DEFAULT_SEARCH_PATHS = ("configs", ".")


@dataclass(frozen=True)
class DownloadConfig:
    download_path: str = "downloads"
    extname: str = "epub"
    preserve_chapter_cache: bool = False


@dataclass(frozen=True)
class SourceConfig:
    language: str = ""
    active_rules: str = "main-rules.json"
    source_id: int = -1
    search_limit: int = 10


@dataclass(frozen=True)
class CrawlConfig:
    threads: int = -1
    min_interval: int = 200
    max_interval: int = 400
    enable_retry: bool = True
    max_retries: int = 5
    retry_min_interval: int = 2000
    retry_max_interval: int = 4000
    timeout: float = 10.0
    impersonate: str = ""

    def merged_with(self, rule: CrawlRule) -> "CrawlConfig":
        """Apply a rule's positive crawl overrides on top of these settings."""
        overrides = {}
        if rule.threads > 0:
            overrides["threads"] = rule.threads
        if rule.min_interval > 0:
            overrides["min_interval"] = rule.min_interval
        if rule.max_interval > 0:
            overrides["max_interval"] = rule.max_interval
        if rule.max_attempts > 0:
            overrides["max_retries"] = rule.max_attempts - 1
        if rule.retry_min_interval > 0:
            overrides["retry_min_interval"] = rule.retry_min_interval
        if rule.retry_max_interval > 0:
            overrides["retry_max_interval"] = rule.retry_max_interval
        return replace(self, **overrides) if overrides else self


@dataclass(frozen=True)
class ProxyConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 7890

    @property
    def url(self) -> Optional[str]:
        if self.enabled and self.host and self.port > 0:
            return f"http://{self.host}:{self.port}"
        return None


@dataclass(frozen=True)
class Config:
    download: DownloadConfig = field(default_factory=DownloadConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)


def _get_int(section: configparser.SectionProxy, key: str, default: int) -> int:
    try:
        return section.getint(key, fallback=default)
    except ValueError as exc:
        raise ConfigError(f"[{section.name}] {key} must be an integer") from exc


def _get_float(section: configparser.SectionProxy, key: str, default: float) -> float:
    try:
        return section.getfloat(key, fallback=default)
    except ValueError as exc:
        raise ConfigError(f"[{section.name}] {key} must be a number") from exc


def _get_flag(section: configparser.SectionProxy, key: str, default: bool) -> bool:
    # the file uses 0/1 flags; getboolean also accepts true/false/yes/no
    try:
        return section.getboolean(key, fallback=default)
    except ValueError as exc:
        raise ConfigError(f"[{section.name}] {key} must be 0 or 1") from exc


def _section(parser: configparser.ConfigParser, name: str) -> configparser.SectionProxy:
    if not parser.has_section(name):
        parser.add_section(name)
    return parser[name]


def parse_config(text: str) -> Config:
    """Build a Config from INI text; keys absent from the text keep their defaults."""
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as exc:
        raise ConfigError(f"malformed config: {exc}") from exc

    d = DownloadConfig()
    s = SourceConfig()
    c = CrawlConfig()
    p = ProxyConfig()

    dl = _section(parser, "download")
    src = _section(parser, "source")
    cr = _section(parser, "crawl")
    px = _section(parser, "proxy")

    return Config(
        download=DownloadConfig(
            download_path=dl.get("download-path", d.download_path),
            extname=dl.get("extname", d.extname).lower(),
            preserve_chapter_cache=_get_flag(dl, "preserve-chapter-cache", d.preserve_chapter_cache),
        ),
        source=SourceConfig(
            language=src.get("language", s.language),
            active_rules=src.get("active-rules", s.active_rules),
            source_id=_get_int(src, "source-id", s.source_id),
            search_limit=_get_int(src, "search-limit", s.search_limit),
        ),
        crawl=CrawlConfig(
            threads=_get_int(cr, "threads", c.threads),
            min_interval=_get_int(cr, "min-interval", c.min_interval),
            max_interval=_get_int(cr, "max-interval", c.max_interval),
            enable_retry=_get_flag(cr, "enable-retry", c.enable_retry),
            max_retries=_get_int(cr, "max-retries", c.max_retries),
            retry_min_interval=_get_int(cr, "retry-min-interval", c.retry_min_interval),
            retry_max_interval=_get_int(cr, "retry-max-interval", c.retry_max_interval),
            timeout=_get_float(cr, "timeout", c.timeout),
            impersonate=cr.get("impersonate", c.impersonate).strip(),
        ),
        proxy=ProxyConfig(
            enabled=_get_flag(px, "enabled", p.enabled),
            host=px.get("host", p.host),
            port=_get_int(px, "port", p.port),
        ),
    )


def find_config_file(search_paths: Iterable[str] = DEFAULT_SEARCH_PATHS) -> Optional[str]:
    for directory in search_paths:
        candidate = os.path.join(directory, CONFIG_FILENAME)
        if os.path.isfile(candidate):
            return candidate
    return None


def load_config(path: Optional[str] = None) -> Config:
    """Load config from `path`, or from the first config.ini on the search path.

    No file at all means defaults. An explicit path that does not exist is an error.
    """
    if path is None:
        path = find_config_file()
        if path is None:
            logger.info("no %s found, using defaults", CONFIG_FILENAME)
            return Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc

    config = parse_config(text)
    logger.info("loaded config from %s", path)
    return config
