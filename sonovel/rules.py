from __future__ import annotations

import json
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ConfigError
from .models import Rule

logger = logging.getLogger(__name__)

DEFAULT_RULE_DIRS = (".", os.path.join("configs", "rules"), os.path.join("..", "configs", "rules"))


def parse_rules(text: str, source: str = "<string>") -> Tuple[Rule, ...]:
    """Parse a JSON array of rule objects; every locator is parsed here, once."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"rule file {source} is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ConfigError(f"rule file {source} must contain a JSON array")
    rules: List[Rule] = []
    for i, entry in enumerate(data):
        try:
            rules.append(Rule.from_dict(entry))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"rule #{i} in {source} is invalid: {exc}") from exc
    return tuple(rules)


class RuleRepository:
    """Read-through cache of rule files keyed by file name.

    A file is read on first use and kept for the lifetime of the
    repository. Pass one instance to everything that needs rules.
    """

    def __init__(self, search_dirs: Iterable[str] = DEFAULT_RULE_DIRS) -> None:
        self._search_dirs = tuple(search_dirs)
        self._cache: Dict[str, Tuple[Rule, ...]] = {}
        self._lock = threading.Lock()

    def _locate(self, name: str) -> Optional[str]:
        if os.path.isabs(name):
            return name if os.path.isfile(name) else None
        for directory in self._search_dirs:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                return candidate
        return None

    def load_rules(self, name: str) -> List[Rule]:
        with self._lock:
            cached = self._cache.get(name)
            if cached is None:
                cached = self._read(name)
                self._cache[name] = cached
        return list(cached)

    def _read(self, name: str) -> Tuple[Rule, ...]:
        path = self._locate(name)
        if path is None:
            raise ConfigError(f"rule file not found: {name}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as exc:
            raise ConfigError(f"cannot read rule file {path}: {exc}") from exc
        rules = parse_rules(text, source=path)
        logger.info("loaded %d rule(s) from %s", len(rules), path)
        return rules

    def get_by_id(self, name: str, rule_id: int) -> Optional[Rule]:
        for rule in self.load_rules(name):
            if rule.id == rule_id:
                return rule
        return None

    def require(self, name: str, rule_id: int) -> Rule:
        rule = self.get_by_id(name, rule_id)
        if rule is None:
            raise ConfigError(f"no rule with id {rule_id} in {name}")
        return rule

    def get_searchable(self, name: str) -> List[Rule]:
        return [rule for rule in self.load_rules(name) if not rule.search.disabled]

    def preload(self, name: str, rules: Iterable[Rule]) -> None:
        """Seed the cache (tests, embedded rule sets)."""
        with self._lock:
            self._cache[name] = tuple(rules)

    def is_cached(self, name: str) -> bool:
        with self._lock:
            return name in self._cache
