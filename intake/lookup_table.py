"""
Name -> id lookups for OpenProject projects, priorities, types, statuses and users,
kept as JSON files on local disk and refreshed from the API on a long interval.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

LookupCategory = str

REMOTE_CATEGORIES: Tuple[LookupCategory, ...] = (
    "projects",
    "priorities",
    "types",
    "statuses",
)
# Users are maintained by hand: listing them needs admin rights in OpenProject.
LOCAL_CATEGORIES: Tuple[LookupCategory, ...] = ("users",)
CATEGORIES: Tuple[LookupCategory, ...] = REMOTE_CATEGORIES + LOCAL_CATEGORIES


class CollectionSource(Protocol):
    def fetch_collection(self, endpoint: str) -> Sequence[Mapping[str, Any]]:
        ...


def index_by_name(elements: Sequence[Mapping[str, Any]]) -> Dict[str, int]:
    mapping: Dict[str, int] = {}
    for element in elements:
        name = str(element.get("name") or "").strip()
        element_id = element.get("id")
        if not name or element_id is None:
            continue
        mapping[name] = int(element_id)
    return mapping


class LookupTable:
    """Resolve human-readable names to OpenProject ids from a local cache."""

    def __init__(
        self,
        source: Optional[CollectionSource],
        *,
        cache_dir: Path | str = Path("json"),
        refresh_interval_seconds: int = 24 * 60 * 60,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.source = source
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.refresh_interval_seconds = max(60, refresh_interval_seconds)
        self.log = logger or logging.getLogger(self.__class__.__name__)
        self._entries: Dict[LookupCategory, Dict[str, int]] = {}
        self._lock = threading.Lock()
        self._last_refresh = 0.0

    def _cache_path(self, category: LookupCategory) -> Path:
        return self.cache_dir / f"{category}.json"

    def _read_category(self, category: LookupCategory) -> Optional[Dict[str, int]]:
        path = self._cache_path(category)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            self.log.error("Failed to read %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            self.log.error("Ignoring %s: expected a JSON object", path)
            return None
        mapping: Dict[str, int] = {}
        for name, value in data.items():
            try:
                mapping[str(name)] = int(value)
            except (TypeError, ValueError):
                self.log.warning("Ignoring non-numeric id for %s in %s", name, path)
        return mapping

    def _write_category(self, category: LookupCategory, mapping: Mapping[str, int]) -> None:
        path = self._cache_path(category)
        try:
            with path.open("w", encoding="utf-8") as handle:
                json.dump(dict(mapping), handle, ensure_ascii=False, indent=2)
            self.log.info("Saved %s %s to %s", len(mapping), category, path.name)
        except OSError as exc:
            self.log.error("Failed to write %s: %s", path, exc)

    def _fetch_remote(self, category: LookupCategory) -> Optional[Dict[str, int]]:
        if self.source is None:
            return None
        try:
            elements = self.source.fetch_collection(category)
        except Exception as exc:
            self.log.warning("Unable to fetch %s from OpenProject: %s", category, exc)
            return None
        return index_by_name(elements)

    def _load_cached(self) -> None:
        for category in CATEGORIES:
            mapping = self._read_category(category)
            if mapping is not None:
                self._entries[category] = mapping

    def initialize(self) -> None:
        """Load the cache, fetching remote categories only when a file is missing."""
        with self._lock:
            missing = [category for category in REMOTE_CATEGORIES if not self._cache_path(category).exists()]
            for category in LOCAL_CATEGORIES:
                if not self._cache_path(category).exists():
                    self.log.warning("Missing %s.json; seeding an empty mapping", category)
                    self._write_category(category, {})
            if missing:
                self.log.info("Missing lookup files for %s; fetching fresh data", ", ".join(missing))
                self._refresh_locked(missing)
            self._load_cached()
            self._last_refresh = time.monotonic()

    def refresh(self, force: bool = True) -> None:
        with self._lock:
            now = time.monotonic()
            if not force and self._entries and (now - self._last_refresh) < self.refresh_interval_seconds:
                return
            self._refresh_locked(REMOTE_CATEGORIES)
            self._load_cached()
            self._last_refresh = now

    def _refresh_locked(self, categories: Sequence[LookupCategory]) -> None:
        for category in categories:
            mapping = self._fetch_remote(category)
            if mapping is None:
                continue
            self._write_category(category, mapping)
            self._entries[category] = mapping

    def resolve(self, category: LookupCategory, name: Optional[str]) -> Optional[int]:
        if category not in CATEGORIES:
            raise KeyError(f"Unknown lookup category: {category}")
        if not name:
            return None
        with self._lock:
            if not self._entries:
                self._load_cached()
            return self._entries.get(category, {}).get(name.strip())
