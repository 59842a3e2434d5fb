"""
VTM - Research Cache
====================
Content-addressed cache of external lookups made during spec/ADR
generation. One file per entry:

    <cache-dir>/<YYYY-MM-DD>/<sha256 of normalized query>.json

The cache is advisory. Any failure to read or write it is logged and
treated as a miss, never raised to the caller.
"""

import hashlib
import json
import logging
import re
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from .errors import CacheError
from .schema import CacheEntry, utcnow
from .store import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60
STATS_FILE = "stats.json"
DATE_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    total_size: int = 0
    entries_count: int = 0
    expired_count: int = 0


def normalize(query: str) -> str:
    return " ".join(query.lower().split())


def cache_key(query: str) -> str:
    return hashlib.sha256(normalize(query).encode("utf-8")).hexdigest()


class ResearchCache:
    """TTL-bounded research cache with persisted hit/miss accounting"""

    def __init__(
        self,
        cache_dir: Union[str, Path] = ".claude/cache/research",
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS
    ):
        self.cache_dir = Path(cache_dir)
        self.default_ttl_seconds = default_ttl_seconds

    # ========================================
    # LOOKUPS
    # ========================================

    def get(self, query: str) -> Optional[Any]:
        """Cached result for query, or None on miss/expiry/error"""
        entry = self._lookup(query)
        return entry.result if entry is not None else None

    def has(self, query: str) -> bool:
        """True if a fresh entry exists. Does not touch hit/miss counters."""
        entry = self.info(query)
        return entry is not None and not entry.is_expired()

    def info(self, query: str) -> Optional[CacheEntry]:
        """The stored entry, expired or not. Does not touch hit/miss counters."""
        try:
            return self._find(cache_key(query))
        except CacheError as e:
            logger.warning(f"Cache read failed: {e}")
            return None

    def search(self, tags: List[str]) -> List[CacheEntry]:
        """Entries carrying every one of tags"""
        return [e for e in self._entries().values() if all(t in e.tags for t in tags)]

    def get_or_fetch(
        self,
        query: str,
        fetch: Callable[[str], Any],
        tags: Optional[List[str]] = None,
        ttl_seconds: Optional[int] = None
    ) -> Any:
        entry = self._lookup(query)
        if entry is not None:
            return entry.result
        result = fetch(query)
        self.put(query, result, tags=tags, ttl_seconds=ttl_seconds)
        return result

    # ========================================
    # WRITES
    # ========================================

    def put(
        self,
        query: str,
        result: Any,
        tags: Optional[List[str]] = None,
        ttl_seconds: Optional[int] = None
    ) -> Optional[CacheEntry]:
        """Store result, replacing any entry for the same key. None if the write failed."""
        entry = CacheEntry(
            key=cache_key(query),
            query=query,
            result=result,
            tags=list(tags or []),
            ttl_seconds=self.default_ttl_seconds if ttl_seconds is None else ttl_seconds,
        )
        path = self.cache_dir / entry.created_at.strftime("%Y-%m-%d") / f"{entry.key}.json"
        try:
            text = json.dumps(entry.model_dump(mode="json"), indent=2, ensure_ascii=False)
            atomic_write_text(path, text + "\n")
            for stale in self._paths_for(entry.key):
                if stale != path:
                    stale.unlink()
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {entry.key[:12]}: {e}")
            return None
        logger.debug(f"💾 Cached: {query[:60]}")
        return entry

    # ========================================
    # MAINTENANCE
    # ========================================

    def clear(self, older_than_days: Optional[int] = None) -> int:
        """Remove all entries, or only those created more than N days ago"""
        if older_than_days is None:
            count = len(self._entries())
            try:
                for day in self._date_dirs():
                    shutil.rmtree(day)
            except OSError as e:
                logger.warning(f"Cache clear failed: {e}")
            logger.info(f"🧹 Cleared {count} cache entries")
            return count

        cutoff = utcnow() - timedelta(days=older_than_days)
        return self._remove_where(
            lambda e: e.age_seconds(cutoff) >= 0,
            f"older than {older_than_days} day(s)",
        )

    def clear_expired(self) -> int:
        return self._remove_where(lambda e: e.is_expired(), "expired")

    def clear_tags(self, tags: List[str]) -> int:
        return self._remove_where(lambda e: any(t in e.tags for t in tags), "tagged")

    def stats(self) -> CacheStats:
        counters = self._read_counters()
        hits, misses = counters.get("hits", 0), counters.get("misses", 0)
        total = hits + misses

        entries = self._entries()
        size = 0
        for path in entries:
            try:
                size += path.stat().st_size
            except OSError:
                continue

        return CacheStats(
            hits=hits,
            misses=misses,
            hit_rate=round(hits / total * 100, 2) if total else 0.0,
            total_size=size,
            entries_count=len(entries),
            expired_count=sum(1 for e in entries.values() if e.is_expired()),
        )

    # ========================================
    # HELPER METHODS
    # ========================================

    def _lookup(self, query: str) -> Optional[CacheEntry]:
        """Fresh entry for query, counting the hit or miss"""
        key = cache_key(query)
        try:
            entry = self._find(key)
        except CacheError as e:
            logger.warning(f"Cache read failed for {key[:12]}: {e}")
            entry = None

        if entry is not None and entry.is_expired():
            logger.debug(f"Cache entry expired: {key[:12]}")
            self._evict(key)
            entry = None

        self._count("hits" if entry is not None else "misses")
        return entry

    def _date_dirs(self) -> List[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(d for d in self.cache_dir.iterdir() if d.is_dir() and DATE_DIR.match(d.name))

    def _paths_for(self, key: str) -> List[Path]:
        return [day / f"{key}.json" for day in self._date_dirs() if (day / f"{key}.json").exists()]

    def _read(self, path: Path) -> CacheEntry:
        try:
            return CacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheError(f"{path}: {e}") from e

    def _find(self, key: str) -> Optional[CacheEntry]:
        try:
            paths = self._paths_for(key)
        except OSError as e:
            raise CacheError(str(e)) from e
        if not paths:
            return None
        # Newest date directory wins if an overwrite was interrupted
        return self._read(paths[-1])

    def _entries(self) -> Dict[Path, CacheEntry]:
        entries = {}
        try:
            day_dirs = self._date_dirs()
        except OSError as e:
            logger.warning(f"Cache scan failed: {e}")
            return entries
        for day in day_dirs:
            for path in sorted(day.glob("*.json")):
                try:
                    entries[path] = self._read(path)
                except CacheError as e:
                    logger.warning(f"Skipping corrupted cache entry: {e}")
        return entries

    def _remove_where(self, predicate: Callable[[CacheEntry], bool], label: str) -> int:
        removed = 0
        for path, entry in self._entries().items():
            if not predicate(entry):
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove cache entry {path}: {e}")
        self._prune_empty_dirs()
        logger.info(f"🧹 Cleared {removed} {label} cache entries")
        return removed

    def _evict(self, key: str) -> None:
        try:
            for path in self._paths_for(key):
                path.unlink()
        except OSError as e:
            logger.warning(f"Could not evict expired entry {key[:12]}: {e}")

    def _prune_empty_dirs(self) -> None:
        try:
            for day in self._date_dirs():
                if not any(day.iterdir()):
                    day.rmdir()
        except OSError as e:
            logger.debug(f"Could not prune cache directories: {e}")

    def _read_counters(self) -> Dict[str, int]:
        path = self.cache_dir / STATS_FILE
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Cache counters unreadable, starting over: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: int(v) for k, v in data.items() if k in ("hits", "misses") and isinstance(v, int)}

    def _count(self, field: str) -> None:
        counters = self._read_counters()
        counters[field] = counters.get(field, 0) + 1
        try:
            atomic_write_text(self.cache_dir / STATS_FILE, json.dumps(counters) + "\n")
        except OSError as e:
            logger.warning(f"Could not update cache counters: {e}")
