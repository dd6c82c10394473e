"""
Healing Cache - persistent store of previously successful locator replacements.

Entries are keyed by (page URL pattern, step kind, step label, original
locator hash) and carry success/failure counters fed back by the caller after
it actually tried the healed locator. This enables:
- Reusing a known healing without calling any analyzer
- Letting bad healings decay out of use: an entry whose success rate falls
  below the configured minimum is no longer served, but it is kept so its
  history stays available for analytics
- Bounded size: least-recently-used entries are evicted past max_entries
"""

import hashlib
import json
import re
import shutil
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from threading import Lock
from typing import Optional, Dict, Any, NamedTuple, Callable, List
from urllib.parse import urlsplit

from stepheal.self_healing.config import HealingCacheConfig
from stepheal.utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = "1.0"

_UUID_SEGMENT = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
_NUMERIC_SEGMENT = re.compile(r'^\d+$')


def normalize_url_pattern(url: str) -> str:
    """
    Reduce a page URL to a pattern shared by structurally identical pages.

    Query string and fragment are dropped; path segments that are UUIDs or
    all digits become ``*``, so ``/orders/42`` and ``/orders/99`` match.
    """
    if not url:
        return ""
    parts = urlsplit(url)
    segments = [
        '*' if _UUID_SEGMENT.match(seg) or _NUMERIC_SEGMENT.match(seg) else seg
        for seg in parts.path.split('/')
    ]
    return f"{parts.netloc}{'/'.join(segments)}"


def hash_locator(locator: str) -> str:
    """Short stable hash of the original locator."""
    return hashlib.sha1((locator or "").encode('utf-8')).hexdigest()[:16]


class CacheKey(NamedTuple):
    page_url_pattern: str
    step_kind: str
    step_label: str
    locator_hash: str

    def as_string(self) -> str:
        return f"{self.page_url_pattern}:{self.step_kind}:{self.step_label}:{self.locator_hash}"


@dataclass
class HealingCacheEntry:
    """Single cached healing with usage tracking."""
    page_url_pattern: str
    step_kind: str
    step_label: str
    locator_hash: str
    original_locator: str
    healed_locator: str
    confidence: float
    provider: str
    created_at: float = 0.0
    last_used_at: float = 0.0
    success_count: int = 1
    failure_count: int = 0
    expires_at: float = 0.0

    @property
    def key(self) -> CacheKey:
        return CacheKey(self.page_url_pattern, self.step_kind, self.step_label, self.locator_hash)

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 1.0
        return self.success_count / total

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingCacheEntry':
        return cls(**data)


class HealingCache:
    """
    Thread-safe healing cache with optional JSON persistence.

    With ``storage_path`` set, every mutation is written to disk (backup of
    the previous file, then an atomic rename), so healings survive restarts.
    """

    def __init__(
        self,
        config: Optional[HealingCacheConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            config: Cache settings (TTL, cap, admission threshold, storage)
            clock: Wall-clock source in seconds; injectable for tests
        """
        self.config = config if config is not None else HealingCacheConfig()
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[CacheKey, HealingCacheEntry]" = OrderedDict()

        self.storage_path = Path(self.config.storage_path) if self.config.storage_path else None
        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            if self.storage_path.exists():
                self._load()
                logger.info(f"Loaded {len(self._entries)} cached healings from {self.storage_path}")

    @staticmethod
    def make_key(page_url_pattern: str, step_kind: str, step_label: str, locator_hash: str) -> CacheKey:
        return CacheKey(page_url_pattern, step_kind, step_label, locator_hash)

    def get(
        self,
        page_url_pattern: str,
        step_kind: str,
        step_label: str,
        locator_hash: str
    ) -> Optional[HealingCacheEntry]:
        """
        Look up a reusable healing.

        Returns:
            A copy of the entry, or None when missing, expired, or below the
            minimum success rate (the row itself is kept in the last two cases)
        """
        if not self.config.enabled:
            return None

        key = self.make_key(page_url_pattern, step_kind, step_label, locator_hash)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            now = self._clock()
            if entry.is_expired(now):
                logger.debug(f"Cached healing expired: {key.as_string()}")
                return None

            if entry.success_rate < self.config.min_success_rate:
                logger.debug(
                    f"Cached healing below admission threshold "
                    f"({entry.success_rate:.0%} < {self.config.min_success_rate:.0%}): {key.as_string()}"
                )
                return None

            entry.last_used_at = now
            self._entries.move_to_end(key)
            self._save()
            return replace(entry)

    def peek(self, key: CacheKey) -> Optional[HealingCacheEntry]:
        """Return a copy of the stored row regardless of expiry or admission."""
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def set(self, entry: HealingCacheEntry) -> Optional[HealingCacheEntry]:
        """
        Add or update a cached healing.

        Re-caching the same healed locator keeps the creation time and
        counts one more success; a different healed locator replaces the
        entry and starts its history over.

        Returns:
            Copy of the stored entry, or None when the cache is disabled
        """
        if not self.config.enabled:
            return None

        now = self._clock()
        with self._lock:
            key = entry.key
            existing = self._entries.get(key)

            if existing and existing.healed_locator == entry.healed_locator:
                stored = replace(
                    existing,
                    confidence=entry.confidence,
                    provider=entry.provider,
                    last_used_at=now,
                    success_count=existing.success_count + 1,
                    expires_at=now + self.config.ttl_seconds,
                )
            else:
                if existing:
                    logger.info(
                        f"Replacing cached healing for '{entry.step_label}': "
                        f"{existing.healed_locator} -> {entry.healed_locator}"
                    )
                stored = replace(
                    entry,
                    created_at=entry.created_at or now,
                    last_used_at=now,
                    expires_at=now + self.config.ttl_seconds,
                )

            self._entries[key] = stored
            self._entries.move_to_end(key)
            self._evict_if_needed()
            self._save()
            return replace(stored)

    def record_success(self, key: CacheKey) -> bool:
        """
        Record a successful use of a cached healing; extends its TTL.

        Returns:
            True if the entry exists
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False

            now = self._clock()
            entry.success_count += 1
            entry.last_used_at = now
            entry.expires_at = now + self.config.ttl_seconds
            self._entries.move_to_end(key)
            self._save()
            return True

    def record_failure(self, key: CacheKey) -> bool:
        """
        Record a failed use of a cached healing.

        The entry is never deleted here; a falling success rate is what keeps
        it from being served.

        Returns:
            True if the entry exists
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False

            entry.failure_count += 1
            entry.last_used_at = self._clock()
            self._entries.move_to_end(key)

            if entry.success_rate < self.config.min_success_rate:
                logger.warning(
                    f"Cached healing for '{entry.step_label}' dropped below admission threshold "
                    f"({entry.success_count} ok / {entry.failure_count} failed)"
                )

            self._save()
            return True

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._save()
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._save()

    def cleanup(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            if expired:
                logger.info(f"Removed {len(expired)} expired cached healings")
                self._save()
            return len(expired)

    def entries(self) -> List[HealingCacheEntry]:
        """Copies of all rows, least recently used first."""
        with self._lock:
            return [replace(e) for e in self._entries.values()]

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            now = self._clock()
            valid = [e for e in self._entries.values() if not e.is_expired(now)]
            admitted = [e for e in valid if e.success_rate >= self.config.min_success_rate]
            return {
                'total_entries': len(self._entries),
                'valid_entries': len(valid),
                'expired_entries': len(self._entries) - len(valid),
                'admitted_entries': len(admitted),
                'average_success_rate': (
                    sum(e.success_rate for e in valid) / len(valid) if valid else 0.0
                ),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def _evict_if_needed(self) -> None:
        """Drop least-recently-used entries past max_entries (lock held)."""
        while len(self._entries) > self.config.max_entries:
            key, entry = self._entries.popitem(last=False)
            logger.debug(f"Evicted cached healing (LRU): {key.as_string()}")

    def _load(self) -> None:
        """Load entries from JSON file."""
        try:
            with open(self.storage_path, 'r', encoding='utf-8') as f:
                data = json.load(f)

            schema_version = data.get("schema_version", SCHEMA_VERSION)
            rows = [HealingCacheEntry.from_dict(row) for row in data.get("entries", [])]
            rows.sort(key=lambda e: e.last_used_at)
            for entry in rows:
                self._entries[entry.key] = entry
            self._evict_if_needed()

            logger.info(f"Loaded healing cache v{schema_version}")

        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Failed to load healing cache: {e}")
            self._entries = OrderedDict()

    def _save(self) -> None:
        """Save entries to JSON file with backup (lock held)."""
        if not self.storage_path:
            return
        try:
            if self.storage_path.exists():
                backup_path = self.storage_path.with_suffix('.json.bak')
                shutil.copy2(self.storage_path, backup_path)

            data = {
                "schema_version": SCHEMA_VERSION,
                "saved_at": self._clock(),
                "entries": [e.to_dict() for e in self._entries.values()],
            }

            temp_path = self.storage_path.with_suffix('.json.tmp')
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)

            temp_path.replace(self.storage_path)

        except OSError as e:
            logger.error(f"Failed to save healing cache: {e}")
