from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlsplit

from intent_healer.config.schema import CacheConfig
from intent_healer.core.models import ActionType, FailureContext, LocatorInfo, LocatorStrategy

logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "heal-cache.json"
MIN_OUTCOMES_FOR_EVICTION = 3
MAX_FAILURE_RATIO = 0.5

_UUID_SEGMENT = re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


def normalize_url(url: str | None) -> str:
    if not url:
        return ""
    end = len(url)
    for marker in ("?", "#"):
        position = url.find(marker)
        if position > 0:
            end = min(end, position)
    return url[:end]


def extract_page_pattern(url: str | None) -> str:
    """Drops query/fragment and collapses UUID and numeric path segments."""

    normalized = normalize_url(url)
    if not normalized:
        return ""
    parts = urlsplit(normalized)
    path = _UUID_SEGMENT.sub("/{uuid}", parts.path)
    path = _NUMERIC_SEGMENT.sub("/{id}", path)
    prefix = f"{parts.scheme}://{parts.netloc}" if parts.scheme else parts.netloc
    return prefix + path


@dataclass(frozen=True, slots=True)
class CacheKey:
    page_url_pattern: str
    original_locator: LocatorInfo | None = None
    action_type: ActionType | None = None
    intent_hint: str | None = None

    @classmethod
    def build(
        cls,
        page_url: str | None,
        original_locator: LocatorInfo | None = None,
        action_type: ActionType | None = None,
        intent_hint: str | None = None,
    ) -> CacheKey:
        return cls(extract_page_pattern(page_url), original_locator, action_type, intent_hint)

    @classmethod
    def from_failure(cls, failure: FailureContext, page_url: str | None, intent_hint: str | None = None) -> CacheKey:
        return cls.build(page_url, failure.original_locator, failure.action_type, intent_hint)

    @property
    def hash(self) -> str:
        content = "|".join(
            (
                self.page_url_pattern or "",
                self.original_locator.strategy.value if self.original_locator else "",
                self.original_locator.value if self.original_locator else "",
                self.action_type.value if self.action_type else "",
                self.intent_hint or "",
            )
        )
        return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class CacheEntry:
    """One accepted heal plus its bookkeeping; counters are guarded by a per-entry lock."""

    def __init__(
        self,
        key: CacheKey,
        healed_locator: LocatorInfo,
        confidence: float,
        reasoning: str = "",
        *,
        created_at: float,
        ttl_seconds: float,
        raw_confidence: float | None = None,
        model_id: str | None = None,
        hit_count: int = 0,
        success_count: int = 0,
        failure_count: int = 0,
        last_accessed_at: float | None = None,
        expires_at: float | None = None,
    ) -> None:
        self.key = key
        self.healed_locator = healed_locator
        self.confidence = confidence
        self.raw_confidence = confidence if raw_confidence is None else raw_confidence
        self.model_id = model_id
        self.reasoning = reasoning
        self.created_at = created_at
        self.expires_at = created_at + ttl_seconds if expires_at is None else expires_at
        self.hit_count = hit_count
        self.success_count = success_count
        self.failure_count = failure_count
        self.last_accessed_at = created_at if last_accessed_at is None else last_accessed_at
        self._lock = threading.Lock()

    def record_hit(self, now: float) -> LocatorInfo:
        with self._lock:
            self.hit_count += 1
            self.last_accessed_at = now
        return self.healed_locator

    def record_success(self) -> None:
        with self._lock:
            self.success_count += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def should_evict(self) -> bool:
        with self._lock:
            total = self.success_count + self.failure_count
            return total >= MIN_OUTCOMES_FOR_EVICTION and self.failure_count / total > MAX_FAILURE_RATIO

    def is_dead(self, now: float) -> bool:
        return self.is_expired(now) or self.should_evict()

    @property
    def success_rate(self) -> float:
        with self._lock:
            total = self.success_count + self.failure_count
            return self.success_count / total if total else 1.0

    def to_dict(self) -> dict[str, Any]:
        original = self.key.original_locator
        with self._lock:
            return {
                "key_hash": self.key.hash,
                "page_url_pattern": self.key.page_url_pattern,
                "original_locator_strategy": original.strategy.value if original else None,
                "original_locator_value": original.value if original else None,
                "action_type": self.key.action_type.value if self.key.action_type else None,
                "intent_hint": self.key.intent_hint,
                "healed_locator_strategy": self.healed_locator.strategy.value,
                "healed_locator_value": self.healed_locator.value,
                "confidence": self.confidence,
                "raw_confidence": self.raw_confidence,
                "model_id": self.model_id,
                "reasoning": self.reasoning,
                "created_at": self.created_at,
                "expires_at": self.expires_at,
                "last_accessed_at": self.last_accessed_at,
                "hit_count": self.hit_count,
                "success_count": self.success_count,
                "failure_count": self.failure_count,
            }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheEntry:
        original = None
        if payload.get("original_locator_strategy") and payload.get("original_locator_value") is not None:
            original = LocatorInfo(
                LocatorStrategy(payload["original_locator_strategy"]),
                payload["original_locator_value"],
            )
        action = payload.get("action_type")
        key = CacheKey(
            page_url_pattern=payload.get("page_url_pattern", ""),
            original_locator=original,
            action_type=ActionType(action) if action else None,
            intent_hint=payload.get("intent_hint"),
        )
        return cls(
            key,
            LocatorInfo(LocatorStrategy(payload["healed_locator_strategy"]), payload["healed_locator_value"]),
            float(payload["confidence"]),
            payload.get("reasoning") or "",
            created_at=float(payload["created_at"]),
            ttl_seconds=0,
            expires_at=float(payload["expires_at"]),
            raw_confidence=payload.get("raw_confidence"),
            model_id=payload.get("model_id"),
            hit_count=int(payload.get("hit_count", 0)),
            success_count=int(payload.get("success_count", 0)),
            failure_count=int(payload.get("failure_count", 0)),
            last_accessed_at=payload.get("last_accessed_at"),
        )


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    evictions: int
    max_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class HealCache:
    """Stores accepted heals so repeated failures skip the oracle.

    Entries die on TTL expiry or once at least three outcome reports show a
    failure ratio above one half. Dead entries are dropped lazily on read and by
    a background sweep; a full cache evicts the least recently accessed entry.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        self.persistence_path: Path | None = None
        if self.config.persistence_enabled:
            self.persistence_path = Path(self.config.persistence_dir) / CACHE_FILE_NAME
            self._load()
        if self.config.enabled and self.config.background_cleanup:
            self.start_cleanup()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: CacheKey) -> LocatorInfo | None:
        entry = self.get_entry(key)
        return entry.healed_locator if entry else None

    def get_entry(self, key: CacheKey) -> CacheEntry | None:
        if not self.config.enabled:
            return None
        digest = key.hash
        now = self._clock()
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss for key %s", digest)
                return None
            if entry.is_dead(now):
                del self._entries[digest]
                self._misses += 1
                self._evictions += 1
                logger.debug("Cache entry %s evicted (expired=%s)", digest, entry.is_expired(now))
                self._persist()
                return None
            self._hits += 1
        entry.record_hit(now)
        logger.debug("Cache hit for key %s (hits: %d)", digest, entry.hit_count)
        return entry

    def put(
        self,
        key: CacheKey,
        locator: LocatorInfo,
        confidence: float,
        reasoning: str = "",
        *,
        raw_confidence: float | None = None,
        model_id: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        if confidence < self.config.min_confidence_to_cache:
            logger.debug(
                "Not caching heal with confidence %.2f (min %.2f)",
                confidence,
                self.config.min_confidence_to_cache,
            )
            return False
        digest = key.hash
        entry = CacheEntry(
            key,
            locator,
            confidence,
            reasoning,
            created_at=self._clock(),
            ttl_seconds=self.config.ttl_seconds,
            raw_confidence=raw_confidence,
            model_id=model_id,
        )
        with self._lock:
            if digest not in self._entries and len(self._entries) >= self.config.max_entries:
                self._evict_least_recently_accessed()
            self._entries[digest] = entry
            self._persist()
        logger.debug("Cached heal for key %s -> %s (confidence %.2f)", digest, locator, confidence)
        return True

    def record_success(self, key: CacheKey) -> None:
        with self._lock:
            entry = self._entries.get(key.hash)
            if entry is None:
                return
            entry.record_success()
            self._persist()
        logger.debug("Recorded success for cache key %s", key.hash)

    def record_failure(self, key: CacheKey) -> None:
        with self._lock:
            entry = self._entries.get(key.hash)
            if entry is None:
                return
            entry.record_failure()
            self._persist()
        logger.debug("Recorded failure for cache key %s (failures: %d)", key.hash, entry.failure_count)

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key.hash, None) is not None
            if removed:
                self._persist()
        logger.debug("Invalidated cache key %s", key.hash)
        return removed

    def invalidate_by_page_pattern(self, page_url: str) -> int:
        pattern = extract_page_pattern(page_url)
        with self._lock:
            doomed = [digest for digest, entry in self._entries.items() if entry.key.page_url_pattern == pattern]
            for digest in doomed:
                del self._entries[digest]
            if doomed:
                self._persist()
        logger.info("Invalidated %d cache entries for page pattern %s", len(doomed), pattern)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._persist()
        logger.info("Heal cache cleared")

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [digest for digest, entry in self._entries.items() if entry.is_dead(now)]
            for digest in doomed:
                del self._entries[digest]
            self._evictions += len(doomed)
            if doomed:
                self._persist()
        if doomed:
            logger.info("Cache cleanup removed %d entries", len(doomed))
        return len(doomed)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(len(self._entries), self._hits, self._misses, self._evictions, self.config.max_entries)

    def start_cleanup(self) -> None:
        """Starts the periodic sweep on a daemon thread."""

        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="heal-cache-cleanup", daemon=True)
            self._sweeper.start()

    def shutdown(self) -> None:
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=5)
        self._sweeper = None
        with self._lock:
            self._persist()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval_seconds):
            try:
                self.cleanup()
            except Exception:  # noqa: BLE001 - the sweeper must outlive a bad pass.
                logger.exception("Heal cache cleanup pass failed")

    def _evict_least_recently_accessed(self) -> None:
        if not self._entries:
            return
        digest = min(self._entries, key=lambda item: self._entries[item].last_accessed_at)
        del self._entries[digest]
        self._evictions += 1
        logger.debug("Evicted least recently accessed cache entry %s", digest)

    def _persist(self) -> None:
        if self.persistence_path is None:
            return
        now = self._clock()
        rows = [entry.to_dict() for entry in self._entries.values() if not entry.is_expired(now)]
        try:
            self.persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self.persistence_path.write_text(json.dumps(rows, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist heal cache to %s: %s", self.persistence_path, exc)

    def _load(self) -> None:
        if self.persistence_path is None or not self.persistence_path.exists():
            return
        try:
            rows = json.loads(self.persistence_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load heal cache from %s: %s", self.persistence_path, exc)
            return
        if not isinstance(rows, list):
            logger.warning(
                "Failed to load heal cache from %s: expected a list of entries, got %s",
                self.persistence_path,
                type(rows).__name__,
            )
            return
        now = self._clock()
        loaded = 0
        for row in rows:
            if not isinstance(row, dict):
                logger.warning("Skipping malformed heal cache row: %r", row)
                continue
            try:
                entry = CacheEntry.from_dict(row)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed heal cache row: %s", exc)
                continue
            if entry.is_expired(now):
                continue
            self._entries[entry.key.hash] = entry
            loaded += 1
        logger.info("Loaded %d heal cache entries from %s", loaded, self.persistence_path)
