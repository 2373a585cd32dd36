from __future__ import annotations

import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from intent_healer.config.schema import BlacklistConfig
from intent_healer.core.models import LocatorInfo, LocatorStrategy
from intent_healer.core.results import GuardrailResult, GuardrailType

logger = logging.getLogger(__name__)

BLACKLIST_FILE_NAME = "heal-blacklist.json"


def _locator_to_dict(locator: LocatorInfo | None) -> dict[str, str] | None:
    if locator is None:
        return None
    return {"strategy": locator.strategy.value, "value": locator.value}


def _locator_from_dict(payload: dict[str, Any] | None) -> LocatorInfo | None:
    if not payload:
        return None
    return LocatorInfo(LocatorStrategy(payload["strategy"]), payload["value"])


@dataclass(frozen=True, slots=True)
class BlacklistEntry:
    """A heal that must never be applied again.

    Without ``healed_locator`` every heal of ``original_locator`` is blocked.
    ``page_url_pattern`` narrows the entry to pages whose URL fully matches it.
    """

    original_locator: LocatorInfo
    healed_locator: LocatorInfo | None = None
    page_url_pattern: str | None = None
    reason: str = ""
    created_at: float = 0.0
    expires_at: float | None = None
    added_by: str | None = None
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def matches(self, page_url: str | None, original: LocatorInfo | None, healed: LocatorInfo | None = None) -> bool:
        if original != self.original_locator:
            return False
        if self.healed_locator is not None and healed != self.healed_locator:
            return False
        if self.page_url_pattern is not None:
            return page_url is not None and re.fullmatch(self.page_url_pattern, page_url) is not None
        return True

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "original_locator": _locator_to_dict(self.original_locator),
            "healed_locator": _locator_to_dict(self.healed_locator),
            "page_url_pattern": self.page_url_pattern,
            "reason": self.reason,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "added_by": self.added_by,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> BlacklistEntry:
        expires_at = payload.get("expires_at")
        return cls(
            original_locator=_locator_from_dict(payload["original_locator"]),
            healed_locator=_locator_from_dict(payload.get("healed_locator")),
            page_url_pattern=payload.get("page_url_pattern"),
            reason=payload.get("reason") or "",
            created_at=float(payload.get("created_at", 0.0)),
            expires_at=float(expires_at) if expires_at is not None else None,
            added_by=payload.get("added_by"),
            entry_id=payload["id"],
        )


@dataclass(frozen=True, slots=True)
class BlacklistStats:
    active: int
    permanent: int
    total_expired: int
    total_blocked: int


class HealBlacklist:
    """Known-bad heals, checked before the oracle and again once a locator is chosen."""

    def __init__(self, config: BlacklistConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or BlacklistConfig()
        self._clock = clock
        self._entries: dict[str, BlacklistEntry] = {}
        self._lock = threading.RLock()
        self._expired = 0
        self._blocked = 0
        self.persistence_path: Path | None = None
        if self.config.persistence_enabled:
            self.persistence_path = Path(self.config.persistence_dir) / BLACKLIST_FILE_NAME
            self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(
        self,
        original: LocatorInfo,
        healed: LocatorInfo | None = None,
        reason: str = "",
        *,
        page_url_pattern: str | None = None,
        ttl_seconds: float | None = None,
        added_by: str | None = None,
    ) -> BlacklistEntry:
        if page_url_pattern is not None:
            re.compile(page_url_pattern)
        now = self._clock()
        entry = BlacklistEntry(
            original_locator=original,
            healed_locator=healed,
            page_url_pattern=page_url_pattern,
            reason=reason,
            created_at=now,
            expires_at=now + ttl_seconds if ttl_seconds else None,
            added_by=added_by,
        )
        with self._lock:
            self._entries[entry.entry_id] = entry
            self._persist()
        logger.info("Blacklisted heal %s -> %s (%s)", original, healed or "*", reason or "no reason given")
        return entry

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(entry_id, None) is not None
            if removed:
                self._persist()
        return removed

    def remove_by_original_locator(self, original: LocatorInfo) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if entry.original_locator == original]
            for key in doomed:
                del self._entries[key]
            if doomed:
                self._persist()
        if doomed:
            logger.info("Removed %d blacklist entries for %s", len(doomed), original)
        return len(doomed)

    def entries(self) -> list[BlacklistEntry]:
        self.cleanup()
        with self._lock:
            return list(self._entries.values())

    def find_by_page_pattern(self, page_url_pattern: str) -> list[BlacklistEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.page_url_pattern == page_url_pattern]

    def is_blacklisted(
        self,
        page_url: str | None,
        original: LocatorInfo | None,
        healed: LocatorInfo | None = None,
    ) -> BlacklistEntry | None:
        if original is None:
            return None
        self.cleanup()
        with self._lock:
            for entry in self._entries.values():
                if entry.matches(page_url, original, healed):
                    self._blocked += 1
                    return entry
        return None

    def check(
        self,
        page_url: str | None,
        original: LocatorInfo | None,
        healed: LocatorInfo | None = None,
    ) -> GuardrailResult:
        entry = self.is_blacklisted(page_url, original, healed)
        if entry is None:
            return GuardrailResult.ok()
        logger.info("Heal blocked by blacklist: %s -> %s (%s)", original, healed or "*", entry.reason)
        target = f" -> {healed}" if healed is not None else ""
        reason = f": {entry.reason}" if entry.reason else ""
        return GuardrailResult.refuse(GuardrailType.BLACKLISTED, f"Heal of {original}{target} is blacklisted{reason}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._persist()
        logger.info("Heal blacklist cleared")

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in doomed:
                del self._entries[key]
            self._expired += len(doomed)
            if doomed:
                self._persist()
        if doomed:
            logger.debug("Removed %d expired blacklist entries", len(doomed))
        return len(doomed)

    def stats(self) -> BlacklistStats:
        now = self._clock()
        with self._lock:
            live = [entry for entry in self._entries.values() if not entry.is_expired(now)]
            return BlacklistStats(
                active=len(live),
                permanent=sum(1 for entry in live if entry.expires_at is None),
                total_expired=self._expired,
                total_blocked=self._blocked,
            )

    def _persist(self) -> None:
        if self.persistence_path is None:
            return
        now = self._clock()
        rows = [entry.to_dict() for entry in self._entries.values() if not entry.is_expired(now)]
        try:
            self.persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self.persistence_path.write_text(json.dumps(rows, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist heal blacklist to %s: %s", self.persistence_path, exc)

    def _load(self) -> None:
        if self.persistence_path is None or not self.persistence_path.exists():
            return
        try:
            rows = json.loads(self.persistence_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load heal blacklist from %s: %s", self.persistence_path, exc)
            return
        if not isinstance(rows, list):
            logger.warning("Failed to load heal blacklist from %s: expected a list of entries", self.persistence_path)
            return
        now = self._clock()
        for row in rows:
            try:
                entry = BlacklistEntry.from_dict(row)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed blacklist row: %s", exc)
                continue
            if not entry.is_expired(now):
                self._entries[entry.entry_id] = entry
        logger.info("Loaded %d heal blacklist entries from %s", len(self._entries), self.persistence_path)
