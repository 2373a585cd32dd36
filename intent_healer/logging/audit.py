from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from pathlib import Path

from intent_healer.core.models import HealEvent
from intent_healer.utils.stability import StabilityReport, analyze_history

logger = logging.getLogger(__name__)

LEDGER_FILE_NAME = "heal_events.jsonl"


class HealLedger:
    """Append-only record of heal attempts, optionally mirrored to a JSONL file."""

    def __init__(self, root: str | Path | None = None) -> None:
        self._events: list[HealEvent] = []
        self._lock = threading.Lock()
        self.path: Path | None = None
        if root is not None:
            directory = Path(root)
            directory.mkdir(parents=True, exist_ok=True)
            self.path = directory / LEDGER_FILE_NAME

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def record(self, event: HealEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self.path is not None:
                self._write(event)

    def events(self) -> list[HealEvent]:
        with self._lock:
            return list(self._events)

    def events_for(self, locator: str) -> list[HealEvent]:
        return [event for event in self.events() if event.original_locator == locator]

    def stability_report(self) -> StabilityReport:
        # Refusals before an element was chosen say nothing about the locator.
        return analyze_history(event for event in self.events() if event.healed_locator)

    def _write(self, event: HealEvent) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(asdict(event)) + "\n")
        except OSError as exc:
            logger.warning("Failed to append heal event to %s: %s", self.path, exc)

    @classmethod
    def load(cls, root: str | Path) -> HealLedger:
        """Re-opens a ledger directory, replaying events already on disk."""

        ledger = cls(root)
        if ledger.path is None or not ledger.path.exists():
            return ledger
        for line in ledger.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                ledger._events.append(HealEvent(**json.loads(line)))
        return ledger
