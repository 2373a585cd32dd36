from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from intent_healer.core.models import HealEvent, LocatorStrategy

WEIGHT_HEAL_FREQUENCY = 0.35
WEIGHT_CONFIDENCE = 0.25
WEIGHT_SUCCESS_RATE = 0.20
WEIGHT_STRATEGY = 0.20

HIGH_HEAL_COUNT = 5
LOW_CONFIDENCE = 0.75

_POSITIONAL_INDEX = re.compile(r"\[\d+\]")
_SELENIUM_PREFIXES = {
    "By.id:": LocatorStrategy.ID,
    "By.name:": LocatorStrategy.NAME,
    "By.xpath:": LocatorStrategy.XPATH,
    "By.cssSelector:": LocatorStrategy.CSS,
    "By.css:": LocatorStrategy.CSS,
    "By.className:": LocatorStrategy.CLASS_NAME,
    "By.linkText:": LocatorStrategy.LINK_TEXT,
    "By.partialLinkText:": LocatorStrategy.PARTIAL_LINK_TEXT,
    "By.tagName:": LocatorStrategy.TAG_NAME,
}


class StabilityLevel(str, Enum):
    VERY_STABLE = "very_stable"
    STABLE = "stable"
    MODERATE = "moderate"
    UNSTABLE = "unstable"
    VERY_UNSTABLE = "very_unstable"

    @classmethod
    def for_score(cls, score: float) -> StabilityLevel:
        if score >= 90:
            return cls.VERY_STABLE
        if score >= 75:
            return cls.STABLE
        if score >= 50:
            return cls.MODERATE
        if score >= 25:
            return cls.UNSTABLE
        return cls.VERY_UNSTABLE


@dataclass(frozen=True, slots=True)
class StabilityRecord:
    locator: str
    score: float
    level: StabilityLevel
    heal_count: int
    success_count: int
    failure_count: int
    average_confidence: float
    strategy: LocatorStrategy
    last_healed: float | None = None
    recommendations: tuple[str, ...] = ()

    @property
    def success_rate(self) -> float:
        return self.success_count / self.heal_count if self.heal_count else 1.0


@dataclass(frozen=True, slots=True)
class StabilitySummary:
    total_locators: int = 0
    stable_count: int = 0
    moderate_count: int = 0
    unstable_count: int = 0
    average_score: float = 100.0

    @property
    def health_rating(self) -> str:
        if self.average_score >= 80:
            return "excellent"
        if self.average_score >= 60:
            return "good"
        if self.average_score >= 40:
            return "fair"
        if self.average_score >= 20:
            return "poor"
        return "critical"


@dataclass(frozen=True, slots=True)
class StabilityReport:
    records: tuple[StabilityRecord, ...] = ()
    summary: StabilitySummary = field(default_factory=StabilitySummary)

    def most_unstable(self, limit: int = 10) -> list[StabilityRecord]:
        return sorted(self.records, key=lambda record: record.score)[:limit]

    def needing_attention(self) -> list[StabilityRecord]:
        return [
            record
            for record in self.records
            if record.level in (StabilityLevel.UNSTABLE, StabilityLevel.VERY_UNSTABLE)
        ]

    def all_recommendations(self) -> list[str]:
        seen: dict[str, None] = {}
        for record in self.records:
            for item in record.recommendations:
                seen.setdefault(item, None)
        return list(seen)


def infer_strategy(locator: str | None) -> LocatorStrategy:
    if not locator:
        return LocatorStrategy.CSS
    value = locator.strip()
    prefix, sep, rest = value.partition("=")
    if sep:
        try:
            return LocatorStrategy(prefix.lower())
        except ValueError:
            pass
    for marker, strategy in _SELENIUM_PREFIXES.items():
        if value.startswith(marker):
            return strategy
    if value.startswith("/") or value.startswith("(/"):
        return LocatorStrategy.XPATH
    if value.startswith("#") and " " not in value and "[" not in value:
        return LocatorStrategy.ID
    if value.startswith(".") and not any(char in value for char in " [#"):
        return LocatorStrategy.CLASS_NAME
    return LocatorStrategy.CSS


def _is_absolute_xpath(body: str) -> bool:
    return body.startswith("/") and not body.startswith("//")


def _locator_body(locator: str) -> str:
    prefix, sep, rest = locator.partition("=")
    if sep and prefix.lower() in {strategy.value for strategy in LocatorStrategy}:
        return rest
    for marker in _SELENIUM_PREFIXES:
        if locator.startswith(marker):
            return locator[len(marker):].strip()
    return locator


def frequency_score(heal_count: int) -> float:
    """Scores how often a locator broke; the latest heal is not counted against it."""

    prior = max(heal_count - 1, 0)
    if prior == 0:
        return 100.0
    if prior == 1:
        return 90.0
    if prior == 2:
        return 75.0
    if prior <= 4:
        return 50.0
    if prior <= 7:
        return 25.0
    return max(0.0, 100.0 - prior * 10)


def strategy_score(locator: str) -> float:
    strategy = infer_strategy(locator)
    body = _locator_body(locator)
    if strategy is LocatorStrategy.ID:
        return 90.0
    if strategy is LocatorStrategy.NAME:
        return 85.0
    if strategy is LocatorStrategy.CSS:
        if "data-testid" in body or "aria-label" in body:
            return 95.0
        if "." in body and "[" not in body:
            return 60.0
        return 70.0
    if strategy is LocatorStrategy.XPATH:
        if _is_absolute_xpath(body) or "/div/div/div" in body:
            return 20.0
        if "[position()" in body or _POSITIONAL_INDEX.search(body):
            return 30.0
        if "@" in body or "text()" in body:
            return 60.0
        return 40.0
    if strategy is LocatorStrategy.CLASS_NAME:
        return 50.0
    if strategy in (LocatorStrategy.LINK_TEXT, LocatorStrategy.PARTIAL_LINK_TEXT):
        return 55.0
    return 30.0


def recommendations_for(locator: str, heal_count: int, average_confidence: float, level: StabilityLevel) -> list[str]:
    if level is StabilityLevel.VERY_STABLE:
        return []
    strategy = infer_strategy(locator)
    body = _locator_body(locator)
    notes: list[str] = []
    if heal_count >= HIGH_HEAL_COUNT:
        notes.append(f"This locator has been healed {heal_count} times. Consider adding a stable data-testid attribute.")
    if strategy is LocatorStrategy.XPATH:
        if _is_absolute_xpath(body) or "/div/div" in body:
            notes.append("Replace absolute XPath with relative XPath using unique attributes.")
        if _POSITIONAL_INDEX.search(body):
            notes.append("Avoid positional XPath indices. Use unique identifiers instead.")
        notes.append("Consider using CSS selector or adding data-testid attribute for better stability.")
    elif strategy is LocatorStrategy.CLASS_NAME:
        notes.append("Class names can change with UI updates. Consider using data-testid instead.")
    elif strategy is LocatorStrategy.CSS:
        if "data-testid" not in body and "aria-" not in body:
            notes.append("Add data-testid or aria-label attribute for more stable selection.")
        if len(body.split(".")) > 3:
            notes.append("CSS selector uses multiple classes. Simplify with a unique identifier.")
    elif strategy is LocatorStrategy.TAG_NAME:
        notes.append("Tag name alone is very brittle. Add unique attributes or use data-testid.")
    if average_confidence < LOW_CONFIDENCE:
        notes.append(
            f"Low average confidence ({average_confidence * 100:.0f}%). "
            "Element may be ambiguous - ensure unique identifiers."
        )
    return notes


def score_stability(locator: str, history: Iterable[HealEvent]) -> StabilityRecord:
    events = list(history)
    heal_count = len(events)
    success_count = sum(1 for event in events if event.success)
    average_confidence = sum(event.confidence for event in events) / heal_count if heal_count else 0.0
    success_rate_score = success_count * 100.0 / heal_count if heal_count else 100.0

    score = (
        frequency_score(heal_count) * WEIGHT_HEAL_FREQUENCY
        + average_confidence * 100 * WEIGHT_CONFIDENCE
        + success_rate_score * WEIGHT_SUCCESS_RATE
        + strategy_score(locator) * WEIGHT_STRATEGY
    )
    score = round(min(max(score, 0.0), 100.0), 4)
    level = StabilityLevel.for_score(score)
    timestamps = [event.timestamp for event in events if event.timestamp is not None]
    return StabilityRecord(
        locator=locator,
        score=score,
        level=level,
        heal_count=heal_count,
        success_count=success_count,
        failure_count=heal_count - success_count,
        average_confidence=average_confidence,
        strategy=infer_strategy(locator),
        last_healed=max(timestamps) if timestamps else None,
        recommendations=tuple(recommendations_for(locator, heal_count, average_confidence, level)),
    )


def analyze_history(events: Iterable[HealEvent]) -> StabilityReport:
    grouped: dict[str, list[HealEvent]] = defaultdict(list)
    for event in events:
        if event.original_locator:
            grouped[event.original_locator].append(event)
    if not grouped:
        return StabilityReport()

    records = sorted(
        (score_stability(locator, items) for locator, items in grouped.items()),
        key=lambda record: record.score,
    )
    stable = sum(1 for record in records if record.level in (StabilityLevel.VERY_STABLE, StabilityLevel.STABLE))
    moderate = sum(1 for record in records if record.level is StabilityLevel.MODERATE)
    summary = StabilitySummary(
        total_locators=len(records),
        stable_count=stable,
        moderate_count=moderate,
        unstable_count=len(records) - stable - moderate,
        average_score=sum(record.score for record in records) / len(records),
    )
    return StabilityReport(records=tuple(records), summary=summary)
