from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip())


def _frozen_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


class LocatorStrategy(str, Enum):
    ID = "id"
    NAME = "name"
    CLASS_NAME = "class_name"
    CSS = "css"
    XPATH = "xpath"
    LINK_TEXT = "link_text"
    PARTIAL_LINK_TEXT = "partial_link_text"
    TAG_NAME = "tag_name"


class ActionType(str, Enum):
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    CLEAR = "clear"
    HOVER = "hover"
    DOUBLE_CLICK = "double_click"
    RIGHT_CLICK = "right_click"
    SUBMIT = "submit"
    UNKNOWN = "unknown"


class FailureKind(str, Enum):
    ELEMENT_NOT_FOUND = "element_not_found"
    STALE_ELEMENT = "stale_element"
    CLICK_INTERCEPTED = "click_intercepted"
    NOT_INTERACTABLE = "not_interactable"
    TIMEOUT = "timeout"
    ASSERTION_FAILURE = "assertion_failure"
    UNKNOWN = "unknown"

    @property
    def healable(self) -> bool:
        return self not in {FailureKind.ASSERTION_FAILURE, FailureKind.UNKNOWN}


class HealPolicy(str, Enum):
    OFF = "off"
    SUGGEST = "suggest"
    AUTO_SAFE = "auto_safe"
    AUTO_ALL = "auto_all"


@dataclass(frozen=True, slots=True)
class LocatorInfo:
    strategy: LocatorStrategy
    value: str

    def __str__(self) -> str:
        return f"{self.strategy.value}={self.value}"

    @classmethod
    def parse(cls, raw: str) -> LocatorInfo:
        """Parses ``strategy=value`` strings; bare values are treated as css or xpath."""

        text = raw.strip()
        prefix, sep, rest = text.partition("=")
        if sep:
            try:
                return cls(LocatorStrategy(prefix.strip().lower()), rest)
            except ValueError:
                pass
        if text.startswith("/") or text.startswith("("):
            return cls(LocatorStrategy.XPATH, text)
        return cls(LocatorStrategy.CSS, text)


@dataclass(frozen=True, slots=True)
class ElementRect:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True, slots=True)
class ElementSnapshot:
    index: int
    tag: str
    id: str | None = None
    name: str | None = None
    type: str | None = None
    classes: tuple[str, ...] = ()
    text: str = ""
    value: str | None = None
    placeholder: str | None = None
    aria_label: str | None = None
    aria_role: str | None = None
    title: str | None = None
    visible: bool = True
    enabled: bool = True
    selected: bool = False
    rect: ElementRect | None = None
    container: str | None = None
    nearby_labels: tuple[str, ...] = ()
    data_attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "classes", tuple(self.classes))
        object.__setattr__(self, "nearby_labels", tuple(self.nearby_labels))
        object.__setattr__(self, "data_attributes", _frozen_mapping(self.data_attributes))

    @property
    def normalized_text(self) -> str:
        return normalize_text(self.text)

    @property
    def interactable(self) -> bool:
        return self.visible and self.enabled


@dataclass(frozen=True, slots=True)
class PageSnapshot:
    url: str
    elements: tuple[ElementSnapshot, ...] = ()
    title: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "elements", tuple(self.elements))

    @property
    def has_elements(self) -> bool:
        return bool(self.elements)

    def element(self, index: int | None) -> ElementSnapshot | None:
        if index is None or isinstance(index, bool):
            return None
        for element in self.elements:
            if element.index == index:
                return element
        return None

    def interactable_elements(self) -> list[ElementSnapshot]:
        return [element for element in self.elements if element.interactable]


@dataclass(frozen=True, slots=True)
class IntentContract:
    action: str = "unknown"
    description: str = ""
    policy: HealPolicy = HealPolicy.AUTO_SAFE
    destructive: bool = False
    outcome_check: str | None = None
    outcome_params: Mapping[str, Any] = field(default_factory=dict)
    invariants: tuple[str, ...] = ()
    cache_hint: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "invariants", tuple(self.invariants))
        object.__setattr__(self, "outcome_params", _frozen_mapping(self.outcome_params))

    @property
    def healing_allowed(self) -> bool:
        return self.policy is not HealPolicy.OFF

    @property
    def destructive_allowed(self) -> bool:
        return self.policy is HealPolicy.AUTO_ALL and self.destructive

    @classmethod
    def default_for(cls, step_text: str) -> IntentContract:
        return cls(description=step_text)


@dataclass(frozen=True, slots=True)
class FailureContext:
    step_text: str
    action_type: ActionType = ActionType.UNKNOWN
    original_locator: LocatorInfo | None = None
    step_keyword: str | None = None
    exception_type: str | None = None
    exception_message: str | None = None
    failure_kind: FailureKind = FailureKind.UNKNOWN
    action_data: Any = None
    tags: tuple[str, ...] = ()
    feature_name: str | None = None
    scenario_name: str | None = None
    intent_metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "intent_metadata", _frozen_mapping(self.intent_metadata))

    @property
    def is_assertion_step(self) -> bool:
        keyword = (self.step_keyword or "").strip().lower()
        return keyword == "then" or self.failure_kind is FailureKind.ASSERTION_FAILURE


@dataclass(frozen=True, slots=True)
class HealDecision:
    can_heal: bool
    confidence: float = 0.0
    selected_element_index: int | None = None
    reasoning: str = ""
    alternative_indices: tuple[int, ...] = ()
    warnings: tuple[str, ...] = ()
    refusal_reason: str | None = None
    model_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "alternative_indices", tuple(self.alternative_indices))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    @classmethod
    def heal(cls, index: int, confidence: float, reasoning: str = "", model_id: str | None = None) -> HealDecision:
        return cls(
            can_heal=True,
            confidence=confidence,
            selected_element_index=index,
            reasoning=reasoning,
            model_id=model_id,
        )

    @classmethod
    def refuse(cls, reason: str) -> HealDecision:
        return cls(can_heal=False, refusal_reason=reason)

    def with_confidence(self, confidence: float) -> HealDecision:
        return replace(self, confidence=confidence)


@dataclass(frozen=True, slots=True)
class OutcomeResult:
    passed: bool
    message: str = ""

    @property
    def failed(self) -> bool:
        return not self.passed

    @classmethod
    def ok(cls, message: str = "") -> OutcomeResult:
        return cls(True, message)

    @classmethod
    def failure(cls, message: str) -> OutcomeResult:
        return cls(False, message)


@dataclass(frozen=True, slots=True)
class InvariantResult:
    satisfied: bool
    message: str = ""

    @property
    def violated(self) -> bool:
        return not self.satisfied


@dataclass(slots=True)
class ExecutionContext:
    failure: FailureContext
    intent: IntentContract
    element: ElementSnapshot
    before: PageSnapshot
    after: PageSnapshot | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def current_snapshot(self) -> PageSnapshot:
        return self.after or self.before

    @property
    def current_url(self) -> str | None:
        return self.current_snapshot.url

    @property
    def current_title(self) -> str | None:
        return self.current_snapshot.title

    @property
    def url_changed(self) -> bool:
        return self.after is not None and self.after.url != self.before.url

    @property
    def title_changed(self) -> bool:
        return self.after is not None and self.after.title != self.before.title


@dataclass(frozen=True, slots=True)
class HealEvent:
    original_locator: str
    healed_locator: str | None
    confidence: float
    success: bool
    outcome: str = ""
    step_text: str = ""
    timestamp: float = field(default_factory=time.time)
