from __future__ import annotations

from typing import Any

from intent_healer.core.collaborators import ActionExecutor, HealOracle, OutcomeValidator, SnapshotCapture
from intent_healer.core.models import (
    ActionType,
    ElementSnapshot,
    ExecutionContext,
    FailureContext,
    HealDecision,
    IntentContract,
    LocatorInfo,
    LocatorStrategy,
    OutcomeResult,
    PageSnapshot,
)

LOGIN_URL = "https://app.example.test/login"


class FakeClock:
    """Manually advanced clock for TTL and pruning tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubCapture(SnapshotCapture):
    def __init__(self, snapshot: PageSnapshot | None = None, error: Exception | None = None) -> None:
        self.snapshot = snapshot
        self.error = error
        self.calls = 0

    def capture(self, failure: FailureContext) -> PageSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snapshot


class StubOracle(HealOracle):
    def __init__(self, decision: HealDecision | None = None, error: Exception | None = None, model_id: str | None = None) -> None:
        self.decision = decision
        self.error = error
        self.model_id = model_id
        self.calls = 0

    def evaluate(self, failure: FailureContext, snapshot: PageSnapshot, intent: IntentContract) -> HealDecision:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.decision


class RecordingExecutor(ActionExecutor):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[ActionType, ElementSnapshot, Any]] = []

    def execute(self, action_type: ActionType, element: ElementSnapshot, action_data: Any = None) -> None:
        self.calls.append((action_type, element, action_data))
        if self.error is not None:
            raise self.error


class StubValidator(OutcomeValidator):
    def __init__(self, result: OutcomeResult | None = None) -> None:
        self.result = result or OutcomeResult.ok("looks right")
        self.contexts: list[ExecutionContext] = []

    def validate(self, context: ExecutionContext) -> OutcomeResult:
        self.contexts.append(context)
        return self.result


def make_element(index: int, tag: str = "button", **fields) -> ElementSnapshot:
    return ElementSnapshot(index=index, tag=tag, **fields)


def make_snapshot(*elements: ElementSnapshot, url: str = LOGIN_URL, title: str = "Sign in") -> PageSnapshot:
    return PageSnapshot(url=url, elements=elements, title=title)


def make_failure(
    step_text: str = "When the user clicks the sign in button",
    *,
    step_keyword: str = "When",
    action_type: ActionType = ActionType.CLICK,
    locator: str = "login-btn",
    **fields,
) -> FailureContext:
    return FailureContext(
        step_text=step_text,
        step_keyword=step_keyword,
        action_type=action_type,
        original_locator=LocatorInfo(LocatorStrategy.ID, locator),
        **fields,
    )
