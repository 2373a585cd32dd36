from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from intent_healer.core.models import (
    ActionType,
    ElementSnapshot,
    ExecutionContext,
    FailureContext,
    HealDecision,
    IntentContract,
    OutcomeResult,
    PageSnapshot,
)


class SnapshotCapture(ABC):
    """Produces a UI snapshot for the page a step failed on."""

    @abstractmethod
    def capture(self, failure: FailureContext) -> PageSnapshot:
        raise NotImplementedError


class HealOracle(ABC):
    """Chooses a replacement element from a snapshot, or declines."""

    model_id: str | None = None

    @abstractmethod
    def evaluate(self, failure: FailureContext, snapshot: PageSnapshot, intent: IntentContract) -> HealDecision:
        raise NotImplementedError


class ActionExecutor(ABC):
    @abstractmethod
    def execute(self, action_type: ActionType, element: ElementSnapshot, action_data: Any = None) -> None:
        raise NotImplementedError


class OutcomeValidator(ABC):
    @abstractmethod
    def validate(self, context: ExecutionContext) -> OutcomeResult:
        raise NotImplementedError
