from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from intent_healer.core.models import HealDecision, LocatorInfo


class HealOutcome(str, Enum):
    SUCCESS = "success"
    SUGGESTED = "suggested"
    REFUSED = "refused"
    FAILED = "failed"


class FailureCode(str, Enum):
    HEALING_DISABLED = "healing_disabled"
    POLICY_OFF = "policy_off"
    ASSERTION_STEP = "assertion_step"
    DESTRUCTIVE_ACTION = "destructive_action"
    FORBIDDEN_URL = "forbidden_url"
    FORBIDDEN_KEYWORD = "forbidden_keyword"
    NOT_INTERACTABLE = "not_interactable"
    LOW_CONFIDENCE = "low_confidence"
    ORACLE_REFUSED = "oracle_refused"
    BLACKLISTED = "blacklisted"
    CIRCUIT_OPEN = "circuit_open"
    GUARDRAIL = "guardrail"
    CAPTURE_FAILED = "capture_failed"
    ORACLE_UNAVAILABLE = "oracle_unavailable"
    INVALID_DECISION = "invalid_decision"
    EXECUTION_FAILED = "execution_failed"
    VALIDATION_FAILED = "validation_failed"
    UNEXPECTED_ERROR = "unexpected_error"


class GuardrailType(str, Enum):
    GENERAL = "guardrail"
    ASSERTION_STEP = "assertion_step"
    POLICY_OFF = "policy_off"
    DESTRUCTIVE_ACTION = "destructive_action"
    FORBIDDEN_URL = "forbidden_url"
    FORBIDDEN_KEYWORD = "forbidden_keyword"
    NOT_INTERACTABLE = "not_interactable"
    LOW_CONFIDENCE = "low_confidence"
    BLACKLISTED = "blacklisted"
    CIRCUIT_OPEN = "circuit_open"

    def failure_code(self) -> FailureCode:
        return FailureCode(self.value)


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    proceed: bool
    type: GuardrailType | None = None
    reason: str | None = None

    @property
    def refused(self) -> bool:
        return not self.proceed

    @classmethod
    def ok(cls) -> GuardrailResult:
        return cls(True)

    @classmethod
    def refuse(cls, guardrail_type: GuardrailType, reason: str) -> GuardrailResult:
        return cls(False, guardrail_type, reason)


@dataclass(frozen=True, slots=True)
class HealResult:
    outcome: HealOutcome
    code: FailureCode | None = None
    reason: str | None = None
    healed_locator: LocatorInfo | None = None
    confidence: float | None = None
    reasoning: str | None = None
    element_index: int | None = None
    decision: HealDecision | None = None
    from_cache: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is HealOutcome.SUCCESS

    @property
    def is_low_confidence(self) -> bool:
        return self.code is FailureCode.LOW_CONFIDENCE

    @classmethod
    def refused(cls, code: FailureCode, reason: str, **details) -> HealResult:
        return cls(HealOutcome.REFUSED, code=code, reason=reason, **details)

    @classmethod
    def failed(cls, code: FailureCode, reason: str, **details) -> HealResult:
        return cls(HealOutcome.FAILED, code=code, reason=reason, **details)

    def describe(self) -> str:
        """Returns a single line suitable for a test report."""

        if self.outcome in (HealOutcome.SUCCESS, HealOutcome.SUGGESTED):
            source = " (cached)" if self.from_cache else ""
            confidence = f"{self.confidence:.2f}" if self.confidence is not None else "n/a"
            return f"{self.outcome.value}: {self.healed_locator} at confidence {confidence}{source}"
        return f"{self.outcome.value} [{self.code.value if self.code else 'unknown'}]: {self.reason}"
