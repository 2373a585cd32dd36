from __future__ import annotations

import logging
import re

from intent_healer.config.schema import GuardrailConfig
from intent_healer.core.models import (
    ElementSnapshot,
    FailureContext,
    HealDecision,
    HealPolicy,
    IntentContract,
    PageSnapshot,
)
from intent_healer.core.results import GuardrailResult, GuardrailType

logger = logging.getLogger(__name__)


class GuardrailChecker:
    """Deterministic safety rules that can refuse a heal regardless of confidence."""

    def __init__(self, config: GuardrailConfig | None = None) -> None:
        self.config = config or GuardrailConfig()
        self._url_patterns = [(pattern, re.compile(pattern)) for pattern in self.config.forbidden_url_patterns]

    def check_pre(self, failure: FailureContext, intent: IntentContract) -> GuardrailResult:
        if failure.is_assertion_step:
            logger.info("Guardrail: refusing to heal assertion step %r", failure.step_text)
            return GuardrailResult.refuse(GuardrailType.ASSERTION_STEP, "Assertion steps cannot be healed")
        if intent.policy is HealPolicy.OFF:
            logger.info("Guardrail: healing disabled for intent %r", intent.action)
            return GuardrailResult.refuse(GuardrailType.POLICY_OFF, "Healing disabled for this intent")
        if intent.destructive and not intent.destructive_allowed:
            logger.info("Guardrail: refusing destructive action %s", failure.action_type.value)
            return GuardrailResult.refuse(
                GuardrailType.DESTRUCTIVE_ACTION,
                f"Destructive action not allowed: {failure.action_type.value}",
            )
        keyword = self.config.find_forbidden_keyword(failure.step_text)
        if keyword:
            # The oracle and the post check make the final call.
            logger.warning("Step text contains potentially forbidden keyword %r", keyword)
        return GuardrailResult.ok()

    def check_post(
        self,
        decision: HealDecision,
        element: ElementSnapshot,
        snapshot: PageSnapshot | None = None,
    ) -> GuardrailResult:
        minimum = self.config.min_confidence
        if decision.confidence < minimum:
            logger.info("Guardrail: confidence %.2f below threshold %.2f", decision.confidence, minimum)
            return GuardrailResult.refuse(
                GuardrailType.LOW_CONFIDENCE,
                f"Confidence {decision.confidence:.2f} below threshold {minimum:.2f}",
            )
        for label, text in (
            ("text", element.normalized_text),
            ("aria-label", element.aria_label),
            ("title", element.title),
        ):
            keyword = self.config.find_forbidden_keyword(text)
            if keyword:
                logger.info("Guardrail: element %s contains forbidden keyword %r", label, keyword)
                return GuardrailResult.refuse(
                    GuardrailType.FORBIDDEN_KEYWORD,
                    f"Chosen element {label} contains forbidden keyword: {keyword}",
                )
        if not element.visible:
            logger.info("Guardrail: element %s is not visible", element.index)
            return GuardrailResult.refuse(GuardrailType.NOT_INTERACTABLE, "Chosen element is not visible")
        if not element.enabled:
            logger.info("Guardrail: element %s is not enabled", element.index)
            return GuardrailResult.refuse(GuardrailType.NOT_INTERACTABLE, "Chosen element is not enabled")
        return GuardrailResult.ok()

    def check_url(self, url: str | None) -> GuardrailResult:
        if not url:
            return GuardrailResult.ok()
        for raw, pattern in self._url_patterns:
            if pattern.fullmatch(url):
                logger.info("Guardrail: URL %s matches forbidden pattern %s", url, raw)
                return GuardrailResult.refuse(
                    GuardrailType.FORBIDDEN_URL,
                    f"Current URL matches forbidden pattern: {raw}",
                )
        return GuardrailResult.ok()
