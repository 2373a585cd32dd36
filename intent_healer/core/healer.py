from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from numbers import Real

from intent_healer.config.schema import HealerConfig
from intent_healer.core.blacklist import HealBlacklist
from intent_healer.core.cache import CacheKey, HealCache
from intent_healer.core.calibration import ConfidenceCalibrator
from intent_healer.core.circuit import CircuitBreaker
from intent_healer.core.collaborators import ActionExecutor, HealOracle, OutcomeValidator, SnapshotCapture
from intent_healer.core.exceptions import OracleResponseError
from intent_healer.core.guardrails import GuardrailChecker
from intent_healer.core.models import (
    ElementSnapshot,
    ExecutionContext,
    FailureContext,
    HealDecision,
    HealEvent,
    HealPolicy,
    IntentContract,
    LocatorInfo,
    PageSnapshot,
)
from intent_healer.core.results import FailureCode, HealOutcome, HealResult
from intent_healer.logging.audit import HealLedger
from intent_healer.utils.locators import matching_elements, synthesize_locator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Attempt:
    """Mutable state for one pass through the pipeline."""

    key: CacheKey
    decision: HealDecision
    raw_confidence: float
    model_id: str | None
    from_cache: bool = False
    element: ElementSnapshot | None = None
    locator: LocatorInfo | None = None

    def details(self) -> dict:
        return {
            "decision": self.decision,
            "confidence": self.decision.confidence,
            "reasoning": self.decision.reasoning,
            "element_index": self.decision.selected_element_index,
            "healed_locator": self.locator,
            "from_cache": self.from_cache,
        }


class Healer:
    """Decides whether, and how, a failed UI step may be healed.

    Every call returns a ``HealResult``; collaborator failures and unexpected
    errors are converted at this boundary. Cache hits skip the oracle, and
    executed heals feed the cache or the calibrator.
    """

    def __init__(
        self,
        config: HealerConfig,
        capture: SnapshotCapture,
        oracle: HealOracle,
        executor: ActionExecutor | None = None,
        validator: OutcomeValidator | None = None,
        cache: HealCache | None = None,
        calibrator: ConfidenceCalibrator | None = None,
        ledger: HealLedger | None = None,
        guardrails: GuardrailChecker | None = None,
        blacklist: HealBlacklist | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self.capture = capture
        self.oracle = oracle
        self.executor = executor
        self.validator = validator
        self.cache = cache if cache is not None else HealCache(config.cache)
        self.calibrator = calibrator if calibrator is not None else ConfidenceCalibrator(config.calibration)
        self.ledger = ledger
        self.guardrails = guardrails if guardrails is not None else GuardrailChecker(config.guardrails)
        if blacklist is None and config.blacklist.enabled:
            blacklist = HealBlacklist(config.blacklist)
        self.blacklist = blacklist
        self.breaker = breaker if breaker is not None else CircuitBreaker(config.circuit_breaker)

    def close(self) -> None:
        """Stops the cache sweep and flushes persisted entries."""

        self.cache.shutdown()

    def __enter__(self) -> Healer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def attempt_heal(
        self,
        failure: FailureContext,
        intent: IntentContract | None = None,
        snapshot: PageSnapshot | None = None,
    ) -> HealResult:
        intent = intent or IntentContract.default_for(failure.step_text)
        started = time.perf_counter()
        try:
            result = self._attempt(failure, intent, snapshot)
        except Exception as exc:  # noqa: BLE001 - nothing may escape a heal attempt.
            logger.exception("Unexpected error while healing step %r", failure.step_text)
            result = HealResult.failed(FailureCode.UNEXPECTED_ERROR, f"Unexpected error: {exc}")
        result = replace(result, duration_seconds=time.perf_counter() - started)
        logger.info("Heal attempt for %r finished: %s", failure.step_text, result.describe())
        self._record(failure, result)
        return result

    def effective_policy(self, intent: IntentContract) -> HealPolicy:
        """The global mode can only narrow an intent's policy."""

        if HealPolicy.OFF in (self.config.mode, intent.policy):
            return HealPolicy.OFF
        if HealPolicy.SUGGEST in (self.config.mode, intent.policy):
            return HealPolicy.SUGGEST
        return intent.policy

    def _attempt(self, failure: FailureContext, intent: IntentContract, snapshot: PageSnapshot | None) -> HealResult:
        if not self.config.enabled:
            return HealResult.refused(FailureCode.HEALING_DISABLED, "Healing is disabled")
        policy = self.effective_policy(intent)
        if policy is HealPolicy.OFF:
            return HealResult.refused(FailureCode.POLICY_OFF, "Healing disabled for this intent")

        pre = self.guardrails.check_pre(failure, intent)
        if pre.refused:
            return HealResult.refused(pre.type.failure_code(), pre.reason)

        if snapshot is None:
            try:
                snapshot = self.capture.capture(failure)
            except Exception as exc:  # noqa: BLE001 - collaborator failures become results.
                logger.warning("Snapshot capture failed: %s", exc)
                return HealResult.failed(FailureCode.CAPTURE_FAILED, f"Snapshot capture failed: {exc}")
        if snapshot is None or not snapshot.has_elements:
            return HealResult.failed(FailureCode.CAPTURE_FAILED, "No interactive elements found on page")

        url_check = self.guardrails.check_url(snapshot.url)
        if url_check.refused:
            return HealResult.refused(url_check.type.failure_code(), url_check.reason)

        if self.blacklist is not None:
            listed = self.blacklist.check(snapshot.url, failure.original_locator)
            if listed.refused:
                return HealResult.refused(listed.type.failure_code(), listed.reason)

        key = CacheKey.from_failure(failure, snapshot.url, intent.cache_hint)
        attempt = self._from_cache(key, snapshot)
        if attempt is None:
            gate = self.breaker.check()
            if gate.refused:
                return HealResult.refused(gate.type.failure_code(), gate.reason)
            outcome = self._consult_oracle(key, failure, snapshot, intent)
            if isinstance(outcome, HealResult):
                return outcome
            attempt = outcome

        attempt.element = snapshot.element(attempt.decision.selected_element_index)
        if attempt.element is None:
            if not attempt.from_cache:
                self.breaker.record_failure()
            return HealResult.failed(
                FailureCode.INVALID_DECISION,
                f"Selected element index {attempt.decision.selected_element_index!r} not found in snapshot",
                decision=attempt.decision,
            )

        post = self.guardrails.check_post(attempt.decision, attempt.element, snapshot)
        if post.refused:
            details = attempt.details()
            return HealResult.refused(post.type.failure_code(), post.reason, **details)

        attempt.locator = synthesize_locator(attempt.element)
        if self.blacklist is not None:
            listed = self.blacklist.check(snapshot.url, failure.original_locator, attempt.locator)
            if listed.refused:
                if attempt.from_cache:
                    self.cache.invalidate(attempt.key)
                return HealResult.refused(listed.type.failure_code(), listed.reason, **attempt.details())

        if policy is HealPolicy.SUGGEST:
            logger.info("Suggesting %s for step %r (no execution)", attempt.locator, failure.step_text)
            return HealResult(HealOutcome.SUGGESTED, **attempt.details())

        return self._execute(failure, intent, snapshot, attempt)

    def _from_cache(self, key: CacheKey, snapshot: PageSnapshot) -> _Attempt | None:
        entry = self.cache.get_entry(key)
        if entry is None:
            return None
        matches = matching_elements(entry.healed_locator, snapshot)
        if not matches:
            logger.info("Cached locator %s no longer resolves on %s", entry.healed_locator, snapshot.url)
            self.cache.record_failure(key)
            return None
        if len(matches) > 1:
            logger.warning(
                "Cached locator %s matches %d elements on %s; dropping it",
                entry.healed_locator,
                len(matches),
                snapshot.url,
            )
            self.cache.invalidate(key)
            return None
        element = matches[0]
        confidence = entry.confidence
        if self.config.cache.recalibrate_on_hit:
            confidence = self.calibrator.calibrate(entry.raw_confidence, entry.model_id)
        decision = HealDecision.heal(element.index, confidence, entry.reasoning, model_id=entry.model_id)
        logger.info("Cache hit: reusing %s (confidence %.2f)", entry.healed_locator, confidence)
        return _Attempt(key, decision, entry.raw_confidence, entry.model_id, from_cache=True)

    def _consult_oracle(
        self,
        key: CacheKey,
        failure: FailureContext,
        snapshot: PageSnapshot,
        intent: IntentContract,
    ) -> _Attempt | HealResult:
        self.breaker.record_call()
        try:
            decision = self.oracle.evaluate(failure, snapshot, intent)
        except OracleResponseError as exc:
            logger.warning("Heal oracle returned an unusable answer: %s", exc)
            self.breaker.record_failure()
            return HealResult.failed(FailureCode.INVALID_DECISION, f"Unusable oracle answer: {exc}")
        except Exception as exc:  # noqa: BLE001 - collaborator failures become results.
            logger.warning("Heal oracle unavailable: %s", exc)
            self.breaker.record_failure()
            return HealResult.failed(FailureCode.ORACLE_UNAVAILABLE, f"Heal oracle unavailable: {exc}")

        if not isinstance(decision, HealDecision):
            self.breaker.record_failure()
            return HealResult.failed(FailureCode.INVALID_DECISION, "Heal oracle returned no decision")
        if not decision.can_heal:
            logger.info("Heal oracle refused: %s", decision.refusal_reason)
            return HealResult.refused(
                FailureCode.ORACLE_REFUSED,
                decision.refusal_reason or "Heal oracle declined to heal",
                decision=decision,
            )
        raw = decision.confidence
        if isinstance(raw, bool) or not isinstance(raw, Real) or not 0.0 <= raw <= 1.0:
            self.breaker.record_failure()
            return HealResult.failed(
                FailureCode.INVALID_DECISION,
                f"Heal oracle returned an invalid confidence: {raw!r}",
                decision=decision,
            )

        model_id = decision.model_id or self.oracle.model_id
        calibrated = self.calibrator.calibrate(raw, model_id)
        if calibrated != raw:
            logger.debug("Calibrated confidence %.3f -> %.3f", raw, calibrated)
        return _Attempt(key, decision.with_confidence(calibrated), float(raw), model_id)

    def _execute(
        self,
        failure: FailureContext,
        intent: IntentContract,
        snapshot: PageSnapshot,
        attempt: _Attempt,
    ) -> HealResult:
        if self.executor is not None:
            try:
                self.executor.execute(failure.action_type, attempt.element, failure.action_data)
            except Exception as exc:  # noqa: BLE001 - collaborator failures become results.
                logger.error("Healed action failed: %s", exc)
                self._report(attempt, correct=False)
                return HealResult.failed(
                    FailureCode.EXECUTION_FAILED,
                    f"Action execution failed: {exc}",
                    **attempt.details(),
                )

        if self.validator is not None:
            context = ExecutionContext(failure=failure, intent=intent, element=attempt.element, before=snapshot)
            try:
                outcome = self.validator.validate(context)
            except Exception as exc:  # noqa: BLE001 - collaborator failures become results.
                logger.error("Outcome validation raised: %s", exc)
                self._report(attempt, correct=False)
                return HealResult.failed(
                    FailureCode.VALIDATION_FAILED,
                    f"Outcome validation failed: {exc}",
                    **attempt.details(),
                )
            if outcome.failed:
                self._report(attempt, correct=False)
                return HealResult.failed(FailureCode.VALIDATION_FAILED, outcome.message, **attempt.details())

        self._report(attempt, correct=True)
        ambiguous = len(matching_elements(attempt.locator, snapshot)) > 1
        if ambiguous and not attempt.from_cache:
            logger.info("Not caching %s: it matches more than one element on %s", attempt.locator, snapshot.url)
        elif not attempt.from_cache:
            self.cache.put(
                attempt.key,
                attempt.locator,
                attempt.decision.confidence,
                attempt.decision.reasoning,
                raw_confidence=attempt.raw_confidence,
                model_id=attempt.model_id,
            )
        logger.info("Healed step %r with %s", failure.step_text, attempt.locator)
        return HealResult(HealOutcome.SUCCESS, **attempt.details())

    def _report(self, attempt: _Attempt, correct: bool) -> None:
        if attempt.from_cache:
            if correct:
                self.cache.record_success(attempt.key)
            else:
                self.cache.record_failure(attempt.key)
        else:
            self.calibrator.record_outcome(attempt.raw_confidence, correct, attempt.model_id)
            if correct:
                self.breaker.record_success()
            else:
                self.breaker.record_failure()

    def _record(self, failure: FailureContext, result: HealResult) -> None:
        if self.ledger is None:
            return
        self.ledger.record(
            HealEvent(
                original_locator=str(failure.original_locator) if failure.original_locator else "",
                healed_locator=str(result.healed_locator) if result.healed_locator else None,
                confidence=result.confidence or 0.0,
                success=result.succeeded,
                outcome=result.outcome.value,
                step_text=failure.step_text,
            )
        )
