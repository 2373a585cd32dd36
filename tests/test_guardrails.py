from __future__ import annotations

from intent_healer.config.schema import GuardrailConfig
from intent_healer.core.guardrails import GuardrailChecker
from intent_healer.core.models import FailureKind, HealDecision, HealPolicy, IntentContract
from intent_healer.core.results import GuardrailType
from tests.helpers import make_element, make_failure


def test_pre_check_refuses_then_steps_and_assertion_failures():
    checker = GuardrailChecker()
    then_step = make_failure("Then the dashboard is shown", step_keyword="Then")
    assertion = make_failure(step_keyword="When", failure_kind=FailureKind.ASSERTION_FAILURE)

    for failure in (then_step, assertion):
        result = checker.check_pre(failure, IntentContract(policy=HealPolicy.AUTO_ALL))
        assert result.refused
        assert result.type is GuardrailType.ASSERTION_STEP


def test_pre_check_refuses_policy_off_and_unapproved_destructive_intent():
    checker = GuardrailChecker()
    failure = make_failure()

    off = checker.check_pre(failure, IntentContract(policy=HealPolicy.OFF))
    destructive = checker.check_pre(failure, IntentContract(policy=HealPolicy.AUTO_SAFE, destructive=True))
    approved = checker.check_pre(failure, IntentContract(policy=HealPolicy.AUTO_ALL, destructive=True))

    assert off.type is GuardrailType.POLICY_OFF
    assert destructive.type is GuardrailType.DESTRUCTIVE_ACTION
    assert approved.proceed


def test_forbidden_keyword_in_step_text_only_warns(caplog):
    checker = GuardrailChecker()
    failure = make_failure("When the user clicks remove filter")

    with caplog.at_level("WARNING"):
        result = checker.check_pre(failure, IntentContract())

    assert result.proceed
    assert "remove" in caplog.text


def test_post_check_order_and_codes():
    checker = GuardrailChecker(GuardrailConfig(min_confidence=0.8))
    button = make_element(0, text="Continue")

    assert checker.check_post(HealDecision.heal(0, 0.79), button).type is GuardrailType.LOW_CONFIDENCE
    assert checker.check_post(HealDecision.heal(0, 0.8), button).proceed
    hidden = make_element(0, text="Continue", visible=False)
    assert checker.check_post(HealDecision.heal(0, 0.95), hidden).type is GuardrailType.NOT_INTERACTABLE
    disabled = make_element(0, text="Continue", enabled=False)
    assert checker.check_post(HealDecision.heal(0, 0.95), disabled).type is GuardrailType.NOT_INTERACTABLE


def test_post_check_finds_multilingual_keywords_in_text_label_and_title():
    checker = GuardrailChecker()
    decision = HealDecision.heal(0, 0.99)

    candidates = [
        make_element(0, text="Delete account"),
        make_element(0, aria_label="Konto löschen"),
        make_element(0, title="アカウントを削除"),
        make_element(0, text="  SUPPRIMER  "),
    ]
    for element in candidates:
        result = checker.check_post(decision, element)
        assert result.type is GuardrailType.FORBIDDEN_KEYWORD, element


def test_low_confidence_is_reported_before_forbidden_keyword():
    checker = GuardrailChecker()
    result = checker.check_post(HealDecision.heal(0, 0.3), make_element(0, text="Delete"))
    assert result.type is GuardrailType.LOW_CONFIDENCE


def test_url_patterns_must_match_the_whole_url():
    checker = GuardrailChecker(GuardrailConfig(forbidden_url_patterns=[r".*/logout", r"https://admin\..*"]))

    assert checker.check_url("https://app.test/logout").type is GuardrailType.FORBIDDEN_URL
    assert checker.check_url("https://admin.app.test/users").refused
    assert checker.check_url("https://app.test/logout/confirm").proceed
    assert checker.check_url(None).proceed
