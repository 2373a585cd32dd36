from __future__ import annotations

from intent_healer.config.schema import CircuitBreakerConfig
from intent_healer.core.circuit import CALL_WINDOW_SECONDS, CircuitBreaker, CircuitState
from intent_healer.core.results import GuardrailType


def make_breaker(clock, **overrides):
    settings = {"enabled": True, "failure_threshold": 3, "open_duration_seconds": 60}
    settings.update(overrides)
    return CircuitBreaker(CircuitBreakerConfig(**settings), clock=clock)


def test_disabled_breaker_always_allows(clock):
    breaker = CircuitBreaker(CircuitBreakerConfig(), clock=clock)
    for _ in range(10):
        breaker.record_failure()

    assert breaker.check().proceed
    assert breaker.state is CircuitState.CLOSED


def test_opens_after_failure_threshold(clock):
    breaker = make_breaker(clock)
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.check().proceed

    breaker.record_failure()
    refused = breaker.check()

    assert refused.refused
    assert refused.type is GuardrailType.CIRCUIT_OPEN
    assert breaker.stats().seconds_until_half_open == 60


def test_half_open_admits_limited_trials_and_closes_on_successes(clock):
    breaker = make_breaker(clock, half_open_max_attempts=2, success_threshold_to_close=2)
    breaker.force_open()
    clock.advance(60)

    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.check().proceed
    assert breaker.check().proceed
    assert breaker.check().refused

    breaker.record_success()
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED
    assert breaker.check().proceed


def test_failure_while_half_open_reopens(clock):
    breaker = make_breaker(clock)
    breaker.force_open()
    clock.advance(61)
    assert breaker.check().proceed

    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    assert breaker.check().refused


def test_successes_in_a_row_clear_closed_failures(clock):
    breaker = make_breaker(clock, success_threshold_to_close=2)
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().failure_count == 1


def test_daily_call_limit_rolls_over(clock):
    breaker = make_breaker(clock, daily_oracle_call_limit=2)
    breaker.record_call()
    breaker.record_call()

    refused = breaker.check()
    assert refused.refused
    assert "limit of 2" in refused.reason

    clock.advance(CALL_WINDOW_SECONDS)
    assert breaker.check().proceed
    assert breaker.stats().calls_in_window == 0


def test_reset_closes_and_forgets_calls(clock):
    breaker = make_breaker(clock, daily_oracle_call_limit=1)
    breaker.record_call()
    breaker.force_open()

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.check().proceed
