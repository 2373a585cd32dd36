from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from intent_healer.config.schema import CircuitBreakerConfig
from intent_healer.core.results import GuardrailResult, GuardrailType

logger = logging.getLogger(__name__)

CALL_WINDOW_SECONDS = 24 * 60 * 60


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitStats:
    state: CircuitState
    failure_count: int
    success_count: int
    calls_in_window: int
    opened_at: float | None
    seconds_until_half_open: float


class CircuitBreaker:
    """Stops consulting the oracle after repeated heal failures or once the call budget is spent.

    Closed lets every call through. ``failure_threshold`` failures open the
    circuit; after ``open_duration_seconds`` it turns half-open and admits a
    few trial calls. Enough successes close it again, and any failure while
    half-open reopens it. Refusals count as neither.
    """

    def __init__(self, config: CircuitBreakerConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_attempts = 0
        self._opened_at: float | None = None
        self._calls: deque[float] = deque()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._update_state()
            return self._state

    def check(self) -> GuardrailResult:
        if not self.config.enabled:
            return GuardrailResult.ok()
        with self._lock:
            self._update_state()
            limit = self.config.daily_oracle_call_limit
            if limit is not None:
                self._prune_calls()
                if len(self._calls) >= limit:
                    return GuardrailResult.refuse(
                        GuardrailType.CIRCUIT_OPEN,
                        f"Daily oracle call limit of {limit} reached",
                    )
            if self._state is CircuitState.OPEN:
                return GuardrailResult.refuse(
                    GuardrailType.CIRCUIT_OPEN,
                    f"Circuit open after {self._failures} heal failures",
                )
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_attempts += 1
                if self._half_open_attempts > self.config.half_open_max_attempts:
                    return GuardrailResult.refuse(
                        GuardrailType.CIRCUIT_OPEN,
                        "Circuit half-open and its trial calls are used up",
                    )
        return GuardrailResult.ok()

    def record_call(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            self._calls.append(self._clock())

    def record_success(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            self._successes += 1
            if self._successes < self.config.success_threshold_to_close:
                return
            if self._state is CircuitState.HALF_OPEN:
                self._close()
            elif self._state is CircuitState.CLOSED:
                self._failures = 0
                self._successes = 0

    def record_failure(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            self._failures += 1
            self._successes = 0
            if self._state is CircuitState.HALF_OPEN:
                self._open()
            elif self._state is CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._open()

    def force_open(self) -> None:
        with self._lock:
            self._open()

    def reset(self) -> None:
        with self._lock:
            self._close()
            self._calls.clear()
        logger.info("Circuit breaker reset")

    def stats(self) -> CircuitStats:
        with self._lock:
            self._update_state()
            self._prune_calls()
            remaining = 0.0
            if self._state is CircuitState.OPEN and self._opened_at is not None:
                remaining = max(0.0, self._opened_at + self.config.open_duration_seconds - self._clock())
            return CircuitStats(
                self._state,
                self._failures,
                self._successes,
                len(self._calls),
                self._opened_at,
                remaining,
            )

    def _update_state(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.config.open_duration_seconds:
            self._state = CircuitState.HALF_OPEN
            self._half_open_attempts = 0
            self._successes = 0
            logger.info("Circuit breaker half-open, admitting trial heals")

    def _prune_calls(self) -> None:
        horizon = self._clock() - CALL_WINDOW_SECONDS
        while self._calls and self._calls[0] <= horizon:
            self._calls.popleft()

    def _open(self) -> None:
        previous = self._state
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_attempts = 0
        if previous is not CircuitState.OPEN:
            logger.warning("Circuit breaker opened after %d heal failures", self._failures)

    def _close(self) -> None:
        previous = self._state
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_attempts = 0
        self._opened_at = None
        if previous is not CircuitState.CLOSED:
            logger.info("Circuit breaker closed")
