from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from intent_healer.config.schema import CalibrationConfig

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.1
CORRECT_NUDGE = 1.01
INCORRECT_NUDGE = 0.99
MIN_MODEL_FACTOR = 0.8
MAX_MODEL_FACTOR = 1.2
WELL_CALIBRATED_ERROR = 0.10


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class CalibrationBucket:
    """Success/failure counters for one confidence range."""

    __slots__ = ("lower", "upper", "_successes", "_failures", "_lock")

    def __init__(self, lower: float, upper: float) -> None:
        self.lower = lower
        self.upper = upper
        self._successes = 0
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def midpoint(self) -> float:
        return (self.lower + self.upper) / 2

    def add(self, success: bool) -> None:
        with self._lock:
            if success:
                self._successes += 1
            else:
                self._failures += 1

    def counts(self) -> tuple[int, int]:
        with self._lock:
            return self._successes, self._failures

    @property
    def sample_count(self) -> int:
        successes, failures = self.counts()
        return successes + failures

    @property
    def success_rate(self) -> float:
        successes, failures = self.counts()
        total = successes + failures
        return successes / total if total else 0.0

    def reset(self) -> None:
        with self._lock:
            self._successes = 0
            self._failures = 0


@dataclass(frozen=True, slots=True)
class CalibrationSample:
    reported_confidence: float
    was_correct: bool
    model_id: str | None
    timestamp: float


@dataclass(frozen=True, slots=True)
class CalibrationPoint:
    predicted: float
    observed: float
    sample_count: int


@dataclass(frozen=True, slots=True)
class BucketStats:
    range_label: str
    sample_count: int
    success_rate: float


@dataclass(frozen=True, slots=True)
class CalibrationStats:
    total_samples: int
    average_confidence: float
    actual_accuracy: float
    calibration_error: float
    well_calibrated: bool
    buckets: tuple[BucketStats, ...]


class ConfidenceCalibrator:
    """Maps raw oracle confidence onto observed historical accuracy.

    Confidence space is split into equal-width buckets. Once a bucket holds
    ``min_samples_per_bucket`` outcomes its empirical success rate replaces the
    raw value. A per-model factor, tracked as an exponential moving average, is
    applied on top.
    """

    def __init__(
        self,
        config: CalibrationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CalibrationConfig()
        self._clock = clock
        size = self.config.num_buckets
        self._buckets = tuple(CalibrationBucket(i / size, (i + 1) / size) for i in range(size))
        self._samples: list[CalibrationSample] = []
        self._samples_lock = threading.Lock()
        self._model_factors: dict[str, float] = {}
        self._models_lock = threading.Lock()

    @property
    def buckets(self) -> tuple[CalibrationBucket, ...]:
        return self._buckets

    def bucket_index(self, confidence: float) -> int:
        index = int(_clamp(confidence) * len(self._buckets))
        return min(index, len(self._buckets) - 1)

    def calibrate(self, raw_confidence: float, model_id: str | None = None) -> float:
        raw = _clamp(raw_confidence)
        bucket = self._buckets[self.bucket_index(raw)]
        calibrated = raw
        successes, failures = bucket.counts()
        if successes + failures >= self.config.min_samples_per_bucket:
            calibrated = successes / (successes + failures)
        if model_id is not None:
            with self._models_lock:
                factor = self._model_factors.get(model_id)
            if factor is not None:
                calibrated *= factor
        return _clamp(calibrated)

    def record_outcome(self, raw_confidence: float, was_correct: bool, model_id: str | None = None) -> None:
        raw = _clamp(raw_confidence)
        with self._samples_lock:
            self._samples.append(CalibrationSample(raw, was_correct, model_id, self._clock()))
            self._buckets[self.bucket_index(raw)].add(was_correct)
        if model_id is not None:
            self._update_model_factor(model_id, was_correct)
        logger.debug("Recorded calibration outcome: confidence=%.3f correct=%s model=%s", raw, was_correct, model_id)

    def model_adjustment(self, model_id: str) -> float:
        with self._models_lock:
            return self._model_factors.get(model_id, 1.0)

    def _update_model_factor(self, model_id: str, was_correct: bool) -> None:
        nudge = CORRECT_NUDGE if was_correct else INCORRECT_NUDGE
        with self._models_lock:
            current = self._model_factors.get(model_id, 1.0)
            updated = EMA_ALPHA * nudge + (1 - EMA_ALPHA) * current
            self._model_factors[model_id] = _clamp(updated, MIN_MODEL_FACTOR, MAX_MODEL_FACTOR)

    def calibration_error(self) -> float | None:
        errors = [
            abs(bucket.midpoint - bucket.success_rate)
            for bucket in self._buckets
            if bucket.sample_count >= self.config.min_samples_per_bucket
        ]
        if not errors:
            return None
        return sum(errors) / len(errors)

    def is_well_calibrated(self) -> bool:
        error = self.calibration_error()
        return error is not None and error < WELL_CALIBRATED_ERROR

    def calibration_curve(self) -> list[CalibrationPoint]:
        points = []
        for bucket in self._buckets:
            count = bucket.sample_count
            if count:
                points.append(CalibrationPoint(bucket.midpoint, bucket.success_rate, count))
        return points

    def recommended_threshold(self, target_accuracy: float) -> float:
        """Lowest bucket bound, scanning from the top, whose observed accuracy meets the target."""

        for bucket in reversed(self._buckets):
            if bucket.sample_count >= self.config.min_samples_per_bucket and bucket.success_rate >= target_accuracy:
                return bucket.lower
        return 0.9

    def stats(self) -> CalibrationStats:
        with self._samples_lock:
            samples = list(self._samples)
        total = len(samples)
        average = sum(sample.reported_confidence for sample in samples) / total if total else 0.0
        accuracy = sum(1 for sample in samples if sample.was_correct) / total if total else 0.0
        buckets = tuple(
            BucketStats(f"{bucket.lower:.1f}-{bucket.upper:.1f}", bucket.sample_count, bucket.success_rate)
            for bucket in self._buckets
        )
        return CalibrationStats(
            total_samples=total,
            average_confidence=average,
            actual_accuracy=accuracy,
            calibration_error=abs(average - accuracy),
            well_calibrated=self.is_well_calibrated(),
            buckets=buckets,
        )

    def prune_older_than(self, max_age_seconds: float) -> int:
        cutoff = self._clock() - max_age_seconds
        with self._samples_lock:
            kept = [sample for sample in self._samples if sample.timestamp >= cutoff]
            removed = len(self._samples) - len(kept)
            self._samples = kept
            for bucket in self._buckets:
                bucket.reset()
            for sample in kept:
                self._buckets[self.bucket_index(sample.reported_confidence)].add(sample.was_correct)
        logger.info("Pruned %d calibration samples older than %.0fs", removed, max_age_seconds)
        return removed

    def reset(self) -> None:
        with self._samples_lock:
            self._samples.clear()
            for bucket in self._buckets:
                bucket.reset()
        with self._models_lock:
            self._model_factors.clear()
        logger.info("Calibration data reset")
