from __future__ import annotations

import threading

import pytest

from intent_healer.config.schema import CalibrationConfig
from intent_healer.core.calibration import ConfidenceCalibrator


def feed(calibrator, confidence, successes, failures, model_id=None):
    for _ in range(successes):
        calibrator.record_outcome(confidence, True, model_id)
    for _ in range(failures):
        calibrator.record_outcome(confidence, False, model_id)


def test_raw_confidence_passes_through_below_sample_threshold():
    calibrator = ConfidenceCalibrator()
    feed(calibrator, 0.85, successes=0, failures=9)

    assert calibrator.calibrate(0.85) == 0.85
    assert calibrator.calibrate(0.42) == 0.42


def test_bucket_success_rate_replaces_raw_confidence():
    calibrator = ConfidenceCalibrator()
    feed(calibrator, 0.85, successes=60, failures=40)

    assert calibrator.calibrate(0.85) == pytest.approx(0.60, abs=0.05)
    assert calibrator.calibrate(0.81) == pytest.approx(0.60, abs=0.05)
    assert calibrator.calibrate(0.75) == 0.75


def test_inputs_and_outputs_are_clamped():
    calibrator = ConfidenceCalibrator()

    assert calibrator.calibrate(1.5) == 1.0
    assert calibrator.calibrate(-0.2) == 0.0
    assert calibrator.bucket_index(1.0) == 9


def test_model_factor_moves_by_moving_average_and_is_applied_after_substitution():
    calibrator = ConfidenceCalibrator()
    calibrator.record_outcome(0.5, True, "stub:model")

    assert calibrator.model_adjustment("stub:model") == pytest.approx(1.001)
    assert calibrator.model_adjustment("unknown") == 1.0
    assert calibrator.calibrate(0.5, "stub:model") == pytest.approx(0.5005)
    assert calibrator.calibrate(0.5) == 0.5


def test_model_factor_stays_within_bounds():
    calibrator = ConfidenceCalibrator()
    feed(calibrator, 0.3, successes=0, failures=500, model_id="flaky")

    factor = calibrator.model_adjustment("flaky")
    assert 0.8 <= factor <= 1.0
    assert factor == pytest.approx(0.99, abs=1e-3)


def test_custom_bucket_configuration():
    calibrator = ConfidenceCalibrator(CalibrationConfig(num_buckets=4, min_samples_per_bucket=2))
    feed(calibrator, 0.9, successes=1, failures=1)

    assert len(calibrator.buckets) == 4
    assert calibrator.calibrate(0.8) == 0.5


def test_diagnostics_for_a_well_calibrated_history():
    calibrator = ConfidenceCalibrator()
    feed(calibrator, 0.95, successes=19, failures=1)
    feed(calibrator, 0.55, successes=11, failures=9)

    assert calibrator.calibration_error() == pytest.approx(0.0)
    assert calibrator.is_well_calibrated()
    curve = calibrator.calibration_curve()
    assert [(point.sample_count, round(point.observed, 2)) for point in curve] == [(20, 0.55), (20, 0.95)]
    assert calibrator.recommended_threshold(0.9) == pytest.approx(0.9)
    stats = calibrator.stats()
    assert stats.total_samples == 40
    assert stats.actual_accuracy == pytest.approx(0.75)
    assert stats.average_confidence == pytest.approx(0.75)


def test_diagnostics_without_data():
    calibrator = ConfidenceCalibrator()

    assert calibrator.calibration_error() is None
    assert not calibrator.is_well_calibrated()
    assert calibrator.recommended_threshold(0.9) == 0.9
    assert calibrator.stats().total_samples == 0


def test_prune_rebuilds_buckets_from_recent_samples(clock):
    calibrator = ConfidenceCalibrator(clock=clock)
    feed(calibrator, 0.85, successes=0, failures=10)
    clock.advance(100)
    feed(calibrator, 0.85, successes=3, failures=0)

    assert calibrator.calibrate(0.85) == pytest.approx(3 / 13)
    assert calibrator.prune_older_than(50) == 10
    assert calibrator.calibrate(0.85) == 0.85
    assert calibrator.stats().total_samples == 3


def test_reset_clears_buckets_and_model_factors():
    calibrator = ConfidenceCalibrator()
    feed(calibrator, 0.85, successes=10, failures=10, model_id="stub")

    calibrator.reset()

    assert calibrator.calibrate(0.85) == 0.85
    assert calibrator.model_adjustment("stub") == 1.0


def test_concurrent_outcome_reports_are_all_counted():
    calibrator = ConfidenceCalibrator()

    def report():
        feed(calibrator, 0.65, successes=50, failures=50, model_id="shared")

    threads = [threading.Thread(target=report) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert calibrator.buckets[6].sample_count == 800
    assert calibrator.calibrate(0.65) == pytest.approx(0.5, abs=0.01)
