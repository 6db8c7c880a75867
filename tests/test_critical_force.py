from __future__ import annotations

import pytest

from gripctl.core.model import ForceMeasurement
from gripctl.protocols.base import Outcome
from gripctl.protocols.critical_force import (
    CriticalForceOptions,
    CriticalForceTest,
    critical_force,
    w_prime,
)


def _m(timestamp: float, current: float) -> ForceMeasurement:
    return ForceMeasurement(unit="kg", timestamp=timestamp, current=current, peak=current, mean=current, min=current)


def _rep_samples(rep: int, force: float) -> list[ForceMeasurement]:
    base = rep * 10000
    pull = [_m(base + k * 1000, force) for k in range(7)]
    rest = [_m(base + 8000, 0.0), _m(base + 9000, 0.0)]
    return pull + rest


def _rep_force(rep: int) -> float:
    return {21: 32.0, 22: 31.0, 23: 30.0}.get(rep, 20.0)


def test_full_protocol_uses_final_reps() -> None:
    test = CriticalForceTest(CriticalForceOptions(countdown_ms=0))
    test.start()
    for rep in range(24):
        for measurement in _rep_samples(rep, _rep_force(rep)):
            assert test.feed(measurement) is None

    result = test.feed(_m(240000, 0.0))
    assert result is not None
    assert test.state is CriticalForceTest.State.COMPLETE
    assert result.outcome is Outcome.COMPLETE
    assert len(result.reps) == 24
    assert [rep.mean for rep in result.reps[-3:]] == [32.0, 31.0, 30.0]
    assert result.critical_force == pytest.approx(31.0)
    assert result.w_prime == pytest.approx(6.0)
    assert result.ended_early is False


def test_rest_samples_are_not_recorded() -> None:
    test = CriticalForceTest(CriticalForceOptions(countdown_ms=0, reps=2))
    test.start()
    test.feed(_m(0, 10.0))
    test.feed(_m(6999, 14.0))
    assert test.state is CriticalForceTest.State.PULL
    test.feed(_m(7000, 99.0))
    assert test.state is CriticalForceTest.State.REST

    reps = test.completed_reps
    assert len(reps) == 1
    assert reps[0].peak == 14.0
    assert reps[0].mean == pytest.approx(12.0)


def test_outlier_exclusion_drops_values_beyond_one_std() -> None:
    assert critical_force([10.0, 30.0, 31.0, 32.0, 29.0, 30.0], 6, exclude_outliers=True) == pytest.approx(30.4)
    assert critical_force([10.0, 30.0, 31.0, 32.0, 29.0, 30.0], 6) == pytest.approx(27.0)
    assert critical_force([], 3) is None


def test_w_prime_integrates_force_above_cf() -> None:
    curve = [(0.0, 10.0), (1000.0, 14.0), (2000.0, 10.0)]
    assert w_prime([curve], 10.0) == pytest.approx(4.0)
    assert w_prime([curve], 20.0) == 0.0


def test_finish_ends_early_with_completed_reps() -> None:
    test = CriticalForceTest(CriticalForceOptions(countdown_ms=0))
    test.start()
    for rep in range(2):
        for measurement in _rep_samples(rep, 25.0 + rep):
            test.feed(measurement)
    test.feed(_m(20000, 40.0))

    result = test.finish()
    assert result is not None
    assert result.ended_early is True
    assert len(result.reps) == 2
    assert result.critical_force == pytest.approx(25.5)
    assert test.state is CriticalForceTest.State.COMPLETE


def test_cancel_discards_reps() -> None:
    test = CriticalForceTest(CriticalForceOptions(countdown_ms=0))
    test.start()
    for measurement in _rep_samples(0, 20.0):
        test.feed(measurement)
    test.cancel()

    assert test.state is CriticalForceTest.State.IDLE
    assert test.result is None
    assert test.completed_reps == ()
    assert test.finish() is None


def test_negative_readings_are_clamped_in_rep_means() -> None:
    test = CriticalForceTest(CriticalForceOptions(countdown_ms=0))
    test.start()
    for measurement in [_m(0, -2.0), _m(1000, 4.0), _m(8000, -1.0)]:
        test.feed(measurement)

    rep = test.completed_reps[0]
    assert rep.mean == pytest.approx(2.0)
    assert rep.peak == 4.0
