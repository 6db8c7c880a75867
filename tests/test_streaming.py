from __future__ import annotations

import pytest

from gripctl.core.errors import BusyError
from gripctl.core.model import ForceSample
from gripctl.core.streaming import StreamingEngine, StreamState


def _samples(values: list[float], step_ms: float = 100.0, start_ms: float = 0.0) -> list[ForceSample]:
    return [ForceSample(timestamp_ms=start_ms + i * step_ms, raw_value=v) for i, v in enumerate(values)]


def test_peak_tracks_current_and_mean_is_arithmetic() -> None:
    engine = StreamingEngine()
    engine.start()
    values = [1.0, 4.0, 2.5, 7.0, 3.0]
    measurements = engine.feed(_samples(values))

    assert len(measurements) == len(values)
    for m in measurements:
        assert m.peak >= m.current
        assert m.min <= m.current
    assert measurements[-1].peak == 7.0
    assert measurements[-1].min == 1.0
    assert measurements[-1].mean == pytest.approx(sum(values) / len(values))
    assert measurements[-1].sampling_rate_hz == pytest.approx(10.0)


def test_idle_engine_emits_nothing_and_stop_is_noop() -> None:
    engine = StreamingEngine()
    assert engine.feed(_samples([1.0, 2.0])) == []
    engine.stop()
    assert engine.state is StreamState.IDLE


def test_duration_moves_to_stopped_on_sample_clock() -> None:
    engine = StreamingEngine()
    engine.start(duration_ms=300)
    measurements = engine.feed(_samples([1.0, 2.0, 3.0, 4.0, 5.0]))

    assert [m.timestamp for m in measurements] == [0.0, 100.0, 200.0]
    assert engine.state is StreamState.STOPPED


def test_zero_duration_streams_until_stop() -> None:
    engine = StreamingEngine()
    engine.start(duration_ms=0)
    assert len(engine.feed(_samples([1.0] * 50))) == 50
    engine.stop()
    assert engine.state is StreamState.IDLE


def test_tare_suppresses_output_and_zeroes_baseline() -> None:
    engine = StreamingEngine()
    engine.start()
    engine.tare(duration_ms=500)

    assert engine.feed(_samples([2.0, 2.2, 1.8, 2.0, 2.1, 1.9])) == []
    assert engine.tare_state.is_complete
    assert engine.tare_state.offsets["total"] == pytest.approx(2.0)

    after = engine.feed(_samples([2.0, 2.0], start_ms=600))
    assert all(m.current == pytest.approx(0.0) for m in after)


def test_tare_is_idempotent_on_a_constant_baseline() -> None:
    engine = StreamingEngine()
    engine.tare(duration_ms=200)
    engine.feed(_samples([3.0, 3.0, 3.0]))
    first = dict(engine.tare_state.offsets)

    engine.tare(duration_ms=200)
    engine.feed(_samples([3.0, 3.0, 3.0], start_ms=1000))
    assert engine.tare_state.offsets == pytest.approx(first)


def test_second_tare_is_busy_and_cancel_restores_offsets() -> None:
    engine = StreamingEngine()
    engine.tare(duration_ms=100)
    engine.feed(_samples([1.0, 1.0]))
    assert engine.tare_state.offsets["total"] == pytest.approx(1.0)

    engine.tare(duration_ms=1000)
    with pytest.raises(BusyError):
        engine.tare(duration_ms=1000)

    engine.feed(_samples([5.0, 5.0], start_ms=2000))
    engine.cancel_tare()
    assert not engine.is_taring
    assert engine.tare_state.offsets["total"] == pytest.approx(1.0)
    assert engine.tare_state.is_complete


def test_unit_conversion_applies_after_tare() -> None:
    engine = StreamingEngine(native_unit="kg", unit="lbs")
    engine.start()
    measurement = engine.feed(_samples([10.0]))[0]
    assert measurement.unit == "lbs"
    assert measurement.current == pytest.approx(22.0462262185)

    engine.unit = "n"
    measurement = engine.feed(_samples([10.0], start_ms=100))[0]
    assert measurement.current == pytest.approx(98.0665)
    assert measurement.peak == pytest.approx(98.0665)


def test_multi_channel_samples_become_one_measurement() -> None:
    engine = StreamingEngine()
    engine.start()
    batch = [
        ForceSample(timestamp_ms=0.0, raw_value=1.0, channel="left"),
        ForceSample(timestamp_ms=0.0, raw_value=2.0, channel="center"),
        ForceSample(timestamp_ms=0.0, raw_value=3.0, channel="right"),
    ]
    measurements = engine.feed(batch)

    assert len(measurements) == 1
    m = measurements[0]
    assert m.current == pytest.approx(6.0)
    assert set(m.distribution) == {"left", "center", "right"}
    assert m.distribution["right"].current == 3.0
    assert m.distribution["right"].distribution is None

    payload = m.to_dict()
    assert payload["distribution"]["left"]["current"] == 1.0
    assert "distribution" not in payload["distribution"]["left"]


def test_multi_channel_tare_is_per_channel() -> None:
    engine = StreamingEngine()
    engine.tare(duration_ms=0)
    engine.feed(
        [
            ForceSample(timestamp_ms=0.0, raw_value=1.0, channel="left"),
            ForceSample(timestamp_ms=0.0, raw_value=-2.0, channel="right"),
        ]
    )
    assert engine.tare_state.offsets == {"left": 1.0, "right": -2.0}

    engine.start()
    m = engine.feed(
        [
            ForceSample(timestamp_ms=10.0, raw_value=1.0, channel="left"),
            ForceSample(timestamp_ms=10.0, raw_value=-2.0, channel="right"),
        ]
    )[0]
    assert m.current == pytest.approx(0.0)
