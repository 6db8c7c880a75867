"""Tare, unit conversion and running statistics over the decoded sample stream."""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from gripctl.core.errors import BusyError
from gripctl.core.model import ForceMeasurement, ForceSample
from gripctl.core.units import KG, convert_force, validate_unit

LOGGER = logging.getLogger(__name__)

TOTAL = "total"
DEFAULT_TARE_DURATION_MS = 5000


class StreamState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass
class TareState:
    offsets: dict[str, float] = field(default_factory=dict)
    sample_count: int = 0
    is_complete: bool = True


class RunningStats:
    """Peak/min/mean folded in O(1) per value."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.count = 0
        self.peak = 0.0
        self.min = 0.0
        self.mean = 0.0
        self.first_timestamp: float | None = None
        self.last_timestamp: float | None = None

    def add(self, value: float, timestamp: float) -> None:
        if self.count == 0:
            self.peak = value
            self.min = value
            self.first_timestamp = timestamp
        else:
            self.peak = max(self.peak, value)
            self.min = min(self.min, value)
        self.count += 1
        self.mean += (value - self.mean) / self.count
        self.last_timestamp = timestamp

    @property
    def sampling_rate_hz(self) -> float | None:
        if self.first_timestamp is None or self.last_timestamp is None:
            return None
        elapsed_ms = self.last_timestamp - self.first_timestamp
        if elapsed_ms <= 0:
            return None
        return (self.count - 1) / (elapsed_ms / 1000.0)

    def measurement(self, unit: str, timestamp: float, current: float) -> ForceMeasurement:
        return ForceMeasurement(
            unit=unit,
            timestamp=timestamp,
            current=current,
            peak=self.peak,
            mean=self.mean,
            min=self.min,
            sampling_rate_hz=self.sampling_rate_hz,
        )


class _TareCollector:
    def __init__(self, duration_ms: float) -> None:
        self.duration_ms = duration_ms
        self.started_at: float | None = None
        self.sums: dict[str, float] = {}
        self.counts: dict[str, int] = {}
        self.sample_count = 0

    def add(self, group: Sequence[ForceSample]) -> bool:
        timestamp = group[0].timestamp_ms
        if self.started_at is None:
            self.started_at = timestamp
        for sample in group:
            key = sample.channel or TOTAL
            self.sums[key] = self.sums.get(key, 0.0) + sample.raw_value
            self.counts[key] = self.counts.get(key, 0) + 1
        self.sample_count += 1
        return timestamp - self.started_at >= self.duration_ms

    def offsets(self) -> dict[str, float]:
        return {key: self.sums[key] / self.counts[key] for key in self.sums}


class StreamingEngine:
    def __init__(self, *, native_unit: str = KG, unit: str = KG) -> None:
        self.native_unit = validate_unit(native_unit)
        self._unit = validate_unit(unit)
        self.state = StreamState.IDLE
        self.tare_state = TareState()
        self.duration_ms: float | None = None
        self._stream_started_at: float | None = None
        self._tare: _TareCollector | None = None
        self._previous_tare: TareState | None = None
        self._stats: dict[str, RunningStats] = {}

    @property
    def unit(self) -> str:
        return self._unit

    @unit.setter
    def unit(self, value: str) -> None:
        self._unit = validate_unit(value)
        self.reset_stats()

    @property
    def is_taring(self) -> bool:
        return self._tare is not None

    def reset_stats(self) -> None:
        self._stats.clear()

    def start(self, duration_ms: float | None = None) -> None:
        self.duration_ms = duration_ms or None
        self._stream_started_at = None
        self.reset_stats()
        self._set_state(StreamState.STREAMING)

    def stop(self) -> None:
        if self.state is StreamState.IDLE:
            return
        self._set_state(StreamState.IDLE)

    def tare(self, duration_ms: float = DEFAULT_TARE_DURATION_MS) -> None:
        if self._tare is not None:
            raise BusyError("A tare is already in progress")
        self._previous_tare = self.tare_state
        self.tare_state = TareState(offsets=dict(self._previous_tare.offsets), is_complete=False)
        self._tare = _TareCollector(duration_ms)
        LOGGER.debug("Tare started for %s ms", duration_ms)

    def cancel_tare(self) -> None:
        if self._tare is None:
            return
        self._tare = None
        if self._previous_tare is not None:
            self.tare_state = self._previous_tare
        self._previous_tare = None
        LOGGER.debug("Tare cancelled; previous offsets restored")

    def clear_tare(self) -> None:
        self.cancel_tare()
        self.tare_state = TareState()

    def feed(self, samples: Sequence[ForceSample]) -> list[ForceMeasurement]:
        """Fold one decoded sample batch into measurements.

        A batch whose samples all carry a channel is one multi-channel
        reading; otherwise every sample is a reading of its own.
        """
        if not samples:
            return []
        if all(sample.channel for sample in samples):
            groups: list[Sequence[ForceSample]] = [samples]
        else:
            groups = [[sample] for sample in samples]

        measurements: list[ForceMeasurement] = []
        for group in groups:
            measurement = self._process(group)
            if measurement is not None:
                measurements.append(measurement)
        return measurements

    def _process(self, group: Sequence[ForceSample]) -> ForceMeasurement | None:
        if self._tare is not None:
            done = self._tare.add(group)
            self.tare_state.sample_count = self._tare.sample_count
            if done:
                self._complete_tare(self._tare)
            return None

        if self.state is not StreamState.STREAMING:
            return None

        timestamp = group[0].timestamp_ms
        if self._stream_started_at is None:
            self._stream_started_at = timestamp
        if self.duration_ms is not None and timestamp - self._stream_started_at >= self.duration_ms:
            self._set_state(StreamState.STOPPED)
            return None

        if len(group) == 1 and not group[0].channel:
            value = self._corrected(group[0])
            stats = self._stats_for(TOTAL)
            stats.add(value, timestamp)
            return stats.measurement(self._unit, timestamp, value)

        distribution: dict[str, ForceMeasurement] = {}
        total = 0.0
        for sample in group:
            value = self._corrected(sample)
            stats = self._stats_for(sample.channel or TOTAL)
            stats.add(value, timestamp)
            distribution[sample.channel or TOTAL] = stats.measurement(self._unit, timestamp, value)
            total += value
        total_stats = self._stats_for(TOTAL)
        total_stats.add(total, timestamp)
        measurement = total_stats.measurement(self._unit, timestamp, total)
        return ForceMeasurement(
            unit=measurement.unit,
            timestamp=measurement.timestamp,
            current=measurement.current,
            peak=measurement.peak,
            mean=measurement.mean,
            min=measurement.min,
            sampling_rate_hz=measurement.sampling_rate_hz,
            distribution=distribution,
        )

    def _corrected(self, sample: ForceSample) -> float:
        offset = self.tare_state.offsets.get(sample.channel or TOTAL, 0.0)
        return convert_force(sample.raw_value - offset, self.native_unit, self._unit)

    def _stats_for(self, key: str) -> RunningStats:
        if key not in self._stats:
            self._stats[key] = RunningStats()
        return self._stats[key]

    def _complete_tare(self, collector: _TareCollector) -> None:
        self.tare_state = TareState(
            offsets=collector.offsets(),
            sample_count=collector.sample_count,
            is_complete=True,
        )
        self._tare = None
        self._previous_tare = None
        self.reset_stats()
        LOGGER.debug("Tare complete: %s", self.tare_state.offsets)

    def _set_state(self, state: StreamState) -> None:
        if state is not self.state:
            LOGGER.debug("Stream state %s -> %s", self.state.value, state.value)
        self.state = state
