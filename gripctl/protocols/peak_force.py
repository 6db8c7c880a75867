"""Peak force / maximal voluntary contraction test."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from gripctl.core.model import CHANNEL_LEFT, CHANNEL_RIGHT, ForceMeasurement
from gripctl.core.units import KG, LBS, convert_force, to_newtons
from gripctl.protocols.base import DEFAULT_COUNTDOWN_MS, Outcome, ProtocolEngine

TOTAL = "total"


@dataclass(frozen=True)
class PeakForceOptions:
    duration_ms: float = 5000.0
    countdown_ms: float = DEFAULT_COUNTDOWN_MS
    left_right: bool = False
    moment_arm_cm: float | None = None
    body_weight: float | None = None


@dataclass(frozen=True)
class PeakForceChannelResult:
    peak: float
    timestamp: float
    torque_nm: float | None = None
    body_weight_pct: float | None = None


@dataclass(frozen=True)
class PeakForceResult:
    unit: str
    channels: dict[str, PeakForceChannelResult]
    outcome: Outcome = Outcome.COMPLETE

    @property
    def peak(self) -> float | None:
        if not self.channels:
            return None
        return max(channel.peak for channel in self.channels.values())


class PeakForceTest(ProtocolEngine):
    name = "peak_force"

    class State(enum.Enum):
        IDLE = "idle"
        COUNTDOWN = "countdown"
        CAPTURING = "capturing"
        COMPLETE = "complete"

    def __init__(self, options: PeakForceOptions | None = None) -> None:
        self.options = options or PeakForceOptions()
        super().__init__(countdown_ms=self.options.countdown_ms)
        self._reset()

    @property
    def channel_names(self) -> tuple[str, ...]:
        return (CHANNEL_LEFT, CHANNEL_RIGHT) if self.options.left_right else (TOTAL,)

    def _reset(self) -> None:
        self._started_at: float | None = None
        self._peaks: dict[str, tuple[float, float]] = {}
        self._unit = ""

    def _state_after_countdown(self) -> State:
        return self.State.CAPTURING

    def _process(self, measurement: ForceMeasurement) -> PeakForceResult | None:
        self._unit = measurement.unit
        if self._started_at is None:
            self._started_at = measurement.timestamp
        if measurement.timestamp - self._started_at >= self.options.duration_ms:
            return self._complete(self._build_result())

        if self.options.left_right:
            distribution = measurement.distribution or {}
            values = {name: max(0.0, distribution[name].current) for name in self.channel_names if name in distribution}
        else:
            values = {TOTAL: max(0.0, measurement.current)}

        for name, force in values.items():
            best = self._peaks.get(name)
            if best is None or force > best[1]:
                self._peaks[name] = (measurement.timestamp, force)
        return None

    def _build_result(self) -> PeakForceResult:
        channels = {
            name: self._channel_result(timestamp, peak)
            for name, (timestamp, peak) in self._peaks.items()
        }
        return PeakForceResult(unit=self._unit, channels=channels)

    def _channel_result(self, timestamp: float, peak: float) -> PeakForceChannelResult:
        torque: float | None = None
        if self.options.moment_arm_cm is not None:
            torque = to_newtons(peak, self._unit) * (self.options.moment_arm_cm / 100.0)

        body_weight_pct: float | None = None
        if self.options.body_weight:
            reference_unit = LBS if self._unit == LBS else KG
            body_weight_pct = convert_force(peak, self._unit, reference_unit) / self.options.body_weight * 100.0

        return PeakForceChannelResult(
            peak=peak,
            timestamp=timestamp,
            torque_nm=torque,
            body_weight_pct=body_weight_pct,
        )
