"""Rate of force development test."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from gripctl.core.model import CHANNEL_LEFT, CHANNEL_RIGHT, ForceMeasurement
from gripctl.protocols.base import DEFAULT_COUNTDOWN_MS, Outcome, ProtocolEngine

TOTAL = "total"
DEFAULT_TIME_WINDOWS_MS = (100.0, 150.0, 200.0, 250.0, 300.0, 1000.0)


@dataclass(frozen=True)
class RfdOptions:
    threshold: float = 0.5
    duration_ms: float = 5000.0
    countdown_ms: float = DEFAULT_COUNTDOWN_MS
    left_right: bool = False
    time_windows_ms: tuple[float, ...] = DEFAULT_TIME_WINDOWS_MS


@dataclass(frozen=True)
class RfdChannelResult:
    onset_timestamp: float
    onset_force: float
    peak_force: float
    peak_timestamp: float
    time_to_peak_ms: float
    rfd: float
    rfd_20_80: float | None = None
    window_rfd: dict[float, float | None] = field(default_factory=dict)


@dataclass(frozen=True)
class RfdResult:
    unit: str
    channels: dict[str, RfdChannelResult]
    asymmetry_ratio: float | None = None
    outcome: Outcome = Outcome.COMPLETE

    @property
    def rfd(self) -> float | None:
        total = self.channels.get(TOTAL)
        return total.rfd if total else None


def _crossing_time(curve: list[tuple[float, float]], level: float) -> float | None:
    previous: tuple[float, float] | None = None
    for timestamp, force in curve:
        if force >= level:
            if previous is None or force == previous[1]:
                return timestamp
            t0, f0 = previous
            return t0 + (level - f0) / (force - f0) * (timestamp - t0)
        previous = (timestamp, force)
    return None


def _force_at(curve: list[tuple[float, float]], timestamp: float) -> float | None:
    previous: tuple[float, float] | None = None
    for t, force in curve:
        if t >= timestamp:
            if previous is None or t == previous[0]:
                return force
            t0, f0 = previous
            return f0 + (force - f0) * (timestamp - t0) / (t - t0)
        previous = (t, force)
    return None


class _ChannelCapture:
    def __init__(self, threshold: float, duration_ms: float) -> None:
        self.threshold = threshold
        self.duration_ms = duration_ms
        self.curve: list[tuple[float, float]] = []
        self.onset: tuple[float, float] | None = None
        self.peak: tuple[float, float] | None = None
        self.done = False
        self._previous: float | None = None

    def feed(self, timestamp: float, force: float) -> None:
        if self.done:
            return
        if self.onset is None:
            crossed = self._previous is not None and self._previous < self.threshold <= force
            self._previous = force
            if not crossed:
                return
            self.onset = (timestamp, force)

        self.curve.append((timestamp, force))
        if self.peak is None or force > self.peak[1]:
            self.peak = (timestamp, force)
        if timestamp - self.onset[0] >= self.duration_ms:
            self.done = True

    def result(self, time_windows_ms: tuple[float, ...]) -> RfdChannelResult | None:
        if self.onset is None or self.peak is None:
            return None
        onset_t, onset_f = self.onset
        peak_t, peak_f = self.peak
        time_to_peak = peak_t - onset_t
        rfd = (peak_f - onset_f) / (time_to_peak / 1000.0) if time_to_peak > 0 else 0.0

        rfd_20_80: float | None = None
        t20 = _crossing_time(self.curve, 0.2 * peak_f)
        t80 = _crossing_time(self.curve, 0.8 * peak_f)
        if t20 is not None and t80 is not None and t80 > t20:
            rfd_20_80 = 0.6 * peak_f / ((t80 - t20) / 1000.0)

        windows: dict[float, float | None] = {}
        for window in time_windows_ms:
            force = _force_at(self.curve, onset_t + window)
            windows[window] = (force - onset_f) / (window / 1000.0) if force is not None and window > 0 else None

        return RfdChannelResult(
            onset_timestamp=onset_t,
            onset_force=onset_f,
            peak_force=peak_f,
            peak_timestamp=peak_t,
            time_to_peak_ms=time_to_peak,
            rfd=rfd,
            rfd_20_80=rfd_20_80,
            window_rfd=windows,
        )


class RfdTest(ProtocolEngine):
    name = "rfd"

    class State(enum.Enum):
        IDLE = "idle"
        COUNTDOWN = "countdown"
        WAITING_FOR_ONSET = "waiting_for_onset"
        CAPTURING = "capturing"
        COMPLETE = "complete"

    def __init__(self, options: RfdOptions | None = None) -> None:
        self.options = options or RfdOptions()
        super().__init__(countdown_ms=self.options.countdown_ms)
        self._channels: dict[str, _ChannelCapture] = {}
        self._unit = ""

    @property
    def channel_names(self) -> tuple[str, ...]:
        return (CHANNEL_LEFT, CHANNEL_RIGHT) if self.options.left_right else (TOTAL,)

    def _reset(self) -> None:
        self._channels = {
            name: _ChannelCapture(self.options.threshold, self.options.duration_ms)
            for name in self.channel_names
        }
        self._unit = ""

    def _state_after_countdown(self) -> State:
        return self.State.WAITING_FOR_ONSET

    def _process(self, measurement: ForceMeasurement) -> RfdResult | None:
        self._unit = measurement.unit
        if self.options.left_right:
            distribution = measurement.distribution or {}
            for name in self.channel_names:
                block = distribution.get(name)
                if block is not None:
                    self._channels[name].feed(measurement.timestamp, block.current)
        else:
            self._channels[TOTAL].feed(measurement.timestamp, measurement.current)

        onsets = [capture.onset[0] for capture in self._channels.values() if capture.onset is not None]
        if not onsets:
            return None
        self._set_state(self.State.CAPTURING)
        # One capture window from the first onset; a side that never crosses is left out.
        window_over = measurement.timestamp - min(onsets) >= self.options.duration_ms
        started = [capture for capture in self._channels.values() if capture.onset is not None]
        if not window_over and not (
            len(started) == len(self._channels) and all(capture.done for capture in started)
        ):
            return None
        return self._complete(self._build_result())

    def _build_result(self) -> RfdResult:
        channels: dict[str, RfdChannelResult] = {}
        for name, capture in self._channels.items():
            result = capture.result(self.options.time_windows_ms)
            if result is not None:
                channels[name] = result

        asymmetry: float | None = None
        left, right = channels.get(CHANNEL_LEFT), channels.get(CHANNEL_RIGHT)
        if left is not None and right is not None and right.rfd != 0:
            asymmetry = left.rfd / right.rfd
        return RfdResult(unit=self._unit, channels=channels, asymmetry_ratio=asymmetry)
