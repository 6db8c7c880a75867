"""Critical force test: repeated pull/rest intervals, CF and W' from the series."""

from __future__ import annotations

import enum
import statistics
from dataclasses import dataclass

from gripctl.core.model import ForceMeasurement
from gripctl.protocols.base import DEFAULT_COUNTDOWN_MS, Outcome, ProtocolEngine


@dataclass(frozen=True)
class CriticalForceOptions:
    reps: int = 24
    pull_ms: float = 7000.0
    rest_ms: float = 3000.0
    final_reps: int = 3
    exclude_outliers: bool = False
    countdown_ms: float = DEFAULT_COUNTDOWN_MS


@dataclass(frozen=True)
class RepResult:
    index: int
    peak: float
    mean: float
    sample_count: int


@dataclass(frozen=True)
class CriticalForceResult:
    unit: str
    critical_force: float | None
    w_prime: float | None
    reps: tuple[RepResult, ...]
    ended_early: bool = False
    outcome: Outcome = Outcome.COMPLETE


class _RepAccumulator:
    def __init__(self, index: int) -> None:
        self.index = index
        self.count = 0
        self.total = 0.0
        self.peak = 0.0
        self.curve: list[tuple[float, float]] = []

    def add(self, timestamp: float, force: float) -> None:
        self.peak = force if self.count == 0 else max(self.peak, force)
        self.count += 1
        self.total += force
        self.curve.append((timestamp, force))

    def result(self) -> RepResult:
        return RepResult(index=self.index, peak=self.peak, mean=self.total / self.count, sample_count=self.count)


def critical_force(means: list[float], final_reps: int, *, exclude_outliers: bool = False) -> float | None:
    """Mean of the trailing ``final_reps`` rep means, optionally dropping
    those further than one standard deviation from the window mean."""
    window = means[-final_reps:] if final_reps > 0 else []
    if not window:
        return None
    if exclude_outliers and len(window) > 1:
        centre = statistics.fmean(window)
        spread = statistics.pstdev(window)
        kept = [value for value in window if abs(value - centre) <= spread]
        window = kept or window
    return statistics.fmean(window)


def w_prime(curves: list[list[tuple[float, float]]], cf: float) -> float:
    """Trapezoidal integral of force above CF over the pulls, in unit-seconds."""
    total = 0.0
    for curve in curves:
        for (t0, f0), (t1, f1) in zip(curve, curve[1:]):
            total += (max(0.0, f0 - cf) + max(0.0, f1 - cf)) / 2 * ((t1 - t0) / 1000.0)
    return total


class CriticalForceTest(ProtocolEngine):
    name = "critical_force"

    class State(enum.Enum):
        IDLE = "idle"
        COUNTDOWN = "countdown"
        PULL = "pull"
        REST = "rest"
        COMPLETE = "complete"

    def __init__(self, options: CriticalForceOptions | None = None) -> None:
        self.options = options or CriticalForceOptions()
        super().__init__(countdown_ms=self.options.countdown_ms)
        self._reset()

    @property
    def completed_reps(self) -> tuple[RepResult, ...]:
        return tuple(rep.result() for rep in self._reps)

    @property
    def current_rep(self) -> int | None:
        return self._current.index if self._current is not None else None

    def _reset(self) -> None:
        self._started_at: float | None = None
        self._reps: list[_RepAccumulator] = []
        self._current: _RepAccumulator | None = None
        self._unit = ""

    def _state_after_countdown(self) -> State:
        return self.State.PULL

    def _process(self, measurement: ForceMeasurement) -> CriticalForceResult | None:
        self._unit = measurement.unit
        if self._started_at is None:
            self._started_at = measurement.timestamp
        elapsed = measurement.timestamp - self._started_at
        cycle = self.options.pull_ms + self.options.rest_ms
        rep_index = int(elapsed // cycle)

        if rep_index >= self.options.reps:
            self._close_rep()
            return self._complete(self._build_result(ended_early=False))

        if elapsed - rep_index * cycle < self.options.pull_ms:
            if self._current is not None and self._current.index != rep_index:
                self._close_rep()
            if self._current is None:
                self._current = _RepAccumulator(rep_index)
            self._set_state(self.State.PULL)
            self._current.add(measurement.timestamp, max(0.0, measurement.current))
        else:
            self._close_rep()
            self._set_state(self.State.REST)
        return None

    def finish(self) -> CriticalForceResult | None:
        """End the test early with the reps recorded so far."""
        if not self.is_active:
            return None
        if self.state is self.State.REST:
            self._close_rep()
        self._current = None
        return self._complete(self._build_result(ended_early=True))

    def _close_rep(self) -> None:
        if self._current is not None and self._current.count > 0:
            self._reps.append(self._current)
        self._current = None

    def _build_result(self, *, ended_early: bool) -> CriticalForceResult:
        reps = tuple(rep.result() for rep in self._reps)
        cf = critical_force(
            [rep.mean for rep in reps],
            self.options.final_reps,
            exclude_outliers=self.options.exclude_outliers,
        )
        wp = w_prime([rep.curve for rep in self._reps], cf) if cf is not None else None
        return CriticalForceResult(
            unit=self._unit,
            critical_force=cf,
            w_prime=wp,
            reps=reps,
            ended_early=ended_early,
        )
