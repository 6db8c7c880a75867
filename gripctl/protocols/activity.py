"""Debounced active/inactive detection on the force stream."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass

from gripctl.core.model import ForceMeasurement
from gripctl.protocols.base import Outcome, ProtocolEngine

DEFAULT_THRESHOLD = 2.5
DEFAULT_DURATION_MS = 1000.0


@dataclass(frozen=True)
class ActivityOptions:
    threshold: float = DEFAULT_THRESHOLD
    duration_ms: float = DEFAULT_DURATION_MS
    countdown_ms: float = 0.0


@dataclass(frozen=True)
class ActivityChange:
    active: bool
    timestamp: float
    force: float
    outcome: Outcome = Outcome.COMPLETE


class ActivityMonitor(ProtocolEngine):
    """Reports a transition once the force stays on the other side of the
    threshold for ``duration_ms``. Runs until cancelled."""

    name = "activity"

    class State(enum.Enum):
        IDLE = "idle"
        COUNTDOWN = "countdown"
        INACTIVE = "inactive"
        ACTIVE = "active"
        COMPLETE = "complete"

    def __init__(
        self,
        options: ActivityOptions | None = None,
        on_change: Callable[[ActivityChange], None] | None = None,
    ) -> None:
        self.options = options or ActivityOptions()
        super().__init__(countdown_ms=self.options.countdown_ms)
        self.on_change = on_change
        self._candidate_since: float | None = None

    @property
    def is_active_user(self) -> bool:
        return self.state is self.State.ACTIVE

    def _reset(self) -> None:
        self._candidate_since = None

    def _state_after_countdown(self) -> State:
        return self.State.INACTIVE

    def _process(self, measurement: ForceMeasurement) -> ActivityChange | None:
        above = measurement.current > self.options.threshold
        if above == (self.state is self.State.ACTIVE):
            self._candidate_since = None
            return None

        if self._candidate_since is None:
            self._candidate_since = measurement.timestamp
        if measurement.timestamp - self._candidate_since < self.options.duration_ms:
            return None

        self._candidate_since = None
        self._set_state(self.State.ACTIVE if above else self.State.INACTIVE)
        change = ActivityChange(active=above, timestamp=measurement.timestamp, force=measurement.current)
        if self.on_change is not None:
            self.on_change(change)
        return change
