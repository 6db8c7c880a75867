"""Shared lifecycle of the measurement-driven test protocols."""

from __future__ import annotations

import enum
import logging
from typing import Any

from gripctl.core.model import ForceMeasurement

LOGGER = logging.getLogger(__name__)

DEFAULT_COUNTDOWN_MS = 3000.0


class Outcome(enum.Enum):
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class ProtocolEngine:
    """Finite-state test protocol fed with timestamped measurements.

    Subclasses declare a ``State`` enum with at least ``IDLE``, ``COUNTDOWN``
    and ``COMPLETE`` members, the state entered when the countdown ends, and
    ``_process`` for every measurement after the countdown. No timers are
    involved: all phase changes are decided on measurement timestamps.
    """

    name = "protocol"
    State: Any

    def __init__(self, *, countdown_ms: float = DEFAULT_COUNTDOWN_MS) -> None:
        self.countdown_ms = countdown_ms
        self.state = self.State.IDLE
        self.outcome: Outcome | None = None
        self.result: Any = None
        self._countdown_started_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.state not in (self.State.IDLE, self.State.COMPLETE)

    def start(self) -> None:
        self._reset()
        self.outcome = None
        self.result = None
        self._countdown_started_at = None
        self._set_state(self.State.COUNTDOWN)

    def feed(self, measurement: ForceMeasurement) -> Any:
        if not self.is_active:
            return None
        if self.state is self.State.COUNTDOWN:
            if self._countdown_started_at is None:
                self._countdown_started_at = measurement.timestamp
            if measurement.timestamp - self._countdown_started_at < self.countdown_ms:
                return None
            self._set_state(self._state_after_countdown())
        return self._process(measurement)

    def cancel(self) -> None:
        """Discard accumulated data and return to ``IDLE`` without a result."""
        if not self.is_active:
            return
        self._reset()
        self.result = None
        self.outcome = Outcome.CANCELLED
        self._set_state(self.State.IDLE)

    def _complete(self, result: Any) -> Any:
        self.result = result
        self.outcome = Outcome.COMPLETE
        self._set_state(self.State.COMPLETE)
        return result

    def _set_state(self, state: Any) -> None:
        if state is not self.state:
            LOGGER.debug("%s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state

    def _state_after_countdown(self) -> Any:
        raise NotImplementedError

    def _process(self, measurement: ForceMeasurement) -> Any:
        raise NotImplementedError

    def _reset(self) -> None:
        raise NotImplementedError
