"""Stable public API for building tooling on top of gripctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from gripctl.core.errors import (
    BusyError,
    CommandInFlightError,
    CommandTimeoutError,
    DescriptorLoadError,
    DescriptorValidationError,
    DeviceDiscoveryError,
    DeviceSelectionError,
    GripctlError,
    NotConnectedError,
    ProtocolCancelledError,
    TransportConnectError,
    TransportError,
    UnknownCharacteristicError,
    UnknownCommandError,
    UnsupportedOperationError,
)
from gripctl.core.model import (
    DetectedDevice,
    DeviceDescriptor,
    ForceMeasurement,
    ForceSample,
    ResolvedTarget,
)
from gripctl.core.service import GripService
from gripctl.core.session import DeviceSession
from gripctl.core.streaming import TareState
from gripctl.protocols.activity import ActivityChange, ActivityMonitor
from gripctl.protocols.base import Outcome
from gripctl.protocols.critical_force import CriticalForceOptions, CriticalForceResult, RepResult
from gripctl.protocols.peak_force import PeakForceChannelResult, PeakForceOptions, PeakForceResult
from gripctl.protocols.rfd import RfdChannelResult, RfdOptions, RfdResult
from gripctl.transports.base import Transport
from gripctl.transports.ble_gatt import BleakTransport

__all__ = [
    "GripctlError",
    "BusyError",
    "CommandInFlightError",
    "CommandTimeoutError",
    "DescriptorLoadError",
    "DescriptorValidationError",
    "DeviceDiscoveryError",
    "DeviceSelectionError",
    "NotConnectedError",
    "ProtocolCancelledError",
    "TransportError",
    "TransportConnectError",
    "UnknownCharacteristicError",
    "UnknownCommandError",
    "UnsupportedOperationError",
    "DetectedDevice",
    "DeviceDescriptor",
    "ForceMeasurement",
    "ForceSample",
    "ResolvedTarget",
    "TareState",
    "Outcome",
    "ActivityChange",
    "ActivityMonitor",
    "CriticalForceOptions",
    "CriticalForceResult",
    "RepResult",
    "PeakForceOptions",
    "PeakForceResult",
    "PeakForceChannelResult",
    "RfdOptions",
    "RfdResult",
    "RfdChannelResult",
    "DeviceSession",
    "Transport",
    "BleakTransport",
    "Client",
]


class Client:
    """Public client for interacting with gripctl core capabilities.

    A `Client` instance wraps descriptor loading, BLE discovery/matching and
    session creation behind a stable API intended for third-party tools
    (GUI/TUI/services/scripts). Sessions it returns are connected.
    """

    def __init__(self, *, transport: Transport | None = None) -> None:
        self._service = GripService(transport=transport)

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    def list_descriptors(self) -> list[DeviceDescriptor]:
        return self._service.list_descriptors()

    async def list_devices(self, *, timeout_s: float = 5.0) -> list[DetectedDevice]:
        return await self._service.list_devices(timeout_s)

    async def resolve_target(
        self,
        *,
        descriptor_id: str | None = None,
        device_hint: str | None = None,
        timeout_s: float = 5.0,
    ) -> ResolvedTarget:
        return await self._service.resolve_target(descriptor_id, device_hint, timeout_s=timeout_s)

    async def connect(
        self,
        *,
        descriptor_id: str | None = None,
        device_hint: str | None = None,
        unit: str | None = None,
        timeout_s: float = 5.0,
    ) -> DeviceSession:
        return await self._service.connect(
            descriptor_id,
            device_hint,
            unit=unit,
            timeout_s=timeout_s,
        )
