"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

from gripctl.core.descriptor_loader import load_descriptors
from gripctl.core.device_match import best_descriptor_for_device
from gripctl.core.errors import DeviceSelectionError
from gripctl.core.model import DetectedDevice, DeviceDescriptor, ResolvedTarget
from gripctl.core.session import DeviceSession
from gripctl.transports.base import Transport
from gripctl.transports.ble_gatt import BleakTransport

DEFAULT_SCAN_TIMEOUT_S = 5.0


class GripService:
    def __init__(self, *, transport: Transport | None = None) -> None:
        loaded = load_descriptors()
        self.descriptors = loaded.descriptors
        self.load_warnings = loaded.warnings
        self.transport = transport or BleakTransport()

    def list_descriptors(self) -> list[DeviceDescriptor]:
        return sorted(self.descriptors.values(), key=lambda d: d.id)

    async def list_devices(self, timeout_s: float = DEFAULT_SCAN_TIMEOUT_S) -> list[DetectedDevice]:
        return await self.transport.scan(timeout_s)

    async def resolve_target(
        self,
        descriptor_id: str | None,
        device_hint: str | None,
        *,
        timeout_s: float = DEFAULT_SCAN_TIMEOUT_S,
    ) -> ResolvedTarget:
        devices = await self.list_devices(timeout_s)

        if not devices:
            raise DeviceSelectionError("No Bluetooth devices found. Ensure your device is powered on and nearby.")

        descriptor_override: DeviceDescriptor | None = None
        if descriptor_id:
            descriptor_override = self.descriptors.get(descriptor_id)
            if descriptor_override is None:
                raise DeviceSelectionError(
                    f"Unknown device type '{descriptor_id}'. Use 'gripctl list' to inspect available descriptors."
                )

        candidates: list[ResolvedTarget] = []
        for device in devices:
            if descriptor_override:
                descriptor = descriptor_override
                if best_descriptor_for_device(device, {descriptor.id: descriptor}) is None:
                    continue
            else:
                descriptor = best_descriptor_for_device(device, self.descriptors)
                if descriptor is None:
                    continue
            candidates.append(ResolvedTarget(device=device, descriptor=descriptor))

        if device_hint:
            hint = device_hint.lower()
            hinted = [
                c
                for c in candidates
                if c.device.address.lower() == hint
                or hint in c.device.address.lower()
                or hint in c.device.name.lower()
                or hint in c.descriptor.id.lower()
                or hint in c.descriptor.name.lower()
            ]
            if not hinted:
                raise DeviceSelectionError(f"No device found matching '{device_hint}'")
            candidates = hinted

        if not candidates:
            if descriptor_id:
                raise DeviceSelectionError(f"No nearby device matched device type '{descriptor_id}'.")
            raise DeviceSelectionError(
                "No nearby device matched any descriptor. Use --type to target explicitly or add a descriptor."
            )

        if len(candidates) > 1:
            candidate_desc = ", ".join(f"{c.device.address} ({c.device.name})" for c in candidates)
            raise DeviceSelectionError(
                f"Multiple candidate devices found: {candidate_desc}. Use --device to choose one."
            )

        return candidates[0]

    def open_session(self, target: ResolvedTarget, *, unit: str | None = None) -> DeviceSession:
        return DeviceSession(self.transport, target.descriptor, target.device.address, unit=unit)

    async def connect(
        self,
        descriptor_id: str | None = None,
        device_hint: str | None = None,
        *,
        unit: str | None = None,
        timeout_s: float = DEFAULT_SCAN_TIMEOUT_S,
    ) -> DeviceSession:
        target = await self.resolve_target(descriptor_id, device_hint, timeout_s=timeout_s)
        session = self.open_session(target, unit=unit)
        await session.connect()
        return session
