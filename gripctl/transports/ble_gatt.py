"""BLE GATT transport implementation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from gripctl.core.errors import DeviceDiscoveryError, TransportConnectError, TransportError
from gripctl.core.model import FAMILY_ADVERTISEMENT, DetectedDevice, DeviceDescriptor
from gripctl.transports.base import NotifyCallback

LOGGER = logging.getLogger(__name__)


@dataclass
class AdvertisementHandle:
    """Passive listener for a device that only broadcasts."""

    address: str
    manufacturer_id: int | None
    scanner: BleakScanner | None = None
    callbacks: list[NotifyCallback] = field(default_factory=list)
    running: bool = False


class BleakTransport:
    def __init__(self, *, connect_timeout_s: float = 10.0) -> None:
        self.connect_timeout_s = connect_timeout_s

    async def scan(self, timeout_s: float = 5.0) -> list[DetectedDevice]:
        try:
            found = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except (BleakError, OSError) as exc:
            raise DeviceDiscoveryError(
                f"Bluetooth discovery failed. Ensure the adapter is powered on. Details: {exc}"
            ) from exc

        devices: list[DetectedDevice] = []
        for device, adv in found.values():
            devices.append(
                DetectedDevice(
                    address=device.address,
                    name=device.name or adv.local_name or "<unknown-device>",
                    manufacturer_ids=tuple(sorted(adv.manufacturer_data.keys())),
                )
            )
        return devices

    async def connect(
        self,
        descriptor: DeviceDescriptor,
        address: str,
        on_disconnect: Callable[[], None],
    ) -> Any:
        if descriptor.family == FAMILY_ADVERTISEMENT:
            return AdvertisementHandle(address=address, manufacturer_id=descriptor.match.manufacturer_id)

        client = BleakClient(
            address,
            disconnected_callback=lambda _: on_disconnect(),
            timeout=self.connect_timeout_s,
        )
        try:
            await client.connect()
        except (BleakError, OSError, TimeoutError) as exc:
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc
        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {address}")
        LOGGER.debug("Connected to %s (%s)", address, descriptor.id)
        return client

    def is_connected(self, handle: Any) -> bool:
        if isinstance(handle, AdvertisementHandle):
            return handle.running
        return bool(handle is not None and handle.is_connected)

    async def read_characteristic(self, handle: Any, service_uuid: str, characteristic_uuid: str) -> bytes:
        try:
            return bytes(await handle.read_gatt_char(characteristic_uuid))
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE read of {characteristic_uuid} failed: {exc}") from exc

    async def write_characteristic(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        *,
        with_response: bool = True,
    ) -> None:
        try:
            await handle.write_gatt_char(characteristic_uuid, data, response=with_response)
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE write to {characteristic_uuid} failed: {exc}") from exc

    async def subscribe_notify(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuid: str,
        callback: NotifyCallback,
    ) -> None:
        def _notify_handler(_: Any, data: bytearray) -> None:
            callback(bytes(data))

        try:
            await handle.start_notify(characteristic_uuid, _notify_handler)
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE notify on {characteristic_uuid} failed: {exc}") from exc

    async def subscribe_advertisements(self, handle: AdvertisementHandle, callback: NotifyCallback) -> None:
        handle.callbacks.append(callback)
        if handle.running:
            return

        def _detection_callback(device: Any, adv: Any) -> None:
            if device.address.lower() != handle.address.lower():
                return
            for company_id, data in adv.manufacturer_data.items():
                if handle.manufacturer_id is not None and company_id != handle.manufacturer_id:
                    continue
                frame = company_id.to_bytes(2, "little") + bytes(data)
                for cb in handle.callbacks:
                    cb(frame)

        handle.scanner = BleakScanner(detection_callback=_detection_callback)
        try:
            await handle.scanner.start()
        except (BleakError, OSError) as exc:
            raise TransportError(f"BLE advertisement scan failed: {exc}") from exc
        handle.running = True

    async def disconnect(self, handle: Any) -> None:
        if isinstance(handle, AdvertisementHandle):
            if handle.scanner is not None and handle.running:
                await handle.scanner.stop()
            handle.running = False
            return
        if handle is not None and handle.is_connected:
            try:
                await handle.disconnect()
            except (BleakError, OSError) as exc:
                raise TransportError(f"BLE disconnect failed: {exc}") from exc
