"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from gripctl.core.model import DetectedDevice, DeviceDescriptor

NotifyCallback = Callable[[bytes], None]


class Transport(Protocol):
    async def scan(self, timeout_s: float = 5.0) -> list[DetectedDevice]:
        """Scan for advertising devices."""

    async def connect(
        self,
        descriptor: DeviceDescriptor,
        address: str,
        on_disconnect: Callable[[], None],
    ) -> Any:
        """Connect to a device and return an opaque handle."""

    def is_connected(self, handle: Any) -> bool:
        """Report whether the handle is still usable."""

    async def read_characteristic(self, handle: Any, service_uuid: str, characteristic_uuid: str) -> bytes:
        """Read a characteristic value."""

    async def write_characteristic(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        *,
        with_response: bool = True,
    ) -> None:
        """Write a characteristic value."""

    async def subscribe_notify(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuid: str,
        callback: NotifyCallback,
    ) -> None:
        """Deliver characteristic notifications to callback."""

    async def subscribe_advertisements(self, handle: Any, callback: NotifyCallback) -> None:
        """Deliver manufacturer data of the handle's device to callback.

        Data starts with the little-endian company identifier.
        """

    async def disconnect(self, handle: Any) -> None:
        """Release the handle."""
