from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from gripctl.core.descriptor_loader import load_descriptors
from gripctl.core.model import DetectedDevice, DeviceDescriptor


class FakeTransport:
    def __init__(self, devices: list[DetectedDevice] | None = None) -> None:
        self.devices = list(devices or [])
        self.connected = False
        self.writes: list[bytes] = []
        self.reads: dict[str, bytes] = {}
        self.write_hook: Callable[[bytes], None] | None = None
        self.fail_writes = False
        self.callback: Callable[[bytes], None] | None = None
        self.on_disconnect: Callable[[], None] | None = None

    async def scan(self, timeout_s: float = 5.0) -> list[DetectedDevice]:
        return list(self.devices)

    async def connect(self, descriptor, address, on_disconnect):
        self.connected = True
        self.on_disconnect = on_disconnect
        return address

    def is_connected(self, handle) -> bool:
        return self.connected

    async def read_characteristic(self, handle, service_uuid, characteristic_uuid) -> bytes:
        return self.reads[characteristic_uuid]

    async def write_characteristic(self, handle, service_uuid, characteristic_uuid, data, *, with_response=True):
        if self.fail_writes:
            raise OSError("adapter gone")
        self.writes.append(data)
        if self.write_hook is not None:
            self.write_hook(data)

    async def subscribe_notify(self, handle, service_uuid, characteristic_uuid, callback) -> None:
        self.callback = callback

    async def subscribe_advertisements(self, handle, callback) -> None:
        self.callback = callback

    async def disconnect(self, handle) -> None:
        self.connected = False

    def notify(self, data: bytes) -> None:
        assert self.callback is not None
        self.callback(data)

    def drop(self) -> None:
        self.connected = False
        assert self.on_disconnect is not None
        self.on_disconnect()


@pytest.fixture
def isolated_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path


@pytest.fixture
def descriptors(isolated_xdg: Path) -> dict[str, DeviceDescriptor]:
    return load_descriptors().descriptors


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
