from __future__ import annotations

import asyncio
import dataclasses
import struct

import pytest
import pytest_asyncio

from gripctl.core.errors import (
    BusyError,
    CommandTimeoutError,
    NotConnectedError,
    ProtocolCancelledError,
    UnknownCommandError,
    UnsupportedOperationError,
)
from gripctl.core.session import DeviceSession
from gripctl.protocols.critical_force import CriticalForceOptions
from gripctl.protocols.peak_force import PeakForceOptions
from gripctl.protocols.rfd import RfdOptions

ADDRESS = "C1:00:00:00:00:01"


def _weight_frame(*samples: tuple[int, float]) -> bytes:
    payload = b"".join(struct.pack("<If", delta_ms, force) for delta_ms, force in samples)
    return bytes([1, len(payload)]) + payload


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def progressor(descriptors, fake_transport) -> DeviceSession:
    session = DeviceSession(fake_transport, descriptors["progressor"], ADDRESS)
    await session.connect()
    return session


@pytest.mark.asyncio
async def test_stream_for_duration_stops_device(progressor, fake_transport) -> None:
    received = []
    task = asyncio.create_task(progressor.stream(received.append, duration_ms=200))
    await _settle()
    fake_transport.notify(_weight_frame((0, 1.0), (100, 2.0), (100, 3.0)))
    await task

    assert [m.current for m in received] == [1.0, 2.0]
    assert fake_transport.writes == [b"\x65", b"\x66"]


@pytest.mark.asyncio
async def test_battery_and_firmware_commands(progressor, fake_transport) -> None:
    loop = asyncio.get_running_loop()
    replies = {
        b"\x6f": bytes([0, 4]) + (3987).to_bytes(4, "little"),
        b"\x6b": bytes([0, 5]) + b"1.2.4",
    }
    fake_transport.write_hook = lambda data: loop.call_soon(fake_transport.notify, replies[data])

    assert await progressor.battery() == 3987
    assert await progressor.firmware() == "1.2.4"


@pytest.mark.asyncio
async def test_samples_during_pending_command_still_reach_listeners(progressor, fake_transport) -> None:
    received = []
    await progressor.stream(received.append)
    loop = asyncio.get_running_loop()

    def _reply(data: bytes) -> None:
        if data == b"\x6f":
            loop.call_soon(fake_transport.notify, _weight_frame((0, 5.0)))
            loop.call_soon(fake_transport.notify, bytes([0, 4]) + (4000).to_bytes(4, "little"))

    fake_transport.write_hook = _reply
    assert await progressor.battery() == 4000
    assert [m.current for m in received] == [5.0]


@pytest.mark.asyncio
async def test_command_timeout(progressor) -> None:
    with pytest.raises(CommandTimeoutError):
        await progressor.send_command("battery", timeout_ms=50)


@pytest.mark.asyncio
async def test_unknown_command(progressor) -> None:
    with pytest.raises(UnknownCommandError):
        await progressor.send_command("self_destruct")


@pytest.mark.asyncio
async def test_tare_collects_offsets(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.tare(1000))
    await _settle()
    fake_transport.notify(_weight_frame((0, 2.0), (500, 2.0), (500, 2.0)))
    state = await task

    assert state.is_complete
    assert state.offsets == {"total": 2.0}
    assert fake_transport.writes == [b"\x65", b"\x66"]


@pytest.mark.asyncio
async def test_cancel_tare_raises_in_waiter(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.tare(1000))
    await _settle()
    progressor.cancel_tare()

    with pytest.raises(ProtocolCancelledError) as excinfo:
        await task
    assert excinfo.value.reason == "cancelled"
    assert not progressor.engine.is_taring


@pytest.mark.asyncio
async def test_peak_force_run(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.run_peak_force_mvc(PeakForceOptions(duration_ms=1000, countdown_ms=0)))
    await _settle()
    fake_transport.notify(_weight_frame((0, 10.0), (300, 42.0), (300, 30.0), (400, 0.0)))
    result = await task

    assert result.peak == 42.0
    assert progressor.protocol is None
    assert fake_transport.writes[-1] == b"\x66"


@pytest.mark.asyncio
async def test_live_listener_outlives_protocol_run(progressor, fake_transport) -> None:
    display = []
    progressor.add_listener(display.append)
    task = asyncio.create_task(progressor.run_peak_force_mvc(PeakForceOptions(duration_ms=500, countdown_ms=0)))
    await _settle()
    fake_transport.notify(_weight_frame((0, 10.0), (300, 20.0), (300, 0.0)))
    await task
    assert [m.current for m in display] == [10.0, 20.0, 0.0]

    streamed = []
    await progressor.stream(streamed.append)
    fake_transport.notify(_weight_frame((0, 5.0)))
    await progressor.stop()
    fake_transport.notify(_weight_frame((0, 6.0)))

    assert [m.current for m in streamed] == [5.0]
    assert display[-1].current == 5.0
    await progressor.stream()
    fake_transport.notify(_weight_frame((100, 7.0)))
    assert display[-1].current == 7.0


@pytest.mark.asyncio
async def test_second_protocol_is_busy_and_cancel_reports(progressor) -> None:
    task = asyncio.create_task(progressor.run_peak_force_mvc(PeakForceOptions(countdown_ms=0)))
    await _settle()

    with pytest.raises(BusyError):
        await progressor.run_rfd(RfdOptions())
    with pytest.raises(BusyError):
        await progressor.run_activity_monitor()

    progressor.cancel_test()
    with pytest.raises(ProtocolCancelledError) as excinfo:
        await task
    assert excinfo.value.reason == "cancelled"


@pytest.mark.asyncio
async def test_connection_loss_cancels_running_test(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.run_critical_force(CriticalForceOptions(countdown_ms=0)))
    await _settle()
    fake_transport.notify(_weight_frame((0, 20.0), (1000, 21.0)))
    fake_transport.drop()

    with pytest.raises(ProtocolCancelledError) as excinfo:
        await task
    assert excinfo.value.reason == "connection_lost"
    assert progressor.protocol is None

    with pytest.raises(NotConnectedError):
        await progressor.stream()


@pytest.mark.asyncio
async def test_connection_loss_fails_pending_command(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.battery())
    await _settle()
    fake_transport.drop()

    with pytest.raises(NotConnectedError):
        await task


@pytest.mark.asyncio
async def test_critical_force_finish_early(progressor, fake_transport) -> None:
    task = asyncio.create_task(progressor.run_critical_force(CriticalForceOptions(countdown_ms=0)))
    await _settle()
    fake_transport.notify(_weight_frame((0, 20.0), (3000, 22.0), (4000, 0.0), (3000, 18.0)))
    progressor.finish_test()
    result = await task

    assert result.ended_early is True
    assert len(result.reps) == 1
    assert result.critical_force == pytest.approx(21.0)


@pytest.mark.asyncio
async def test_left_right_needs_multi_channel_device(progressor) -> None:
    with pytest.raises(UnsupportedOperationError):
        await progressor.run_peak_force_mvc(PeakForceOptions(left_right=True))
    with pytest.raises(UnsupportedOperationError):
        await progressor.run_rfd(RfdOptions(left_right=True))


@pytest.mark.asyncio
async def test_activity_monitor_occupies_slot_until_cancelled(progressor, fake_transport) -> None:
    changes = []
    monitor = await progressor.run_activity_monitor(threshold=2.5, duration_ms=500, on_change=changes.append)
    fake_transport.notify(_weight_frame((0, 10.0), (300, 10.0), (300, 10.0)))

    assert [c.active for c in changes] == [True]
    with pytest.raises(BusyError):
        await progressor.run_peak_force_mvc()

    progressor.cancel_test()
    assert progressor.protocol is None
    assert monitor.state is monitor.State.IDLE


@pytest.mark.asyncio
async def test_text_device_commands_and_battery_read(descriptors, fake_transport) -> None:
    session = DeviceSession(fake_transport, descriptors["motherboard"], ADDRESS)
    await session.connect()
    loop = asyncio.get_running_loop()
    fake_transport.write_hook = lambda data: loop.call_soon(fake_transport.notify, b"MB-0042\r\n") if data == b"#" else None
    fake_transport.reads = {"00002a19-0000-1000-8000-00805f9b34fb": b"\x5a"}

    assert await session.send_command("serial") == "MB-0042"
    assert await session.battery() == 90
    await session.send_command("calibration")
    assert fake_transport.writes == [b"#", b"C"]


CALIBRATION_LINES = b"".join(
    f"{channel},0,0,0\r\n{channel},0,10,1000\r\n".encode() for channel in range(3)
)


def _motherboard_packet(*raws: int) -> bytes:
    body = (1).to_bytes(2, "little") + (0).to_bytes(2, "little")
    for value in raws:
        body += (value & 0xFFFFFF).to_bytes(3, "little")
    return (body + bytes(3)).hex().encode() + b"\n"


@pytest.mark.asyncio
async def test_text_device_loads_calibration_before_streaming(descriptors, fake_transport) -> None:
    session = DeviceSession(fake_transport, descriptors["motherboard"], ADDRESS)
    await session.connect()
    loop = asyncio.get_running_loop()
    fake_transport.write_hook = (
        lambda data: loop.call_soon(fake_transport.notify, CALIBRATION_LINES) if data == b"C" else None
    )
    received = []
    await session.stream(received.append)
    fake_transport.notify(_motherboard_packet(100, 0, 0))

    assert fake_transport.writes == [b"C", b"S30"]
    assert len(received) == 1
    assert received[0].distribution["left"].current == pytest.approx(1.0)
    assert received[0].current == pytest.approx(1.0)

    await session.stop()
    fake_transport.writes.clear()
    await session.stream(received.append)
    assert fake_transport.writes == [b"S30"]


@pytest.mark.asyncio
async def test_text_device_streams_raw_when_calibration_never_arrives(descriptors, fake_transport) -> None:
    session = DeviceSession(fake_transport, descriptors["motherboard"], ADDRESS)
    session.calibration_wait_ms = 10
    await session.connect()
    received = []
    await session.stream(received.append)
    fake_transport.notify(_motherboard_packet(100, 0, 0))

    assert fake_transport.writes == [b"C", b"S30"]
    assert received[0].distribution["left"].current == 100.0


@pytest.mark.asyncio
async def test_advertisement_device_streams_without_commands(descriptors, fake_transport) -> None:
    session = DeviceSession(fake_transport, descriptors["wh_c06"], ADDRESS)
    await session.connect()
    received = []
    await session.stream(received.append)
    fake_transport.notify(bytes(12) + (2500).to_bytes(2, "big"))

    assert fake_transport.writes == []
    assert received[0].current == pytest.approx(25.0)
    with pytest.raises(UnsupportedOperationError):
        await session.battery()

    await session.disconnect()
    assert not session.is_connected


@pytest.mark.asyncio
async def test_connect_requires_notify_characteristic(descriptors, fake_transport) -> None:
    descriptor = dataclasses.replace(descriptors["progressor"], notify=None)
    session = DeviceSession(fake_transport, descriptor, ADDRESS)

    with pytest.raises(UnsupportedOperationError, match="no notify characteristic"):
        await session.connect()
    assert not fake_transport.connected
