from __future__ import annotations

import asyncio

import pytest

from gripctl.core.characteristic_io import CharacteristicIO, MailboxState
from gripctl.core.errors import (
    CommandInFlightError,
    CommandTimeoutError,
    NotConnectedError,
    TransportError,
    UnknownCharacteristicError,
)
from gripctl.core.model import CommandAck, TextResponse, WeightSample

TX = ("progressor", "tx")


@pytest.fixture
def io(descriptors, fake_transport) -> CharacteristicIO:
    fake_transport.connected = True
    return CharacteristicIO(fake_transport, "C1:00:00:00:00:01", descriptors["progressor"])


@pytest.mark.asyncio
async def test_ack_after_delay_resolves_write(io, fake_transport) -> None:
    task = asyncio.create_task(io.write(*TX, b"\x6f", timeout_ms=1000))
    await asyncio.sleep(0.2)
    assert io.mailbox(*TX).state is MailboxState.AWAITING_RESPONSE

    assert io.handle_event(CommandAck(opcode=0, payload=b"\x57\x00\x00\x00")) is True
    assert await task == b"\x57\x00\x00\x00"
    assert fake_transport.writes == [b"\x6f"]
    assert io.mailbox(*TX).state is MailboxState.IDLE


@pytest.mark.asyncio
async def test_timeout_clears_slot_and_next_write_succeeds(io, fake_transport) -> None:
    with pytest.raises(CommandTimeoutError):
        await io.write(*TX, b"\x6b", timeout_ms=50)
    assert io.mailbox(*TX).state is MailboxState.IDLE

    loop = asyncio.get_running_loop()
    fake_transport.write_hook = lambda _: loop.call_soon(io.handle_event, CommandAck(opcode=0, payload=b"1.2.3"))
    assert await io.write(*TX, b"\x6b", timeout_ms=1000) == b"1.2.3"


@pytest.mark.asyncio
async def test_overlapping_write_fails_fast(io) -> None:
    first = asyncio.create_task(io.write(*TX, b"\x6f", timeout_ms=1000))
    await asyncio.sleep(0)

    with pytest.raises(CommandInFlightError):
        await io.write(*TX, b"\x6b", timeout_ms=1000)

    io.handle_event(CommandAck(opcode=0, payload=b""))
    assert await first == b""


@pytest.mark.asyncio
async def test_data_events_do_not_resolve_pending_command(io) -> None:
    task = asyncio.create_task(io.write(*TX, b"\x6f", timeout_ms=1000))
    await asyncio.sleep(0)

    assert io.handle_event(WeightSample(samples=())) is False
    assert io.handle_event(TextResponse(text="hello")) is False
    assert not task.done()

    io.handle_event(CommandAck(opcode=0, payload=b"x"))
    assert await task == b"x"


def test_unsolicited_ack_is_not_consumed(io) -> None:
    assert io.handle_event(CommandAck(opcode=0, payload=b"late")) is False


@pytest.mark.asyncio
async def test_write_without_response_returns_after_transport_write(io, fake_transport) -> None:
    assert await io.write(*TX, "e", expect_response=False) is None
    assert fake_transport.writes == [b"e"]


@pytest.mark.asyncio
async def test_fail_pending_rejects_waiting_write(io) -> None:
    task = asyncio.create_task(io.write(*TX, b"\x6f", timeout_ms=1000))
    await asyncio.sleep(0)

    io.fail_pending(NotConnectedError("gone"))
    with pytest.raises(NotConnectedError):
        await task
    assert io.mailbox(*TX).state is MailboxState.IDLE


@pytest.mark.asyncio
async def test_write_requires_connection(io, fake_transport) -> None:
    fake_transport.connected = False
    with pytest.raises(NotConnectedError):
        await io.write(*TX, b"\x64")


@pytest.mark.asyncio
async def test_unknown_characteristic(io) -> None:
    with pytest.raises(UnknownCharacteristicError):
        await io.write("progressor", "missing", b"\x64")
    with pytest.raises(UnknownCharacteristicError):
        await io.read("battery", "level")


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped_and_slot_cleared(io, fake_transport) -> None:
    fake_transport.fail_writes = True
    with pytest.raises(TransportError):
        await io.write(*TX, b"\x6f")
    assert io.mailbox(*TX).state is MailboxState.IDLE


@pytest.mark.asyncio
async def test_read_decoding_convention(descriptors, fake_transport) -> None:
    fake_transport.connected = True
    io = CharacteristicIO(fake_transport, "C1:00:00:00:00:02", descriptors["motherboard"])
    fake_transport.reads = {
        "00002a19-0000-1000-8000-00805f9b34fb": b"\x55",
        "00002a26-0000-1000-8000-00805f9b34fb": b"2.4.1\x00",
    }

    assert await io.read("battery", "level") == 85
    assert await io.read("device", "firmware") == "2.4.1"

    io.read_decoders["firmware"] = lambda data: data[:1]
    assert await io.read("device", "firmware") == b"2"
