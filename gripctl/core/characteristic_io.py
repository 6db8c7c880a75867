"""Characteristic read/write with per-characteristic command correlation."""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from gripctl.core.errors import (
    CommandInFlightError,
    CommandTimeoutError,
    NotConnectedError,
    TransportError,
    UnknownCharacteristicError,
)
from gripctl.core.model import FAMILY_TEXT, CommandAck, DecodedEvent, DeviceDescriptor
from gripctl.transports.base import Transport

LOGGER = logging.getLogger(__name__)

DEFAULT_WRITE_TIMEOUT_MS = 5000

ReadDecoder = Callable[[bytes], Any]


class MailboxState(enum.Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"


@dataclass
class PendingCommand:
    command_id: int
    issued_at: float
    timeout_ms: int
    future: asyncio.Future[bytes]


class CommandMailbox:
    """Single outstanding command slot of one characteristic."""

    def __init__(self, key: tuple[str, str]) -> None:
        self.key = key
        self.state = MailboxState.IDLE
        self.pending: PendingCommand | None = None

    def open(self, pending: PendingCommand) -> None:
        if self.state is MailboxState.AWAITING_RESPONSE:
            raise CommandInFlightError(
                f"A command is already awaiting a response on {self.key[0]}/{self.key[1]}"
            )
        self.pending = pending
        self.state = MailboxState.AWAITING_RESPONSE

    def resolve(self, payload: bytes) -> bool:
        pending = self.pending
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(payload)
        return True

    def fail(self, exc: BaseException) -> None:
        pending = self.pending
        if pending is not None and not pending.future.done():
            pending.future.set_exception(exc)
        self.clear()

    def clear(self) -> None:
        self.pending = None
        self.state = MailboxState.IDLE


def _default_read_decoder(characteristic_id: str) -> ReadDecoder:
    if characteristic_id == "level":
        return lambda data: data[0] if data else None
    return lambda data: data.decode("utf-8", errors="replace").strip("\x00")


class CharacteristicIO:
    def __init__(
        self,
        transport: Transport,
        handle: Any,
        descriptor: DeviceDescriptor,
        *,
        read_decoders: dict[str, ReadDecoder] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.handle = handle
        self.descriptor = descriptor
        self.read_decoders = dict(read_decoders or {})
        self._clock = clock
        self._mailboxes: dict[tuple[str, str], CommandMailbox] = {}
        self._ids = itertools.count(1)

    def mailbox(self, service_id: str, characteristic_id: str) -> CommandMailbox:
        key = (service_id, characteristic_id)
        if key not in self._mailboxes:
            self._mailboxes[key] = CommandMailbox(key)
        return self._mailboxes[key]

    def _resolve_uuids(self, service_id: str, characteristic_id: str) -> tuple[str, str]:
        service = self.descriptor.service(service_id)
        characteristic = service.characteristic(characteristic_id) if service else None
        if service is None or characteristic is None:
            raise UnknownCharacteristicError(
                f"Descriptor '{self.descriptor.id}' has no characteristic '{service_id}/{characteristic_id}'"
            )
        return service.uuid, characteristic.uuid

    def _require_connected(self) -> None:
        if self.handle is None or not self.transport.is_connected(self.handle):
            raise NotConnectedError(f"Device '{self.descriptor.name}' is not connected")

    async def read(self, service_id: str, characteristic_id: str) -> Any:
        self._require_connected()
        service_uuid, characteristic_uuid = self._resolve_uuids(service_id, characteristic_id)
        try:
            data = await self.transport.read_characteristic(self.handle, service_uuid, characteristic_uuid)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"Read of {service_id}/{characteristic_id} failed: {exc}") from exc
        decoder = self.read_decoders.get(characteristic_id) or _default_read_decoder(characteristic_id)
        return decoder(bytes(data))

    async def write(
        self,
        service_id: str,
        characteristic_id: str,
        message: bytes | str,
        timeout_ms: int = DEFAULT_WRITE_TIMEOUT_MS,
        expect_response: bool = True,
    ) -> bytes | None:
        self._require_connected()
        service_uuid, characteristic_uuid = self._resolve_uuids(service_id, characteristic_id)
        payload = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        mailbox = self.mailbox(service_id, characteristic_id)

        pending: PendingCommand | None = None
        if expect_response:
            pending = PendingCommand(
                command_id=next(self._ids),
                issued_at=self._clock(),
                timeout_ms=timeout_ms,
                future=asyncio.get_running_loop().create_future(),
            )
            mailbox.open(pending)
        elif mailbox.state is MailboxState.AWAITING_RESPONSE:
            raise CommandInFlightError(
                f"A command is already awaiting a response on {service_id}/{characteristic_id}"
            )

        try:
            try:
                await self.transport.write_characteristic(
                    self.handle,
                    service_uuid,
                    characteristic_uuid,
                    payload,
                    with_response=self.descriptor.family != FAMILY_TEXT,
                )
            except TransportError:
                raise
            except Exception as exc:
                raise TransportError(f"Write to {service_id}/{characteristic_id} failed: {exc}") from exc

            if pending is None:
                return None
            try:
                return await asyncio.wait_for(pending.future, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise CommandTimeoutError(
                    f"No response to command on {service_id}/{characteristic_id} within {timeout_ms} ms"
                ) from exc
        finally:
            if pending is not None and mailbox.pending is pending:
                mailbox.clear()

    def handle_event(self, event: DecodedEvent) -> bool:
        """Offer a decoded event to the oldest pending command.

        Returns True when the event resolved a command.
        """
        if not isinstance(event, CommandAck):
            return False
        waiting = [m for m in self._mailboxes.values() if m.pending is not None and not m.pending.future.done()]
        if not waiting:
            LOGGER.warning("Unsolicited command response opcode=%s payload=%s", event.opcode, event.payload.hex())
            return False
        oldest = min(waiting, key=lambda m: m.pending.command_id)  # type: ignore[union-attr]
        return oldest.resolve(event.payload)

    def fail_pending(self, exc: BaseException) -> None:
        for mailbox in self._mailboxes.values():
            if mailbox.pending is not None:
                LOGGER.debug("Failing pending command on %s/%s: %s", mailbox.key[0], mailbox.key[1], exc)
            mailbox.fail(exc)
