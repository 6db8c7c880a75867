"""Connected-device session: transport -> decoder -> engine -> protocols."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from gripctl.core.characteristic_io import DEFAULT_WRITE_TIMEOUT_MS, CharacteristicIO
from gripctl.core.decoders import NotificationDecoder, TextLineDecoder, make_decoder
from gripctl.core.errors import (
    BusyError,
    CommandTimeoutError,
    NotConnectedError,
    ProtocolCancelledError,
    UnknownCommandError,
    UnsupportedOperationError,
)
from gripctl.core.model import (
    FAMILY_ADVERTISEMENT,
    FAMILY_TEXT,
    BatteryLevel,
    CommandAck,
    DecodedEvent,
    DecodeError,
    DeviceDescriptor,
    ErrorInfo,
    ForceMeasurement,
    TextResponse,
    WeightSample,
)
from gripctl.core.streaming import DEFAULT_TARE_DURATION_MS, StreamingEngine, StreamState, TareState
from gripctl.protocols.activity import ActivityChange, ActivityMonitor, ActivityOptions
from gripctl.protocols.base import ProtocolEngine
from gripctl.protocols.critical_force import CriticalForceOptions, CriticalForceResult, CriticalForceTest
from gripctl.protocols.peak_force import PeakForceOptions, PeakForceResult, PeakForceTest
from gripctl.protocols.rfd import RfdOptions, RfdResult, RfdTest
from gripctl.transports.base import Transport

LOGGER = logging.getLogger(__name__)

MeasurementCallback = Callable[[ForceMeasurement], None]

STOP_GRACE_MS = 1000
CALIBRATION_WAIT_MS = 2500
REASON_CANCELLED = "cancelled"
REASON_CONNECTION_LOST = "connection_lost"


def decode_response(payload: bytes, decode: str) -> Any:
    if decode == "u8":
        return payload[0] if payload else None
    if decode == "u32le":
        return int.from_bytes(payload[:4], "little") if len(payload) >= 4 else None
    if decode == "text":
        return payload.decode("utf-8", errors="replace").strip("\x00").strip()
    return payload


class DeviceSession:
    def __init__(
        self,
        transport: Transport,
        descriptor: DeviceDescriptor,
        address: str,
        *,
        unit: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.descriptor = descriptor
        self.address = address
        self.decoder: NotificationDecoder = make_decoder(descriptor, clock=clock)
        self.engine = StreamingEngine(native_unit=descriptor.unit, unit=unit or descriptor.unit)
        self.io: CharacteristicIO | None = None
        self.handle: Any = None
        self.protocol: ProtocolEngine | None = None
        self.low_battery = False
        self.last_error: ErrorInfo | None = None
        self._clock = clock
        self._listeners: list[MeasurementCallback] = []
        self._stream_listener: MeasurementCallback | None = None
        self._device_streaming = False
        self._protocol_future: asyncio.Future[Any] | None = None
        self._tare_future: asyncio.Future[TareState] | None = None
        self._stopped_future: asyncio.Future[None] | None = None
        self._text_future: asyncio.Future[str] | None = None
        self._calibration_future: asyncio.Future[None] | None = None
        self.calibration_wait_ms: float = CALIBRATION_WAIT_MS

    async def __aenter__(self) -> DeviceSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @property
    def unit(self) -> str:
        return self.engine.unit

    @property
    def is_connected(self) -> bool:
        return self.handle is not None and self.transport.is_connected(self.handle)

    # Connection

    async def connect(self) -> None:
        if self.is_connected:
            return
        notify_uuids = None
        if self.descriptor.family != FAMILY_ADVERTISEMENT:
            notify_uuids = self._notify_uuids()
        self.handle = await self.transport.connect(self.descriptor, self.address, self._on_disconnect)
        self.io = CharacteristicIO(self.transport, self.handle, self.descriptor, clock=self._clock)
        if notify_uuids is None:
            await self.transport.subscribe_advertisements(self.handle, self.handle_notification)
            self._device_streaming = True
            return
        await self.transport.subscribe_notify(self.handle, *notify_uuids, self.handle_notification)
        LOGGER.debug("Session for %s (%s) ready", self.address, self.descriptor.id)

    def _notify_uuids(self) -> tuple[str, str]:
        notify = self.descriptor.notify
        service = self.descriptor.service(notify.service) if notify else None
        characteristic = service.characteristic(notify.characteristic) if service and notify else None
        if service is None or characteristic is None:
            raise UnsupportedOperationError(f"Descriptor '{self.descriptor.id}' has no notify characteristic")
        return service.uuid, characteristic.uuid

    async def disconnect(self) -> None:
        if self.handle is None:
            return
        handle = self.handle
        self._connection_lost(REASON_CANCELLED, "Session disconnected")
        await self.transport.disconnect(handle)

    def _on_disconnect(self) -> None:
        LOGGER.warning("Device %s disconnected", self.address)
        self._connection_lost(REASON_CONNECTION_LOST, f"Connection to {self.address} lost")

    def _connection_lost(self, reason: str, message: str) -> None:
        self.handle = None
        self._device_streaming = False
        if self.io is not None:
            self.io.fail_pending(NotConnectedError(message))
        self.engine.cancel_tare()
        self.engine.stop()
        self._fail_future(self._tare_future, ProtocolCancelledError(message, reason=reason))
        self._fail_future(self._text_future, NotConnectedError(message))
        self._fail_future(self._calibration_future, NotConnectedError(message))
        if self.protocol is not None and self.protocol.is_active:
            self.protocol.cancel()
        self._fail_future(self._protocol_future, ProtocolCancelledError(message, reason=reason))
        self.protocol = None
        if self._stopped_future is not None and not self._stopped_future.done():
            self._stopped_future.set_result(None)

    def _require_connected(self) -> CharacteristicIO:
        if self.io is None or not self.is_connected:
            raise NotConnectedError(f"Device '{self.descriptor.name}' is not connected")
        return self.io

    @staticmethod
    def _fail_future(future: asyncio.Future[Any] | None, exc: BaseException) -> None:
        if future is not None and not future.done():
            future.set_exception(exc)

    # Notification pipeline

    def handle_notification(self, data: bytes) -> None:
        for event in self.decoder.decode(data):
            self._dispatch(event)
        future = self._calibration_future
        if future is not None and not future.done() and self._is_calibrated():
            future.set_result(None)

    def _dispatch(self, event: DecodedEvent) -> None:
        if self.io is not None and self.io.handle_event(event):
            return
        if isinstance(event, WeightSample):
            self._on_samples(event)
        elif isinstance(event, BatteryLevel):
            self.low_battery = event.low_warning
            if event.low_warning:
                LOGGER.warning("Low battery warning from %s", self.address)
        elif isinstance(event, ErrorInfo):
            self.last_error = event
            LOGGER.warning("Device error %s: %s", event.code, event.message)
        elif isinstance(event, TextResponse):
            if self._text_future is not None and not self._text_future.done():
                self._text_future.set_result(event.text)
            else:
                LOGGER.info("%s: %s", self.descriptor.name, event.text)
        elif isinstance(event, DecodeError):
            LOGGER.warning("Dropped notification from %s: %s", self.address, event.reason)
        elif isinstance(event, CommandAck):
            LOGGER.debug("Ignored command response opcode=%s", event.opcode)

    def _on_samples(self, event: WeightSample) -> None:
        measurements = self.engine.feed(event.samples)
        if (
            self._tare_future is not None
            and not self._tare_future.done()
            and not self.engine.is_taring
        ):
            self._tare_future.set_result(self.engine.tare_state)

        for measurement in measurements:
            for listener in list(self._listeners):
                listener(measurement)
            protocol = self.protocol
            if protocol is None or not protocol.is_active:
                continue
            protocol.feed(measurement)
            if protocol.state is protocol.State.COMPLETE:
                future = self._protocol_future
                if future is not None and not future.done():
                    future.set_result(protocol.result)

        if (
            self.engine.state is StreamState.STOPPED
            and self._stopped_future is not None
            and not self._stopped_future.done()
        ):
            self._stopped_future.set_result(None)

    # Commands

    async def send_command(self, name: str, *, timeout_ms: int = DEFAULT_WRITE_TIMEOUT_MS) -> Any:
        io = self._require_connected()
        command = self.descriptor.commands.get(name)
        if command is None:
            available = ", ".join(sorted(self.descriptor.commands)) or "<none>"
            raise UnknownCommandError(
                f"Descriptor '{self.descriptor.id}' does not define command '{name}'. Available: {available}"
            )
        write = self.descriptor.write
        if write is None:
            raise UnsupportedOperationError(f"Descriptor '{self.descriptor.id}' has no write characteristic")

        if self.descriptor.family == FAMILY_TEXT:
            if not command.response:
                await io.write(write.service, write.characteristic, command.payload, timeout_ms, expect_response=False)
                return None
            if self._text_future is not None and not self._text_future.done():
                raise BusyError("A text command is already awaiting its reply")
            self._text_future = asyncio.get_running_loop().create_future()
            try:
                await io.write(write.service, write.characteristic, command.payload, timeout_ms, expect_response=False)
                text = await asyncio.wait_for(self._text_future, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise CommandTimeoutError(f"No reply to '{name}' within {timeout_ms} ms") from exc
            finally:
                self._text_future = None
            return decode_response(text.encode("utf-8"), command.decode)

        payload = await io.write(
            write.service,
            write.characteristic,
            command.payload,
            timeout_ms,
            expect_response=command.response,
        )
        if payload is None:
            return None
        return decode_response(payload, command.decode)

    async def battery(self) -> Any:
        if "battery" in self.descriptor.commands:
            return await self.send_command("battery")
        if self._has_characteristic("battery", "level"):
            return await self._require_connected().read("battery", "level")
        raise UnsupportedOperationError(f"Device '{self.descriptor.name}' does not report battery level")

    async def firmware(self) -> Any:
        if "firmware" in self.descriptor.commands:
            return await self.send_command("firmware")
        if self._has_characteristic("device", "firmware"):
            return await self._require_connected().read("device", "firmware")
        raise UnsupportedOperationError(f"Device '{self.descriptor.name}' does not report firmware version")

    async def error_info(self) -> ErrorInfo:
        message = await self.send_command("error_info")
        return ErrorInfo(code=None, message=str(message or ""))

    def _has_characteristic(self, service_id: str, characteristic_id: str) -> bool:
        service = self.descriptor.service(service_id)
        return service is not None and service.characteristic(characteristic_id) is not None

    # Streaming

    def _is_calibrated(self) -> bool:
        if not isinstance(self.decoder, TextLineDecoder):
            return True
        calibration = self.decoder.calibration
        return all(calibration.has_channel(index) for index in range(len(self.decoder.CHANNELS)))

    async def _load_calibration(self) -> None:
        """Ask a text-family device for its calibration table before streaming."""
        if self._is_calibrated() or "calibration" not in self.descriptor.commands:
            return
        self._calibration_future = asyncio.get_running_loop().create_future()
        try:
            await self.send_command("calibration")
            await asyncio.wait_for(self._calibration_future, timeout=self.calibration_wait_ms / 1000)
        except asyncio.TimeoutError:
            LOGGER.warning("No complete calibration table from %s; samples stay uncalibrated", self.address)
        finally:
            self._calibration_future = None

    async def _start_device_stream(self) -> None:
        if self._device_streaming:
            return
        await self._load_calibration()
        self.decoder.reset()
        if "start_stream" in self.descriptor.commands:
            await self.send_command("start_stream")
        self._device_streaming = True

    async def _stop_device_stream(self) -> None:
        if not self._device_streaming or self.descriptor.family == FAMILY_ADVERTISEMENT:
            return
        if "stop_stream" in self.descriptor.commands and self.is_connected:
            await self.send_command("stop_stream")
        self._device_streaming = False

    def add_listener(self, callback: MeasurementCallback) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: MeasurementCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def stream(self, on_measurement: MeasurementCallback | None = None, duration_ms: float | None = None) -> None:
        """Start emitting measurements.

        Without a duration this returns once streaming runs; with one it
        returns after the engine stopped on the sample clock (or the
        duration plus a grace period elapsed on the host clock).
        """
        self._require_connected()
        if on_measurement is not None and on_measurement not in self._listeners:
            self.add_listener(on_measurement)
            self._stream_listener = on_measurement
        self.engine.start(duration_ms)
        await self._start_device_stream()
        if not duration_ms:
            return

        self._stopped_future = asyncio.get_running_loop().create_future()
        try:
            await asyncio.wait_for(self._stopped_future, timeout=(duration_ms + STOP_GRACE_MS) / 1000)
        except asyncio.TimeoutError:
            LOGGER.debug("Stream of %s ms ended on host clock", duration_ms)
        finally:
            self._stopped_future = None
        await self.stop()

    async def stop(self) -> None:
        """Stop streaming; listeners added with ``add_listener`` stay registered."""
        self.engine.stop()
        if self._stream_listener is not None:
            self.remove_listener(self._stream_listener)
            self._stream_listener = None
        await self._stop_device_stream()

    async def tare(self, duration_ms: float = DEFAULT_TARE_DURATION_MS) -> TareState:
        self._require_connected()
        self.engine.tare(duration_ms)
        started_here = not self._device_streaming
        self._tare_future = asyncio.get_running_loop().create_future()
        try:
            await self._start_device_stream()
            return await asyncio.wait_for(self._tare_future, timeout=(duration_ms + STOP_GRACE_MS) / 1000)
        except asyncio.TimeoutError as exc:
            self.engine.cancel_tare()
            raise CommandTimeoutError(f"Tare did not receive {duration_ms} ms of samples") from exc
        except BaseException:
            self.engine.cancel_tare()
            raise
        finally:
            self._tare_future = None
            if started_here and self.engine.state is not StreamState.STREAMING and self.is_connected:
                await self._stop_device_stream()

    def cancel_tare(self) -> None:
        self.engine.cancel_tare()
        self._fail_future(self._tare_future, ProtocolCancelledError("Tare cancelled", reason=REASON_CANCELLED))

    # Test protocols

    def _claim_protocol(self, protocol: ProtocolEngine) -> None:
        self._require_connected()
        if self.protocol is not None and self.protocol.is_active:
            raise BusyError(f"Test protocol '{self.protocol.name}' is already running")
        self.protocol = protocol

    def _require_left_right(self, left_right: bool) -> None:
        if left_right and not self.descriptor.is_multi_channel:
            raise UnsupportedOperationError(
                f"Device '{self.descriptor.name}' has a single force channel; left/right mode is unavailable"
            )

    async def _ensure_streaming(self) -> bool:
        started = False
        if self.engine.state is not StreamState.STREAMING:
            self.engine.start()
            started = True
        await self._start_device_stream()
        return started

    async def _run_protocol(self, protocol: ProtocolEngine) -> Any:
        self._claim_protocol(protocol)
        self._protocol_future = asyncio.get_running_loop().create_future()
        protocol.start()
        started = False
        try:
            started = await self._ensure_streaming()
            return await self._protocol_future
        finally:
            self._protocol_future = None
            if self.protocol is protocol:
                self.protocol = None
            if started and self.is_connected:
                await self.stop()

    async def run_activity_monitor(
        self,
        threshold: float = ActivityOptions.threshold,
        duration_ms: float = ActivityOptions.duration_ms,
        on_change: Callable[[ActivityChange], None] | None = None,
    ) -> ActivityMonitor:
        """Start the activity monitor; it runs until ``cancel_test``."""
        monitor = ActivityMonitor(ActivityOptions(threshold=threshold, duration_ms=duration_ms), on_change=on_change)
        self._claim_protocol(monitor)
        monitor.start()
        await self._ensure_streaming()
        return monitor

    async def run_rfd(self, options: RfdOptions | None = None) -> RfdResult:
        options = options or RfdOptions()
        self._require_left_right(options.left_right)
        return await self._run_protocol(RfdTest(options))

    async def run_critical_force(self, options: CriticalForceOptions | None = None) -> CriticalForceResult:
        return await self._run_protocol(CriticalForceTest(options))

    async def run_peak_force_mvc(self, options: PeakForceOptions | None = None) -> PeakForceResult:
        options = options or PeakForceOptions()
        self._require_left_right(options.left_right)
        return await self._run_protocol(PeakForceTest(options))

    def finish_test(self) -> None:
        """End a critical force test early with the reps recorded so far."""
        protocol = self.protocol
        if not isinstance(protocol, CriticalForceTest) or not protocol.is_active:
            raise UnsupportedOperationError("No critical force test is running")
        result = protocol.finish()
        if self._protocol_future is not None and not self._protocol_future.done():
            self._protocol_future.set_result(result)

    def cancel_test(self) -> None:
        protocol = self.protocol
        if protocol is None:
            return
        protocol.cancel()
        self.protocol = None
        self._fail_future(
            self._protocol_future,
            ProtocolCancelledError(f"Test '{protocol.name}' cancelled", reason=REASON_CANCELLED),
        )
