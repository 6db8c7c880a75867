"""Notification decoders, one per device family.

Each decoder turns the raw bytes of a notification (or the manufacturer data
of an advertisement) into a list of decoded events. Decoders never raise on
bad input: malformed frames come back as ``DecodeError`` events so the stream
keeps flowing.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import re
import struct
import time
from collections.abc import Callable, Iterable
from typing import Protocol

from gripctl.core.model import (
    CHANNEL_CENTER,
    CHANNEL_LEFT,
    CHANNEL_RIGHT,
    FAMILY_ADVERTISEMENT,
    FAMILY_BINARY,
    FAMILY_TEXT,
    BatteryLevel,
    CommandAck,
    DecodedEvent,
    DecodeError,
    DeviceDescriptor,
    ErrorInfo,
    ForceSample,
    TextResponse,
    WeightSample,
)

LOGGER = logging.getLogger(__name__)

_HEX_LINE_RE = re.compile(r"^[0-9A-Fa-f]+$")

Clock = Callable[[], float]


class NotificationDecoder(Protocol):
    def decode(self, data: bytes) -> list[DecodedEvent]:
        """Decode one notification payload into events."""

    def reset(self) -> None:
        """Restart the session clock used to timestamp samples."""


class BinaryFrameDecoder:
    """Decoder for ``[opcode:1][length:1][payload]`` command-protocol devices.

    Weight payloads pack ``(delta_time_ms:u32le, force:f32le)`` tuples; sample
    timestamps accumulate the deltas from the session start instead of using
    the notification arrival time.
    """

    SAMPLE = struct.Struct("<If")
    HEADER_SIZE = 2

    def __init__(
        self,
        *,
        response_opcodes: Iterable[int] = (0,),
        weight_opcode: int = 1,
        battery_opcode: int | None = 4,
        error_opcode: int | None = None,
    ) -> None:
        self.response_opcodes = frozenset(response_opcodes)
        self.weight_opcode = weight_opcode
        self.battery_opcode = battery_opcode
        self.error_opcode = error_opcode
        self._elapsed_ms = 0.0

    def reset(self) -> None:
        self._elapsed_ms = 0.0

    def decode(self, data: bytes) -> list[DecodedEvent]:
        events: list[DecodedEvent] = []
        offset = 0
        while offset < len(data):
            remaining = data[offset:]
            if len(remaining) < self.HEADER_SIZE:
                events.append(DecodeError("truncated frame header", bytes(remaining)))
                break
            opcode, length = remaining[0], remaining[1]
            payload = remaining[self.HEADER_SIZE:self.HEADER_SIZE + length]
            if len(payload) < length:
                events.append(
                    DecodeError(
                        f"truncated frame: expected {length} payload bytes, got {len(payload)}",
                        bytes(remaining),
                    )
                )
                break
            offset += self.HEADER_SIZE + length
            events.append(self._decode_frame(opcode, bytes(payload)))
        return events

    def _decode_frame(self, opcode: int, payload: bytes) -> DecodedEvent:
        if opcode == self.weight_opcode:
            return self._decode_weight(payload)
        if opcode in self.response_opcodes:
            return CommandAck(opcode=opcode, payload=payload)
        if self.battery_opcode is not None and opcode == self.battery_opcode:
            level = payload[0] if payload else None
            return BatteryLevel(level=level, low_warning=True)
        if self.error_opcode is not None and opcode == self.error_opcode:
            code = payload[0] if payload else None
            message = payload[1:].decode("utf-8", errors="replace").strip("\x00")
            return ErrorInfo(code=code, message=message)
        return DecodeError(f"unknown opcode 0x{opcode:02x}", bytes([opcode, len(payload)]) + payload)

    def _decode_weight(self, payload: bytes) -> DecodedEvent:
        if len(payload) % self.SAMPLE.size != 0:
            return DecodeError(
                f"weight payload of {len(payload)} bytes is not a multiple of {self.SAMPLE.size}",
                payload,
            )
        samples: list[ForceSample] = []
        for delta_ms, force in self.SAMPLE.iter_unpack(payload):
            self._elapsed_ms += delta_ms
            if math.isnan(force) or math.isinf(force):
                continue
            samples.append(ForceSample(timestamp_ms=self._elapsed_ms, raw_value=force))
        return WeightSample(samples=tuple(samples))


class AdvertisementDecoder:
    """Decoder for passive scales that broadcast weight in manufacturer data.

    Accepts raw bytes, hex text or base64 text. Weight is a big-endian u16 at
    ``weight_offset`` (counted from the start of the manufacturer data,
    company identifier included) divided by ``divisor``.
    """

    def __init__(
        self,
        *,
        weight_offset: int = 12,
        divisor: float = 100,
        clock: Clock = time.monotonic,
    ) -> None:
        self.weight_offset = weight_offset
        self.divisor = divisor
        self._clock = clock
        self._started_at = clock()

    def reset(self) -> None:
        self._started_at = self._clock()

    def decode(self, data: bytes | str | None) -> list[DecodedEvent]:
        timestamp_ms = (self._clock() - self._started_at) * 1000.0
        return [WeightSample(samples=(ForceSample(timestamp_ms=timestamp_ms, raw_value=self.parse_weight(data)),))]

    def parse_weight(self, data: bytes | str | None) -> float:
        raw = _coerce_manufacturer_data(data)
        if raw is None or len(raw) < self.weight_offset + 2:
            LOGGER.debug("Advertisement without usable manufacturer data: %r", data)
            return 0.0
        weight = int.from_bytes(raw[self.weight_offset:self.weight_offset + 2], "big")
        return weight / self.divisor


def _coerce_manufacturer_data(data: bytes | str | None) -> bytes | None:
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    text = data.strip()
    if not text:
        return None
    if len(text) % 2 == 0 and _HEX_LINE_RE.match(text):
        return bytes.fromhex(text)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


class CalibrationTable:
    """Piecewise-linear calibration points per channel, as ``(mass, raw)``."""

    def __init__(self) -> None:
        self._points: dict[int, list[tuple[float, float]]] = {}

    def add_point(self, channel_index: int, mass: float, raw: float) -> None:
        self._points.setdefault(channel_index, []).append((mass, raw))

    def clear(self) -> None:
        self._points.clear()

    def has_channel(self, channel_index: int) -> bool:
        return len(self._points.get(channel_index, [])) >= 2

    def apply(self, channel_index: int, sample: float) -> float:
        points = self._points.get(channel_index, [])
        if len(points) < 2:
            return sample

        zero = points[0][1]
        sign = 1.0
        if sample < zero:
            sign = -1.0
            sample = -sample

        for (mass_start, raw_start), (mass_end, raw_end) in zip(points, points[1:]):
            if sample < raw_end or (mass_end, raw_end) == points[-1]:
                if raw_end == raw_start:
                    return sign * mass_start
                ratio = (sample - raw_start) / (raw_end - raw_start)
                return sign * (mass_start + ratio * (mass_end - mass_start))
        return sample


class TextLineDecoder:
    """Decoder for UART-bridge devices that stream newline-terminated text.

    Lines made of exactly ``packet_length`` hex characters are weight packets
    carrying three 24-bit channels; ``channel,a,mass,raw`` lines are
    calibration points; anything else is surfaced as ``TextResponse``.
    """

    CHANNELS = (CHANNEL_LEFT, CHANNEL_CENTER, CHANNEL_RIGHT)
    SAMPLES_OFFSET = 4
    SAMPLE_SIZE = 3

    def __init__(
        self,
        *,
        packet_length: int = 32,
        invert_channels: Iterable[str] = (CHANNEL_CENTER, CHANNEL_RIGHT),
        clock: Clock = time.monotonic,
        calibration: CalibrationTable | None = None,
    ) -> None:
        self.packet_length = packet_length
        self.invert_channels = frozenset(invert_channels)
        self.calibration = calibration or CalibrationTable()
        self._clock = clock
        self._started_at = clock()
        self._buffer = bytearray()

    def reset(self) -> None:
        self._started_at = self._clock()
        self._buffer.clear()

    def decode(self, data: bytes) -> list[DecodedEvent]:
        self._buffer.extend(data)
        events: list[DecodedEvent] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buffer[:idx]).rstrip(b"\r")
            del self._buffer[:idx + 1]
            event = self._decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def _decode_line(self, line: bytes) -> DecodedEvent | None:
        if not line:
            return None
        text = line.decode("utf-8", errors="replace")
        if len(text) == self.packet_length and _HEX_LINE_RE.match(text):
            return self._decode_packet(bytes.fromhex(text))
        if self._maybe_calibration(text):
            return None
        return TextResponse(text=text)

    def _decode_packet(self, packet: bytes) -> DecodedEvent:
        needed = self.SAMPLES_OFFSET + self.SAMPLE_SIZE * len(self.CHANNELS)
        if len(packet) < needed:
            return DecodeError(f"packet of {len(packet)} bytes is shorter than {needed}", packet)
        timestamp_ms = (self._clock() - self._started_at) * 1000.0
        samples: list[ForceSample] = []
        for index, channel in enumerate(self.CHANNELS):
            start = self.SAMPLES_OFFSET + self.SAMPLE_SIZE * index
            raw = int.from_bytes(packet[start:start + self.SAMPLE_SIZE], "little")
            if raw >= 0x7FFFFF:
                raw -= 0x1000000
            value = self.calibration.apply(index, float(raw))
            if channel in self.invert_channels:
                value = -value
            samples.append(ForceSample(timestamp_ms=timestamp_ms, raw_value=value, channel=channel))
        return WeightSample(samples=tuple(samples))

    def _maybe_calibration(self, text: str) -> bool:
        parts = text.split(",")
        if len(parts) != 4:
            return False
        try:
            channel_index = int(parts[0])
            values = [float(part) for part in parts[1:]]
        except ValueError:
            return False
        self.calibration.add_point(channel_index, mass=values[1], raw=values[2])
        return True


def make_decoder(descriptor: DeviceDescriptor, *, clock: Clock = time.monotonic) -> NotificationDecoder:
    """Select the decoder capability for a descriptor's device family."""
    options = descriptor.decoder
    if descriptor.family == FAMILY_BINARY:
        return BinaryFrameDecoder(
            response_opcodes=options.get("response_opcodes", (0,)),  # type: ignore[arg-type]
            weight_opcode=int(options.get("weight_opcode", 1)),  # type: ignore[arg-type]
            battery_opcode=options.get("battery_opcode", 4),  # type: ignore[arg-type]
            error_opcode=options.get("error_opcode"),  # type: ignore[arg-type]
        )
    if descriptor.family == FAMILY_ADVERTISEMENT:
        return AdvertisementDecoder(
            weight_offset=int(options.get("weight_offset", 12)),  # type: ignore[arg-type]
            divisor=float(options.get("divisor", 100)),  # type: ignore[arg-type]
            clock=clock,
        )
    if descriptor.family == FAMILY_TEXT:
        return TextLineDecoder(
            packet_length=int(options.get("packet_length", 32)),  # type: ignore[arg-type]
            invert_channels=options.get("invert_channels", (CHANNEL_CENTER, CHANNEL_RIGHT)),  # type: ignore[arg-type]
            clock=clock,
        )
    raise ValueError(f"Unsupported device family '{descriptor.family}'")
