"""Core data models used across loader, decoders, engine, and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

FAMILY_BINARY = "binary"
FAMILY_ADVERTISEMENT = "advertisement"
FAMILY_TEXT = "text"
FAMILIES = (FAMILY_BINARY, FAMILY_ADVERTISEMENT, FAMILY_TEXT)

CHANNEL_LEFT = "left"
CHANNEL_CENTER = "center"
CHANNEL_RIGHT = "right"


@dataclass(frozen=True)
class MatchRules:
    name: tuple[str, ...] = ()
    name_prefix: tuple[str, ...] = ()
    manufacturer_id: int | None = None


@dataclass(frozen=True)
class CharacteristicDescriptor:
    id: str
    uuid: str
    name: str = ""


@dataclass(frozen=True)
class ServiceDescriptor:
    id: str
    uuid: str
    characteristics: tuple[CharacteristicDescriptor, ...]
    name: str = ""

    def characteristic(self, characteristic_id: str) -> CharacteristicDescriptor | None:
        for characteristic in self.characteristics:
            if characteristic.id == characteristic_id:
                return characteristic
        return None


@dataclass(frozen=True)
class CharacteristicRef:
    service: str
    characteristic: str


@dataclass(frozen=True)
class CommandSpec:
    payload: bytes
    response: bool = False
    decode: str = "raw"


@dataclass(frozen=True)
class DeviceDescriptor:
    id: str
    name: str
    family: str
    match: MatchRules
    services: tuple[ServiceDescriptor, ...] = ()
    unit: str = "kg"
    channels: tuple[str, ...] = ("total",)
    notify: CharacteristicRef | None = None
    write: CharacteristicRef | None = None
    commands: dict[str, CommandSpec] = field(default_factory=dict)
    decoder: dict[str, object] = field(default_factory=dict)

    @property
    def is_multi_channel(self) -> bool:
        return len(self.channels) > 1

    def service(self, service_id: str) -> ServiceDescriptor | None:
        for service in self.services:
            if service.id == service_id:
                return service
        return None

    def service_uuids(self) -> list[str]:
        return [service.uuid for service in self.services]


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str
    manufacturer_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class ResolvedTarget:
    device: DetectedDevice
    descriptor: DeviceDescriptor


@dataclass(frozen=True)
class ForceSample:
    timestamp_ms: float
    raw_value: float
    channel: str | None = None


@dataclass(frozen=True)
class ForceMeasurement:
    """Calibrated force reading plus running stats of its aggregation window.

    ``distribution`` holds per-channel blocks for multi-zone devices; those
    blocks never carry a distribution of their own.
    """

    unit: str
    timestamp: float
    current: float
    peak: float
    mean: float
    min: float
    sampling_rate_hz: float | None = None
    distribution: dict[str, ForceMeasurement] | None = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "unit": self.unit,
            "timestamp": self.timestamp,
            "current": self.current,
            "peak": self.peak,
            "mean": self.mean,
            "min": self.min,
        }
        if self.sampling_rate_hz is not None:
            out["samplingRateHz"] = self.sampling_rate_hz
        if self.distribution:
            out["distribution"] = {
                channel: block.to_dict() for channel, block in self.distribution.items()
            }
        return out


# Decoded notification events


@dataclass(frozen=True)
class WeightSample:
    samples: tuple[ForceSample, ...]


@dataclass(frozen=True)
class CommandAck:
    opcode: int
    payload: bytes


@dataclass(frozen=True)
class BatteryLevel:
    level: int | None
    low_warning: bool = False


@dataclass(frozen=True)
class ErrorInfo:
    code: int | None
    message: str


@dataclass(frozen=True)
class TextResponse:
    text: str


@dataclass(frozen=True)
class DecodeError:
    """Non-fatal decode failure; the stream keeps flowing after it."""

    reason: str
    data: bytes = b""


DecodedEvent = Union[WeightSample, CommandAck, BatteryLevel, ErrorInfo, TextResponse, DecodeError]
