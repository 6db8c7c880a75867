"""Device-to-descriptor matching logic."""

from __future__ import annotations

from gripctl.core.model import DetectedDevice, DeviceDescriptor


def _name_match(device_name: str, descriptor: DeviceDescriptor) -> bool:
    return device_name in descriptor.match.name


def _name_prefix_match(device_name: str, descriptor: DeviceDescriptor) -> bool:
    return any(device_name.startswith(prefix) for prefix in descriptor.match.name_prefix)


def _manufacturer_match(device: DetectedDevice, descriptor: DeviceDescriptor) -> bool:
    manufacturer_id = descriptor.match.manufacturer_id
    return manufacturer_id is not None and manufacturer_id in device.manufacturer_ids


def match_score(device: DetectedDevice, descriptor: DeviceDescriptor) -> int:
    name_score = 0
    if _name_match(device.name, descriptor):
        name_score = 2
    elif _name_prefix_match(device.name, descriptor):
        name_score = 1
    if _manufacturer_match(device, descriptor):
        return name_score + 2
    return name_score


def best_descriptor_for_device(
    device: DetectedDevice,
    descriptors: dict[str, DeviceDescriptor],
) -> DeviceDescriptor | None:
    best: DeviceDescriptor | None = None
    best_score = 0
    for descriptor in descriptors.values():
        score = match_score(device, descriptor)
        if score > best_score:
            best = descriptor
            best_score = score
    return best
