"""Device descriptor loading and validation for YAML-based gripctl descriptors."""

from __future__ import annotations

import logging
import json
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from gripctl.core.errors import DescriptorLoadError, DescriptorValidationError
from gripctl.core.model import (
    CharacteristicDescriptor,
    CharacteristicRef,
    CommandSpec,
    DeviceDescriptor,
    MatchRules,
    ServiceDescriptor,
)

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_MAX_PAYLOAD_BYTES = 512
_BLUETOOTH_BASE_UUID = "-0000-1000-8000-00805f9b34fb"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise DescriptorValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedDescriptors:
    descriptors: dict[str, DeviceDescriptor]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("gripctl.schemas").joinpath("descriptor.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _descriptor_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "gripctl/descriptors", xdg_data / "gripctl/descriptors"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DescriptorLoadError(f"Could not read descriptor file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise DescriptorValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise DescriptorValidationError(f"Descriptor file {path} must contain a mapping at root")
    return loaded


def _normalize_hex(value: str, *, context: str) -> bytes:
    normalized = value.strip().lower().replace(" ", "")
    if len(normalized) == 0:
        raise DescriptorValidationError(f"{context} must not be empty")
    if len(normalized) % 2 != 0:
        raise DescriptorValidationError(f"{context} must have even-length hex")
    if not _HEX_RE.match(normalized):
        raise DescriptorValidationError(f"{context} must contain only [0-9a-f]")
    payload = bytes.fromhex(normalized)
    if len(payload) > _MAX_PAYLOAD_BYTES:
        raise DescriptorValidationError(
            f"{context} exceeds max payload size {_MAX_PAYLOAD_BYTES} bytes"
        )
    return payload


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise DescriptorValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    if len(normalized) == 4:
        normalized = f"0000{normalized}"
    if len(normalized) == 8:
        normalized = f"{normalized}{_BLUETOOTH_BASE_UUID}"
    return normalized


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise DescriptorValidationError(f"{context} must be boolean true/false")


def _build_command(raw: Any, *, context: str) -> CommandSpec:
    if isinstance(raw, str):
        return CommandSpec(payload=_normalize_hex(raw, context=context))
    text = raw.get("text")
    if text is not None:
        payload = text.encode("utf-8")
    else:
        payload = _normalize_hex(raw["payload"], context=context)
    return CommandSpec(
        payload=payload,
        response=_normalize_bool(raw.get("response", False), context=f"{context}.response"),
        decode=raw.get("decode", "raw"),
    )


def _build_ref(doc: dict[str, Any], key: str, services: tuple[ServiceDescriptor, ...], source: Any) -> CharacteristicRef | None:
    raw = doc.get(key)
    if raw is None:
        return None
    ref = CharacteristicRef(service=raw["service"], characteristic=raw["characteristic"])
    service = next((s for s in services if s.id == ref.service), None)
    if service is None or service.characteristic(ref.characteristic) is None:
        raise DescriptorValidationError(
            f"{doc['id']}.{key} references unknown characteristic "
            f"'{ref.service}/{ref.characteristic}' in {source}"
        )
    return ref


def _build_descriptor(doc: dict[str, Any], source: Path | Traversable) -> DeviceDescriptor:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise DescriptorValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    services: list[ServiceDescriptor] = []
    for service_doc in doc.get("services", []):
        characteristics = tuple(
            CharacteristicDescriptor(
                id=char_doc["id"],
                uuid=_normalize_uuid(
                    char_doc["uuid"],
                    context=f"{doc['id']}.{service_doc['id']}.{char_doc['id']}.uuid",
                ),
                name=char_doc.get("name", ""),
            )
            for char_doc in service_doc["characteristics"]
        )
        services.append(
            ServiceDescriptor(
                id=service_doc["id"],
                uuid=_normalize_uuid(service_doc["uuid"], context=f"{doc['id']}.{service_doc['id']}.uuid"),
                characteristics=characteristics,
                name=service_doc.get("name", ""),
            )
        )
    service_tuple = tuple(services)

    commands: dict[str, CommandSpec] = {}
    for command_name, command_spec in doc.get("commands", {}).items():
        commands[command_name] = _build_command(command_spec, context=f"{doc['id']}.commands.{command_name}")

    family = doc["family"]
    notify = _build_ref(doc, "notify", service_tuple, source)
    write = _build_ref(doc, "write", service_tuple, source)
    if family in ("binary", "text") and notify is None:
        raise DescriptorValidationError(
            f"Descriptor '{doc['id']}' of family '{family}' requires a notify characteristic ({source})"
        )

    match_doc = doc["match"]
    return DeviceDescriptor(
        id=doc["id"],
        name=doc["name"],
        family=family,
        match=MatchRules(
            name=tuple(match_doc.get("name", [])),
            name_prefix=tuple(match_doc.get("name_prefix", [])),
            manufacturer_id=match_doc.get("manufacturer_id"),
        ),
        services=service_tuple,
        unit=doc.get("unit", "kg"),
        channels=tuple(doc.get("channels", ["total"])),
        notify=notify,
        write=write,
        commands=commands,
        decoder=dict(doc.get("decoder", {})),
    )


def _iter_packaged_descriptor_paths() -> list[Traversable]:
    descriptor_root = resources.files("gripctl.descriptors")
    return [item for item in descriptor_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_descriptor_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _descriptor_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_descriptors() -> LoadedDescriptors:
    descriptors: dict[str, DeviceDescriptor] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_descriptor_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        descriptor = _build_descriptor(doc, path)
        descriptors[descriptor.id] = descriptor

    for path in _iter_user_descriptor_paths():
        doc = _read_yaml(path)
        descriptor = _build_descriptor(doc, path)
        if descriptor.id in descriptors:
            warning = f"User descriptor '{descriptor.id}' overrides packaged descriptor"
            LOGGER.warning(warning)
            warnings.append(warning)
        descriptors[descriptor.id] = descriptor

    return LoadedDescriptors(descriptors=descriptors, warnings=tuple(warnings))
