"""Profile loading and validation for YAML-based deckctl device profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from deckctl.core.errors import ProfileLoadError, ProfileValidationError
from deckctl.core.model import DeviceProfile, GattSpec, MatchRules, ProtocolSpec, Timing

_BYTE_RE = re.compile(r"^(0x)?([0-9a-f]{1,2})$")
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
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, DeviceProfile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("deckctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "deckctl/profiles", xdg_data / "deckctl/profiles"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def _normalize_byte(value: Any, *, context: str) -> int:
    match = _BYTE_RE.match(str(value).strip().lower())
    if not match:
        raise ProfileValidationError(f"{context} must be a one-byte hex value")
    return int(match.group(2), 16)


def _normalize_uuid(value: str) -> str:
    return value.strip().lower()


def _code_table(raw: dict[Any, Any], *, context: str) -> dict[str, int]:
    table: dict[str, int] = {}
    for name, code in raw.items():
        key = str(name).strip().upper()
        if key in table:
            raise ProfileValidationError(f"{context} defines '{key}' more than once")
        table[key] = _normalize_byte(code, context=f"{context}.{key}")
    return table


def _build_timing(raw: dict[str, Any]) -> Timing:
    # Keys were checked against the schema already.
    values: dict[str, Any] = {}
    for name, value in raw.items():
        values[name] = int(value) if name == "discovery_retries" else float(value)
    return Timing(**values)


def _build_protocol(raw: dict[str, Any], *, context: str) -> ProtocolSpec:
    values: dict[str, Any] = {}
    for name in ("reset_opcode", "fallback_key_code", "fallback_media_code"):
        if name in raw:
            values[name] = _normalize_byte(raw[name], context=f"{context}.protocol.{name}")
    for name in ("default_button_count", "max_chunk_bytes"):
        if name in raw:
            values[name] = int(raw[name])
    return ProtocolSpec(**values)


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> DeviceProfile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    gatt = doc["gatt"]
    keymap_uuid = gatt.get("keymap_char_uuid")
    return DeviceProfile(
        id=doc["id"],
        name=doc["name"],
        match=MatchRules(
            name_contains=tuple(doc["match"].get("name_contains", [])),
            service_uuids=tuple(_normalize_uuid(u) for u in doc["match"].get("service_uuids", [])),
        ),
        gatt=GattSpec(
            service_uuid=_normalize_uuid(gatt["service_uuid"]),
            command_char_uuid=_normalize_uuid(gatt["command_char_uuid"]),
            keymap_char_uuid=_normalize_uuid(keymap_uuid) if keymap_uuid else None,
        ),
        protocol=_build_protocol(doc.get("protocol", {}), context=doc["id"]),
        timing=_build_timing(doc.get("timing", {})),
        keys=_code_table(doc["keys"], context=f"{doc['id']}.keys"),
        media=_code_table(doc["media"], context=f"{doc['id']}.media"),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("deckctl.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, DeviceProfile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))
