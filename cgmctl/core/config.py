"""Configuration, persisted state and document loading for cgmctl."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from cgmctl.core.context import DEFAULT_RETRIES, DEFAULT_RETRY_DELAY_S
from cgmctl.core.errors import ConfigLoadError, ConfigValidationError
from cgmctl.core.model import DEFAULT_STREAMING_UNLOCK_CODE, Settings

_HEX_RE = re.compile(r"^([0-9a-f]{2})*$")
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
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class DecodingConfig:
    base_url: str
    auth_endpoint: str = "nfcAuth"
    data_endpoint: str = "nfcData"
    algorithm_endpoint: str = "nfcDataAlgorithm"
    timeout_s: float = 15.0


@dataclass(frozen=True)
class AppConfig:
    retries: int = DEFAULT_RETRIES
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S
    debug_level: int = 0
    streaming_unlock_code: int = DEFAULT_STREAMING_UNLOCK_CODE
    rescan_timeout_s: float = 10.0
    decoding: DecodingConfig | None = None
    warnings: tuple[str, ...] = field(default=(), compare=False)


def _load_schema_validator(name: str) -> Any:
    schema_text = resources.files("cgmctl.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def config_dir() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "cgmctl"


def data_dir() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "cgmctl"


def config_path() -> Path:
    return config_dir() / "config.yaml"


def state_path() -> Path:
    return data_dir() / "state.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"File {path} must contain a mapping at root")
    return loaded


def read_document(path: Path, schema_name: str) -> dict[str, Any]:
    """Read a YAML mapping and validate it against a packaged JSON schema."""
    doc = _read_yaml(path)
    validator = _load_schema_validator(schema_name)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        where_path = ".".join(str(p) for p in exc.path)
        where = f" ({where_path})" if where_path else ""
        raise ConfigValidationError(f"Schema validation failed for {path}{where}: {exc.message}") from exc
    return doc


def normalize_hex(value: str, *, context: str) -> bytes:
    normalized = value.strip().lower().replace(" ", "").replace("\n", "")
    if len(normalized) % 2 != 0:
        raise ConfigValidationError(f"{context} must have even-length hex")
    if not _HEX_RE.match(normalized):
        raise ConfigValidationError(f"{context} must contain only [0-9a-f]")
    return bytes.fromhex(normalized)


def load_config(path: Path | None = None) -> AppConfig:
    source = path or config_path()
    if not source.exists():
        LOGGER.debug("No config file at %s, using defaults", source)
        return AppConfig()

    doc = read_document(source, "config.schema.json")
    warnings: list[str] = []

    decoding: DecodingConfig | None = None
    if "decoding" in doc:
        section = doc["decoding"]
        decoding = DecodingConfig(
            base_url=section["base_url"].rstrip("/"),
            auth_endpoint=section.get("auth_endpoint", "nfcAuth"),
            data_endpoint=section.get("data_endpoint", "nfcData"),
            algorithm_endpoint=section.get("algorithm_endpoint", "nfcDataAlgorithm"),
            timeout_s=float(section.get("timeout_s", 15.0)),
        )
        if decoding.base_url.startswith("http://"):
            warning = f"Decoding service {decoding.base_url} is not using TLS"
            LOGGER.warning(warning)
            warnings.append(warning)

    return AppConfig(
        retries=int(doc.get("retries", DEFAULT_RETRIES)),
        retry_delay_s=float(doc.get("retry_delay_s", DEFAULT_RETRY_DELAY_S)),
        debug_level=int(doc.get("debug_level", 0)),
        streaming_unlock_code=int(doc.get("streaming_unlock_code", DEFAULT_STREAMING_UNLOCK_CODE)),
        rescan_timeout_s=float(doc.get("rescan_timeout_s", 10.0)),
        decoding=decoding,
        warnings=tuple(warnings),
    )


def load_state(path: Path | None = None) -> Settings:
    source = path or state_path()
    if not source.exists():
        return Settings()

    doc = read_document(source, "state.schema.json")
    return Settings(
        active_sensor_serial=doc.get("active_sensor_serial", ""),
        active_sensor_address=doc.get("active_sensor_address", ""),
        active_sensor_initial_patch_info=normalize_hex(
            doc.get("active_sensor_initial_patch_info", ""),
            context="active_sensor_initial_patch_info",
        ),
        active_sensor_streaming_unlock_code=int(
            doc.get("active_sensor_streaming_unlock_code", DEFAULT_STREAMING_UNLOCK_CODE)
        ),
        active_sensor_streaming_unlock_count=int(doc.get("active_sensor_streaming_unlock_count", 0)),
        patch_uid=normalize_hex(doc.get("patch_uid", ""), context="patch_uid"),
        patch_info=normalize_hex(doc.get("patch_info", ""), context="patch_info"),
    )


def save_state(settings: Settings, path: Path | None = None) -> Path:
    target = path or state_path()
    doc = {
        "active_sensor_serial": settings.active_sensor_serial,
        "active_sensor_address": settings.active_sensor_address,
        "active_sensor_initial_patch_info": settings.active_sensor_initial_patch_info.hex(),
        "active_sensor_streaming_unlock_code": settings.active_sensor_streaming_unlock_code,
        "active_sensor_streaming_unlock_count": settings.active_sensor_streaming_unlock_count,
        "patch_uid": settings.patch_uid.hex(),
        "patch_info": settings.patch_info.hex(),
    }
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not write state file {target}: {exc}") from exc
    LOGGER.debug("Saved state to %s", target)
    return target
