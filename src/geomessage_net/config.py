"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from geomessage_net.errors import ConfigError

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent / "config.schema.json"

DEFAULT_PORT = 45678


@dataclass
class MessagingConfig:
    """UDP messaging settings."""

    port: int = DEFAULT_PORT
    sender_identity: Optional[str] = None
    self_ignore_types: list[str] = field(
        default_factory=lambda: ["trackrep", "position_report"]
    )
    broadcast_addresses: list[str] = field(default_factory=list)


@dataclass
class PositionReportConfig:
    """Identity and cadence of outgoing position reports."""

    enabled: bool = False
    period_ms: int = 1000
    emergency: bool = False
    callsign: str = ""
    vehicle_type: str = ""
    unique_id: str = ""
    symbol_code: str = ""

    def __post_init__(self) -> None:
        if not self.unique_id:
            self.unique_id = str(uuid.uuid4())


@dataclass
class LocationConfig:
    """Location source settings."""

    mode: str = "simulator"
    gpx_file: Optional[str] = None
    speed_multiplier: float = 1.0


@dataclass
class SymbolConfig:
    """Inbound symbol routing settings."""

    show_labels: bool = True
    removeall_scope: str = "type"


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/geomessage-net/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)


@dataclass
class AppConfig:
    """Top-level application configuration."""

    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    position_report: PositionReportConfig = field(default_factory=PositionReportConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    symbols: SymbolConfig = field(default_factory=SymbolConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        # 1. CLI overrides
        if overrides and var_name in overrides:
            return overrides[var_name]
        # 2. Environment variables
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        # 3. Default
        if default is not None:
            return default

        raise ConfigError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _known_fields(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        messaging=MessagingConfig(**_known_fields(MessagingConfig, raw.get("messaging", {}))),
        position_report=PositionReportConfig(
            **_known_fields(PositionReportConfig, raw.get("position_report", {}))
        ),
        location=LocationConfig(**_known_fields(LocationConfig, raw.get("location", {}))),
        symbols=SymbolConfig(**_known_fields(SymbolConfig, raw.get("symbols", {}))),
        logging=LoggingConfig(
            file=LogFileConfig(**_known_fields(LogFileConfig, log_file_raw)),
            **_known_fields(LoggingConfig, logging_raw),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to the schema shipped with
        the package.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ConfigError
        If the file is not JSON, a required ``${VAR}`` cannot be resolved,
        or the config fails schema validation.
    """
    raw_bytes = Path(path).read_bytes()
    try:
        raw: dict[str, Any] = orjson.loads(raw_bytes)
    except orjson.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    # --- schema validation ---
    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        try:
            jsonschema.validate(instance=interpolated, schema=schema)
        except jsonschema.ValidationError as exc:
            location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise ConfigError(f"Invalid config at {location}: {exc.message}") from exc
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
