# envsense/app/config.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from envsense.model.climate import ClimateThresholds
from envsense.core.intent_store import DEFAULT_INTENT_KEY
from envsense.core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.envsense/envsense.yml")
DEFAULT_INTENT_PATH = "~/.envsense/state.json"


@dataclass(frozen=True)
class TransportConfig:
    driver: str = "uart"
    port: Optional[str] = None
    baudrate: int = 9600
    replay_path: Optional[str] = None
    chunk_size: int = 16
    interval_s: float = 0.05
    loop: bool = False


@dataclass(frozen=True)
class SessionConfig:
    intent_path: str = DEFAULT_INTENT_PATH
    intent_key: str = DEFAULT_INTENT_KEY
    join_timeout_s: float = 1.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass(frozen=True)
class EnvSenseConfig:
    transport: TransportConfig = field(default_factory=TransportConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    climate: ClimateThresholds = field(default_factory=ClimateThresholds)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------- casting ----------------

def _cast(section: str, name: str, value: Any, default: Any) -> Any:
    """
    Cast a YAML scalar to the type of the field default.

    Optional[str] fields (default None) accept str or null.
    """
    if value is None:
        return None

    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        raise ConfigError(
            f"Invalid value for '{section}.{name}'.",
            hint=f"Expected bool, got {type(value).__name__}",
            details={"section": section, "field": name, "value": value},
        )

    if isinstance(default, int) and not isinstance(default, bool):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(
                f"Invalid value for '{section}.{name}'.",
                hint=f"Expected int, got {type(value).__name__}",
                details={"section": section, "field": name, "value": value},
            )
        return value

    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(
                f"Invalid value for '{section}.{name}'.",
                hint=f"Expected number, got {type(value).__name__}",
                details={"section": section, "field": name, "value": value},
            )
        return float(value)

    if not isinstance(value, str):
        raise ConfigError(
            f"Invalid value for '{section}.{name}'.",
            hint=f"Expected str, got {type(value).__name__}",
            details={"section": section, "field": name, "value": value},
        )
    return value


def _build_section(cls, section: str, raw: Any):
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigError(
            f"Config section '{section}' must be a mapping.",
            details={"section": section},
        )

    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in config section '{section}': {', '.join(map(str, unknown))}.",
            hint=f"Valid keys: {sorted(known)}",
            details={"section": section, "unknown": unknown},
        )

    values: Dict[str, Any] = {}
    for name, value in raw.items():
        values[name] = _cast(section, name, value, getattr(defaults, name))

    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config section '{section}'.", hint=str(e)) from None


def config_from_dict(data: Mapping[str, Any]) -> EnvSenseConfig:
    known = {"transport", "session", "climate", "logging"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(
            f"Unknown config section(s): {', '.join(map(str, unknown))}.",
            hint=f"Valid sections: {sorted(known)}",
        )

    return EnvSenseConfig(
        transport=_build_section(TransportConfig, "transport", data.get("transport")),
        session=_build_section(SessionConfig, "session", data.get("session")),
        climate=_build_section(ClimateThresholds, "climate", data.get("climate")),
        logging=_build_section(LoggingConfig, "logging", data.get("logging")),
    )


def load_config(path: Optional[str | Path] = None) -> EnvSenseConfig:
    """
    Load YAML config. An explicit path must exist; the default path is
    optional and falls back to built-in defaults.
    """
    explicit = path is not None
    p = Path(path if explicit else DEFAULT_CONFIG_PATH).expanduser()

    if not p.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {p}", details={"path": str(p)})
        return EnvSenseConfig()

    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError("Failed to parse config file.", hint=str(e), details={"path": str(p)}) from None
    except OSError as e:
        raise ConfigError("Failed to read config file.", hint=str(e), details={"path": str(p)}) from None

    if not isinstance(data, Mapping):
        raise ConfigError("Config root must be a mapping.", details={"path": str(p)})

    return config_from_dict(data)
