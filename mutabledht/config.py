"""Configuration management for mutabledht.

Loads settings from ~/.mutabledht/config.toml with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import Field, asdict, dataclass, field
from dataclasses import fields as dataclass_fields
from pathlib import Path
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".mutabledht"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.toml"


@dataclass(frozen=True)
class NodeConfig:
    """Local process settings."""

    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = "info"


@dataclass(frozen=True)
class SessionConfig:
    """Overlay session lifecycle settings."""

    engine_factory: str = ""  # "package.module:callable"
    listen_interfaces: str = "0.0.0.0:6881"
    bootstrap_nodes: list[str] = field(default_factory=list)
    state_file: str = "dht_state.dat"
    readiness_poll_interval: float = 1.0
    bootstrap_timeout: float = 30.0
    liveness_interval: float = 5.0
    join_timeout: float = 10.0


@dataclass(frozen=True)
class RecordConfig:
    """Put/get coordination settings."""

    put_cooldown_seconds: float = 60.0
    lock_sweep_every: int = 32
    submission_log_size: int = 256
    fetch_timeout: float = 2.0
    header_retries: int = 3
    total_slots: int = 32
    max_chunk_size: int = 900  # bytes; overlay items are capped at 1000
    rpc_get_timeout: float = 10.0
    put_ack_timeout: float = 10.0


@dataclass(frozen=True)
class BatchConfig:
    """Pipelined batch-fetch timing."""

    header_issue_delay: float = 0.01
    chunk_issue_delay: float = 0.02
    header_settle: float = 0.3
    chunk_settle: float = 0.35


@dataclass(frozen=True)
class Config:
    """Root configuration container."""

    node: NodeConfig = field(default_factory=NodeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    records: RecordConfig = field(default_factory=RecordConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)


_SECTION_TYPES: dict[str, type] = {
    "node": NodeConfig,
    "session": SessionConfig,
    "records": RecordConfig,
    "batch": BatchConfig,
}

ENV_PREFIX = "MUTABLEDHT"

# Numeric bounds; out-of-range values are clamped with a warning
_BOUNDS: dict[str, tuple[float, float]] = {
    "readiness_poll_interval": (0.01, 60.0),
    "bootstrap_timeout": (0.1, 600.0),
    "liveness_interval": (0.01, 3600.0),
    "join_timeout": (0.1, 600.0),
    "put_cooldown_seconds": (0.0, 86400.0),
    "lock_sweep_every": (1, 100000),
    "submission_log_size": (1, 1000000),
    "fetch_timeout": (0.01, 600.0),
    "header_retries": (0, 100),
    "total_slots": (1, 1024),
    "max_chunk_size": (16, 1000),
    "rpc_get_timeout": (0.01, 600.0),
    "put_ack_timeout": (0.01, 600.0),
    "header_issue_delay": (0.0, 5.0),
    "chunk_issue_delay": (0.0, 5.0),
    "header_settle": (0.0, 60.0),
    "chunk_settle": (0.0, 60.0),
}

# Closed sets for string options; anything else falls back to the default
_CHOICES: dict[str, frozenset[str]] = {
    "log_level": frozenset({"debug", "info", "warning", "error", "critical"}),
}

# Annotations are strings under ``from __future__ import annotations``
_ANNOTATIONS: dict[str, type] = {
    "int": int,
    "float": float,
    "bool": bool,
    "str": str,
    "Path": Path,
    "list[str]": list,
}


def _sections(config: Config) -> list[tuple[str, object]]:
    return [(f.name, getattr(config, f.name)) for f in dataclass_fields(config)]


def _env_key(section: str, key: str) -> str:
    return f"{ENV_PREFIX}_{section}_{key}".upper()


def _field_type(f: Field[object]) -> type:
    """Resolve a dataclass field's declared type."""
    return _ANNOTATIONS.get(str(f.type), str)


def _coerce(value: str, target_type: type) -> object:
    """Turn an env var or CLI string into *target_type*.

    Raises:
        ValueError: If the string is not a valid number.
    """
    match target_type.__name__:
        case "bool":
            return value.strip().lower() in {"1", "true", "yes", "on"}
        case "int":
            return int(value)
        case "float":
            return float(value)
        case "list":
            return [part.strip() for part in value.split(",") if part.strip()]
    if target_type is Path:
        return Path(value).expanduser()
    return value


def _normalize(value: object, target_type: type) -> object:
    """Match TOML scalars to the field type (``30`` for a float, str paths)."""
    if target_type is Path and not isinstance(value, Path):
        return Path(str(value)).expanduser()
    if target_type is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    return value


def _validate_value(key: str, value: object) -> object:
    """Apply bounds and choices; ``None`` means "use the default"."""
    bounds = _BOUNDS.get(key)
    if bounds and isinstance(value, int | float) and not isinstance(value, bool):
        lo, hi = bounds
        if value < lo or value > hi:
            clamped = type(value)(min(max(value, lo), hi))
            logger.warning(
                "config_value_out_of_range",
                key=key,
                value=value,
                clamped=clamped,
            )
            return clamped
    choices = _CHOICES.get(key)
    if choices and isinstance(value, str) and value.lower() not in choices:
        logger.warning("config_invalid_value", key=key, value=value)
        return None
    return value


def _build_section(cls: type[T], table: dict[str, object], name: str) -> T:
    """One section from its TOML table, with env vars taking precedence."""
    values: dict[str, object] = {}
    for f in dataclass_fields(cls):  # type: ignore[arg-type]
        target = _field_type(f)
        raw = table.get(f.name)
        from_env = os.environ.get(_env_key(name, f.name))
        if from_env is not None:
            raw = _coerce(from_env, target)
        if raw is None:
            continue
        checked = _validate_value(f.name, _normalize(raw, target))
        if checked is not None:
            values[f.name] = checked
    return cls(**values)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration: env vars > config.toml > defaults.

    Args:
        config_path: Path to config file. Defaults to ~/.mutabledht/config.toml.

    Returns:
        Populated Config instance.  ``node.data_dir`` is created if needed.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    document: dict[str, Any] = {}
    if path.exists():
        document = tomllib.loads(path.read_text(encoding="utf-8"))
        logger.info("config_loaded", path=str(path))
    else:
        logger.info("config_default", path=str(path), reason="file not found")

    config = Config(
        **{
            name: _build_section(cls, document.get(name, {}), name)
            for name, cls in _SECTION_TYPES.items()
        }
    )
    config.node.data_dir.resolve().mkdir(parents=True, exist_ok=True)
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write *config* as TOML, keeping only keys that differ from defaults."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = ["# mutabledht configuration", ""]
    for (name, section), (_, default) in zip(
        _sections(config), _sections(Config()), strict=True
    ):
        changed = [
            (f.name, getattr(section, f.name))
            for f in dataclass_fields(section)  # type: ignore[arg-type]
            if getattr(section, f.name) != getattr(default, f.name)
        ]
        if not changed:
            continue
        lines.append(f"[{name}]")
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in changed)
        lines.append("")

    path.write_text("\n".join(lines), encoding="utf-8")
    logger.info("config_saved", path=str(path))


def config_as_dict(config: Config) -> dict[str, dict[str, object]]:
    """Plain JSON-ready section dicts, paths as strings."""
    return {
        name: {
            key: str(value) if isinstance(value, Path) else value
            for key, value in asdict(section).items()  # type: ignore[call-overload]
        }
        for name, section in _sections(config)
    }
