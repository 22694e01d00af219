"""Typed, layered configuration loader with precedence handling."""
from __future__ import annotations

import os
import configparser
from dataclasses import dataclass, fields
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, get_type_hints

# --------------------------------------------------------------------------- #
#  Paths & default definitions
# --------------------------------------------------------------------------- #

CONFIG_DIR = Path(__file__).resolve().parent
DEFAULTS_INI = CONFIG_DIR / "defaults.ini"
ENV_PREFIX = "SIGNFLOW_"
ENV_CONFIG_FILE = "SIGNFLOW_CONFIG"


_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "Database": {
        "path": "data/signflow.db",
    },
    "Storage": {
        "artifacts_dir": "data/artifacts",
    },
    "Tokens": {
        "ttl_hours": "720",
        "token_bytes": "32",
    },
    "Workflow": {
        "document_ttl_hours": "720",
        "allow_parallel": "true",
        "reminder_interval_hours": "72",
    },
    "Composition": {
        "workers": "2",
        "max_attempts": "5",
        "backoff_base_seconds": "2.0",
        "backoff_max_seconds": "300.0",
        "timeout_seconds": "120.0",
        "poll_interval_seconds": "1.0",
    },
    "Sweep": {
        "interval_seconds": "60.0",
    },
    "Security": {
        "signature_key_file": "data/signature.key",
    },
    "Logging": {
        "level": "INFO",
        "file": "",
        "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    },
}


# --------------------------------------------------------------------------- #
#  Datamodels
# --------------------------------------------------------------------------- #

@dataclass
class DatabaseConfig:
    path: Path = Path("data/signflow.db")


@dataclass
class StorageConfig:
    artifacts_dir: Path = Path("data/artifacts")


@dataclass
class TokensConfig:
    ttl_hours: float = 720.0
    token_bytes: int = 32


@dataclass
class WorkflowConfig:
    document_ttl_hours: float = 720.0
    allow_parallel: bool = True
    reminder_interval_hours: float = 72.0


@dataclass
class CompositionConfig:
    workers: int = 2
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    timeout_seconds: float = 120.0
    poll_interval_seconds: float = 1.0


@dataclass
class SweepConfig:
    interval_seconds: float = 60.0


@dataclass
class SecurityConfig:
    signature_key_file: Path = Path("data/signature.key")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""
    format: str = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


@dataclass
class AppConfig:
    database: DatabaseConfig
    storage: StorageConfig
    tokens: TokensConfig
    workflow: WorkflowConfig
    composition: CompositionConfig
    sweep: SweepConfig
    security: SecurityConfig
    logging: LoggingConfig

    @classmethod
    def defaults(cls) -> "AppConfig":
        return cls(
            database=DatabaseConfig(),
            storage=StorageConfig(),
            tokens=TokensConfig(),
            workflow=WorkflowConfig(),
            composition=CompositionConfig(),
            sweep=SweepConfig(),
            security=SecurityConfig(),
            logging=LoggingConfig(),
        )


_SECTIONS: Tuple[Tuple[str, str, type], ...] = (
    ("Database", "database", DatabaseConfig),
    ("Storage", "storage", StorageConfig),
    ("Tokens", "tokens", TokensConfig),
    ("Workflow", "workflow", WorkflowConfig),
    ("Composition", "composition", CompositionConfig),
    ("Sweep", "sweep", SweepConfig),
    ("Security", "security", SecurityConfig),
    ("Logging", "logging", LoggingConfig),
)


# --------------------------------------------------------------------------- #
#  Helpers
# --------------------------------------------------------------------------- #

def _cp_to_dict(cp: configparser.ConfigParser) -> Dict[str, Dict[str, Any]]:
    data: Dict[str, Dict[str, Any]] = {}
    for section in cp.sections():
        data[section] = {k: v for k, v in cp.items(section)}
    return data


def _read_ini(path: Path) -> Dict[str, Dict[str, Any]]:
    cp = configparser.ConfigParser(interpolation=None)
    cp.read(path, encoding="utf-8")
    return _cp_to_dict(cp)


def _apply(target: Dict[str, Dict[str, Any]], source: Dict[str, Dict[str, Any]],
           layer: str, origin: str,
           sources: Dict[Tuple[str, str], Dict[str, str]]) -> None:
    for section, items in source.items():
        sec = target.setdefault(section, {})
        for key, value in items.items():
            sec[key] = value
            sources[(section, key)] = {"layer": layer, "source": origin}


def _cast(value: Any, typ: type) -> Any:
    if typ is Path:
        return Path(str(value)).expanduser()
    if typ is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}
    if typ is int:
        return int(value)
    if typ is float:
        return float(value)
    return typ(value)


def _build_dataclass(cls: type, data: Dict[str, Any]) -> Any:
    hints = get_type_hints(cls)
    kwargs = {}
    for field in fields(cls):
        val = data.get(field.name, field.default)
        kwargs[field.name] = _cast(val, hints[field.name])
    return cls(**kwargs)


def _env_overlays(environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    result: Dict[str, Dict[str, Any]] = {}
    for env_key, value in environ.items():
        if not env_key.startswith(ENV_PREFIX) or env_key == ENV_CONFIG_FILE:
            continue
        remainder = env_key[len(ENV_PREFIX):]
        parts = remainder.split("__", 1)
        if len(parts) != 2:
            continue
        section, key = parts
        section = section.title()
        key = key.lower()
        result.setdefault(section, {})[key] = value
    return result


# --------------------------------------------------------------------------- #
#  ConfigService
# --------------------------------------------------------------------------- #


class ConfigService:
    """Facade merging layered configuration with type safety.

    Precedence (lowest first): embedded defaults, ``defaults.ini`` next to
    this module, an optional INI file (argument or ``SIGNFLOW_CONFIG``),
    environment variables ``SIGNFLOW_<SECTION>__<KEY>``.
    """

    def __init__(self, config_file: Optional[str | Path] = None,
                 environ: Optional[Mapping[str, str]] = None) -> None:
        self._lock = RLock()
        self._environ = os.environ if environ is None else environ
        explicit = config_file or self._environ.get(ENV_CONFIG_FILE)
        self._config_file = Path(explicit).expanduser() if explicit else None
        self.reload()

    # ------------------------------------------------------------------ #
    def reload(self) -> None:
        with self._lock:
            merged: Dict[str, Dict[str, Any]] = {}
            sources: Dict[Tuple[str, str], Dict[str, str]] = {}

            # Layer 0: embedded defaults
            _apply(merged, _DEFAULTS, "code", "embedded", sources)

            # Layer 1: defaults.ini
            if DEFAULTS_INI.exists():
                _apply(merged, _read_ini(DEFAULTS_INI), "defaults.ini", str(DEFAULTS_INI), sources)

            # Layer 2: deployment file
            if self._config_file is not None:
                if not self._config_file.exists():
                    raise FileNotFoundError(f"Config file not found: {self._config_file}")
                _apply(merged, _read_ini(self._config_file), "file", str(self._config_file), sources)

            # Layer 3: environment variables
            _apply(merged, _env_overlays(self._environ), "env", "os.environ", sources)

            self._merged = merged
            self._sources = sources
            self.config = AppConfig(**{
                attr: _build_dataclass(cls, merged.get(section, {}))
                for section, attr, cls in _SECTIONS
            })

    # ------------------------------------------------------------------ #
    def get(self, section: str, key: str, *, cast: Callable[[Any], Any] | type = str) -> Any:
        val = self._merged.get(section, {}).get(key)
        if val is None:
            return None
        if isinstance(cast, type):
            return _cast(val, cast)
        return cast(val)

    def meta_source(self, section: str, key: str) -> Dict[str, str] | None:
        return self._sources.get((section, key))
