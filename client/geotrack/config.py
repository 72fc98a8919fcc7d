"""Client configuration.

Two layers:

- ``AppConfig``: process settings (logging, local API, store location,
  simulated source). Loads from config.yaml if present, with environment
  variable overrides using the pattern GEOTRACK_<SECTION>_<KEY> (uppercase).
- ``TraccarConfiguration``: the per-session tracking configuration. Persisted
  under the ``traccar_config`` key of a YAML key-value store and merged over
  defaults on load.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

import structlog
import yaml

from geotrack.core.errors import ConfigError
from geotrack.core.models import TrackingMode

log = structlog.get_logger()

CONFIG_STORE_KEY = "traccar_config"


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8128


@dataclass
class StoreConfig:
    path: str = "data/geotrack.yaml"


@dataclass
class SourceConfig:
    kind: str = "random"  # "random" or "circuit"
    circuit: str = ""
    interval_seconds: float = 1.0
    center_lat: float = 45.764
    center_lon: float = 4.835


@dataclass
class AppConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    source: SourceConfig = field(default_factory=SourceConfig)


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "GEOTRACK_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "GEOTRACK_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
        "GEOTRACK_API_HOST": lambda v: setattr(config.api, "host", v),
        "GEOTRACK_API_PORT": lambda v: setattr(config.api, "port", int(v)),
        "GEOTRACK_STORE_PATH": lambda v: setattr(config.store, "path", v),
        "GEOTRACK_SOURCE_KIND": lambda v: setattr(config.source, "kind", v),
        "GEOTRACK_SOURCE_CIRCUIT": lambda v: setattr(config.source, "circuit", v),
        "GEOTRACK_SOURCE_INTERVAL": lambda v: setattr(config.source, "interval_seconds", float(v)),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load process configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path("config.yaml")
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in ("logging", "api", "store", "source"):
            target = getattr(config, section)
            for k, v in (raw.get(section) or {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config


# ---------------------------------------------------------------------------
# Tracking configuration
# ---------------------------------------------------------------------------

# Python attribute -> persisted (camelCase) key.
_PERSISTED_KEYS = {
    "server_url": "serverUrl",
    "device_id": "deviceId",
    "device_name": "deviceName",
    "protocol": "protocol",
    "port": "port",
    "tracking_mode": "trackingMode",
    "time_interval": "timeInterval",
    "distance_threshold": "distanceThreshold",
    "angle_threshold": "angleThreshold",
    "high_accuracy": "highAccuracy",
    "stationary_heartbeat": "stationaryHeartbeat",
    "background_tracking": "backgroundTracking",
    "motion_detection": "motionDetection",
    "username": "username",
    "password": "password",
    "token": "token",
    "batch_size": "batchSize",
    "retry_attempts": "retryAttempts",
    "offline_mode": "offlineMode",
}
_ATTRIBUTE_NAMES = {v: k for k, v in _PERSISTED_KEYS.items()}

_BOOL_FIELDS = ("high_accuracy", "background_tracking", "motion_detection", "offline_mode")
_NUMBER_FIELDS = ("time_interval", "distance_threshold", "angle_threshold", "stationary_heartbeat")
_INT_FIELDS = ("port", "batch_size", "retry_attempts")


@dataclass(frozen=True)
class TraccarConfiguration:
    server_url: str = "demo4.traccar.org"
    device_id: str = ""
    device_name: str | None = None
    protocol: str = "https"  # "http" or "https"
    port: int = 443

    tracking_mode: TrackingMode = TrackingMode.TIME
    time_interval: float = 30  # seconds
    distance_threshold: float = 50  # meters
    angle_threshold: float = 30  # degrees

    high_accuracy: bool = True
    stationary_heartbeat: float = 300  # seconds, 0 disables
    background_tracking: bool = True
    motion_detection: bool = True

    username: str | None = None
    password: str | None = None
    token: str | None = None

    batch_size: int = 10
    retry_attempts: int = 3
    offline_mode: bool = True

    def __post_init__(self) -> None:
        # Accept plain strings for the mode (YAML / JSON input).
        if not isinstance(self.tracking_mode, TrackingMode):
            try:
                object.__setattr__(self, "tracking_mode", TrackingMode(self.tracking_mode))
            except ValueError as e:
                raise ConfigError(f"unknown tracking mode {self.tracking_mode!r}") from e
        self.validate()

    def validate(self) -> None:
        for name in _BOOL_FIELDS:
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be a boolean")
        for name in _NUMBER_FIELDS:
            value = getattr(self, name)
            # bool is an int subclass; reject it explicitly.
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number")
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer")
        if self.protocol not in ("http", "https"):
            raise ConfigError(f"protocol must be 'http' or 'https', got {self.protocol!r}")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"port {self.port} out of range")
        for name in _NUMBER_FIELDS:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if self.retry_attempts < 0:
            raise ConfigError("retry_attempts must be >= 0")

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.server_url}:{self.port}"

    @property
    def socket_url(self) -> str:
        # http -> ws, https -> wss
        return "ws" + self.base_url[len("http"):] + "/api/socket"

    def merged(self, **changes: Any) -> TraccarConfiguration:
        """Return a copy with ``changes`` applied. Unknown names raise ConfigError."""
        unknown = set(changes) - set(_PERSISTED_KEYS)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Persisted form with camelCase keys. Unset credentials are omitted."""
        data = {}
        for attr, key in _PERSISTED_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, TrackingMode):
                value = value.value
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> TraccarConfiguration:
        """Merge a persisted record over the defaults. Unknown keys are ignored."""
        if not isinstance(raw, dict):
            raise ConfigError(f"expected a mapping, got {type(raw).__name__}")
        values = {
            _ATTRIBUTE_NAMES[k]: v for k, v in raw.items() if k in _ATTRIBUTE_NAMES
        }
        try:
            return cls(**values)
        except (TypeError, ValueError) as e:
            raise ConfigError(str(e)) from e


class ConfigStore:
    """Durable key-value store backed by a single YAML file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            raw = yaml.safe_load(f)
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{self._path} does not contain a mapping")
        return raw

    def get(self, key: str) -> Any:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        try:
            data = self._read()
        except (ConfigError, yaml.YAMLError):
            log.warning("config_store_reset", path=str(self._path))
            data = {}
        data[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)


def load_tracker_config(store: ConfigStore) -> TraccarConfiguration:
    """Load the persisted tracking configuration, falling back to defaults."""
    try:
        raw = store.get(CONFIG_STORE_KEY)
        if raw is None:
            return TraccarConfiguration()
        return TraccarConfiguration.from_dict(raw)
    except (ConfigError, yaml.YAMLError, ValueError, TypeError) as e:
        log.warning("tracker_config_invalid", path=str(store.path), error=str(e))
        return TraccarConfiguration()


def save_tracker_config(store: ConfigStore, config: TraccarConfiguration) -> None:
    store.set(CONFIG_STORE_KEY, config.to_dict())


def app_config_dict(config: AppConfig) -> dict:
    return asdict(config)
