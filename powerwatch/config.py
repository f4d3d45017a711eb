"""
Load/save service config (JSON) in the user app data directory.
Precedence: defaults < config.json < POWERWATCH_* environment < CLI flags.
"""
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
STORAGE_BACKENDS = ("memory", "file", "redis")
DEFAULT_STORAGE = "file"
DEFAULT_MAX_EVENTS = 1000
DEFAULT_LIVENESS_TIMEOUT = 300
DEFAULT_SWEEP_INTERVAL = 60
DEFAULT_FLUSH_INTERVAL = 300
DEFAULT_STORAGE_TIMEOUT = 5.0
DEFAULT_CLIENT_TTL_DAYS = 30

# env var -> (config key, converter); later entries win over earlier ones
ENV_OVERRIDES = {
    "POWERWATCH_HOST": ("host", str),
    "PORT": ("port", int),
    "POWERWATCH_PORT": ("port", int),
    "POWERWATCH_STORAGE": ("storage", str),
    "POWERWATCH_SNAPSHOT": ("snapshot_path", str),
    "REDIS_URL": ("redis_url", str),
    "POWERWATCH_REDIS_URL": ("redis_url", str),
    "POWERWATCH_REDIS_PREFIX": ("redis_prefix", str),
    "POWERWATCH_MAX_EVENTS": ("max_events", int),
    "POWERWATCH_LIVENESS_TIMEOUT": ("liveness_timeout", int),
    "POWERWATCH_SWEEP_INTERVAL": ("sweep_interval", int),
    "POWERWATCH_FLUSH_INTERVAL": ("flush_interval", int),
    "POWERWATCH_WRITE_THROUGH": ("write_through", str),
    "POWERWATCH_STORAGE_TIMEOUT": ("storage_timeout", float),
    "POWERWATCH_LOG_PATH": ("log_path", str),
}


def get_config_dir() -> Path:
    """User app data directory for config, snapshot and logs."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
    else:
        base = os.path.expanduser("~")
    return Path(base) / "Powerwatch"


def get_config_path() -> Path:
    return get_config_dir() / "config.json"


def get_default_config() -> dict[str, Any]:
    return {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "storage": DEFAULT_STORAGE,
        "snapshot_path": "",
        "redis_url": "",
        "redis_prefix": "",
        "client_ttl_days": DEFAULT_CLIENT_TTL_DAYS,
        "max_events": DEFAULT_MAX_EVENTS,
        "liveness_timeout": DEFAULT_LIVENESS_TIMEOUT,
        "sweep_interval": DEFAULT_SWEEP_INTERVAL,
        "flush_interval": DEFAULT_FLUSH_INTERVAL,
        "write_through": False,
        "storage_timeout": DEFAULT_STORAGE_TIMEOUT,
        "log_path": "",
    }


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    path = path or get_config_path()
    if not path.exists():
        return get_default_config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            return get_default_config()
        # Merge with defaults so new keys exist
        default = get_default_config()
        for k, v in default.items():
            if k not in data:
                data[k] = v
        return data
    except (json.JSONDecodeError, OSError):
        return get_default_config()


def apply_env(config: dict[str, Any], environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    """Unparseable values are ignored rather than fatal."""
    environ = os.environ if environ is None else environ
    out = dict(config)
    for name, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            out[key] = convert(raw)
        except ValueError:
            continue
    return out


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def dict_to_service_config(d: dict[str, Any]) -> "ServiceConfig":
    default = get_default_config()

    def pick(key: str) -> Any:
        value = d.get(key)
        return default[key] if value is None else value

    return ServiceConfig(
        host=str(pick("host")),
        port=int(pick("port")),
        storage=str(pick("storage")),
        snapshot_path=str(pick("snapshot_path")),
        redis_url=str(pick("redis_url")),
        redis_prefix=str(pick("redis_prefix")),
        client_ttl_days=int(pick("client_ttl_days")),
        max_events=int(pick("max_events")),
        liveness_timeout=int(pick("liveness_timeout")),
        sweep_interval=int(pick("sweep_interval")),
        flush_interval=int(pick("flush_interval")),
        write_through=_as_bool(pick("write_through")),
        storage_timeout=float(pick("storage_timeout")),
        log_path=str(pick("log_path")),
    )


class ServiceConfig:
    __slots__ = (
        "host", "port", "storage", "snapshot_path", "redis_url", "redis_prefix",
        "client_ttl_days", "max_events", "liveness_timeout", "sweep_interval",
        "flush_interval", "write_through", "storage_timeout", "log_path",
    )

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        storage: str = DEFAULT_STORAGE,
        snapshot_path: str = "",
        redis_url: str = "",
        redis_prefix: str = "",
        client_ttl_days: int = DEFAULT_CLIENT_TTL_DAYS,
        max_events: int = DEFAULT_MAX_EVENTS,
        liveness_timeout: int = DEFAULT_LIVENESS_TIMEOUT,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL,
        flush_interval: int = DEFAULT_FLUSH_INTERVAL,
        write_through: bool = False,
        storage_timeout: float = DEFAULT_STORAGE_TIMEOUT,
        log_path: str = "",
    ):
        storage = storage.strip().lower()
        if storage not in STORAGE_BACKENDS:
            raise ValueError(f"storage must be one of {', '.join(STORAGE_BACKENDS)}, got {storage!r}")
        self.host = host.strip() or DEFAULT_HOST
        self.port = int(port)
        self.storage = storage
        self.snapshot_path = snapshot_path.strip()
        self.redis_url = redis_url.strip()
        self.redis_prefix = redis_prefix
        self.client_ttl_days = max(0, int(client_ttl_days))
        self.max_events = max(1, int(max_events))
        self.liveness_timeout = max(1, int(liveness_timeout))
        self.sweep_interval = max(1, int(sweep_interval))
        self.flush_interval = max(1, int(flush_interval))
        self.write_through = bool(write_through)
        self.storage_timeout = max(0.1, float(storage_timeout))
        self.log_path = log_path.strip()

    @property
    def resolved_snapshot_path(self) -> Path:
        if self.snapshot_path:
            return Path(self.snapshot_path).expanduser()
        return get_config_dir() / "heartbeats.json"
