"""
Daemon configuration.

A single DaemonConfig is built at startup and passed to every component.
Values come from <data_dir>/config.json, deep-merged over the defaults.
"""

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from utils import get_app_dir, get_config_path, get_keystore_dir, get_socket_path

logger = logging.getLogger(__name__)

WATCH_MODES = ("auto", "poll")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DaemonConfig:
    """Runtime settings for the daemon."""
    data_dir: str
    keystore_dir: str
    socket_path: str
    log_level: str = "INFO"
    log_retention_days: int = 7          # 0 = no log files
    auto_lock_enabled: bool = False
    auto_lock_timeout_ms: int = 15 * 60 * 1000
    idle_lock_timeout_ms: int = 60 * 1000
    approval_timeout_s: Optional[float] = None   # None = wait for the human indefinitely
    require_origin_permission: bool = True
    watch_mode: str = "auto"
    watch_interval_s: float = 2.0
    max_errors: int = 5
    ipc_timeout_s: float = 5.0
    kdf_workers: int = 1
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None

    @classmethod
    def defaults(cls, data_dir: Optional[Path] = None) -> "DaemonConfig":
        """Default configuration rooted at data_dir (or the app directory)."""
        base = get_app_dir(data_dir)
        return cls(
            data_dir=str(base),
            keystore_dir=str(get_keystore_dir(base)),
            socket_path=str(get_socket_path(base)),
        )

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @property
    def auto_lock_timeout_s(self) -> float:
        return self.auto_lock_timeout_ms / 1000

    @property
    def idle_lock_timeout_s(self) -> float:
        return self.idle_lock_timeout_ms / 1000

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DaemonConfig":
        """Create from dictionary with input validation."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in data.items() if k in known}

        log_level = str(values.get("log_level", "INFO")).upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {log_level}")
        values["log_level"] = log_level

        watch_mode = values.get("watch_mode", "auto")
        if watch_mode not in WATCH_MODES:
            raise ValueError(f"watch_mode must be one of {WATCH_MODES}, got {watch_mode}")

        for name in ("auto_lock_timeout_ms", "idle_lock_timeout_ms", "max_errors", "kdf_workers"):
            value = values.get(name)
            if value is not None and (not isinstance(value, int) or value <= 0):
                raise ValueError(f"{name} must be a positive integer, got {value}")

        retention = values.get("log_retention_days", 7)
        if not isinstance(retention, int) or retention < 0:
            raise ValueError(f"log_retention_days must be non-negative integer, got {retention}")

        for name in ("watch_interval_s", "ipc_timeout_s", "approval_timeout_s"):
            value = values.get(name)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                raise ValueError(f"{name} must be a positive number, got {value}")

        return cls(**values)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Path] = None, data_dir: Optional[Path] = None) -> DaemonConfig:
    """
    Load configuration from JSON, merged over the defaults.

    A missing file yields the defaults. Malformed JSON or invalid values
    raise ValueError.
    """
    defaults = DaemonConfig.defaults(data_dir)
    path = Path(path) if path is not None else get_config_path(Path(defaults.data_dir))

    if not path.exists():
        return defaults

    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain an object")

    # A relocated data_dir moves the derived paths unless they are set explicitly
    if "data_dir" in data:
        relocated = DaemonConfig.defaults(Path(data["data_dir"]).expanduser())
        defaults.data_dir = relocated.data_dir
        defaults.keystore_dir = data.get("keystore_dir", relocated.keystore_dir)
        defaults.socket_path = data.get("socket_path", relocated.socket_path)

    config = DaemonConfig.from_dict(_deep_merge(defaults.to_dict(), data))
    logger.info(f"Loaded config from {path}")
    return config
