"""
Shared utility functions for the wallet daemon.

Contains path helpers and common utilities used across packages.
"""

import os
import time
from pathlib import Path
from typing import Optional


APP_DIR_ENV = "DAEMON_WALLET_HOME"


def get_app_dir(base: Optional[Path] = None) -> Path:
    """Get the application data directory (~/.daemon-wallet by default)."""
    if base is not None:
        app_dir = Path(base)
    elif os.environ.get(APP_DIR_ENV):
        app_dir = Path(os.environ[APP_DIR_ENV]).expanduser()
    else:
        app_dir = Path.home() / ".daemon-wallet"

    app_dir.mkdir(parents=True, exist_ok=True)
    return app_dir


def get_keystore_dir(base: Optional[Path] = None) -> Path:
    """Get the keystore storage directory."""
    return get_app_dir(base) / "keystore"


def get_socket_path(base: Optional[Path] = None) -> Path:
    """Get the IPC socket path."""
    return get_app_dir(base) / "daemon.sock"


def get_config_path(base: Optional[Path] = None) -> Path:
    """Get path to the config file."""
    return get_app_dir(base) / "config.json"


def get_logs_dir(base: Optional[Path] = None) -> Path:
    """Get the logs directory."""
    logs_dir = get_app_dir(base) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def get_nested_value(obj: dict, path: str):
    """
    Resolve a dotted path like "data.password" against nested dicts.

    Returns None when any segment is missing or not a mapping.
    """
    current = obj
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current
