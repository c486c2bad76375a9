import json
import logging
from datetime import datetime, timedelta

import pytest

from models.config import DaemonConfig, load_config
from services.logging import cleanup_old_logs, get_log_file_path
from utils import APP_DIR_ENV, get_app_dir, get_nested_value


def test_defaults_when_file_missing(tmp_path):
    config = load_config(data_dir=tmp_path)

    assert config.data_dir == str(tmp_path)
    assert config.keystore_dir == str(tmp_path / "keystore")
    assert config.socket_path == str(tmp_path / "daemon.sock")
    assert config.auto_lock_enabled is False
    assert config.max_errors == 5
    assert config.ipc_timeout_s == 5.0


def test_file_values_override_defaults(tmp_path):
    (tmp_path / "config.json").write_text(json.dumps({
        "auto_lock_enabled": True,
        "auto_lock_timeout_ms": 60000,
        "log_level": "debug",
    }))
    config = load_config(data_dir=tmp_path)

    assert config.auto_lock_enabled is True
    assert config.auto_lock_timeout_s == 60
    assert config.log_level == "DEBUG"


def test_relocated_data_dir_moves_derived_paths(tmp_path):
    elsewhere = tmp_path / "elsewhere"
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"data_dir": str(elsewhere)}))

    config = load_config(path, data_dir=tmp_path)
    assert config.keystore_dir == str(elsewhere / "keystore")
    assert config.logs_dir == elsewhere / "logs"


def test_invalid_json_raises_value_error(tmp_path):
    (tmp_path / "config.json").write_text("{oops")
    with pytest.raises(ValueError):
        load_config(data_dir=tmp_path)


@pytest.mark.parametrize("override", [
    {"watch_mode": "inotify"},
    {"log_level": "LOUD"},
    {"max_errors": 0},
    {"auto_lock_timeout_ms": -5},
    {"log_retention_days": -1},
    {"approval_timeout_s": 0},
])
def test_invalid_values_rejected(tmp_path, override):
    data = {**DaemonConfig.defaults(tmp_path).to_dict(), **override}
    with pytest.raises(ValueError):
        DaemonConfig.from_dict(data)


def test_unknown_keys_are_ignored(tmp_path, caplog):
    data = {**DaemonConfig.defaults(tmp_path).to_dict(), "colour": "blue"}
    with caplog.at_level(logging.WARNING):
        config = DaemonConfig.from_dict(data)
    assert not hasattr(config, "colour")
    assert "colour" in caplog.text


def test_app_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(APP_DIR_ENV, str(tmp_path / "home"))
    assert get_app_dir() == tmp_path / "home"
    assert (tmp_path / "home").is_dir()


def test_get_nested_value():
    obj = {"data": {"password": "x", "list": [1]}}
    assert get_nested_value(obj, "data.password") == "x"
    assert get_nested_value(obj, "data.missing") is None
    assert get_nested_value(obj, "data.list.0") is None


def test_cleanup_old_logs(tmp_path):
    today = datetime.now()
    old = get_log_file_path(today - timedelta(days=10), tmp_path)
    recent = get_log_file_path(today - timedelta(days=1), tmp_path)
    unrelated = tmp_path / "daemon-notes.log"
    for path in (old, recent, unrelated):
        path.write_text("x")

    assert cleanup_old_logs(7, tmp_path) == 1
    assert not old.exists()
    assert recent.exists()
    assert unrelated.exists()
