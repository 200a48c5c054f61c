"""Settings file I/O for p4oc.

A general-purpose JSON settings file at XDG_CONFIG_HOME/p4oc/settings.json.
Known keys:
    server_url         base URL of the agent server
    reconnect_delay_s  seconds between event-stream reconnect attempts
    tool_aliases       {tool name: icon category} additions to the descriptor table

This module is a STABLE BOUNDARY.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:4096"
DEFAULT_RECONNECT_DELAY_S = 3.0


def get_config_path() -> Path:
    """Return path to settings file.

    Uses XDG_CONFIG_HOME (default ~/.config) / p4oc / settings.json.
    """
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "p4oc" / "settings.json"


def load_settings() -> dict:
    """Load settings from JSON file. Returns empty dict on missing/corrupt file."""
    path = get_config_path()
    # [LAW:dataflow-not-control-flow] Always attempt read; empty dict is the "no data" value.
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("ignoring unreadable settings file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_settings(data: dict) -> None:
    """Atomic write of settings dict: temp file in the same directory, then rename."""
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def load_setting(key: str, default=None):
    """Load a single setting by key. Returns default if absent."""
    return load_settings().get(key, default)


def save_setting(key: str, value) -> None:
    """Save a single setting by key (merge into existing settings)."""
    data = load_settings()
    data[key] = value
    save_settings(data)


def load_server_url() -> str:
    """Server URL: P4OC_SERVER_URL, then the settings file, then the default."""
    env = os.environ.get("P4OC_SERVER_URL")
    if env:
        return env
    value = load_setting("server_url")
    return value if isinstance(value, str) and value else DEFAULT_SERVER_URL


def load_reconnect_delay() -> float:
    value = load_setting("reconnect_delay_s", DEFAULT_RECONNECT_DELAY_S)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        logger.warning("invalid reconnect_delay_s %r; using %.1f", value, DEFAULT_RECONNECT_DELAY_S)
        return DEFAULT_RECONNECT_DELAY_S
    return float(value)
