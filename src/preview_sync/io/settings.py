"""Persistent settings file for preview-sync.

One JSON object at $PREVIEW_SYNC_SETTINGS, else
$XDG_CONFIG_HOME/preview-sync/settings.json. SyncConfig values are stored
as top-level keys; unrelated keys written by other tools survive updates.

// [LAW:dataflow-not-control-flow] Readers always get a dict; {} means "no file".
Import as: import preview_sync.io.settings
"""

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

APP_DIR = "preview-sync"
FILE_NAME = "settings.json"


def get_config_path() -> Path:
    explicit = os.environ.get("PREVIEW_SYNC_SETTINGS", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(base) / APP_DIR / FILE_NAME


def load_settings() -> dict:
    """Read the settings object; missing, unreadable or non-object files read as {}."""
    path = get_config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("Cannot read settings file %s: %s", path, exc)
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt settings file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: top level is %s", path, type(data).__name__)
        return {}
    return data


def save_settings(data: Mapping[str, object]) -> None:
    """Replace the settings file atomically (temp file in the same dir, then rename)."""
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{FILE_NAME}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(dict(data), handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def update_settings(changes: Mapping[str, object]) -> dict:
    """Merge changes over the stored object, save, and return the result."""
    data = load_settings()
    data.update(changes)
    save_settings(data)
    return data
