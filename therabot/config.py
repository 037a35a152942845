"""App settings persisted in {data_dir}/settings.json.

get_settings() returns defaults merged with stored values; update_settings()
applies a partial update (unknown keys ignored) and persists the result.
"""

import json
from pathlib import Path
from typing import Any

from therabot.engine import DEFAULT_MAX_AUTO_STEPS
from therabot.errors import StorageError

_SETTINGS_DEFAULTS: dict[str, Any] = {
    "max_auto_steps": DEFAULT_MAX_AUTO_STEPS,
    "require_published": True,
    "show_observations": False,
    "recent_sessions": 5,
}


def _settings_path(data_dir: Path) -> Path:
    return data_dir / "settings.json"


def get_settings(data_dir: Path) -> dict[str, Any]:
    """Read settings, returning defaults merged with stored values."""
    settings = dict(_SETTINGS_DEFAULTS)
    path = _settings_path(data_dir)
    if path.is_file():
        try:
            stored = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read settings.json: {e}") from e
        for key in _SETTINGS_DEFAULTS:
            if key in stored:
                settings[key] = stored[key]
    return settings


def update_settings(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge known fields into settings and persist. Returns full settings."""
    settings = get_settings(data_dir)
    for key, value in fields.items():
        if key in _SETTINGS_DEFAULTS:
            settings[key] = value
    _settings_path(data_dir).write_text(json.dumps(settings, indent=2))
    return settings
