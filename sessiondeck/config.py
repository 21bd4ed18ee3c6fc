"""Configuration loaded from ~/.claude/.sessiondeck.yaml.

CONFIG is a plain dict merged over DEFAULTS at import time. Modules read
it with CONFIG.get(section, {}).get(key, fallback) so a partial YAML file
never breaks anything.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".claude" / ".sessiondeck.yaml"

DEFAULTS: dict[str, Any] = {
    "defaults": {
        "model": "opus",
        "provider": None,
        "backend": "claude",
        "execution-mode": "plan",
        "thinking-level": "off",
        "effort-level": None,
    },
    "drafts": {"debounce-seconds": 0.5},
    "cancel": {"restore-threshold": 50},
    "stream": {"skip-output-tools": ["Read"]},
    "engine": {"allowed-tools": []},
    "store": {"root": str(Path.home() / ".claude" / "sessiondeck")},
    "logging": {"file": str(Path.home() / "sessiondeck.log"), "notify-level": "warning"},
}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def load(path: Path = CONFIG_PATH) -> dict[str, Any]:
    """Load config from disk, falling back to defaults on any problem."""
    if not path.exists():
        return copy.deepcopy(DEFAULTS)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        log.warning(f"Ignoring unreadable config {path}: {e}")
        return copy.deepcopy(DEFAULTS)
    if not isinstance(data, dict):
        log.warning(f"Ignoring config {path}: top level is not a mapping")
        return copy.deepcopy(DEFAULTS)
    return _merge(DEFAULTS, data)


def save(path: Path = CONFIG_PATH) -> None:
    """Write the current CONFIG back to disk."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(CONFIG, f, sort_keys=False)
    except OSError as e:
        log.warning(f"Could not save config to {path}: {e}")


NEW_INSTALL = not CONFIG_PATH.exists()
CONFIG: dict[str, Any] = load()
