"""
Configuration loading for volume_bot.

``config.yaml`` lives at the project root, next to ``main.py``; the
``VOLUME_BOT_CONFIG`` environment variable points to an alternative file.
A missing file yields an empty dictionary so every component falls back to
its own defaults.

Environment variables always win over YAML values for the keys that are
deployment specific (RPC endpoints, database path, fee wallet...). Each
service reads those through module-level constants, as usual.
"""

from __future__ import annotations

import os
from typing import Any, Dict

import yaml  # type: ignore

from volume_bot.exceptions import ValidationError


def _default_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
    return os.path.join(base_dir, "config.yaml")


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load application configuration from YAML.

    :param path: explicit file; defaults to ``$VOLUME_BOT_CONFIG`` or
        ``<root>/config.yaml``.
    :returns: the parsed mapping, ``{}`` when the file does not exist.
    :raises ValidationError: if the document is not a mapping.
    """
    config_path = path or os.getenv("VOLUME_BOT_CONFIG") or _default_path()
    if not os.path.exists(config_path):
        return {}
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValidationError(f"{config_path}: se esperaba un mapping YAML, llegó {type(data).__name__}")
    return data


def section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return ``config[name]`` as a dict (empty if absent or null)."""
    value = config.get(name) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"La sección '{name}' debe ser un mapping")
    return value

