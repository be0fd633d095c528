from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from . import app_db
from .config import BACKEND_DIR, REPO_ROOT
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_SETTINGS_PATH = BACKEND_DIR / "default_settings.json"

# Keys whose value is loaded from a prompt file named by "<key>_file".
_TEMPLATE_KEYS = ("system_prompt_template", "vision_prompt_template")

_SEEDED_KEYS = (
    "coach_name",
    "required_placeholders",
    "vision_required_placeholders",
    "system_prompt_template",
    "vision_prompt_template",
    "llm",
    "vision",
    "email",
)

# Nested dict settings that get new default keys backfilled.
_NESTED_KEYS = ("llm", "vision", "email")


class SettingsError(RuntimeError):
    pass


def _read_json(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SettingsError(f"Failed to read settings file {path}: {e}") from e


def _read_template(raw: dict[str, Any], key: str) -> str:
    rel_path = raw.get(f"{key}_file")
    if not isinstance(rel_path, str) or not rel_path:
        raise SettingsError(f"default_settings.json missing '{key}_file'")
    path = (REPO_ROOT / rel_path).resolve()
    if not path.exists():
        raise SettingsError(f"Prompt template file not found: {path}")
    return path.read_text(encoding="utf-8")


def load_defaults() -> dict[str, Any]:
    if not DEFAULT_SETTINGS_PATH.exists():
        raise SettingsError(f"Default settings file not found: {DEFAULT_SETTINGS_PATH}")

    raw = _read_json(DEFAULT_SETTINGS_PATH)
    defaults = dict(raw)
    for key in _TEMPLATE_KEYS:
        defaults[key] = _read_template(raw, key)
    return defaults


def get_settings_bundle() -> dict[str, Any]:
    defaults = load_defaults()
    db_settings = app_db.list_settings()

    effective: dict[str, Any] = {}
    for k, v in defaults.items():
        effective[k] = v
    for k, v in db_settings.items():
        effective[k] = v

    return {"defaults": defaults, "settings": db_settings, "effective": effective}


def get_effective_settings() -> dict[str, Any]:
    return get_settings_bundle()["effective"]


def _merge_missing(dst: Any, src: Any) -> tuple[Any, bool]:
    if not isinstance(dst, dict) or not isinstance(src, dict):
        return dst, False
    changed = False
    out = dict(dst)
    for k, v in src.items():
        if k not in out:
            out[k] = v
            changed = True
        else:
            merged, did = _merge_missing(out[k], v)
            if did:
                out[k] = merged
                changed = True
    return out, changed


def ensure_defaults() -> None:
    bundle = get_settings_bundle()
    defaults: dict[str, Any] = bundle["defaults"]
    settings: dict[str, Any] = bundle["settings"]

    to_set: dict[str, Any] = {}

    # Only seed keys that are missing.
    for key in _SEEDED_KEYS:
        if key not in settings and key in defaults:
            to_set[key] = defaults[key]

    # Backfill newly added nested defaults without overwriting user values.
    for key in _NESTED_KEYS:
        if key in settings and key in defaults:
            merged, changed = _merge_missing(settings.get(key), defaults.get(key))
            if changed:
                to_set[key] = merged

    if to_set:
        log.info("Seeding default settings keys: %s", ", ".join(sorted(to_set.keys())))
        app_db.set_settings(to_set)


def update_settings(new_values: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(k for k in new_values if k not in _SEEDED_KEYS)
    if unknown:
        raise SettingsError("Unknown settings keys: " + ", ".join(unknown))
    for key in _NESTED_KEYS:
        if key in new_values and not isinstance(new_values[key], dict):
            raise SettingsError(f"Setting '{key}' must be an object")
    app_db.set_settings(new_values)
    return get_settings_bundle()
