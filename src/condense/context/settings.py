"""Layered settings with JSON file persistence.

Precedence: runtime overrides > project settings > global settings.
Only the sections the context manager reads are modelled here; unknown
keys in the files are preserved on save.
"""

from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from condense.context.compaction.compact import DEFAULT_COMPACTION_SETTINGS, CompactionSettings

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".condense"


@dataclass
class RetrySettings:
    """Controls automatic retry of transient provider errors."""

    enabled: bool = True
    max_retries: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 60000


DEFAULT_RETRY_SETTINGS = RetrySettings()


def deep_merge_settings(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge overrides into base settings.

    Nested dicts merge key by key; any other value in ``overrides`` replaces
    the base value. ``None`` never overrides.
    """
    result = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_settings(result[key], value)
        else:
            result[key] = value
    return result


class SettingsManager:
    """Hierarchical settings for compaction and retry.

    Use the factory methods (``create``, ``in_memory``) rather than the
    constructor.
    """

    def __init__(
        self,
        *,
        settings_path: str | None,
        project_settings_path: str | None,
        initial_settings: dict[str, Any],
        persist: bool = True,
        load_error: Exception | None = None,
    ) -> None:
        self._settings_path = settings_path
        self._project_settings_path = project_settings_path
        self._global_settings = deepcopy(initial_settings)
        self._persist = persist
        self._load_error = load_error
        self._overrides: dict[str, Any] = {}
        self._modified_fields: set[str] = set()
        self._modified_nested_fields: dict[str, set[str]] = {}
        self._settings = self._merge()

    # --- Factory methods ---

    @classmethod
    def create(cls, cwd: str, agent_dir: str | None = None) -> SettingsManager:
        """Create a settings manager backed by global and project JSON files."""
        adir = agent_dir or _default_agent_dir()
        settings_path = os.path.join(adir, "settings.json")
        project_settings_path = os.path.join(cwd, CONFIG_DIR_NAME, "settings.json")

        settings, error = _load_from_file(settings_path)
        return cls(
            settings_path=settings_path,
            project_settings_path=project_settings_path,
            initial_settings=settings,
            persist=True,
            load_error=error,
        )

    @classmethod
    def in_memory(cls, settings: dict[str, Any] | None = None) -> SettingsManager:
        return cls(
            settings_path=None,
            project_settings_path=None,
            initial_settings=settings or {},
            persist=False,
        )

    # --- Core operations ---

    @property
    def settings(self) -> dict[str, Any]:
        """Current merged settings (read-only view)."""
        return self._settings

    @property
    def load_error(self) -> Exception | None:
        return self._load_error

    def reload(self) -> None:
        if self._settings_path:
            self._global_settings, self._load_error = _load_from_file(self._settings_path)
        self._modified_fields.clear()
        self._modified_nested_fields.clear()
        self._settings = self._merge()

    def apply_overrides(self, overrides: dict[str, Any]) -> None:
        """Apply runtime overrides on top of the file-backed settings."""
        self._overrides = deep_merge_settings(self._overrides, overrides)
        self._settings = self._merge()

    def get_global_settings(self) -> dict[str, Any]:
        return deepcopy(self._global_settings)

    def _merge(self) -> dict[str, Any]:
        project = self._load_project_settings()
        return deep_merge_settings(deep_merge_settings(self._global_settings, project), self._overrides)

    def _load_project_settings(self) -> dict[str, Any]:
        if not self._project_settings_path:
            return {}
        settings, _ = _load_from_file(self._project_settings_path)
        return settings

    def _mark_modified(self, field_name: str, nested_key: str | None = None) -> None:
        self._modified_fields.add(field_name)
        if nested_key:
            self._modified_nested_fields.setdefault(field_name, set()).add(nested_key)

    def _set_nested(self, section: str, key: str, value: Any) -> None:
        if not isinstance(self._global_settings.get(section), dict):
            self._global_settings[section] = {}
        self._global_settings[section][key] = value
        self._mark_modified(section, key)
        self._save()

    def _save(self) -> None:
        """Write modified fields to the global file, keeping changes made by others."""
        if self._persist and self._settings_path:
            if self._load_error:
                logger.warning("Not saving settings: %s could not be parsed", self._settings_path)
                self._settings = self._merge()
                return

            current_file, _ = _load_from_file(self._settings_path)
            merged: dict[str, Any] = dict(current_file)

            for field_name in self._modified_fields:
                value = self._global_settings.get(field_name)
                nested_keys = self._modified_nested_fields.get(field_name)

                if nested_keys and isinstance(value, dict):
                    if not isinstance(merged.get(field_name), dict):
                        merged[field_name] = {}
                    for nk in nested_keys:
                        merged[field_name][nk] = value.get(nk)
                else:
                    merged[field_name] = value

            merged = {k: v for k, v in merged.items() if v is not None}

            os.makedirs(os.path.dirname(self._settings_path), exist_ok=True)
            Path(self._settings_path).write_text(
                json.dumps(merged, indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )

        self._settings = self._merge()

    # --- Compaction ---

    def get_compaction_enabled(self) -> bool:
        return self.get_compaction_settings().enabled

    def get_compaction_settings(self) -> CompactionSettings:
        compaction = self._settings.get("compaction") or {}
        defaults = DEFAULT_COMPACTION_SETTINGS
        return CompactionSettings(
            enabled=_pick(compaction, "enabled", defaults.enabled),
            reserve_tokens=_pick(compaction, "reserveTokens", defaults.reserve_tokens),
            keep_recent_tokens=_pick(compaction, "keepRecentTokens", defaults.keep_recent_tokens),
        )

    def set_compaction_enabled(self, enabled: bool) -> None:
        self._set_nested("compaction", "enabled", enabled)

    # --- Retry ---

    def get_retry_enabled(self) -> bool:
        return self.get_retry_settings().enabled

    def get_retry_settings(self) -> RetrySettings:
        retry = self._settings.get("retry") or {}
        defaults = DEFAULT_RETRY_SETTINGS
        return RetrySettings(
            enabled=_pick(retry, "enabled", defaults.enabled),
            max_retries=_pick(retry, "maxRetries", defaults.max_retries),
            base_delay_ms=_pick(retry, "baseDelayMs", defaults.base_delay_ms),
            max_delay_ms=_pick(retry, "maxDelayMs", defaults.max_delay_ms),
        )

    def set_retry_enabled(self, enabled: bool) -> None:
        self._set_nested("retry", "enabled", enabled)


def _pick(section: dict[str, Any], key: str, default: Any) -> Any:
    value = section.get(key)
    return default if value is None else value


def _load_from_file(path: str) -> tuple[dict[str, Any], Exception | None]:
    """Load settings from a JSON file. Returns (settings, error)."""
    if not os.path.exists(path):
        return {}, None
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load settings from %s: %s", path, e)
        return {}, e
    if not isinstance(data, dict):
        return {}, ValueError(f"Settings file {path} does not contain a JSON object")
    return data, None


def _default_agent_dir() -> str:
    return os.path.join(os.path.expanduser("~"), CONFIG_DIR_NAME)
