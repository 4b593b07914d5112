"""Tests for the layered settings manager."""

from __future__ import annotations

import json
from pathlib import Path

from condense.context.settings import CONFIG_DIR_NAME, SettingsManager, deep_merge_settings

# --- Deep merge ---


def test_deep_merge_nested():
    base = {"compaction": {"enabled": True, "reserveTokens": 1000}}
    overrides = {"compaction": {"enabled": False}}
    result = deep_merge_settings(base, overrides)
    assert result == {"compaction": {"enabled": False, "reserveTokens": 1000}}


def test_deep_merge_none_values_skipped():
    result = deep_merge_settings({"a": 1, "b": 2}, {"a": None, "c": 3})
    assert result == {"a": 1, "b": 2, "c": 3}


# --- In-memory settings manager ---


def test_in_memory_defaults():
    mgr = SettingsManager.in_memory()
    compaction = mgr.get_compaction_settings()
    retry = mgr.get_retry_settings()

    assert compaction.enabled is True
    assert compaction.reserve_tokens == 16384
    assert compaction.keep_recent_tokens == 20000
    assert retry.enabled is True
    assert retry.max_retries == 3
    assert retry.base_delay_ms == 2000
    assert retry.max_delay_ms == 60000


def test_compaction_settings():
    mgr = SettingsManager.in_memory({"compaction": {"enabled": False, "reserveTokens": 5000}})
    assert not mgr.get_compaction_enabled()
    settings = mgr.get_compaction_settings()
    assert settings.reserve_tokens == 5000
    assert settings.keep_recent_tokens == 20000  # default


def test_retry_settings():
    mgr = SettingsManager.in_memory({"retry": {"maxRetries": 5, "maxDelayMs": 10000}})
    settings = mgr.get_retry_settings()
    assert settings.max_retries == 5
    assert settings.max_delay_ms == 10000
    assert settings.base_delay_ms == 2000  # default


def test_setters():
    mgr = SettingsManager.in_memory()
    mgr.set_compaction_enabled(False)
    mgr.set_retry_enabled(False)
    assert not mgr.get_compaction_enabled()
    assert not mgr.get_retry_enabled()


def test_in_memory_does_not_mutate_initial_dict():
    initial = {"compaction": {"enabled": True}}
    mgr = SettingsManager.in_memory(initial)
    mgr.set_compaction_enabled(False)
    assert initial == {"compaction": {"enabled": True}}


def test_apply_overrides():
    mgr = SettingsManager.in_memory({"compaction": {"reserveTokens": 5000, "keepRecentTokens": 100}})
    mgr.apply_overrides({"compaction": {"keepRecentTokens": 50}})
    settings = mgr.get_compaction_settings()
    assert settings.reserve_tokens == 5000
    assert settings.keep_recent_tokens == 50


# --- File-backed settings ---


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def test_project_settings_override_global(tmp_path):
    agent_dir = tmp_path / "agent"
    cwd = tmp_path / "project"
    _write_json(agent_dir / "settings.json", {"compaction": {"reserveTokens": 1000, "keepRecentTokens": 2000}})
    _write_json(cwd / CONFIG_DIR_NAME / "settings.json", {"compaction": {"reserveTokens": 3000}})

    mgr = SettingsManager.create(str(cwd), str(agent_dir))
    settings = mgr.get_compaction_settings()
    assert settings.reserve_tokens == 3000
    assert settings.keep_recent_tokens == 2000
    assert mgr.load_error is None


def test_setter_persists_only_modified_fields(tmp_path):
    agent_dir = tmp_path / "agent"
    settings_file = agent_dir / "settings.json"
    _write_json(settings_file, {"theme": "dark", "retry": {"maxRetries": 7}})

    mgr = SettingsManager.create(str(tmp_path / "project"), str(agent_dir))
    # Another process edits the file in between.
    _write_json(settings_file, {"theme": "light", "retry": {"maxRetries": 7}})
    mgr.set_retry_enabled(False)

    saved = json.loads(settings_file.read_text(encoding="utf-8"))
    assert saved == {"theme": "light", "retry": {"maxRetries": 7, "enabled": False}}
    assert not mgr.get_retry_enabled()


def test_corrupt_file_is_reported_and_not_overwritten(tmp_path):
    agent_dir = tmp_path / "agent"
    settings_file = agent_dir / "settings.json"
    settings_file.parent.mkdir(parents=True)
    settings_file.write_text("{not json", encoding="utf-8")

    mgr = SettingsManager.create(str(tmp_path / "project"), str(agent_dir))
    assert mgr.load_error is not None
    assert mgr.get_compaction_enabled() is True

    mgr.set_compaction_enabled(False)
    assert settings_file.read_text(encoding="utf-8") == "{not json"


def test_reload_picks_up_changes(tmp_path):
    agent_dir = tmp_path / "agent"
    settings_file = agent_dir / "settings.json"
    _write_json(settings_file, {"retry": {"maxRetries": 2}})

    mgr = SettingsManager.create(str(tmp_path / "project"), str(agent_dir))
    assert mgr.get_retry_settings().max_retries == 2

    _write_json(settings_file, {"retry": {"maxRetries": 9}})
    mgr.reload()
    assert mgr.get_retry_settings().max_retries == 9
