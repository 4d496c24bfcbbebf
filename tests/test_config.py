import json
import stat
from pathlib import Path

import pytest
from pydantic import ValidationError

from memkeep.config.loader import (
    _migrate_config,
    convert_keys,
    convert_to_camel,
    get_config_path,
    load_config,
    save_config,
)
from memkeep.config.schema import Config, MemoryRecallConfig, MemoryRetentionConfig


def test_defaults() -> None:
    config = Config()
    assert config.memory.dedup.threshold == pytest.approx(0.75)
    assert config.memory.recall.default_deadline_ms == 200
    assert config.memory.recall.max_deadline_ms == 500
    assert config.memory.scoring.tier1_threshold == pytest.approx(0.62)
    assert config.memory.retention.ttl_days == {"tier1": 365, "tier2": 180, "tier3": 90}
    assert config.telemetry.backend == "none"


def test_env_overrides_nested_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEMKEEP_MEMORY__DEDUP__THRESHOLD", "0.8")
    monkeypatch.setenv("MEMKEEP_TELEMETRY__BACKEND", "inmemory")
    config = Config()
    assert config.memory.dedup.threshold == pytest.approx(0.8)
    assert config.memory.dedup.window == 50
    assert config.telemetry.backend == "inmemory"


def test_db_path_is_resolved_under_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEMKEEP_HOME", str(tmp_path / "mk"))
    config = Config()
    assert config.memory.db_file == tmp_path / "mk" / "memory" / "memories.db"

    absolute = tmp_path / "elsewhere.db"
    config.memory.db_path = str(absolute)
    assert config.memory.db_file == absolute


def test_save_and_load_roundtrip_camel_case(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    config = Config()
    config.memory.dedup.threshold = 0.6
    config.memory.recall.max_prompt_chars = 1200
    save_config(config, path)

    raw = json.loads(path.read_text())
    assert raw["memory"]["dedup"]["threshold"] == 0.6
    assert raw["memory"]["recall"]["maxPromptChars"] == 1200
    assert raw["memory"]["scoring"]["tier1Threshold"] == pytest.approx(0.62)
    assert raw["memory"]["retention"]["ttlDays"]["tier1"] == 365
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    loaded = load_config(path)
    assert loaded.memory.dedup.threshold == pytest.approx(0.6)
    assert loaded.memory.recall.max_prompt_chars == 1200


def test_load_missing_or_broken_file_falls_back_to_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "missing.json").memory.dedup.threshold == pytest.approx(0.75)

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert load_config(broken).memory.recall.default_deadline_ms == 200


def test_legacy_keys_are_migrated_without_filling_defaults() -> None:
    migrated = _migrate_config({"memory": {"dedupThreshold": 0.6, "recallDeadlineMs": 150}})
    memory = migrated["memory"]
    assert "dedupThreshold" not in memory
    assert "recallDeadlineMs" not in memory
    assert memory["dedup"] == {"threshold": 0.6}
    assert memory["recall"] == {"defaultDeadlineMs": 150}
    assert "telemetry" not in migrated
    assert migrated["configVersion"] == 1


def test_migration_rewrites_file_with_backup(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"memory": {"dedupThreshold": 0.65}}))

    config = load_config(path)

    assert config.memory.dedup.threshold == pytest.approx(0.65)
    rewritten = json.loads(path.read_text())
    assert rewritten["memory"]["dedup"] == {"threshold": 0.65}
    assert rewritten["configVersion"] == 1
    assert list(tmp_path.glob("config.backup.*.json"))


def test_key_conversion_roundtrip() -> None:
    snake = convert_keys({"memory": {"maxContentChars": 10, "recall": {"recencyWindowHours": 1}}})
    assert snake == {"memory": {"max_content_chars": 10, "recall": {"recency_window_hours": 1}}}
    assert convert_to_camel(snake) == {"memory": {"maxContentChars": 10, "recall": {"recencyWindowHours": 1}}}


def test_invalid_sections_are_rejected() -> None:
    with pytest.raises(ValidationError):
        MemoryRecallConfig(default_deadline_ms=600, max_deadline_ms=500)
    with pytest.raises(ValidationError):
        MemoryRetentionConfig(ttl_days={"tier1": 1})


def test_config_path_follows_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEMKEEP_HOME", str(tmp_path / "custom"))
    assert get_config_path() == tmp_path / "custom" / "config.json"


def test_env_fills_keys_missing_from_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"configVersion": 1, "memory": {"dedup": {"window": 10}}}))
    monkeypatch.setenv("MEMKEEP_MEMORY__DEDUP__THRESHOLD", "0.8")
    monkeypatch.setenv("MEMKEEP_MEMORY__DEDUP__WINDOW", "99")
    monkeypatch.setenv("MEMKEEP_TELEMETRY__BACKEND", "inmemory")

    config = load_config(path)

    assert config.memory.dedup.window == 10
    assert config.memory.dedup.threshold == pytest.approx(0.8)
    assert config.telemetry.backend == "inmemory"
    assert config.memory.recall.default_deadline_ms == 200


def test_migration_does_not_pin_env_overridable_keys(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"memory": {"dedupWindow": 10}}))

    load_config(path)
    monkeypatch.setenv("MEMKEEP_MEMORY__DEDUP__THRESHOLD", "0.8")
    config = load_config(path)

    assert config.memory.dedup.window == 10
    assert config.memory.dedup.threshold == pytest.approx(0.8)
    assert "threshold" not in json.loads(path.read_text())["memory"]["dedup"]
