from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from bulkads.config import EngineSettings, load_settings, validate_settings


def write(tmp_path, data):
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


def test_defaults_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("BULKADS_DB_PATH", raising=False)
    settings = load_settings(str(tmp_path / "missing.yaml"), env_file=str(tmp_path / ".env"))
    assert settings.rate.threshold_pct == 80.0
    assert settings.credentials.high_water == 0.9
    assert settings.batch.quality_threshold_pct == 90.0
    assert settings.jobs.auto_rollback is True


def test_sections_are_merged(tmp_path, monkeypatch):
    monkeypatch.delenv("BULKADS_DB_PATH", raising=False)
    path = write(tmp_path, {
        "db_path": "/tmp/x.sqlite",
        "rate": {"threshold_pct": 70, "bogus": 1},
        "batch": {"pairs_per_batch": 4},
    })
    settings = load_settings(path, env_file=str(tmp_path / ".env"))
    assert settings.db_path == "/tmp/x.sqlite"
    assert settings.rate.threshold_pct == 70
    assert settings.rate.window_seconds == 3600
    assert settings.batch.pairs_per_batch == 4


def test_env_overrides_db_path(tmp_path, monkeypatch):
    monkeypatch.setenv("BULKADS_DB_PATH", str(tmp_path / "env.sqlite"))
    settings = load_settings(write(tmp_path, {"db_path": "file.sqlite"}), env_file=str(tmp_path / ".env"))
    assert settings.db_path == str(tmp_path / "env.sqlite")


@pytest.mark.parametrize("section, key, value", [
    ("rate", "threshold_pct", 0),
    ("credentials", "high_water", 1.5),
    ("batch", "pairs_per_batch", 30),
    ("queue", "max_attempts", 0),
    ("jobs", "max_workers", 0),
])
def test_invalid_values_are_rejected(section, key, value):
    settings = EngineSettings.from_dict({section: {key: value}})
    with pytest.raises(ValueError):
        validate_settings(settings)


def test_section_must_be_a_mapping():
    with pytest.raises(ValueError):
        EngineSettings.from_dict({"rate": [1, 2]})


def test_shipped_settings_file_is_valid():
    settings = load_settings(str(Path(__file__).resolve().parents[1] / "config" / "settings.yaml"))
    validate_settings(settings)
    assert settings.queue.tick_seconds == 60
