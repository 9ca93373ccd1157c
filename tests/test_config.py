"""Tests for configuration loading."""

import pytest
from pathlib import Path

from memkeep.config import load_config

ENV_KEYS = [
    "MEMKEEP_DIR",
    "MEMKEEP_DEDUP_WINDOW",
    "MEMKEEP_HALF_LIFE_DAYS",
    "MEMKEEP_ARCHIVE_AGE_DAYS",
    "MEMKEEP_MERGE_THRESHOLD",
    "MEMKEEP_MAINTENANCE_INTERVAL",
    "MEMKEEP_HOST",
    "MEMKEEP_PORT",
    "MEMKEEP_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfig:
    def test_defaults(self):
        config = load_config()
        assert config.store.dedup_window_seconds == 300
        assert config.store.access_boost == 0.02
        assert config.lifecycle.half_life_days == 30
        assert config.lifecycle.archive_age_days == 90
        assert config.lifecycle.archive_relevance_floor == 0.3
        assert config.lifecycle.merge_threshold == 0.85
        assert config.lifecycle.chain_depth == 2
        assert config.scheduler.consolidate is False
        assert config.server.port == 8765
        assert config.log_level == "INFO"

    def test_env_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MEMKEEP_DIR", str(tmp_path / "mem"))
        monkeypatch.setenv("MEMKEEP_HALF_LIFE_DAYS", "7")
        monkeypatch.setenv("MEMKEEP_PORT", "9000")

        config = load_config()
        assert config.store.dir == tmp_path / "mem"
        assert config.lifecycle.half_life_days == 7
        assert config.server.port == 9000

    def test_toml_file(self, tmp_path: Path):
        toml_path = tmp_path / "memkeep.toml"
        toml_path.write_text("""
log_level = "DEBUG"

[store]
dir = "/tmp/memkeep-test"
dedup_window_seconds = 60

[lifecycle]
merge_threshold = 0.9
chain_depth = 3

[scheduler]
maintenance_interval = 120
consolidate = true
""")
        config = load_config(toml_path)
        assert config.store.dir == Path("/tmp/memkeep-test")
        assert config.store.dedup_window_seconds == 60
        assert config.lifecycle.merge_threshold == 0.9
        assert config.lifecycle.chain_depth == 3
        assert config.scheduler.maintenance_interval == 120
        assert config.scheduler.consolidate is True
        assert config.log_level == "DEBUG"

    def test_toml_found_in_cwd(self, tmp_path: Path):
        (tmp_path / "memkeep.toml").write_text("[server]\nport = 7000\n")
        config = load_config()
        assert config.server.port == 7000

    def test_env_overrides_toml(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MEMKEEP_MERGE_THRESHOLD", "0.7")

        toml_path = tmp_path / "memkeep.toml"
        toml_path.write_text("""
[lifecycle]
merge_threshold = 0.9
""")
        config = load_config(toml_path)
        assert config.lifecycle.merge_threshold == 0.7  # env wins
