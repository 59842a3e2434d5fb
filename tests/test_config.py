"""Tests for vtm.config."""

import json
from pathlib import Path

import pytest

from vtm.cache import DEFAULT_TTL_SECONDS
from vtm.config import CONFIG_FILE, load_config
from vtm.errors import UsageError


class TestLoadConfig:
    """Test precedence: defaults < .vtmrc < environment < overrides."""

    def test_defaults(self, tmp_path):
        config = load_config(cwd=tmp_path, env={})
        assert config.manifest_path == tmp_path / "vtm.json"
        assert config.history_dir == tmp_path / ".vtm-history"
        assert config.cache_ttl_seconds == DEFAULT_TTL_SECONDS
        assert config.next_limit == 5

    def test_rc_file(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text(json.dumps({"manifest_path": "plan/vtm.json", "next_limit": 3}))
        config = load_config(cwd=tmp_path, env={})
        assert config.manifest_path == tmp_path / "plan" / "vtm.json"
        assert config.next_limit == 3

    def test_env_beats_rc(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text(json.dumps({"cache_ttl_seconds": 10}))
        config = load_config(cwd=tmp_path, env={"VTM_CACHE_TTL": "20"})
        assert config.cache_ttl_seconds == 20

    def test_overrides_beat_env(self, tmp_path):
        config = load_config(
            cwd=tmp_path,
            env={"VTM_MANIFEST": "env.json"},
            overrides={"manifest_path": "flag.json", "history_dir": None},
        )
        assert config.manifest_path == tmp_path / "flag.json"
        assert config.history_dir == tmp_path / ".vtm-history"

    def test_absolute_paths_kept(self, tmp_path):
        target = tmp_path / "elsewhere" / "vtm.json"
        config = load_config(cwd=Path("/tmp"), env={"VTM_MANIFEST": str(target)})
        assert config.manifest_path == target

    def test_broken_rc_falls_back(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILE).write_text("{oops")
        config = load_config(cwd=tmp_path, env={})
        assert config.next_limit == 5
        assert "Failed to parse" in caplog.text

    def test_undecodable_rc_falls_back(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILE).write_bytes(b"\xff\xfe{}")
        config = load_config(cwd=tmp_path, env={})
        assert config.next_limit == 5
        assert "using defaults" in caplog.text

    def test_invalid_rc_values_fall_back(self, tmp_path, caplog):
        (tmp_path / CONFIG_FILE).write_text(json.dumps({"next_limit": "many"}))
        config = load_config(cwd=tmp_path, env={})
        assert config.next_limit == 5
        assert "using defaults" in caplog.text

    def test_invalid_env_value(self, tmp_path):
        with pytest.raises(UsageError, match="Invalid configuration"):
            load_config(cwd=tmp_path, env={"VTM_CACHE_TTL": "soon"})
