"""
Tests for Configuration Profiles

Tests config_loader.py: profile loading, inheritance, flattening,
env var overrides, .dxgraph.yml overrides, and the full merge chain.
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

import config_loader
from config_loader import (
    build_config,
    deep_merge,
    flatten_profile,
    get_default_config,
    list_available_profiles,
    load_env_overrides,
    load_profile,
    validate_config,
)


# ============================================================================
# Test get_default_config
# ============================================================================


class TestGetDefaultConfig:
    def test_all_keys_present(self):
        config = get_default_config()
        required_keys = [
            "sandbox_time_ms", "sandbox_mem_mb", "sandbox_isolation",
            "sandbox_poll_interval_ms", "workflow_timeout_ms",
            "max_parallel_nodes", "seed_default_workflows",
            "enable_checkpointing", "checkpoint_db_path",
        ]
        for key in required_keys:
            assert key in config, f"Missing key: {key}"

    def test_sensible_defaults(self):
        config = get_default_config()
        assert config["sandbox_time_ms"] == 30_000
        assert config["sandbox_mem_mb"] == 512
        assert config["sandbox_isolation"] == "process"
        assert config["workflow_timeout_ms"] == 300_000
        assert config["enable_checkpointing"] is False

    def test_defaults_are_valid(self):
        assert validate_config(get_default_config()) == []


# ============================================================================
# Test flatten_profile
# ============================================================================


class TestFlattenProfile:
    def test_sections(self):
        flat = flatten_profile(
            {
                "sandbox": {"time_ms": 1000, "isolation": "thread"},
                "workflow": {"timeout_ms": 5000, "seed_defaults": False},
                "checkpoint": {"enabled": True, "db_path": "cp.db"},
            }
        )
        assert flat == {
            "sandbox_time_ms": 1000,
            "sandbox_isolation": "thread",
            "workflow_timeout_ms": 5000,
            "seed_default_workflows": False,
            "enable_checkpointing": True,
            "checkpoint_db_path": "cp.db",
        }

    def test_unknown_keys_dropped(self):
        flat = flatten_profile({"sandbox": {"cpu_quota": 2, "mem_mb": 64}})
        assert flat == {"sandbox_mem_mb": 64}

    def test_none_values_excluded(self):
        assert flatten_profile({"sandbox": {"time_ms": None}}) == {}

    def test_top_level_scalars(self):
        flat = flatten_profile({"name": "custom", "description": "desc"})
        assert flat["name"] == "custom"
        assert flat["description"] == "desc"


# ============================================================================
# Test load_profile
# ============================================================================


class TestLoadProfile:
    def test_load_standard_profile(self):
        config = load_profile("standard")
        assert config["name"] == "standard"
        assert config["sandbox_isolation"] == "process"
        assert config["seed_default_workflows"] is True

    def test_fast_inherits_standard(self):
        config = load_profile("fast")
        assert config["sandbox_time_ms"] == 5000
        assert config["sandbox_mem_mb"] == 256
        assert config["workflow_timeout_ms"] == 60000
        # inherited
        assert config["sandbox_isolation"] == "process"
        assert config["max_parallel_nodes"] == 8

    def test_durable_enables_checkpointing(self):
        config = load_profile("durable")
        assert config["enable_checkpointing"] is True
        assert config["checkpoint_db_path"] == ".dxgraph/checkpoints.db"
        assert config["workflow_timeout_ms"] == 900000

    def test_nonexistent_profile(self):
        with pytest.raises(FileNotFoundError):
            load_profile("does-not-exist")

    def test_circular_extends(self, tmp_path, monkeypatch):
        (tmp_path / "a.yml").write_text("_extends: b\n")
        (tmp_path / "b.yml").write_text("_extends: a\n")
        monkeypatch.setattr(config_loader, "_profile_search_paths", lambda name: [tmp_path / f"{name}.yml"])
        with pytest.raises(ValueError, match="Circular profile inheritance"):
            load_profile("a")

    def test_extends_overlays_sections_key_by_key(self, tmp_path, monkeypatch):
        (tmp_path / "base.yml").write_text("sandbox:\n  time_ms: 1000\n  mem_mb: 128\n")
        (tmp_path / "child.yml").write_text("_extends: base\nsandbox:\n  mem_mb: 64\n")
        monkeypatch.setattr(config_loader, "_profile_search_paths", lambda name: [tmp_path / f"{name}.yml"])
        config = load_profile("child")
        assert config["sandbox_time_ms"] == 1000
        assert config["sandbox_mem_mb"] == 64

    def test_all_profiles_loadable(self):
        for name in list_available_profiles():
            config = load_profile(name)
            assert config["name"] == name


# ============================================================================
# Test load_env_overrides
# ============================================================================


class TestLoadEnvOverrides:
    def test_empty_when_no_env(self):
        with patch.dict(os.environ, {}, clear=True):
            assert load_env_overrides() == {}

    def test_int_env_var(self):
        with patch.dict(os.environ, {"DX_SANDBOX_TIME_MS": "2500"}, clear=False):
            assert load_env_overrides()["sandbox_time_ms"] == 2500

    def test_bool_env_var(self):
        with patch.dict(os.environ, {"DX_ENABLE_CHECKPOINTING": "yes"}, clear=False):
            assert load_env_overrides()["enable_checkpointing"] is True
        with patch.dict(os.environ, {"DX_ENABLE_CHECKPOINTING": "off"}, clear=False):
            assert load_env_overrides()["enable_checkpointing"] is False

    def test_string_env_var(self):
        with patch.dict(os.environ, {"DX_SANDBOX_ISOLATION": "thread"}, clear=False):
            assert load_env_overrides()["sandbox_isolation"] == "thread"

    def test_invalid_int_ignored(self):
        with patch.dict(os.environ, {"DX_MAX_PARALLEL_NODES": "many"}, clear=False):
            assert "max_parallel_nodes" not in load_env_overrides()


# ============================================================================
# Test deep_merge
# ============================================================================


class TestDeepMerge:
    def test_none_skipped(self):
        assert deep_merge({"a": 1, "b": 2}, {"a": None, "b": 3}) == {"a": 1, "b": 3}

    def test_base_unchanged(self):
        base = {"a": 1}
        deep_merge(base, {"a": 2})
        assert base == {"a": 1}


# ============================================================================
# Test build_config
# ============================================================================


class TestBuildConfig:
    def test_defaults_only(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            assert build_config(repo_path=str(tmp_path)) == get_default_config()

    def test_with_profile(self, tmp_path):
        config = build_config(profile="fast", repo_path=str(tmp_path))
        assert config["sandbox_time_ms"] == 5000

    def test_project_yml_overrides_profile(self, tmp_path):
        (tmp_path / ".dxgraph.yml").write_text("sandbox:\n  time_ms: 1234\n")
        config = build_config(profile="fast", repo_path=str(tmp_path))
        assert config["sandbox_time_ms"] == 1234
        assert config["sandbox_mem_mb"] == 256

    def test_env_overrides_project_yml(self, tmp_path):
        (tmp_path / ".dxgraph.yml").write_text("sandbox:\n  time_ms: 1234\n")
        with patch.dict(os.environ, {"DX_SANDBOX_TIME_MS": "4321"}, clear=False):
            config = build_config(repo_path=str(tmp_path))
        assert config["sandbox_time_ms"] == 4321

    def test_explicit_overrides_win(self, tmp_path):
        with patch.dict(os.environ, {"DX_SANDBOX_ISOLATION": "process"}, clear=False):
            config = build_config(overrides={"sandbox_isolation": "thread"}, repo_path=str(tmp_path))
        assert config["sandbox_isolation"] == "thread"

    def test_profile_env_var(self, tmp_path):
        with patch.dict(os.environ, {"DX_PROFILE": "durable"}, clear=False):
            config = build_config(repo_path=str(tmp_path))
        assert config["enable_checkpointing"] is True

    def test_nonexistent_profile_warning(self, tmp_path):
        config = build_config(profile="nope", repo_path=str(tmp_path))
        assert config["sandbox_time_ms"] == get_default_config()["sandbox_time_ms"]


# ============================================================================
# Test validate_config
# ============================================================================


class TestValidateConfig:
    def test_invalid_isolation(self):
        config = {**get_default_config(), "sandbox_isolation": "vm"}
        assert any("Invalid sandbox_isolation" in i for i in validate_config(config))

    def test_non_positive_budget(self):
        config = {**get_default_config(), "sandbox_mem_mb": 0}
        issues = validate_config(config)
        assert issues == ["ERROR: sandbox_mem_mb must be a positive integer, got 0."]

    def test_sandbox_longer_than_workflow(self):
        config = {**get_default_config(), "sandbox_time_ms": 600_000}
        (issue,) = validate_config(config)
        assert issue.startswith("WARNING: sandbox_time_ms exceeds")

    def test_db_path_without_checkpointing(self):
        config = {**get_default_config(), "checkpoint_db_path": "cp.db"}
        (issue,) = validate_config(config)
        assert "enable_checkpointing is false" in issue


# ============================================================================
# End-to-end
# ============================================================================


class TestE2EConfigProfiles:
    def test_every_profile_produces_valid_config(self, tmp_path):
        for name in list_available_profiles():
            config = build_config(profile=name, repo_path=str(tmp_path))
            errors = [i for i in validate_config(config) if i.startswith("ERROR")]
            assert errors == [], f"{name}: {errors}"

    def test_fast_is_tighter_than_standard(self, tmp_path):
        fast = build_config(profile="fast", repo_path=str(tmp_path))
        standard = build_config(profile="standard", repo_path=str(tmp_path))
        assert fast["sandbox_time_ms"] < standard["sandbox_time_ms"]
        assert fast["workflow_timeout_ms"] < standard["workflow_timeout_ms"]
