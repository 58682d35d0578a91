"""
Unit tests for config_loader module.

Tests the layered configuration loading:
- Defaults when no resgraph.yml is present
- Values read from resgraph.yml
- Validation of keys and value types
- Environment variable overrides
"""

import pytest

from planner.config_loader import (
    PlannerConfig,
    find_config_file,
    load_config,
    validate_settings,
)
from planner.exceptions import ConfigurationError


class TestLoadConfig:
    """Tests for load_config() function."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config == PlannerConfig()
        assert config.max_workers == 4
        assert config.state_file == "resgraph.state.json"
        assert config.edge_prefix == "edge"

    def test_file_in_current_directory(self, tmp_path, monkeypatch):
        (tmp_path / "resgraph.yml").write_text("max_workers: 8\nedge_prefix: rule\n")
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.max_workers == 8
        assert config.edge_prefix == "rule"

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yml"
        path.write_text("output_format: svg\nlog_level: debug\n")
        config = load_config(str(path))
        assert config.output_format == "svg"
        assert config.log_level == "DEBUG"

    def test_missing_explicit_path_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "nope.yml"))

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "resgraph.yml"
        path.write_text("")
        assert load_config(str(path)) == PlannerConfig()

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "resgraph.yml"
        path.write_text("- max_workers\n")
        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "resgraph.yml"
        path.write_text("max_workers: [1, 2\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(path))
        assert exc_info.value.context["path"] == str(path)

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "resgraph.yml"
        path.write_text("max_workers: 8\n")
        monkeypatch.setenv("RESGRAPH_MAX_WORKERS", "2")
        monkeypatch.setenv("RESGRAPH_STATE_FILE", "ci.state.json")
        config = load_config(str(path))
        assert config.max_workers == 2
        assert config.state_file == "ci.state.json"

    def test_cache_path_expands_home(self):
        config = PlannerConfig(cache_dir="~/cache")
        assert not config.cache_path.startswith("~")


class TestValidateSettings:
    """Tests for validate_settings() function."""

    def test_unknown_key_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings({"workers": 2}, "resgraph.yml")
        assert "workers" in str(exc_info.value)

    @pytest.mark.parametrize("value", ["many", 0, -1, None])
    def test_invalid_max_workers(self, value):
        with pytest.raises(ConfigurationError):
            validate_settings({"max_workers": value}, "resgraph.yml")

    def test_max_workers_coerced(self):
        assert validate_settings({"max_workers": "6"}, "environment") == {"max_workers": 6}

    def test_string_type_enforced(self):
        with pytest.raises(ConfigurationError):
            validate_settings({"state_file": 12}, "resgraph.yml")

    def test_unsupported_output_format(self):
        with pytest.raises(ConfigurationError):
            validate_settings({"output_format": "gif"}, "resgraph.yml")

    def test_unknown_log_level(self):
        with pytest.raises(ConfigurationError):
            validate_settings({"log_level": "chatty"}, "resgraph.yml")


class TestFindConfigFile:
    def test_finds_yaml_variant(self, tmp_path):
        (tmp_path / "resgraph.yaml").write_text("max_workers: 2\n")
        assert find_config_file(str(tmp_path)).endswith("resgraph.yaml")

    def test_none_when_absent(self, tmp_path):
        assert find_config_file(str(tmp_path)) is None
