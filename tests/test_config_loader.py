"""
Unit tests for configuration loader functionality.

Tests configuration loading, template substitution, environment overrides,
project setup and validation.
"""

import json
from pathlib import Path

import pytest

from config.defaults import DEFAULT_SETTINGS, ENV_VAR_MAPPING, get_default_project_config
from config.loader import ConfigurationLoader
from core.errors import ConfigurationError
from core.models.config import ConsistencyConfig, GlobalSettings, ProjectConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep overrides from the surrounding shell out of the tests"""
    for env_var in ENV_VAR_MAPPING:
        monkeypatch.delenv(env_var, raising=False)


class TestConfigurationLoader:
    """Test ConfigurationLoader functionality"""

    def setup_method(self):
        self.loader = ConfigurationLoader()

    def test_loader_initialization(self):
        loader = ConfigurationLoader()

        assert isinstance(loader.global_settings, GlobalSettings)
        assert loader.config_cache == {}

    def test_load_project_config_new_project(self, tmp_path):
        project_path = tmp_path / "Shop Front"
        project_path.mkdir()

        config = self.loader.load_project_config(project_path)

        assert isinstance(config, ProjectConfig)
        assert config.name == "shop-front"
        assert config.path == project_path.resolve()
        assert config.documents_dir == project_path.resolve() / "docs" / "specs"
        assert config.watcher.debounce_ms == DEFAULT_SETTINGS["watcher"]["debounce_ms"]
        assert config.scheduler.capacity_limit == 1
        assert not config.is_initialized

    def test_load_project_config_existing(self, tmp_path):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({
            "name": "existing-project",
            "path": "/somewhere/else",
            "watcher": {"debounce_ms": 50},
            "arbiter": {"recency_tolerance_s": 1.5},
        }))

        config = self.loader.load_project_config(tmp_path)

        assert config.name == "existing-project"
        assert config.path == tmp_path.resolve()
        assert config.watcher.debounce_ms == 50
        assert config.arbiter.recency_tolerance_s == 1.5
        assert config.router.failure_threshold == 3

    def test_load_is_cached(self, tmp_path):
        first = self.loader.load_project_config(tmp_path)
        assert self.loader.load_project_config(tmp_path) is first

        self.loader.clear_cache()
        assert self.loader.load_project_config(tmp_path) is not first

    def test_invalid_json_raises(self, tmp_path):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text("{ not json")

        with pytest.raises(ConfigurationError) as exc_info:
            self.loader.load_project_config(tmp_path)
        assert exc_info.value.code == "CONFIGURATION_ERROR"

    def test_invalid_values_raise(self, tmp_path):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({
            "consistency": {"category_weight": 0.9, "recency_weight": 0.3}
        }))

        with pytest.raises(ConfigurationError):
            self.loader.load_project_config(tmp_path)

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            self.loader.load_project_config(tmp_path / "missing")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SPECFLOW_DEBOUNCE_MS", "120")
        monkeypatch.setenv("SPECFLOW_AUTO_REPAIR_THRESHOLD", "0.75")
        monkeypatch.setenv("SPECFLOW_DOCUMENTS_DIR", "specs")

        config = self.loader.load_project_config(tmp_path)

        assert config.watcher.debounce_ms == 120
        assert config.consistency.auto_repair_threshold == 0.75
        assert config.documents_dir == tmp_path.resolve() / "specs"

    def test_env_overrides_apply_to_existing_config(self, tmp_path, monkeypatch):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({"scheduler": {"capacity_limit": 2}}))
        monkeypatch.setenv("SPECFLOW_CAPACITY_LIMIT", "4")

        config = self.loader.load_project_config(tmp_path)

        assert config.scheduler.capacity_limit == 4

    def test_convert_env_value(self):
        assert self.loader._convert_env_value("true") is True
        assert self.loader._convert_env_value("Off") is False
        assert self.loader._convert_env_value("1") == 1
        assert self.loader._convert_env_value("0.5") == 0.5
        assert self.loader._convert_env_value("docs/specs") == "docs/specs"
        assert self.loader._convert_env_value("*.tmp, *.bak,", as_list=True) == ["*.tmp", "*.bak"]

    def test_list_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SPECFLOW_EXCLUDE_PATTERNS", "*.tmp,*/drafts/*")

        config = self.loader.load_project_config(tmp_path)

        assert config.watcher.exclude_patterns == ["*.tmp", "*/drafts/*"]

    def test_config_must_be_object(self, tmp_path):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text("[1, 2]")

        with pytest.raises(ConfigurationError) as exc_info:
            self.loader.load_project_config(tmp_path)
        assert "JSON object" in exc_info.value.message

    @pytest.mark.parametrize("paths", [
        {"state_dir": "docs/specs"},
        {"backups_dir": "docs/specs/backups"},
    ])
    def test_overlapping_layout_raises(self, tmp_path, paths):
        config_dir = tmp_path / ".specflow"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({"paths": paths}))

        with pytest.raises(ConfigurationError):
            self.loader.load_project_config(tmp_path)
        assert self.loader.config_cache == {}

    def test_template_substitution(self):
        data = {"name": "${project_name}", "nested": ["${project_path}", 3]}

        result = self.loader._substitute_template_vars(
            data, {"project_name": "demo", "project_path": "/p"}
        )

        assert result == {"name": "demo", "nested": ["/p", 3]}

    def test_setup_project(self, tmp_path):
        config = self.loader.setup_project(tmp_path, "demo")

        assert config.is_initialized
        assert config.documents_dir.is_dir()
        assert config.state_dir.is_dir()
        assert config.backups_dir.is_dir()

        saved = json.loads(config.get_config_file().read_text())
        assert saved["name"] == "demo"
        assert saved["path"] == str(tmp_path.resolve())

    def test_setup_project_keeps_existing(self, tmp_path):
        self.loader.setup_project(tmp_path, "demo")
        config_file = tmp_path / ".specflow" / "config.json"
        config_file.write_text(json.dumps({"name": "renamed"}))

        loader = ConfigurationLoader()
        config = loader.setup_project(tmp_path, "demo")

        assert config.name == "renamed"

    def test_saved_config_round_trips(self, tmp_path):
        config = self.loader.setup_project(tmp_path, "demo")

        reloaded = ConfigurationLoader().load_project_config(tmp_path)

        assert reloaded.to_dict() == config.to_dict()


class TestDefaults:
    """Test default configuration values"""

    def test_default_template_is_independent(self):
        first = get_default_project_config()
        first["watcher"]["exclude_patterns"].append("*.bak")
        first["arbiter"]["precedence_rules"]["status"].append("cancelled")

        second = get_default_project_config()
        assert "*.bak" not in second["watcher"]["exclude_patterns"]
        assert second["arbiter"]["precedence_rules"]["status"] == ["complete", "done"]

    def test_consistency_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            ConsistencyConfig(category_weight=0.5, recency_weight=0.3)

    def test_project_config_rejects_missing_path(self, tmp_path):
        with pytest.raises(ValueError):
            ProjectConfig(name="demo", path=Path(tmp_path / "nope"))

    def test_env_mapping_targets_known_sections(self):
        sections = set(get_default_project_config())
        for config_path in ENV_VAR_MAPPING.values():
            assert config_path.split(".")[0] in sections
