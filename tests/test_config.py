"""
Configuration tests: defaults, YAML files, environment overrides, validation
and schema export.
"""

import pytest
import yaml

from carbonreg.config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    ConfigValue,
    get_config,
    get_config_manager,
)


class TestConfigValue:

    def test_default_and_set(self):
        value = ConfigValue(default=3, validator=lambda x: x > 0)
        assert value.get() == 3
        value.set(5)
        assert value.get() == 5
        value.reset()
        assert value.get() == 3

    def test_validator_rejects(self):
        value = ConfigValue(default=3, validator=lambda x: x > 0)
        with pytest.raises(ConfigValidationError):
            value.set(0)
        assert value.get() == 3

    def test_env_wins(self, monkeypatch):
        value = ConfigValue(default=False, env_var="CARBONREG_TEST_FLAG")
        value.set(False)
        monkeypatch.setenv("CARBONREG_TEST_FLAG", "yes")
        assert value.get() is True


class TestConfigManager:

    def test_singleton(self):
        assert get_config_manager() is ConfigManager()
        assert get_config() is ConfigManager().config

    def test_reset(self):
        get_config_manager().set("registry.symbol", "XYZ")
        ConfigManager.reset()
        assert get_config_manager().get("registry.symbol") == "CCR"

    def test_defaults(self):
        data = get_config().to_dict()
        assert data == {
            "registry": {
                "name": "Carbon Credit",
                "symbol": "CCR",
                "administrator": "admin",
                "start_paused": False,
                "max_species_length": 256,
            },
            "observability": {
                "log_level": "info",
                "log_format": "json",
            },
        }

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "carbonreg.yaml"
        path.write_text(yaml.safe_dump({
            "registry": {"administrator": "ops", "start_paused": True},
            "observability": {"log_format": "text"},
        }))
        manager = get_config_manager()
        manager.load_from_file(path)
        assert manager.get("registry.administrator") == "ops"
        assert manager.get("registry.start_paused") is True
        assert manager.get("observability.log_format") == "text"
        assert manager.get("registry.symbol") == "CCR"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        get_config_manager().load_from_file(path)
        assert get_config_manager().get("registry.name") == "Carbon Credit"

    @pytest.mark.parametrize("content, message", [
        ("registry: [unclosed", "Invalid YAML"),
        ("- a\n- b\n", "must be a mapping"),
        ("registry:\n  colour: blue\n", "Unknown configuration key: registry.colour"),
        ("registry: ops\n", "Expected a mapping"),
    ])
    def test_bad_files(self, tmp_path, content, message):
        path = tmp_path / "bad.yaml"
        path.write_text(content)
        with pytest.raises(ConfigError, match=message):
            get_config_manager().load_from_file(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("observability:\n  log_level: loud\n")
        with pytest.raises(ConfigValidationError):
            get_config_manager().load_from_file(path)

    @pytest.mark.parametrize("content", [
        "registry:\n  administrator: mallory\n  bogus: 1\n",
        "registry:\n  administrator: mallory\nobservability:\n  log_level: loud\n",
        "registry:\n  administrator: mallory\nobservability: text\n",
    ])
    def test_rejected_file_changes_nothing(self, tmp_path, content):
        path = tmp_path / "bad.yaml"
        path.write_text(content)
        manager = get_config_manager()
        with pytest.raises(ConfigError):
            manager.load_from_file(path)
        assert manager.get("registry.administrator") == "admin"
        assert manager.get("observability.log_level") == "info"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_load_defaults_skips_broken_files(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / "carbonreg.yaml").write_text("registry: [")
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "carbonreg.yaml").write_text("registry:\n  symbol: CFG\n")

        manager = get_config_manager()
        manager.load_defaults()
        assert manager.get("registry.symbol") == "CFG"

    def test_invalid_paths(self):
        manager = get_config_manager()
        with pytest.raises(ConfigError):
            manager.get("registry.colour")
        with pytest.raises(ConfigError):
            manager.set("registry", "x")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CARBONREG_ADMINISTRATOR", "env-admin")
        monkeypatch.setenv("CARBONREG_MAX_SPECIES_LENGTH", "64")
        manager = get_config_manager()
        manager.set("registry.administrator", "file-admin")
        assert manager.get("registry.administrator") == "env-admin"
        assert manager.get("registry.max_species_length") == 64

    def test_validate_reports_bad_environment(self, monkeypatch):
        monkeypatch.setenv("CARBONREG_LOG_LEVEL", "loud")
        monkeypatch.setenv("CARBONREG_MAX_SPECIES_LENGTH", "many")
        errors = get_config_manager().validate()
        assert len(errors) == 2
        assert any(e.startswith("observability.log_level") for e in errors)
        assert any(e.startswith("registry.max_species_length") for e in errors)

    def test_validate_clean(self):
        assert get_config_manager().validate() == []

    def test_export_schema(self):
        schema = get_config_manager().export_schema()
        admin = schema["properties"]["registry"]["administrator"]
        assert admin["type"] == "str"
        assert admin["default"] == "admin"
        assert admin["env_var"] == "CARBONREG_ADMINISTRATOR"
