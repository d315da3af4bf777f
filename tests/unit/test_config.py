"""Unit tests for configuration management."""

import pytest
import yaml
from watchdog.events import FileModifiedEvent, FileMovedEvent

from airwatch.lib.config import (
    ConfigChangeHandler,
    ConfigManager,
    ConfigurationError,
    load_config_from_file,
    load_default_configuration,
    save_config_to_file,
    create_default_config_file,
    environment_overrides,
    merge_sections,
)
from airwatch.lib.config.validation import (
    ConfigValidator,
    validate_config_dict,
    validate_config_file,
    create_config_schema,
    generate_example_config,
)
from airwatch.models import AppConfiguration


def write_yaml(path, data):
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f)
    return path


class TestConfigurationLoading:
    """Test configuration loading functionality."""

    def test_load_default_configuration(self):
        """Test loading default configuration."""
        config = load_default_configuration()

        assert isinstance(config, AppConfiguration)
        assert config.storage.max_sessions == 100
        assert config.aggregation.deduplicate is False

    def test_load_configuration_from_file(self, tmp_path):
        """Test loading configuration from a file."""
        path = write_yaml(tmp_path / "airwatch.yaml", {
            "storage": {"storage_dir": "/var/lib/airwatch", "max_sessions": 20},
            "aggregation": {"deduplicate": True},
            "enable_debug_logging": True
        })

        config = load_config_from_file(path)

        assert config.storage.storage_dir == "/var/lib/airwatch"
        assert config.storage.max_sessions == 20
        assert config.aggregation.deduplicate is True
        assert config.aggregation.trend_threshold == 0.01
        assert config.enable_debug_logging is True

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "airwatch.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config_from_file(path) == AppConfiguration()

    def test_load_configuration_file_not_found(self, tmp_path):
        """Test loading configuration when file doesn't exist."""
        with pytest.raises(ConfigurationError):
            load_config_from_file(tmp_path / "missing.yaml")

    def test_load_configuration_invalid_yaml(self, tmp_path):
        """Test loading configuration with invalid YAML."""
        path = tmp_path / "airwatch.yaml"
        path.write_text("storage: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_config_from_file(path)

    def test_load_configuration_invalid_value(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", {"storage": {"max_sessions": 0}})

        with pytest.raises(ConfigurationError, match="max_sessions"):
            load_config_from_file(path)

    def test_unknown_keys_ignored(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", {"api_port": 5002})
        warnings = []

        manager = ConfigManager(path)
        manager.on_validation_warning = warnings.append
        config = manager.load_config()

        assert config == AppConfiguration()
        assert len(warnings) == 1

    def test_unknown_keys_rejected_in_strict_mode(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", {"api_port": 5002})

        with pytest.raises(ConfigurationError):
            ConfigManager(path, strict_validation=True).load_config()

    def test_error_callback(self, tmp_path):
        errors = []
        manager = ConfigManager(tmp_path / "missing.yaml")
        manager.on_config_error = errors.append

        with pytest.raises(ConfigurationError):
            manager.load_config()

        assert len(errors) == 1


class TestEnvironmentOverrides:
    """Test AIRWATCH_ environment overrides."""

    def test_overrides_applied(self, tmp_path, monkeypatch):
        path = write_yaml(tmp_path / "airwatch.yaml", {"storage": {"max_sessions": 20}})
        monkeypatch.setenv("AIRWATCH_STORAGE_DIR", str(tmp_path / "h"))
        monkeypatch.setenv("AIRWATCH_MAX_SESSIONS", "5")
        monkeypatch.setenv("AIRWATCH_DEDUPLICATE", "yes")
        monkeypatch.setenv("AIRWATCH_TREND_THRESHOLD", "0.5")
        monkeypatch.setenv("AIRWATCH_DEBUG", "1")

        config = load_config_from_file(path)

        assert config.storage.storage_dir == str(tmp_path / "h")
        assert config.storage.max_sessions == 5
        assert config.aggregation.deduplicate is True
        assert config.aggregation.trend_threshold == 0.5
        assert config.enable_debug_logging is True

    def test_overrides_on_defaults(self, monkeypatch):
        monkeypatch.setenv("AIRWATCH_MAX_WORKERS", "2")

        assert load_default_configuration().aggregation.max_workers == 2

    def test_invalid_integer(self, tmp_path, monkeypatch):
        path = write_yaml(tmp_path / "airwatch.yaml", {})
        monkeypatch.setenv("AIRWATCH_MAX_SESSIONS", "many")

        with pytest.raises(ConfigurationError):
            load_config_from_file(path)


class TestConfigurationExport:
    """Test configuration export functionality."""

    def test_save_and_reload(self, tmp_path):
        """Test exporting configuration to file."""
        config = AppConfiguration(enable_debug_logging=True)
        config.aggregation.deduplicate = True
        path = tmp_path / "nested" / "airwatch.yaml"

        save_config_to_file(config, path)

        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()
        assert content.startswith("# Station History Configuration")
        assert "is_historical_behaviour" not in content
        assert load_config_from_file(path) == config

    def test_create_default_config_file(self, tmp_path):
        path = tmp_path / "airwatch.yaml"

        create_default_config_file(path)

        assert load_config_from_file(path) == AppConfiguration()

    def test_create_does_not_overwrite(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", {"enable_debug_logging": True})

        create_default_config_file(path)

        assert load_config_from_file(path).enable_debug_logging is True

    def test_build_from_parsed_data(self, tmp_path):
        manager = ConfigManager(tmp_path / "airwatch.yaml")

        config = manager.build({"aggregation": {"max_workers": 8}})

        assert config.aggregation.max_workers == 8
        assert config.storage.max_sessions == 100

    def test_build_invalid(self, tmp_path):
        manager = ConfigManager(tmp_path / "airwatch.yaml")

        with pytest.raises(ConfigurationError):
            manager.build({"aggregation": {"max_workers": 0}})

    def test_build_without_validation_still_rejects_bad_values(self, tmp_path):
        manager = ConfigManager(tmp_path / "airwatch.yaml", validate=False)

        with pytest.raises(ConfigurationError):
            manager.build({"storage": {"max_sessions": "many"}})

    def test_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "airwatch.yaml"
        path.write_text("- storage\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_config_from_file(path)


class TestLayering:
    """Test the defaults, file and environment layers."""

    def test_environment_overrides_nested(self):
        overrides = environment_overrides({
            "AIRWATCH_MAX_SESSIONS": "7",
            "AIRWATCH_DEDUPLICATE": "on",
            "AIRWATCH_DEBUG": "false",
            "UNRELATED": "1",
        })

        assert overrides == {
            "storage": {"max_sessions": 7},
            "aggregation": {"deduplicate": True},
            "enable_debug_logging": False,
        }

    def test_environment_invalid_number(self):
        with pytest.raises(ConfigurationError, match="AIRWATCH_TREND_THRESHOLD"):
            environment_overrides({"AIRWATCH_TREND_THRESHOLD": "steep"})

    def test_merge_sections_keeps_other_keys(self):
        merged = merge_sections(
            {"storage": {"storage_dir": "h", "max_sessions": 20}, "enable_debug_logging": True},
            {"storage": {"max_sessions": 5}}
        )

        assert merged == {
            "storage": {"storage_dir": "h", "max_sessions": 5},
            "enable_debug_logging": True,
        }

    def test_merge_sections_replaces_non_mapping(self):
        merged = merge_sections({"storage": "history"}, {"storage": {"max_sessions": 5}})
        assert merged == {"storage": {"max_sessions": 5}}


class TestConfigValidator:
    """Test configuration validation."""

    def test_example_config_is_valid(self):
        result = validate_config_dict(generate_example_config())

        assert result.is_valid
        assert result.errors == []

    def test_range_errors_have_paths(self):
        result = validate_config_dict({"aggregation": {"trend_threshold": -1}})

        assert not result.is_valid
        assert result.errors[0].path == "aggregation.trend_threshold"

    def test_section_must_be_mapping(self):
        result = validate_config_dict({"storage": "history"})

        assert not result.is_valid
        assert result.errors[0].path == "storage"

    def test_not_a_mapping(self):
        assert not ConfigValidator().validate_config(["storage"]).is_valid

    def test_warnings(self):
        result = validate_config_dict({
            "storage": {"max_sessions": 5000},
            "aggregation": {"skip_zero_fresh": True, "skip_zero_history": False}
        })

        assert result.is_valid
        assert len(result.warnings) == 2

    def test_warnings_carry_paths(self):
        result = validate_config_dict({"aggregation": {"max_workers": 32, "trend_threshold": 2.0}})

        assert result.is_valid
        assert any("'aggregation.max_workers'" in w for w in result.warnings)
        assert any("'aggregation.trend_threshold'" in w for w in result.warnings)

    def test_info_for_non_default_merge(self):
        assert validate_config_dict({}).info == []
        assert len(validate_config_dict({"aggregation": {"deduplicate": True}}).info) == 1

    def test_summary(self):
        summary = validate_config_dict({"unknown": 1}).get_summary()

        assert summary["valid"] is True
        assert summary["warning_count"] == 1

    def test_validate_missing_file(self, tmp_path):
        assert not validate_config_file(tmp_path / "missing.yaml").is_valid

    def test_validate_file(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", generate_example_config())
        assert validate_config_file(path).is_valid

    def test_schema(self):
        schema = create_config_schema()
        assert set(schema["properties"]) == {"storage", "aggregation", "enable_debug_logging"}


class TestHotReload:
    """Test file change handling."""

    def test_change_handler_requests_reload(self, tmp_path):
        path = write_yaml(tmp_path / "airwatch.yaml", {})
        manager = ConfigManager(path)
        handler = ConfigChangeHandler(manager)

        handler.on_modified(FileModifiedEvent(str(tmp_path / "other.yaml")))
        assert not manager._reload_requested.is_set()

        handler.on_modified(FileModifiedEvent(str(path)))
        assert manager._reload_requested.is_set()

    def test_replaced_file_requests_reload(self, tmp_path):
        """Editors that save through a temp file and rename are followed."""
        path = write_yaml(tmp_path / "airwatch.yaml", {})
        manager = ConfigManager(path)
        handler = ConfigChangeHandler(manager)

        handler.on_moved(FileMovedEvent(str(tmp_path / ".airwatch.yaml.swp"), str(path)))

        assert manager._reload_requested.is_set()

    def test_no_watch_without_directory(self, tmp_path):
        manager = ConfigManager(tmp_path / "missing" / "airwatch.yaml", hot_reload=True)

        assert manager._observer is None
        manager.shutdown()
