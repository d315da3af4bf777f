"""Settings for the station history store and the aggregation engine.

Settings are layered, later layers winning:

1. ``AppConfiguration`` defaults
2. the YAML file (``storage:``, ``aggregation:``, ``enable_debug_logging``)
3. ``AIRWATCH_*`` environment variables

Usage:
    from airwatch.lib.config import ConfigManager

    config = ConfigManager("airwatch.yaml").load_config()

    # Follow edits of the file; each valid reload reaches the callback
    with ConfigManager("airwatch.yaml", hot_reload=True) as manager:
        manager.on_config_changed = aggregator_settings_changed
        config = manager.load_config()
"""

import os
import time
from pathlib import Path
from threading import Event, Thread
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import structlog
import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ...models.app_configuration import AppConfiguration
from .validation import ConfigValidator, ValidationResult


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "airwatch.yaml"
ENV_PREFIX = "AIRWATCH_"
RELOAD_SETTLE_SECONDS = 0.1


class ConfigurationError(Exception):
    """Raised when settings cannot be read, parsed or validated."""
    pass


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('true', '1', 'yes', 'on')


# Variable suffix -> (section, field, converter); top-level fields have no section
ENV_OVERRIDES: Dict[str, Tuple[Optional[str], str, Callable[[str], Any]]] = {
    "STORAGE_DIR": ("storage", "storage_dir", str),
    "MAX_SESSIONS": ("storage", "max_sessions", int),
    "DEDUPLICATE": ("aggregation", "deduplicate", _parse_bool),
    "MAX_WORKERS": ("aggregation", "max_workers", int),
    "TREND_THRESHOLD": ("aggregation", "trend_threshold", float),
    "DEBUG": (None, "enable_debug_logging", _parse_bool),
}


def environment_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect ``AIRWATCH_*`` variables into a nested override mapping."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for suffix, (section, field, convert) in ENV_OVERRIDES.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        try:
            value = convert(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}")

        target = overrides.setdefault(section, {}) if section else overrides
        target[field] = value

    return overrides


def merge_sections(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay ``override`` on ``base``, merging the settings sections key by key."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Parse a YAML settings file; an empty file yields an empty mapping."""
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML parsing error in {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Error reading config file {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def write_config_file(config: AppConfiguration, path: Union[str, Path]) -> None:
    """Write settings as commented YAML, creating parent directories."""
    path = Path(path)
    header = (
        "# Station History Configuration\n"
        "#\n"
        "# storage.storage_dir: directory holding history_index.json and session files\n"
        "# storage.max_sessions: sessions kept before the oldest is evicted\n"
        "# aggregation.deduplicate: count a reading once when stored and fetched\n"
        "# aggregation.skip_zero_*: drop exact zero readings of that source\n"
        f"# Override any of these with {ENV_PREFIX}* environment variables.\n"
        "\n"
    )
    body = yaml.safe_dump(
        config.export_dict(),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True
    )

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(header + body)
    except OSError as e:
        raise ConfigurationError(f"Error writing config file {path}: {e}")


class ConfigChangeHandler(FileSystemEventHandler):
    """Requests a reload when the watched settings file is written or replaced."""

    def __init__(self, config_manager: 'ConfigManager'):
        super().__init__()
        self.config_manager = config_manager

    def _matches(self, path: Union[str, bytes]) -> bool:
        return Path(os.fsdecode(path)) == self.config_manager.config_path

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.config_manager.request_reload()

    def on_created(self, event):
        self.on_modified(event)

    def on_moved(self, event):
        if not event.is_directory and self._matches(event.dest_path):
            self.config_manager.request_reload()


class ConfigManager:
    """Builds ``AppConfiguration`` from a YAML file and the environment."""

    def __init__(
        self,
        config_path: Union[str, Path],
        validate: bool = True,
        strict_validation: bool = False,
        hot_reload: bool = False,
        create_if_missing: bool = False
    ):
        self.config_path = Path(config_path)
        self.validate = validate
        self.strict_validation = strict_validation

        self.config: Optional[AppConfiguration] = None
        self.validation: Optional[ValidationResult] = None

        self.on_config_changed: Optional[Callable[[AppConfiguration], None]] = None
        self.on_config_error: Optional[Callable[[Exception], None]] = None
        self.on_validation_warning: Optional[Callable[[ValidationResult], None]] = None

        self._observer: Optional[Observer] = None
        self._reload_thread: Optional[Thread] = None
        self._reload_requested = Event()
        self._stopping = Event()

        if create_if_missing and not self.config_path.exists():
            write_config_file(AppConfiguration(), self.config_path)
            logger.info("Created default configuration", config_path=str(self.config_path))

        if hot_reload:
            self.start_watching()

    def load_config(self) -> AppConfiguration:
        """Read the file, apply environment overrides and validate."""
        try:
            config = self.build(read_config_file(self.config_path))
        except ConfigurationError as e:
            if self.on_config_error:
                self.on_config_error(e)
            raise

        self.config = config
        return config

    def build(self, file_data: Dict[str, Any]) -> AppConfiguration:
        """Settings from already parsed file data plus the environment.

        Keys outside ``storage``, ``aggregation`` and ``enable_debug_logging``
        are reported by the validator and otherwise ignored.
        """
        data = merge_sections(file_data, environment_overrides())

        if self.validate:
            result = ConfigValidator(strict_mode=self.strict_validation).validate_config(data)
            self.validation = result
            if not result.is_valid:
                raise ConfigurationError(f"Configuration validation failed: {result.errors[0]}")
            if result.warnings and self.on_validation_warning:
                self.on_validation_warning(result)

        known = {key: value for key, value in data.items() if key in ConfigValidator.KNOWN_KEYS}
        try:
            return AppConfiguration(**known)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def save_config(self, config: AppConfiguration) -> None:
        write_config_file(config, self.config_path)
        self.config = config

    # Hot reload ------------------------------------------------------------

    def start_watching(self) -> None:
        """Reload on every change of the file until ``shutdown()``."""
        if self._observer is not None:
            return
        if not self.config_path.parent.is_dir():
            logger.warning("Configuration directory missing, not watching",
                          config_path=str(self.config_path))
            return

        self._stopping.clear()
        self._observer = Observer()
        self._observer.schedule(ConfigChangeHandler(self),
                                str(self.config_path.parent),
                                recursive=False)
        self._observer.start()

        self._reload_thread = Thread(target=self._reload_loop, name="config-reload", daemon=True)
        self._reload_thread.start()
        logger.debug("Watching configuration file", config_path=str(self.config_path))

    def request_reload(self) -> None:
        self._reload_requested.set()

    def _reload_loop(self) -> None:
        while not self._stopping.is_set():
            if not self._reload_requested.wait(timeout=0.5):
                continue
            self._reload_requested.clear()
            time.sleep(RELOAD_SETTLE_SECONDS)

            try:
                config = self.load_config()
            except ConfigurationError as e:
                logger.warning("Configuration reload rejected, keeping previous settings",
                              config_path=str(self.config_path),
                              error=str(e))
                continue

            logger.info("Configuration reloaded", config_path=str(self.config_path))
            if self.on_config_changed:
                self.on_config_changed(config)

    def shutdown(self) -> None:
        """Stop watching the file."""
        self._stopping.set()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        if self._reload_thread is not None:
            self._reload_thread.join(timeout=5.0)
            self._reload_thread = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def load_default_configuration() -> AppConfiguration:
    """Defaults with environment overrides applied."""
    return ConfigManager(DEFAULT_CONFIG_PATH).build({})


def load_config_from_file(
    config_path: Union[str, Path],
    validate: bool = True
) -> AppConfiguration:
    return ConfigManager(config_path, validate=validate).load_config()


def save_config_to_file(
    config: AppConfiguration,
    config_path: Union[str, Path]
) -> None:
    write_config_file(config, config_path)


def create_default_config_file(config_path: Union[str, Path]) -> None:
    """Write default settings unless the file already exists."""
    ConfigManager(config_path, validate=False, create_if_missing=True)
