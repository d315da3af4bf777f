"""Checks for station history settings before they are used.

Three levels are reported:

- errors: the settings cannot be built (bad YAML, a section that is not a
  mapping, a value outside its model range, unknown keys in strict mode)
- warnings: valid settings that are probably unintended
- info: notes about non-default merge behaviour
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from ...models.app_configuration import AppConfiguration
from ...models.session import MAX_SESSIONS
from ...models.sensor import TIMESTAMP_FORMAT


class ConfigValidationError(Exception):
    """One blocking problem, located by a dotted settings path."""

    def __init__(self, message: str, path: str = "", details: Optional[Dict] = None):
        self.message = message
        self.path = path
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        location = f" at '{self.path}'" if self.path else ""
        return f"Config validation error{location}: {self.message}"


@dataclass
class ValidationResult:
    """Errors, warnings and notes collected for one settings document."""

    errors: List[ConfigValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    info: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, error: ConfigValidationError) -> None:
        self.errors.append(error)

    def add_warning(self, message: str, path: str = "") -> None:
        self.warnings.append(f"Warning at '{path}': {message}" if path else f"Warning: {message}")

    def add_info(self, message: str) -> None:
        self.info.append(message)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "info_count": len(self.info),
            "errors": [str(error) for error in self.errors],
            "warnings": list(self.warnings),
            "info": list(self.info)
        }

    def print_results(self, verbose: bool = True) -> None:
        """Console report; warnings and notes only when verbose."""
        status = "passed" if self.is_valid else "failed"
        print(f"{'✓' if self.is_valid else '✗'} Configuration validation {status}")

        sections = [("Errors", [str(e) for e in self.errors])]
        if verbose:
            sections += [("Warnings", self.warnings), ("Info", self.info)]

        for title, lines in sections:
            if not lines:
                continue
            print(f"\n{title} ({len(lines)}):")
            for line in lines:
                print(f"  • {line}")


@dataclass(frozen=True)
class _Advisory:
    path: str
    applies: Callable[[AppConfiguration], bool]
    message: Callable[[AppConfiguration], str]


# Valid but suspicious combinations, reported as warnings
ADVISORIES = (
    _Advisory(
        "storage.max_sessions",
        lambda c: c.storage.max_sessions > MAX_SESSIONS * 10,
        lambda c: f"Large session cap ({c.storage.max_sessions}) makes index rewrites slower"
    ),
    _Advisory(
        "aggregation",
        lambda c: c.aggregation.skip_zero_fresh and not c.aggregation.skip_zero_history,
        lambda c: "Fresh zeros are skipped while persisted zeros are kept"
    ),
    _Advisory(
        "aggregation.timestamp_format",
        lambda c: c.aggregation.timestamp_format != TIMESTAMP_FORMAT,
        lambda c: (f"Non-default timestamp format {c.aggregation.timestamp_format!r}; "
                   "stored sessions may no longer parse")
    ),
    _Advisory(
        "aggregation.max_workers",
        lambda c: c.aggregation.max_workers > 16,
        lambda c: f"Many statistics workers ({c.aggregation.max_workers}) rarely help"
    ),
    _Advisory(
        "aggregation.trend_threshold",
        lambda c: c.aggregation.trend_threshold > 1.0,
        lambda c: (f"High trend threshold ({c.aggregation.trend_threshold}) "
                   "classifies most series as stable")
    ),
)


class ConfigValidator:
    """Validates a parsed settings mapping against ``AppConfiguration``."""

    KNOWN_KEYS = {"storage", "aggregation", "enable_debug_logging"}
    SECTIONS = ("storage", "aggregation")

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode

    def validate_config(self, config_data: Any) -> ValidationResult:
        result = ValidationResult()

        if config_data is None:
            config_data = {}
        if not isinstance(config_data, dict):
            result.add_error(ConfigValidationError(
                f"Configuration must be a mapping, got {type(config_data).__name__}"
            ))
            return result

        unknown = sorted(set(config_data) - self.KNOWN_KEYS)
        if unknown and self.strict_mode:
            for key in unknown:
                result.add_error(ConfigValidationError(f"Unknown configuration key: {key}", path=key))
        elif unknown:
            result.add_warning(f"Unknown configuration keys (will be ignored): {', '.join(unknown)}")

        for section in self.SECTIONS:
            if section in config_data and not isinstance(config_data[section], dict):
                result.add_error(ConfigValidationError("Section must be a mapping", path=section))

        if not result.is_valid:
            return result

        try:
            config = AppConfiguration(**{
                key: value for key, value in config_data.items() if key in self.KNOWN_KEYS
            })
        except ValidationError as e:
            for error in e.errors():
                result.add_error(ConfigValidationError(
                    error['msg'],
                    path=".".join(str(part) for part in error['loc']),
                    details={"type": error['type'], "input": error.get('input')}
                ))
            return result

        for advisory in ADVISORIES:
            if advisory.applies(config):
                result.add_warning(advisory.message(config), path=advisory.path)

        if not config.aggregation.is_historical_behaviour:
            result.add_info("Aggregation merge switches differ from the historical defaults")

        return result

    def validate_yaml_file(self, file_path: Union[str, Path]) -> ValidationResult:
        file_path = Path(file_path)
        if not file_path.is_file():
            result = ValidationResult()
            result.add_error(ConfigValidationError(f"Configuration file does not exist: {file_path}"))
            return result

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            result = ValidationResult()
            result.add_error(ConfigValidationError(f"Cannot read {file_path}: {e}"))
            return result

        return self.validate_config(config_data)


def validate_config_dict(config_data: Dict[str, Any], strict: bool = False) -> ValidationResult:
    return ConfigValidator(strict_mode=strict).validate_config(config_data)


def validate_config_file(file_path: Union[str, Path], strict: bool = False) -> ValidationResult:
    return ConfigValidator(strict_mode=strict).validate_yaml_file(file_path)


def create_config_schema() -> Dict[str, Any]:
    """JSON Schema of the settings document."""
    return AppConfiguration.model_json_schema()


def generate_example_config() -> Dict[str, Any]:
    """Default settings as a plain mapping."""
    return AppConfiguration().export_dict()
