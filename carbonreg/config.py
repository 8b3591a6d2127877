"""
Carbon Credit Registry Configuration

Configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (CARBONREG_*)
    2. Runtime overrides
    3. Config files (./carbonreg.yaml, ./config/carbonreg.yaml,
       ~/.carbonreg/config.yaml)
    4. Default values

Example carbonreg.yaml:

    registry:
      name: Carbon Credit
      symbol: CCR
      administrator: registry-admin
      start_paused: false
    observability:
      log_level: info
      log_format: json

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import yaml

from carbonreg.observability import RegistryLayer, get_logger

logger = get_logger("config", RegistryLayer.CONFIG)

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass
class RegistrySection:
    """Configuration for the registry aggregate."""
    name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Carbon Credit",
        env_var="CARBONREG_NAME",
        description="Registry display name",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    symbol: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="CCR",
        env_var="CARBONREG_SYMBOL",
        description="Registry ticker symbol",
        validator=lambda x: isinstance(x, str) and 0 < len(x) <= 16,
    ))
    administrator: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="admin",
        env_var="CARBONREG_ADMINISTRATOR",
        description="Identity allowed to verify, lock, pause and unpause",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    start_paused: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CARBONREG_START_PAUSED",
        description="Create the registry in the paused state",
        validator=lambda x: isinstance(x, bool),
    ))
    max_species_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=256,
        env_var="CARBONREG_MAX_SPECIES_LENGTH",
        description="Maximum length of the species attribute",
        validator=lambda x: isinstance(x, int) and 0 < x <= 4096,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CARBONREG_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CARBONREG_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RegistryConfig:
    """Root configuration."""
    registry: RegistrySection = field(default_factory=RegistrySection)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = RegistryConfig()
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> RegistryConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        self._apply_dict(data)
        logger.info("Configuration loaded", operation="load", path=str(path))

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("carbonreg.yaml"),
            Path("config/carbonreg.yaml"),
            Path.home() / ".carbonreg" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning(
                        "Skipping default configuration file",
                        operation="load_defaults",
                        path=str(path),
                        reason=str(e),
                    )

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """
        Apply dictionary values to configuration.

        Every key and value is checked before any is set, so a rejected
        document leaves the configuration unchanged.
        """
        pending: List[Tuple[ConfigValue, Any]] = []

        def collect(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    if attr.validator and not attr.validator(value):
                        raise ConfigValidationError(f"Invalid value for config {prefix}{key}: {value!r}")
                    pending.append((attr, value))
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    collect(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Expected a mapping for section: {prefix}{key}")

        collect(self._config, data, "")
        for attr, value in pending:
            attr.set(value)

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("registry.administrator", "ops")
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("observability.log_level")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values, including environment overrides.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ValueError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> RegistryConfig:
    """Get the current registry configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
