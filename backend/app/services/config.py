"""Configuration loading and validation for the P&L ledger service."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


CONFIG_SCHEMA = {
    "prices": {
        "type": "dict",
        "properties": {
            "exchanges": {"type": "list", "items": "str"},
            "quote_currencies": {"type": "list", "items": "str"},
            "cache_ttl_seconds": {"type": "int", "min": 0},
        }
    },
    "pnl": {
        "type": "dict",
        "properties": {
            "week_start": {"type": "str", "options": ["sunday", "monday"]},
        }
    },
    "logging": {
        "type": "dict",
        "properties": {
            "level": {"type": "str", "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str"},
        }
    },
}

_TYPE_MAP = {
    "str": str,
    "int": int,
    "float": (int, float),
    "bool": bool,
    "list": list,
    "dict": dict,
}


def default_config_path() -> str:
    """Config path from PNL_CONFIG, else config.yaml next to the backend directory."""
    env_path = os.environ.get("PNL_CONFIG")
    if env_path:
        return env_path
    backend_dir = Path(__file__).parent.parent.parent
    return str(backend_dir / "config.yaml")


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        self.config_path = config_path or default_config_path()
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        A missing file is not an error: the service runs on defaults.

        Returns:
            Validated configuration dictionary.

        Raises:
            ConfigValidationException: If the file is malformed or invalid.
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([
                ConfigValidationError(path="", message=f"Invalid YAML syntax: {e}")
            ])

        if config is None:
            config = {}

        if not isinstance(config, dict):
            raise ConfigValidationException([
                ConfigValidationError(
                    path="",
                    message=f"Config must be a dictionary, got {type(config).__name__}"
                )
            ])

        errors = self._validate_dict(config, CONFIG_SCHEMA, "")
        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def _validate_dict(
        self,
        data: Dict[str, Any],
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a dictionary against schema, reporting every problem found."""
        errors = []

        for key in data:
            if key not in schema:
                errors.append(ConfigValidationError(
                    path=f"{path}.{key}" if path else key,
                    message=f"Unknown configuration key '{key}'"
                ))

        for key, prop_schema in schema.items():
            current_path = f"{path}.{key}" if path else key
            if key not in data:
                if prop_schema.get("required", False):
                    errors.append(ConfigValidationError(path=current_path, message="Required field missing"))
                continue
            errors.extend(self._validate_value(data[key], prop_schema, current_path))

        return errors

    def _validate_value(
        self,
        value: Any,
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a single value against its schema entry."""
        expected_type = schema.get("type")
        expected = _TYPE_MAP.get(expected_type)

        # bool is an int subclass; reject it for numeric fields
        is_bool_as_number = isinstance(value, bool) and expected_type in ("int", "float")
        if expected is None or not isinstance(value, expected) or is_bool_as_number:
            return [ConfigValidationError(
                path=path,
                message=f"Expected {expected_type}, got {type(value).__name__}"
            )]

        errors = []

        if expected_type == "dict" and "properties" in schema:
            errors.extend(self._validate_dict(value, schema["properties"], path))

        if expected_type == "list" and "items" in schema:
            item_type = _TYPE_MAP[schema["items"]]
            for index, item in enumerate(value):
                if not isinstance(item, item_type):
                    errors.append(ConfigValidationError(
                        path=f"{path}[{index}]",
                        message=f"Expected {schema['items']}, got {type(item).__name__}"
                    ))

        if expected_type in ("int", "float"):
            if "min" in schema and value < schema["min"]:
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Value {value} is below minimum {schema['min']}"
                ))
            if "max" in schema and value > schema["max"]:
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Value {value} is above maximum {schema['max']}"
                ))

        if "options" in schema and value not in schema["options"]:
            errors.append(ConfigValidationError(
                path=path,
                message=f"Value '{value}' not in allowed options: {schema['options']}"
            ))

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "prices.cache_ttl_seconds")
            default: Default value if not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value


def setup_logging(config: ConfigService) -> None:
    """Configure root logging from the ``logging`` config section."""
    logging.basicConfig(
        level=getattr(logging, config.get("logging.level", "INFO")),
        format=config.get("logging.format", "%(asctime)s %(levelname)-8s %(name)s  %(message)s"),
        force=True,
    )
    for name in ("sqlalchemy.engine", "aiosqlite", "ccxt"):
        logging.getLogger(name).setLevel(logging.WARNING)


# Global config service instance
config_service = ConfigService()
