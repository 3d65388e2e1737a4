"""Configuration management and validation service."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

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


PRICE_SOURCES = ["exchange", "coingecko"]

SCHEMA_TYPES = {
    "str": str,
    "int": int,
    "float": (int, float),
    "bool": bool,
    "list": list,
    "dict": dict,
}


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key

# Configuration schema definition
CONFIG_SCHEMA = {
    "database": {
        "type": "dict",
        "required": False,
        "properties": {
            "url": {"type": "str", "required": False},
        }
    },
    "scheduler": {
        "type": "dict",
        "required": False,
        "properties": {
            "default_check_interval_seconds": {"type": "int", "required": False, "min": 1},
            "lock_cleanup_interval_seconds": {"type": "int", "required": False, "min": 1},
        }
    },
    "locks": {
        "type": "dict",
        "required": False,
        "properties": {
            "ttl_seconds": {"type": "int", "required": False, "min": 1},
        }
    },
    "pricing": {
        "type": "dict",
        "required": False,
        "properties": {
            "primary_source": {"type": "str", "required": False, "options": PRICE_SOURCES},
            "fallback_source": {"type": "str", "required": False, "options": PRICE_SOURCES + ["none"]},
            "request_timeout_seconds": {"type": "float", "required": False, "min": 0.1},
        }
    },
    "exchange": {
        "type": "dict",
        "required": False,
        "properties": {
            "id": {"type": "str", "required": False},
            "api_key": {"type": "str", "required": False},
            "api_secret": {"type": "str", "required": False},
            "sandbox_mode": {"type": "bool", "required": False},
        }
    },
    "trading": {
        "type": "dict",
        "required": False,
        "properties": {
            "dry_run": {"type": "bool", "required": False},
            "preferred_stablecoin": {"type": "str", "required": False},
            "simulated_fee_rate": {"type": "float", "required": False, "min": 0, "max": 1},
        }
    },
    "email": {
        "type": "dict",
        "required": False,
        "properties": {
            "enabled": {"type": "bool", "required": False},
            "smtp_host": {"type": "str", "required": False},
            "smtp_port": {"type": "int", "required": False, "min": 1, "max": 65535},
            "smtp_user": {"type": "str", "required": False},
            "smtp_password": {"type": "str", "required": False},
            "from_address": {"type": "str", "required": False},
            "to_addresses": {"type": "list", "required": False},
            "use_tls": {"type": "bool", "required": False},
        }
    },
    "logging": {
        "type": "dict",
        "required": False,
        "properties": {
            "level": {"type": "str", "required": False, "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str", "required": False},
            "directory": {"type": "str", "required": False},
        }
    },
}


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses ROTATOR_CONFIG or
                config.yaml in the backend directory.
        """
        if config_path is None:
            backend_dir = Path(__file__).parent.parent.parent
            config_path = os.environ.get("ROTATOR_CONFIG", str(backend_dir / "config.yaml"))

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    @property
    def config(self) -> Dict[str, Any]:
        return self._config

    def load_and_validate(self) -> Dict[str, Any]:
        """Load config.yaml and check it against CONFIG_SCHEMA.

        A missing file is not an error: every setting has a default.

        Raises:
            ConfigValidationException: If the file is not valid YAML, is not a
                mapping, or breaks the schema.
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        config = self._read_file()
        errors = self._check_section(config, CONFIG_SCHEMA, "")
        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigValidationException([
                ConfigValidationError("", f"Config must be a mapping, got {type(config).__name__}")
            ])
        return config

    def _check_section(
        self,
        section: Dict[str, Any],
        properties: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Check one mapping: unknown keys, missing required keys, then each value."""
        errors = [
            ConfigValidationError(_join(path, key), f"Unknown configuration key '{key}'")
            for key in section if key not in properties
        ]

        for key, rule in properties.items():
            key_path = _join(path, key)
            if key in section:
                errors.extend(self._check_value(section[key], rule, key_path))
            elif rule.get("required", False):
                errors.append(ConfigValidationError(key_path, "Required field missing"))

        return errors

    def _check_value(self, value: Any, rule: Dict[str, Any], path: str) -> List[ConfigValidationError]:
        expected = rule.get("type")
        if expected not in SCHEMA_TYPES:
            return []

        # YAML booleans are ints to Python but never valid numbers here
        wrong_type = not isinstance(value, SCHEMA_TYPES[expected]) or (
            expected in ("int", "float") and isinstance(value, bool)
        )
        if wrong_type:
            return [ConfigValidationError(path, f"Expected {expected}, got {type(value).__name__}")]

        if expected == "dict":
            return self._check_section(value, rule.get("properties", {}), path)

        errors = []
        if "min" in rule and value < rule["min"]:
            errors.append(ConfigValidationError(path, f"Value {value} is below minimum {rule['min']}"))
        if "max" in rule and value > rule["max"]:
            errors.append(ConfigValidationError(path, f"Value {value} is above maximum {rule['max']}"))
        if "options" in rule and value not in rule["options"]:
            errors.append(ConfigValidationError(
                path, f"Value '{value}' not in allowed options: {rule['options']}"
            ))
        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "locks.ttl_seconds")
            default: Default value if not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value


@dataclass
class RotatorSettings:
    """Typed settings with defaults for everything config.yaml may omit."""
    database_url: Optional[str] = None
    default_check_interval_seconds: int = 300
    lock_cleanup_interval_seconds: int = 60
    lock_ttl_seconds: int = 300
    primary_price_source: str = "exchange"
    fallback_price_source: str = "coingecko"
    price_timeout_seconds: float = 10.0
    exchange_id: str = "mexc"
    api_key: str = ""
    api_secret: str = ""
    sandbox_mode: bool = False
    dry_run: bool = True
    preferred_stablecoin: str = "USDT"
    simulated_fee_rate: float = 0.001
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_directory: str = "logs"
    email: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, service: ConfigService) -> "RotatorSettings":
        defaults = cls()
        return cls(
            database_url=service.get("database.url", defaults.database_url),
            default_check_interval_seconds=service.get(
                "scheduler.default_check_interval_seconds", defaults.default_check_interval_seconds
            ),
            lock_cleanup_interval_seconds=service.get(
                "scheduler.lock_cleanup_interval_seconds", defaults.lock_cleanup_interval_seconds
            ),
            lock_ttl_seconds=service.get("locks.ttl_seconds", defaults.lock_ttl_seconds),
            primary_price_source=service.get("pricing.primary_source", defaults.primary_price_source),
            fallback_price_source=service.get("pricing.fallback_source", defaults.fallback_price_source),
            price_timeout_seconds=service.get("pricing.request_timeout_seconds", defaults.price_timeout_seconds),
            exchange_id=service.get("exchange.id", defaults.exchange_id),
            api_key=service.get("exchange.api_key", defaults.api_key),
            api_secret=service.get("exchange.api_secret", defaults.api_secret),
            sandbox_mode=service.get("exchange.sandbox_mode", defaults.sandbox_mode),
            dry_run=service.get("trading.dry_run", defaults.dry_run),
            preferred_stablecoin=service.get("trading.preferred_stablecoin", defaults.preferred_stablecoin),
            simulated_fee_rate=service.get("trading.simulated_fee_rate", defaults.simulated_fee_rate),
            log_level=service.get("logging.level", defaults.log_level),
            log_format=service.get("logging.format", defaults.log_format),
            log_directory=service.get("logging.directory", defaults.log_directory),
            email=service.get("email", {}) or {},
        )


def configure_logging(settings: RotatorSettings) -> None:
    """Apply the configured root log level and format."""
    logging.basicConfig(level=getattr(logging, settings.log_level), format=settings.log_format, force=True)


# Global config service instance
config_service = ConfigService()
