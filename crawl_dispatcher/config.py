"""
Configuration management for the crawl dispatcher.
"""

import os
import json
import threading
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path

from jsonschema import validate
from jsonschema import ValidationError as SchemaValidationError

from crawl_dispatcher.utils.errors import ConfigurationError
from crawl_dispatcher.utils.logging import get_logger


logger = get_logger(__name__)

DISPATCH_MODES = ("semaphore", "memory_adaptive")
MEMORY_SCOPES = ("system", "process")


@dataclass(frozen=True)
class DispatcherConfig:
    """
    Settings for one dispatch run.

    Frozen so it cannot change once a run has started; use ``override``
    to derive a variant from a base configuration.
    """
    max_concurrency: int = 10
    memory_threshold: float = 0.9
    check_interval: float = 1.0
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0

    dispatch_mode: str = "memory_adaptive"
    memory_scope: str = "system"
    server_error_factor: float = 1.5
    network_error_increment: float = 0.0
    rate_limit_codes: Tuple[int, ...] = (429,)
    task_timeout: Optional[float] = None
    memory_wait_timeout: Optional[float] = None
    shutdown_grace_period: Optional[float] = None

    def __post_init__(self):
        """Normalise and validate configuration after initialization."""
        # JSON documents deliver lists
        if not isinstance(self.rate_limit_codes, tuple):
            object.__setattr__(self, "rate_limit_codes", tuple(self.rate_limit_codes))
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        if not isinstance(self.max_concurrency, int) or self.max_concurrency < 1:
            errors.append("max_concurrency must be an integer >= 1")

        if not (0.0 < self.memory_threshold <= 1.0):
            errors.append("memory_threshold must be a fraction in (0, 1]")

        if self.check_interval <= 0:
            errors.append("check_interval must be > 0")

        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            errors.append("max_retries must be an integer >= 0")

        if self.base_delay < 0:
            errors.append("base_delay must be >= 0")

        if self.max_delay < self.base_delay:
            errors.append("max_delay must be >= base_delay")

        if self.backoff_factor < 1.0:
            errors.append("backoff_factor must be >= 1.0")

        if not (1.0 <= self.server_error_factor <= max(self.backoff_factor, 1.0)):
            errors.append("server_error_factor must be between 1.0 and backoff_factor")

        if self.network_error_increment < 0:
            errors.append("network_error_increment must be >= 0")

        if self.dispatch_mode not in DISPATCH_MODES:
            errors.append(f"dispatch_mode must be one of {', '.join(DISPATCH_MODES)}")

        if self.memory_scope not in MEMORY_SCOPES:
            errors.append(f"memory_scope must be one of {', '.join(MEMORY_SCOPES)}")

        if not self.rate_limit_codes or any(not (100 <= code <= 599) for code in self.rate_limit_codes):
            errors.append("rate_limit_codes must be a non-empty list of HTTP status codes")

        for name in ("task_timeout", "memory_wait_timeout", "shutdown_grace_period"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                errors.append(f"{name} must be > 0 or null")

        if errors:
            raise ConfigurationError(
                "Dispatcher configuration validation failed",
                {"errors": errors}
            )

    def override(self, **changes: Any) -> "DispatcherConfig":
        """Return a validated copy with the given fields replaced."""
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(
                "Unknown configuration fields",
                {"errors": [f"unknown field: {name}" for name in sorted(unknown)]}
            )
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["rate_limit_codes"] = list(self.rate_limit_codes)
        return data


@dataclass
class SystemConfig:
    """Top-level configuration document."""
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None


_OPTIONAL_POSITIVE = {"type": ["number", "null"], "exclusiveMinimum": 0}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "dispatcher": {
            "type": "object",
            "properties": {
                "max_concurrency": {"type": "integer", "minimum": 1, "maximum": 1000},
                "memory_threshold": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
                "check_interval": {"type": "number", "exclusiveMinimum": 0},
                "max_retries": {"type": "integer", "minimum": 0, "maximum": 100},
                "base_delay": {"type": "number", "minimum": 0},
                "max_delay": {"type": "number", "minimum": 0},
                "backoff_factor": {"type": "number", "minimum": 1},
                "dispatch_mode": {"type": "string", "enum": list(DISPATCH_MODES)},
                "memory_scope": {"type": "string", "enum": list(MEMORY_SCOPES)},
                "server_error_factor": {"type": "number", "minimum": 1},
                "network_error_increment": {"type": "number", "minimum": 0},
                "rate_limit_codes": {
                    "type": "array",
                    "items": {"type": "integer", "minimum": 100, "maximum": 599},
                    "minItems": 1
                },
                "task_timeout": _OPTIONAL_POSITIVE,
                "memory_wait_timeout": _OPTIONAL_POSITIVE,
                "shutdown_grace_period": _OPTIONAL_POSITIVE
            },
            "additionalProperties": False
        },
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        },
        "log_file": {"type": ["string", "null"]}
    },
    "additionalProperties": False
}

# Environment variable -> (field, parser)
ENV_PREFIX = "CRAWL_DISPATCHER_"
ENV_OVERRIDES = {
    "MAX_CONCURRENCY": ("max_concurrency", int),
    "MEMORY_THRESHOLD": ("memory_threshold", float),
    "CHECK_INTERVAL": ("check_interval", float),
    "MAX_RETRIES": ("max_retries", int),
    "BASE_DELAY": ("base_delay", float),
    "MAX_DELAY": ("max_delay", float),
    "BACKOFF_FACTOR": ("backoff_factor", float),
    "TASK_TIMEOUT": ("task_timeout", float),
    "DISPATCH_MODE": ("dispatch_mode", str),
}


class ConfigManager:
    """Configuration manager with schema validation and environment overrides."""

    def __init__(self, config_path: str = "crawl_dispatcher.json", env_file: str = ".env"):
        self.config_path = Path(config_path)
        self.env_file = Path(env_file)
        self._config: Optional[SystemConfig] = None
        self._last_modified: Optional[float] = None
        self._lock = threading.RLock()

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except SchemaValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"errors": [e.message], "path": list(e.absolute_path)}
            )

    def load_config(self) -> SystemConfig:
        """Load configuration from file or environment variables."""
        with self._lock:
            if self.config_path.exists():
                current_modified = self.config_path.stat().st_mtime
                if self._config is None or current_modified != self._last_modified:
                    self._load_from_file()
                    self._last_modified = current_modified
            elif self._config is None:
                self._config = self._apply_env_overrides(SystemConfig())
                logger.info("Configuration loaded from defaults and environment variables")

            return self._config

    def reload_if_changed(self) -> bool:
        """Check if config file has changed and reload if necessary."""
        with self._lock:
            if not self.config_path.exists():
                return False

            if self.config_path.stat().st_mtime != self._last_modified:
                self.load_config()
                return True
            return False

    def _load_from_file(self) -> None:
        """Load configuration from JSON file with validation."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to read configuration file {self.config_path}: {e}",
                {"path": str(self.config_path)}
            )

        self.validate_config(config_data)
        config = self._dict_to_config(config_data)
        self._config = self._apply_env_overrides(config)

        logger.info(f"Configuration loaded and validated from {self.config_path}")

    def _dict_to_config(self, data: Dict[str, Any]) -> SystemConfig:
        """Convert dictionary to SystemConfig object."""
        config = SystemConfig()

        if "dispatcher" in data:
            config.dispatcher = DispatcherConfig(**data["dispatcher"])

        config.log_level = data.get("log_level", config.log_level)
        config.log_file = data.get("log_file", config.log_file)

        return config

    def _load_env_file(self) -> None:
        """Load KEY=VALUE lines from the .env file into os.environ."""
        if not self.env_file.exists():
            return

        try:
            with open(self.env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        os.environ.setdefault(key.strip(), value.strip())
            logger.debug(f"Loaded environment variables from {self.env_file}")
        except OSError as e:
            logger.warning(f"Failed to load {self.env_file}: {e}")

    def _apply_env_overrides(self, config: SystemConfig) -> SystemConfig:
        """Override configuration with environment variables."""
        self._load_env_file()

        changes = {}
        for suffix, (name, parser) in ENV_OVERRIDES.items():
            raw = os.getenv(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                changes[name] = parser(raw)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX + suffix}: {raw!r}",
                    {"errors": [f"{name} could not be parsed from {raw!r}"]}
                )

        if changes:
            config.dispatcher = config.dispatcher.override(**changes)
            logger.info(f"Applied environment overrides: {', '.join(sorted(changes))}")

        log_level = os.getenv(ENV_PREFIX + "LOG_LEVEL")
        if log_level:
            config.log_level = log_level.upper()

        return config

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as dictionary."""
        with self._lock:
            if not self._config:
                return {}

            return {
                "dispatcher": self._config.dispatcher.to_dict(),
                "log_level": self._config.log_level,
                "log_file": self._config.log_file
            }

    def save_config(self, config_path: Optional[str] = None) -> None:
        """Save current configuration to file."""
        with self._lock:
            if not self._config:
                raise ConfigurationError("No configuration loaded to save")

            save_path = Path(config_path) if config_path else self.config_path
            config_dict = self.export_config()
            self.validate_config(config_dict)

            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logger.info(f"Configuration saved to {save_path}")


def load_config(config_path: str = "crawl_dispatcher.json") -> SystemConfig:
    """Load configuration from ``config_path`` (or defaults plus environment)."""
    return ConfigManager(config_path).load_config()
