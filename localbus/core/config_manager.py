"""
Configuration management for LocalBus.

Handles loading, validation, and access to configuration settings: the
namespace, logging, the client retry policy, authorization rules, and the
queues/topics/subscriptions to provision at start-up.
"""

import os
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from localbus.auth.rules import AccessRights
from localbus.servicebus.constants import DEFAULT_NAMESPACE, DEVELOPMENT_SHARED_ACCESS_KEY
from localbus.servicebus.models import (
    CorrelationRuleFilter,
    QueueProperties,
    RuleProperties,
    SqlRuleAction,
    SqlRuleFilter,
    SubscriptionProperties,
    TopicProperties,
    TrueRuleFilter,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "LOCALBUS_"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "json"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'localbus.servicebus.backend': 'DEBUG'}"
    )

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class RetryConfig(BaseModel):
    """Client retry policy for transient errors."""
    total: int = Field(default=3, ge=0)
    backoff_factor: float = Field(default=0.8, ge=0.0)
    backoff_max: float = Field(default=120.0, ge=0.0)


class NamespaceConfig(BaseModel):
    """The in-memory namespace and its root key."""
    name: str = DEFAULT_NAMESPACE
    shared_access_key: str = DEVELOPMENT_SHARED_ACCESS_KEY


class AuthorizationRuleConfig(BaseModel):
    """Extra shared access rule; keys are generated when omitted."""
    model_config = ConfigDict(extra='forbid')

    key_name: str
    primary_key: Optional[str] = None
    secondary_key: Optional[str] = None
    rights: List[AccessRights] = Field(default_factory=lambda: [AccessRights.LISTEN])
    entity: Optional[str] = Field(default=None, description="Queue or topic name; namespace-wide when omitted")


class RuleConfig(BaseModel):
    """
    Subscription rule.

    At most one of ``sql_filter`` and ``correlation_filter``; neither means
    a filter that matches everything.
    """
    model_config = ConfigDict(extra='forbid')

    name: str
    sql_filter: Optional[str] = None
    correlation_filter: Optional[Dict[str, Any]] = None
    sql_action: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def single_filter(self) -> 'RuleConfig':
        if self.sql_filter is not None and self.correlation_filter is not None:
            raise ValueError(f"Rule '{self.name}' sets both sql_filter and correlation_filter")
        return self

    def to_rule_properties(self) -> RuleProperties:
        if self.sql_filter is not None:
            rule_filter = SqlRuleFilter(self.sql_filter, parameters=self.parameters)
        elif self.correlation_filter is not None:
            rule_filter = CorrelationRuleFilter(**self.correlation_filter)
        else:
            rule_filter = TrueRuleFilter()
        action = SqlRuleAction(self.sql_action, parameters=self.parameters) if self.sql_action else None
        return RuleProperties(name=self.name, filter=rule_filter, action=action)


class QueueConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: str
    properties: QueueProperties = Field(default_factory=QueueProperties)


class SubscriptionConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: str
    properties: SubscriptionProperties = Field(default_factory=SubscriptionProperties)
    rules: List[RuleConfig] = Field(
        default_factory=list,
        description="Replaces the $Default match-all rule when non-empty"
    )


class TopicConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: str
    properties: TopicProperties = Field(default_factory=TopicProperties)
    subscriptions: List[SubscriptionConfig] = Field(default_factory=list)

    @model_validator(mode='after')
    def unique_subscriptions(self) -> 'TopicConfig':
        names = [sub.name for sub in self.subscriptions]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Topic '{self.name}' declares duplicate subscriptions: {duplicates}")
        return self


class LocalBusConfig(BaseModel):
    """Main LocalBus configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    namespace: NamespaceConfig = Field(default_factory=NamespaceConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    retry: RetryConfig = Field(default_factory=RetryConfig)

    authorization_rules: List[AuthorizationRuleConfig] = Field(default_factory=list)

    queues: List[QueueConfig] = Field(default_factory=list)

    topics: List[TopicConfig] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    @model_validator(mode='after')
    def unique_entity_names(self) -> 'LocalBusConfig':
        names = [q.name for q in self.queues] + [t.name for t in self.topics]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate queue/topic names: {duplicates}")
        return self

    model_config = ConfigDict(use_enum_values=True)


class ConfigManager:
    """
    Manages LocalBus configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (LOCALBUS_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[LocalBusConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None
    ) -> LocalBusConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides
            defaults: Values layered under the file, replacing model defaults

        Returns:
            Validated LocalBusConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading LocalBus configuration")

        config_dict: Dict[str, Any] = self._merge_configs({}, defaults or {})

        if config_file:
            config_dict = self._merge_configs(config_dict, self._load_from_file(config_file))
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.info(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = LocalBusConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                data = yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {file_path}")
        return data

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        if namespace := os.getenv(f"{ENV_PREFIX}NAMESPACE"):
            config.setdefault("namespace", {})["name"] = namespace
        if key := os.getenv(f"{ENV_PREFIX}SHARED_ACCESS_KEY"):
            config.setdefault("namespace", {})["shared_access_key"] = key

        if log_level := os.getenv(f"{ENV_PREFIX}LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_format := os.getenv(f"{ENV_PREFIX}LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format.lower()
        if log_file := os.getenv(f"{ENV_PREFIX}LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        if retry_total := os.getenv(f"{ENV_PREFIX}RETRY_TOTAL"):
            config.setdefault("retry", {})["total"] = int(retry_total)
        if backoff_factor := os.getenv(f"{ENV_PREFIX}RETRY_BACKOFF_FACTOR"):
            config.setdefault("retry", {})["backoff_factor"] = float(backoff_factor)
        if backoff_max := os.getenv(f"{ENV_PREFIX}RETRY_BACKOFF_MAX"):
            config.setdefault("retry", {})["backoff_max"] = float(backoff_max)

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with keys redacted)."""
        if not self._config:
            return

        config_dict = self._config.model_dump(mode='json')
        config_dict["namespace"]["shared_access_key"] = "***REDACTED***"
        for rule in config_dict.get("authorization_rules", []):
            for field in ("primary_key", "secondary_key"):
                if rule.get(field):
                    rule[field] = "***REDACTED***"

        logger.debug(f"Active configuration: {json.dumps(config_dict, indent=2)}")

    def get_config(self) -> LocalBusConfig:
        """
        Get the loaded configuration.

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> LocalBusConfig:
        """Reload configuration from the same sources."""
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
