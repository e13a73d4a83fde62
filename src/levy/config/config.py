"""Core configuration management for levy.

Configuration is a pydantic model assembled from defaults, an optional YAML
file and ``LEVY_*`` environment variables, plus feature flags.
"""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from levy.core.orchestrator import OrchestratorConfig
from levy.utils.circuit_breaker import CircuitBreakerOptions


class ConfigError(Exception):
    """Configuration-related errors."""

    pass


@dataclass
class FeatureFlags:
    """Feature flags for enabling/disabling functionality.

    Controlled via the LEVY_FEATURES environment variable as a
    comma-separated list (e.g., "breakers,restart,telemetry").
    """

    # Resilience
    circuit_breakers: bool = True
    auto_restart: bool = True

    # Observability
    telemetry: bool = True
    metrics_export: bool = True
    structured_logging: bool = True
    pii_redaction: bool = True

    @classmethod
    def from_env(cls, env_var: str = "LEVY_FEATURES") -> "FeatureFlags":
        """Load feature flags from an environment variable.

        Every flag not named in the list is turned off.

        Args:
            env_var: Environment variable name (default: LEVY_FEATURES)

        Returns:
            FeatureFlags instance; defaults when the variable is unset
        """
        features_str = os.getenv(env_var, "")
        if not features_str:
            return cls()

        enabled_features = {f.strip().lower() for f in features_str.split(",")}

        feature_mapping = {
            "breakers": "circuit_breakers",
            "restart": "auto_restart",
            "telemetry": "telemetry",
            "metrics": "metrics_export",
            "logging": "structured_logging",
            "pii": "pii_redaction",
        }

        kwargs = {
            attr_name: feature_name in enabled_features
            for feature_name, attr_name in feature_mapping.items()
        }
        return cls(**kwargs)

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "text"] = "json"
    enable_pii_redaction: bool = True


class MetricsConfig(BaseModel):
    """Metrics and tracing configuration."""

    enabled: bool = False
    port: int = 8000
    tracing_enabled: bool = False
    otlp_endpoint: str | None = None


class BusConfig(BaseModel):
    """Communication bus configuration."""

    history_size: int = Field(default=1000, ge=1)


class LifecycleConfig(BaseModel):
    """Defaults applied to agents registered without explicit settings."""

    health_check_interval: float = Field(default=60.0, gt=0)
    retry_delay: float = Field(default=5.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    unhealthy_threshold: int = Field(default=3, ge=1)
    auto_restart: bool = True


class ResilienceConfig(BaseModel):
    """Resilience harness and system health monitoring."""

    default_duration: float = Field(default=60.0, gt=0)
    recovery_timeout: float = Field(default=30.0, gt=0)
    recovery_poll_interval: float = Field(default=1.0, gt=0)
    health_log_interval: float = Field(default=60.0, gt=0)


class Config(BaseModel):
    """Main configuration class for levy."""

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    circuit_breaker: CircuitBreakerOptions = Field(default_factory=CircuitBreakerOptions)

    features: FeatureFlags = Field(default_factory=FeatureFlags)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)

    environment: Literal["development", "staging", "production", "testing"] = (
        "development"
    )
    debug: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("features", mode="before")
    @classmethod
    def validate_features(cls, v):
        """Accept feature flags given as a mapping."""
        if isinstance(v, dict):
            return FeatureFlags(**v)
        return v


def load_config_from_file(config_path: Path) -> Config:
    """Load configuration from a YAML file.

    Raises:
        ConfigError: If the file is missing, not YAML, or invalid
    """
    try:
        with open(config_path) as f:
            config_data = yaml.safe_load(f)

        if config_data is None:
            config_data = {}
        if not isinstance(config_data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

        return Config(**config_data)

    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def _env_number(name: str, cast: type) -> Any:
    env_val = os.environ[name]
    try:
        return cast(env_val)
    except ValueError as e:
        raise ConfigError(f"Invalid {name}: {env_val}") from e


def _env_flag(name: str) -> bool:
    return os.environ[name].lower() in ("true", "1", "yes", "on")


def _env_overrides() -> dict[str, Any]:
    """Collect the configuration values set through ``LEVY_*`` variables.

    Environment variables are mapped as follows:
    - LEVY_ENVIRONMENT, LEVY_DEBUG, LEVY_FEATURES
    - LEVY_LOG_LEVEL, LEVY_LOG_FORMAT
    - LEVY_METRICS_ENABLED, LEVY_METRICS_PORT, LEVY_OTLP_ENDPOINT
    - LEVY_BUS_HISTORY_SIZE
    - LEVY_CB_FAILURE_THRESHOLD, LEVY_CB_RESET_TIMEOUT, LEVY_CB_TIMEOUT
    - LEVY_DISPATCH_POLICY, LEVY_STATUS_CHECK_INTERVAL
    - LEVY_HEALTH_CHECK_INTERVAL, LEVY_MAX_RETRIES, LEVY_RETRY_DELAY
    """
    config_data: dict[str, Any] = {}

    if env_val := os.getenv("LEVY_ENVIRONMENT"):
        config_data["environment"] = env_val.lower()
    if os.getenv("LEVY_DEBUG"):
        config_data["debug"] = _env_flag("LEVY_DEBUG")
    if os.getenv("LEVY_FEATURES"):
        config_data["features"] = FeatureFlags.from_env().to_dict()

    logging_config: dict[str, Any] = {}
    if env_val := os.getenv("LEVY_LOG_LEVEL"):
        logging_config["level"] = env_val.upper()
    if env_val := os.getenv("LEVY_LOG_FORMAT"):
        logging_config["format"] = env_val.lower()
    if logging_config:
        config_data["logging"] = logging_config

    metrics_config: dict[str, Any] = {}
    if os.getenv("LEVY_METRICS_ENABLED"):
        metrics_config["enabled"] = _env_flag("LEVY_METRICS_ENABLED")
    if os.getenv("LEVY_METRICS_PORT"):
        metrics_config["port"] = _env_number("LEVY_METRICS_PORT", int)
    if env_val := os.getenv("LEVY_OTLP_ENDPOINT"):
        metrics_config["otlp_endpoint"] = env_val
        metrics_config["tracing_enabled"] = True
    if metrics_config:
        config_data["metrics"] = metrics_config

    if os.getenv("LEVY_BUS_HISTORY_SIZE"):
        config_data["bus"] = {
            "history_size": _env_number("LEVY_BUS_HISTORY_SIZE", int)
        }

    breaker_config: dict[str, Any] = {}
    if os.getenv("LEVY_CB_FAILURE_THRESHOLD"):
        breaker_config["failure_threshold"] = _env_number("LEVY_CB_FAILURE_THRESHOLD", int)
    if os.getenv("LEVY_CB_RESET_TIMEOUT"):
        breaker_config["reset_timeout"] = _env_number("LEVY_CB_RESET_TIMEOUT", float)
    if os.getenv("LEVY_CB_TIMEOUT"):
        breaker_config["timeout"] = _env_number("LEVY_CB_TIMEOUT", float)
    if breaker_config:
        config_data["circuit_breaker"] = breaker_config

    orchestrator_config: dict[str, Any] = {}
    if env_val := os.getenv("LEVY_DISPATCH_POLICY"):
        orchestrator_config["dispatch_policy"] = env_val
    if os.getenv("LEVY_STATUS_CHECK_INTERVAL"):
        orchestrator_config["status_check_interval"] = _env_number(
            "LEVY_STATUS_CHECK_INTERVAL", float
        )
    if orchestrator_config:
        config_data["orchestrator"] = orchestrator_config

    lifecycle_config: dict[str, Any] = {}
    if os.getenv("LEVY_HEALTH_CHECK_INTERVAL"):
        lifecycle_config["health_check_interval"] = _env_number(
            "LEVY_HEALTH_CHECK_INTERVAL", float
        )
    if os.getenv("LEVY_MAX_RETRIES"):
        lifecycle_config["max_retries"] = _env_number("LEVY_MAX_RETRIES", int)
    if os.getenv("LEVY_RETRY_DELAY"):
        lifecycle_config["retry_delay"] = _env_number("LEVY_RETRY_DELAY", float)
    if lifecycle_config:
        config_data["lifecycle"] = lifecycle_config

    return config_data


def load_config_from_env() -> Config:
    """Load configuration from ``LEVY_*`` environment variables.

    Raises:
        ConfigError: If a variable does not parse or validate
    """
    try:
        return Config(**_env_overrides())
    except ValidationError as e:
        raise ConfigError(f"Environment configuration validation failed: {e}") from e


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment variables.

    Later sources override earlier ones, section by section:
    1. Default values
    2. Configuration file (if provided and present)
    3. Environment variables

    Raises:
        ConfigError: If any source is invalid
    """
    config_data: dict[str, Any] = {}

    if config_path and config_path.exists():
        file_config = load_config_from_file(config_path)
        config_data = file_config.model_dump(exclude_unset=True)

    config_data = _merge(config_data, _env_overrides())
    try:
        return Config(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def validate_config(config: Config) -> None:
    """Check cross-field consistency that the models cannot express alone.

    Raises:
        ConfigError: If the configuration is inconsistent
    """
    if config.metrics.port <= 0 or config.metrics.port > 65535:
        raise ConfigError("metrics.port must be between 1 and 65535")

    if config.metrics.tracing_enabled and not config.metrics.otlp_endpoint:
        raise ConfigError("metrics.otlp_endpoint is required when tracing is enabled")

    for task_type, agent_type in config.orchestrator.routing_table.items():
        if not task_type or not agent_type:
            raise ConfigError("routing_table entries must be non-empty")

    if config.orchestrator.dispatch_poll_interval >= config.orchestrator.status_check_interval:
        raise ConfigError(
            "orchestrator.dispatch_poll_interval must be below status_check_interval"
        )

    breaker = config.circuit_breaker
    if breaker.timeout is not None and breaker.timeout >= breaker.monitor_interval:
        raise ConfigError("circuit_breaker.timeout must be below monitor_interval")

    if config.resilience.recovery_poll_interval > config.resilience.recovery_timeout:
        raise ConfigError(
            "resilience.recovery_poll_interval must not exceed recovery_timeout"
        )

    if config.environment == "production":
        if config.debug:
            raise ConfigError("Debug mode should not be enabled in production")

        if config.logging.level == "DEBUG":
            raise ConfigError("DEBUG logging should not be used in production")

        if not config.features.pii_redaction:
            raise ConfigError("PII redaction should be enabled in production")
