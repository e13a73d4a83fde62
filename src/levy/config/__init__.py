"""Configuration management for levy.

Configuration loading, validation and feature flags for the orchestration
runtime.
"""

from .config import (
    BusConfig,
    Config,
    ConfigError,
    FeatureFlags,
    LifecycleConfig,
    LoggingConfig,
    MetricsConfig,
    ResilienceConfig,
    load_config,
    load_config_from_env,
    load_config_from_file,
    validate_config,
)
from .environment import Environment, get_config_file_path, get_environment

__all__ = [
    "BusConfig",
    "Config",
    "ConfigError",
    "Environment",
    "FeatureFlags",
    "LifecycleConfig",
    "LoggingConfig",
    "MetricsConfig",
    "ResilienceConfig",
    "get_config_file_path",
    "get_environment",
    "load_config",
    "load_config_from_env",
    "load_config_from_file",
    "validate_config",
]
