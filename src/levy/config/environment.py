"""Environment detection and configuration file lookup."""

import os
from enum import Enum
from pathlib import Path


class Environment(Enum):
    """Supported deployment environments."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


def get_environment() -> Environment:
    """Detect the current environment.

    Environment is detected in the following order:
    1. LEVY_ENVIRONMENT environment variable
    2. Presence of marker files (.env.production, etc.)
    3. Default to development
    """
    env_str = os.getenv("LEVY_ENVIRONMENT", "").lower()
    if env_str:
        try:
            return Environment(env_str)
        except ValueError:
            pass

    cwd = Path.cwd()
    for environment in (
        Environment.PRODUCTION,
        Environment.STAGING,
        Environment.TESTING,
    ):
        if (cwd / f".env.{environment.value}").exists():
            return environment

    return Environment.DEVELOPMENT


def get_config_file_path(environment: Environment | None = None) -> Path | None:
    """Get the configuration file path for the given environment.

    Args:
        environment: Environment to get config for (defaults to current)

    Returns:
        Path to the first existing candidate, or None
    """
    if environment is None:
        environment = get_environment()

    config_paths = [
        Path(f"config/{environment.value}.yaml"),
        Path(f"config/{environment.value}.yml"),
        Path(f"levy.{environment.value}.yaml"),
        Path("config/levy.yaml"),
        Path("levy.yaml"),
        Path("levy.yml"),
    ]

    for path in config_paths:
        if path.exists():
            return path

    return None

