"""Configuration management CLI commands."""

import json
import os
from pathlib import Path

import yaml

from levy.config import (
    ConfigError,
    load_config,
    load_config_from_env,
    validate_config,
)
from levy.config.environment import get_config_file_path, get_environment

ENV_VARS = [
    "LEVY_ENVIRONMENT",
    "LEVY_DEBUG",
    "LEVY_FEATURES",
    "LEVY_LOG_LEVEL",
    "LEVY_LOG_FORMAT",
    "LEVY_METRICS_ENABLED",
    "LEVY_METRICS_PORT",
    "LEVY_OTLP_ENDPOINT",
    "LEVY_BUS_HISTORY_SIZE",
    "LEVY_CB_FAILURE_THRESHOLD",
    "LEVY_CB_RESET_TIMEOUT",
    "LEVY_CB_TIMEOUT",
    "LEVY_DISPATCH_POLICY",
    "LEVY_STATUS_CHECK_INTERVAL",
    "LEVY_HEALTH_CHECK_INTERVAL",
    "LEVY_MAX_RETRIES",
    "LEVY_RETRY_DELAY",
]


def config_validate_command(args: list[str]) -> int:
    """Validate a configuration file, or the environment when none is given.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    config_path = None
    if args and not args[0].startswith("-"):
        config_path = Path(args[0])

    try:
        if config_path:
            print(f"Validating configuration file: {config_path}")
            if not config_path.exists():
                print(f"Error: Configuration file not found: {config_path}")
                return 1
            config = load_config(config_path)
        else:
            print("Validating configuration from environment variables")
            config = load_config_from_env()

        validate_config(config)
        print("✓ Configuration is valid")
        return 0

    except ConfigError as e:
        print(f"✗ Configuration validation failed: {e}")
        return 1


def config_show_command(args: list[str]) -> int:
    """Print the effective configuration as YAML or JSON.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    format_type = "yaml"
    config_path = None

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ["--format", "-f"]:
            if i + 1 < len(args):
                format_type = args[i + 1]
                i += 2
            else:
                print("Error: --format requires a value")
                return 1
        elif arg.startswith("--format="):
            format_type = arg.split("=", 1)[1]
            i += 1
        elif not arg.startswith("-"):
            config_path = Path(arg)
            i += 1
        else:
            print(f"Unknown argument: {arg}")
            return 1

    if format_type not in ["yaml", "json"]:
        print(f"Error: Invalid format '{format_type}'. Use 'yaml' or 'json'")
        return 1

    if config_path is None:
        config_path = get_config_file_path()

    try:
        config_dict = load_config(config_path).model_dump(mode="json")
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        return 1

    if format_type == "json":
        print(json.dumps(config_dict, indent=2))
    else:
        print(yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True))
    return 0


def config_env_command(args: list[str]) -> int:
    """Show the detected environment and the LEVY_* variables that are set."""
    show_all = "--all" in args or "-a" in args

    print(f"Environment: {get_environment().value}")
    print(f"Config file: {get_config_file_path() or 'None found'}")
    print()
    print("Environment Variables:")
    for var in ENV_VARS:
        value = os.getenv(var)
        if value or show_all:
            print(f"  {var}={value or '(not set)'}")
    return 0


def run_config_command(args: list[str]) -> int:
    """Run configuration management commands.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not args:
        print_config_help()
        return 0

    command = args[0]
    command_args = args[1:]

    if command == "validate":
        return config_validate_command(command_args)
    elif command == "show":
        return config_show_command(command_args)
    elif command == "env":
        return config_env_command(command_args)
    elif command in ["help", "-h", "--help"]:
        print_config_help()
        return 0
    else:
        print(f"Unknown config command: {command}")
        print_config_help()
        return 1


def print_config_help() -> None:
    """Print configuration command help."""
    print(
        """levy config - Configuration management

Usage:
    levy config <command> [options]

Commands:
    validate [file]     Validate configuration file or environment
    show [file]         Show effective configuration
                        Options: --format=yaml|json
    env                 Show environment variables
                        Options: --all
    help                Show this help message

Examples:
    levy config validate
    levy config validate config/production.yaml
    levy config show --format=json
"""
    )
