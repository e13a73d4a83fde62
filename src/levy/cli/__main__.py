"""Entry point for `python -m levy.cli` and the `levy` script."""

import sys


def main(args: list[str] | None = None) -> int:
    """Main entry point for the levy CLI."""
    if args is None:
        args = sys.argv[1:]

    if not args or args[0] in ["-h", "--help", "help"]:
        print_help()
        return 0

    command = args[0]

    if command == "version":
        print_version()
        return 0
    elif command == "config":
        return run_config(args[1:])
    elif command == "demo":
        return run_demo(args[1:])
    elif command == "resilience":
        return run_resilience(args[1:])
    else:
        print(f"Unknown command: {command}")
        print_help()
        return 1


def print_help() -> None:
    """Print CLI help message."""
    print(
        """levy - Multi-agent audit orchestration core

Usage:
    python -m levy <command> [options]

Commands:
    version                 Show version information
    config                  Configuration management
    demo                    Run echo tasks through the orchestrator
    resilience <type>       Run a fault-injection test against an echo agent
    help                    Show this help message

Options:
    -h, --help  Show help message
"""
    )


def print_version() -> None:
    """Print version information."""
    from levy import __version__

    print(f"levy {__version__}")


def run_config(args: list[str]) -> int:
    from levy.cli.config import run_config_command

    return run_config_command(args)


def run_demo(args: list[str]) -> int:
    import asyncio

    from levy.cli.run import run_demo_command

    return asyncio.run(run_demo_command(args))


def run_resilience(args: list[str]) -> int:
    import asyncio

    from levy.cli.run import run_resilience_command

    return asyncio.run(run_resilience_command(args))


if __name__ == "__main__":
    sys.exit(main())
