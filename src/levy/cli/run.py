"""Runtime-backed CLI commands: the echo demo and resilience scenarios."""

import argparse
from pathlib import Path

from levy.config import Config, ConfigError, load_config
from levy.core.lifecycle import AgentConfig
from levy.resilience.harness import FailureType, FaultTestOptions
from levy.runtime import AgentRuntime
from levy.schemas.types import Priority
from levy.utils.errors import OrchestrationError
from levy.utils.telemetry import get_logger

logger = get_logger(__name__)

ECHO_AGENT_ID = "echo"


def _load(config_path: Path | None, verbose: bool) -> Config | None:
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        return None
    if verbose:
        config.logging.level = "DEBUG"
    return config


async def run_demo_command(args: list[str]) -> int:
    """Start a runtime with one echo agent and run a handful of tasks.

    Returns:
        Exit code (0 when every task completed)
    """
    parser = argparse.ArgumentParser(
        prog="levy demo",
        description="Submit echo tasks at mixed priorities and print the results",
    )
    parser.add_argument("--tasks", type=int, default=5, help="Number of tasks (default: 5)")
    parser.add_argument(
        "--delay",
        type=float,
        default=0.05,
        help="Seconds each echo task works before answering (default: 0.05)",
    )
    parser.add_argument("--config", type=Path, help="Configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    try:
        parsed_args = parser.parse_args(args)
    except SystemExit as e:
        return e.code or 1

    config = _load(parsed_args.config, parsed_args.verbose)
    if config is None:
        return 1

    runtime = AgentRuntime(config)
    runtime.configure_telemetry()
    priorities = list(Priority)
    failed = 0

    async with runtime:
        await runtime.register_agent(
            AgentConfig(agent_id=ECHO_AGENT_ID, agent_type="echo")
        )
        task_ids = []
        for i in range(parsed_args.tasks):
            priority = priorities[i % len(priorities)]
            submitted = runtime.orchestrator.submit_task(
                "echo",
                {"index": i, "delay": parsed_args.delay},
                priority=priority,
            )
            task_ids.append(submitted["task_id"])
            print(f"submitted {submitted['task_id']} priority={priority.value}")

        for task_id in task_ids:
            try:
                status = await runtime.orchestrator.wait_for_task(task_id, timeout=30.0)
            except OrchestrationError as e:
                print(f"✗ {task_id}: {e}")
                failed += 1
                continue
            mark = "✓" if status["status"] == "completed" else "✗"
            if mark == "✗":
                failed += 1
            print(f"{mark} {task_id}: {status['status']} result={status.get('result')}")

    logger.info("Demo finished", tasks=parsed_args.tasks, failed=failed)
    return 0 if failed == 0 else 1


async def run_resilience_command(args: list[str]) -> int:
    """Run one fault-injection scenario against a fresh echo agent.

    Returns:
        Exit code (0 when the agent recovered)
    """
    parser = argparse.ArgumentParser(
        prog="levy resilience",
        description="Inject a fault into an echo agent and verify it recovers",
    )
    parser.add_argument(
        "failure_type",
        choices=[failure.value for failure in FailureType],
        help="Fault routine to run",
    )
    parser.add_argument("--failure-count", type=int, default=5)
    parser.add_argument("--failure-rate", type=float, default=1.0)
    parser.add_argument("--delay", type=float, default=0.2, help="Seconds between failures")
    parser.add_argument("--load-factor", type=int, default=5)
    parser.add_argument("--duration", type=float, default=30.0)
    parser.add_argument("--recovery-timeout", type=float, default=30.0)
    parser.add_argument(
        "--probe-timeout", type=float, default=0.5, help="Per-probe timeout in seconds"
    )
    parser.add_argument(
        "--reset-timeout",
        type=float,
        default=2.0,
        help="Circuit breaker reset timeout for this run",
    )
    parser.add_argument("--seed", type=int)
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    parser.add_argument("--config", type=Path, help="Configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    try:
        parsed_args = parser.parse_args(args)
    except SystemExit as e:
        return e.code or 1

    config = _load(parsed_args.config, parsed_args.verbose)
    if config is None:
        return 1
    config.circuit_breaker = config.circuit_breaker.model_copy(
        update={"reset_timeout": parsed_args.reset_timeout}
    )

    try:
        options = FaultTestOptions(
            target_agent_id=ECHO_AGENT_ID,
            failure_type=FailureType(parsed_args.failure_type),
            failure_rate=parsed_args.failure_rate,
            failure_count=parsed_args.failure_count,
            delay_between_failures=parsed_args.delay,
            load_factor=parsed_args.load_factor,
            duration=parsed_args.duration,
            probe_timeout=parsed_args.probe_timeout,
            recovery_timeout=parsed_args.recovery_timeout,
            seed=parsed_args.seed,
        )
    except ValueError as e:
        print(f"Invalid test options: {e}")
        return 1

    runtime = AgentRuntime(config)
    runtime.configure_telemetry()

    async with runtime:
        await runtime.register_agent(
            AgentConfig(
                agent_id=ECHO_AGENT_ID,
                agent_type="echo",
                health_check_interval=0.5,
                retry_delay=0.5,
            )
        )
        test_id = await runtime.harness.run_test(options)
        print(f"running {options.failure_type.value} test {test_id}")
        result = await runtime.harness.wait_for_test(
            test_id, timeout=options.duration + options.recovery_timeout + 10.0
        )

    if parsed_args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(f"status:           {result.status}")
        print(f"iterations:       {result.iterations}")
        print(f"successes:        {result.successes}")
        print(f"failures:         {result.failures}")
        print(f"circuit tripped:  {result.circuit_tripped}")
        print(f"agent restarted:  {result.agent_restarted}")
        print(f"recovered:        {result.recovered}")
        print(f"recovery time:    {result.recovery_time}")
        for error in result.errors:
            print(f"error:            {error}")

    mark = "✓" if result.recovered else "✗"
    print(f"{mark} {options.failure_type.value}: recovered={result.recovered}")
    return 0 if result.recovered else 1
