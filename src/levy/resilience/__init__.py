"""Fault injection and recovery verification for managed agents."""

from levy.resilience.harness import (
    HARNESS_ID,
    FailureType,
    FaultTestOptions,
    FaultTestResult,
    ResilienceHarness,
)

__all__ = [
    "HARNESS_ID",
    "FailureType",
    "FaultTestOptions",
    "FaultTestResult",
    "ResilienceHarness",
]
