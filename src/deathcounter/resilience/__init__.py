from __future__ import annotations

from deathcounter.resilience.executor import (
    FaultPolicy,
    FaultRule,
    Outcome,
    ResilientExecutor,
    RetryPolicy,
    default_fault_handler,
)

__all__ = [
    "FaultPolicy",
    "FaultRule",
    "Outcome",
    "ResilientExecutor",
    "RetryPolicy",
    "default_fault_handler",
]
