"""Orchestrator configuration."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class OrchestratorConfig:
    """Configuration for executor, reconciler and pipeline runs.

    Attributes:
        max_workers: Maximum number of operations applied concurrently
        operation_timeout_seconds: Wall-clock budget per operation, including
            retries; None disables the timeout
        run_log_dir: Directory for persisted run logs (None keeps logs on console only)
        poll_interval_seconds: How often the executor checks for finished or
            timed-out operations
        reconcile_interval_seconds: Delay between periodic reconciliation cycles
    """
    max_workers: int = 4
    operation_timeout_seconds: Optional[float] = 900.0
    run_log_dir: Optional[str] = "runs"
    poll_interval_seconds: float = 0.05
    reconcile_interval_seconds: float = 60.0

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.operation_timeout_seconds is not None and self.operation_timeout_seconds <= 0:
            raise ValueError("operation_timeout_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be positive")
