"""Executor: applies planned operations against providers.

Operations whose prerequisites have all succeeded are submitted to a thread
pool, so independent branches of the plan run concurrently. Each provider call
is retried for transient failures using the provider's retry policy. When an
operation fails for good, every operation that transitively depends on it is
marked halted; independent branches keep running.

The coordinating thread (the caller of apply()) is the only code that touches
the RunLog and the structured run log. Worker threads only call providers and
hand an outcome back through their future.

An operation that outlives ``operation_timeout_seconds`` is reported as failed
with OPERATION_TIMEOUT and the number of attempts its worker had started. It is
not interrupted; whatever it eventually returns is discarded.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.logger import StructuredJSONLogger
from src.orchestrator.retry_policy import RetryContext, execute_with_retry
from src.orchestrator.run_store import RunStore, new_run_id
from src.providers.base import (
    OrchestrationError,
    PermanentError,
    ProviderRegistry,
    ValidationError,
)
from src.schemas.operation import Operation
from src.schemas.run_log import OperationStatus, RunLog, RunLogEntry


logger = logging.getLogger(__name__)


@dataclass
class OperationOutcome:
    """What a worker thread reports back for one operation."""
    operation_id: str
    attempts: int
    duration_ms: float
    result: Optional[Dict[str, Any]] = None
    error: Optional[OrchestrationError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_operations(operations: List[Operation]) -> None:
    """Check that an operation list is executable.

    Raises:
        ValidationError: On duplicate ids, unknown dependency ids or cycles
    """
    ids = [op.operation_id for op in operations]
    if len(ids) != len(set(ids)):
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        raise ValidationError(
            "DUPLICATE_OPERATION",
            f"Duplicate operation ids: {', '.join(duplicates)}",
            {"operations": duplicates}
        )

    known = set(ids)
    for op in operations:
        for dep in op.depends_on:
            if dep not in known:
                raise ValidationError(
                    "MISSING_DEPENDENCY",
                    f"Operation '{op.operation_id}' depends on unknown operation '{dep}'",
                    {"operation": op.operation_id, "missing": dep}
                )

    # Kahn pass to reject cycles, which would otherwise never become ready
    waiting = {op.operation_id: len(set(op.depends_on)) for op in operations}
    dependents: Dict[str, List[str]] = {i: [] for i in ids}
    for op in operations:
        for dep in set(op.depends_on):
            dependents[dep].append(op.operation_id)

    ready = [i for i, count in waiting.items() if count == 0]
    visited = 0
    while ready:
        current = ready.pop()
        visited += 1
        for dependent in dependents[current]:
            waiting[dependent] -= 1
            if waiting[dependent] == 0:
                ready.append(dependent)

    if visited != len(ids):
        stuck = sorted(i for i, count in waiting.items() if count > 0)
        raise ValidationError(
            "DEPENDENCY_CYCLE",
            f"Operations form a dependency cycle: {', '.join(stuck)}",
            {"operations": stuck}
        )


class Executor:
    """Applies operation lists and records a RunLog.

    The executor implements:
    - Dependency-gated concurrent dispatch
    - Retry of transient provider failures with bounded backoff
    - Subtree halting on permanent failure or timeout
    - Persisted run logs (JSON lines events plus a final snapshot)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[OrchestratorConfig] = None,
        structured_logger: Optional[StructuredJSONLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the executor.

        Args:
            registry: Providers keyed by resource kind
            config: Orchestrator configuration (uses defaults if not provided)
            structured_logger: Shared JSON logger; by default one is opened per
                run inside the run directory
            sleep: Sleep function used between retries
            clock: Monotonic clock used for durations and timeouts
        """
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.structured_logger = structured_logger
        self.run_store = RunStore(self.config.run_log_dir) if self.config.run_log_dir else None
        self._sleep = sleep
        self._clock = clock
        self._started_lock = threading.Lock()

    def apply(self, operations: List[Operation], run_id: Optional[str] = None) -> RunLog:
        """Apply operations in dependency order.

        Args:
            operations: Operations, typically from the planner or reconciler
            run_id: Optional run id (generated if not provided)

        Returns:
            RunLog with one entry per operation

        Raises:
            ValidationError: If the operation list is malformed; nothing is applied
        """
        validate_operations(operations)

        run_id = run_id or new_run_id()
        run_log = RunLog(
            run_id=run_id,
            started_at=_utcnow(),
            operation_ids=[op.operation_id for op in operations],
            entries={op.operation_id: RunLogEntry(operation_id=op.operation_id) for op in operations}
        )

        owns_logger = self.structured_logger is None
        structured_logger = self.structured_logger or StructuredJSONLogger(
            output_directory=str(self.run_store.run_dir(run_id)) if self.run_store else None
        )
        run_start = self._clock()

        try:
            structured_logger.log_run_start(run_id, run_log.operation_ids)
            if operations:
                self._dispatch(operations, run_log, structured_logger)
        finally:
            run_log.finished_at = _utcnow()
            counts: Dict[str, int] = {}
            for entry in run_log.entries.values():
                counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
            structured_logger.log_run_complete(run_id, self._clock() - run_start, counts)
            if self.run_store:
                self.run_store.save_run_log(run_log)
            if owns_logger:
                structured_logger.close()

        return run_log

    def _dispatch(
        self,
        operations: List[Operation],
        run_log: RunLog,
        structured_logger: StructuredJSONLogger
    ) -> None:
        by_id = {op.operation_id: op for op in operations}
        waiting = {op.operation_id: len(set(op.depends_on)) for op in operations}
        dependents: Dict[str, List[str]] = {op.operation_id: [] for op in operations}
        for op in operations:
            for dep in set(op.depends_on):
                dependents[dep].append(op.operation_id)

        in_flight: Dict[Future, str] = {}
        worker_started: Dict[str, Tuple[float, RetryContext]] = {}
        abandoned = False
        timeout = self.config.operation_timeout_seconds
        pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="executor"
        )

        def submit(op_id: str) -> None:
            entry = run_log.entries[op_id]
            entry.status = OperationStatus.RUNNING
            entry.started_at = _utcnow()
            structured_logger.log_operation_start(op_id)
            in_flight[pool.submit(self._run_operation, by_id[op_id], worker_started)] = op_id

        def halt_subtree(failed_id: str) -> None:
            stack = list(dependents[failed_id])
            while stack:
                dependent = stack.pop()
                entry = run_log.entries[dependent]
                if entry.status != OperationStatus.PENDING:
                    continue
                entry.status = OperationStatus.HALTED
                entry.halted_by = failed_id
                entry.finished_at = _utcnow()
                structured_logger.log_operation_halted(dependent, failed_id)
                stack.extend(dependents[dependent])

        try:
            for op in operations:
                if waiting[op.operation_id] == 0:
                    submit(op.operation_id)

            while in_flight:
                done, _ = wait(
                    list(in_flight),
                    timeout=self.config.poll_interval_seconds if timeout else None,
                    return_when=FIRST_COMPLETED
                )

                for future in done:
                    op_id = in_flight.pop(future)
                    outcome: OperationOutcome = future.result()
                    self._record(run_log.entries[op_id], outcome, structured_logger)

                    if outcome.succeeded:
                        for dependent in dependents[op_id]:
                            waiting[dependent] -= 1
                            if (waiting[dependent] == 0
                                    and run_log.entries[dependent].status == OperationStatus.PENDING):
                                submit(dependent)
                    else:
                        halt_subtree(op_id)

                if timeout:
                    for future, op_id in self._timed_out(in_flight, worker_started, timeout):
                        in_flight.pop(future)
                        abandoned = True
                        entry = run_log.entries[op_id]
                        with self._started_lock:
                            attempts = max(worker_started[op_id][1].attempt, 1)
                        error = PermanentError(
                            "OPERATION_TIMEOUT",
                            f"{op_id} did not finish within {timeout:.2f}s",
                            {"timeout_seconds": timeout}
                        )
                        self._record(
                            entry,
                            OperationOutcome(op_id, attempts, timeout * 1000, error=error),
                            structured_logger
                        )
                        halt_subtree(op_id)
        finally:
            # Timed-out workers are left to finish on their own
            pool.shutdown(wait=not abandoned)

    def _timed_out(
        self,
        in_flight: Dict[Future, str],
        worker_started: Dict[str, Tuple[float, RetryContext]],
        timeout: float
    ) -> List[Tuple[Future, str]]:
        now = self._clock()
        expired = []
        with self._started_lock:
            for future, op_id in in_flight.items():
                started = worker_started.get(op_id)
                if started is not None and not future.done() and now - started[0] >= timeout:
                    expired.append((future, op_id))
        return expired

    def _record(
        self,
        entry: RunLogEntry,
        outcome: OperationOutcome,
        structured_logger: StructuredJSONLogger
    ) -> None:
        entry.attempts = outcome.attempts
        entry.finished_at = _utcnow()

        if outcome.succeeded:
            entry.status = OperationStatus.SUCCEEDED
            structured_logger.log_operation_complete(
                entry.operation_id, outcome.duration_ms, outcome.attempts
            )
            return

        error = outcome.error
        entry.status = OperationStatus.FAILED
        entry.error_kind = error.kind
        entry.error_code = error.error_code
        entry.error_message = error.message
        structured_logger.log_operation_failure(
            entry.operation_id,
            error.kind,
            error.error_code,
            error.message,
            attempts=outcome.attempts,
            duration_ms=outcome.duration_ms
        )

    def _run_operation(
        self,
        operation: Operation,
        worker_started: Dict[str, Tuple[float, RetryContext]]
    ) -> OperationOutcome:
        """Worker body: call the provider with retries. Never raises."""
        op_id = operation.operation_id
        start = self._clock()
        ctx = RetryContext(name=op_id)
        with self._started_lock:
            worker_started[op_id] = (start, ctx)

        def elapsed_ms() -> float:
            return (self._clock() - start) * 1000

        try:
            provider = self.registry.get(operation.resource.kind)
            result = execute_with_retry(
                lambda: provider.apply(operation),
                provider.get_retry_policy(),
                context_name=op_id,
                context=ctx,
                sleep=self._sleep
            )
            return OperationOutcome(op_id, ctx.attempt, elapsed_ms(), result=result or {})

        except OrchestrationError as e:
            return OperationOutcome(op_id, max(ctx.attempt, 1), elapsed_ms(), error=e)

        except Exception as e:
            logger.error(f"Unexpected error applying {op_id}: {e}", exc_info=True)
            wrapped = PermanentError(
                "UNEXPECTED_ERROR",
                f"Unexpected error in {op_id}: {e}",
                {"error_type": type(e).__name__}
            )
            return OperationOutcome(op_id, max(ctx.attempt, 1), elapsed_ms(), error=wrapped)
