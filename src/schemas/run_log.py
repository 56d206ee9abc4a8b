"""Run log schema: per-operation outcome records produced by the executor."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OperationStatus(str, Enum):
    """Lifecycle status of an operation within a run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    HALTED = "halted"


TERMINAL_STATUSES = {
    OperationStatus.SUCCEEDED,
    OperationStatus.FAILED,
    OperationStatus.HALTED,
}


class RunLogEntry(BaseModel):
    """Outcome of a single operation."""

    operation_id: str = Field(..., description="Operation this entry tracks")
    status: OperationStatus = Field(OperationStatus.PENDING)
    attempts: int = Field(0, ge=0, description="Number of provider calls made")
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = Field(
        None,
        description="Error class name (TransientError, PermanentError, ...)"
    )
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    halted_by: Optional[str] = Field(
        None,
        description="Operation id whose failure halted this operation"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FailureReport(BaseModel):
    """User-visible summary of one failed operation and what it halted."""

    operation_id: str
    error_kind: str
    error_code: str
    error_message: str
    halted: List[str] = Field(
        default_factory=list,
        description="Operation ids halted because of this failure"
    )


class RunLog(BaseModel):
    """Result of applying an operation list.

    Entries are kept in planned order (``operation_ids``) so reports read
    the same way the plan does.
    """

    run_id: str = Field(..., description="Unique run identifier")
    started_at: datetime
    finished_at: Optional[datetime] = None
    operation_ids: List[str] = Field(default_factory=list)
    entries: Dict[str, RunLogEntry] = Field(default_factory=dict)

    def entry(self, operation_id: str) -> RunLogEntry:
        return self.entries[operation_id]

    def ordered_entries(self) -> List[RunLogEntry]:
        return [self.entries[op_id] for op_id in self.operation_ids]

    def ids_with_status(self, status: OperationStatus) -> List[str]:
        return [e.operation_id for e in self.ordered_entries() if e.status == status]

    @property
    def succeeded(self) -> bool:
        """True when every operation succeeded (vacuously true for empty runs)."""
        return all(
            e.status == OperationStatus.SUCCEEDED for e in self.entries.values()
        )

    def failure_reports(self) -> List[FailureReport]:
        """Build one report per failed operation, listing its halted subtree."""
        reports = []
        for entry in self.ordered_entries():
            if entry.status != OperationStatus.FAILED:
                continue
            halted = [
                e.operation_id for e in self.ordered_entries()
                if e.status == OperationStatus.HALTED and e.halted_by == entry.operation_id
            ]
            reports.append(FailureReport(
                operation_id=entry.operation_id,
                error_kind=entry.error_kind or "UnknownError",
                error_code=entry.error_code or "UNKNOWN",
                error_message=entry.error_message or "",
                halted=halted
            ))
        return reports


def format_failure_report(run_log: RunLog) -> str:
    """Render failure reports as human-readable text."""
    reports = run_log.failure_reports()
    if not reports:
        return f"Run {run_log.run_id}: all {len(run_log.entries)} operations succeeded"

    lines = [f"Run {run_log.run_id}: {len(reports)} operation(s) failed"]
    for report in reports:
        lines.append(
            f"  - {report.operation_id} [{report.error_kind}/{report.error_code}]: "
            f"{report.error_message}"
        )
        if report.halted:
            lines.append(f"    halted: {', '.join(report.halted)}")
    return "\n".join(lines)
