"""Structured JSON logger for orchestrator observability.

This module provides structured logging functionality that writes JSON-formatted
log entries to run.log in a run directory. Each log entry is a single JSON
object on one line, making it easy to parse and analyze.

Log Event Types:
- run_start / run_complete: Executor run boundaries
- operation_start / operation_complete / operation_failure / operation_halted:
  Per-operation transitions
- stage_start / stage_complete / stage_failure: Pipeline stage transitions
- pipeline_complete: Pipeline run finished (succeeded or failed)
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


LOG_FILE_NAME = "run.log"


class StructuredJSONLogger:
    """Structured JSON logger that writes to run.log.

    Each log entry follows the format:

    {
        "event": "operation_start|operation_complete|...",
        "timestamp": "ISO8601",
        ...additional fields based on event type...
    }

    The logger maintains both a file handle for JSON logs and a console
    logger for human-readable output. Writes are serialized so concurrent
    pipeline runs can share one logger.
    """

    def __init__(self, output_directory: Optional[str] = None):
        """Initialize the structured JSON logger.

        Args:
            output_directory: Directory where run.log will be written.
                            If None, only console logging is enabled.
        """
        self.output_directory = output_directory
        self.log_file_path = None
        self.json_file_handle = None
        self._lock = threading.Lock()

        if output_directory:
            self._setup_log_file(output_directory)

        self.logger = logging.getLogger(__name__)
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)
            self.logger.setLevel(logging.INFO)

    def _setup_log_file(self, output_directory: str) -> None:
        output_path = Path(output_directory)
        output_path.mkdir(parents=True, exist_ok=True)

        self.log_file_path = output_path / LOG_FILE_NAME
        self.json_file_handle = open(self.log_file_path, 'a', encoding='utf-8')

    def _write_json_log(self, log_entry: Dict[str, Any]) -> None:
        """Write a JSON log entry to run.log.

        Args:
            log_entry: Dictionary containing log data
        """
        with self._lock:
            if self.json_file_handle:
                json_line = json.dumps(log_entry, ensure_ascii=False, default=str)
                self.json_file_handle.write(json_line + '\n')
                self.json_file_handle.flush()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def log_run_start(self, run_id: str, operation_ids: List[str]) -> None:
        """Log executor run start with the planned operation order."""
        self._write_json_log({
            "event": "run_start",
            "timestamp": self._now(),
            "run_id": run_id,
            "operation_count": len(operation_ids),
            "operations": operation_ids
        })
        self.logger.info(f"Starting run {run_id} with {len(operation_ids)} operations")

    def log_operation_start(self, operation_id: str, retry_attempt: int = 0) -> None:
        """Log operation start.

        Args:
            operation_id: Operation being applied
            retry_attempt: Retry attempt number (0 for first attempt)
        """
        self._write_json_log({
            "event": "operation_start",
            "timestamp": self._now(),
            "operation_id": operation_id,
            "retry_attempt": retry_attempt
        })
        attempt_str = f" (attempt {retry_attempt + 1})" if retry_attempt > 0 else ""
        self.logger.info(f"Applying {operation_id}{attempt_str}")

    def log_operation_complete(
        self,
        operation_id: str,
        duration_ms: float,
        attempts: int = 1
    ) -> None:
        self._write_json_log({
            "event": "operation_complete",
            "timestamp": self._now(),
            "operation_id": operation_id,
            "duration_ms": round(duration_ms, 2),
            "attempts": attempts,
            "status": "succeeded"
        })
        self.logger.info(f"Completed {operation_id} in {duration_ms:.2f}ms")

    def log_operation_failure(
        self,
        operation_id: str,
        error_kind: str,
        error_code: str,
        error_message: str,
        attempts: int = 1,
        duration_ms: Optional[float] = None
    ) -> None:
        """Log operation failure.

        Args:
            operation_id: Operation that failed
            error_kind: Error class name
            error_code: Machine-readable error code
            error_message: Human-readable error message
            attempts: Number of attempts made
            duration_ms: Optional execution duration in milliseconds
        """
        log_entry = {
            "event": "operation_failure",
            "timestamp": self._now(),
            "operation_id": operation_id,
            "error_kind": error_kind,
            "error_code": error_code,
            "error_message": error_message,
            "attempts": attempts
        }
        if duration_ms is not None:
            log_entry["duration_ms"] = round(duration_ms, 2)

        self._write_json_log(log_entry)
        self.logger.error(f"Failed {operation_id} [{error_kind}/{error_code}]: {error_message}")

    def log_operation_halted(self, operation_id: str, halted_by: str) -> None:
        self._write_json_log({
            "event": "operation_halted",
            "timestamp": self._now(),
            "operation_id": operation_id,
            "halted_by": halted_by
        })
        self.logger.warning(f"Halted {operation_id}: dependency {halted_by} failed")

    def log_run_complete(
        self,
        run_id: str,
        duration_seconds: float,
        status_counts: Dict[str, int]
    ) -> None:
        self._write_json_log({
            "event": "run_complete",
            "timestamp": self._now(),
            "run_id": run_id,
            "duration_seconds": round(duration_seconds, 2),
            "status_counts": status_counts
        })
        summary = ", ".join(f"{k}={v}" for k, v in sorted(status_counts.items()))
        self.logger.info(f"Run {run_id} finished in {duration_seconds:.2f}s ({summary})")

    def log_stage_start(self, service: str, stage: str, retry_attempt: int = 0) -> None:
        self._write_json_log({
            "event": "stage_start",
            "timestamp": self._now(),
            "service": service,
            "stage": stage,
            "retry_attempt": retry_attempt
        })
        self.logger.info(f"[{service}] starting {stage}")

    def log_stage_complete(
        self,
        service: str,
        stage: str,
        duration_ms: float,
        output_summary: str
    ) -> None:
        self._write_json_log({
            "event": "stage_complete",
            "timestamp": self._now(),
            "service": service,
            "stage": stage,
            "duration_ms": round(duration_ms, 2),
            "output_summary": output_summary
        })
        self.logger.info(f"[{service}] completed {stage} in {duration_ms:.2f}ms: {output_summary}")

    def log_stage_failure(
        self,
        service: str,
        stage: str,
        error_code: str,
        error_message: str,
        attempts: int = 1
    ) -> None:
        self._write_json_log({
            "event": "stage_failure",
            "timestamp": self._now(),
            "service": service,
            "stage": stage,
            "error_code": error_code,
            "error_message": error_message,
            "attempts": attempts
        })
        self.logger.error(f"[{service}] {stage} failed [{error_code}]: {error_message}")

    def log_pipeline_complete(
        self,
        service: str,
        status: str,
        duration_seconds: float,
        failed_stage: Optional[str] = None
    ) -> None:
        log_entry = {
            "event": "pipeline_complete",
            "timestamp": self._now(),
            "service": service,
            "status": status,
            "duration_seconds": round(duration_seconds, 2)
        }
        if failed_stage:
            log_entry["failed_stage"] = failed_stage

        self._write_json_log(log_entry)
        self.logger.info(
            f"[{service}] pipeline finished with status {status} in {duration_seconds:.2f}s"
        )

    def close(self) -> None:
        """Close the log file handle."""
        with self._lock:
            if self.json_file_handle:
                self.json_file_handle.close()
                self.json_file_handle = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
