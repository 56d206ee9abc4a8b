"""Persistence of run logs and pipeline runs.

Snapshots are written atomically (temp file + rename) into a per-run
directory so a crash never leaves a half-written record behind:

    <run_log_dir>/<run_id>/run_log.json
    <run_log_dir>/<run_id>/pipeline_<service>.json
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import uuid4

from src.schemas.pipeline_run import PipelineRun
from src.schemas.run_log import RunLog


RUN_LOG_FILE = "run_log.json"


def new_run_id(now: Optional[datetime] = None) -> str:
    """Generate a sortable run id, e.g. ``2024-01-15T10-30-00-1a2b3c4d``."""
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{timestamp}-{uuid4().hex[:8]}"


def write_file_atomic(file_path: Path, content: str) -> None:
    """Write file atomically using temp file and rename.

    Args:
        file_path: Destination file path
        content: File content to write
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file_path = None

    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            dir=file_path.parent,
            delete=False,
            encoding='utf-8',
            suffix='.tmp'
        ) as temp_file:
            temp_file_path = temp_file.name
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        os.replace(temp_file_path, file_path)

    except Exception:
        if temp_file_path and os.path.exists(temp_file_path):
            os.unlink(temp_file_path)
        raise


class RunStore:
    """Reads and writes run snapshots under a base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def run_dir(self, run_id: str) -> Path:
        return self.base_dir / run_id

    def save_run_log(self, run_log: RunLog) -> Path:
        path = self.run_dir(run_log.run_id) / RUN_LOG_FILE
        write_file_atomic(path, run_log.model_dump_json(indent=2))
        return path

    def load_run_log(self, run_id: str) -> RunLog:
        path = self.run_dir(run_id) / RUN_LOG_FILE
        return RunLog.model_validate_json(path.read_text(encoding='utf-8'))

    def save_pipeline_run(self, run_id: str, pipeline_run: PipelineRun) -> Path:
        path = self.run_dir(run_id) / f"pipeline_{pipeline_run.service}.json"
        write_file_atomic(path, pipeline_run.model_dump_json(indent=2))
        return path

    def load_pipeline_run(self, run_id: str, service: str) -> PipelineRun:
        path = self.run_dir(run_id) / f"pipeline_{service}.json"
        return PipelineRun.model_validate_json(path.read_text(encoding='utf-8'))
