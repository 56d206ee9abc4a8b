"""Pydantic schemas for data contracts between orchestrator components."""

from src.schemas.desired_state import (
    DesiredState,
    ObservedResource,
    ResourceDeclaration,
    ResourceKind,
    ResourceReference,
    ServiceDefinition,
)
from src.schemas.operation import Operation, OperationAction
from src.schemas.pipeline_run import (
    PipelineRun,
    PipelineStage,
    PipelineStatus,
    StageRecord,
    StageStatus,
)
from src.schemas.run_log import (
    FailureReport,
    OperationStatus,
    RunLog,
    RunLogEntry,
)

__all__ = [
    # Desired State
    "ResourceKind",
    "ResourceReference",
    "ResourceDeclaration",
    "ServiceDefinition",
    "DesiredState",
    "ObservedResource",
    # Operation
    "OperationAction",
    "Operation",
    # Run Log
    "OperationStatus",
    "RunLogEntry",
    "RunLog",
    "FailureReport",
    # Pipeline Run
    "PipelineStage",
    "PipelineStatus",
    "StageStatus",
    "StageRecord",
    "PipelineRun",
]
