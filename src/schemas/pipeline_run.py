"""Pipeline run schema for per-microservice delivery runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PipelineStage(str, Enum):
    """Delivery stages in execution order."""
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"


STAGE_ORDER: List[PipelineStage] = [
    PipelineStage.BUILD,
    PipelineStage.PUSH,
    PipelineStage.DEPLOY,
]


class PipelineStatus(str, Enum):
    """Overall status of a pipeline run."""
    PENDING = "pending"
    BUILDING = "building"
    PUSHING = "pushing"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Run status while a stage is active
ACTIVE_STATUS: Dict[PipelineStage, PipelineStatus] = {
    PipelineStage.BUILD: PipelineStatus.BUILDING,
    PipelineStage.PUSH: PipelineStatus.PUSHING,
    PipelineStage.DEPLOY: PipelineStatus.DEPLOYING,
}


# Legal state machine transitions
ALLOWED_TRANSITIONS: Dict[PipelineStatus, set] = {
    PipelineStatus.PENDING: {PipelineStatus.BUILDING},
    PipelineStatus.BUILDING: {PipelineStatus.PUSHING, PipelineStatus.FAILED},
    PipelineStatus.PUSHING: {PipelineStatus.DEPLOYING, PipelineStatus.FAILED},
    PipelineStatus.DEPLOYING: {PipelineStatus.SUCCEEDED, PipelineStatus.FAILED},
    PipelineStatus.SUCCEEDED: set(),
    PipelineStatus.FAILED: set(),
}


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageRecord(BaseModel):
    """Outcome of a single stage."""

    stage: PipelineStage
    status: StageStatus = StageStatus.PENDING
    attempts: int = Field(0, ge=0)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_stages() -> Dict[PipelineStage, StageRecord]:
    return {stage: StageRecord(stage=stage) for stage in STAGE_ORDER}


class PipelineRun(BaseModel):
    """Per-microservice record of delivery progress."""

    service: str = Field(..., description="Service being delivered")
    status: PipelineStatus = Field(PipelineStatus.PENDING)
    stages: Dict[PipelineStage, StageRecord] = Field(default_factory=_default_stages)
    image_ref: Optional[str] = Field(None, description="Built image reference")
    image_digest: Optional[str] = Field(None, description="Digest returned by the registry")
    failed_stage: Optional[PipelineStage] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.SUCCEEDED

    @property
    def is_finished(self) -> bool:
        return self.status in (PipelineStatus.SUCCEEDED, PipelineStatus.FAILED)

    def stage(self, stage: PipelineStage) -> StageRecord:
        return self.stages[stage]

    def can_transition(self, target: PipelineStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]
