"""Operation schema: a single idempotent action produced by the planner."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.schemas.desired_state import ResourceReference


class OperationAction(str, Enum):
    """Actions an operation can perform on a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def make_operation_id(action: OperationAction, resource: ResourceReference) -> str:
    """Build the canonical operation id, e.g. ``create:network/vpc``."""
    return f"{action.value}:{resource.kind.value}/{resource.name}"


class Operation(BaseModel):
    """
    A single idempotent action against one resource.

    ``depends_on`` holds operation ids that must succeed before this one
    may run. ``rank`` is the position in the planned total order.
    """

    operation_id: str = Field(..., description="Unique id: '<action>:<kind>/<name>'")
    action: OperationAction = Field(..., description="create, update or delete")
    resource: ResourceReference = Field(..., description="Target resource")
    spec: Dict[str, Any] = Field(
        default_factory=dict,
        description="Target properties for create/update"
    )
    depends_on: List[str] = Field(
        default_factory=list,
        description="Operation ids this operation waits on"
    )
    rank: int = Field(0, ge=0, description="Position in the planned order")

    @classmethod
    def build(
        cls,
        action: OperationAction,
        resource: ResourceReference,
        spec: Optional[Dict[str, Any]] = None,
        depends_on: Optional[List[str]] = None,
        rank: int = 0
    ) -> 'Operation':
        return cls(
            operation_id=make_operation_id(action, resource),
            action=action,
            resource=resource,
            spec=dict(spec or {}),
            depends_on=list(depends_on or []),
            rank=rank
        )
