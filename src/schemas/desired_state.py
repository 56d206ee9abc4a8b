"""Desired state schema: the declarative target for the orchestrator."""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ResourceKind(str, Enum):
    """Kinds of resources the orchestrator manages."""
    NETWORK = "network"
    CLUSTER = "cluster"
    DATABASE = "database"
    WORKLOAD = "workload"
    MONITORING = "monitoring"

    @property
    def rank(self) -> int:
        """Dependency rank: lower ranks are provisioned first."""
        return KIND_RANKS[self]


KIND_RANKS = {
    ResourceKind.NETWORK: 0,
    ResourceKind.CLUSTER: 1,
    ResourceKind.DATABASE: 2,
    ResourceKind.WORKLOAD: 3,
    ResourceKind.MONITORING: 4,
}


class ResourceReference(BaseModel):
    """Name and kind of a single managed resource."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique resource name")
    kind: ResourceKind = Field(..., description="Resource kind tag")

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


class ResourceDeclaration(BaseModel):
    """
    A single resource in the desired state.

    The ``spec`` dict is opaque to the planner; providers interpret it
    (CIDR blocks, node counts, container images and so on).
    """

    name: str = Field(..., description="Unique resource name")
    kind: ResourceKind = Field(..., description="Resource kind tag")
    depends_on: List[str] = Field(
        default_factory=list,
        description="Names of resources that must exist before this one"
    )
    spec: Dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific properties of the resource"
    )

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Ensure name is not empty."""
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v

    @property
    def reference(self) -> ResourceReference:
        return ResourceReference(name=self.name, kind=self.kind)


class ServiceDefinition(BaseModel):
    """A microservice delivered by the pipeline runner."""

    name: str = Field(..., description="Service name")
    context: str = Field(".", description="Build context directory")
    repository: str = Field(..., description="Container registry repository")
    workload: str = Field(
        ...,
        description="Name of the workload resource that runs this service"
    )
    tag: str = Field("latest", description="Image tag to build and push")

    @field_validator('name', 'repository', 'workload')
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v


class DesiredState(BaseModel):
    """Declarative target configuration of infrastructure and workloads.

    Declaration order is significant: the planner uses it to break ties
    between resources of the same rank.
    """

    name: str = Field("default", description="Name of the environment")
    resources: List[ResourceDeclaration] = Field(
        default_factory=list,
        description="Resource declarations in declaration order"
    )
    services: List[ServiceDefinition] = Field(
        default_factory=list,
        description="Microservices delivered by the pipeline runner"
    )

    @model_validator(mode='after')
    def validate_unique_names(self) -> 'DesiredState':
        """Resource and service names must be unique."""
        seen = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"duplicate resource name '{resource.name}'")
            seen.add(resource.name)

        service_names = [s.name for s in self.services]
        if len(service_names) != len(set(service_names)):
            raise ValueError("duplicate service names in desired state")
        return self

    def get(self, name: str) -> Optional[ResourceDeclaration]:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None

    def get_service(self, name: str) -> Optional[ServiceDefinition]:
        for service in self.services:
            if service.name == name:
                return service
        return None

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'DesiredState':
        """Load a desired state from a YAML or JSON file.

        Args:
            path: File path; ``.json`` is parsed as JSON, anything else as YAML

        Returns:
            Validated DesiredState
        """
        file_path = Path(path)
        text = file_path.read_text(encoding='utf-8')
        if file_path.suffix == '.json':
            return cls.model_validate_json(text)
        return cls.model_validate(yaml.safe_load(text) or {})

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "staging",
                "resources": [
                    {"name": "vpc", "kind": "network", "spec": {"cidr": "10.0.0.0/16"}},
                    {"name": "eks", "kind": "cluster", "depends_on": ["vpc"],
                     "spec": {"node_count": 3}},
                ],
                "services": [
                    {"name": "orders", "repository": "registry.local/orders",
                     "workload": "orders-deployment"}
                ]
            }
        }
    )


class ObservedResource(BaseModel):
    """Live state of a resource as reported by a provider."""

    name: str
    kind: ResourceKind
    spec: Dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> ResourceReference:
        return ResourceReference(name=self.name, kind=self.kind)
