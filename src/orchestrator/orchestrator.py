"""Deployment orchestrator facade.

Wires the planner, executor, reconciler and pipeline runner together around a
single provider registry and exposes the four core operations:

- plan(desired) -> operations
- apply(operations) -> RunLog
- run_pipeline(service) -> PipelineRun
- reconcile(desired) -> operations
"""

import logging
from typing import Dict, List, Optional

from src.orchestrator.config import OrchestratorConfig
from src.orchestrator.executor import Executor
from src.orchestrator.pipeline import PipelineRunner
from src.orchestrator.planner import PlannerConfig, ResourcePlanner
from src.orchestrator.reconciler import StateReconciler
from src.orchestrator.run_store import RunStore
from src.providers.base import ProviderRegistry
from src.providers.images import ImageBuilder, InMemoryImageBuilder, InMemoryRegistry, RegistryClient
from src.providers.in_memory import build_in_memory_registry
from src.schemas.desired_state import DesiredState
from src.schemas.operation import Operation
from src.schemas.pipeline_run import PipelineRun
from src.schemas.run_log import RunLog


logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """Main entry point for provisioning and delivery.

    The orchestrator owns one of each component:
    1. ResourcePlanner - orders operations from the desired state
    2. Executor - applies operations concurrently with retries
    3. StateReconciler - computes corrective operations from live state
    4. PipelineRunner - builds, pushes and deploys services
    """

    def __init__(
        self,
        desired: DesiredState,
        registry: ProviderRegistry,
        builder: Optional[ImageBuilder] = None,
        registry_client: Optional[RegistryClient] = None,
        config: Optional[OrchestratorConfig] = None,
        planner_config: Optional[PlannerConfig] = None
    ):
        self.desired = desired
        self.registry = registry
        self.config = config or OrchestratorConfig()

        self.planner = ResourcePlanner(planner_config)
        self.executor = Executor(registry, self.config)
        self.reconciler = StateReconciler(
            registry,
            executor=self.executor,
            planner=self.planner,
            config=self.config
        )
        self.pipeline_runner = PipelineRunner(
            desired,
            builder=builder or InMemoryImageBuilder(),
            registry_client=registry_client or InMemoryRegistry(),
            executor=self.executor,
            run_store=RunStore(self.config.run_log_dir) if self.config.run_log_dir else None
        )

    @classmethod
    def simulated(
        cls,
        desired: DesiredState,
        config: Optional[OrchestratorConfig] = None
    ) -> 'DeploymentOrchestrator':
        """Build an orchestrator backed entirely by in-memory providers."""
        return cls(desired, build_in_memory_registry(), config=config)

    def plan(self, desired: Optional[DesiredState] = None) -> List[Operation]:
        return self.planner.plan(desired or self.desired)

    def apply(self, operations: List[Operation]) -> RunLog:
        return self.executor.apply(operations)

    def run_pipeline(self, service_name: str) -> PipelineRun:
        return self.pipeline_runner.run_pipeline(service_name)

    def run_pipelines(self, service_names: List[str]) -> Dict[str, PipelineRun]:
        return self.pipeline_runner.run_pipelines(service_names, max_workers=self.config.max_workers)

    def reconcile(self, desired: Optional[DesiredState] = None) -> List[Operation]:
        """Corrective operations for the given state, defaulting to the
        desired state with pipeline-deployed images pinned."""
        return self.reconciler.reconcile(desired or self.pipeline_runner.pinned_state())

    def converge(self, desired: Optional[DesiredState] = None) -> Optional[RunLog]:
        return self.reconciler.converge(desired or self.pipeline_runner.pinned_state())
