"""Pipeline Runner for per-microservice delivery.

This module implements the runner that sequences the delivery stages of a
single service: Build → Push → Deploy.

State machine:

    pending → building → pushing → deploying → succeeded
                 ↘          ↘           ↘
                  failed     failed      failed

The runner handles:
- Strict stage sequencing: a stage starts only after the previous succeeded
- Retry logic for transient failures with exponential backoff per stage
- Deploy through the Executor, so the workload update is recorded in a RunLog
- Structured logging at each stage transition

Error Handling Strategy:
- **Retry**: Transient failures (registry throttling, builder unavailable) use
  the stage collaborator's retry policy
- **Stop**: Any other failure marks the run failed at that stage; later stages
  stay pending and never execute
- **No rollback**: Already-deployed workloads are left in place; an explicit
  re-run is required
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from src.orchestrator.executor import Executor
from src.orchestrator.logger import StructuredJSONLogger
from src.orchestrator.retry_policy import RetryContext, execute_with_retry
from src.orchestrator.run_store import RunStore, new_run_id
from src.providers.base import (
    OrchestrationError,
    PermanentError,
    RetryPolicy,
    ValidationError,
)
from src.providers.images import ImageBuilder, RegistryClient
from src.schemas.desired_state import (
    DesiredState,
    ResourceDeclaration,
    ResourceKind,
    ServiceDefinition,
)
from src.schemas.operation import Operation, OperationAction
from src.schemas.pipeline_run import (
    ACTIVE_STATUS,
    STAGE_ORDER,
    PipelineRun,
    PipelineStage,
    PipelineStatus,
    StageStatus,
)
from src.schemas.run_log import OperationStatus


logger = logging.getLogger(__name__)


class PipelineStateError(OrchestrationError):
    """Raised on an illegal pipeline state transition.

    Attributes:
        service: Service whose run was being transitioned
        current: Status before the attempted transition
        target: Requested status
    """

    def __init__(self, service: str, current: PipelineStatus, target: PipelineStatus):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(
            "ILLEGAL_TRANSITION",
            f"Pipeline for {service} cannot move from {current.value} to {target.value}",
            {"service": service, "from": current.value, "to": target.value}
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transition(run: PipelineRun, target: PipelineStatus) -> None:
    """Move a run to ``target``, enforcing the state machine."""
    if not run.can_transition(target):
        raise PipelineStateError(run.service, run.status, target)
    run.status = target


class PipelineRunner:
    """Runs build → push → deploy for services declared in a DesiredState.

    Each service's run is independent: runs for different services can
    proceed concurrently through run_pipelines().
    """

    def __init__(
        self,
        desired: DesiredState,
        builder: ImageBuilder,
        registry_client: RegistryClient,
        executor: Executor,
        run_store: Optional[RunStore] = None,
        structured_logger: Optional[StructuredJSONLogger] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize the runner.

        Args:
            desired: Desired state holding service definitions and workloads
            builder: Image builder collaborator
            registry_client: Container registry collaborator
            executor: Executor used for the deploy stage
            run_store: Where finished PipelineRuns are persisted (optional)
            structured_logger: Shared JSON logger for stage events; by default one
                is opened per call inside the run directory
            sleep: Sleep function used between retries
        """
        self.desired = desired
        self.builder = builder
        self.registry_client = registry_client
        self.executor = executor
        self.run_store = run_store
        self.structured_logger = structured_logger
        self._sleep = sleep
        self.deployed_images: Dict[str, str] = {}

    def run_pipeline(self, service_name: str, run_id: Optional[str] = None) -> PipelineRun:
        """Deliver one service.

        Args:
            service_name: Name of a service declared in the desired state
            run_id: Run id used for persistence (generated if not provided)

        Returns:
            PipelineRun in status succeeded or failed

        Raises:
            ValidationError: If the service or its workload is not declared
        """
        service, workload = self._resolve(service_name)
        run_id = run_id or new_run_id()
        owns_logger, structured_logger = self._open_logger(run_id)
        try:
            return self._execute(service, workload, run_id, structured_logger)
        finally:
            if owns_logger:
                structured_logger.close()

    def run_pipelines(
        self,
        service_names: List[str],
        max_workers: int = 4
    ) -> Dict[str, PipelineRun]:
        """Run several service pipelines concurrently.

        Every service is resolved before any starts, so a ValidationError
        means nothing was built or deployed. After that, a failure in one
        service's run does not affect the others.
        """
        targets = [self._resolve(name) for name in service_names]
        run_id = new_run_id()
        owns_logger, structured_logger = self._open_logger(run_id)
        try:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline") as pool:
                futures = {
                    service.name: pool.submit(
                        self._execute, service, workload, run_id, structured_logger
                    )
                    for service, workload in targets
                }
                return {name: future.result() for name, future in futures.items()}
        finally:
            if owns_logger:
                structured_logger.close()

    def pinned_state(self) -> DesiredState:
        """Desired state with deployed images written into workload specs.

        Reconciling against this state keeps the images the runner deployed
        instead of reverting them.
        """
        resources = []
        for resource in self.desired.resources:
            image = self.deployed_images.get(resource.name)
            if image and resource.kind == ResourceKind.WORKLOAD:
                resource = resource.model_copy(update={"spec": {**resource.spec, "image": image}})
            resources.append(resource)
        return self.desired.model_copy(update={"resources": resources})

    def _resolve(self, service_name: str) -> Tuple[ServiceDefinition, ResourceDeclaration]:
        service = self.desired.get_service(service_name)
        if service is None:
            raise ValidationError(
                "UNKNOWN_SERVICE",
                f"Service '{service_name}' is not declared",
                {"service": service_name}
            )
        return service, self._workload_for(service)

    def _open_logger(self, run_id: str) -> Tuple[bool, StructuredJSONLogger]:
        """Return (owned, logger); an owned logger writes run.log in the run directory."""
        if self.structured_logger is not None:
            return False, self.structured_logger
        return True, StructuredJSONLogger(
            output_directory=str(self.run_store.run_dir(run_id)) if self.run_store else None
        )

    def _execute(
        self,
        service: ServiceDefinition,
        workload: ResourceDeclaration,
        run_id: str,
        structured_logger: StructuredJSONLogger
    ) -> PipelineRun:
        run = PipelineRun(service=service.name)
        start = time.time()
        stages: Dict[PipelineStage, Callable[[], str]] = {
            PipelineStage.BUILD: lambda: self._build(service, run),
            PipelineStage.PUSH: lambda: self._push(run),
            PipelineStage.DEPLOY: lambda: self._deploy(workload, run),
        }

        for stage in STAGE_ORDER:
            transition(run, ACTIVE_STATUS[stage])
            if not self._run_stage(run, stage, stages[stage], structured_logger):
                transition(run, PipelineStatus.FAILED)
                run.failed_stage = stage
                break
        else:
            transition(run, PipelineStatus.SUCCEEDED)

        run.finished_at = _utcnow()
        structured_logger.log_pipeline_complete(
            run.service,
            run.status.value,
            time.time() - start,
            failed_stage=run.failed_stage.value if run.failed_stage else None
        )

        if self.run_store:
            self.run_store.save_pipeline_run(run_id, run)

        return run

    def _workload_for(self, service: ServiceDefinition) -> ResourceDeclaration:
        workload = self.desired.get(service.workload)
        if workload is None or workload.kind != ResourceKind.WORKLOAD:
            raise ValidationError(
                "MISSING_DEPENDENCY",
                f"Service '{service.name}' targets undeclared workload '{service.workload}'",
                {"service": service.name, "workload": service.workload}
            )
        return workload

    def _run_stage(
        self,
        run: PipelineRun,
        stage: PipelineStage,
        func: Callable[[], str],
        structured_logger: StructuredJSONLogger
    ) -> bool:
        """Execute one stage and record its outcome on the run.

        Returns:
            True if the stage succeeded
        """
        record = run.stage(stage)
        record.status = StageStatus.RUNNING
        record.started_at = _utcnow()
        ctx = RetryContext(name=f"{run.service}:{stage.value}")
        start_time = time.time()

        def attempt() -> str:
            structured_logger.log_stage_start(run.service, stage.value, ctx.attempt - 1)
            return func()

        try:
            summary = execute_with_retry(
                attempt,
                self._retry_policy_for(stage),
                context_name=ctx.name,
                context=ctx,
                sleep=self._sleep
            )
        except Exception as e:
            record.status = StageStatus.FAILED
            record.finished_at = _utcnow()
            record.attempts = ctx.attempt
            record.error_code = getattr(e, 'error_code', 'UNEXPECTED_ERROR')
            record.error_message = getattr(e, 'message', str(e))
            structured_logger.log_stage_failure(
                run.service,
                stage.value,
                record.error_code,
                record.error_message,
                attempts=ctx.attempt
            )
            if not isinstance(e, OrchestrationError):
                logger.error(f"Unexpected error in {ctx.name}: {e}", exc_info=True)
            return False

        record.status = StageStatus.SUCCEEDED
        record.finished_at = _utcnow()
        record.attempts = ctx.attempt
        structured_logger.log_stage_complete(
            run.service,
            stage.value,
            (time.time() - start_time) * 1000,
            summary
        )
        return True

    def _retry_policy_for(self, stage: PipelineStage) -> RetryPolicy:
        if stage == PipelineStage.BUILD:
            return self.builder.get_retry_policy()
        if stage == PipelineStage.PUSH:
            return self.registry_client.get_retry_policy()
        # The executor already retries the provider call
        return RetryPolicy(max_attempts=1)

    def _build(self, service: ServiceDefinition, run: PipelineRun) -> str:
        run.image_ref = self.builder.build(service)
        return run.image_ref

    def _push(self, run: PipelineRun) -> str:
        run.image_digest = self.registry_client.push(run.image_ref)
        return run.image_digest

    def _deploy(self, workload: ResourceDeclaration, run: PipelineRun) -> str:
        image = f"{run.image_ref}@{run.image_digest}"
        operation = Operation.build(
            action=OperationAction.UPDATE,
            resource=workload.reference,
            spec={**workload.spec, "image": image}
        )
        run_log = self.executor.apply([operation])
        entry = run_log.entry(operation.operation_id)

        if entry.status != OperationStatus.SUCCEEDED:
            raise PermanentError(
                entry.error_code or "DEPLOY_FAILED",
                entry.error_message or f"Deploy of {workload.name} failed",
                {"run_id": run_log.run_id, "operation_id": operation.operation_id}
            )

        self.deployed_images[workload.name] = image
        return f"{operation.operation_id} in run {run_log.run_id}"
