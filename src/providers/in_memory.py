"""In-memory provider used for tests and local simulation.

The provider behaves like a cloud resource API keyed by resource name. It
supports fault injection so retry, halting and timeout behavior can be
exercised without touching a real account:

- fail_transient(): the next N calls for a resource raise TransientError
- fail_permanent(): every call for a resource raises PermanentError
- latency_seconds: artificial delay per call (eventual-consistency lag)
"""

import copy
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from src.providers.base import (
    BackoffStrategy,
    PermanentError,
    Provider,
    ProviderRegistry,
    RetryPolicy,
    TransientError,
)
from src.schemas.desired_state import ObservedResource, ResourceKind
from src.schemas.operation import Operation, OperationAction


logger = logging.getLogger(__name__)


class InMemoryProvider(Provider):
    """Dictionary-backed provider for a single resource kind."""

    def __init__(
        self,
        kind: ResourceKind,
        latency_seconds: float = 0.0,
        retry_policy: Optional[RetryPolicy] = None,
        initial: Optional[Dict[str, Dict[str, Any]]] = None
    ):
        """Initialize the provider.

        Args:
            kind: Resource kind this provider manages
            latency_seconds: Delay applied to every apply() call
            retry_policy: Overrides the default retry policy
            initial: Pre-existing resources, name -> spec
        """
        self.kind = ResourceKind(kind)
        self.latency_seconds = latency_seconds
        self._retry_policy = retry_policy
        self._lock = threading.Lock()
        self._resources: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})
        self._transient_faults: Dict[str, List[str]] = {}
        self._permanent_faults: Dict[str, str] = {}
        self._resource_latency: Dict[str, float] = {}
        self.calls: List[str] = []

    def fail_transient(self, name: str, times: int = 1, error_code: str = "RATE_LIMITED") -> None:
        with self._lock:
            self._transient_faults.setdefault(name, []).extend([error_code] * times)

    def fail_permanent(self, name: str, error_code: str = "QUOTA_EXCEEDED") -> None:
        with self._lock:
            self._permanent_faults[name] = error_code

    def clear_faults(self) -> None:
        with self._lock:
            self._transient_faults.clear()
            self._permanent_faults.clear()

    def set_latency(self, name: str, seconds: float) -> None:
        """Slow down calls for a single resource."""
        with self._lock:
            self._resource_latency[name] = seconds

    def apply(self, operation: Operation) -> Dict[str, Any]:
        name = operation.resource.name
        with self._lock:
            self.calls.append(operation.operation_id)
            delay = self._resource_latency.get(name, self.latency_seconds)

        if delay:
            time.sleep(delay)

        with self._lock:
            if name in self._permanent_faults:
                raise PermanentError(
                    self._permanent_faults[name],
                    f"{operation.operation_id} rejected by provider",
                    {"resource": name}
                )

            pending = self._transient_faults.get(name)
            if pending:
                error_code = pending.pop(0)
                raise TransientError(
                    error_code,
                    f"{operation.operation_id} throttled, try again",
                    {"resource": name}
                )

            if operation.action == OperationAction.DELETE:
                existed = self._resources.pop(name, None) is not None
                return {"deleted": existed}

            if operation.action == OperationAction.CREATE and name in self._resources:
                # Create is idempotent: an existing resource is converged in place
                logger.debug(f"{operation.operation_id} already exists, updating in place")

            self._resources[name] = copy.deepcopy(operation.spec)
            return {"name": name, "kind": self.kind.value}

    def list_resources(self) -> List[ObservedResource]:
        with self._lock:
            return [
                ObservedResource(name=name, kind=self.kind, spec=copy.deepcopy(spec))
                for name, spec in self._resources.items()
            ]

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            spec = self._resources.get(name)
            return copy.deepcopy(spec) if spec is not None else None

    def put(self, name: str, spec: Dict[str, Any]) -> None:
        """Mutate live state directly, simulating out-of-band drift."""
        with self._lock:
            self._resources[name] = copy.deepcopy(spec)

    def remove(self, name: str) -> None:
        """Drop a resource out of band, as if deleted from the console."""
        with self._lock:
            self._resources.pop(name, None)

    def get_retry_policy(self) -> RetryPolicy:
        if self._retry_policy is not None:
            return self._retry_policy
        return RetryPolicy(
            max_attempts=3,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            base_delay_seconds=0.01,
            max_delay_seconds=0.1
        )


def build_in_memory_registry(latency_seconds: float = 0.0) -> ProviderRegistry:
    """Create a ProviderRegistry with one InMemoryProvider per resource kind."""
    return ProviderRegistry([
        InMemoryProvider(kind, latency_seconds=latency_seconds) for kind in ResourceKind
    ])
