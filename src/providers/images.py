"""Image build and registry collaborators for the pipeline runner.

The pipeline runner only depends on the two narrow interfaces below. The
in-memory implementations produce deterministic image references and
sha256 digests so pipeline runs can be simulated and tested.
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from src.providers.base import (
    BackoffStrategy,
    PermanentError,
    RetryPolicy,
    TransientError,
)
from src.schemas.desired_state import ServiceDefinition


class ImageBuilder(ABC):
    """Builds a container image for a service."""

    @abstractmethod
    def build(self, service: ServiceDefinition) -> str:
        """Build the service image and return its local reference."""
        pass

    def get_retry_policy(self) -> RetryPolicy:
        # Builds are deterministic; only infrastructure hiccups are retried
        return RetryPolicy(max_attempts=2, retryable_errors=["BUILDER_UNAVAILABLE"])


class RegistryClient(ABC):
    """Pushes built images to a container registry."""

    @abstractmethod
    def push(self, image_ref: str) -> str:
        """Push an image and return the registry digest."""
        pass

    def get_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=4,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            base_delay_seconds=0.5,
            max_delay_seconds=10.0
        )


class _FaultInjector:
    """Shared fault bookkeeping for the in-memory collaborators."""

    def __init__(self):
        self._lock = threading.Lock()
        self._transient: Dict[str, List[str]] = {}
        self._permanent: Dict[str, str] = {}

    def fail_transient(self, key: str, times: int = 1, error_code: str = "REGISTRY_THROTTLED") -> None:
        with self._lock:
            self._transient.setdefault(key, []).extend([error_code] * times)

    def fail_permanent(self, key: str, error_code: str) -> None:
        with self._lock:
            self._permanent[key] = error_code

    def check(self, key: str, action: str) -> None:
        with self._lock:
            if key in self._permanent:
                raise PermanentError(self._permanent[key], f"{action} failed for {key}")
            pending = self._transient.get(key)
            if pending:
                raise TransientError(pending.pop(0), f"{action} temporarily failed for {key}")


class InMemoryImageBuilder(ImageBuilder, _FaultInjector):
    """Pretends to build images; faults are keyed by service name."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        _FaultInjector.__init__(self)
        self._retry_policy = retry_policy
        self.built: List[str] = []

    def build(self, service: ServiceDefinition) -> str:
        self.check(service.name, "build")
        image_ref = f"{service.repository}:{service.tag}"
        with self._lock:
            self.built.append(image_ref)
        return image_ref

    def get_retry_policy(self) -> RetryPolicy:
        return self._retry_policy or super().get_retry_policy()


class InMemoryRegistry(RegistryClient, _FaultInjector):
    """Stores pushed images; faults are keyed by image reference."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        _FaultInjector.__init__(self)
        self._retry_policy = retry_policy
        self.images: Dict[str, str] = {}

    def push(self, image_ref: str) -> str:
        self.check(image_ref, "push")
        digest = "sha256:" + hashlib.sha256(image_ref.encode("utf-8")).hexdigest()
        with self._lock:
            self.images[image_ref] = digest
        return digest

    def get_retry_policy(self) -> RetryPolicy:
        if self._retry_policy is not None:
            return self._retry_policy
        return RetryPolicy(
            max_attempts=3,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            base_delay_seconds=0.01,
            max_delay_seconds=0.1
        )
