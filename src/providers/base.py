"""Base Provider interface for the deployment orchestrator

This module defines the Provider interface that every external-system binding
must implement, along with the retry policy and error taxonomy shared by the
executor and the pipeline runner. Each provider owns exactly one resource kind
and is reached only through apply() and list_resources().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from src.schemas.desired_state import ObservedResource, ResourceKind
from src.schemas.operation import Operation


class BackoffStrategy(Enum):
    """Retry backoff strategies"""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


@dataclass
class RetryPolicy:
    """Retry policy configuration for provider calls

    Attributes:
        max_attempts: Maximum number of attempts (including initial attempt)
        backoff_strategy: Strategy for calculating retry delays
        base_delay_seconds: Base delay for backoff calculation
        max_delay_seconds: Maximum delay between retries
        retryable_errors: List of error codes that should trigger retry
    """
    max_attempts: int = 1
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    retryable_errors: List[str] = None

    def __post_init__(self):
        if self.retryable_errors is None:
            self.retryable_errors = []


class OrchestrationError(Exception):
    """Base exception for orchestrator failures

    Attributes:
        error_code: Machine-readable error code
        message: Human-readable error message
        context: Additional context about the failure
    """

    def __init__(self, error_code: str, message: str, context: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.context = context or {}
        super().__init__(f"[{error_code}] {message}")

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(OrchestrationError):
    """Desired state or operation list is malformed (cycles, missing references)."""


class TransientError(OrchestrationError):
    """Retryable failure: rate limits, throttling, eventual-consistency lag."""


class PermanentError(OrchestrationError):
    """Non-retryable failure; halts the dependency subtree of the operation."""


class Provider(ABC):
    """Base interface for external-system bindings

    A provider manages one resource kind (network, cluster, database,
    workload or monitoring) against a cloud API, a cluster control plane,
    a managed-database API or a chart installer.

    The provider interface has three core methods:
    - apply(): Perform a create/update/delete operation idempotently
    - list_resources(): Report the live state of every resource it manages
    - get_retry_policy(): Define retry behavior for transient failures
    """

    kind: ResourceKind = None

    @abstractmethod
    def apply(self, operation: Operation) -> Dict[str, Any]:
        """Apply a single operation

        Args:
            operation: Operation targeting a resource of this provider's kind

        Returns:
            Provider-specific result details (resource ids, endpoints, ...)

        Raises:
            TransientError: For failures that may succeed on retry
            PermanentError: For failures that will not succeed on retry
        """
        pass

    @abstractmethod
    def list_resources(self) -> List[ObservedResource]:
        """Return the observed live state of every managed resource"""
        pass

    def get_retry_policy(self) -> RetryPolicy:
        """Return retry policy for this provider

        Returns:
            RetryPolicy object defining retry behavior

        Note:
            Cloud APIs are rate limited and eventually consistent, so the
            default allows a few attempts with exponential backoff.
        """
        return RetryPolicy(
            max_attempts=4,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
            base_delay_seconds=0.5,
            max_delay_seconds=30.0
        )


class ProviderRegistry:
    """Maps resource kinds to the provider responsible for them."""

    def __init__(self, providers: Optional[List[Provider]] = None):
        self._providers: Dict[ResourceKind, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        if provider.kind is None:
            raise ValueError(f"{provider.__class__.__name__} does not declare a kind")
        self._providers[ResourceKind(provider.kind)] = provider

    def get(self, kind: ResourceKind) -> Provider:
        provider = self._providers.get(ResourceKind(kind))
        if provider is None:
            raise ValidationError(
                "NO_PROVIDER",
                f"No provider registered for kind '{ResourceKind(kind).value}'",
                {"kind": ResourceKind(kind).value}
            )
        return provider

    def kinds(self) -> List[ResourceKind]:
        return list(self._providers.keys())

    def observe_all(self) -> List[ObservedResource]:
        """Collect observed resources from every registered provider."""
        observed: List[ObservedResource] = []
        for kind in sorted(self._providers, key=lambda k: k.rank):
            observed.extend(self._providers[kind].list_resources())
        return observed
