"""Provider interfaces and in-memory implementations for external systems"""

from .base import (
    BackoffStrategy,
    OrchestrationError,
    PermanentError,
    Provider,
    ProviderRegistry,
    RetryPolicy,
    TransientError,
    ValidationError,
)
from .images import ImageBuilder, InMemoryImageBuilder, InMemoryRegistry, RegistryClient
from .in_memory import InMemoryProvider, build_in_memory_registry

__all__ = [
    "BackoffStrategy",
    "OrchestrationError",
    "PermanentError",
    "Provider",
    "ProviderRegistry",
    "RetryPolicy",
    "TransientError",
    "ValidationError",
    "ImageBuilder",
    "InMemoryImageBuilder",
    "InMemoryRegistry",
    "RegistryClient",
    "InMemoryProvider",
    "build_in_memory_registry",
]
