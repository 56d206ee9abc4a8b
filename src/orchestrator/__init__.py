"""Deployment orchestration components.

This package intentionally avoids importing ``src.orchestrator.cli`` at
module import time. Doing so can pre-load the target module before
``python -m src.orchestrator.cli`` executes it, which triggers runpy's
"found in sys.modules" RuntimeWarning.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.orchestrator.executor import Executor
    from src.orchestrator.orchestrator import DeploymentOrchestrator
    from src.orchestrator.pipeline import PipelineRunner, PipelineStateError
    from src.orchestrator.planner import ResourcePlanner
    from src.orchestrator.reconciler import StateReconciler

__all__ = [
    "DeploymentOrchestrator",
    "Executor",
    "PipelineRunner",
    "PipelineStateError",
    "ResourcePlanner",
    "StateReconciler",
]

_MODULES = {
    "DeploymentOrchestrator": "src.orchestrator.orchestrator",
    "Executor": "src.orchestrator.executor",
    "PipelineRunner": "src.orchestrator.pipeline",
    "PipelineStateError": "src.orchestrator.pipeline",
    "ResourcePlanner": "src.orchestrator.planner",
    "StateReconciler": "src.orchestrator.reconciler",
}


def __getattr__(name: str):
    """Lazily expose orchestrator symbols without eager submodule imports."""
    if name in _MODULES:
        import importlib

        return getattr(importlib.import_module(_MODULES[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
