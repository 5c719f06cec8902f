"""Adapters — bindings to provisioning APIs and pipeline backends.

Public re-exports for convenient access.
"""

from infracompose.adapters.base import ExecutionContext, ProvisioningAdapter
from infracompose.adapters.local import LocalAdapter
from infracompose.adapters.mock import MockAdapter
from infracompose.adapters.registry import AdapterRegistry
from infracompose.adapters.stages import LocalStageRunner, MockStageRunner, StageRunner

__all__ = [
    "AdapterRegistry",
    "ExecutionContext",
    "LocalAdapter",
    "LocalStageRunner",
    "MockAdapter",
    "MockStageRunner",
    "ProvisioningAdapter",
    "StageRunner",
]
