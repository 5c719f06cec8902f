"""
Domain models — Pydantic types for the composition engine.

All models are re-exported here for convenient access:

    from infracompose.core.models import Stack, ResourceDescriptor, CapabilityHandle
"""

from infracompose.core.models.capability import (
    CapabilityHandle,
    CapabilityRef,
    ExportSpec,
    ImportSpec,
)
from infracompose.core.models.manifest import (
    DeploymentManifest,
    OperationRecord,
    PipelineRecord,
    ResourceRecord,
    StackRecord,
)
from infracompose.core.models.pipeline import (
    Artifact,
    Pipeline,
    PipelineStage,
    StageAction,
    StageStatus,
)
from infracompose.core.models.receipt import Receipt
from infracompose.core.models.resource import ResourceDescriptor, ResourceKind, create
from infracompose.core.models.stack import Stack

__all__ = [
    "Artifact",
    "CapabilityHandle",
    "CapabilityRef",
    "DeploymentManifest",
    "ExportSpec",
    "ImportSpec",
    "OperationRecord",
    "Pipeline",
    "PipelineRecord",
    "PipelineStage",
    "Receipt",
    "ResourceDescriptor",
    "ResourceKind",
    "ResourceRecord",
    "Stack",
    "StackRecord",
    "StageAction",
    "StageStatus",
    "create",
]
