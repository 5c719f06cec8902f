"""
DeploymentManifest — the persisted last-known deployment state.

Serialized to .state/manifest.json after every resource, so it always
reflects what actually exists. It drives idempotent re-deploys
(unchanged, already-succeeded resources are not re-submitted) and
destroy ordering (reverse of deploy order).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from infracompose.core.models.capability import CapabilityHandle


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


ResourceStatus = Literal["pending", "succeeded", "failed", "skipped", "destroyed"]
StackStatus = Literal[
    "pending", "materializing", "materialized", "failed", "skipped", "destroyed"
]


class ResourceRecord(BaseModel):
    """Last known state of one resource."""

    id: str
    kind: str = ""
    status: ResourceStatus = "pending"
    fingerprint: str = ""
    handle: CapabilityHandle | None = None
    error: str | None = None
    updated_at: str = Field(default_factory=_now_iso)


class StackRecord(BaseModel):
    """Last known state of one stack."""

    name: str
    status: StackStatus = "pending"
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)
    exports: dict[str, CapabilityHandle | None] = Field(default_factory=dict)
    imports: list[str] = Field(default_factory=list)
    materialized_at: str | None = None
    last_error: str | None = None

    def set_resource(self, resource_id: str, **kwargs: Any) -> ResourceRecord:
        """Update or create a resource record."""
        kwargs.setdefault("updated_at", _now_iso())
        if resource_id in self.resources:
            record = self.resources[resource_id]
            for key, value in kwargs.items():
                setattr(record, key, value)
        else:
            record = ResourceRecord(id=resource_id, **kwargs)
            self.resources[resource_id] = record
        return record

    def live_handles(self) -> dict[str, CapabilityHandle]:
        """Handles of every resource currently believed to exist."""
        return {
            rid: rec.handle
            for rid, rec in self.resources.items()
            if rec.status == "succeeded" and rec.handle is not None
        }

    @property
    def is_live(self) -> bool:
        """Whether any resource of this stack may still exist."""
        return any(rec.status in ("succeeded", "failed") for rec in self.resources.values())


class PipelineRecord(BaseModel):
    """Last run of one pipeline."""

    name: str
    stack: str = ""
    status: str = "pending"         # pending, running, succeeded, failed
    stages: dict[str, str] = Field(default_factory=dict)
    artifacts: dict[str, str] = Field(default_factory=dict)
    started_at: str | None = None
    ended_at: str | None = None
    error: str | None = None


class OperationRecord(BaseModel):
    """Summary of the last deploy/destroy run."""

    operation_id: str = ""
    command: str = ""
    started_at: str = ""
    ended_at: str = ""
    status: str = ""  # ok, partial, failed, cancelled
    stacks_completed: list[str] = Field(default_factory=list)
    stacks_failed: list[str] = Field(default_factory=list)
    stacks_skipped: list[str] = Field(default_factory=list)


class DeploymentManifest(BaseModel):
    """Root state model — serialized to .state/manifest.json."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = 1

    # ── Identity ─────────────────────────────────────────────────
    project_name: str = ""
    account: str = ""
    region: str = ""

    # ── Timestamps ───────────────────────────────────────────────
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    # ── Deployment state ─────────────────────────────────────────
    deploy_order: list[str] = Field(default_factory=list)
    stacks: dict[str, StackRecord] = Field(default_factory=dict)
    pipelines: dict[str, PipelineRecord] = Field(default_factory=dict)

    # ── Last operation ───────────────────────────────────────────
    last_operation: OperationRecord = Field(default_factory=OperationRecord)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def stack(self, name: str) -> StackRecord:
        """Get or create the record for a stack."""
        if name not in self.stacks:
            self.stacks[name] = StackRecord(name=name)
        return self.stacks[name]

    def is_materialized(self, name: str) -> bool:
        """Whether a stack completed materialization and was not destroyed since."""
        record = self.stacks.get(name)
        return record is not None and record.status == "materialized"

    def record_deployed(self, name: str) -> None:
        """Move a stack to the end of the deploy order."""
        if name in self.deploy_order:
            self.deploy_order.remove(name)
        self.deploy_order.append(name)
