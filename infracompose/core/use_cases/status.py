"""
Status use case — declared stacks joined with their recorded state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infracompose.core.config.loader import Composition, ConfigError, load_composition
from infracompose.core.errors import EXIT_OK, CompositionError, exit_code_for
from infracompose.core.models.manifest import DeploymentManifest
from infracompose.core.persistence.manifest_file import default_manifest_path, load_manifest
from infracompose.core.use_cases.deploy import build_registry


@dataclass
class StackStatus:
    """One row of the status table."""

    name: str
    declared: bool = True
    status: str = "pending"
    resources_total: int = 0
    resources_live: int = 0
    exports: dict[str, str | None] = field(default_factory=dict)
    materialized_at: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "declared": self.declared,
            "status": self.status,
            "resources_total": self.resources_total,
            "resources_live": self.resources_live,
            "exports": self.exports,
            "materialized_at": self.materialized_at,
            "last_error": self.last_error,
        }


@dataclass
class StatusResult:
    """Aggregated deployment status."""

    composition: Composition | None = None
    manifest: DeploymentManifest | None = None
    stacks: list[StackStatus] = field(default_factory=list)
    adapters: dict[str, dict[str, Any]] = field(default_factory=dict)
    error: str | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result: dict[str, Any] = {}
        if self.error:
            result["error"] = self.error
            return result

        if self.composition:
            result["project"] = {
                "name": self.composition.project_name,
                "description": self.composition.description,
                "root": str(self.composition.root),
                "environment": self.composition.settings.environment,
            }
        result["stacks"] = [s.to_dict() for s in self.stacks]
        result["adapters"] = self.adapters

        if self.manifest:
            op = self.manifest.last_operation
            result["deploy_order"] = self.manifest.deploy_order
            result["last_operation"] = op.model_dump()
            result["pipelines"] = {
                key: {"status": rec.status, "stages": rec.stages, "ended_at": rec.ended_at}
                for key, rec in self.manifest.pipelines.items()
            }
        return result


def get_status(config_path: Path | None = None) -> StatusResult:
    """Get the status of every declared or recorded stack.

    Stacks that exist only in the manifest (removed from infra.yml but
    never destroyed) are listed with ``declared=False``.
    """
    result = StatusResult()

    try:
        composition = load_composition(config_path)
        manifest = load_manifest(default_manifest_path(composition.root))
    except (ConfigError, CompositionError, ValueError) as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return result

    result.composition = composition
    result.manifest = manifest
    result.adapters = build_registry(composition).adapter_status()

    names = composition.stack_names + [n for n in manifest.stacks if n not in composition.stack_names]
    for name in names:
        stack = composition.get_stack(name)
        record = manifest.stacks.get(name)
        row = StackStatus(
            name=name,
            declared=stack is not None,
            resources_total=len(stack.resources) if stack else len(record.resources) if record else 0,
        )
        if record is not None:
            row.status = record.status
            row.resources_live = len(record.live_handles())
            row.exports = {
                export: handle.identifier if handle else None
                for export, handle in record.exports.items()
            }
            row.materialized_at = record.materialized_at
            row.last_error = record.last_error
        result.stacks.append(row)

    return result
