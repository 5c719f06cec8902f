"""
Deploy use cases — plan, deploy and destroy a composition.

These are the top-level orchestrators: load infra.yml, load the
manifest, plan, execute through the adapter registry, persist the
manifest and write the audit ledger. The full vertical slice from user
intent to recorded deployment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from infracompose.adapters.local import DEFAULT_STORE_FILE, LocalAdapter
from infracompose.adapters.mock import MockAdapter
from infracompose.adapters.registry import AdapterRegistry
from infracompose.core.config.loader import Composition, ConfigError, load_composition
from infracompose.core.engine.executor import (
    DeploymentPlan,
    DeploymentReport,
    execute_deploy,
    execute_destroy,
    generate_operation_id,
    plan_deploy,
    plan_destroy,
    write_audit_entry,
)
from infracompose.core.engine.resolver import downstream
from infracompose.core.errors import (
    EXIT_CANCELLED,
    EXIT_OK,
    CompositionError,
    exit_code_for,
)
from infracompose.core.models.manifest import DeploymentManifest
from infracompose.core.persistence.audit import AuditWriter
from infracompose.core.persistence.manifest_file import (
    DEFAULT_STATE_DIR,
    default_manifest_path,
    load_manifest,
    save_manifest,
)
from infracompose.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class DeployResult:
    """Result of a plan, deploy or destroy command."""

    plan: DeploymentPlan | None = None
    report: DeploymentReport | None = None
    composition: Composition | None = None
    manifest_path: Path | None = None
    error: str | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.error:
            result["error"] = self.error
            result["exit_code"] = self.exit_code
            if self.report is None:
                return result

        if self.composition:
            result["project_name"] = self.composition.project_name
            result["project_root"] = str(self.composition.root)
        if self.plan:
            result["plan"] = self.plan.to_dict()
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def build_registry(
    composition: Composition,
    mock_mode: bool = False,
    policy: RetryPolicy | None = None,
) -> AdapterRegistry:
    """The default registry: the local backend, or a mock in mock mode."""
    registry = AdapterRegistry(
        settings=composition.settings,
        policy=policy or RetryPolicy.from_env(),
        mock_mode=mock_mode,
    )
    registry.register(LocalAdapter(composition.root / DEFAULT_STATE_DIR / DEFAULT_STORE_FILE))
    if mock_mode:
        registry.set_mock_mode(True, MockAdapter())
    return registry


def _load(config_path: Path | None, result: DeployResult) -> DeploymentManifest | None:
    """Load composition and manifest into ``result``; None on error."""
    try:
        composition = load_composition(config_path)
    except (ConfigError, CompositionError) as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return None

    result.composition = composition
    result.manifest_path = default_manifest_path(composition.root)
    try:
        manifest = load_manifest(result.manifest_path)
    except ValueError as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return None

    manifest.project_name = composition.project_name
    manifest.account = composition.settings.account
    manifest.region = composition.settings.region
    return manifest


def plan_stacks(
    config_path: Path | None = None,
    stacks: list[str] | None = None,
    destroy: bool = False,
    cascade: bool = False,
) -> DeployResult:
    """Compute a deploy (or destroy) plan without touching anything."""
    result = DeployResult()
    manifest = _load(config_path, result)
    if manifest is None:
        return result
    assert result.composition is not None

    try:
        if destroy:
            if cascade and stacks:
                stacks = with_dependents(result.composition, stacks, manifest)
            result.plan = plan_destroy(manifest, stacks)
        else:
            result.plan = plan_deploy(result.composition.stacks, stacks, manifest)
    except CompositionError as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
    return result


def deploy_stacks(
    config_path: Path | None = None,
    stacks: list[str] | None = None,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
) -> DeployResult:
    """Deploy the requested stacks (all when None) and their dependencies.

    Args:
        config_path: Optional explicit path to infra.yml.
        stacks: Stack names to deploy. Upstream stacks are included.
        mock_mode: Use the mock adapter instead of the local backend.
        registry: Optional pre-configured adapter registry.

    Returns:
        DeployResult with plan, report and exit code.
    """
    result = DeployResult()
    manifest = _load(config_path, result)
    if manifest is None:
        return result
    composition = result.composition
    manifest_path = result.manifest_path
    assert composition is not None and manifest_path is not None

    operation_id = generate_operation_id()
    try:
        plan = plan_deploy(composition.stacks, stacks, manifest, operation_id)
    except CompositionError as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return result
    result.plan = plan

    if registry is None:
        registry = build_registry(composition, mock_mode=mock_mode)

    manifest.last_operation.started_at = datetime.now(UTC).isoformat()
    logger.info("Deploying %s (%s)", ", ".join(plan.order), operation_id)

    report = execute_deploy(
        plan, registry, manifest, save=lambda: save_manifest(manifest, manifest_path),
    )
    result.report = report
    write_audit_entry(
        report, AuditWriter(project_root=composition.root), environment=composition.settings.environment,
    )
    _finish(result, report)
    return result


def destroy_stacks(
    config_path: Path | None = None,
    stacks: list[str] | None = None,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    cascade: bool = False,
) -> DeployResult:
    """Tear down recorded stacks (all live ones when None), dependents first.

    With ``cascade``, the declared stacks that import from the selected
    ones (transitively) are torn down as well.
    """
    result = DeployResult()
    manifest = _load(config_path, result)
    if manifest is None:
        return result
    composition = result.composition
    manifest_path = result.manifest_path
    assert composition is not None and manifest_path is not None

    operation_id = generate_operation_id()
    try:
        if cascade and stacks:
            stacks = with_dependents(composition, stacks, manifest)
        plan = plan_destroy(manifest, stacks, operation_id)
    except CompositionError as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return result
    result.plan = plan

    if registry is None:
        registry = build_registry(composition, mock_mode=mock_mode)

    manifest.last_operation.started_at = datetime.now(UTC).isoformat()
    report = execute_destroy(
        plan, registry, manifest, save=lambda: save_manifest(manifest, manifest_path),
    )
    result.report = report
    write_audit_entry(
        report, AuditWriter(project_root=composition.root), environment=composition.settings.environment,
    )
    _finish(result, report)
    return result


def with_dependents(
    composition: Composition,
    names: list[str],
    manifest: DeploymentManifest,
) -> list[str]:
    """Add every recorded stack that imports from ``names``, transitively.

    Dependents come from the declared composition. Names no longer
    declared are kept as given.
    """
    declared = [n for n in names if composition.get_stack(n) is not None]
    expanded = [s.name for s in downstream(composition.stacks, declared)] if declared else []
    dependents = [n for n in expanded if n in names or n in manifest.stacks]
    return dependents + [n for n in names if n not in dependents]


def _finish(result: DeployResult, report: DeploymentReport) -> None:
    if report.cancelled:
        result.error = "Cancelled"
        result.exit_code = EXIT_CANCELLED
    elif report.failed:
        result.error = "Failed: " + ", ".join(report.failed)
        result.exit_code = report.exit_code
