"""
Pipeline use cases — run a stack's pipeline, report pipeline state.

A pipeline delivers code onto resources its stack created, so it can
only run once that stack is materialized. Stage config may use the
same reference tokens as resources; they resolve against the handles
recorded in the manifest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from infracompose.adapters.stages import LocalStageRunner, MockStageRunner, StageRunner
from infracompose.core.config.loader import Composition, ConfigError, load_composition
from infracompose.core.engine.executor import generate_operation_id
from infracompose.core.engine.pipeline import PipelineRun, run_pipeline
from infracompose.core.errors import (
    EXIT_OK,
    EXIT_PROVISIONING,
    CompositionError,
    ValidationError,
    exit_code_for,
)
from infracompose.core.models.capability import CapabilityRef
from infracompose.core.models.manifest import DeploymentManifest, PipelineRecord
from infracompose.core.models.pipeline import PipelineStage
from infracompose.core.models.resource import render_config
from infracompose.core.persistence.audit import AuditEntry, AuditWriter
from infracompose.core.persistence.manifest_file import (
    default_manifest_path,
    load_manifest,
    save_manifest,
)
from infracompose.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Result of running a pipeline."""

    key: str = ""
    run: PipelineRun | None = None
    operation_id: str = ""
    error: str | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"pipeline": self.key, "operation_id": self.operation_id}
        if self.error:
            result["error"] = self.error
            result["exit_code"] = self.exit_code
        if self.run:
            result["run"] = self.run.to_dict()
        return result


@dataclass
class PipelineStatusResult:
    """Declared pipelines joined with their last recorded run."""

    pipelines: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error}
        return {"pipelines": self.pipelines}


def stage_params(
    stage: PipelineStage,
    stack: str,
    manifest: DeploymentManifest,
) -> dict[str, Any]:
    """Resolve a stage's config tokens against recorded handles.

    Raises:
        ValidationError: A token names a resource or export with no
            recorded handle.
    """
    record = manifest.stack(stack)
    handles = record.live_handles()

    def _lookup(scope: str, target: str) -> Any:
        if scope == "import":
            ref = CapabilityRef.parse(target)
            if not manifest.is_materialized(ref.stack):
                raise ValidationError(
                    f"Stage '{stage.name}' imports '{ref}' but stack '{ref.stack}' is not deployed"
                )
            exports = manifest.stacks[ref.stack].exports
            if ref.export not in exports:
                raise ValidationError(f"Stack '{ref.stack}' has no recorded export '{ref.export}'")
            handle = exports[ref.export]
            return handle.get(ref.attribute) if handle is not None else None
        resource_id, _, attribute = target.partition(".")
        if resource_id not in handles:
            raise ValidationError(
                f"Stage '{stage.name}' references '{resource_id}', "
                f"which stack '{stack}' has not materialized"
            )
        return handles[resource_id].get(attribute or None)

    return render_config(dict(stage.config), _lookup)


def run_stack_pipeline(
    key: str,
    config_path: Path | None = None,
    mock_mode: bool = False,
    runner: StageRunner | None = None,
    policy: RetryPolicy | None = None,
) -> PipelineResult:
    """Run the pipeline ``stack/name`` and record the outcome.

    Args:
        key: Pipeline key, 'stack/name'.
        config_path: Optional explicit path to infra.yml.
        mock_mode: Use the mock stage runner.
        runner: Optional pre-configured stage runner.
        policy: Backoff and timeout (attempts come from each stage).
    """
    result = PipelineResult(key=key)

    try:
        composition: Composition = load_composition(config_path)
        manifest_path = default_manifest_path(composition.root)
        manifest = load_manifest(manifest_path)
    except (ConfigError, CompositionError, ValueError) as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return result

    pipeline = composition.get_pipeline(key)
    if pipeline is None:
        error = ValidationError(f"Unknown pipeline '{key}' (expected 'stack/pipeline')")
        result.error = str(error)
        result.exit_code = exit_code_for(error)
        return result

    if not manifest.is_materialized(pipeline.stack):
        error = ValidationError(
            f"Stack '{pipeline.stack}' must be deployed before pipeline '{key}' can run"
        )
        result.error = str(error)
        result.exit_code = exit_code_for(error)
        return result

    if runner is None:
        runner = MockStageRunner() if mock_mode else LocalStageRunner()

    result.operation_id = generate_operation_id()
    started_at = datetime.now(UTC).isoformat()
    run = run_pipeline(
        pipeline,
        runner,
        params_for=lambda stage: stage_params(stage, pipeline.stack, manifest),
        policy=policy or RetryPolicy.from_env(),
    )
    result.run = run

    failed = run.failed_stage
    manifest.pipelines[pipeline.key] = PipelineRecord(
        name=pipeline.name,
        stack=pipeline.stack,
        status=run.status.value,
        stages={s.stage.name: s.status.value for s in run.stages},
        artifacts={s.output.name: s.output.location for s in run.stages if s.output},
        started_at=started_at,
        ended_at=datetime.now(UTC).isoformat(),
        error=failed.error if failed else None,
    )
    save_manifest(manifest, manifest_path)

    AuditWriter(project_root=composition.root).write(AuditEntry(
        operation_id=result.operation_id,
        operation_type="pipeline",
        environment=composition.settings.environment,
        stacks_affected=[pipeline.stack],
        status="ok" if run.succeeded else "failed",
        errors=[f"{failed.stage.name}: {failed.error}"] if failed else [],
        context={"pipeline": pipeline.key},
    ))

    if failed is not None:
        result.error = f"Stage '{failed.stage.name}' failed: {failed.error}"
        result.exit_code = EXIT_PROVISIONING
    return result


def get_pipeline_status(config_path: Path | None = None) -> PipelineStatusResult:
    """List every declared pipeline with its last recorded run."""
    result = PipelineStatusResult()

    try:
        composition = load_composition(config_path)
        manifest = load_manifest(default_manifest_path(composition.root))
    except (ConfigError, CompositionError, ValueError) as e:
        result.error = str(e)
        result.exit_code = exit_code_for(e)
        return result

    for stack in composition.stacks:
        for pipeline in stack.pipelines:
            record = manifest.pipelines.get(pipeline.key)
            result.pipelines.append({
                "key": pipeline.key,
                "stages": [s.name for s in pipeline.stages],
                "status": record.status if record else "pending",
                "stage_status": record.stages if record else {},
                "artifacts": record.artifacts if record else {},
                "ended_at": record.ended_at if record else None,
                "error": record.error if record else None,
            })
    return result
