"""
Pipeline sequencer — runs stages strictly in order.

States per stage:
    PENDING → RUNNING      the previous stage SUCCEEDED (or first stage)
    RUNNING → SUCCEEDED    the runner returned
    RUNNING → FAILED       the runner raised; later stages stay PENDING

The pipeline's own state is the state of its last-started stage.
Retries are local to a stage and bounded by its ``max_attempts``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from infracompose.adapters.stages import StageRunner
from infracompose.core.errors import CompositionError, ProvisioningError
from infracompose.core.models.pipeline import Artifact, Pipeline, PipelineStage, StageStatus
from infracompose.core.reliability.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class StageTransitionError(CompositionError):
    """A stage was moved to a state its current state does not allow."""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StageRun:
    """Runtime state of one stage."""

    stage: PipelineStage
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    output: Artifact | None = None
    error: str | None = None
    started_at: str | None = None
    ended_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.stage.name,
            "action": self.stage.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": self.output.model_dump() if self.output else None,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


@dataclass
class PipelineRun:
    """State machine for one execution of a pipeline."""

    pipeline: Pipeline
    stages: list[StageRun] = field(default_factory=list)

    @classmethod
    def start(cls, pipeline: Pipeline) -> PipelineRun:
        return cls(pipeline=pipeline, stages=[StageRun(stage=s) for s in pipeline.stages])

    @property
    def status(self) -> StageStatus:
        """State of the last-started stage (PENDING if none started)."""
        started = [s for s in self.stages if s.status != StageStatus.PENDING]
        return started[-1].status if started else StageStatus.PENDING

    @property
    def succeeded(self) -> bool:
        return bool(self.stages) and all(s.status == StageStatus.SUCCEEDED for s in self.stages)

    @property
    def failed_stage(self) -> StageRun | None:
        for run in self.stages:
            if run.status == StageStatus.FAILED:
                return run
        return None

    def stage(self, name: str) -> StageRun:
        for run in self.stages:
            if run.stage.name == name:
                return run
        raise KeyError(name)

    def can_start(self, index: int) -> bool:
        if self.stages[index].status != StageStatus.PENDING:
            return False
        return index == 0 or self.stages[index - 1].status == StageStatus.SUCCEEDED

    def mark_running(self, index: int) -> None:
        if not self.can_start(index):
            run = self.stages[index]
            raise StageTransitionError(
                f"Stage '{run.stage.name}' cannot start from {run.status.value}"
                + (f" after '{self.stages[index - 1].stage.name}' "
                   f"{self.stages[index - 1].status.value}" if index else "")
            )
        run = self.stages[index]
        run.status = StageStatus.RUNNING
        run.started_at = _now_iso()

    def mark_succeeded(self, index: int, output: Artifact | None, attempts: int = 1) -> None:
        run = self._running(index)
        run.status = StageStatus.SUCCEEDED
        run.output = output
        run.attempts = attempts
        run.ended_at = _now_iso()

    def mark_failed(self, index: int, error: str, attempts: int = 1) -> None:
        run = self._running(index)
        run.status = StageStatus.FAILED
        run.error = error
        run.attempts = attempts
        run.ended_at = _now_iso()

    def _running(self, index: int) -> StageRun:
        run = self.stages[index]
        if run.status != StageStatus.RUNNING:
            raise StageTransitionError(
                f"Stage '{run.stage.name}' is {run.status.value}, not running"
            )
        return run

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline.key,
            "status": self.status.value,
            "stages": [s.to_dict() for s in self.stages],
        }


def run_pipeline(
    pipeline: Pipeline,
    runner: StageRunner,
    params_for: Callable[[PipelineStage], dict[str, Any]] | None = None,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> PipelineRun:
    """Run every stage in order, halting at the first failure.

    Args:
        pipeline: The pipeline to run.
        runner: Performs each stage's action.
        params_for: Resolves a stage's config (e.g. reference tokens).
            Defaults to the raw stage config.
        policy: Backoff and timeout; attempts come from each stage.
        sleep: Injected for tests.

    Returns:
        The finished PipelineRun. It never raises for stage failures.
    """
    pipeline.check()
    policy = policy or RetryPolicy()
    run = PipelineRun.start(pipeline)
    artifact: Artifact | None = None

    for index, stage in enumerate(pipeline.stages):
        run.mark_running(index)
        stage_policy = RetryPolicy(
            max_attempts=stage.max_attempts,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            timeout=policy.timeout,
            jitter=policy.jitter,
        )
        label = f"{pipeline.key}:{stage.name}"

        try:
            params = params_for(stage) if params_for else dict(stage.config)
            output, attempts = call_with_retry(
                lambda stage=stage, params=params, given=artifact: runner.run(
                    pipeline.key, stage, given, params
                ),
                stage_policy,
                label=label,
                sleep=sleep,
            )
        except ProvisioningError as e:
            run.mark_failed(index, e.message, attempts=e.attempts)
            logger.info("✗ %s failed: %s", label, e.message)
            break
        except CompositionError as e:
            run.mark_failed(index, str(e), attempts=1)
            logger.info("✗ %s failed: %s", label, e)
            break
        except Exception as e:
            # Runners should raise ProvisioningError; anything else still fails the stage
            run.mark_failed(index, f"Unexpected error: {e}", attempts=1)
            logger.error("Stage runner %s raised during %s: %s", runner.name, label, e)
            break

        if stage.output_artifact is not None and output is None:
            run.mark_failed(index, f"stage produced no '{stage.output_artifact}' artifact", attempts)
            break

        run.mark_succeeded(index, output, attempts)
        logger.info("✓ %s", label)
        artifact = output

    return run
