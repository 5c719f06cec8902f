"""
Stage runners — execute one pipeline stage and return its artifact.

The pipeline sequencer owns ordering and state; a runner only performs
the stage's action (fetch source, build, deploy) against whatever
system actually does the work. Failures are ProvisioningErrors, with
``retryable`` deciding whether the stage's own retry budget applies.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from infracompose.core.errors import ProvisioningError
from infracompose.core.models.pipeline import Artifact, PipelineStage, StageAction

logger = logging.getLogger(__name__)


class StageRunner(ABC):
    """Performs pipeline stage actions."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Runner identifier."""

    @abstractmethod
    def run(
        self,
        pipeline: str,
        stage: PipelineStage,
        input_artifact: Artifact | None,
        params: dict[str, Any],
    ) -> Artifact | None:
        """Run the stage.

        Returns:
            The produced artifact, or None when the stage produces none.

        Raises:
            ProvisioningError: The stage failed.
        """


class LocalStageRunner(StageRunner):
    """Simulates stages by deriving content-addressed artifacts.

    Source stages require a ``repository``; build stages require
    ``commands``; deploy stages require a ``deployment_group``. The
    digest of each artifact chains the previous one, so a changed
    source or build config yields a different deployable.
    """

    _REQUIRED = {
        StageAction.SOURCE: "repository",
        StageAction.BUILD: "commands",
        StageAction.DEPLOY: "deployment_group",
    }

    @property
    def name(self) -> str:
        return "local"

    def run(
        self,
        pipeline: str,
        stage: PipelineStage,
        input_artifact: Artifact | None,
        params: dict[str, Any],
    ) -> Artifact | None:
        required = self._REQUIRED[stage.action]
        if not params.get(required):
            raise ProvisioningError(
                f"{stage.action.value} stage '{stage.name}' needs '{required}'",
                resource_id=stage.name,
            )

        h = hashlib.sha256()
        h.update(stage.action.value.encode("utf-8"))
        h.update(json.dumps(params, sort_keys=True, default=str).encode("utf-8"))
        if input_artifact is not None:
            h.update(input_artifact.digest.encode("utf-8"))
        digest = h.hexdigest()[:16]

        logger.info("▸ %s: %s (%s) → %s", pipeline, stage.name, stage.action.value, digest)

        if stage.output_artifact is None:
            return None
        return Artifact(
            name=stage.output_artifact,
            location=f"local://{pipeline}/{stage.output_artifact}/{digest}",
            digest=digest,
        )


class MockStageRunner(StageRunner):
    """Test double: succeeds unless told otherwise, records every call."""

    def __init__(self) -> None:
        self._failures: dict[str, tuple[str, bool, int | None]] = {}
        self.calls: list[tuple[str, Artifact | None]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def set_failure(
        self,
        stage_name: str,
        error: str = "Mock stage failure",
        retryable: bool = False,
        times: int | None = None,
    ) -> None:
        """Make a stage fail (``times`` times, or always when None)."""
        self._failures[stage_name] = (error, retryable, times)

    def run(
        self,
        pipeline: str,
        stage: PipelineStage,
        input_artifact: Artifact | None,
        params: dict[str, Any],
    ) -> Artifact | None:
        self.calls.append((stage.name, input_artifact))

        if stage.name in self._failures:
            error, retryable, times = self._failures[stage.name]
            if times is None or times > 0:
                if times is not None:
                    self._failures[stage.name] = (error, retryable, times - 1)
                raise ProvisioningError(error, retryable=retryable, resource_id=stage.name)

        if stage.output_artifact is None:
            return None
        return Artifact(
            name=stage.output_artifact,
            location=f"mock://{pipeline}/{stage.output_artifact}",
            digest=f"mock-{stage.name}",
        )
