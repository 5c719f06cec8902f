"""
Pipeline models — ordered build/deploy stages.

A pipeline is a strict sequence of stages (typically source → build →
deploy). Each stage consumes the artifact the previous stage produced.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from infracompose.core.errors import ValidationError


class StageAction(StrEnum):
    """What a stage does."""

    SOURCE = "source"
    BUILD = "build"
    DEPLOY = "deploy"


class StageStatus(StrEnum):
    """Per-stage state. SUCCEEDED and FAILED are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Artifact(BaseModel):
    """A named bundle passed between stages."""

    model_config = ConfigDict(frozen=True)

    name: str
    location: str = ""
    digest: str = ""


class PipelineStage(BaseModel):
    """One step of a pipeline."""

    model_config = ConfigDict(frozen=True)

    name: str
    action: StageAction
    input_artifact: str | None = None
    output_artifact: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = 1


class Pipeline(BaseModel):
    """An ordered sequence of stages owned by a stack."""

    name: str
    stack: str = ""
    stages: list[PipelineStage] = Field(default_factory=list)

    @property
    def key(self) -> str:
        """'stack/name' — unique across the composition."""
        return f"{self.stack}/{self.name}" if self.stack else self.name

    def check(self) -> None:
        """Validate stage names and artifact chaining.

        Raises:
            ValidationError: Empty pipeline, duplicate stage names, or a
                stage whose input is not the previous stage's output.
        """
        if not self.stages:
            raise ValidationError(f"Pipeline '{self.key}' has no stages")

        seen: set[str] = set()
        previous: PipelineStage | None = None
        for stage in self.stages:
            if stage.name in seen:
                raise ValidationError(
                    f"Pipeline '{self.key}' declares stage '{stage.name}' twice"
                )
            seen.add(stage.name)

            if stage.max_attempts < 1:
                raise ValidationError(
                    f"Stage '{stage.name}' in pipeline '{self.key}' needs max_attempts >= 1"
                )

            if previous is None:
                if stage.input_artifact is not None:
                    raise ValidationError(
                        f"First stage '{stage.name}' of pipeline '{self.key}' "
                        "cannot take an input artifact"
                    )
            elif stage.input_artifact != previous.output_artifact:
                raise ValidationError(
                    f"Stage '{stage.name}' of pipeline '{self.key}' takes "
                    f"'{stage.input_artifact}' but '{previous.name}' produces "
                    f"'{previous.output_artifact}'"
                )
            previous = stage
