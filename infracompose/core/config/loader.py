"""
Composition loader — reads infra.yml into stacks.

This is the primary entry point for loading a composition. It reads
YAML, validates the file shape against Pydantic schemas, and builds
Stack objects through the same declaration API code would use, so a
composition file cannot express anything the engine would reject.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from infracompose.core.config.settings import ProviderSettings
from infracompose.core.models.pipeline import Pipeline, PipelineStage, StageAction
from infracompose.core.models.resource import ResourceKind, create
from infracompose.core.models.stack import Stack

logger = logging.getLogger(__name__)

# Default composition filename
COMPOSITION_FILE = "infra.yml"


class ConfigError(Exception):
    """Raised when the composition file is invalid or missing."""


# ── File schema ─────────────────────────────────────────────────────


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ResourceEntry(_Strict):
    id: str
    kind: str
    config: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    when: str | None = None


class ExportEntry(_Strict):
    resource: str
    attribute: str | None = None
    optional: bool = False


class ImportEntry(_Strict):
    ref: str
    optional: bool = False


class StageEntry(_Strict):
    name: str
    action: StageAction
    input: str | None = None
    output: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    max_attempts: int = 1


class PipelineEntry(_Strict):
    name: str
    stages: list[StageEntry] = Field(default_factory=list)


class StackEntry(_Strict):
    name: str
    description: str = ""
    resources: list[ResourceEntry] = Field(default_factory=list)
    exports: dict[str, str | ExportEntry] = Field(default_factory=dict)
    imports: list[str | ImportEntry] = Field(default_factory=list)
    pipelines: list[PipelineEntry] = Field(default_factory=list)


class CompositionFile(_Strict):
    project: str = ""
    description: str = ""
    provider: dict[str, Any] = Field(default_factory=dict)
    stacks: list[StackEntry] = Field(default_factory=list)


# ── Loaded composition ──────────────────────────────────────────────


class Composition(BaseModel):
    """A loaded composition: stacks in declaration order plus settings."""

    project_name: str = ""
    description: str = ""
    path: Path
    settings: ProviderSettings = Field(default_factory=ProviderSettings)
    stacks: list[Stack] = Field(default_factory=list)

    @property
    def root(self) -> Path:
        """Directory holding the composition file (state lives under it)."""
        return self.path.parent.resolve()

    @property
    def stack_names(self) -> list[str]:
        return [s.name for s in self.stacks]

    def get_stack(self, name: str) -> Stack | None:
        for stack in self.stacks:
            if stack.name == name:
                return stack
        return None

    def get_pipeline(self, key: str) -> Pipeline | None:
        """Find a pipeline by 'stack/name'."""
        stack_name, _, pipeline_name = key.partition("/")
        stack = self.get_stack(stack_name)
        return stack.get_pipeline(pipeline_name) if stack and pipeline_name else None


def find_composition_file(start_dir: Path | None = None) -> Path | None:
    """Search for infra.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to infra.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / COMPOSITION_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_composition(path: Path | None = None) -> Composition:
    """Load a composition file and build its stacks.

    Args:
        path: Explicit path to infra.yml. If None, searches upward.

    Returns:
        Composition with stacks in declaration order.

    Raises:
        ConfigError: The file is missing, unreadable, or malformed.
        ValidationError: The file is well-formed but declares an
            invalid composition (duplicate ids, bad tokens, ...).
    """
    if path is None:
        path = find_composition_file()

    if path is None:
        raise ConfigError(
            f"No {COMPOSITION_FILE} found. Create one, or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Composition file not found: {path}")

    logger.debug("Loading composition from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        parsed = CompositionFile.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid composition in {path}: {e}") from e

    try:
        settings = ProviderSettings.from_env(parsed.provider)
    except Exception as e:
        raise ConfigError(f"Invalid provider block in {path}: {e}") from e

    base_dir = path.parent.resolve()
    stacks = [_build_stack(entry, base_dir) for entry in parsed.stacks]

    composition = Composition(
        project_name=parsed.project or base_dir.name,
        description=parsed.description,
        path=path,
        settings=settings,
        stacks=stacks,
    )
    logger.info(
        "Loaded composition '%s' with %d stacks", composition.project_name, len(stacks)
    )
    return composition


def _build_stack(entry: StackEntry, base_dir: Path) -> Stack:
    stack = Stack.declare(entry.name, entry.description)

    for item in entry.imports:
        if isinstance(item, str):
            stack.import_capability(item)
        else:
            stack.import_capability(item.ref, optional=item.optional)

    for res in entry.resources:
        config = dict(res.config)
        if res.kind == ResourceKind.COMPUTE_INSTANCE.value and isinstance(config.get("user_data"), dict):
            config["user_data"] = compose_user_data(config["user_data"], base_dir)
        stack.add_resource(create(res.id, res.kind, config, res.depends_on, res.when))

    for name, export in entry.exports.items():
        if isinstance(export, str):
            stack.export(name, export)
        else:
            stack.export(name, export.resource, export.attribute, export.optional)

    for pipe in entry.pipelines:
        stack.add_pipeline(Pipeline(
            name=pipe.name,
            stages=[
                PipelineStage(
                    name=s.name,
                    action=s.action,
                    input_artifact=s.input,
                    output_artifact=s.output,
                    config=s.config,
                    max_attempts=s.max_attempts,
                )
                for s in pipe.stages
            ],
        ))

    return stack


def compose_user_data(block: dict[str, Any], base_dir: Path) -> str:
    """Join a user_data block into one boot script.

    ``commands`` come first, then the contents of each file listed in
    ``script_files`` (relative to the composition file), in order.
    """
    unknown = set(block) - {"commands", "script_files", "shebang"}
    if unknown:
        raise ConfigError(f"Unknown user_data keys: {', '.join(sorted(unknown))}")

    lines = [str(block.get("shebang", "#!/bin/bash"))]
    lines.extend(str(cmd) for cmd in block.get("commands", []) or [])
    for name in block.get("script_files", []) or []:
        script = base_dir / name
        try:
            lines.append(script.read_text(encoding="utf-8").rstrip("\n"))
        except OSError as e:
            raise ConfigError(f"Cannot read user_data script {script}: {e}") from e
    return "\n".join(lines) + "\n"
