"""
Config check use case — validate infra.yml without deploying.

Loads the composition (schema, descriptors, tokens, pipelines) and runs
the resolver over it, so cycles and dangling imports surface before
anything is provisioned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infracompose.core.config.loader import Composition, ConfigError, load_composition
from infracompose.core.engine.resolver import order
from infracompose.core.errors import EXIT_OK, CompositionError, exit_code_for


@dataclass
class ConfigCheckResult:
    """Result of a configuration check."""

    composition: Composition | None = None
    config_path: Path | None = None
    order: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    exit_code: int = EXIT_OK

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
        }
        if self.composition:
            result["project"] = self.composition.project_name
            result["order"] = self.order
            result["stacks"] = [
                {
                    "name": s.name,
                    "resources": len(s.resources),
                    "exports": sorted(s.exports),
                    "imports": sorted(s.imports),
                    "pipelines": [p.name for p in s.pipelines],
                }
                for s in self.composition.stacks
            ]
        return result


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate the composition file and its stack graph."""
    result = ConfigCheckResult(config_path=config_path)

    try:
        composition = load_composition(config_path)
    except (ConfigError, CompositionError) as e:
        result.errors.append(str(e))
        result.exit_code = exit_code_for(e)
        return result

    result.composition = composition
    result.config_path = composition.path

    try:
        result.order = [s.name for s in order(composition.stacks)]
    except CompositionError as e:
        result.errors.append(str(e))
        result.exit_code = exit_code_for(e)

    return result
