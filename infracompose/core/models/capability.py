"""
Capability models — what one stack hands to another.

A CapabilityHandle is the live result of materializing a resource:
its ARN-equivalent identifier plus whatever metadata consumers need.
Stacks export handles by name; other stacks import them through a
CapabilityRef ("Stack.export" or "Stack.export.attribute").
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from infracompose.core.errors import ValidationError

_NAME = r"[A-Za-z][A-Za-z0-9_\-]*"
_REF_RE = re.compile(rf"^({_NAME})\.({_NAME})(?:\.({_NAME}))?$")


class CapabilityHandle(BaseModel):
    """Opaque reference to a materialized resource."""

    model_config = ConfigDict(frozen=True)

    identifier: str                  # ARN-equivalent id
    kind: str = ""
    stack: str = ""
    resource_id: str = ""
    endpoint: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    def get(self, attribute: str | None = None) -> Any:
        """Look up an attribute; None if the handle does not carry it."""
        if attribute in (None, "identifier", "arn", "id"):
            return self.identifier
        if attribute == "endpoint":
            return self.endpoint
        return self.attributes.get(attribute)


class CapabilityRef(BaseModel):
    """A reference to an exported capability of another stack."""

    model_config = ConfigDict(frozen=True)

    stack: str
    export: str
    attribute: str | None = None

    @classmethod
    def parse(cls, text: str) -> CapabilityRef:
        """Parse 'Stack.export' or 'Stack.export.attribute'."""
        match = _REF_RE.match(text.strip())
        if match is None:
            raise ValidationError(
                f"Invalid capability reference '{text}' "
                "(expected 'Stack.export' or 'Stack.export.attribute')"
            )
        stack, export, attribute = match.groups()
        return cls(stack=stack, export=export, attribute=attribute)

    @property
    def key(self) -> str:
        """The 'Stack.export' part, without the attribute."""
        return f"{self.stack}.{self.export}"

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.key}.{self.attribute}"
        return self.key


class ExportSpec(BaseModel):
    """Which resource (and attribute) a stack export publishes.

    Optional exports publish an absent capability instead of failing
    when the resource was skipped or the attribute is missing, so
    consumers can branch on presence.
    """

    model_config = ConfigDict(frozen=True)

    resource: str
    attribute: str | None = None
    optional: bool = False


class ImportSpec(BaseModel):
    """A capability a stack consumes from another stack."""

    model_config = ConfigDict(frozen=True)

    ref: CapabilityRef
    optional: bool = False
