"""
Stack model — a named, independently deployable bundle of resources.

A stack owns an ordered list of resource descriptors, the capabilities
it exports to other stacks, the capabilities it imports from them, and
the pipelines that deliver code onto its resources.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from infracompose.core.errors import (
    DuplicateExportError,
    DuplicateIdError,
    ProvisioningError,
    ValidationError,
)
from infracompose.core.models.capability import (
    CapabilityHandle,
    CapabilityRef,
    ExportSpec,
    ImportSpec,
)
from infracompose.core.models.pipeline import Pipeline
from infracompose.core.models.receipt import Receipt
from infracompose.core.models.resource import ResourceDescriptor, render_config

if TYPE_CHECKING:
    from infracompose.adapters.registry import AdapterRegistry
    from infracompose.core.engine.capabilities import CapabilityRegistry
    from infracompose.core.models.manifest import StackRecord

logger = logging.getLogger(__name__)

_STACK_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")

ReceiptCallback = Callable[[ResourceDescriptor, Receipt], None]


class Stack(BaseModel):
    """Resource declarations plus the capabilities they share."""

    name: str
    description: str = ""
    resources: list[ResourceDescriptor] = Field(default_factory=list)
    exports: dict[str, ExportSpec] = Field(default_factory=dict)
    imports: dict[str, ImportSpec] = Field(default_factory=dict)   # keyed by "Stack.export"
    pipelines: list[Pipeline] = Field(default_factory=list)

    # ── Declaration ──────────────────────────────────────────────

    @classmethod
    def declare(cls, name: str, description: str = "") -> Stack:
        """Start declaring a new, empty stack."""
        if not isinstance(name, str) or not _STACK_NAME_RE.match(name):
            raise ValidationError(f"Invalid stack name {name!r}")
        return cls(name=name, description=description)

    def get(self, resource_id: str) -> ResourceDescriptor | None:
        """Look up a resource descriptor by id."""
        for descriptor in self.resources:
            if descriptor.id == resource_id:
                return descriptor
        return None

    @property
    def resource_ids(self) -> list[str]:
        return [d.id for d in self.resources]

    def add_resource(self, descriptor: ResourceDescriptor) -> None:
        """Append a resource.

        Dependencies must already be declared in this stack, so the
        declaration order is always a valid materialization order.
        Capabilities referenced by the descriptor are imported
        implicitly (optional when only used as a ``when`` condition).
        """
        if self.get(descriptor.id) is not None:
            raise DuplicateIdError(self.name, descriptor.id)

        known = set(self.resource_ids)
        unknown = sorted(descriptor.depends_on - known)
        if unknown:
            raise ValidationError(
                f"Resource '{descriptor.id}' in stack '{self.name}' depends on "
                f"undeclared resource(s): {', '.join(unknown)}"
            )

        condition = descriptor.when.key if descriptor.when else None
        for ref in descriptor.imports:
            if ref.key not in self.imports:
                self.import_capability(ref, optional=ref.key == condition)

        self.resources.append(descriptor)

    def export(
        self,
        name: str,
        resource: str,
        attribute: str | None = None,
        optional: bool = False,
    ) -> None:
        """Publish a resource (or one of its attributes) under a name."""
        if name in self.exports:
            raise DuplicateExportError(self.name, name)
        if self.get(resource) is None:
            raise ValidationError(
                f"Stack '{self.name}' exports '{name}' from unknown resource '{resource}'"
            )
        self.exports[name] = ExportSpec(resource=resource, attribute=attribute, optional=optional)

    def import_capability(self, ref: CapabilityRef | str, optional: bool = False) -> None:
        """Declare that this stack consumes another stack's export."""
        if isinstance(ref, str):
            ref = CapabilityRef.parse(ref)
        if ref.stack == self.name:
            raise ValidationError(f"Stack '{self.name}' cannot import its own export '{ref}'")
        key = ref.key
        existing = self.imports.get(key)
        if existing is not None:
            # A required use anywhere makes the import required.
            if existing.optional and not optional:
                self.imports[key] = ImportSpec(ref=existing.ref, optional=False)
            return
        self.imports[key] = ImportSpec(
            ref=ref.model_copy(update={"attribute": None}),
            optional=optional,
        )

    def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Attach a pipeline to this stack."""
        if any(p.name == pipeline.name for p in self.pipelines):
            raise ValidationError(f"Stack '{self.name}' already has pipeline '{pipeline.name}'")
        pipeline = pipeline.model_copy(update={"stack": self.name})
        pipeline.check()
        self.pipelines.append(pipeline)
        return pipeline

    def get_pipeline(self, name: str) -> Pipeline | None:
        for pipeline in self.pipelines:
            if pipeline.name == name:
                return pipeline
        return None

    @property
    def depends_on_stacks(self) -> list[str]:
        """Names of the stacks this stack imports from, in declaration order."""
        return list(dict.fromkeys(spec.ref.stack for spec in self.imports.values()))

    # ── Materialization ──────────────────────────────────────────

    def materialize(
        self,
        provisioner: AdapterRegistry,
        capabilities: CapabilityRegistry,
        previous: StackRecord | None = None,
        on_receipt: ReceiptCallback | None = None,
    ) -> dict[str, CapabilityHandle]:
        """Provision every resource in declaration order.

        Resources that already succeeded with an identical fingerprint
        in ``previous`` reuse their recorded handle and are not
        submitted again. Resources whose ``when`` capability is absent,
        or that depend on a skipped resource, are skipped.

        Returns:
            Handles of the materialized resources, keyed by resource id.

        Raises:
            ProvisioningError: On the first failed resource. ``handles``
                on the error holds what was materialized before it;
                later resources are never submitted.
        """
        handles: dict[str, CapabilityHandle] = {}
        skipped: set[str] = set()

        def _emit(descriptor: ResourceDescriptor, receipt: Receipt) -> None:
            if on_receipt is not None:
                on_receipt(descriptor, receipt)

        def _lookup(scope: str, target: str) -> Any:
            if scope == "import":
                ref = CapabilityRef.parse(target)
                handle = capabilities.resolve(ref.stack, ref.export)
                return handle.get(ref.attribute) if handle is not None else None
            resource_id, _, attribute = target.partition(".")
            if resource_id in skipped:
                return None
            if resource_id not in handles:
                raise ValidationError(
                    f"Stack '{self.name}' references '{resource_id}' before it is materialized"
                )
            return handles[resource_id].get(attribute or None)

        for descriptor in self.resources:
            reason = self._skip_reason(descriptor, skipped, capabilities)
            if reason:
                skipped.add(descriptor.id)
                logger.info("⊘ %s/%s skipped: %s", self.name, descriptor.id, reason)
                _emit(descriptor, Receipt.skip(
                    adapter="engine", resource_id=descriptor.id, stack=self.name, reason=reason,
                ))
                continue

            prior = previous.resources.get(descriptor.id) if previous else None
            if (
                prior is not None
                and prior.status == "succeeded"
                and prior.handle is not None
                and prior.fingerprint == descriptor.fingerprint
            ):
                handles[descriptor.id] = prior.handle
                logger.debug("= %s/%s unchanged, reusing %s", self.name, descriptor.id, prior.handle.identifier)
                _emit(descriptor, Receipt.success(
                    adapter="engine",
                    resource_id=descriptor.id,
                    stack=self.name,
                    handle=prior.handle,
                    output="unchanged",
                    attempts=0,
                    metadata={"reused": True},
                ))
                continue

            params = render_config(descriptor.config, _lookup)
            receipt = provisioner.apply(descriptor, stack=self.name, params=params)
            _emit(descriptor, receipt)

            if not receipt.ok or receipt.handle is None:
                error = ProvisioningError(
                    receipt.error or "adapter returned no handle",
                    retryable=receipt.retryable,
                    resource_id=descriptor.id,
                )
                error.handles = dict(handles)
                raise error

            handles[descriptor.id] = receipt.handle

        return handles

    def _skip_reason(
        self,
        descriptor: ResourceDescriptor,
        skipped: set[str],
        capabilities: CapabilityRegistry,
    ) -> str:
        """Why a resource must be skipped, or '' to provision it."""
        if descriptor.when is not None:
            handle = capabilities.resolve(descriptor.when.stack, descriptor.when.export)
            if handle is None or handle.get(descriptor.when.attribute) is None:
                return f"capability '{descriptor.when}' is absent"
        blocked = sorted(descriptor.depends_on & skipped)
        if blocked:
            return f"depends on skipped resource(s): {', '.join(blocked)}"
        return ""

    def exported_handles(
        self,
        handles: dict[str, CapabilityHandle],
    ) -> dict[str, CapabilityHandle | None]:
        """Compute the capability each export publishes.

        Raises:
            ValidationError: A required export has no value.
        """
        published: dict[str, CapabilityHandle | None] = {}
        for name, spec in self.exports.items():
            handle = handles.get(spec.resource)
            value: CapabilityHandle | None = None
            if handle is not None and spec.attribute:
                attr = handle.get(spec.attribute)
                if attr is not None:
                    value = CapabilityHandle(
                        identifier=str(attr),
                        kind=handle.kind,
                        stack=self.name,
                        resource_id=spec.resource,
                        attributes={"source": handle.identifier},
                    )
            elif handle is not None:
                value = handle

            if value is None and not spec.optional:
                raise ValidationError(
                    f"Stack '{self.name}' cannot export '{name}': "
                    f"resource '{spec.resource}' has no "
                    + (f"attribute '{spec.attribute}'" if spec.attribute else "handle")
                )
            published[name] = value
        return published

    def publish_exports(
        self,
        handles: dict[str, CapabilityHandle],
        capabilities: CapabilityRegistry,
    ) -> dict[str, CapabilityHandle | None]:
        """Publish every export of this stack to the capability registry."""
        published = self.exported_handles(handles)
        for name, handle in published.items():
            capabilities.publish(self.name, name, handle)
        return published
