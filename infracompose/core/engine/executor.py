"""
Engine executor — the central deployment loop.

Takes the declared stacks, orders them, materializes each through the
adapter registry, publishes exports to the capability registry, and
records every resource outcome in the deployment manifest as it
happens.

Flow:
    stacks → resolve order → plan → materialize stack by stack → publish → persist

A failed stack halts only itself and the stacks that import from it;
independent stacks keep going. Destroy walks the manifest's deploy
order backwards.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from infracompose.adapters.registry import AdapterRegistry
from infracompose.core.engine.capabilities import CapabilityRegistry
from infracompose.core.engine.resolver import order, upstream
from infracompose.core.errors import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_PROVISIONING,
    CompositionError,
    ProvisioningError,
    ValidationError,
    exit_code_for,
)
from infracompose.core.models.manifest import DeploymentManifest, StackRecord
from infracompose.core.models.receipt import Receipt
from infracompose.core.models.resource import ResourceDescriptor
from infracompose.core.models.stack import Stack
from infracompose.core.persistence.audit import AuditEntry, AuditWriter

logger = logging.getLogger(__name__)

ResourceAction = Literal["create", "update", "unchanged", "destroy"]
OutcomeStatus = Literal["completed", "failed", "skipped", "cancelled"]


@dataclass
class ResourcePlan:
    """What a run intends to do with one resource."""

    resource_id: str
    kind: str
    action: ResourceAction
    depends_on: list[str] = field(default_factory=list)
    condition: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.resource_id,
            "kind": self.kind,
            "action": self.action,
            "depends_on": self.depends_on,
            "condition": self.condition,
        }


@dataclass
class DeploymentPlan:
    """An ordered set of stacks to deploy or destroy."""

    operation_id: str = ""
    command: str = "deploy"
    order: list[str] = field(default_factory=list)
    requested: list[str] = field(default_factory=list)
    resources: dict[str, list[ResourcePlan]] = field(default_factory=dict)
    stacks: dict[str, Stack] = field(default_factory=dict)

    @property
    def total_resources(self) -> int:
        return sum(len(r) for r in self.resources.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "command": self.command,
            "requested": self.requested,
            "order": self.order,
            "stacks": {
                name: {
                    "imports": sorted(self.stacks[name].imports) if name in self.stacks else [],
                    "resources": [r.to_dict() for r in self.resources.get(name, [])],
                }
                for name in self.order
            },
        }


@dataclass
class StackOutcome:
    """What happened to one stack during a run."""

    name: str
    status: OutcomeStatus
    receipts: list[Receipt] = field(default_factory=list)
    error: str | None = None
    failed_resource: str | None = None
    exit_code: int = EXIT_OK      # set when the stack failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "error": self.error,
            "exit_code": self.exit_code,
            "failed_resource": self.failed_resource,
            "receipts": [r.model_dump(mode="json") for r in self.receipts],
        }


@dataclass
class DeploymentReport:
    """Result of executing a plan."""

    operation_id: str = ""
    command: str = "deploy"
    outcomes: dict[str, StackOutcome] = field(default_factory=dict)
    cancelled: bool = False
    duration_ms: int = 0

    def _with(self, status: str) -> list[str]:
        return [name for name, o in self.outcomes.items() if o.status == status]

    @property
    def completed(self) -> list[str]:
        return self._with("completed")

    @property
    def failed(self) -> list[str]:
        return self._with("failed")

    @property
    def skipped(self) -> list[str]:
        return self._with("skipped")

    @property
    def receipts(self) -> list[Receipt]:
        return [r for o in self.outcomes.values() for r in o.receipts]

    @property
    def all_ok(self) -> bool:
        return not self.cancelled and not self.failed and not self.skipped

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.all_ok:
            return "ok"
        if self.completed:
            return "partial"
        return "failed"

    @property
    def exit_code(self) -> int:
        """Process exit code for the run.

        A composition error in any failed stack outranks provisioning
        failures, since retrying will not fix it.
        """
        if self.cancelled:
            return EXIT_CANCELLED
        codes = [self.outcomes[n].exit_code or EXIT_PROVISIONING for n in self.failed]
        if not codes:
            return EXIT_OK
        return next((c for c in codes if c != EXIT_PROVISIONING), EXIT_PROVISIONING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "command": self.command,
            "status": self.status,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "stacks": [o.to_dict() for o in self.outcomes.values()],
        }


# ── Planning ─────────────────────────────────────────────────────────


def _resource_action(descriptor: ResourceDescriptor, record: StackRecord | None) -> ResourceAction:
    prior = record.resources.get(descriptor.id) if record else None
    if prior is None or prior.status != "succeeded":
        return "create"
    if prior.fingerprint == descriptor.fingerprint:
        return "unchanged"
    return "update"


def plan_deploy(
    stacks: Iterable[Stack],
    names: Iterable[str] | None = None,
    manifest: DeploymentManifest | None = None,
    operation_id: str = "",
) -> DeploymentPlan:
    """Order the requested stacks (plus everything they import from).

    Raises:
        CyclicDependencyError: The import graph has a cycle.
        ValidationError: Unknown stack names or imports.
    """
    stacks = list(stacks)
    requested = list(names or [])
    selected = upstream(stacks, requested) if requested else stacks
    ordered = order(selected)
    manifest = manifest or DeploymentManifest()

    plan = DeploymentPlan(
        operation_id=operation_id,
        command="deploy",
        requested=requested or [s.name for s in stacks],
    )
    for stack in ordered:
        record = manifest.stacks.get(stack.name)
        plan.order.append(stack.name)
        plan.stacks[stack.name] = stack
        plan.resources[stack.name] = [
            ResourcePlan(
                resource_id=d.id,
                kind=d.kind.value,
                action=_resource_action(d, record),
                depends_on=sorted(d.depends_on),
                condition=str(d.when) if d.when else None,
            )
            for d in stack.resources
        ]
    return plan


def plan_destroy(
    manifest: DeploymentManifest,
    names: Iterable[str] | None = None,
    operation_id: str = "",
) -> DeploymentPlan:
    """Order stacks for teardown: reverse of the recorded deploy order.

    Raises:
        ValidationError: Unknown stacks, or a live stack that imports
            from a stack being destroyed but is not itself selected.
    """
    live = {name: rec for name, rec in manifest.stacks.items() if rec.is_live}
    requested = list(names or [])
    if requested:
        unknown = [n for n in requested if n not in manifest.stacks]
        if unknown:
            raise ValidationError(f"Stack(s) not in the manifest: {', '.join(unknown)}")
        selected = {n for n in requested if n in live}
    else:
        selected = set(live)

    blockers = sorted(
        f"{name} (imports from {', '.join(sorted(_imported_stacks(rec) & selected))})"
        for name, rec in live.items()
        if name not in selected and _imported_stacks(rec) & selected
    )
    if blockers:
        raise ValidationError(
            "Cannot destroy while dependent stacks are still deployed: "
            + "; ".join(blockers)
        )

    recorded = [n for n in reversed(manifest.deploy_order) if n in selected]
    # Stacks that never completed are not in deploy_order but may hold resources.
    unrecorded = [n for n in manifest.stacks if n in selected and n not in recorded]
    destroy_order = unrecorded + recorded

    plan = DeploymentPlan(operation_id=operation_id, command="destroy", requested=requested)
    for name in destroy_order:
        plan.order.append(name)
        plan.resources[name] = [
            ResourcePlan(resource_id=rid, kind=rec.kind, action="destroy")
            for rid, rec in reversed(list(manifest.stacks[name].resources.items()))
            if rec.handle is not None and rec.status in ("succeeded", "failed")
        ]
    return plan


def _imported_stacks(record: StackRecord) -> set[str]:
    return {ref.split(".", 1)[0] for ref in record.imports}


# ── Execution ────────────────────────────────────────────────────────


def execute_deploy(
    plan: DeploymentPlan,
    registry: AdapterRegistry,
    manifest: DeploymentManifest,
    save: Callable[[], None] | None = None,
) -> DeploymentReport:
    """Materialize the planned stacks in order.

    The manifest is updated (and ``save`` called) after every resource,
    so it always reflects the last known state. A KeyboardInterrupt
    stops the run without rolling anything back; the report is marked
    cancelled and the remaining stacks are reported as such.

    A CompositionError found while materializing (an export with nothing
    to publish, a token that resolves to nothing) fails that stack like a
    provisioning error does; it is never retried.
    """
    started = time.monotonic()
    persist = save or (lambda: None)
    capabilities = CapabilityRegistry()
    report = DeploymentReport(operation_id=plan.operation_id, command="deploy")
    halted: set[str] = set()

    for name in plan.order:
        stack = plan.stacks[name]
        if report.cancelled:
            report.outcomes[name] = StackOutcome(name=name, status="cancelled")
            continue

        blocked = [dep for dep in stack.depends_on_stacks if dep in halted]
        if blocked:
            halted.add(name)
            report.outcomes[name] = StackOutcome(
                name=name,
                status="skipped",
                error=f"upstream stack(s) did not deploy: {', '.join(blocked)}",
            )
            logger.info("⊘ %s skipped (upstream %s)", name, ", ".join(blocked))
            continue

        outcome = StackOutcome(name=name, status="completed")
        report.outcomes[name] = outcome
        try:
            _deploy_stack(stack, registry, capabilities, manifest, outcome, persist)
        except ProvisioningError as e:
            halted.add(name)
            outcome.status = "failed"
            outcome.error = e.message
            outcome.failed_resource = e.resource_id
            outcome.exit_code = exit_code_for(e)
            logger.info("✗ %s failed at %s: %s", name, e.resource_id, e.message)
        except CompositionError as e:
            halted.add(name)
            outcome.status = "failed"
            outcome.error = str(e)
            outcome.exit_code = exit_code_for(e)
            logger.info("✗ %s: %s", name, e)
        except KeyboardInterrupt:
            report.cancelled = True
            halted.add(name)
            outcome.status = "cancelled"
            record = manifest.stack(name)
            record.status = "failed"
            record.last_error = "cancelled"
            persist()
            logger.warning("Deployment cancelled during stack %s", name)
        else:
            logger.info("✓ %s", name)

    report.duration_ms = int((time.monotonic() - started) * 1000)
    _record_operation(manifest, report)
    persist()
    return report


def _deploy_stack(
    stack: Stack,
    registry: AdapterRegistry,
    capabilities: CapabilityRegistry,
    manifest: DeploymentManifest,
    outcome: StackOutcome,
    persist: Callable[[], None],
) -> None:
    record = manifest.stack(stack.name)
    previous = record.model_copy(deep=True)
    record.status = "materializing"
    record.imports = sorted(stack.imports)
    record.last_error = None
    persist()

    def on_receipt(descriptor: ResourceDescriptor, receipt: Receipt) -> None:
        outcome.receipts.append(receipt)
        prior = record.resources.get(descriptor.id)
        if receipt.ok:
            record.set_resource(
                descriptor.id,
                kind=descriptor.kind.value,
                status="succeeded",
                fingerprint=descriptor.fingerprint,
                handle=receipt.handle,
                error=None,
            )
        elif receipt.failed:
            record.set_resource(
                descriptor.id,
                kind=descriptor.kind.value,
                status="failed",
                error=receipt.error,
            )
        elif prior is None or prior.status != "succeeded":
            # A skipped resource that exists from an earlier run stays recorded.
            record.set_resource(descriptor.id, kind=descriptor.kind.value, status="skipped")
        persist()

    try:
        handles = stack.materialize(registry, capabilities, previous=previous, on_receipt=on_receipt)
        exports = stack.publish_exports(handles, capabilities)
    except (ProvisioningError, CompositionError) as e:
        record.status = "failed"
        record.last_error = str(e)
        persist()
        raise

    record.status = "materialized"
    record.exports = exports
    record.materialized_at = datetime.now(UTC).isoformat()
    manifest.record_deployed(stack.name)
    persist()


def execute_destroy(
    plan: DeploymentPlan,
    registry: AdapterRegistry,
    manifest: DeploymentManifest,
    save: Callable[[], None] | None = None,
) -> DeploymentReport:
    """Tear down stacks in plan order, resources in reverse declaration order.

    A stack whose teardown fails keeps the stacks it imports from alive
    (they are reported skipped), since it may still be using them.
    """
    started = time.monotonic()
    persist = save or (lambda: None)
    report = DeploymentReport(operation_id=plan.operation_id, command="destroy")
    protected: set[str] = set()

    for name in plan.order:
        record = manifest.stacks[name]
        if name in protected:
            protected |= _imported_stacks(record)
            report.outcomes[name] = StackOutcome(
                name=name, status="skipped", error="a dependent stack failed to destroy",
            )
            continue
        if report.cancelled:
            report.outcomes[name] = StackOutcome(name=name, status="cancelled")
            continue

        outcome = StackOutcome(name=name, status="completed")
        report.outcomes[name] = outcome
        try:
            for item in plan.resources.get(name, []):
                resource = record.resources[item.resource_id]
                assert resource.handle is not None
                receipt = registry.destroy(resource.handle, name)
                outcome.receipts.append(receipt)
                if not receipt.ok:
                    resource.error = receipt.error
                    record.status = "failed"
                    record.last_error = receipt.error
                    outcome.status = "failed"
                    outcome.error = receipt.error
                    outcome.failed_resource = item.resource_id
                    outcome.exit_code = EXIT_PROVISIONING
                    protected |= _imported_stacks(record)
                    break
                record.set_resource(item.resource_id, status="destroyed", handle=None, error=None)
                persist()
        except KeyboardInterrupt:
            report.cancelled = True
            outcome.status = "cancelled"
            persist()
            logger.warning("Destroy cancelled during stack %s", name)
            continue

        if outcome.status == "completed":
            record.status = "destroyed"
            record.exports = {}
            record.materialized_at = None
            if name in manifest.deploy_order:
                manifest.deploy_order.remove(name)
            logger.info("✓ %s destroyed", name)
        persist()

    report.duration_ms = int((time.monotonic() - started) * 1000)
    _record_operation(manifest, report)
    persist()
    return report


def _record_operation(manifest: DeploymentManifest, report: DeploymentReport) -> None:
    op = manifest.last_operation
    op.operation_id = report.operation_id
    op.command = report.command
    op.ended_at = datetime.now(UTC).isoformat()
    op.status = report.status
    op.stacks_completed = report.completed
    op.stacks_failed = report.failed
    op.stacks_skipped = report.skipped


def write_audit_entry(
    report: DeploymentReport,
    audit_writer: AuditWriter,
    environment: str = "",
) -> None:
    """Write a deploy/destroy run to the audit ledger."""
    receipts = [r for r in report.receipts if r.status != "skipped"]
    entry = AuditEntry(
        operation_id=report.operation_id,
        operation_type=report.command,
        environment=environment,
        stacks_affected=list(report.outcomes.keys()),
        status=report.status,
        resources_total=len(receipts),
        resources_succeeded=sum(1 for r in receipts if r.ok),
        resources_failed=sum(1 for r in receipts if r.failed),
        duration_ms=report.duration_ms,
        errors=[f"{o.name}: {o.error}" for o in report.outcomes.values() if o.error],
    )
    audit_writer.write(entry)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"
