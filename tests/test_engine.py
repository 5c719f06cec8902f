"""
Tests for the engine executor — planning, deploy, re-deploy, partial
failure, cancellation and destroy.
"""

import pytest

from infracompose.adapters import MockAdapter
from infracompose.core.engine.executor import (
    execute_deploy,
    execute_destroy,
    generate_operation_id,
    plan_deploy,
    plan_destroy,
    write_audit_entry,
)
from infracompose.core.errors import EXIT_PROVISIONING, EXIT_VALIDATION, ProvisioningError, ValidationError
from infracompose.core.models import Stack, create
from infracompose.core.models.manifest import DeploymentManifest
from infracompose.core.persistence.audit import AuditWriter

from tests.builders import make_infra_stacks


class _Interrupting(MockAdapter):
    """Raises KeyboardInterrupt when it reaches one resource."""

    def __init__(self, resource_id: str):
        super().__init__()
        self._target = resource_id

    def apply(self, context):
        if context.resource_id == self._target:
            raise KeyboardInterrupt
        return super().apply(context)


def _deploy(registry, stacks=None, manifest=None, names=None):
    manifest = manifest if manifest is not None else DeploymentManifest()
    plan = plan_deploy(stacks or make_infra_stacks(), names, manifest)
    return execute_deploy(plan, registry, manifest), manifest


def _standalone(name: str) -> Stack:
    stack = Stack.declare(name)
    stack.add_resource(create("bucket", "artifact_bucket", {}))
    return stack


# ── Planning ────────────────────────────────────────────────────────


class TestPlanDeploy:
    def test_fresh_plan_creates_everything(self):
        plan = plan_deploy(make_infra_stacks())
        assert plan.order == ["Infrastructure", "ServerDeploy", "UIDeploy"]
        assert {r.action for rs in plan.resources.values() for r in rs} == {"create"}
        assert plan.total_resources == 10

    def test_subset_pulls_in_upstream(self):
        plan = plan_deploy(make_infra_stacks(), ["UIDeploy"])
        assert plan.order == ["Infrastructure", "UIDeploy"]
        assert plan.requested == ["UIDeploy"]

    def test_plan_after_deploy_is_unchanged(self, registry):
        _, manifest = _deploy(registry)
        plan = plan_deploy(make_infra_stacks(), manifest=manifest)
        assert {r.action for rs in plan.resources.values() for r in rs} == {"unchanged"}

    def test_changed_config_is_update(self, registry):
        _, manifest = _deploy(registry)
        stacks = make_infra_stacks()
        stacks[0].resources[0] = create("vpc", "network", {"cidr": "10.9.0.0/16"})
        plan = plan_deploy(stacks, manifest=manifest)
        actions = {r.resource_id: r.action for r in plan.resources["Infrastructure"]}
        assert actions["vpc"] == "update"
        assert actions["db"] == "unchanged"

    def test_to_dict(self):
        data = plan_deploy(make_infra_stacks()).to_dict()
        assert data["order"][0] == "Infrastructure"
        assert data["stacks"]["ServerDeploy"]["imports"] == ["Infrastructure.ec2_role"]


# ── Deploy ──────────────────────────────────────────────────────────


class TestExecuteDeploy:
    def test_full_deploy(self, registry, mock_adapter):
        report, manifest = _deploy(registry)
        assert report.status == "ok"
        assert report.completed == ["Infrastructure", "ServerDeploy", "UIDeploy"]
        assert manifest.deploy_order == ["Infrastructure", "ServerDeploy", "UIDeploy"]
        assert all(manifest.is_materialized(n) for n in manifest.deploy_order)
        assert manifest.stacks["Infrastructure"].exports["ec2_role"].identifier == \
            "mock:role:Infrastructure/ec2_role"
        assert mock_adapter.call_count == 10

    def test_consumer_receives_exported_handle(self, registry, mock_adapter):
        _deploy(registry)
        ctx = next(c for c in mock_adapter.call_log
                   if c.stack == "UIDeploy" and c.resource_id == "artifact_read")
        assert ctx.params["role"] == "mock:role:Infrastructure/ec2_role"

    def test_manifest_saved_after_every_resource(self, registry):
        saves = []
        manifest = DeploymentManifest()
        plan = plan_deploy(make_infra_stacks(), manifest=manifest)
        execute_deploy(plan, registry, manifest, save=lambda: saves.append(1))
        assert len(saves) >= plan.total_resources

    def test_redeploy_is_idempotent(self, registry, mock_adapter):
        _, manifest = _deploy(registry)
        mock_adapter.reset()

        report, _ = _deploy(registry, manifest=manifest)
        assert report.status == "ok"
        assert mock_adapter.call_count == 0
        assert all(r.metadata.get("reused") for r in report.receipts)

    def test_partial_failure(self, registry, mock_adapter):
        other = _standalone("Monitoring")
        mock_adapter.set_failure("ec2_role", "access denied")

        report, manifest = _deploy(registry, stacks=[*make_infra_stacks(), other])

        assert report.status == "partial"
        assert report.failed == ["Infrastructure"]
        assert report.skipped == ["ServerDeploy", "UIDeploy"]
        assert report.completed == ["Monitoring"]

        outcome = report.outcomes["Infrastructure"]
        assert outcome.failed_resource == "ec2_role"
        assert outcome.error == "access denied"

        infra = manifest.stacks["Infrastructure"]
        assert infra.status == "failed"
        assert infra.resources["vpc"].status == "succeeded"
        assert infra.resources["ec2_role"].status == "failed"
        assert "app_server" not in infra.resources
        assert not [c for c in mock_adapter.call_log if c.stack == "ServerDeploy"]

    def test_composition_error_fails_only_its_stack(self, registry, mock_adapter):
        bad = _standalone("Bad")
        bad.export("key", "bucket", attribute="encryption_key_arn")
        consumer = Stack.declare("Consumer")
        consumer.add_resource(create("reader", "custom", {"key": "${import:Bad.key}"}))
        good = _standalone("Good")

        report, manifest = _deploy(registry, stacks=[bad, consumer, good])

        assert report.failed == ["Bad"]
        assert report.skipped == ["Consumer"]
        assert report.completed == ["Good"]
        assert report.status == "partial"
        assert report.exit_code == EXIT_VALIDATION
        assert "cannot export 'key'" in report.outcomes["Bad"].error
        assert {c.stack for c in mock_adapter.call_log} == {"Bad", "Good"}
        assert manifest.stacks["Bad"].status == "failed"
        assert manifest.is_materialized("Good")
        assert manifest.last_operation.status == "partial"

    def test_composition_error_outranks_provisioning_failure(self, registry, mock_adapter):
        bad = _standalone("Bad")
        bad.export("key", "bucket", attribute="encryption_key_arn")
        broken = Stack.declare("Broken")
        broken.add_resource(create("vm", "custom"))
        mock_adapter.set_failure("vm", "quota exceeded")

        report, _ = _deploy(registry, stacks=[broken, bad])
        assert report.failed == ["Broken", "Bad"]
        assert report.outcomes["Broken"].exit_code == EXIT_PROVISIONING
        assert report.exit_code == EXIT_VALIDATION

    def test_retry_after_failure_resumes(self, registry, mock_adapter):
        mock_adapter.set_failure("ec2_role", "access denied")
        _, manifest = _deploy(registry)
        mock_adapter.reset()

        report, _ = _deploy(registry, manifest=manifest)
        assert report.status == "ok"
        # vpc and db were already created
        assert mock_adapter.applied_ids[:2] == ["ec2_role", "app_server"]

    def test_cancellation(self, registry):
        adapter = _Interrupting("app_server")
        registry.unregister("mock")
        registry.register(adapter)

        report, manifest = _deploy(registry)
        assert report.cancelled
        assert report.status == "cancelled"
        assert report.outcomes["Infrastructure"].status == "cancelled"
        assert report.outcomes["ServerDeploy"].status == "cancelled"
        assert manifest.stacks["Infrastructure"].status == "failed"
        assert manifest.stacks["Infrastructure"].last_error == "cancelled"
        # Work done before the interrupt stays recorded
        assert manifest.stacks["Infrastructure"].resources["vpc"].status == "succeeded"
        assert manifest.last_operation.status == "cancelled"

    def test_audit_entry(self, registry, tmp_path):
        report, _ = _deploy(registry)
        report.operation_id = "op-test"
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        write_audit_entry(report, writer, environment="prod")
        entry = writer.read_all()[0]
        assert entry.operation_type == "deploy"
        assert entry.environment == "prod"
        assert entry.resources_succeeded == 10
        assert entry.stacks_affected == ["Infrastructure", "ServerDeploy", "UIDeploy"]

    def test_operation_id_format(self):
        op = generate_operation_id()
        assert op.startswith("op-")
        assert op != generate_operation_id()


# ── Destroy ─────────────────────────────────────────────────────────


class TestDestroy:
    def test_reverse_order(self, registry):
        _, manifest = _deploy(registry)
        plan = plan_destroy(manifest)
        assert plan.order == ["UIDeploy", "ServerDeploy", "Infrastructure"]
        assert [r.resource_id for r in plan.resources["Infrastructure"]] == \
            ["app_server", "ec2_role", "db", "vpc"]

    def test_refuses_while_dependents_live(self, registry):
        _, manifest = _deploy(registry)
        with pytest.raises(ValidationError, match="dependent stacks are still deployed"):
            plan_destroy(manifest, ["Infrastructure"])

    def test_leaf_can_go_alone(self, registry):
        _, manifest = _deploy(registry)
        assert plan_destroy(manifest, ["UIDeploy"]).order == ["UIDeploy"]

    def test_unknown_stack(self):
        with pytest.raises(ValidationError, match="not in the manifest"):
            plan_destroy(DeploymentManifest(), ["Ghost"])

    def test_destroy_everything(self, registry, mock_adapter):
        _, manifest = _deploy(registry)
        report = execute_destroy(plan_destroy(manifest), registry, manifest)

        assert report.status == "ok"
        assert [h.resource_id for h in mock_adapter.destroy_log][:2] == ["artifact_read", "artifacts"]
        assert manifest.deploy_order == []
        for record in manifest.stacks.values():
            assert record.status == "destroyed"
            assert not record.is_live
            assert record.exports == {}

    def test_failed_teardown_protects_upstream(self, registry):
        _, manifest = _deploy(registry)

        class _Stuck(MockAdapter):
            def destroy(self, handle, settings):
                if handle.resource_id == "deploy_group":
                    raise ProvisioningError("still in use")
                super().destroy(handle, settings)

        registry.unregister("mock")
        registry.register(_Stuck())
        report = execute_destroy(plan_destroy(manifest), registry, manifest)

        assert report.outcomes["UIDeploy"].status == "completed"
        assert report.outcomes["ServerDeploy"].status == "failed"
        assert report.outcomes["Infrastructure"].status == "skipped"
        assert manifest.stacks["ServerDeploy"].is_live
        assert manifest.is_materialized("Infrastructure")
