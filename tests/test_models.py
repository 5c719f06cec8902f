"""
Tests for domain models — descriptors, stacks, capability refs, pipelines.
"""

import pytest

from infracompose.core.errors import (
    DuplicateExportError,
    DuplicateIdError,
    ValidationError,
)
from infracompose.core.models import (
    CapabilityHandle,
    CapabilityRef,
    DeploymentManifest,
    Pipeline,
    PipelineStage,
    ResourceKind,
    Stack,
    StageAction,
    create,
)
from infracompose.core.models.resource import find_tokens, render_config

# ── ResourceDescriptor ───────────────────────────────────────────────


class TestCreateDescriptor:
    def test_minimal(self):
        d = create("vpc", "network", {"cidr": "10.0.0.0/16"})
        assert d.id == "vpc"
        assert d.kind == ResourceKind.NETWORK
        assert d.depends_on == frozenset()
        assert d.when is None

    def test_missing_required_key(self):
        with pytest.raises(ValidationError, match="missing required config: engine"):
            create("db", "database", {"instance_class": "db.t3.micro"})

    def test_unknown_kind(self):
        with pytest.raises(ValidationError, match="unknown kind 'vm'"):
            create("x", "vm", {})

    @pytest.mark.parametrize("bad_id", ["", "1db", "db name", "db/x"])
    def test_invalid_id(self, bad_id):
        with pytest.raises(ValidationError, match="Invalid resource id"):
            create(bad_id, "custom", {})

    def test_local_ref_adds_dependency(self):
        d = create("db", "database", {
            "engine": "mysql", "instance_class": "small", "network": "${ref:vpc}",
            "groups": ["${ref:sg.id}"],
        })
        assert d.depends_on == frozenset({"vpc", "sg"})

    def test_explicit_and_implicit_dependencies_merge(self):
        d = create("app", "custom", {"x": "${ref:a}"}, depends_on=["b"])
        assert d.depends_on == frozenset({"a", "b"})

    def test_self_dependency_rejected(self):
        with pytest.raises(ValidationError, match="cannot depend on itself"):
            create("a", "custom", {"x": "${ref:a}"})

    def test_malformed_import_token(self):
        with pytest.raises(ValidationError, match="Invalid capability reference"):
            create("p", "custom", {"role": "${import:OnlyStack}"})

    def test_malformed_local_token(self):
        with pytest.raises(ValidationError, match="malformed reference"):
            create("p", "custom", {"role": "${ref:a.b.c}"})

    def test_when_accepts_import_prefix(self):
        d = create("p", "custom", {}, when="import:Infra.db_secret")
        assert d.when == CapabilityRef(stack="Infra", export="db_secret")

    def test_descriptor_is_frozen(self):
        d = create("vpc", "network", {"cidr": "10.0.0.0/16"})
        with pytest.raises(Exception):
            d.id = "other"

    def test_config_is_copied(self):
        config = {"cidr": "10.0.0.0/16", "tags": {"a": "1"}}
        d = create("vpc", "network", config)
        config["tags"]["a"] = "2"
        assert d.config["tags"]["a"] == "1"

    def test_config_rejects_in_place_changes(self):
        d = create("vpc", "network", {"cidr": "10.0.0.0/16", "tags": {"a": "1"}, "azs": ["a", "b"]})
        before = d.fingerprint
        with pytest.raises(TypeError):
            d.config["cidr"] = "0.0.0.0/0"
        with pytest.raises(TypeError):
            d.config["tags"]["a"] = "2"
        with pytest.raises(AttributeError):
            d.config["azs"].append("c")
        assert d.fingerprint == before

    def test_config_dict_is_a_mutable_copy(self):
        d = create("vpc", "network", {"cidr": "10.0.0.0/16", "azs": ["a"]})
        editable = d.config_dict()
        editable["azs"].append("b")
        assert editable == {"cidr": "10.0.0.0/16", "azs": ["a", "b"]}
        assert d.config["azs"] == ("a",)


class TestFingerprint:
    def test_stable_for_same_declaration(self):
        a = create("vpc", "network", {"cidr": "10.0.0.0/16", "max_azs": 2})
        b = create("vpc", "network", {"max_azs": 2, "cidr": "10.0.0.0/16"})
        assert a.fingerprint == b.fingerprint

    def test_changes_with_config(self):
        a = create("vpc", "network", {"cidr": "10.0.0.0/16"})
        b = create("vpc", "network", {"cidr": "10.1.0.0/16"})
        assert a.fingerprint != b.fingerprint

    def test_changes_with_condition(self):
        a = create("p", "custom", {})
        b = create("p", "custom", {}, when="Infra.secret")
        assert a.fingerprint != b.fingerprint


class TestTokens:
    def test_find_tokens_nested(self):
        config = {"a": "${ref:x}", "b": ["${import:S.e}", {"c": "pre-${ref:y.attr}-post"}]}
        assert sorted(find_tokens(config)) == [
            ("import", "S.e"), ("ref", "x"), ("ref", "y.attr"),
        ]

    def test_render_single_token_keeps_raw_value(self):
        rendered = render_config({"tokens": "${ref:ses.dkim}"}, lambda s, t: ["a", "b"])
        assert rendered == {"tokens": ["a", "b"]}

    def test_render_embedded_token_interpolates(self):
        rendered = render_config(["${ref:bucket}/*"], lambda s, t: "arn:bucket")
        assert rendered == ["arn:bucket/*"]

    def test_render_embedded_none_raises(self):
        with pytest.raises(ValidationError, match="resolved to nothing"):
            render_config("x-${ref:gone}", lambda s, t: None)

    def test_render_single_token_may_be_none(self):
        assert render_config("${import:S.e}", lambda s, t: None) is None


# ── Capability refs and handles ──────────────────────────────────────


class TestCapabilityRef:
    def test_parse_with_attribute(self):
        ref = CapabilityRef.parse("Infra.db.secret_arn")
        assert (ref.stack, ref.export, ref.attribute) == ("Infra", "db", "secret_arn")
        assert ref.key == "Infra.db"
        assert str(ref) == "Infra.db.secret_arn"

    @pytest.mark.parametrize("text", ["Infra", "", "a.b.c.d", ".x"])
    def test_parse_invalid(self, text):
        with pytest.raises(ValidationError):
            CapabilityRef.parse(text)


class TestCapabilityHandle:
    def test_get(self):
        handle = CapabilityHandle(
            identifier="arn:x", endpoint="db:3306", attributes={"secret_arn": "arn:s"},
        )
        assert handle.get() == "arn:x"
        assert handle.get("arn") == "arn:x"
        assert handle.get("endpoint") == "db:3306"
        assert handle.get("secret_arn") == "arn:s"
        assert handle.get("missing") is None


# ── Stack declaration ────────────────────────────────────────────────


class TestStackDeclaration:
    def test_declare_invalid_name(self):
        with pytest.raises(ValidationError):
            Stack.declare("bad name")

    def test_duplicate_resource(self):
        stack = Stack.declare("S")
        stack.add_resource(create("a", "custom"))
        with pytest.raises(DuplicateIdError) as exc:
            stack.add_resource(create("a", "custom"))
        assert exc.value.resource_id == "a"

    def test_dependency_must_be_declared_first(self):
        stack = Stack.declare("S")
        with pytest.raises(ValidationError, match="undeclared resource"):
            stack.add_resource(create("db", "custom", {"net": "${ref:vpc}"}))

    def test_import_tokens_declare_imports(self):
        stack = Stack.declare("S")
        stack.add_resource(create("p", "custom", {"role": "${import:Infra.role.arn}"}))
        assert list(stack.imports) == ["Infra.role"]
        assert stack.imports["Infra.role"].optional is False
        assert stack.depends_on_stacks == ["Infra"]

    def test_condition_only_import_is_optional(self):
        stack = Stack.declare("S")
        stack.add_resource(create("p", "custom", {}, when="Infra.secret"))
        assert stack.imports["Infra.secret"].optional is True

    def test_required_use_upgrades_optional_import(self):
        stack = Stack.declare("S")
        stack.import_capability("Infra.secret", optional=True)
        stack.import_capability("Infra.secret")
        assert stack.imports["Infra.secret"].optional is False

    def test_self_import_rejected(self):
        stack = Stack.declare("S")
        with pytest.raises(ValidationError, match="its own export"):
            stack.import_capability("S.x")

    def test_duplicate_export(self):
        stack = Stack.declare("S")
        stack.add_resource(create("a", "custom"))
        stack.export("a", "a")
        with pytest.raises(DuplicateExportError):
            stack.export("a", "a")

    def test_export_unknown_resource(self):
        stack = Stack.declare("S")
        with pytest.raises(ValidationError, match="unknown resource"):
            stack.export("x", "missing")

    def test_add_pipeline_sets_stack(self):
        stack = Stack.declare("S")
        pipeline = stack.add_pipeline(Pipeline(name="p", stages=[
            PipelineStage(name="src", action=StageAction.SOURCE, output_artifact="out"),
        ]))
        assert pipeline.key == "S/p"
        assert stack.get_pipeline("p") is pipeline
        with pytest.raises(ValidationError, match="already has pipeline"):
            stack.add_pipeline(Pipeline(name="p", stages=pipeline.stages))


# ── Pipelines ────────────────────────────────────────────────────────


class TestPipelineCheck:
    def test_empty(self):
        with pytest.raises(ValidationError, match="no stages"):
            Pipeline(name="p").check()

    def test_first_stage_takes_no_input(self):
        p = Pipeline(name="p", stages=[
            PipelineStage(name="a", action=StageAction.BUILD, input_artifact="x"),
        ])
        with pytest.raises(ValidationError, match="cannot take an input"):
            p.check()

    def test_input_must_match_previous_output(self):
        p = Pipeline(name="p", stages=[
            PipelineStage(name="a", action=StageAction.SOURCE, output_artifact="src"),
            PipelineStage(name="b", action=StageAction.BUILD, input_artifact="other"),
        ])
        with pytest.raises(ValidationError, match="takes 'other'"):
            p.check()

    def test_duplicate_stage_names(self):
        p = Pipeline(name="p", stages=[
            PipelineStage(name="a", action=StageAction.SOURCE, output_artifact="x"),
            PipelineStage(name="a", action=StageAction.BUILD, input_artifact="x"),
        ])
        with pytest.raises(ValidationError, match="twice"):
            p.check()


# ── Manifest ─────────────────────────────────────────────────────────


class TestManifestModel:
    def test_stack_get_or_create(self):
        m = DeploymentManifest()
        record = m.stack("Infra")
        assert m.stack("Infra") is record
        assert not m.is_materialized("Infra")

    def test_record_deployed_moves_to_end(self):
        m = DeploymentManifest(deploy_order=["A", "B"])
        m.record_deployed("A")
        assert m.deploy_order == ["B", "A"]

    def test_live_handles_and_is_live(self):
        m = DeploymentManifest()
        rec = m.stack("S")
        rec.set_resource("a", status="succeeded", handle=CapabilityHandle(identifier="arn:a"))
        rec.set_resource("b", status="skipped")
        assert list(rec.live_handles()) == ["a"]
        assert rec.is_live
        rec.set_resource("a", status="destroyed", handle=None)
        assert not rec.is_live


class TestPackageExports:
    def test_all_names_importable_and_sorted(self):
        import infracompose.core.models as models

        assert models.__all__ == sorted(models.__all__)
        for name in models.__all__:
            assert getattr(models, name) is not None
