"""
Tests for pipelines — stage sequencing, state machine, retries, and the
run/status use cases.
"""

from pathlib import Path

import pytest

from infracompose.adapters.stages import MockStageRunner
from infracompose.core.engine.pipeline import PipelineRun, StageTransitionError, run_pipeline
from infracompose.core.errors import EXIT_OK, EXIT_PROVISIONING, EXIT_VALIDATION, ValidationError
from infracompose.core.models import CapabilityHandle
from infracompose.core.models.manifest import DeploymentManifest
from infracompose.core.models.pipeline import Pipeline, PipelineStage, StageAction, StageStatus
from infracompose.core.persistence.audit import AuditWriter
from infracompose.core.persistence.manifest_file import default_manifest_path, load_manifest
from infracompose.core.reliability.retry import RetryPolicy
from infracompose.core.use_cases.deploy import deploy_stacks
from infracompose.core.use_cases.pipeline import get_pipeline_status, run_stack_pipeline, stage_params

from tests.builders import server_pipeline

_FAST = RetryPolicy(base_delay=0.0, timeout=None, jitter=0.0)


def _pipeline() -> Pipeline:
    return server_pipeline().model_copy(update={"stack": "ServerDeploy"})


# ── Sequencing ──────────────────────────────────────────────────────


class TestRunPipeline:
    def test_all_stages_succeed_in_order(self):
        runner = MockStageRunner()
        run = run_pipeline(_pipeline(), runner, policy=_FAST)
        assert run.succeeded
        assert run.status == StageStatus.SUCCEEDED
        assert runner.stage_names == ["DownloadCode", "BuildCode", "DeployCode"]

    def test_artifacts_flow_between_stages(self):
        runner = MockStageRunner()
        run_pipeline(_pipeline(), runner, policy=_FAST)
        inputs = {name: artifact for name, artifact in runner.calls}
        assert inputs["DownloadCode"] is None
        assert inputs["BuildCode"].name == "source"
        assert inputs["DeployCode"].name == "build"

    def test_failed_build_halts_deploy(self):
        runner = MockStageRunner()
        runner.set_failure("BuildCode", "compile error")
        run = run_pipeline(_pipeline(), runner, policy=_FAST)

        assert not run.succeeded
        assert run.status == StageStatus.FAILED
        assert run.stage("DownloadCode").status == StageStatus.SUCCEEDED
        assert run.stage("BuildCode").status == StageStatus.FAILED
        assert run.stage("BuildCode").error == "compile error"
        assert run.stage("DeployCode").status == StageStatus.PENDING
        assert "DeployCode" not in runner.stage_names
        assert run.failed_stage.stage.name == "BuildCode"

    def test_unexpected_runner_error_fails_stage(self):
        class _Crashing(MockStageRunner):
            def run(self, pipeline, stage, input_artifact, params):
                if stage.name == "BuildCode":
                    raise RuntimeError("build container crashed")
                return super().run(pipeline, stage, input_artifact, params)

        run = run_pipeline(_pipeline(), _Crashing(), policy=_FAST)

        assert run.status == StageStatus.FAILED
        assert run.stage("BuildCode").status == StageStatus.FAILED
        assert "build container crashed" in run.stage("BuildCode").error
        assert run.stage("BuildCode").ended_at
        assert run.stage("DeployCode").status == StageStatus.PENDING

    def test_retries_bounded_by_stage_attempts(self):
        pipeline = Pipeline(name="p", stages=[
            PipelineStage(name="build", action=StageAction.BUILD, output_artifact="out", max_attempts=2),
        ])
        runner = MockStageRunner()
        runner.set_failure("build", "flaky", retryable=True)
        run = run_pipeline(pipeline, runner, policy=_FAST, sleep=lambda _: None)
        assert runner.stage_names == ["build", "build"]
        assert run.stage("build").attempts == 2
        assert run.status == StageStatus.FAILED

    def test_retry_recovers(self):
        pipeline = Pipeline(name="p", stages=[
            PipelineStage(name="build", action=StageAction.BUILD, output_artifact="out", max_attempts=3),
        ])
        runner = MockStageRunner()
        runner.set_failure("build", "flaky", retryable=True, times=1)
        run = run_pipeline(pipeline, runner, policy=_FAST, sleep=lambda _: None)
        assert run.succeeded
        assert run.stage("build").attempts == 2

    def test_default_single_attempt(self):
        runner = MockStageRunner()
        runner.set_failure("DownloadCode", "flaky", retryable=True)
        run_pipeline(_pipeline(), runner, policy=_FAST)
        assert runner.stage_names == ["DownloadCode"]

    def test_missing_output_artifact_fails_stage(self):
        class _NoOutput(MockStageRunner):
            def run(self, pipeline, stage, input_artifact, params):
                super().run(pipeline, stage, input_artifact, params)
                return None

        run = run_pipeline(_pipeline(), _NoOutput(), policy=_FAST)
        assert run.stage("DownloadCode").status == StageStatus.FAILED
        assert "source" in run.stage("DownloadCode").error

    def test_unresolvable_params_fail_stage(self):
        def params_for(stage):
            raise ValidationError("no such resource")

        run = run_pipeline(_pipeline(), MockStageRunner(), params_for=params_for, policy=_FAST)
        assert run.stage("DownloadCode").status == StageStatus.FAILED
        assert run.stage("DownloadCode").error == "no such resource"

    def test_invalid_pipeline_rejected(self):
        with pytest.raises(ValidationError):
            run_pipeline(Pipeline(name="empty"), MockStageRunner())


class TestStateMachine:
    def test_pending_until_started(self):
        run = PipelineRun.start(_pipeline())
        assert run.status == StageStatus.PENDING

    def test_status_is_last_started_stage(self):
        run = PipelineRun.start(_pipeline())
        run.mark_running(0)
        assert run.status == StageStatus.RUNNING
        run.mark_succeeded(0, None)
        run.mark_running(1)
        assert run.status == StageStatus.RUNNING

    def test_cannot_skip_ahead(self):
        run = PipelineRun.start(_pipeline())
        with pytest.raises(StageTransitionError, match="cannot start"):
            run.mark_running(1)

    def test_cannot_start_after_failure(self):
        run = PipelineRun.start(_pipeline())
        run.mark_running(0)
        run.mark_failed(0, "boom")
        with pytest.raises(StageTransitionError):
            run.mark_running(1)

    def test_terminal_states_are_final(self):
        run = PipelineRun.start(_pipeline())
        run.mark_running(0)
        run.mark_succeeded(0, None)
        with pytest.raises(StageTransitionError, match="not running"):
            run.mark_failed(0, "late")
        with pytest.raises(StageTransitionError):
            run.mark_running(0)

    def test_to_dict(self):
        data = run_pipeline(_pipeline(), MockStageRunner(), policy=_FAST).to_dict()
        assert data["pipeline"] == "ServerDeploy/server"
        assert data["status"] == "succeeded"
        assert [s["name"] for s in data["stages"]] == ["DownloadCode", "BuildCode", "DeployCode"]


# ── Stage parameters ────────────────────────────────────────────────


class TestStageParams:
    def _manifest(self) -> DeploymentManifest:
        manifest = DeploymentManifest()
        server = manifest.stack("ServerDeploy")
        server.status = "materialized"
        server.set_resource("deploy_group", status="succeeded",
                            handle=CapabilityHandle(identifier="arn:group"))
        infra = manifest.stack("Infrastructure")
        infra.status = "materialized"
        infra.exports = {"app_server": CapabilityHandle(identifier="arn:ec2", endpoint="ec2:22")}
        return manifest

    def test_ref_resolved_from_manifest(self):
        stage = _pipeline().stages[2]
        params = stage_params(stage, "ServerDeploy", self._manifest())
        assert params == {"deployment_group": "arn:group"}

    def test_import_resolved_from_recorded_exports(self):
        stage = PipelineStage(name="d", action=StageAction.DEPLOY,
                              config={"target": "${import:Infrastructure.app_server.endpoint}"})
        assert stage_params(stage, "ServerDeploy", self._manifest()) == {"target": "ec2:22"}

    def test_missing_resource(self):
        stage = PipelineStage(name="d", action=StageAction.DEPLOY, config={"g": "${ref:ghost}"})
        with pytest.raises(ValidationError, match="ghost"):
            stage_params(stage, "ServerDeploy", self._manifest())

    def test_import_from_undeployed_stack(self):
        stage = PipelineStage(name="d", action=StageAction.DEPLOY, config={"g": "${import:Other.x}"})
        with pytest.raises(ValidationError, match="not deployed"):
            stage_params(stage, "ServerDeploy", self._manifest())


# ── Use cases ───────────────────────────────────────────────────────


class TestRunStackPipeline:
    def test_requires_deployed_stack(self, composition_file: Path):
        result = run_stack_pipeline("ServerDeploy/server", config_path=composition_file)
        assert result.exit_code == EXIT_VALIDATION
        assert "must be deployed" in result.error

    def test_unknown_pipeline(self, composition_file: Path):
        result = run_stack_pipeline("ServerDeploy/nope", config_path=composition_file)
        assert result.exit_code == EXIT_VALIDATION
        assert "Unknown pipeline" in result.error

    def test_runs_after_deploy_and_records(self, composition_file: Path):
        assert deploy_stacks(config_path=composition_file).exit_code == EXIT_OK

        result = run_stack_pipeline("ServerDeploy/server", config_path=composition_file, policy=_FAST)
        assert result.exit_code == EXIT_OK
        assert result.run.succeeded

        manifest = load_manifest(default_manifest_path(composition_file.parent))
        record = manifest.pipelines["ServerDeploy/server"]
        assert record.status == "succeeded"
        assert record.stages == {
            "DownloadCode": "succeeded", "BuildCode": "succeeded", "DeployCode": "succeeded",
        }
        assert set(record.artifacts) == {"source", "build"}

        entries = AuditWriter(project_root=composition_file.parent).read_all()
        assert entries[-1].operation_type == "pipeline"
        assert entries[-1].status == "ok"

    def test_failed_stage_exit_code(self, composition_file: Path):
        deploy_stacks(config_path=composition_file)
        runner = MockStageRunner()
        runner.set_failure("BuildCode", "tests failed")

        result = run_stack_pipeline(
            "ServerDeploy/server", config_path=composition_file, runner=runner, policy=_FAST,
        )
        assert result.exit_code == EXIT_PROVISIONING
        assert "BuildCode" in result.error

        status = get_pipeline_status(config_path=composition_file)
        entry = status.pipelines[0]
        assert entry["key"] == "ServerDeploy/server"
        assert entry["status"] == "failed"
        assert entry["stage_status"]["DeployCode"] == "pending"

    def test_crashing_runner_still_recorded(self, composition_file: Path):
        class _Crashing(MockStageRunner):
            def run(self, pipeline, stage, input_artifact, params):
                if stage.name == "DeployCode":
                    raise OSError("agent unreachable")
                return super().run(pipeline, stage, input_artifact, params)

        deploy_stacks(config_path=composition_file)
        result = run_stack_pipeline(
            "ServerDeploy/server", config_path=composition_file, runner=_Crashing(), policy=_FAST,
        )
        assert result.exit_code == EXIT_PROVISIONING

        manifest = load_manifest(default_manifest_path(composition_file.parent))
        record = manifest.pipelines["ServerDeploy/server"]
        assert record.status == "failed"
        assert record.stages["BuildCode"] == "succeeded"
        assert record.stages["DeployCode"] == "failed"

        entries = AuditWriter(project_root=composition_file.parent).read_all()
        assert entries[-1].operation_type == "pipeline"
        assert entries[-1].status == "failed"

    def test_status_before_any_run(self, composition_file: Path):
        status = get_pipeline_status(config_path=composition_file)
        assert status.pipelines[0]["status"] == "pending"
        assert status.pipelines[0]["stages"] == ["DownloadCode", "BuildCode", "DeployCode"]
