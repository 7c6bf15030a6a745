"""
End-to-end scenarios against in-memory control-plane fakes.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from strata.errors import (
    ApplyFailureError,
    DeleteBlockedError,
    DependencyNotSatisfiedError,
    StrataError,
    ValidationError,
)
from strata.events import EventLog, EventTypes
from strata.models import Operation, StackState
from strata.orchestrator import Orchestrator, ProjectOptions, TeardownReport
from strata.outputs import outputs_path

from .conftest import ACCOUNT, FakeEcs, fake_ecr, fake_s3, make_client_error

SHARED = "acme-dev-main"
PROJECT = "acme-dev-svc-a"
ENDPOINT = "https://abc123.execute-api.us-east-1.amazonaws.com"


@pytest.fixture
def orchestrator(settings, aws, clock):
    return Orchestrator(settings, aws, sleep=clock.sleep, clock=clock)


def event_types(settings, stack):
    return [event["type"] for event in EventLog(stack, settings.state_dir).read()]


def options():
    return ProjectOptions(source_repo="acme-org/platform/svc-a")


class TestApplyScenarios:
    """Shared and project apply."""

    def test_create_shared_writes_outputs(self, orchestrator, cfn, settings, shared_context):
        """Missing shared stack: created, observed, and its endpoint written out."""
        cfn.outputs_after_create[SHARED] = {"ApiGatewayUrl": ENDPOINT, "VpcId": "vpc-1"}

        result = orchestrator.apply_shared(shared_context)

        assert result.operation is Operation.CREATE
        assert result.final_state is StackState.CREATE_COMPLETE
        outputs = json.loads(outputs_path(settings.output_dir, "dev").read_text())
        assert outputs["ApiGatewayUrl"] == ENDPOINT
        log = (Path(settings.output_dir) / "deployment-log-dev.md").read_text()
        assert SHARED in log and ACCOUNT in log

        call = dict(cfn.mutations)["create_stack"]
        assert call["TemplateURL"] == "https://acme-templates.s3.us-east-1.amazonaws.com/templates/main.yaml"
        params = {p["ParameterKey"]: p["ParameterValue"] for p in call["Parameters"]}
        assert params["ComputeType"] == "fargate"
        assert params["TemplatesBucketName"] == "acme-templates"

        assert event_types(settings, SHARED) == [
            EventTypes.CONTEXT_OK,
            EventTypes.TEMPLATES_PUBLISHED,
            EventTypes.APPLY_ISSUED,
            EventTypes.STACK_TERMINAL,
            EventTypes.OUTPUTS_WRITTEN,
        ]

    def test_reapply_shared_is_noop(self, orchestrator, cfn, settings, shared_context):
        """Identical re-apply: NO_OP and no state transition."""
        orchestrator.apply_shared(shared_context)
        before = cfn.stacks[SHARED]["StackStatus"]

        result = orchestrator.apply_shared(shared_context)

        assert result.operation is Operation.NO_OP
        assert cfn.stacks[SHARED]["StackStatus"] == before
        assert "execute_change_set" not in cfn.mutation_names()
        assert EventTypes.APPLY_NOOP in event_types(settings, SHARED)

    def test_project_refused_without_shared(self, orchestrator, cfn, aws, settings, project_context):
        """Missing shared stack: refusal names it and nothing is mutated or uploaded."""
        with pytest.raises(DependencyNotSatisfiedError) as exc:
            orchestrator.apply_project(project_context, options())

        assert SHARED in exc.value.message
        assert cfn.mutations == []
        aws.s3.upload_file.assert_not_called()
        aws.s3.create_bucket.assert_not_called()
        assert event_types(settings, PROJECT)[-2:] == [EventTypes.GATE_REFUSED, EventTypes.ERROR]

    def test_project_apply(self, orchestrator, cfn, aws, settings, project_context):
        """Healthy shared stack: project created, pipeline seeded and started."""
        cfn.add_stack(SHARED, "CREATE_COMPLETE")
        cfn.outputs_after_create[PROJECT] = {"ArtifactBucketName": "bucket-from-output"}

        result = orchestrator.apply_project(project_context, options())

        assert result.operation is Operation.CREATE
        call = dict(cfn.mutations)["create_stack"]
        params = {p["ParameterKey"]: p["ParameterValue"] for p in call["Parameters"]}
        assert params["ServiceName"] == "svc-a"
        assert params["SourceOrganization"] == "acme-org"
        assert params["SourceRepository"] == "svc-a"
        assert {"Key": "Service", "Value": "svc-a"} in call["Tags"]
        assert aws.s3.put_object.call_args.kwargs["Bucket"] == "bucket-from-output"
        aws.codepipeline.start_pipeline_execution.assert_called_once_with(name="acme-dev-svc-a-pipeline")
        assert outputs_path(settings.output_dir, "dev", "svc-a").exists()
        assert event_types(settings, PROJECT)[:2] == [EventTypes.CONTEXT_OK, EventTypes.GATE_OK]

    def test_project_apply_without_trigger(self, orchestrator, cfn, aws, project_context):
        """The pipeline is left alone when asked."""
        cfn.add_stack(SHARED, "CREATE_COMPLETE")

        orchestrator.apply_project(project_context, options(), trigger_pipeline=False)

        aws.codepipeline.start_pipeline_execution.assert_not_called()
        aws.s3.put_object.assert_not_called()

    def test_bad_source_repo(self, orchestrator, cfn, project_context):
        """The source reference needs three parts."""
        cfn.add_stack(SHARED, "CREATE_COMPLETE")

        with pytest.raises(ValidationError) as exc:
            orchestrator.apply_project(project_context, ProjectOptions(source_repo="just-a-repo"))

        assert "organization/project/repository" in exc.value.message
        assert cfn.mutations == []

    def test_dry_run(self, settings, aws, cfn, clock, shared_context):
        """A dry run publishes nothing and mutates nothing."""
        orchestrator = Orchestrator(settings, aws, dry_run=True, sleep=clock.sleep, clock=clock)

        result = orchestrator.apply_shared(shared_context)

        assert result.dry_run
        assert cfn.mutations == []
        aws.s3.upload_file.assert_not_called()
        assert not outputs_path(settings.output_dir, "dev").exists()


class TestTeardownScenarios:
    """Project and shared teardown."""

    def test_project_teardown_drains_before_reaping(self, orchestrator, cfn, aws, settings, project_context):
        """Running tasks reach zero before any store is emptied or the stack deleted."""
        cfn.add_stack(SHARED)
        cfn.add_stack(PROJECT)
        ecs = FakeEcs(running=2, after_scale=[2, 1, 0])
        s3 = fake_s3(objects=["trigger/trigger.zip"], versions=[("trigger/trigger.zip", "v1")],
                     markers=[("old.zip", "m1")])
        ecr = fake_ecr(images=["sha256:aa"])
        orchestrator.drainer.ecs = ecs
        orchestrator.reaper.s3 = s3
        orchestrator.reaper.ecr = ecr

        observed = []
        s3.delete_objects.side_effect = lambda **kw: observed.append((ecs.running, list(cfn.mutation_names()))) or {}

        report = orchestrator.teardown_project(project_context)

        assert ("update_service", "acme-dev-svc-a-svc", 0) in ecs.calls
        assert observed and all(running == 0 for running, _ in observed)
        assert all("delete_stack" not in mutations for _, mutations in observed)
        assert len(observed) == 3
        ecr.batch_delete_image.assert_called_once()
        s3.delete_bucket.assert_called_once_with(Bucket=f"acme-dev-svc-a-artifacts-{ACCOUNT}")
        assert report.final_state is StackState.NOT_FOUND
        assert report.complete
        assert PROJECT not in cfn.stacks

        types = event_types(settings, PROJECT)
        assert types.index(EventTypes.DRAIN_DONE) < types.index(EventTypes.REAP_DONE) < types.index(
            EventTypes.DELETE_ISSUED)
        assert types[-1] == EventTypes.TEARDOWN_DONE

    def test_project_teardown_secrets_and_logs(self, orchestrator, cfn, aws, project_context):
        """Secrets go only when asked; logs go unless retained."""
        cfn.add_stack(PROJECT)

        orchestrator.teardown_project(project_context, delete_secrets=True, retain_logs=True)

        deleted = [c.kwargs["SecretId"] for c in aws.secretsmanager.delete_secret.call_args_list]
        assert deleted == ["acme/dev/svc-a/source-pat", "acme/dev/svc-a/db/connection-strings"]
        aws.logs.delete_log_group.assert_not_called()

    def test_project_teardown_keeps_secrets_by_default(self, orchestrator, cfn, aws, project_context):
        """Without the flag, secrets survive and logs are removed."""
        cfn.add_stack(PROJECT)

        orchestrator.teardown_project(project_context)

        aws.secretsmanager.delete_secret.assert_not_called()
        assert aws.logs.delete_log_group.call_count == 7

    def test_blocked_reap_stops_before_delete(self, orchestrator, cfn, project_context):
        """A store that cannot be emptied blocks the stack delete."""
        cfn.add_stack(PROJECT)
        s3 = fake_s3(versions=[("locked.zip", "v1")])
        s3.delete_objects.return_value = {"Errors": [{"Key": "locked.zip", "VersionId": "v1",
                                                      "Message": "Object lock"}]}
        orchestrator.reaper.s3 = s3

        with pytest.raises(DeleteBlockedError) as exc:
            orchestrator.teardown_project(project_context)

        assert "locked.zip" in exc.value.blockers[0]
        assert "delete_stack" not in cfn.mutation_names()

    def test_missing_project_stack(self, orchestrator, cfn, project_context):
        """Nothing to tear down."""
        report = orchestrator.teardown_project(project_context)

        assert not report.existed
        assert cfn.mutations == []

    def test_recovery_after_delete_failure(self, orchestrator, cfn, aws, settings, project_context):
        """Orphan removed, resource retained, stack gone on attempt two."""
        cfn.add_stack(PROJECT)
        cfn.on("delete_stack", ["DELETE_FAILED"], ["GONE"])
        cfn.resources[PROJECT] = [{
            "LogicalResourceId": "VpcLink",
            "ResourceType": "AWS::ApiGatewayV2::VpcLink",
            "ResourceStatus": "DELETE_FAILED",
            "PhysicalResourceId": "vl-1",
        }]
        links = [{"Items": [{"VpcLinkId": "vl-1", "Name": "acme-dev-svc-a-link"}]}]
        aws.apigatewayv2.get_vpc_links.side_effect = lambda **kw: links.pop(0) if links else {"Items": []}

        report = orchestrator.teardown_project(project_context)

        assert report.final_state is StackState.NOT_FOUND
        assert report.recovery.attempts == 2
        assert [r.logical_id for r in report.retained] == ["VpcLink"]
        aws.apigatewayv2.delete_vpc_link.assert_called_once_with(VpcLinkId="vl-1")
        assert any("VpcLink" in warning for warning in report.warnings)
        types = event_types(settings, PROJECT)
        assert EventTypes.ORPHANS_CLEANED in types
        assert types.count(EventTypes.RECOVERY_ATTEMPT) == 1

    def test_retained_bucket_reaped_after_delete(self, orchestrator, cfn, aws, project_context):
        """A retained bucket is emptied and removed once the stack is gone."""
        cfn.add_stack(PROJECT)
        cfn.on("delete_stack", ["DELETE_FAILED"], ["GONE"])
        cfn.resources[PROJECT] = [{
            "LogicalResourceId": "LogsBucket",
            "ResourceType": "AWS::S3::Bucket",
            "ResourceStatus": "DELETE_FAILED",
            "PhysicalResourceId": "acme-dev-svc-a-logs",
        }]

        report = orchestrator.teardown_project(project_context)

        assert "acme-dev-svc-a-logs" in [r.store.identifier for r in report.post_reap]
        assert report.warnings == []

    def test_shared_teardown_refused_with_project(self, orchestrator, cfn, settings, shared_context):
        """A remaining project stack blocks shared teardown and is named."""
        cfn.add_stack(SHARED)
        cfn.add_stack(PROJECT, tags={"Service": "svc-a"})

        with pytest.raises(DependencyNotSatisfiedError) as exc:
            orchestrator.teardown_shared(shared_context)

        assert "svc-a" in exc.value.message
        assert "svc-a" in exc.value.remediation
        assert cfn.mutations == []
        assert SHARED in cfn.stacks
        assert EventTypes.GATE_REFUSED in event_types(settings, SHARED)

    def test_shared_teardown(self, orchestrator, cfn, aws, settings, shared_context):
        """No dependents: stack deleted, logs and artifacts cleaned, outputs removed."""
        cfn.add_stack(SHARED, EnableTerminationProtection=True)
        cfn.add_stack("acme-dev-ec2-main")
        aws.logs.get_paginator("describe_log_groups").pages = lambda **kw: [
            {"logGroups": [{"logGroupName": kw["logGroupNamePrefix"] + "-x"}]}
        ]
        path = outputs_path(settings.output_dir, "dev")
        path.parent.mkdir(parents=True)
        path.write_text("{}")

        report = orchestrator.teardown_shared(shared_context, delete_bucket=True)

        assert report.final_state is StackState.NOT_FOUND
        assert cfn.mutation_names() == ["update_termination_protection", "delete_stack"]
        assert any("acme-dev-ec2-main" in warning for warning in report.warnings)
        reaped = [r.store.identifier for r in report.post_reap]
        assert f"acme-dev-pipeline-artifacts-{ACCOUNT}" in reaped
        assert "acme-templates" in reaped
        assert aws.logs.delete_log_group.call_count == 2
        assert not path.exists()


class TestBatchTeardown:
    """Tear down every project stack."""

    def test_all_projects(self, orchestrator, cfn, shared_context):
        """Discovered project stacks are all torn down; the shared stack stays."""
        cfn.add_stack(SHARED)
        cfn.add_stack(PROJECT, tags={"Service": "svc-a"})
        cfn.add_stack("acme-dev-svc-b-ec2")

        batch = orchestrator.teardown_projects(shared_context, parallel=2)

        assert batch.ok
        assert sorted(batch.reports) == ["svc-a", "svc-b"]
        assert list(cfn.stacks) == [SHARED]

    def test_failures_aggregated(self, orchestrator, cfn, shared_context):
        """One failing stack does not stop the others."""
        cfn.add_stack(PROJECT)
        cfn.add_stack("acme-dev-svc-b", "UPDATE_IN_PROGRESS")

        batch = orchestrator.teardown_projects(shared_context, services=["svc-a", "svc-b"])

        assert not batch.ok
        assert list(batch.errors) == ["svc-b"]
        assert batch.reports["svc-a"].complete
        assert batch.reports["svc-a"].final_state is StackState.NOT_FOUND

    def test_client_error_does_not_stop_batch(self, orchestrator, cfn, shared_context):
        """A throttled describe fails one service; the other still finishes."""
        cfn.add_stack(PROJECT)
        cfn.add_stack("acme-dev-svc-b")
        describe = cfn.describe_stacks

        def throttled(StackName):
            if StackName == PROJECT:
                raise make_client_error("Throttling", "Rate exceeded", "DescribeStacks")
            return describe(StackName)

        cfn.describe_stacks = throttled

        batch = orchestrator.teardown_projects(shared_context, services=["svc-a", "svc-b"])

        assert isinstance(batch.errors["svc-a"], ApplyFailureError)
        assert isinstance(batch.errors["svc-a"].__cause__, ClientError)
        assert "Rate exceeded" in batch.errors["svc-a"].message
        assert batch.reports["svc-b"].complete
        assert list(cfn.stacks) == [PROJECT]

    def test_unexpected_error_recorded(self, orchestrator, shared_context):
        """Any exception from one teardown is recorded against its service."""
        def teardown(context, **kwargs):
            if context.service == "svc-a":
                raise RuntimeError("boom")
            return TeardownReport(stack_name="acme-dev-svc-b", final_state=StackState.NOT_FOUND)

        with patch.object(orchestrator, "teardown_project", side_effect=teardown):
            batch = orchestrator.teardown_projects(shared_context, services=["svc-a", "svc-b"], parallel=2)

        assert isinstance(batch.errors["svc-a"], StrataError)
        assert isinstance(batch.errors["svc-a"].__cause__, RuntimeError)
        assert batch.reports["svc-b"].complete


class TestReservedServiceNames:
    """Project names that would land on a shared stack."""

    @pytest.mark.parametrize("service", ["main", "ec2-main"])
    def test_apply_refused(self, orchestrator, cfn, shared_context, service):
        """No change set is computed against a shared stack."""
        cfn.add_stack(SHARED)
        cfn.add_stack("acme-dev-ec2-main")

        with pytest.raises(ValidationError):
            orchestrator.apply_project(shared_context.for_service(service), options())

        assert cfn.mutations == []

    def test_teardown_refused(self, orchestrator, cfn, shared_context):
        """The shared stack is never deleted through a project teardown."""
        cfn.add_stack(SHARED)

        with pytest.raises(ValidationError):
            orchestrator.teardown_project(shared_context.for_service("main"))

        assert cfn.mutations == []
        assert SHARED in cfn.stacks

    def test_shared_teardown_sees_prefixed_project(self, orchestrator, cfn, shared_context):
        """A project stack named after the shared stack still blocks its teardown."""
        cfn.add_stack(SHARED)
        cfn.add_stack("acme-dev-main-api", tags={"Service": "main-api", "ComputeType": "fargate"})

        with pytest.raises(DependencyNotSatisfiedError) as exc:
            orchestrator.teardown_shared(shared_context)

        assert "main-api" in exc.value.message
        assert cfn.mutations == []
        assert SHARED in cfn.stacks


class TestPipelineFailure:
    """Follow-up steps after a successful project apply."""

    def test_pipeline_start_failure(self, orchestrator, cfn, aws, settings, project_context):
        """Outputs are kept, the error is typed and logged."""
        cfn.add_stack(SHARED)
        aws.codepipeline.start_pipeline_execution.side_effect = make_client_error(
            "PipelineNotFoundException", "pipeline not found", "StartPipelineExecution",
        )

        with pytest.raises(ApplyFailureError) as exc:
            orchestrator.apply_project(project_context, options())

        assert isinstance(exc.value.__cause__, ClientError)
        assert "pipeline not found" in exc.value.message
        assert outputs_path(settings.output_dir, "dev", "svc-a").exists()
        types = event_types(settings, PROJECT)
        assert EventTypes.OUTPUTS_WRITTEN in types
        assert types[-1] == EventTypes.ERROR


class TestStatus:
    """Status of a stack."""

    def test_last_local_run(self, orchestrator, cfn, settings, shared_context):
        """The most recent run-log event is reported with the remote state."""
        orchestrator.apply_shared(shared_context)

        status = orchestrator.status(shared_context)

        assert status["state"] == "CREATE_COMPLETE"
        assert status["last_run"]["type"] == event_types(settings, SHARED)[-1]

    def test_no_local_run(self, orchestrator, cfn, shared_context):
        """Nothing run locally yet."""
        status = orchestrator.status(shared_context)

        assert status["state"] == "NOT_FOUND"
        assert status["last_run"] is None
