"""
Shared fixtures: in-memory control-plane fakes and a fake clock.

No test touches the network or sleeps for real.
"""

from collections import deque
from unittest.mock import MagicMock, Mock

import pytest
from botocore.exceptions import ClientError

from strata.aws import AwsClients
from strata.config import Settings
from strata.context import RunContext
from strata.models import ComputeVariant
from strata.waiting import Waiter

ACCOUNT = "123456789012"


def make_client_error(code, message="", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def paginate(self, **kwargs):
        self.calls.append(kwargs)
        pages = self.pages(**kwargs) if callable(self.pages) else self.pages
        return iter(pages)


def paginated(client, **pages_by_operation):
    """Wire ``client.get_paginator(name)`` to fixed or computed pages."""
    paginators = {name: FakePaginator(pages) for name, pages in pages_by_operation.items()}
    client.get_paginator = Mock(side_effect=lambda name: paginators[name])
    return paginators


class FakeCloudFormation:
    """
    Scripted CloudFormation.

    Every mutating call is recorded in ``mutations``. After a mutation the
    stack goes to its *_IN_PROGRESS status; the statuses queued with
    :meth:`on` (or the defaults) are then consumed one per DescribeStacks
    call. ``"GONE"`` removes the stack.
    """

    DEFAULT_OUTCOMES = {
        "create_stack": ("CREATE_IN_PROGRESS", ["CREATE_COMPLETE"]),
        "execute_change_set": ("UPDATE_IN_PROGRESS", ["UPDATE_COMPLETE"]),
        "delete_stack": ("DELETE_IN_PROGRESS", ["GONE"]),
    }

    def __init__(self):
        self.stacks = {}
        self.pending = {}
        self.outcomes = {}
        self.mutations = []
        self.resources = {}
        self.events = {}
        self.outputs_after_create = {}
        self.change_set_changes = []
        self.change_sets = {}
        self.invalid_templates = {}
        self.validated = []
        self.describe_calls = 0

    # Test setup helpers

    def add_stack(self, name, status="CREATE_COMPLETE", outputs=None, tags=None, **extra):
        stack = {
            "StackName": name,
            "StackStatus": status,
            "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in (outputs or {}).items()],
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
        }
        stack.update(extra)
        self.stacks[name] = stack
        return stack

    def on(self, method, *sequences):
        """Queue status sequences for the next calls of a mutating method."""
        self.outcomes.setdefault(method, deque()).extend(list(s) for s in sequences)

    def mutation_names(self):
        return [name for name, _ in self.mutations]

    def _mutate(self, method, name):
        in_progress, default = self.DEFAULT_OUTCOMES[method]
        queued = self.outcomes.get(method)
        statuses = queued.popleft() if queued else list(default)
        self.stacks[name]["StackStatus"] = in_progress
        self.pending[name] = deque(statuses)

    def _missing(self, name):
        return make_client_error("ValidationError", f"Stack with id {name} does not exist", "DescribeStacks")

    # Read API

    def describe_stacks(self, StackName):
        self.describe_calls += 1
        queue = self.pending.get(StackName)
        if queue:
            status = queue.popleft()
            if status == "GONE":
                self.stacks.pop(StackName, None)
            elif StackName in self.stacks:
                self.stacks[StackName]["StackStatus"] = status
                if status == "CREATE_COMPLETE" and StackName in self.outputs_after_create:
                    self.stacks[StackName]["Outputs"] = [
                        {"OutputKey": k, "OutputValue": v}
                        for k, v in self.outputs_after_create[StackName].items()
                    ]
        if StackName not in self.stacks:
            raise self._missing(StackName)
        return {"Stacks": [dict(self.stacks[StackName])]}

    def describe_stack_events(self, StackName):
        if StackName not in self.stacks:
            raise self._missing(StackName)
        return {"StackEvents": self.events.get(StackName, [])}

    def describe_stack_resources(self, StackName):
        if StackName not in self.stacks:
            raise self._missing(StackName)
        return {"StackResources": self.resources.get(StackName, [])}

    def get_paginator(self, name):
        assert name == "describe_stacks"
        return FakePaginator(lambda **kw: [{"Stacks": [dict(s) for s in self.stacks.values()]}])

    def describe_change_set(self, StackName, ChangeSetName):
        return self.change_sets[ChangeSetName]

    def validate_template(self, **kwargs):
        body = kwargs.get("TemplateBody") or kwargs.get("TemplateURL")
        self.validated.append(body)
        for marker, message in self.invalid_templates.items():
            if marker in body:
                raise make_client_error("ValidationError", message, "ValidateTemplate")
        return {"Parameters": []}

    # Mutating API

    def create_stack(self, **kwargs):
        name = kwargs["StackName"]
        self.mutations.append(("create_stack", kwargs))
        if name in self.stacks:
            raise make_client_error("AlreadyExistsException", f"Stack [{name}] already exists", "CreateStack")
        self.add_stack(name, tags={t["Key"]: t["Value"] for t in kwargs.get("Tags", [])})
        self._mutate("create_stack", name)
        return {"StackId": f"arn:aws:cloudformation:us-east-1:{ACCOUNT}:stack/{name}/1"}

    def create_change_set(self, **kwargs):
        self.mutations.append(("create_change_set", kwargs))
        changes = list(self.change_set_changes)
        self.change_sets[kwargs["ChangeSetName"]] = {
            "Status": "CREATE_COMPLETE" if changes else "FAILED",
            "StatusReason": "" if changes else "The submitted information didn't contain changes.",
            "Changes": changes,
        }
        return {"Id": kwargs["ChangeSetName"]}

    def delete_change_set(self, StackName, ChangeSetName):
        self.mutations.append(("delete_change_set", {"StackName": StackName, "ChangeSetName": ChangeSetName}))
        self.change_sets.pop(ChangeSetName, None)

    def execute_change_set(self, StackName, ChangeSetName):
        self.mutations.append(("execute_change_set", {"StackName": StackName, "ChangeSetName": ChangeSetName}))
        self._mutate("execute_change_set", StackName)

    def delete_stack(self, **kwargs):
        name = kwargs["StackName"]
        self.mutations.append(("delete_stack", kwargs))
        if name in self.stacks:
            self._mutate("delete_stack", name)

    def update_termination_protection(self, EnableTerminationProtection, StackName):
        self.mutations.append(("update_termination_protection", {
            "StackName": StackName, "EnableTerminationProtection": EnableTerminationProtection,
        }))
        self.stacks[StackName]["EnableTerminationProtection"] = EnableTerminationProtection


class FakeEcs:
    """ECS service whose running count follows a scripted sequence after scale-in."""

    def __init__(self, running=0, after_scale=None, exists=True):
        self.exists = exists
        self.desired = running
        self.running = running
        self.after_scale = deque(after_scale or [])
        self.calls = []
        self.container_instances = []
        self.instance_tasks = deque()
        self.task_definitions = {"ACTIVE": [], "INACTIVE": []}
        paginated(
            self,
            list_container_instances=lambda **kw: [{"containerInstanceArns": list(self.container_instances)}],
            list_task_definitions=lambda **kw: [{"taskDefinitionArns": list(self.task_definitions[kw["status"]])}],
        )

    def describe_services(self, cluster, services):
        self.calls.append(("describe_services", services[0]))
        if not self.exists:
            return {"services": [], "failures": [{"reason": "MISSING"}]}
        if self.desired == 0 and self.after_scale:
            self.running = self.after_scale.popleft()
        return {"services": [{
            "serviceName": services[0],
            "status": "ACTIVE",
            "desiredCount": self.desired,
            "runningCount": self.running,
        }]}

    def update_service(self, cluster, service, desiredCount):
        self.calls.append(("update_service", service, desiredCount))
        self.desired = desiredCount

    def update_container_instances_state(self, cluster, containerInstances, status):
        self.calls.append(("update_container_instances_state", list(containerInstances), status))

    def describe_container_instances(self, cluster, containerInstances):
        count = self.instance_tasks.popleft() if self.instance_tasks else 0
        instances = [{"containerInstanceArn": arn, "runningTasksCount": 0} for arn in containerInstances]
        if instances:
            instances[0]["runningTasksCount"] = count
        return {"containerInstances": instances}

    def deregister_task_definition(self, taskDefinition):
        self.calls.append(("deregister_task_definition", taskDefinition))
        self.task_definitions["ACTIVE"].remove(taskDefinition)
        self.task_definitions["INACTIVE"].append(taskDefinition)

    def delete_task_definitions(self, taskDefinitions):
        self.calls.append(("delete_task_definitions", list(taskDefinitions)))
        for arn in taskDefinitions:
            self.task_definitions["INACTIVE"].remove(arn)
        return {"taskDefinitions": [{"taskDefinitionArn": arn} for arn in taskDefinitions], "failures": []}


def fake_s3(objects=None, versions=None, markers=None, exists=True):
    """S3 mock holding one bucket's listing."""
    s3 = MagicMock()
    if not exists:
        s3.head_bucket.side_effect = make_client_error("404", "Not Found", "HeadBucket")
    s3.delete_objects.return_value = {"Deleted": []}
    paginated(
        s3,
        list_objects_v2=[{"Contents": [{"Key": key} for key in (objects or [])]}],
        list_object_versions=[{
            "Versions": [{"Key": k, "VersionId": v} for k, v in (versions or [])],
            "DeleteMarkers": [{"Key": k, "VersionId": v} for k, v in (markers or [])],
        }],
    )
    return s3


def fake_ecr(images=None):
    ecr = MagicMock()
    ecr.batch_delete_image.return_value = {"imageIds": [], "failures": []}
    paginated(ecr, list_images=[{"imageIds": [{"imageDigest": d} for d in (images or [])]}])
    return ecr


def fake_logs(groups=None):
    logs = MagicMock()
    paginated(logs, describe_log_groups=lambda **kw: [{
        "logGroups": [{"logGroupName": g} for g in (groups or []) if g.startswith(kw["logGroupNamePrefix"])]
    }])
    return logs


def fake_codepipeline(executions=None):
    codepipeline = MagicMock()
    codepipeline.start_pipeline_execution.return_value = {"pipelineExecutionId": "exec-1"}
    paginated(codepipeline, list_pipeline_executions=[{"pipelineExecutionSummaries": executions or []}])
    return codepipeline


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def waiter(clock):
    return Waiter(interval=5, timeout=600, sleep=clock.sleep, clock=clock)


@pytest.fixture
def cfn():
    return FakeCloudFormation()


@pytest.fixture
def settings(tmp_path):
    template_dir = tmp_path / "infrastructure"
    template_dir.mkdir()
    for name in (
        "vpc.yaml", "security-groups.yaml", "iam.yaml", "alb.yaml", "api-gateway.yaml",
        "monitoring.yaml", "ecs-cluster.yaml", "main.yaml", "ecs-ec2-cluster.yaml",
        "main-ec2.yaml", "project.yaml", "project-ec2.yaml",
    ):
        (template_dir / name).write_text(f"AWSTemplateFormatVersion: '2010-09-09'\nDescription: {name}\n")

    return Settings(
        project_name="acme",
        region="us-east-1",
        templates_bucket="acme-templates",
        template_dir=str(template_dir),
        buildspec_dir=str(tmp_path / "buildspecs"),
        output_dir=str(tmp_path / "out"),
        state_dir=str(tmp_path / ".strata"),
        poll_interval=5,
        orphan_wait=30,
    )


@pytest.fixture
def aws(cfn):
    """Every client the orchestrator uses, as fakes."""
    sts = Mock()
    sts.get_caller_identity.return_value = {
        "Account": ACCOUNT,
        "Arn": f"arn:aws:iam::{ACCOUNT}:user/deployer",
    }
    apigatewayv2 = Mock()
    apigatewayv2.get_vpc_links.return_value = {"Items": []}
    return AwsClients("us-east-1", overrides={
        "cloudformation": cfn,
        "sts": sts,
        "s3": fake_s3(),
        "ecr": fake_ecr(),
        "ecs": FakeEcs(exists=False),
        "secretsmanager": MagicMock(),
        "logs": fake_logs(),
        "apigatewayv2": apigatewayv2,
        "codepipeline": fake_codepipeline(),
    })


@pytest.fixture
def shared_context():
    return RunContext(
        project="acme",
        environment="dev",
        region="us-east-1",
        variant=ComputeVariant.FARGATE,
        account_id=ACCOUNT,
        caller_arn=f"arn:aws:iam::{ACCOUNT}:user/deployer",
    )


@pytest.fixture
def project_context(shared_context):
    return shared_context.for_service("svc-a")
