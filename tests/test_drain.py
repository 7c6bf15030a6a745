"""
Tests for the compute drain controller and task definition cleanup.
"""

from unittest.mock import Mock

import pytest

from strata.compute import DrainController, DrainStatus, cleanup_task_definitions
from strata.errors import DeleteBlockedError
from strata.models import ComputeVariant, DrainTarget

from .conftest import FakeEcs, make_client_error, paginated


def target(**kwargs):
    values = {"cluster": "acme-dev-cluster", "service": "acme-dev-svc-a-svc"}
    values.update(kwargs)
    return DrainTarget(**values)


class TestDrainController:
    """Test scale-in and wait."""

    def test_drains_to_zero(self, waiter):
        """desiredCount goes to 0 and the wait ends when runningCount does."""
        ecs = FakeEcs(running=2, after_scale=[2, 1, 0])

        result = DrainController(ecs, waiter).drain(target())

        assert result.status is DrainStatus.DRAINED
        assert result.drained
        assert result.running_count == 0
        assert ("update_service", "acme-dev-svc-a-svc", 0) in ecs.calls
        assert result.elapsed <= 90

    def test_timeout_is_a_result(self, waiter):
        """Running tasks that never stop give TIMED_OUT, not an exception."""
        ecs = FakeEcs(running=2, after_scale=[2] * 50)

        result = DrainController(ecs, waiter).drain(target(timeout_budget=30))

        assert result.status is DrainStatus.TIMED_OUT
        assert not result.drained
        assert result.running_count == 2
        assert result.elapsed <= 30

    def test_missing_service(self, waiter):
        """A service that does not exist needs no drain."""
        ecs = FakeEcs(exists=False)

        result = DrainController(ecs, waiter).drain(target())

        assert result.status is DrainStatus.NOT_FOUND
        assert not any(call[0] == "update_service" for call in ecs.calls)

    def test_describe_failure_blocks_delete(self, waiter):
        """A throttled describe surfaces as a blocked delete, not a raw client error."""
        ecs = FakeEcs()
        ecs.describe_services = Mock(side_effect=make_client_error("Throttling", "Rate exceeded"))

        with pytest.raises(DeleteBlockedError) as exc:
            DrainController(ecs, waiter).drain(target())

        assert "ecs:DescribeServices" in exc.value.message
        assert exc.value.__cause__ is not None

    def test_instance_drain(self, waiter):
        """Container instances are set DRAINING in batches of ten."""
        ecs = FakeEcs(running=1, after_scale=[0])
        ecs.container_instances = [f"arn:ci/{i}" for i in range(12)]
        ecs.instance_tasks.extend([3, 1, 0])

        result = DrainController(ecs, waiter).drain(
            target(compute_variant=ComputeVariant.EC2, cluster="acme-dev-ec2-cluster"),
            drain_instances=True,
        )

        state_calls = [call for call in ecs.calls if call[0] == "update_container_instances_state"]
        assert [len(call[1]) for call in state_calls] == [10, 2]
        assert all(call[2] == "DRAINING" for call in state_calls)
        assert result.instances == 12
        assert result.instance_tasks == 0
        assert result.status is DrainStatus.DRAINED

    def test_instance_drain_only_for_ec2(self, waiter):
        """Managed compute has no container instances to drain."""
        ecs = FakeEcs(running=0)
        ecs.container_instances = ["arn:ci/1"]

        DrainController(ecs, waiter).drain(target(), drain_instances=True)

        assert not any(call[0] == "update_container_instances_state" for call in ecs.calls)


class TestTaskDefinitions:
    """Test task family cleanup."""

    def test_deregister_then_delete(self):
        """Active revisions are deregistered, then every inactive one deleted."""
        ecs = FakeEcs()
        family = "acme-dev-svc-a"
        ecs.task_definitions["ACTIVE"] = [
            f"arn:aws:ecs:us-east-1:1:task-definition/{family}:3",
            f"arn:aws:ecs:us-east-1:1:task-definition/{family}-worker:1",
        ]
        ecs.task_definitions["INACTIVE"] = [f"arn:aws:ecs:us-east-1:1:task-definition/{family}:{n}" for n in (1, 2)]

        result = cleanup_task_definitions(ecs, family)

        assert result.deregistered == [f"arn:aws:ecs:us-east-1:1:task-definition/{family}:3"]
        assert len(result.deleted) == 3
        assert result.failed == {}
        assert ecs.task_definitions["ACTIVE"] == [f"arn:aws:ecs:us-east-1:1:task-definition/{family}-worker:1"]

    def test_listing_failure_recorded(self):
        """A family that cannot be listed is reported as failed."""
        ecs = FakeEcs()

        def pages(**kwargs):
            raise make_client_error("Throttling", "Rate exceeded")

        paginated(ecs, list_task_definitions=pages)

        result = cleanup_task_definitions(ecs, "acme-dev-svc-a")

        assert result.failed == {"acme-dev-svc-a": "Rate exceeded"}
        assert result.deregistered == []
