"""
Compute drain controller.

Scales a service to zero and waits for its running task count to follow.
A drain timeout is a warning-class result; the caller decides whether to
carry on with teardown.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from botocore.exceptions import ClientError

from ..aws import error_code, raise_client_error
from ..errors import DeleteBlockedError
from ..models import ComputeVariant, DrainTarget
from ..waiting import Waiter

logger = logging.getLogger(__name__)

INSTANCE_STATE_BATCH = 10
DESCRIBE_INSTANCES_BATCH = 100


class DrainStatus(Enum):
    DRAINED = "drained"
    TIMED_OUT = "timed_out"
    NOT_FOUND = "not_found"


@dataclass
class DrainResult:
    target: DrainTarget
    status: DrainStatus
    running_count: int = 0
    elapsed: float = 0.0
    instances: int = 0
    instance_tasks: Optional[int] = None

    @property
    def drained(self) -> bool:
        return self.status is not DrainStatus.TIMED_OUT


class DrainController:
    """Drive desiredCount to 0 and observe runningCount reach 0."""

    def __init__(self, ecs, waiter: Waiter):
        self.ecs = ecs
        self.waiter = waiter

    def describe_service(self, cluster: str, service: str) -> Optional[dict]:
        """Return the ACTIVE service description, or None."""
        try:
            response = self.ecs.describe_services(cluster=cluster, services=[service])
        except ClientError as e:
            if error_code(e) in ("ClusterNotFoundException", "ServiceNotFoundException"):
                return None
            raise_client_error(e, "ecs:DescribeServices", DeleteBlockedError)
        for described in response.get("services", []):
            if described.get("status") != "INACTIVE":
                return described
        return None

    def running_count(self, target: DrainTarget) -> int:
        described = self.describe_service(target.cluster, target.service)
        return described.get("runningCount", 0) if described else 0

    def drain(self, target: DrainTarget, drain_instances: bool = False) -> DrainResult:
        """
        Drain one service.

        Args:
            target: Service to drain; its timeout_budget bounds the wait
            drain_instances: For instance-backed clusters, also set every
                container instance to DRAINING and wait for their tasks

        Returns:
            DrainResult: DRAINED, TIMED_OUT or NOT_FOUND
        """
        described = self.describe_service(target.cluster, target.service)
        if described is None:
            logger.info(f"Service {target.service_ref} does not exist or is inactive")
            result = DrainResult(target=target, status=DrainStatus.NOT_FOUND)
        else:
            target.desired_count = described.get("desiredCount", 0)
            target.running_count = described.get("runningCount", 0)
            logger.info(
                f"Scaling {target.service_ref} to 0 "
                f"(desired {target.desired_count}, running {target.running_count})"
            )
            try:
                self.ecs.update_service(cluster=target.cluster, service=target.service, desiredCount=0)
            except ClientError as e:
                raise_client_error(e, "ecs:UpdateService", DeleteBlockedError)
            target.desired_count = 0
            result = self._wait_for_tasks(target)

        if drain_instances and target.compute_variant is ComputeVariant.EC2:
            self._drain_instances(target, result)

        return result

    def _wait_for_tasks(self, target: DrainTarget) -> DrainResult:
        def progress(count: int, elapsed: float) -> None:
            logger.info(f"  {target.service_ref}: {count} task(s) running ({elapsed:.0f}s)")

        wait = self.waiter.with_timeout(target.timeout_budget).wait_for(
            lambda: self.running_count(target),
            lambda count: count == 0,
            on_poll=progress,
        )
        target.running_count = wait.value
        if wait.done:
            logger.info(f"All tasks of {target.service_ref} stopped")
            status = DrainStatus.DRAINED
        else:
            logger.warning(
                f"Timed out after {wait.elapsed:.0f}s waiting for {target.service_ref} to drain "
                f"({wait.value} task(s) still running); proceeding anyway"
            )
            status = DrainStatus.TIMED_OUT
        return DrainResult(target=target, status=status, running_count=wait.value, elapsed=wait.elapsed)

    def list_container_instances(self, cluster: str) -> List[str]:
        arns = []
        try:
            for page in self.ecs.get_paginator("list_container_instances").paginate(cluster=cluster):
                arns.extend(page.get("containerInstanceArns", []))
        except ClientError as e:
            if error_code(e) == "ClusterNotFoundException":
                return []
            raise_client_error(e, "ecs:ListContainerInstances", DeleteBlockedError)
        return arns

    def instance_task_count(self, cluster: str, arns: List[str]) -> int:
        total = 0
        for start in range(0, len(arns), DESCRIBE_INSTANCES_BATCH):
            try:
                response = self.ecs.describe_container_instances(
                    cluster=cluster, containerInstances=arns[start:start + DESCRIBE_INSTANCES_BATCH],
                )
            except ClientError as e:
                raise_client_error(e, "ecs:DescribeContainerInstances", DeleteBlockedError)
            total += sum(i.get("runningTasksCount", 0) for i in response.get("containerInstances", []))
        return total

    def _drain_instances(self, target: DrainTarget, result: DrainResult) -> None:
        arns = self.list_container_instances(target.cluster)
        result.instances = len(arns)
        if not arns:
            logger.info(f"No container instances registered in {target.cluster}")
            return

        logger.info(f"Setting {len(arns)} container instance(s) in {target.cluster} to DRAINING")
        for start in range(0, len(arns), INSTANCE_STATE_BATCH):
            try:
                self.ecs.update_container_instances_state(
                    cluster=target.cluster,
                    containerInstances=arns[start:start + INSTANCE_STATE_BATCH],
                    status="DRAINING",
                )
            except ClientError as e:
                raise_client_error(e, "ecs:UpdateContainerInstancesState", DeleteBlockedError)

        wait = self.waiter.with_timeout(target.instance_timeout_budget).wait_for(
            lambda: self.instance_task_count(target.cluster, arns),
            lambda count: count == 0,
        )
        result.instance_tasks = wait.value
        result.elapsed += wait.elapsed
        if wait.done:
            logger.info("All container instances drained")
        else:
            logger.warning(
                f"{wait.value} task(s) still running on container instances after "
                f"{wait.elapsed:.0f}s; proceeding anyway"
            )
            result.status = DrainStatus.TIMED_OUT
