"""
Dependency gate between the shared and project tiers.

Only read calls are made here. A refusal is raised before any mutating call
of the operation being gated.
"""

import logging
from typing import List

from ..errors import DependencyNotSatisfiedError
from ..models import ComputeVariant, ProjectStack, StackState
from ..naming import ResourceNames, service_from_stack_name, shared_stack_name
from ..tags import tags_from_stack
from .status import StackReader

logger = logging.getLogger(__name__)


def deploy_shared_command(names: ResourceNames) -> str:
    return (f"strata deploy shared --environment {names.environment} "
            f"--compute-variant {names.variant.value}")


def teardown_project_command(names: ResourceNames, stack: ProjectStack) -> str:
    return (f"strata teardown project --service {stack.service} --environment {names.environment} "
            f"--compute-variant {stack.compute_variant.value}")


class DependencyGate:
    """Check the shared tier before project mutations, and the reverse at teardown."""

    def __init__(self, reader: StackReader):
        self.reader = reader

    def check_dependency(self, names: ResourceNames) -> StackState:
        """
        Confirm the shared stack a project depends on is healthy.

        Returns:
            StackState: The healthy shared stack state

        Raises:
            DependencyNotSatisfiedError: Shared stack missing, failed or busy
        """
        shared = names.shared_stack
        state = self.reader.state(shared)

        if state.healthy:
            logger.info(f"Dependency OK: {shared} is {state.value}")
            return state

        if state is StackState.NOT_FOUND:
            message = f"Shared stack {shared} does not exist"
        elif state.in_progress:
            message = f"Shared stack {shared} is still {state.value}"
        else:
            message = f"Shared stack {shared} is in unhealthy state {state.value}"

        raise DependencyNotSatisfiedError(
            message,
            stack_name=shared,
            state=state,
            remediation=f"Run: {deploy_shared_command(names)}",
        )

    def find_dependents(self, names: ResourceNames) -> List[ProjectStack]:
        """
        List project stacks of the environment that reference the shared stack.

        Nested stacks and the shared stacks of either variant are excluded.
        """
        prefix = names.project_stack_prefix
        shared_names = {
            shared_stack_name(names.project, names.environment, variant)
            for variant in ComputeVariant
        }

        dependents = []
        for stack in self.reader.list_stacks(prefix):
            stack_name = stack["StackName"]
            if stack_name in shared_names:
                continue
            if stack.get("ParentId") or stack.get("RootId"):
                continue

            tags = tags_from_stack(stack)
            service, variant = service_from_stack_name(names.project, names.environment, stack_name)
            if tags.get("Service"):
                service = tags["Service"]
            if tags.get("ComputeType"):
                try:
                    variant = ComputeVariant.parse(tags["ComputeType"])
                except ValueError:
                    logger.debug(f"{stack_name}: ignoring unknown ComputeType tag {tags['ComputeType']}")

            dependents.append(ProjectStack(
                stack_name=stack_name,
                service=service,
                compute_variant=variant,
                state=StackState.from_remote(stack.get("StackStatus")),
            ))

        return dependents

    def check_no_dependents(self, names: ResourceNames) -> None:
        """
        Refuse shared-tier teardown while any project stack still exists.

        Raises:
            DependencyNotSatisfiedError: Naming every remaining project stack
        """
        dependents = self.find_dependents(names)
        if not dependents:
            logger.info(f"No project stacks depend on {names.shared_stack}")
            return

        services = ", ".join(stack.service for stack in dependents)
        commands = "\n".join(f"  {teardown_project_command(names, stack)}" for stack in dependents)
        raise DependencyNotSatisfiedError(
            f"Cannot tear down {names.shared_stack}: project stacks still exist for {services}",
            stack_name=names.shared_stack,
            remediation=f"Tear down the project stacks first:\n{commands}",
        )
