"""
Stack apply engine: create, update or delete one stack.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from botocore.exceptions import ClientError

from ..aws import error_code, error_message, raise_if_access_denied
from ..config import Settings
from ..errors import ApplyFailureError, StackBusyError
from ..models import (
    ApplyResult,
    Operation,
    RECREATE_STATES,
    StackDescriptor,
    StackState,
)
from .observer import Observation, StackObserver
from .status import StackReader

logger = logging.getLogger(__name__)

CHANGE_SET_PREFIX = "strata"


def change_set_name() -> str:
    return f"{CHANGE_SET_PREFIX}-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')}"


def is_empty_change_set(status: str, description: dict) -> bool:
    """A change set that failed with nothing to change is the no-op signal."""
    return status == "FAILED" and not description.get("Changes")


class StackApplier:
    """
    Issues create, update and delete calls for a single stack name.

    Concurrent mutation of the same stack is refused rather than attempted.
    Waiting is delegated to the StackObserver.
    """

    def __init__(self, cloudformation, reader: StackReader, observer: StackObserver,
                 settings: Settings, recovery=None, dry_run: bool = False):
        self.cfn = cloudformation
        self.reader = reader
        self.observer = observer
        self.settings = settings
        self.recovery = recovery
        self.dry_run = dry_run

    def apply(self, descriptor: StackDescriptor) -> ApplyResult:
        """
        Bring ``descriptor.canonical_name`` to the described state.

        Returns:
            ApplyResult: CREATE, UPDATE or NO_OP and the final stack state

        Raises:
            StackBusyError: If another operation is in progress on the stack
            ApplyFailureError: If the control plane rejects or fails the change
            StackTimeoutError: If the stack does not settle within budget
        """
        name = descriptor.canonical_name
        state = self.reader.state(name)
        logger.info(f"{name}: current state {state.value}")

        if state.in_progress:
            raise StackBusyError(
                f"Stack {name} is busy ({state.value}); refusing concurrent mutation",
                stack_name=name,
                state=state,
                remediation="Wait for the running operation to finish and retry",
            )

        if state is StackState.UNKNOWN:
            raise ApplyFailureError(f"Stack {name} reported an unrecognized status", stack_name=name, state=state)

        if state is StackState.NOT_FOUND:
            return self._create(descriptor)

        if state.healthy:
            return self._update(descriptor, state)

        if state in RECREATE_STATES:
            return self._recreate(descriptor, state)

        raise ApplyFailureError(f"Stack {name} is in unexpected state {state.value}", stack_name=name, state=state)

    def _log_plan(self, operation: Operation, descriptor: StackDescriptor) -> None:
        logger.info(f"[dry-run] would {operation.value} {descriptor.canonical_name}")
        logger.info(f"[dry-run]   template: {descriptor.template_url}")
        for key, value in descriptor.parameters.items():
            logger.info(f"[dry-run]   parameter {key}={value}")
        for key, value in descriptor.tags.items():
            logger.info(f"[dry-run]   tag {key}={value}")

    def _create(self, descriptor: StackDescriptor) -> ApplyResult:
        name = descriptor.canonical_name
        if self.dry_run:
            self._log_plan(Operation.CREATE, descriptor)
            return ApplyResult(Operation.CREATE, StackState.NOT_FOUND, stack_name=name, dry_run=True)

        on_failure = "ROLLBACK" if self.settings.rollback_on_failure else "DO_NOTHING"
        logger.info(f"Creating stack {name} (OnFailure={on_failure})")
        try:
            self.cfn.create_stack(
                StackName=name,
                TemplateURL=descriptor.template_url,
                Parameters=descriptor.cfn_parameters(),
                Capabilities=list(descriptor.capabilities),
                Tags=descriptor.cfn_tags(),
                OnFailure=on_failure,
            )
        except ClientError as e:
            self._raise_rejected(e, name, "cloudformation:CreateStack")

        observation = self.observer.await_terminal(name, Operation.CREATE, self.settings.create_timeout)
        return self._finish(Operation.CREATE, observation)

    def _update(self, descriptor: StackDescriptor, state: StackState) -> ApplyResult:
        name = descriptor.canonical_name
        if self.dry_run:
            self._log_plan(Operation.UPDATE, descriptor)
            return ApplyResult(Operation.UPDATE, state, stack_name=name, dry_run=True)

        cs_name = change_set_name()
        logger.info(f"Computing change set {cs_name} for {name}")
        try:
            self.cfn.create_change_set(
                StackName=name,
                ChangeSetName=cs_name,
                ChangeSetType="UPDATE",
                TemplateURL=descriptor.template_url,
                Parameters=descriptor.cfn_parameters(),
                Capabilities=list(descriptor.capabilities),
                Tags=descriptor.cfn_tags(),
            )
        except ClientError as e:
            self._raise_rejected(e, name, "cloudformation:CreateChangeSet")

        status, description = self.observer.await_change_set(name, cs_name)

        if is_empty_change_set(status, description):
            logger.info(f"{name}: no changes to apply")
            try:
                self.cfn.delete_change_set(StackName=name, ChangeSetName=cs_name)
            except ClientError as e:
                self._raise_rejected(e, name, "cloudformation:DeleteChangeSet")
            return ApplyResult(Operation.NO_OP, state, stack_name=name, outputs=self.reader.outputs(name))

        if status != "CREATE_COMPLETE":
            raise ApplyFailureError(
                f"Change set for {name} failed: {description.get('StatusReason', status)}",
                stack_name=name,
                state=state,
            )

        logger.info(f"Executing change set {cs_name} ({len(description.get('Changes', []))} changes)")
        try:
            self.cfn.execute_change_set(StackName=name, ChangeSetName=cs_name)
        except ClientError as e:
            self._raise_rejected(e, name, "cloudformation:ExecuteChangeSet")

        observation = self.observer.await_terminal(name, Operation.UPDATE, self.settings.update_timeout)
        return self._finish(Operation.UPDATE, observation)

    def _recreate(self, descriptor: StackDescriptor, state: StackState) -> ApplyResult:
        name = descriptor.canonical_name
        logger.warning(f"{name} is in {state.value} and cannot be updated; destroying and recreating")
        if self.dry_run:
            self._log_plan(Operation.CREATE, descriptor)
            return ApplyResult(Operation.CREATE, state, stack_name=name, dry_run=True)
        if self.recovery is None:
            raise ApplyFailureError(
                f"Stack {name} is in {state.value} and must be deleted before it can be recreated",
                stack_name=name,
                state=state,
            )
        self.recovery.recover_delete(name)
        return self._create(descriptor)

    def _finish(self, operation: Operation, observation: Observation) -> ApplyResult:
        name = observation.stack_name
        if not observation.succeeded:
            raise ApplyFailureError(
                f"{operation.value.capitalize()} of {name} failed: stack is {observation.state.value}",
                stack_name=name,
                state=observation.state,
                events=observation.events,
                remediation=f"Inspect the events above, then re-run the deploy for {name}",
            )
        return ApplyResult(
            operation,
            observation.state,
            stack_name=name,
            outputs=self.reader.outputs(name),
        )

    def issue_delete(self, stack_name: str, retain: Optional[List[str]] = None) -> None:
        """Issue one delete call, optionally retaining the named logical resources."""
        if self.reader.termination_protected(stack_name):
            logger.info(f"Disabling termination protection on {stack_name}")
            try:
                self.cfn.update_termination_protection(EnableTerminationProtection=False, StackName=stack_name)
            except ClientError as e:
                self._raise_rejected(e, stack_name, "cloudformation:UpdateTerminationProtection")

        kwargs = {"StackName": stack_name}
        if retain:
            kwargs["RetainResources"] = list(retain)
            logger.warning(f"Deleting {stack_name} retaining: {', '.join(retain)}")
        else:
            logger.info(f"Deleting stack {stack_name}")
        try:
            self.cfn.delete_stack(**kwargs)
        except ClientError as e:
            self._raise_rejected(e, stack_name, "cloudformation:DeleteStack")

    def delete(self, stack_name: str) -> ApplyResult:
        """
        Delete a stack and wait for the outcome.

        A DELETE_FAILED outcome is returned, not raised, so the caller can
        hand it to the recovery engine.
        """
        state = self.reader.state(stack_name)
        if state.gone:
            logger.info(f"{stack_name} does not exist; nothing to delete")
            return ApplyResult(Operation.NO_OP, StackState.NOT_FOUND, stack_name=stack_name)

        if state.in_progress and state is not StackState.DELETE_IN_PROGRESS:
            raise StackBusyError(
                f"Stack {stack_name} is busy ({state.value}); refusing to delete",
                stack_name=stack_name,
                state=state,
                remediation="Wait for the running operation to finish and retry",
            )

        if self.dry_run:
            logger.info(f"[dry-run] would delete {stack_name}")
            return ApplyResult(Operation.DELETE, state, stack_name=stack_name, dry_run=True)

        if state is not StackState.DELETE_IN_PROGRESS:
            self.issue_delete(stack_name)

        observation = self.observer.await_terminal(stack_name, Operation.DELETE, self.settings.delete_timeout)
        return ApplyResult(
            Operation.DELETE,
            observation.state,
            stack_name=stack_name,
            diagnostics=observation.events,
        )

    def _raise_rejected(self, error: ClientError, stack_name: str, operation: str) -> None:
        raise_if_access_denied(error, operation)
        if error_code(error) == "AlreadyExistsException":
            raise StackBusyError(
                f"Stack {stack_name} was created concurrently by another caller",
                stack_name=stack_name,
            ) from error
        raise ApplyFailureError(
            f"{operation} rejected for {stack_name}: {error_message(error)}",
            stack_name=stack_name,
        ) from error
