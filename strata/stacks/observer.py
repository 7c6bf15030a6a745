"""
Stack observation: poll until a stack reaches a terminal state.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from ..aws import raise_client_error
from ..errors import ApplyFailureError, StackTimeoutError
from ..models import Operation, StackEvent, StackState
from ..waiting import Waiter
from .status import StackReader

logger = logging.getLogger(__name__)

SUCCESS_STATES = {
    Operation.CREATE: {StackState.CREATE_COMPLETE},
    Operation.UPDATE: {StackState.UPDATE_COMPLETE},
    Operation.DELETE: {StackState.NOT_FOUND, StackState.DELETE_COMPLETE},
}

CHANGE_SET_FINAL = ("CREATE_COMPLETE", "FAILED", "DELETE_COMPLETE", "DELETE_FAILED")


@dataclass
class Observation:
    """Terminal state reached by a stack, with diagnostics when it failed."""
    stack_name: str
    operation: Operation
    state: StackState
    elapsed: float = 0.0
    events: List[StackEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES.get(self.operation, set())


def is_terminal(state: StackState) -> bool:
    return not state.in_progress


class StackObserver:
    """
    Polls stack status on a fixed interval until terminal or out of budget.

    Several observers may run at once for different stack names; an observer
    holds no state between calls.
    """

    def __init__(self, reader: StackReader, waiter: Waiter, diagnostic_events: int = 10):
        self.reader = reader
        self.waiter = waiter
        self.diagnostic_events = diagnostic_events

    def await_terminal(self, stack_name: str, operation: Operation,
                       timeout: Optional[float] = None) -> Observation:
        """
        Wait for ``stack_name`` to leave every *_IN_PROGRESS state.

        Returns:
            Observation: Final state; ``events`` holds recent failure events
            when the state is not the success state for ``operation``

        Raises:
            StackTimeoutError: If the budget elapsed or polling was cancelled
        """
        waiter = self.waiter if timeout is None else self.waiter.with_timeout(timeout)
        logger.info(f"Waiting for {operation.value} of {stack_name} (budget {waiter.timeout:.0f}s)")

        def progress(state: StackState, elapsed: float) -> None:
            logger.info(f"  {stack_name}: {state.value} ({elapsed:.0f}s)")

        result = waiter.wait_for(lambda: self.reader.state(stack_name), is_terminal, on_poll=progress)

        if not result.done:
            reason = "polling cancelled" if result.cancelled else "timed out"
            raise StackTimeoutError(
                f"{operation.value.capitalize()} of {stack_name} {reason} after "
                f"{result.elapsed:.0f}s in state {result.value.value}; the remote operation continues",
                stack_name=stack_name,
                last_state=result.value,
                elapsed=result.elapsed,
            )

        observation = Observation(
            stack_name=stack_name,
            operation=operation,
            state=result.value,
            elapsed=result.elapsed,
        )
        if not observation.succeeded:
            observation.events = self.reader.failure_events(stack_name, limit=self.diagnostic_events)
            logger.warning(f"{stack_name} ended in {observation.state.value}")
        else:
            logger.info(f"{stack_name} reached {observation.state.value}")
        return observation

    def await_change_set(self, stack_name: str, change_set_name: str) -> Tuple[str, Dict]:
        """
        Wait for a change set to finish computing.

        Returns:
            (status, description) of the change set

        Raises:
            StackTimeoutError: If the change set is still computing when the budget runs out
        """
        def describe():
            try:
                return self.reader.cfn.describe_change_set(
                    StackName=stack_name, ChangeSetName=change_set_name,
                )
            except ClientError as e:
                raise_client_error(e, "cloudformation:DescribeChangeSet", ApplyFailureError,
                                   stack_name=stack_name)

        result = self.waiter.wait_for(describe, lambda cs: cs.get("Status") in CHANGE_SET_FINAL)
        if not result.done:
            raise StackTimeoutError(
                f"Change set {change_set_name} for {stack_name} did not finish computing",
                stack_name=stack_name,
                last_state=(result.value or {}).get("Status"),
                elapsed=result.elapsed,
            )
        return result.value["Status"], result.value
