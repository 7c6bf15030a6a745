"""
Read-only queries against the stack control plane.

Nothing here is cached: every call goes to the remote side, which is the
single source of truth for stack state.
"""

import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..aws import error_code, raise_client_error
from ..errors import ApplyFailureError
from ..models import BlockingResource, StackEvent, StackState

logger = logging.getLogger(__name__)

FAILED_SUFFIX = "_FAILED"


def is_stack_missing(error: ClientError) -> bool:
    """
    DescribeStacks answers an unknown stack name with a ValidationError code.

    Stack names are validated before any call, so that code means "missing".
    """
    return error_code(error) == "ValidationError"


class StackReader:
    """Describe stacks, their outputs, events and resources."""

    def __init__(self, cloudformation):
        self.cfn = cloudformation

    def describe(self, stack_name: str) -> Optional[Dict[str, Any]]:
        """Return the stack description, or None if the stack does not exist."""
        try:
            response = self.cfn.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing(e):
                return None
            raise_client_error(e, "cloudformation:DescribeStacks", ApplyFailureError, stack_name=stack_name)
        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    def state(self, stack_name: str) -> StackState:
        stack = self.describe(stack_name)
        if stack is None:
            return StackState.NOT_FOUND
        return StackState.from_remote(stack.get("StackStatus"))

    def outputs(self, stack_name: str) -> Dict[str, str]:
        stack = self.describe(stack_name)
        if not stack:
            return {}
        return {
            output["OutputKey"]: output.get("OutputValue", "")
            for output in stack.get("Outputs", [])
        }

    def termination_protected(self, stack_name: str) -> bool:
        stack = self.describe(stack_name)
        return bool(stack and stack.get("EnableTerminationProtection"))

    def recent_events(self, stack_name: str, limit: int = 10) -> List[StackEvent]:
        """Most recent status-change events, newest first."""
        try:
            response = self.cfn.describe_stack_events(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing(e):
                return []
            raise_client_error(e, "cloudformation:DescribeStackEvents", ApplyFailureError, stack_name=stack_name)

        events = []
        for raw in response.get("StackEvents", [])[:limit]:
            events.append(StackEvent(
                timestamp=str(raw.get("Timestamp", "")),
                logical_id=raw.get("LogicalResourceId", ""),
                resource_type=raw.get("ResourceType", ""),
                status=raw.get("ResourceStatus", ""),
                reason=raw.get("ResourceStatusReason", ""),
            ))
        return events

    def failure_events(self, stack_name: str, limit: int = 10) -> List[StackEvent]:
        """Recent events whose status is a failure, falling back to all recent events."""
        events = self.recent_events(stack_name, limit=max(limit * 5, 50))
        failed = [event for event in events if event.status.endswith(FAILED_SUFFIX)]
        return (failed or events)[:limit]

    def resources(self, stack_name: str) -> List[Dict[str, Any]]:
        try:
            response = self.cfn.describe_stack_resources(StackName=stack_name)
        except ClientError as e:
            if is_stack_missing(e):
                return []
            raise_client_error(e, "cloudformation:DescribeStackResources", ApplyFailureError, stack_name=stack_name)
        return response.get("StackResources", [])

    def blocking_resources(self, stack_name: str) -> List[BlockingResource]:
        """Resources stuck in DELETE_FAILED."""
        return [
            BlockingResource(
                logical_id=resource["LogicalResourceId"],
                resource_type=resource.get("ResourceType", ""),
                status_reason=resource.get("ResourceStatusReason", ""),
                physical_id=resource.get("PhysicalResourceId"),
            )
            for resource in self.resources(stack_name)
            if resource.get("ResourceStatus") == "DELETE_FAILED"
        ]

    def nested_stacks(self, stack_name: str) -> List[Dict[str, str]]:
        return [
            {
                "logical_id": resource["LogicalResourceId"],
                "physical_id": resource.get("PhysicalResourceId", ""),
                "status": resource.get("ResourceStatus", ""),
            }
            for resource in self.resources(stack_name)
            if resource.get("ResourceType") == "AWS::CloudFormation::Stack"
        ]

    def list_stacks(self, prefix: str = "") -> List[Dict[str, Any]]:
        """Every live stack whose name starts with ``prefix``."""
        stacks = []
        paginator = self.cfn.get_paginator("describe_stacks")
        try:
            for page in paginator.paginate():
                for stack in page.get("Stacks", []):
                    if stack.get("StackStatus") == "DELETE_COMPLETE":
                        continue
                    if stack["StackName"].startswith(prefix):
                        stacks.append(stack)
        except ClientError as e:
            raise_client_error(e, "cloudformation:DescribeStacks", ApplyFailureError)
        return stacks
