"""
Task definition cleanup for a project's task family.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from botocore.exceptions import ClientError

from ..aws import error_message, raise_if_access_denied

logger = logging.getLogger(__name__)

DELETE_BATCH = 10


@dataclass
class TaskDefinitionCleanup:
    family: str
    deregistered: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def _list(ecs, family: str, status: str) -> List[str]:
    arns = []
    paginator = ecs.get_paginator("list_task_definitions")
    for page in paginator.paginate(familyPrefix=family, status=status):
        arns.extend(page.get("taskDefinitionArns", []))
    # familyPrefix also matches longer families such as "<family>-worker"
    return [arn for arn in arns if arn.rsplit("/", 1)[-1].rsplit(":", 1)[0] == family]


def cleanup_task_definitions(ecs, family: str) -> TaskDefinitionCleanup:
    """Deregister every ACTIVE revision of ``family``, then delete every INACTIVE one."""
    result = TaskDefinitionCleanup(family=family)

    try:
        active = _list(ecs, family, "ACTIVE")
    except ClientError as e:
        raise_if_access_denied(e, "ecs:ListTaskDefinitions")
        result.failed[family] = error_message(e)
        return result

    for arn in active:
        try:
            ecs.deregister_task_definition(taskDefinition=arn)
            result.deregistered.append(arn)
        except ClientError as e:
            result.failed[arn] = error_message(e)

    try:
        inactive = _list(ecs, family, "INACTIVE")
    except ClientError as e:
        raise_if_access_denied(e, "ecs:ListTaskDefinitions")
        result.failed[family] = error_message(e)
        inactive = []
    for start in range(0, len(inactive), DELETE_BATCH):
        batch = inactive[start:start + DELETE_BATCH]
        try:
            response = ecs.delete_task_definitions(taskDefinitions=batch)
        except ClientError as e:
            for arn in batch:
                result.failed[arn] = error_message(e)
            continue
        result.deleted.extend(td["taskDefinitionArn"] for td in response.get("taskDefinitions", []))
        for failure in response.get("failures", []):
            result.failed[failure.get("arn", "")] = failure.get("reason", "")

    logger.info(
        f"Task family {family}: {len(result.deregistered)} deregistered, "
        f"{len(result.deleted)} deleted, {len(result.failed)} failed"
    )
    return result
