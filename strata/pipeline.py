"""
Build pipeline interactions: seeding the source trigger, starting and
abandoning executions. Pipeline internals are owned by the project template.
"""

import io
import json
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from botocore.exceptions import ClientError

from .aws import error_code, raise_client_error
from .errors import ApplyFailureError, DeleteBlockedError

logger = logging.getLogger(__name__)

TRIGGER_KEY = "trigger/trigger.zip"


def build_trigger_archive(service: str, branch: str, buildspec_dir: Optional[Path] = None) -> bytes:
    """Zip a trigger.json, plus any buildspec files, for the pipeline's S3 source."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("trigger.json", json.dumps({
            "triggered": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "service": service,
            "branch": branch,
        }))
        if buildspec_dir and buildspec_dir.is_dir():
            for path in sorted(buildspec_dir.glob("buildspec-*.yml")):
                archive.write(path, f"buildspecs/{path.name}")
            governance = buildspec_dir / "governance"
            if governance.is_dir():
                for path in sorted(p for p in governance.iterdir() if p.is_file()):
                    archive.write(path, path.name)
    return buffer.getvalue()


def seed_trigger(s3, bucket: str, archive: bytes) -> str:
    try:
        s3.put_object(Bucket=bucket, Key=TRIGGER_KEY, Body=archive)
    except ClientError as e:
        raise_client_error(e, "s3:PutObject", ApplyFailureError)
    logger.info(f"Seeded pipeline trigger s3://{bucket}/{TRIGGER_KEY}")
    return f"s3://{bucket}/{TRIGGER_KEY}"


def start_pipeline(codepipeline, pipeline_name: str) -> str:
    """Start an execution and return its id."""
    try:
        response = codepipeline.start_pipeline_execution(name=pipeline_name)
    except ClientError as e:
        raise_client_error(e, "codepipeline:StartPipelineExecution", ApplyFailureError)
    execution_id = response.get("pipelineExecutionId", "")
    logger.info(f"Started pipeline {pipeline_name}: {execution_id}")
    return execution_id


def abandon_executions(codepipeline, pipeline_name: str, reason: str = "Teardown in progress") -> List[str]:
    """Stop every in-progress execution without waiting for running actions."""
    try:
        paginator = codepipeline.get_paginator("list_pipeline_executions")
        in_progress = [
            summary["pipelineExecutionId"]
            for page in paginator.paginate(pipelineName=pipeline_name)
            for summary in page.get("pipelineExecutionSummaries", [])
            if summary.get("status") == "InProgress"
        ]
    except ClientError as e:
        if error_code(e) == "PipelineNotFoundException":
            logger.info(f"Pipeline {pipeline_name} does not exist")
            return []
        raise_client_error(e, "codepipeline:ListPipelineExecutions", DeleteBlockedError)

    stopped = []
    for execution_id in in_progress:
        try:
            codepipeline.stop_pipeline_execution(
                pipelineName=pipeline_name,
                pipelineExecutionId=execution_id,
                abandon=True,
                reason=reason,
            )
            stopped.append(execution_id)
            logger.info(f"Abandoned execution {execution_id} of {pipeline_name}")
        except ClientError as e:
            # Executions can finish between listing and stopping
            if error_code(e) in ("PipelineExecutionNotStoppableException", "DuplicatedStopRequestException"):
                continue
            raise_client_error(e, "codepipeline:StopPipelineExecution", DeleteBlockedError)
    return stopped
