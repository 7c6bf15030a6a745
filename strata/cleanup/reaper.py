"""
Stateful store reaper.

Empties the stores a stack delete cannot remove while they still hold
members: versioned buckets, image repositories, secrets and log groups.
Every member that survives is reported so a retry can target it.
"""

import logging
from typing import Dict, Iterable, List

from botocore.exceptions import ClientError

from ..aws import error_code, error_message, is_not_found, raise_if_access_denied
from ..models import EmptyingStrategy, StatefulStore, StoreKind
from .models import ReapResult

logger = logging.getLogger(__name__)

S3_BATCH = 1000
ECR_BATCH = 100


def _batches(items: List, size: int) -> Iterable[List]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class StoreReaper:
    """Dispatch per store kind; never raises for a missing store."""

    def __init__(self, s3, ecr, secretsmanager, logs, secret_recovery_days: int = 7):
        self.s3 = s3
        self.ecr = ecr
        self.secrets = secretsmanager
        self.logs = logs
        self.secret_recovery_days = secret_recovery_days

    def empty(self, store: StatefulStore) -> ReapResult:
        """
        Empty one store according to its strategy.

        Returns:
            ReapResult: ``ok`` is False when any member survived
        """
        handlers = {
            StoreKind.OBJECT_STORE: self._empty_bucket,
            StoreKind.IMAGE_REGISTRY: self._empty_repository,
            StoreKind.SECRET_STORE: self._delete_secret,
            StoreKind.LOG_GROUP: self._delete_log_groups,
        }
        result = ReapResult(store=store)
        try:
            handlers[store.kind](store, result)
        except ClientError as e:
            raise_if_access_denied(e, f"reap {store.describe()}")
            if is_not_found(e):
                result.missing = True
            else:
                result.fail(store.identifier, error_message(e))

        if result.missing:
            logger.info(f"{store.describe()} does not exist")
        elif result.ok:
            logger.info(f"Emptied {store.describe()} ({result.removed} member(s) removed)")
        else:
            logger.warning(f"{store.describe()}: {len(result.survivors)} member(s) survived")
        return result

    def empty_all(self, stores: List[StatefulStore]) -> List[ReapResult]:
        return [self.empty(store) for store in stores]

    # Object store

    def _empty_bucket(self, store: StatefulStore, result: ReapResult) -> None:
        bucket = store.identifier
        try:
            self.s3.head_bucket(Bucket=bucket)
        except ClientError as e:
            if error_code(e) in ("404", "NoSuchBucket", "NotFound"):
                result.missing = True
                return
            raise

        # Current objects first, then noncurrent versions, then delete markers
        current = []
        for page in self.s3.get_paginator("list_objects_v2").paginate(Bucket=bucket):
            current.extend({"Key": obj["Key"]} for obj in page.get("Contents", []))
        self._delete_objects(bucket, current, result)

        versions: List[Dict[str, str]] = []
        markers: List[Dict[str, str]] = []
        for page in self.s3.get_paginator("list_object_versions").paginate(Bucket=bucket):
            versions.extend(
                {"Key": v["Key"], "VersionId": v["VersionId"]} for v in page.get("Versions", [])
            )
            markers.extend(
                {"Key": m["Key"], "VersionId": m["VersionId"]} for m in page.get("DeleteMarkers", [])
            )
        self._delete_objects(bucket, versions, result)
        self._delete_objects(bucket, markers, result)

        if store.strategy is EmptyingStrategy.EMPTY_AND_REMOVE:
            if result.ok:
                self.s3.delete_bucket(Bucket=bucket)
                result.container_removed = True
                logger.info(f"Deleted bucket {bucket}")
            else:
                logger.warning(f"Keeping bucket {bucket}: it is not empty")

    def _delete_objects(self, bucket: str, objects: List[Dict[str, str]], result: ReapResult) -> None:
        for batch in _batches(objects, S3_BATCH):
            response = self.s3.delete_objects(Bucket=bucket, Delete={"Objects": batch, "Quiet": True})
            errors = response.get("Errors", [])
            for error in errors:
                member = error["Key"]
                if error.get("VersionId"):
                    member = f"{member}?versionId={error['VersionId']}"
                result.fail(member, error.get("Message", error.get("Code", "unknown error")))
            result.removed += len(batch) - len(errors)

    # Image registry

    def _empty_repository(self, store: StatefulStore, result: ReapResult) -> None:
        repository = store.identifier
        image_ids = []
        try:
            for page in self.ecr.get_paginator("list_images").paginate(repositoryName=repository):
                image_ids.extend(page.get("imageIds", []))
        except ClientError as e:
            if error_code(e) == "RepositoryNotFoundException":
                result.missing = True
                return
            raise

        for batch in _batches(image_ids, ECR_BATCH):
            response = self.ecr.batch_delete_image(repositoryName=repository, imageIds=batch)
            failures = response.get("failures", [])
            for failure in failures:
                image = failure.get("imageId", {})
                member = image.get("imageDigest") or image.get("imageTag") or "unknown"
                result.fail(member, failure.get("failureReason", failure.get("failureCode", "")))
            result.removed += len(batch) - len(failures)

        if store.strategy is EmptyingStrategy.EMPTY_AND_REMOVE and result.ok:
            self.ecr.delete_repository(repositoryName=repository, force=True)
            result.container_removed = True

    # Secret store

    def _delete_secret(self, store: StatefulStore, result: ReapResult) -> None:
        kwargs = {"SecretId": store.identifier}
        if store.strategy is EmptyingStrategy.FORCE_DELETE:
            kwargs["ForceDeleteWithoutRecovery"] = True
        else:
            kwargs["RecoveryWindowInDays"] = self.secret_recovery_days
        try:
            self.secrets.delete_secret(**kwargs)
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                result.missing = True
                return
            if error_code(e) == "InvalidRequestException" and "scheduled for deletion" in error_message(e):
                logger.info(f"Secret {store.identifier} is already scheduled for deletion")
                return
            raise
        result.removed = 1
        result.container_removed = True

    # Log groups

    def _delete_log_groups(self, store: StatefulStore, result: ReapResult) -> None:
        if store.strategy is EmptyingStrategy.DELETE_PREFIX:
            names = []
            paginator = self.logs.get_paginator("describe_log_groups")
            for page in paginator.paginate(logGroupNamePrefix=store.identifier):
                names.extend(group["logGroupName"] for group in page.get("logGroups", []))
        else:
            names = [store.identifier]

        found = False
        for name in names:
            try:
                self.logs.delete_log_group(logGroupName=name)
                result.removed += 1
                found = True
            except ClientError as e:
                raise_if_access_denied(e, "logs:DeleteLogGroup")
                if error_code(e) == "ResourceNotFoundException":
                    continue
                result.fail(name, error_message(e))
                found = True
        result.missing = not found and result.ok
        result.container_removed = result.removed > 0
