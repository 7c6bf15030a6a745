"""
Template publisher: validate template documents and stage them in S3 where
the control plane can fetch them.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError

from .aws import error_code, error_message, raise_client_error, raise_if_access_denied
from .errors import ApplyFailureError, ValidationError
from .models import ComputeVariant, Tier

logger = logging.getLogger(__name__)

SHARED_TEMPLATES = (
    "vpc.yaml",
    "security-groups.yaml",
    "iam.yaml",
    "alb.yaml",
    "api-gateway.yaml",
    "monitoring.yaml",
)

# validate-template accepts inline bodies up to this size
MAX_TEMPLATE_BODY = 51200


def root_template(tier: Tier, variant: ComputeVariant) -> str:
    if tier is Tier.PROJECT:
        return "project-ec2.yaml" if variant is ComputeVariant.EC2 else "project.yaml"
    return "main-ec2.yaml" if variant is ComputeVariant.EC2 else "main.yaml"


def template_set(tier: Tier, variant: ComputeVariant) -> List[str]:
    """Files published for a tier. The shared set also stages the project template."""
    project = root_template(Tier.PROJECT, variant)
    if tier is Tier.PROJECT:
        return [project]
    if variant is ComputeVariant.EC2:
        cluster = ["ecs-ec2-cluster.yaml", "main-ec2.yaml"]
    else:
        cluster = ["ecs-cluster.yaml", "main.yaml"]
    return list(SHARED_TEMPLATES) + cluster + [project]


@dataclass
class PublishedTemplates:
    bucket: str
    prefix: str
    urls: Dict[str, str] = field(default_factory=dict)
    uploaded: bool = True
    extra_files: List[str] = field(default_factory=list)

    def url(self, filename: str) -> str:
        return self.urls[filename]


class TemplatePublisher:
    """Validate and publish one tier's template set."""

    def __init__(self, s3, cloudformation, bucket: str, prefix: str, region: str,
                 template_dir: Path, buildspec_dir: Optional[Path] = None):
        self.s3 = s3
        self.cfn = cloudformation
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self.template_dir = Path(template_dir)
        self.buildspec_dir = Path(buildspec_dir) if buildspec_dir else None
        self._deferred: List[str] = []

    def key(self, filename: str) -> str:
        return f"{self.prefix}/{filename}" if self.prefix else filename

    def content_url(self, filename: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{self.key(filename)}"

    def ensure_bucket(self) -> bool:
        """
        Create the templates bucket with versioning when it is missing.

        Returns:
            bool: True if the bucket was created
        """
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            logger.info(f"Templates bucket exists: {self.bucket}")
            return False
        except ClientError as e:
            if error_code(e) not in ("404", "NoSuchBucket", "NotFound"):
                raise_if_access_denied(e, "s3:HeadBucket")
                if error_code(e) == "403":
                    raise ValidationError(
                        f"Templates bucket {self.bucket} exists but is not accessible",
                        remediation="Choose another --template-bucket or grant access to it",
                    ) from e
                raise_client_error(e, "s3:HeadBucket", ApplyFailureError)

        logger.info(f"Creating templates bucket {self.bucket} in {self.region}")
        kwargs = {"Bucket": self.bucket}
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            self.s3.create_bucket(**kwargs)
            self.s3.put_bucket_versioning(
                Bucket=self.bucket,
                VersioningConfiguration={"Status": "Enabled"},
            )
        except ClientError as e:
            raise_client_error(e, "s3:CreateBucket", ApplyFailureError)
        return True

    def validate(self, filenames: List[str]) -> None:
        """
        Validate every template of the set and report all failures together.

        Raises:
            ValidationError: Listing each missing or invalid template
        """
        problems = []
        self._deferred = []
        for filename in filenames:
            path = self.template_dir / filename
            if not path.is_file():
                problems.append(f"Template not found: {path}")
                continue

            body = path.read_text()
            if len(body.encode("utf-8")) > MAX_TEMPLATE_BODY:
                logger.debug(f"{filename} exceeds the inline size limit; validating after upload")
                self._deferred.append(filename)
                continue

            try:
                self.cfn.validate_template(TemplateBody=body)
                logger.info(f"Valid: {filename}")
            except ClientError as e:
                raise_if_access_denied(e, "cloudformation:ValidateTemplate")
                problems.append(f"Invalid: {filename}: {error_message(e)}")

        if problems:
            raise ValidationError(
                f"Template validation failed with {len(problems)} error(s)",
                problems=problems,
            )

    def publish(self, filenames: List[str], skip_upload: bool = False) -> PublishedTemplates:
        """
        Upload templates to s3://bucket/prefix/ and return their content URLs.

        With ``skip_upload`` nothing is uploaded but URLs are still returned,
        for templates staged by an earlier run.
        """
        published = PublishedTemplates(bucket=self.bucket, prefix=self.prefix, uploaded=not skip_upload)

        for filename in filenames:
            url = self.content_url(filename)
            published.urls[filename] = url
            if skip_upload:
                continue
            logger.info(f"Uploading {filename} -> s3://{self.bucket}/{self.key(filename)}")
            self._upload(self.template_dir / filename, self.key(filename))

        if skip_upload:
            logger.warning("Skipping template upload; using previously published templates")
            return published

        if self.buildspec_dir and self.buildspec_dir.is_dir():
            for path in sorted(p for p in self.buildspec_dir.rglob("*") if p.is_file()):
                relative = path.relative_to(self.buildspec_dir).as_posix()
                key = self.key(f"buildspecs/{relative}")
                self._upload(path, key)
                published.extra_files.append(key)
            logger.info(f"Uploaded {len(published.extra_files)} buildspec file(s)")

        problems = []
        for filename in self._deferred:
            try:
                self.cfn.validate_template(TemplateURL=published.urls[filename])
            except ClientError as e:
                raise_if_access_denied(e, "cloudformation:ValidateTemplate")
                problems.append(f"Invalid: {filename}: {error_message(e)}")
        if problems:
            raise ValidationError("Template validation failed after upload", problems=problems)

        return published

    def _upload(self, path: Path, key: str) -> None:
        try:
            self.s3.upload_file(str(path), self.bucket, key)
        except ClientError as e:
            raise_client_error(e, "s3:PutObject", ApplyFailureError)
        except S3UploadFailedError as e:
            raise ApplyFailureError(f"Upload of {path.name} to s3://{self.bucket}/{key} failed: {e}") from e
