"""
Canonical stack and resource naming.

This is the single source of truth for every name the orchestrator derives
from (project, environment, tier, compute variant, service). Names are
validated against the character set of their resource kind when a name set
is built, so an invalid combination fails before any remote call.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ValidationError
from .models import ComputeVariant, Tier

ENVIRONMENTS = ("dev", "staging", "prod")

# Identifier fragments supplied by the operator
NAME_FRAGMENT = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")

# Per resource kind: (pattern, max length)
RESOURCE_RULES: Dict[str, Tuple[re.Pattern, int]] = {
    "stack": (re.compile(r"^[A-Za-z][A-Za-z0-9-]*$"), 128),
    "bucket": (re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$"), 63),
    "repository": (re.compile(r"^[a-z0-9]+(?:[._/-][a-z0-9]+)*$"), 256),
    "cluster": (re.compile(r"^[A-Za-z0-9_-]+$"), 255),
    "service": (re.compile(r"^[A-Za-z0-9_-]+$"), 255),
    "pipeline": (re.compile(r"^[A-Za-z0-9.@_-]+$"), 100),
    "secret": (re.compile(r"^[A-Za-z0-9/_+=.@-]+$"), 512),
    "log_group": (re.compile(r"^[.\-_/#A-Za-z0-9]+$"), 512),
    "task_family": (re.compile(r"^[A-Za-z0-9_-]+$"), 255),
}

CODEBUILD_LOG_SUFFIXES = ("source", "swagger-gen", "lint", "build", "push", "contract-test")

# Stack name suffixes of the shared tier, after "<project>-<environment>-"
SHARED_STACK_SUFFIXES = ("main", "ec2-main")

SOURCE_SECRET = "source-pat"
DB_SECRET = "db/connection-strings"


def check_fragment(label: str, value: Optional[str]) -> Optional[str]:
    """Return a problem description for an operator-supplied name fragment, or None."""
    if not value:
        return f"{label} is required"
    if len(value) < 2 or not NAME_FRAGMENT.match(value):
        return (f"{label} '{value}' must be lowercase letters, digits and '-', "
                f"start with a letter and not end with '-'")
    return None


def check_resource_name(kind: str, name: str) -> Optional[str]:
    pattern, max_length = RESOURCE_RULES[kind]
    if len(name) > max_length:
        return f"{kind} name '{name}' exceeds {max_length} characters"
    if not pattern.match(name):
        return f"{kind} name '{name}' contains characters not allowed for a {kind}"
    return None


def shared_stack_name(project: str, environment: str, variant: ComputeVariant) -> str:
    if variant is ComputeVariant.EC2:
        return f"{project}-{environment}-ec2-main"
    return f"{project}-{environment}-main"


def project_stack_name(project: str, environment: str, service: str, variant: ComputeVariant) -> str:
    base = f"{project}-{environment}-{service}"
    return f"{base}-ec2" if variant is ComputeVariant.EC2 else base


def check_service(project: str, environment: str, service: Optional[str]) -> Optional[str]:
    """
    Return a problem description for a service name, or None.

    A project stack may never resolve to, or sit under the name of, a shared
    stack of either variant.
    """
    problem = check_fragment("Service name", service)
    if problem:
        return problem
    if service.endswith("-ec2"):
        return f"Service name '{service}' must not end with '-ec2'"

    shared = {shared_stack_name(project, environment, variant) for variant in ComputeVariant}
    collides = any(
        project_stack_name(project, environment, service, variant) in shared
        for variant in ComputeVariant
    )
    if collides or any(service == s or service.startswith(f"{s}-") for s in SHARED_STACK_SUFFIXES):
        return f"Service name '{service}' is reserved for the shared stack"
    return None


def cluster_name(project: str, environment: str, variant: ComputeVariant) -> str:
    if variant is ComputeVariant.EC2:
        return f"{project}-{environment}-ec2-cluster"
    return f"{project}-{environment}-cluster"


@dataclass(frozen=True)
class ResourceNames:
    """
    Every derived name for one (project, environment, tier, variant, service).

    Build with :func:`resolve_names`; construction validates all names.
    """
    project: str
    environment: str
    tier: Tier
    variant: ComputeVariant
    service: Optional[str] = None
    account_id: Optional[str] = None

    stack: str = field(init=False)
    shared_stack: str = field(init=False)
    cluster: str = field(init=False)
    ecs_service: str = field(init=False)
    repository: str = field(init=False)
    pipeline: Optional[str] = field(init=False)
    task_family: Optional[str] = field(init=False)
    orphan_prefix: str = field(init=False)

    def __post_init__(self):
        p, e, svc, variant = self.project, self.environment, self.service, self.variant
        base = f"{p}-{e}-{svc}" if self.tier is Tier.PROJECT else f"{p}-{e}"

        values = {
            "shared_stack": shared_stack_name(p, e, variant),
            "cluster": cluster_name(p, e, variant),
            "repository": base,
            "orphan_prefix": base,
        }
        if self.tier is Tier.PROJECT:
            values.update({
                "stack": project_stack_name(p, e, svc, variant),
                "ecs_service": f"{base}-svc",
                "pipeline": f"{base}-pipeline",
                "task_family": base,
            })
        else:
            service_suffix = "ec2-service" if variant is ComputeVariant.EC2 else "service"
            values.update({
                "stack": values["shared_stack"],
                "ecs_service": f"{p}-{e}-{service_suffix}",
                "pipeline": None,
                "task_family": None,
            })

        for key, value in values.items():
            object.__setattr__(self, key, value)

        problems = [problem for problem in self._problems() if problem]
        if problems:
            raise ValidationError("Derived resource names are invalid", problems=problems)

    def _problems(self) -> List[Optional[str]]:
        checks = [
            ("stack", self.stack),
            ("stack", self.shared_stack),
            ("cluster", self.cluster),
            ("service", self.ecs_service),
            ("repository", self.repository),
        ]
        if self.pipeline:
            checks.append(("pipeline", self.pipeline))
        if self.task_family:
            checks.append(("task_family", self.task_family))
        if self.account_id:
            checks.append(("bucket", self.artifact_bucket))
        checks.extend(("secret", name) for name in self.secret_ids)
        checks.extend(("log_group", name) for name in self.log_groups)
        return [check_resource_name(kind, name) for kind, name in checks]

    @property
    def base(self) -> str:
        return self.orphan_prefix

    @property
    def artifact_bucket(self) -> str:
        if not self.account_id:
            raise ValueError("account_id is required to derive the artifact bucket name")
        if self.tier is Tier.PROJECT:
            return f"{self.base}-artifacts-{self.account_id}"
        return f"{self.base}-pipeline-artifacts-{self.account_id}"

    @property
    def secret_ids(self) -> List[str]:
        if self.tier is not Tier.PROJECT:
            return []
        prefix = f"{self.project}/{self.environment}/{self.service}"
        return [f"{prefix}/{SOURCE_SECRET}", f"{prefix}/{DB_SECRET}"]

    @property
    def source_secret_id(self) -> Optional[str]:
        ids = self.secret_ids
        return ids[0] if ids else None

    @property
    def log_groups(self) -> List[str]:
        """Exact log group names owned by a project stack."""
        if self.tier is not Tier.PROJECT:
            return []
        groups = [f"/aws/codebuild/{self.base}-{suffix}" for suffix in CODEBUILD_LOG_SUFFIXES]
        groups.append(f"/ecs/{self.base}")
        return groups

    @property
    def log_group_prefixes(self) -> List[str]:
        """Log group prefixes swept on shared teardown."""
        return [f"/aws/codebuild/{self.base}", f"/ecs/{self.base}"]

    @property
    def project_stack_prefix(self) -> str:
        return f"{self.project}-{self.environment}-"


def resolve_names(
    project: str,
    environment: str,
    tier: Tier,
    variant: ComputeVariant,
    service: Optional[str] = None,
    account_id: Optional[str] = None,
) -> ResourceNames:
    """
    Build and validate the full name set.

    Raises:
        ValidationError: If a fragment or any derived name is invalid
    """
    problems = [check_fragment("Project name", project)]
    if environment not in ENVIRONMENTS:
        problems.append(f"Environment must be one of: {', '.join(ENVIRONMENTS)}")
    if tier is Tier.PROJECT:
        problems.append(check_service(project, environment, service))
    problems = [problem for problem in problems if problem]
    if problems:
        raise ValidationError("Invalid naming input", problems=problems)

    return ResourceNames(
        project=project,
        environment=environment,
        tier=tier,
        variant=variant,
        service=service if tier is Tier.PROJECT else None,
        account_id=account_id,
    )


def service_from_stack_name(project: str, environment: str, stack_name: str) -> Tuple[str, ComputeVariant]:
    """Invert :func:`project_stack_name` for stacks that carry no tags."""
    prefix = f"{project}-{environment}-"
    remainder = stack_name[len(prefix):] if stack_name.startswith(prefix) else stack_name
    if remainder.endswith("-ec2"):
        return remainder[:-len("-ec2")], ComputeVariant.EC2
    return remainder, ComputeVariant.FARGATE
