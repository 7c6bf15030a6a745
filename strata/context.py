"""
Execution context resolution and validation.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .aws import AwsClients, error_message, is_access_denied
from .errors import ValidationError
from .models import ComputeVariant, Tier
from .naming import ENVIRONMENTS, ResourceNames, check_fragment, check_service, resolve_names

logger = logging.getLogger(__name__)

REGION_PATTERN_HINT = "e.g. us-east-1"


@dataclass(frozen=True)
class RunContext:
    """Validated scope of one invocation."""
    project: str
    environment: str
    region: str
    variant: ComputeVariant
    account_id: str
    caller_arn: str
    profile: Optional[str] = None
    service: Optional[str] = None

    @property
    def tier(self) -> Tier:
        return Tier.PROJECT if self.service else Tier.SHARED

    def names(self, tier: Optional[Tier] = None, service: Optional[str] = None) -> ResourceNames:
        """Resolve the name set for this context, or for a sibling tier or service."""
        tier = tier or self.tier
        return resolve_names(
            project=self.project,
            environment=self.environment,
            tier=tier,
            variant=self.variant,
            service=(service or self.service) if tier is Tier.PROJECT else None,
            account_id=self.account_id,
        )

    def for_service(self, service: str, variant: Optional[ComputeVariant] = None) -> "RunContext":
        return RunContext(
            project=self.project,
            environment=self.environment,
            region=self.region,
            variant=variant or self.variant,
            account_id=self.account_id,
            caller_arn=self.caller_arn,
            profile=self.profile,
            service=service,
        )


def check_inputs(project: str, environment: str, variant: str, region: str,
                 service: Optional[str] = None, require_service: bool = False) -> List[str]:
    """Collect every input problem rather than stopping at the first."""
    problems = []

    problem = check_fragment("Project name", project)
    if problem:
        problems.append(problem)

    if environment not in ENVIRONMENTS:
        problems.append(f"Environment '{environment}' must be one of: {', '.join(ENVIRONMENTS)}")

    try:
        ComputeVariant.parse(variant or "")
    except ValueError as e:
        problems.append(str(e))

    if not region or region.count("-") < 2:
        problems.append(f"Region '{region}' is not a valid region name ({REGION_PATTERN_HINT})")

    if require_service or service:
        problem = check_service(project, environment, service)
        if problem:
            problems.append(problem)

    return problems


def resolve_identity(clients: AwsClients) -> dict:
    """
    Look up the active caller identity.

    Raises:
        ValidationError: If credentials are missing or rejected
    """
    try:
        return clients.sts.get_caller_identity()
    except NoCredentialsError as e:
        raise ValidationError(
            "No AWS credentials found",
            remediation="Configure credentials with 'aws configure' or set AWS_PROFILE",
        ) from e
    except ClientError as e:
        if is_access_denied(e):
            raise ValidationError(
                f"AWS credentials were rejected: {error_message(e)}",
                remediation="Refresh the credentials of the active profile",
            ) from e
        raise ValidationError(f"Unable to resolve AWS identity: {error_message(e)}") from e
    except BotoCoreError as e:
        raise ValidationError(f"Unable to resolve AWS identity: {e}") from e


def validate_context(
    clients: AwsClients,
    project: str,
    environment: str,
    variant: str,
    region: str,
    service: Optional[str] = None,
    profile: Optional[str] = None,
    require_service: bool = False,
) -> RunContext:
    """
    Validate inputs and resolve identity, failing before any mutating call.

    Returns:
        RunContext: Frozen context for the rest of the run

    Raises:
        ValidationError: Listing every problem found
    """
    problems = check_inputs(project, environment, variant, region, service, require_service)
    if problems:
        raise ValidationError("Invalid invocation", problems=problems)

    identity = resolve_identity(clients)
    context = RunContext(
        project=project,
        environment=environment,
        region=region,
        variant=ComputeVariant.parse(variant),
        account_id=identity["Account"],
        caller_arn=identity.get("Arn", ""),
        profile=profile,
        service=service,
    )
    # Resolving names validates every derived name up front
    context.names()
    logger.info(f"Context OK: account {context.account_id} in {region} as {context.caller_arn}")
    return context
