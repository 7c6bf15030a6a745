"""
Tests for context validation.
"""

from unittest.mock import Mock

import pytest
from botocore.exceptions import NoCredentialsError

from strata.aws import AwsClients
from strata.context import check_inputs, validate_context
from strata.errors import ValidationError
from strata.models import ComputeVariant, Tier

from .conftest import ACCOUNT, make_client_error


def clients_with(sts):
    return AwsClients("us-east-1", overrides={"sts": sts})


class TestValidateContext:
    """Test input validation and identity resolution."""

    def test_valid_context(self):
        """A valid invocation yields a frozen context with the caller identity."""
        sts = Mock()
        sts.get_caller_identity.return_value = {"Account": ACCOUNT, "Arn": "arn:aws:iam::1:user/x"}

        context = validate_context(clients_with(sts), "acme", "dev", "ec2", "us-east-1", service="svc-a")

        assert context.account_id == ACCOUNT
        assert context.variant is ComputeVariant.EC2
        assert context.tier is Tier.PROJECT
        assert context.names().stack == "acme-dev-svc-a-ec2"
        with pytest.raises(Exception):
            context.environment = "prod"

    def test_all_problems_reported(self):
        """Every invalid input is listed and no remote call is made."""
        sts = Mock()

        with pytest.raises(ValidationError) as exc:
            validate_context(clients_with(sts), "acme", "qa", "lambda", "nowhere",
                             service="Bad_Name", require_service=True)

        assert len(exc.value.problems) == 4
        sts.get_caller_identity.assert_not_called()

    def test_service_required(self):
        """Project operations need a service."""
        problems = check_inputs("acme", "dev", "fargate", "us-east-1", require_service=True)
        assert problems == ["Service name is required"]

    def test_reserved_service(self):
        """A service named like the shared stack is an input problem."""
        problems = check_inputs("acme", "dev", "fargate", "us-east-1", service="ec2-main")
        assert problems == ["Service name 'ec2-main' is reserved for the shared stack"]

    def test_missing_credentials(self):
        """Missing credentials come back as a validation error with remediation."""
        sts = Mock()
        sts.get_caller_identity.side_effect = NoCredentialsError()

        with pytest.raises(ValidationError) as exc:
            validate_context(clients_with(sts), "acme", "dev", "fargate", "us-east-1")

        assert exc.value.remediation

    def test_rejected_credentials(self):
        """Expired tokens are a validation error too."""
        sts = Mock()
        sts.get_caller_identity.side_effect = make_client_error("ExpiredToken", "token expired")

        with pytest.raises(ValidationError, match="token expired"):
            validate_context(clients_with(sts), "acme", "dev", "fargate", "us-east-1")

    def test_for_service(self, shared_context):
        """A shared context can be narrowed to a service of either variant."""
        project = shared_context.for_service("svc-b", ComputeVariant.EC2)

        assert project.service == "svc-b"
        assert project.names().stack == "acme-dev-svc-b-ec2"
        assert shared_context.service is None
