"""
AWS client access and error classification helpers.
"""

import logging
import threading
from typing import Any, Dict, NoReturn, Optional, Type

import boto3
from botocore.exceptions import ClientError

from .errors import AccessDeniedError, StrataError

logger = logging.getLogger(__name__)

SERVICES = (
    "cloudformation",
    "s3",
    "ecr",
    "ecs",
    "secretsmanager",
    "logs",
    "apigatewayv2",
    "sts",
    "codepipeline",
)

ACCESS_DENIED_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "AuthorizationError",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
})

NOT_FOUND_CODES = frozenset({
    "NoSuchBucket",
    "NoSuchKey",
    "NotFoundException",
    "NotFound",
    "ResourceNotFoundException",
    "RepositoryNotFoundException",
    "ServiceNotFoundException",
    "ClusterNotFoundException",
    "PipelineNotFoundException",
})


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def is_access_denied(error: ClientError) -> bool:
    return error_code(error) in ACCESS_DENIED_CODES


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_CODES


def raise_if_access_denied(error: ClientError, operation: str) -> None:
    """Translate an authorization failure into AccessDeniedError, message verbatim."""
    if is_access_denied(error):
        raise AccessDeniedError(error_message(error), operation=operation) from error


def raise_client_error(error: ClientError, operation: str, error_type: Type[StrataError], **kwargs) -> NoReturn:
    """
    Re-raise a client error in the calling component's failure type.

    Authorization failures still become AccessDeniedError. The original
    error is kept as ``__cause__``.
    """
    raise_if_access_denied(error, operation)
    raise error_type(f"{operation} failed: {error_message(error)} ({error_code(error)})", **kwargs) from error


class AwsClients:
    """
    Lazily created boto3 clients sharing one session.

    Clients are exposed as attributes named after the service
    (``clients.cloudformation``, ``clients.s3``, ...). Tests pass ready-made
    fakes through ``overrides``. Session and client creation run under one
    lock, so the worker threads of a parallel teardown can share an instance.
    """

    def __init__(self, region: str, profile: Optional[str] = None,
                 session: Any = None, overrides: Optional[Dict[str, Any]] = None):
        self.region = region
        self.profile = profile
        self._session = session
        self._clients: Dict[str, Any] = dict(overrides or {})
        self._lock = threading.RLock()

    @property
    def session(self):
        with self._lock:
            if self._session is None:
                kwargs = {"region_name": self.region}
                if self.profile:
                    kwargs["profile_name"] = self.profile
                self._session = boto3.Session(**kwargs)
            return self._session

    def client(self, service: str):
        with self._lock:
            if service not in self._clients:
                logger.debug(f"Creating {service} client in {self.region}")
                self._clients[service] = self.session.client(service, region_name=self.region)
            return self._clients[service]

    def __getattr__(self, name: str):
        if name in SERVICES:
            return self.client(name)
        raise AttributeError(name)
