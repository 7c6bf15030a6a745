"""
Error taxonomy for orchestration failures.

Every error carries the process exit code the CLI uses for it and an
optional remediation hint that is shown to the operator.
"""

from typing import Any, Dict, List, Optional


class StrataError(Exception):
    """Base class for all orchestration errors."""

    exit_code = 1

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": type(self).__name__, "message": self.message}
        if self.remediation:
            data["remediation"] = self.remediation
        return data


class ValidationError(StrataError):
    """Malformed input, raised before any remote call is made."""

    exit_code = 2

    def __init__(self, message: str, problems: Optional[List[str]] = None,
                 remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.problems = problems or []


class DependencyNotSatisfiedError(StrataError):
    """The prerequisite tier is missing, unhealthy, or still has dependents."""

    exit_code = 3

    def __init__(self, message: str, stack_name: str, state: Any = None,
                 remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.stack_name = stack_name
        self.state = state


class ApplyFailureError(StrataError):
    """The control plane rejected or failed a mutation."""

    exit_code = 4

    def __init__(self, message: str, stack_name: Optional[str] = None, state: Any = None,
                 events: Optional[List[Any]] = None, remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.stack_name = stack_name
        self.state = state
        self.events = events or []


class StackBusyError(ApplyFailureError):
    """Another operation is already in progress on the same stack."""


class DeleteBlockedError(StrataError):
    """Resources prevent a stack from being deleted."""

    exit_code = 5

    def __init__(self, message: str, stack_name: Optional[str] = None,
                 blockers: Optional[List[Any]] = None, remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.stack_name = stack_name
        self.blockers = blockers or []


class StackTimeoutError(StrataError):
    """A poll budget elapsed before the stack reached a terminal state."""

    exit_code = 6

    def __init__(self, message: str, stack_name: str, last_state: Any = None,
                 elapsed: float = 0.0):
        super().__init__(message)
        self.stack_name = stack_name
        self.last_state = last_state
        self.elapsed = elapsed


class AccessDeniedError(StrataError):
    """Remote authorization failure, message passed through verbatim."""

    exit_code = 7

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, remediation="Check the IAM permissions of the active AWS identity")
        self.operation = operation


class RecoveryExhausted(StrataError):
    """Bounded delete retries ran out before the stack was gone."""

    exit_code = 8

    def __init__(self, message: str, report: Any = None):
        super().__init__(
            message,
            remediation="Inspect the retained resources listed above and delete them manually",
        )
        self.report = report


class SecretProvisionError(StrataError):
    """Writing secret material to the secret store failed."""

    exit_code = 9


class TeardownCancelled(StrataError):
    """The operator declined the destructive-operation confirmation."""

    exit_code = 10
