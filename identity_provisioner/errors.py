"""Error kinds raised by the provisioning workflows."""
from typing import Optional


class ProvisioningError(Exception):
    pass


class PrerequisiteMissing(ProvisioningError):
    """A module, permission or prerequisite object is absent. Halts the run."""

    def __init__(self, message: str, remediation: str = "") -> None:
        super().__init__(message)
        self.remediation = remediation


class UnrecognizedEnvironment(ProvisioningError):
    def __init__(self, resource_name: str, reason: str = "no environment token found") -> None:
        super().__init__(f"Cannot classify '{resource_name}': {reason}")
        self.resource_name = resource_name


class RemoteCallFailed(ProvisioningError):
    def __init__(self, operation: str, target: str, cause: Optional[BaseException] = None) -> None:
        message = f"{operation} failed for '{target}'"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.target = target
        self.cause = cause


class UnprotectedPrivilegedAssignment(ProvisioningError):
    def __init__(self, assignment_id: str, principal_id: str, scope: str) -> None:
        super().__init__(
            f"Owner assignment {assignment_id} for principal {principal_id} at {scope} "
            "has no ABAC condition restricting privileged role delegation"
        )
        self.assignment_id = assignment_id
        self.principal_id = principal_id
        self.scope = scope
