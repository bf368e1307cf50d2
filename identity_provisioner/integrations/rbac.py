"""Azure RBAC role assignments at subscription or resource scope."""
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from azure.mgmt.authorization.aio import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from ..errors import RemoteCallFailed
from ..models.provisioning import RoleAssignmentRecord

logger = logging.getLogger(__name__)

CONDITION_VERSION = "2.0"


def subscription_id_from_scope(scope: str) -> str:
    parts = [part for part in scope.split("/") if part]
    if len(parts) < 2 or parts[0].lower() != "subscriptions":
        raise ValueError(f"Scope '{scope}' is not below a subscription")
    return parts[1]


def role_definition_resource_id(scope: str, role_guid: str) -> str:
    subscription_id = subscription_id_from_scope(scope)
    return (
        f"/subscriptions/{subscription_id}/providers/Microsoft.Authorization/"
        f"roleDefinitions/{role_guid}"
    )


def role_definition_guid(role_definition_id: str) -> str:
    return role_definition_id.rstrip("/").rsplit("/", 1)[-1].lower()


class RoleAssignmentService(ABC):
    @abstractmethod
    async def list_role_assignments(
        self, scope: str, principal_id: str, role_guid: str
    ) -> List[RoleAssignmentRecord]:
        """Assignments made exactly at ``scope`` for the principal and role."""
        pass

    @abstractmethod
    async def create_role_assignment(
        self,
        scope: str,
        principal_id: str,
        role_guid: str,
        condition: Optional[str] = None,
        assignment_name: Optional[str] = None,
    ) -> RoleAssignmentRecord:
        pass

    async def update_condition(self, assignment: RoleAssignmentRecord, condition: str) -> RoleAssignmentRecord:
        """Re-PUT an existing assignment (same name) with the given condition."""
        return await self.create_role_assignment(
            assignment.scope,
            assignment.principal_id,
            role_definition_guid(assignment.role_definition_id),
            condition=condition,
            assignment_name=assignment.name,
        )

    async def close(self) -> None:
        return None


class MockRoleAssignmentService(RoleAssignmentService):
    def __init__(self):
        self.assignments: Dict[str, RoleAssignmentRecord] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def _record(self, operation: str, target: str) -> None:
        self.calls.append(f"{operation}:{target}")
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    async def list_role_assignments(
        self, scope: str, principal_id: str, role_guid: str
    ) -> List[RoleAssignmentRecord]:
        self._record("list_role_assignments", principal_id)
        return [
            a.model_copy()
            for a in self.assignments.values()
            if a.scope.lower() == scope.lower()
            and a.principal_id == principal_id
            and role_definition_guid(a.role_definition_id) == role_guid.lower()
        ]

    async def create_role_assignment(
        self,
        scope: str,
        principal_id: str,
        role_guid: str,
        condition: Optional[str] = None,
        assignment_name: Optional[str] = None,
    ) -> RoleAssignmentRecord:
        self._record("create_role_assignment", principal_id)
        name = assignment_name or str(uuid.uuid4())
        record = RoleAssignmentRecord(
            assignment_id=f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}",
            name=name,
            principal_id=principal_id,
            role_definition_id=role_definition_resource_id(scope, role_guid),
            scope=scope,
            condition=condition,
        )
        self.assignments[name] = record
        return record.model_copy()


class AzureRoleAssignmentService(RoleAssignmentService):
    """ARM implementation using the async AuthorizationManagementClient."""

    def __init__(self, credential: Any) -> None:
        self._credential = credential
        self._clients: Dict[str, AuthorizationManagementClient] = {}

    def _client(self, scope: str) -> AuthorizationManagementClient:
        subscription_id = subscription_id_from_scope(scope)
        if subscription_id not in self._clients:
            self._clients[subscription_id] = AuthorizationManagementClient(self._credential, subscription_id)
        return self._clients[subscription_id]

    @staticmethod
    def _to_record(assignment: Any) -> RoleAssignmentRecord:
        return RoleAssignmentRecord(
            assignment_id=assignment.id,
            name=assignment.name,
            principal_id=assignment.principal_id,
            role_definition_id=assignment.role_definition_id,
            scope=assignment.scope,
            condition=assignment.condition,
        )

    async def list_role_assignments(
        self, scope: str, principal_id: str, role_guid: str
    ) -> List[RoleAssignmentRecord]:
        records: List[RoleAssignmentRecord] = []
        try:
            pager = self._client(scope).role_assignments.list_for_scope(
                scope, filter=f"principalId eq '{principal_id}'"
            )
            async for assignment in pager:
                record = self._to_record(assignment)
                # The filter also returns inherited assignments from parent scopes.
                if record.scope.lower() != scope.lower():
                    continue
                if role_definition_guid(record.role_definition_id) != role_guid.lower():
                    continue
                records.append(record)
        except Exception as exc:
            logger.error("Listing role assignments at %s failed: %s", scope, exc, exc_info=True)
            raise RemoteCallFailed("list_role_assignments", scope, exc) from exc
        return records

    async def create_role_assignment(
        self,
        scope: str,
        principal_id: str,
        role_guid: str,
        condition: Optional[str] = None,
        assignment_name: Optional[str] = None,
    ) -> RoleAssignmentRecord:
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role_definition_resource_id(scope, role_guid),
            principal_id=principal_id,
            principal_type="Group",
            condition=condition,
            condition_version=CONDITION_VERSION if condition else None,
        )
        name = assignment_name or str(uuid.uuid4())
        try:
            assignment = await self._client(scope).role_assignments.create(scope, name, parameters)
        except Exception as exc:
            logger.error(
                "Creating role assignment for %s at %s failed: %s", principal_id, scope, exc, exc_info=True
            )
            raise RemoteCallFailed("create_role_assignment", principal_id, exc) from exc
        logger.info("Role assignment %s written at %s", name, scope)
        return self._to_record(assignment)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
