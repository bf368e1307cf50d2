import logging
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Awaitable, Dict, List, Optional, Set

import httpx
from kiota_abstractions.base_request_configuration import RequestConfiguration
from kiota_serialization_json.json_parse_node import JsonParseNode
from msgraph import GraphServiceClient
from msgraph.generated.groups.groups_request_builder import GroupsRequestBuilder
from msgraph.generated.groups.item.members.members_request_builder import MembersRequestBuilder
from msgraph.generated.identity_governance.entitlement_management.access_packages.item.access_package_item_request_builder import (
    AccessPackageItemRequestBuilder,
)
from msgraph.generated.identity_governance.entitlement_management.assignment_policies.assignment_policies_request_builder import (
    AssignmentPoliciesRequestBuilder,
)
from msgraph.generated.identity_governance.entitlement_management.catalogs.catalogs_request_builder import (
    CatalogsRequestBuilder,
)
from msgraph.generated.identity_governance.entitlement_management.catalogs.item.resources.resources_request_builder import (
    ResourcesRequestBuilder,
)
from msgraph.generated.models.access_package import AccessPackage
from msgraph.generated.models.access_package_assignment_policy import AccessPackageAssignmentPolicy
from msgraph.generated.models.access_package_catalog import AccessPackageCatalog
from msgraph.generated.models.access_package_resource_request import AccessPackageResourceRequest
from msgraph.generated.models.access_package_resource_role_scope import AccessPackageResourceRoleScope
from msgraph.generated.models.authentication_method_configuration import AuthenticationMethodConfiguration
from msgraph.generated.models.conditional_access_policy import ConditionalAccessPolicy
from msgraph.generated.models.group import Group
from msgraph.generated.models.o_data_errors.o_data_error import ODataError
from msgraph.generated.models.reference_create import ReferenceCreate
from msgraph.generated.models.reference_update import ReferenceUpdate
from msgraph.generated.models.user import User
from msgraph.generated.users.users_request_builder import UsersRequestBuilder

from ..errors import RemoteCallFailed
from .permissions import decode_granted_permissions

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_BETA_URL = "https://graph.microsoft.com/beta"
DIRECTORY_OBJECT_URL = "https://graph.microsoft.com/v1.0/directoryObjects/{object_id}"

# Entitlement management origin IDs for group membership roles.
MEMBERSHIP_ORIGIN_PREFIX = {
    "Member": "Member_",
    "EligibleMember": "EligibleMember_",
}


class DirectoryService(ABC):
    """Directory, entitlement management and policy operations used by the workflows.

    Payloads are Microsoft Graph JSON bodies (camelCase dictionaries). Results are
    dictionaries carrying at least ``id`` and ``displayName``.
    """

    async def granted_permissions(self) -> Optional[Set[str]]:
        """Permissions held by the session, or None when the provider cannot tell."""
        return None

    async def close(self) -> None:
        return None

    # Groups
    @abstractmethod
    async def find_groups(self, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_group(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def register_group_for_pim(self, group_id: str) -> bool:
        """Register a group with PIM. Returns False when it was already registered."""
        pass

    @abstractmethod
    async def list_group_member_ids(self, group_id: str) -> List[str]:
        pass

    @abstractmethod
    async def add_group_member(self, group_id: str, object_id: str) -> None:
        pass

    @abstractmethod
    async def remove_group_member(self, group_id: str, object_id: str) -> None:
        pass

    @abstractmethod
    async def list_user_group_ids(self, user_id: str) -> List[str]:
        pass

    # Users
    @abstractmethod
    async def find_user(self, user_principal_name: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_user_by_employee_id(self, employee_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_user(self, user_id: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_manager_id(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_manager(self, user_id: str, manager_id: str) -> None:
        pass

    # Entitlement management
    @abstractmethod
    async def find_catalogs(self, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_catalog(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def find_catalog_resource(self, catalog_id: str, origin_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def add_catalog_resource(self, catalog_id: str, origin_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def find_access_packages(self, catalog_id: str, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_access_package(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_package_role_bindings(self, package_id: str) -> List[Dict[str, Any]]:
        """Return ``{"originId": group_id, "membership": "Member" | "EligibleMember"}`` entries."""
        pass

    @abstractmethod
    async def add_package_role_binding(self, package_id: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def find_assignment_policies(self, package_id: str, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_assignment_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    # Conditional Access and authentication methods
    @abstractmethod
    async def find_authentication_strengths(self, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_ca_policies(self, display_name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_ca_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_authentication_method_configuration(self, method_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_authentication_method_configuration(
        self, method_id: str, payload: Dict[str, Any]
    ) -> None:
        pass


def _new_id() -> str:
    return str(uuid.uuid4())


class MockDirectoryService(DirectoryService):
    """In-memory tenant used for dry runs and tests.

    ``failures`` maps an operation name (e.g. ``"create_group"``) to the exception it
    should raise, to exercise partial-failure handling.
    """

    def __init__(self, granted: Optional[Set[str]] = None):
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.group_members: Dict[str, Set[str]] = {}
        self.pim_registered: Set[str] = set()
        self.users: Dict[str, Dict[str, Any]] = {}
        self.managers: Dict[str, str] = {}
        self.catalogs: Dict[str, Dict[str, Any]] = {}
        self.catalog_resources: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.access_packages: Dict[str, Dict[str, Any]] = {}
        self.package_bindings: Dict[str, List[Dict[str, Any]]] = {}
        self.assignment_policies: Dict[str, Dict[str, Any]] = {}
        self.authentication_strengths: List[Dict[str, Any]] = [
            {"id": "00000000-0000-0000-0000-000000000004", "displayName": "Phishing-resistant MFA"},
        ]
        self.ca_policies: Dict[str, Dict[str, Any]] = {}
        self.auth_method_configs: Dict[str, Dict[str, Any]] = {
            "fido2": {
                "id": "fido2",
                "@odata.type": "#microsoft.graph.fido2AuthenticationMethodConfiguration",
                "state": "disabled",
                "includeTargets": [],
            }
        }
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self._granted = granted

    def _record(self, operation: str, target: str) -> None:
        self.calls.append(f"{operation}:{target}")
        failure = self.failures.get(operation)
        if failure is not None:
            logger.debug("Mock %s failing for %s", operation, target)
            raise failure

    async def granted_permissions(self) -> Optional[Set[str]]:
        return self._granted

    async def find_groups(self, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_groups", display_name)
        # Graph filters are case-insensitive; mimic that and let callers match exactly.
        return [
            deepcopy(group)
            for group in self.groups.values()
            if group["displayName"].lower() == display_name.lower()
        ]

    async def create_group(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_group", payload["displayName"])
        group = {**deepcopy(payload), "id": _new_id()}
        self.groups[group["id"]] = group
        self.group_members[group["id"]] = set()
        return deepcopy(group)

    async def register_group_for_pim(self, group_id: str) -> bool:
        self._record("register_group_for_pim", group_id)
        if group_id in self.pim_registered:
            return False
        self.pim_registered.add(group_id)
        return True

    async def list_group_member_ids(self, group_id: str) -> List[str]:
        self._record("list_group_member_ids", group_id)
        return sorted(self.group_members.get(group_id, set()))

    async def add_group_member(self, group_id: str, object_id: str) -> None:
        self._record("add_group_member", f"{group_id}/{object_id}")
        self.group_members.setdefault(group_id, set()).add(object_id)

    async def remove_group_member(self, group_id: str, object_id: str) -> None:
        self._record("remove_group_member", f"{group_id}/{object_id}")
        self.group_members.get(group_id, set()).discard(object_id)

    async def list_user_group_ids(self, user_id: str) -> List[str]:
        self._record("list_user_group_ids", user_id)
        return sorted(gid for gid, members in self.group_members.items() if user_id in members)

    async def find_user(self, user_principal_name: str) -> Optional[Dict[str, Any]]:
        self._record("find_user", user_principal_name)
        for user in self.users.values():
            if user.get("userPrincipalName", "").lower() == user_principal_name.lower():
                return deepcopy(user)
        return None

    async def find_user_by_employee_id(self, employee_id: str) -> Optional[Dict[str, Any]]:
        self._record("find_user_by_employee_id", employee_id)
        for user in self.users.values():
            if user.get("employeeId") == employee_id:
                return deepcopy(user)
        return None

    async def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_user", payload.get("userPrincipalName", ""))
        user = {**deepcopy(payload), "id": _new_id()}
        self.users[user["id"]] = user
        return deepcopy(user)

    async def update_user(self, user_id: str, payload: Dict[str, Any]) -> None:
        self._record("update_user", user_id)
        self.users[user_id].update(deepcopy(payload))

    async def get_manager_id(self, user_id: str) -> Optional[str]:
        self._record("get_manager_id", user_id)
        return self.managers.get(user_id)

    async def set_manager(self, user_id: str, manager_id: str) -> None:
        self._record("set_manager", user_id)
        self.managers[user_id] = manager_id

    async def find_catalogs(self, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_catalogs", display_name)
        return [deepcopy(c) for c in self.catalogs.values() if c["displayName"].lower() == display_name.lower()]

    async def create_catalog(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_catalog", payload["displayName"])
        catalog = {**deepcopy(payload), "id": _new_id()}
        self.catalogs[catalog["id"]] = catalog
        self.catalog_resources[catalog["id"]] = {}
        return deepcopy(catalog)

    async def find_catalog_resource(self, catalog_id: str, origin_id: str) -> Optional[Dict[str, Any]]:
        self._record("find_catalog_resource", origin_id)
        resource = self.catalog_resources.get(catalog_id, {}).get(origin_id)
        return deepcopy(resource) if resource else None

    async def add_catalog_resource(self, catalog_id: str, origin_id: str) -> Dict[str, Any]:
        self._record("add_catalog_resource", origin_id)
        group = self.groups.get(origin_id, {})
        resource = {
            "id": _new_id(),
            "originId": origin_id,
            "originSystem": "AadGroup",
            "displayName": group.get("displayName", origin_id),
        }
        self.catalog_resources.setdefault(catalog_id, {})[origin_id] = resource
        return deepcopy(resource)

    async def find_access_packages(self, catalog_id: str, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_access_packages", display_name)
        return [
            deepcopy(p)
            for p in self.access_packages.values()
            if p["catalog"]["id"] == catalog_id and p["displayName"].lower() == display_name.lower()
        ]

    async def create_access_package(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_access_package", payload["displayName"])
        package = {**deepcopy(payload), "id": _new_id()}
        self.access_packages[package["id"]] = package
        self.package_bindings[package["id"]] = []
        return deepcopy(package)

    async def list_package_role_bindings(self, package_id: str) -> List[Dict[str, Any]]:
        self._record("list_package_role_bindings", package_id)
        bindings = []
        for scope in self.package_bindings.get(package_id, []):
            role_origin = scope["role"]["originId"]
            membership, _, group_id = role_origin.partition("_")
            bindings.append({"originId": group_id, "membership": membership})
        return bindings

    async def add_package_role_binding(self, package_id: str, payload: Dict[str, Any]) -> None:
        self._record("add_package_role_binding", package_id)
        self.package_bindings.setdefault(package_id, []).append(deepcopy(payload))

    async def find_assignment_policies(self, package_id: str, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_assignment_policies", display_name)
        return [
            deepcopy(p)
            for p in self.assignment_policies.values()
            if p["accessPackage"]["id"] == package_id and p["displayName"].lower() == display_name.lower()
        ]

    async def create_assignment_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_assignment_policy", payload["displayName"])
        policy = {**deepcopy(payload), "id": _new_id()}
        self.assignment_policies[policy["id"]] = policy
        return deepcopy(policy)

    async def find_authentication_strengths(self, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_authentication_strengths", display_name)
        return [deepcopy(s) for s in self.authentication_strengths if s["displayName"] == display_name]

    async def find_ca_policies(self, display_name: str) -> List[Dict[str, Any]]:
        self._record("find_ca_policies", display_name)
        return [deepcopy(p) for p in self.ca_policies.values() if p["displayName"] == display_name]

    async def create_ca_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("create_ca_policy", payload["displayName"])
        policy = {**deepcopy(payload), "id": _new_id()}
        self.ca_policies[policy["id"]] = policy
        return deepcopy(policy)

    async def get_authentication_method_configuration(self, method_id: str) -> Dict[str, Any]:
        self._record("get_authentication_method_configuration", method_id)
        return deepcopy(self.auth_method_configs[method_id])

    async def update_authentication_method_configuration(
        self, method_id: str, payload: Dict[str, Any]
    ) -> None:
        self._record("update_authentication_method_configuration", method_id)
        self.auth_method_configs[method_id].update(deepcopy(payload))


def _graph_model(payload: Dict[str, Any], model_class: Any) -> Any:
    """Deserialize a Graph JSON body into the SDK model the request builders expect."""
    return JsonParseNode(payload).get_object_value(model_class)


def _query(builder_class: Any, parameters_name: str, **parameters: Any) -> RequestConfiguration:
    query_parameters = getattr(builder_class, parameters_name)(**parameters)
    return RequestConfiguration(query_parameters=query_parameters)


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


class GraphDirectoryService(DirectoryService):
    """Microsoft Graph implementation built on msgraph-sdk."""

    def __init__(self, credential: Any, client: Optional[GraphServiceClient] = None) -> None:
        self._credential = credential
        self._client = client or GraphServiceClient(credentials=credential, scopes=[GRAPH_SCOPE])
        self._logger = logging.getLogger(f"{__name__}.GraphDirectoryService")

    async def _call(self, operation: str, target: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception as exc:
            self._logger.error("%s failed for %s: %s", operation, target, exc, exc_info=True)
            raise RemoteCallFailed(operation, target, exc) from exc

    async def _access_token(self) -> str:
        token = await self._credential.get_token(GRAPH_SCOPE)
        return token.token

    async def granted_permissions(self) -> Optional[Set[str]]:
        token = await self._call("get_token", "Microsoft Graph", self._access_token())
        return decode_granted_permissions(token)

    async def close(self) -> None:
        await self._credential.close()

    async def find_groups(self, display_name: str) -> List[Dict[str, Any]]:
        config = _query(
            GroupsRequestBuilder,
            "GroupsRequestBuilderGetQueryParameters",
            filter=f"displayName eq '{_odata_literal(display_name)}'",
            select=["id", "displayName", "description"],
        )
        response = await self._call("find_groups", display_name, self._client.groups.get(request_configuration=config))
        return [self._to_dict(item) for item in getattr(response, "value", None) or []]

    async def create_group(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        group = await self._call(
            "create_group",
            payload["displayName"],
            self._client.groups.post(_graph_model(payload, Group)),
        )
        self._logger.info("Created group %s (%s)", payload["displayName"], group.id)
        return self._to_dict(group)

    async def register_group_for_pim(self, group_id: str) -> bool:
        token = await self._call("register_group_for_pim", group_id, self._access_token())
        url = f"{GRAPH_BETA_URL}/privilegedAccess/aadGroups/resources/register"
        try:
            async with httpx.AsyncClient(timeout=30.0) as http:
                response = await http.post(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    json={"externalId": group_id},
                )
        except httpx.HTTPError as exc:
            raise RemoteCallFailed("register_group_for_pim", group_id, exc) from exc

        if response.is_success:
            return True
        if response.status_code in (400, 409) and "already" in response.text.lower():
            self._logger.debug("Group %s is already registered with PIM", group_id)
            return False
        raise RemoteCallFailed(
            "register_group_for_pim",
            group_id,
            RuntimeError(f"HTTP {response.status_code}: {response.text[:200]}"),
        )

    async def list_group_member_ids(self, group_id: str) -> List[str]:
        config = _query(MembersRequestBuilder, "MembersRequestBuilderGetQueryParameters", select=["id"], top=999)
        response = await self._call(
            "list_group_member_ids",
            group_id,
            self._client.groups.by_group_id(group_id).members.get(request_configuration=config),
        )
        return [item.id for item in getattr(response, "value", None) or [] if item.id]

    async def add_group_member(self, group_id: str, object_id: str) -> None:
        body = ReferenceCreate(odata_id=DIRECTORY_OBJECT_URL.format(object_id=object_id))
        await self._call(
            "add_group_member",
            f"{group_id}/{object_id}",
            self._client.groups.by_group_id(group_id).members.ref.post(body),
        )

    async def remove_group_member(self, group_id: str, object_id: str) -> None:
        await self._call(
            "remove_group_member",
            f"{group_id}/{object_id}",
            self._client.groups.by_group_id(group_id).members.by_directory_object_id(object_id).ref.delete(),
        )

    async def list_user_group_ids(self, user_id: str) -> List[str]:
        response = await self._call(
            "list_user_group_ids", user_id, self._client.users.by_user_id(user_id).member_of.get()
        )
        group_ids = []
        for item in getattr(response, "value", None) or []:
            odata_type = (getattr(item, "odata_type", None) or "").lower()
            if "group" in odata_type and item.id:
                group_ids.append(item.id)
        return group_ids

    async def _find_users(self, target: str, filter_expression: str) -> Optional[Dict[str, Any]]:
        config = _query(
            UsersRequestBuilder,
            "UsersRequestBuilderGetQueryParameters",
            filter=filter_expression,
            select=[
                "id",
                "displayName",
                "userPrincipalName",
                "employeeId",
                "department",
                "jobTitle",
                "accountEnabled",
            ],
        )
        response = await self._call("find_user", target, self._client.users.get(request_configuration=config))
        users = getattr(response, "value", None) or []
        return self._to_dict(users[0]) if users else None

    async def find_user(self, user_principal_name: str) -> Optional[Dict[str, Any]]:
        return await self._find_users(
            user_principal_name, f"userPrincipalName eq '{_odata_literal(user_principal_name)}'"
        )

    async def find_user_by_employee_id(self, employee_id: str) -> Optional[Dict[str, Any]]:
        return await self._find_users(employee_id, f"employeeId eq '{_odata_literal(employee_id)}'")

    async def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        user = await self._call(
            "create_user",
            payload.get("userPrincipalName", ""),
            self._client.users.post(_graph_model(payload, User)),
        )
        return self._to_dict(user)

    async def update_user(self, user_id: str, payload: Dict[str, Any]) -> None:
        await self._call(
            "update_user", user_id, self._client.users.by_user_id(user_id).patch(_graph_model(payload, User))
        )

    async def get_manager_id(self, user_id: str) -> Optional[str]:
        try:
            manager = await self._client.users.by_user_id(user_id).manager.get()
        except ODataError as exc:
            # Graph answers 404 when no manager is set.
            if exc.response_status_code == 404:
                self._logger.debug("No manager set for %s", user_id)
                return None
            self._logger.error("Reading manager of %s failed: %s", user_id, exc, exc_info=True)
            raise RemoteCallFailed("get_manager", user_id, exc) from exc
        except Exception as exc:
            raise RemoteCallFailed("get_manager", user_id, exc) from exc
        return getattr(manager, "id", None)

    async def set_manager(self, user_id: str, manager_id: str) -> None:
        body = ReferenceUpdate(odata_id=DIRECTORY_OBJECT_URL.format(object_id=manager_id))
        await self._call("set_manager", user_id, self._client.users.by_user_id(user_id).manager.ref.put(body))

    @property
    def _entitlement(self):
        return self._client.identity_governance.entitlement_management

    async def find_catalogs(self, display_name: str) -> List[Dict[str, Any]]:
        config = _query(
            CatalogsRequestBuilder,
            "CatalogsRequestBuilderGetQueryParameters",
            filter=f"displayName eq '{_odata_literal(display_name)}'",
        )
        response = await self._call(
            "find_catalogs", display_name, self._entitlement.catalogs.get(request_configuration=config)
        )
        return [self._to_dict(item) for item in getattr(response, "value", None) or []]

    async def create_catalog(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        catalog = await self._call(
            "create_catalog",
            payload["displayName"],
            self._entitlement.catalogs.post(_graph_model(payload, AccessPackageCatalog)),
        )
        return self._to_dict(catalog)

    async def find_catalog_resource(self, catalog_id: str, origin_id: str) -> Optional[Dict[str, Any]]:
        config = _query(
            ResourcesRequestBuilder,
            "ResourcesRequestBuilderGetQueryParameters",
            filter=f"originId eq '{_odata_literal(origin_id)}'",
        )
        response = await self._call(
            "find_catalog_resource",
            origin_id,
            self._entitlement.catalogs.by_access_package_catalog_id(catalog_id).resources.get(
                request_configuration=config
            ),
        )
        resources = getattr(response, "value", None) or []
        return self._to_dict(resources[0]) if resources else None

    async def add_catalog_resource(self, catalog_id: str, origin_id: str) -> Dict[str, Any]:
        payload = {
            "requestType": "adminAdd",
            "resource": {"originId": origin_id, "originSystem": "AadGroup"},
            "catalog": {"id": catalog_id},
        }
        await self._call(
            "add_catalog_resource",
            origin_id,
            self._entitlement.resource_requests.post(_graph_model(payload, AccessPackageResourceRequest)),
        )
        resource = await self.find_catalog_resource(catalog_id, origin_id)
        if resource is None:
            raise RemoteCallFailed("add_catalog_resource", origin_id, RuntimeError("resource not visible in catalog"))
        return resource

    async def find_access_packages(self, catalog_id: str, display_name: str) -> List[Dict[str, Any]]:
        response = await self._call(
            "find_access_packages",
            display_name,
            self._entitlement.catalogs.by_access_package_catalog_id(catalog_id).access_packages.get(),
        )
        packages = [self._to_dict(item) for item in getattr(response, "value", None) or []]
        return [p for p in packages if (p.get("displayName") or "").lower() == display_name.lower()]

    async def create_access_package(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        package = await self._call(
            "create_access_package",
            payload["displayName"],
            self._entitlement.access_packages.post(_graph_model(payload, AccessPackage)),
        )
        return self._to_dict(package)

    async def list_package_role_bindings(self, package_id: str) -> List[Dict[str, Any]]:
        config = _query(
            AccessPackageItemRequestBuilder,
            "AccessPackageItemRequestBuilderGetQueryParameters",
            expand=["resourceRoleScopes($expand=role,scope)"],
        )
        package = await self._call(
            "list_package_role_bindings",
            package_id,
            self._entitlement.access_packages.by_access_package_id(package_id).get(request_configuration=config),
        )
        bindings = []
        for role_scope in getattr(package, "resource_role_scopes", None) or []:
            role_origin = getattr(role_scope.role, "origin_id", None) or ""
            membership, _, group_id = role_origin.partition("_")
            if group_id:
                bindings.append({"originId": group_id, "membership": membership})
        return bindings

    async def add_package_role_binding(self, package_id: str, payload: Dict[str, Any]) -> None:
        await self._call(
            "add_package_role_binding",
            package_id,
            self._entitlement.access_packages.by_access_package_id(package_id).resource_role_scopes.post(
                _graph_model(payload, AccessPackageResourceRoleScope)
            ),
        )

    async def find_assignment_policies(self, package_id: str, display_name: str) -> List[Dict[str, Any]]:
        config = _query(
            AssignmentPoliciesRequestBuilder,
            "AssignmentPoliciesRequestBuilderGetQueryParameters",
            filter=f"accessPackage/id eq '{_odata_literal(package_id)}'",
            expand=["accessPackage"],
        )
        response = await self._call(
            "find_assignment_policies",
            display_name,
            self._entitlement.assignment_policies.get(request_configuration=config),
        )
        policies = [self._to_dict(item) for item in getattr(response, "value", None) or []]
        return [p for p in policies if (p.get("displayName") or "").lower() == display_name.lower()]

    async def create_assignment_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        policy = await self._call(
            "create_assignment_policy",
            payload["displayName"],
            self._entitlement.assignment_policies.post(_graph_model(payload, AccessPackageAssignmentPolicy)),
        )
        return self._to_dict(policy)

    async def find_authentication_strengths(self, display_name: str) -> List[Dict[str, Any]]:
        response = await self._call(
            "find_authentication_strengths",
            display_name,
            self._client.policies.authentication_strength_policies.get(),
        )
        strengths = [self._to_dict(item) for item in getattr(response, "value", None) or []]
        return [s for s in strengths if s.get("displayName") == display_name]

    async def find_ca_policies(self, display_name: str) -> List[Dict[str, Any]]:
        response = await self._call(
            "find_ca_policies", display_name, self._client.identity.conditional_access.policies.get()
        )
        policies = [self._to_dict(item) for item in getattr(response, "value", None) or []]
        return [p for p in policies if p.get("displayName") == display_name]

    async def create_ca_policy(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        policy = await self._call(
            "create_ca_policy",
            payload["displayName"],
            self._client.identity.conditional_access.policies.post(_graph_model(payload, ConditionalAccessPolicy)),
        )
        return self._to_dict(policy)

    def _method_configuration(self, method_id: str):
        return self._client.policies.authentication_methods_policy.authentication_method_configurations.by_authentication_method_configuration_id(
            method_id
        )

    async def get_authentication_method_configuration(self, method_id: str) -> Dict[str, Any]:
        configuration = await self._call(
            "get_authentication_method_configuration", method_id, self._method_configuration(method_id).get()
        )
        data = self._to_dict(configuration)
        targets = []
        for target in getattr(configuration, "include_targets", None) or []:
            target_type = getattr(target, "target_type", None)
            targets.append(
                {
                    "id": target.id,
                    "targetType": getattr(target_type, "value", None) or "group",
                    "isRegistrationRequired": bool(getattr(target, "is_registration_required", False)),
                }
            )
        data["includeTargets"] = targets
        return data

    async def update_authentication_method_configuration(
        self, method_id: str, payload: Dict[str, Any]
    ) -> None:
        await self._call(
            "update_authentication_method_configuration",
            method_id,
            self._method_configuration(method_id).patch(_graph_model(payload, AuthenticationMethodConfiguration)),
        )

    def _to_dict(self, graph_object: Any) -> Dict[str, Any]:
        """Flatten an SDK model into the camelCase keys the workflows read."""
        if graph_object is None:
            return {}
        if isinstance(graph_object, dict):
            return graph_object

        field_map = {
            "id": "id",
            "display_name": "displayName",
            "description": "description",
            "user_principal_name": "userPrincipalName",
            "employee_id": "employeeId",
            "department": "department",
            "job_title": "jobTitle",
            "account_enabled": "accountEnabled",
            "origin_id": "originId",
            "state": "state",
        }
        result: Dict[str, Any] = {}
        for attribute, key in field_map.items():
            value = getattr(graph_object, attribute, None)
            if value is None:
                continue
            # Enum values (e.g. policy state) are flattened to their wire value.
            result[key] = getattr(value, "value", value)
        additional_data = getattr(graph_object, "additional_data", None)
        if isinstance(additional_data, dict):
            for key, value in additional_data.items():
                result.setdefault(key, value)
        return result
