"""RBAC provisioning for a subscription or a virtual machine.

For each role: group -> PIM registration (privileged only) -> Azure role
assignment -> access package. Every step is create-or-reuse, so re-running
the same command converges instead of duplicating.
"""
import logging
import re
from typing import Dict, List, Optional

from opentelemetry import trace

from ..config.settings import ROLE_DEFINITION_IDS
from ..errors import PrerequisiteMissing
from ..models.provisioning import (
    SUBSCRIPTION_ROLES,
    VM_ROLES,
    EnvironmentTier,
    GroupRole,
    RoleGroup,
    UpsertResult,
)
from ..utils.reporting import RunReport
from .abac import ensure_role_assignment
from .access_packages import compose_package, ensure_catalog, provision_access_package
from .environment import classify_environment
from .pim import is_privileged, register_for_pim
from .upsert import skipped, upsert_resource

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

ROLE_DEFINITIONS: Dict[GroupRole, str] = {
    GroupRole.READER: ROLE_DEFINITION_IDS["Reader"],
    GroupRole.CONTRIBUTOR: ROLE_DEFINITION_IDS["Contributor"],
    GroupRole.OWNER: ROLE_DEFINITION_IDS["Owner"],
    GroupRole.USERS: ROLE_DEFINITION_IDS["Virtual Machine User Login"],
    GroupRole.ADMINS: ROLE_DEFINITION_IDS["Virtual Machine Administrator Login"],
}


def role_group_name(prefix: str, resource_name: str, role: GroupRole) -> str:
    return f"{prefix}-{resource_name}-{role.value}"


def build_role_groups(
    prefix: str,
    resource_name: str,
    roles: List[GroupRole],
    tier: Optional[EnvironmentTier] = None,
) -> List[RoleGroup]:
    return [
        RoleGroup(
            name=role_group_name(prefix, resource_name, role),
            role=role,
            resource_name=resource_name,
            tier=tier,
            privileged=is_privileged(role, tier),
            role_definition_id=ROLE_DEFINITIONS[role],
        )
        for role in roles
    ]


def build_group_payload(group: RoleGroup) -> Dict[str, object]:
    nickname = re.sub(r"[^A-Za-z0-9-]", "", group.name)[:64] or "rbacgroup"
    tier = f" ({group.tier.value})" if group.tier else ""
    return {
        "displayName": group.name,
        "description": f"{group.role.value} access to {group.resource_name}{tier}",
        "mailEnabled": False,
        "mailNickname": nickname,
        "securityEnabled": True,
    }


async def ensure_role_group(session, group: RoleGroup) -> UpsertResult:
    directory = session.directory
    result = await upsert_resource(
        session.report,
        "group",
        group.name,
        find=lambda: directory.find_groups(group.name),
        create=lambda: directory.create_group(build_group_payload(group)),
    )
    if result.ok:
        group.group_id = result.resource_id
    return result


async def _provision_role(session, group: RoleGroup, scope: str, catalog: UpsertResult) -> None:
    report = session.report
    settings = session.settings

    with _tracer.start_as_current_span("rbac.provision_role") as span:
        span.set_attribute("group.name", group.name)
        span.set_attribute("group.privileged", group.privileged)

        group_result = await ensure_role_group(session, group)
        if not group_result.ok:
            for kind in ("pim_registration", "role_assignment", "access_package"):
                skipped(report, kind, group.name, "group unavailable")
            return

        await register_for_pim(session, group)
        await ensure_role_assignment(session, group, scope)

        if not catalog.ok:
            skipped(report, "access_package", group.name, "catalog unavailable")
            return

        spec = compose_package(
            group.resource_name,
            group.role,
            group.tier,
            prefix=settings.access_package_prefix,
            fallback_approver_group_id=settings.fallback_approver_group_id,
            vm_team_approver_group_id=settings.vm_team_approver_group_id,
        )
        await provision_access_package(session, catalog.resource_id, group, spec)


async def provision_subscription(session, resource_name: str, subscription_id: str) -> RunReport:
    """Provision Reader, Contributor and Owner groups and packages for a subscription."""
    tier = classify_environment(resource_name)
    if not subscription_id:
        raise PrerequisiteMissing(
            f"No subscription ID given for {resource_name}",
            remediation="Pass --subscription-id or set AZURE_SUBSCRIPTION_ID.",
        )

    report = session.start("rbac")
    await session.require_permissions("rbac")
    logger.info("Provisioning %s (tier %s)", resource_name, tier.value)

    scope = f"/subscriptions/{subscription_id}"
    with _tracer.start_as_current_span("rbac.provision_subscription") as span:
        span.set_attribute("resource.name", resource_name)
        span.set_attribute("resource.tier", tier.value)

        catalog = await ensure_catalog(session, session.settings.access_package_catalog)
        for group in build_role_groups(session.settings.group_prefix, resource_name, SUBSCRIPTION_ROLES, tier):
            await _provision_role(session, group, scope, catalog)

    report.write_mappings()
    return report


async def provision_virtual_machine(session, vm_name: str, scope: str) -> RunReport:
    """Provision Users and Admins login groups and packages for one VM."""
    if "/providers/microsoft.compute/virtualmachines/" not in (scope or "").lower():
        raise PrerequisiteMissing(
            f"'{scope}' is not a virtual machine resource ID",
            remediation="Pass --scope /subscriptions/<id>/resourceGroups/<rg>/providers/"
            "Microsoft.Compute/virtualMachines/<name>.",
        )
    if not session.settings.vm_team_approver_group_id:
        raise PrerequisiteMissing(
            "VM access packages need a second-stage approver group",
            remediation="Set VM_TEAM_APPROVER_GROUP_ID to the object ID of the VM team group.",
        )

    report = session.start("rbac")
    await session.require_permissions("rbac")
    logger.info("Provisioning VM %s", vm_name)

    with _tracer.start_as_current_span("rbac.provision_virtual_machine") as span:
        span.set_attribute("resource.name", vm_name)

        catalog = await ensure_catalog(session, session.settings.access_package_catalog)
        for group in build_role_groups(session.settings.group_prefix, vm_name, VM_ROLES):
            await _provision_role(session, group, scope, catalog)

    report.write_mappings()
    return report
