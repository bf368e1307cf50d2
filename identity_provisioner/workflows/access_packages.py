"""Access packages and their request policies, per role and environment tier."""
import logging
from typing import Any, Dict, List, Optional

from opentelemetry import trace

from ..errors import RemoteCallFailed
from ..models.provisioning import (
    AccessPackageSpec,
    ApprovalStage,
    AssignmentPolicySpec,
    EnvironmentTier,
    GroupRole,
    MembershipType,
    RoleGroup,
    UpsertResult,
    UpsertStatus,
)
from ..integrations.directory import MEMBERSHIP_ORIGIN_PREFIX
from .upsert import failed, skipped, upsert_resource

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

STANDARD_MONTHS = [1, 3, 6]
VM_USER_MONTHS = [1, 6, 12]
VM_ADMIN_MONTHS = [1]
OWNER_DURATION = "PT8H"

MEMBERSHIP_DISPLAY_NAMES = {
    MembershipType.MEMBER: "Member",
    MembershipType.ELIGIBLE_MEMBER: "Eligible Member",
}


def membership_for(role: GroupRole, tier: Optional[EnvironmentTier]) -> MembershipType:
    """Which membership the package grants. Eligible membership keeps the PIM activation step."""
    if role == GroupRole.OWNER:
        return MembershipType.ELIGIBLE_MEMBER
    if role == GroupRole.CONTRIBUTOR and tier == EnvironmentTier.PROD:
        return MembershipType.ELIGIBLE_MEMBER
    return MembershipType.MEMBER


def _duration_label(duration: str) -> str:
    if duration.startswith("PT") and duration.endswith("H"):
        hours = int(duration[2:-1])
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    months = int(duration[1:-1])
    return f"{months} month" if months == 1 else f"{months} months"


def _policy_durations(role: GroupRole) -> List[str]:
    if role == GroupRole.OWNER:
        return [OWNER_DURATION]
    if role == GroupRole.USERS:
        return [f"P{m}M" for m in VM_USER_MONTHS]
    if role == GroupRole.ADMINS:
        return [f"P{m}M" for m in VM_ADMIN_MONTHS]
    return [f"P{m}M" for m in STANDARD_MONTHS]


def package_name(prefix: str, resource_name: str, role: GroupRole) -> str:
    return f"{prefix}-{resource_name}-{role.value}"


def compose_package(
    resource_name: str,
    role: GroupRole,
    tier: Optional[EnvironmentTier] = None,
    prefix: str = "AP",
    fallback_approver_group_id: str = "",
    vm_team_approver_group_id: str = "",
) -> AccessPackageSpec:
    """Build the package spec for one role.

    Every policy needs the requestor's manager to approve. VM packages add a
    second stage approved by the VM team. VM Admins access cannot be extended.
    """
    name = package_name(prefix, resource_name, role)
    is_vm = role in (GroupRole.USERS, GroupRole.ADMINS)

    stages = [ApprovalStage(approver="manager", group_id=fallback_approver_group_id or None)]
    if is_vm:
        stages.append(ApprovalStage(approver="group", group_id=vm_team_approver_group_id or None))

    policies = [
        AssignmentPolicySpec(
            display_name=f"{name} - {_duration_label(duration)}",
            duration=duration,
            approval_stages=[stage.model_copy() for stage in stages],
            extensible=role != GroupRole.ADMINS,
        )
        for duration in _policy_durations(role)
    ]
    return AccessPackageSpec(name=name, role=role, membership=membership_for(role, tier), policies=policies)


def _approval_stage_payload(stage: ApprovalStage) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "durationBeforeAutomaticDenial": f"P{stage.duration_days}D",
        "isApproverJustificationRequired": True,
        "isEscalationEnabled": False,
        "fallbackPrimaryApprovers": [],
    }
    if stage.approver == "manager":
        payload["primaryApprovers"] = [{"@odata.type": "#microsoft.graph.requestorManager", "managerLevel": 1}]
        if stage.group_id:
            payload["fallbackPrimaryApprovers"] = [
                {"@odata.type": "#microsoft.graph.groupMembers", "groupId": stage.group_id}
            ]
    else:
        payload["primaryApprovers"] = [{"@odata.type": "#microsoft.graph.groupMembers", "groupId": stage.group_id}]
    return payload


def build_policy_payload(policy: AssignmentPolicySpec, package_id: str) -> Dict[str, Any]:
    return {
        "displayName": policy.display_name,
        "description": f"Request access for {_duration_label(policy.duration)}",
        "allowedTargetScope": "allMemberUsers",
        "accessPackage": {"id": package_id},
        "expiration": {"type": "afterDuration", "duration": policy.duration},
        "requestorSettings": {
            "enableTargetsToSelfAddAccess": True,
            "enableTargetsToSelfUpdateAccess": policy.extensible,
            "enableTargetsToSelfRemoveAccess": True,
            "allowCustomAssignmentSchedule": False,
        },
        "requestApprovalSettings": {
            "isApprovalRequiredForAdd": True,
            "isApprovalRequiredForUpdate": True,
            "stages": [_approval_stage_payload(stage) for stage in policy.approval_stages],
        },
    }


def build_role_binding_payload(
    group_id: str, catalog_resource_id: str, membership: MembershipType
) -> Dict[str, Any]:
    return {
        "role": {
            "originId": f"{MEMBERSHIP_ORIGIN_PREFIX[membership.value]}{group_id}",
            "displayName": MEMBERSHIP_DISPLAY_NAMES[membership],
            "originSystem": "AadGroup",
            "resource": {"id": catalog_resource_id, "originId": group_id, "originSystem": "AadGroup"},
        },
        "scope": {"originId": group_id, "originSystem": "AadGroup", "isRootScope": True},
    }


async def ensure_catalog(session, catalog_name: str) -> UpsertResult:
    directory = session.directory
    return await upsert_resource(
        session.report,
        "catalog",
        catalog_name,
        find=lambda: directory.find_catalogs(catalog_name),
        create=lambda: directory.create_catalog({
            "displayName": catalog_name,
            "description": "Azure RBAC role groups",
            "isExternallyVisible": False,
        }),
    )


async def _ensure_catalog_resource(session, catalog_id: str, group: RoleGroup) -> UpsertResult:
    report = session.report
    try:
        resource = await session.directory.find_catalog_resource(catalog_id, group.group_id)
        status = UpsertStatus.REUSED
        if resource is None:
            resource = await session.directory.add_catalog_resource(catalog_id, group.group_id)
            status = UpsertStatus.CREATED
    except RemoteCallFailed as exc:
        return failed(report, "catalog_resource", group.name, exc)
    return report.add(
        UpsertResult(kind="catalog_resource", name=group.name, resource_id=resource.get("id"), status=status)
    )


async def _ensure_role_binding(
    session, package_id: str, spec: AccessPackageSpec, group: RoleGroup, catalog_resource_id: str
) -> UpsertResult:
    report = session.report
    label = f"{spec.name}:{group.name}"
    try:
        bindings = await session.directory.list_package_role_bindings(package_id)
        bound = [b for b in bindings if b.get("originId") == group.group_id]
        if bound:
            memberships = {b.get("membership") for b in bound}
            if spec.membership.value not in memberships:
                logger.warning("%s binds %s with the wrong membership type", spec.name, group.name)
                # A Member binding where EligibleMember is expected skips PIM activation.
                return report.add(
                    UpsertResult(
                        kind="package_binding",
                        name=label,
                        resource_id=group.group_id,
                        status=UpsertStatus.FLAGGED,
                        detail=f"bound as {', '.join(sorted(memberships))}, expected {spec.membership.value}",
                    )
                )
            return report.add(
                UpsertResult(
                    kind="package_binding", name=label, resource_id=group.group_id, status=UpsertStatus.REUSED
                )
            )
        await session.directory.add_package_role_binding(
            package_id, build_role_binding_payload(group.group_id, catalog_resource_id, spec.membership)
        )
    except RemoteCallFailed as exc:
        return failed(report, "package_binding", label, exc)
    return report.add(
        UpsertResult(
            kind="package_binding",
            name=label,
            resource_id=group.group_id,
            status=UpsertStatus.CREATED,
            detail=spec.membership.value,
        )
    )


async def provision_access_package(
    session, catalog_id: str, group: RoleGroup, spec: AccessPackageSpec
) -> Optional[str]:
    """Upsert the package, bind the group with the package's membership type and upsert its policies."""
    report = session.report
    directory = session.directory

    with _tracer.start_as_current_span("access_packages.provision") as span:
        span.set_attribute("package.name", spec.name)
        span.set_attribute("package.membership", spec.membership.value)

        resource = await _ensure_catalog_resource(session, catalog_id, group)

        package = await upsert_resource(
            report,
            "access_package",
            spec.name,
            find=lambda: directory.find_access_packages(catalog_id, spec.name),
            create=lambda: directory.create_access_package({
                "displayName": spec.name,
                "description": f"{spec.role.value} access via {group.name}",
                "isHidden": False,
                "catalog": {"id": catalog_id},
            }),
        )
        if not package.ok:
            skipped(report, "package_binding", f"{spec.name}:{group.name}", "access package unavailable")
            for policy in spec.policies:
                skipped(report, "assignment_policy", policy.display_name, "access package unavailable")
            return None

        if resource.ok:
            await _ensure_role_binding(session, package.resource_id, spec, group, resource.resource_id)
        else:
            skipped(report, "package_binding", f"{spec.name}:{group.name}", "group not in catalog")

        for policy in spec.policies:
            await upsert_resource(
                report,
                "assignment_policy",
                policy.display_name,
                find=lambda policy=policy: directory.find_assignment_policies(package.resource_id, policy.display_name),
                create=lambda policy=policy: directory.create_assignment_policy(
                    build_policy_payload(policy, package.resource_id)
                ),
            )
        return package.resource_id
