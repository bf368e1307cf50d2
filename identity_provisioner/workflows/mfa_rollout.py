"""Phishing-resistant MFA rollout: enrollment groups, Conditional Access, passkeys.

Policies are created in report-only state. Switching them to enforced is a
separate, deliberate change made outside this tooling.
"""
import csv
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from opentelemetry import trace

from ..errors import PrerequisiteMissing, RemoteCallFailed
from ..models.provisioning import (
    PLATFORM_CONDITION_VALUES,
    EnrollmentPlatform,
    EnrollmentRequest,
    UpsertResult,
    UpsertStatus,
)
from ..utils.reporting import RunReport
from .upsert import exact_matches, failed, skipped, upsert_resource

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

REPORT_ONLY_STATE = "enabledForReportingButNotEnforced"
PASSKEY_METHOD_ID = "fido2"


def enrollment_group_name(prefix: str, platform: EnrollmentPlatform) -> str:
    return f"{prefix}-{platform.value}"


def ca_policy_name(prefix: str, platform: EnrollmentPlatform) -> str:
    return f"{prefix} - {platform.value}"


def parse_platform(value: str) -> Optional[EnrollmentPlatform]:
    normalized = (value or "").strip().lower()
    for platform in EnrollmentPlatform:
        if platform.value.lower() == normalized:
            return platform
    return None


def build_enrollment_group_payload(name: str, platform: EnrollmentPlatform) -> Dict[str, Any]:
    return {
        "displayName": name,
        "description": f"Users enrolled in phishing-resistant MFA on {platform.value}",
        "mailEnabled": False,
        "mailNickname": name.replace(" ", "")[:64],
        "securityEnabled": True,
    }


def build_ca_policy_payload(
    name: str, group_id: str, platform: EnrollmentPlatform, authentication_strength_id: str
) -> Dict[str, Any]:
    return {
        "displayName": name,
        "state": REPORT_ONLY_STATE,
        "conditions": {
            "users": {"includeGroups": [group_id]},
            "applications": {"includeApplications": ["All"]},
            "platforms": {"includePlatforms": [PLATFORM_CONDITION_VALUES[platform]]},
            "clientAppTypes": ["all"],
        },
        "grantControls": {
            "operator": "AND",
            "authenticationStrength": {"id": authentication_strength_id},
        },
    }


async def resolve_authentication_strength(session) -> str:
    """ID of the configured authentication strength. Its absence halts the rollout."""
    name = session.settings.authentication_strength_name
    try:
        strengths = exact_matches(await session.directory.find_authentication_strengths(name), name)
    except RemoteCallFailed as exc:
        raise PrerequisiteMissing(
            f"Could not read authentication strengths: {exc}",
            remediation="Grant Policy.Read.All and retry.",
        ) from exc
    if not strengths:
        raise PrerequisiteMissing(
            f"Authentication strength '{name}' does not exist",
            remediation="Create it under Entra ID > Protection > Authentication methods > "
            "Authentication strengths, or set AUTHENTICATION_STRENGTH_NAME.",
        )
    logger.info("Using authentication strength %s (%s)", name, strengths[0]["id"])
    return strengths[0]["id"]


async def provision_enrollment(session) -> RunReport:
    """Create (or reuse) one group and one report-only CA policy per platform."""
    report = session.start("mfa")
    await session.require_permissions("mfa")
    settings = session.settings
    directory = session.directory

    strength_id = await resolve_authentication_strength(session)

    with _tracer.start_as_current_span("mfa.provision_enrollment"):
        for platform in EnrollmentPlatform:
            group_name = enrollment_group_name(settings.enrollment_group_prefix, platform)
            policy_name = ca_policy_name(settings.ca_policy_prefix, platform)

            group = await upsert_resource(
                report,
                "group",
                group_name,
                find=lambda group_name=group_name: directory.find_groups(group_name),
                create=lambda group_name=group_name, platform=platform: directory.create_group(
                    build_enrollment_group_payload(group_name, platform)
                ),
            )
            if not group.ok:
                skipped(report, "ca_policy", policy_name, "enrollment group unavailable")
                continue

            # Existing policies are reused as-is, whatever their current state.
            await upsert_resource(
                report,
                "ca_policy",
                policy_name,
                find=lambda policy_name=policy_name: directory.find_ca_policies(policy_name),
                create=lambda policy_name=policy_name, platform=platform, group_id=group.resource_id: (
                    directory.create_ca_policy(
                        build_ca_policy_payload(policy_name, group_id, platform, strength_id)
                    )
                ),
            )

    report.write_mappings()
    return report


async def _enrollment_groups(session) -> Dict[EnrollmentPlatform, Dict[str, Any]]:
    prefix = session.settings.enrollment_group_prefix
    groups: Dict[EnrollmentPlatform, Dict[str, Any]] = {}
    for platform in EnrollmentPlatform:
        name = enrollment_group_name(prefix, platform)
        try:
            matches = exact_matches(await session.directory.find_groups(name), name)
        except RemoteCallFailed as exc:
            raise PrerequisiteMissing(f"Could not look up enrollment group {name}: {exc}") from exc
        if not matches:
            raise PrerequisiteMissing(
                f"Enrollment group '{name}' does not exist",
                remediation="Run the mfa-rollout command first.",
            )
        groups[platform] = matches[0]
    return groups


def read_enrollment_csv(path: str) -> List[EnrollmentRequest]:
    csv_path = Path(path)
    if not csv_path.exists():
        raise PrerequisiteMissing(f"Enrollment CSV not found: {csv_path}")

    with csv_path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        fieldnames = reader.fieldnames or []
        if "UserPrincipalName" not in fieldnames or "Platform" not in fieldnames:
            raise PrerequisiteMissing(
                f"{csv_path} must have UserPrincipalName and Platform columns",
                remediation="Example row: alex@contoso.com,Windows",
            )
        return [
            EnrollmentRequest(
                user_principal_name=(row.get("UserPrincipalName") or "").strip(),
                platform=(row.get("Platform") or "").strip(),
            )
            for row in reader
            if (row.get("UserPrincipalName") or "").strip()
        ]


async def import_enrollment_members(session, csv_path: str) -> RunReport:
    """Add users from a platform-tagged CSV to the matching enrollment group."""
    report = session.start("mfa_import")
    await session.require_permissions("mfa_import")
    requests = read_enrollment_csv(csv_path)
    groups = await _enrollment_groups(session)

    # Member sets are loaded once per group and kept current, so a user listed twice
    # is reported as reused rather than added twice.
    members: Dict[str, Set[str]] = {}

    with _tracer.start_as_current_span("mfa.import_members") as span:
        span.set_attribute("import.rows", len(requests))
        for request in requests:
            await _import_one(session, report, request, groups, members)

    report.write_mappings()
    return report


async def _import_one(
    session,
    report: RunReport,
    request: EnrollmentRequest,
    groups: Dict[EnrollmentPlatform, Dict[str, Any]],
    members: Dict[str, Set[str]],
) -> UpsertResult:
    upn = request.user_principal_name
    platform = parse_platform(request.platform)
    if platform is None:
        return report.add(
            UpsertResult(
                kind="group_membership",
                name=upn,
                status=UpsertStatus.FAILED,
                detail=f"unknown platform '{request.platform}'",
            )
        )

    group = groups[platform]
    label = f"{upn} -> {group['displayName']}"
    try:
        user = await session.directory.find_user(upn)
        if user is None:
            return report.add(
                UpsertResult(kind="group_membership", name=label, status=UpsertStatus.FAILED, detail="user not found")
            )
        if group["id"] not in members:
            members[group["id"]] = set(await session.directory.list_group_member_ids(group["id"]))
        if user["id"] in members[group["id"]]:
            return report.add(
                UpsertResult(
                    kind="group_membership", name=label, resource_id=user["id"], status=UpsertStatus.REUSED
                )
            )
        await session.directory.add_group_member(group["id"], user["id"])
    except RemoteCallFailed as exc:
        return failed(report, "group_membership", label, exc)

    members[group["id"]].add(user["id"])
    return report.add(
        UpsertResult(kind="group_membership", name=label, resource_id=user["id"], status=UpsertStatus.CREATED)
    )


async def enable_passkeys_for_enrollment_groups(session) -> RunReport:
    """Target the FIDO2 (passkey) authentication method at the enrollment groups."""
    report = session.start("passkeys")
    await session.require_permissions("passkeys")
    groups = await _enrollment_groups(session)
    group_ids = [group["id"] for group in groups.values()]

    try:
        configuration = await session.directory.get_authentication_method_configuration(PASSKEY_METHOD_ID)
    except RemoteCallFailed as exc:
        failed(report, "auth_method", PASSKEY_METHOD_ID, exc)
        return report

    targets: List[Dict[str, Any]] = list(configuration.get("includeTargets") or [])
    targeted = {target.get("id") for target in targets}
    missing = [group_id for group_id in group_ids if group_id not in targeted]
    enabled = configuration.get("state") == "enabled"

    if not missing and enabled:
        report.add(
            UpsertResult(
                kind="auth_method", name=PASSKEY_METHOD_ID, resource_id=PASSKEY_METHOD_ID, status=UpsertStatus.REUSED
            )
        )
        return report

    question = (
        f"Enable the passkey (FIDO2) method for {len(missing)} enrollment group(s)"
        f"{'' if enabled else ' and switch the method on tenant-wide'}?"
    )
    if not session.confirmation.confirm(question):
        report.add(
            UpsertResult(
                kind="auth_method",
                name=PASSKEY_METHOD_ID,
                resource_id=PASSKEY_METHOD_ID,
                status=UpsertStatus.FLAGGED,
                detail="passkey targeting left unchanged by operator",
            )
        )
        return report

    include_targets = [
        {
            "targetType": target.get("targetType", "group"),
            "id": target["id"],
            "isRegistrationRequired": target.get("isRegistrationRequired", False),
        }
        for target in targets
    ]
    include_targets.extend(
        {"targetType": "group", "id": group_id, "isRegistrationRequired": False} for group_id in missing
    )
    payload = {
        "@odata.type": "#microsoft.graph.fido2AuthenticationMethodConfiguration",
        "state": "enabled",
        "includeTargets": include_targets,
    }
    try:
        await session.directory.update_authentication_method_configuration(PASSKEY_METHOD_ID, payload)
    except RemoteCallFailed as exc:
        failed(report, "auth_method", PASSKEY_METHOD_ID, exc)
        return report

    report.add(
        UpsertResult(
            kind="auth_method",
            name=PASSKEY_METHOD_ID,
            resource_id=PASSKEY_METHOD_ID,
            status=UpsertStatus.UPDATED,
            detail=f"added {len(missing)} group target(s)",
        )
    )
    return report
