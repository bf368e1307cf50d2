"""HR-driven joiner / mover / leaver reconciliation of directory users."""
import logging
import re
import secrets
import string
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from opentelemetry import trace

from ..errors import RemoteCallFailed
from ..models.provisioning import HRRecord, UpsertResult, UpsertStatus
from ..utils.reporting import RunReport
from .upsert import failed, skipped

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)


def generate_temporary_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
            and any(c in "!@#$%^&*" for c in password)
        ):
            return password


def derive_user_principal_name(record: HRRecord, domain: str) -> Optional[str]:
    if record.user_principal_name:
        return record.user_principal_name
    if not domain:
        return None
    local = f"{record.given_name}.{record.surname}".lower()
    local = re.sub(r"[^a-z0-9.]", "", local).strip(".")
    return f"{local}@{domain}" if local else None


def build_joiner_payload(record: HRRecord, user_principal_name: str, usage_location: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "accountEnabled": True,
        "displayName": record.display_name,
        "givenName": record.given_name,
        "surname": record.surname,
        "mailNickname": user_principal_name.split("@", 1)[0],
        "userPrincipalName": user_principal_name,
        "employeeId": record.employee_id,
        "employeeHireDate": f"{record.start_date.isoformat()}T00:00:00Z",
        "usageLocation": usage_location,
        "passwordProfile": {
            "forceChangePasswordNextSignIn": True,
            "password": generate_temporary_password(),
        },
    }
    if record.department:
        payload["department"] = record.department
    if record.job_title:
        payload["jobTitle"] = record.job_title
    return payload


def attribute_changes(record: HRRecord, user: Dict[str, Any]) -> Dict[str, Any]:
    """Directory attributes that differ from HR. Blank HR values never clear a field."""
    changes: Dict[str, Any] = {}
    if record.department and user.get("department") != record.department:
        changes["department"] = record.department
    if record.job_title and user.get("jobTitle") != record.job_title:
        changes["jobTitle"] = record.job_title
    return changes


def is_leaver(record: HRRecord, today: date) -> bool:
    return record.end_date is not None and record.end_date <= today


def in_onboarding_window(record: HRRecord, today: date, window_days: int) -> bool:
    # Start dates already in the past still onboard (late HR entry).
    return record.start_date <= today + timedelta(days=window_days)


async def sync_from_hr(
    session,
    records: List[HRRecord],
    today: Optional[date] = None,
    rejected: Optional[List[Dict[str, str]]] = None,
) -> RunReport:
    """Apply joiner, mover and leaver changes. Rows the HR source rejected are reported as failed."""
    report = session.start("hr")
    await session.require_permissions("hr")
    today = today or date.today()

    for row in rejected or []:
        report.add(
            UpsertResult(
                kind="user",
                name=row.get("EmployeeId") or f"line {row.get('line')}",
                status=UpsertStatus.FAILED,
                detail=f"HR row {row.get('line')} rejected: {row.get('reason', 'invalid row')}",
            )
        )

    with _tracer.start_as_current_span("hr.sync") as span:
        span.set_attribute("hr.records", len(records))
        for record in records:
            await _sync_record(session, report, record, today)

    report.write_mappings()
    return report


async def _resolve_manager_id(session, manager_upn: Optional[str]) -> Optional[str]:
    if not manager_upn:
        return None
    manager = await session.directory.find_user(manager_upn)
    if manager is None:
        logger.warning("Manager %s not found in directory", manager_upn)
        return None
    return manager.get("id")


async def _sync_record(session, report: RunReport, record: HRRecord, today: date) -> UpsertResult:
    directory = session.directory
    label = record.user_principal_name or record.employee_id

    try:
        user = await directory.find_user_by_employee_id(record.employee_id)
        if user is None and record.user_principal_name:
            user = await directory.find_user(record.user_principal_name)
    except RemoteCallFailed as exc:
        return failed(report, "user", label, exc)

    if is_leaver(record, today):
        return await _offboard(session, report, record, user, label)
    if user is None:
        return await _onboard(session, report, record, today)
    return await _update(session, report, record, user)


async def _onboard(session, report: RunReport, record: HRRecord, today: date) -> UpsertResult:
    settings = session.settings
    upn = derive_user_principal_name(record, settings.user_domain)
    label = upn or record.employee_id

    if not in_onboarding_window(record, today, settings.onboarding_window_days):
        return skipped(report, "user", label, f"starts {record.start_date.isoformat()}, outside onboarding window")
    if upn is None:
        return report.add(
            UpsertResult(kind="user", name=label, status=UpsertStatus.FAILED, detail="no UPN and USER_DOMAIN unset")
        )

    try:
        created = await session.directory.create_user(build_joiner_payload(record, upn, settings.usage_location))
        manager_id = await _resolve_manager_id(session, record.manager_upn)
        if manager_id:
            await session.directory.set_manager(created["id"], manager_id)
    except RemoteCallFailed as exc:
        return failed(report, "user", label, exc)

    return report.add(
        UpsertResult(
            kind="user",
            name=upn,
            resource_id=created.get("id"),
            status=UpsertStatus.CREATED,
            detail=f"joiner starting {record.start_date.isoformat()}",
        )
    )


async def _update(session, report: RunReport, record: HRRecord, user: Dict[str, Any]) -> UpsertResult:
    directory = session.directory
    label = user.get("userPrincipalName") or record.employee_id
    changes = attribute_changes(record, user)

    try:
        manager_id = await _resolve_manager_id(session, record.manager_upn)
        manager_changed = bool(manager_id) and manager_id != await directory.get_manager_id(user["id"])
        if changes:
            await directory.update_user(user["id"], changes)
        if manager_changed:
            await directory.set_manager(user["id"], manager_id)
    except RemoteCallFailed as exc:
        return failed(report, "user", label, exc)

    changed_fields = sorted(changes) + (["manager"] if manager_changed else [])
    if not changed_fields:
        return report.add(UpsertResult(kind="user", name=label, resource_id=user["id"], status=UpsertStatus.REUSED))
    return report.add(
        UpsertResult(
            kind="user",
            name=label,
            resource_id=user["id"],
            status=UpsertStatus.UPDATED,
            detail=f"mover: {', '.join(changed_fields)}",
        )
    )


async def _offboard(
    session, report: RunReport, record: HRRecord, user: Optional[Dict[str, Any]], label: str
) -> UpsertResult:
    if user is None:
        return skipped(report, "user", label, "leaver not found in directory")
    label = user.get("userPrincipalName") or label
    if user.get("accountEnabled") is False:
        return report.add(
            UpsertResult(
                kind="user", name=label, resource_id=user["id"], status=UpsertStatus.REUSED, detail="already disabled"
            )
        )

    directory = session.directory
    try:
        group_ids = await directory.list_user_group_ids(user["id"])
    except RemoteCallFailed as exc:
        return failed(report, "user", label, exc)

    question = (
        f"Disable {label} (end date {record.end_date.isoformat()}) "
        f"and remove {len(group_ids)} group membership(s)?"
    )
    if not session.confirmation.confirm(question):
        return report.add(
            UpsertResult(
                kind="user",
                name=label,
                resource_id=user["id"],
                status=UpsertStatus.FLAGGED,
                detail=f"leaver since {record.end_date.isoformat()} still enabled",
            )
        )

    try:
        await directory.update_user(user["id"], {"accountEnabled": False})
        for group_id in group_ids:
            await directory.remove_group_member(group_id, user["id"])
    except RemoteCallFailed as exc:
        return failed(report, "user", label, exc)

    return report.add(
        UpsertResult(
            kind="user",
            name=label,
            resource_id=user["id"],
            status=UpsertStatus.UPDATED,
            detail=f"leaver: disabled, removed from {len(group_ids)} group(s)",
        )
    )
