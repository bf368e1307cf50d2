import logging
from typing import Optional

from ..errors import RemoteCallFailed
from ..models.provisioning import EnvironmentTier, GroupRole, RoleGroup, UpsertResult, UpsertStatus

logger = logging.getLogger(__name__)


def is_privileged(role: GroupRole, tier: Optional[EnvironmentTier] = None) -> bool:
    """Owner and VM Admins always; Contributor only in prod."""
    if role in (GroupRole.OWNER, GroupRole.ADMINS):
        return True
    if role == GroupRole.CONTRIBUTOR:
        return tier == EnvironmentTier.PROD
    return False


async def register_for_pim(session, group: RoleGroup) -> Optional[UpsertResult]:
    """Bring a privileged group under PIM control. Safe to call on every run."""
    if not group.privileged:
        return None

    report = session.report
    try:
        newly_registered = await session.directory.register_group_for_pim(group.group_id)
    except RemoteCallFailed as exc:
        return report.add(
            UpsertResult(kind="pim_registration", name=group.name, status=UpsertStatus.FAILED, detail=str(exc))
        )

    if newly_registered:
        logger.info("Registered %s (%s) with PIM", group.name, group.group_id)
    status = UpsertStatus.CREATED if newly_registered else UpsertStatus.REUSED
    detail = "" if newly_registered else "already registered"
    return report.add(
        UpsertResult(
            kind="pim_registration",
            name=group.name,
            resource_id=group.group_id,
            status=status,
            detail=detail,
        )
    )
