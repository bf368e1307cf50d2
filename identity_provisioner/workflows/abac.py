"""ABAC conditions on Owner role assignments at subscription scope.

Owner groups may manage role assignments, but never assign or remove the roles in
the deny-list (Owner, Contributor, User Access Administrator, Role Based Access
Control Administrator).
"""
import logging
import re
from typing import Dict, Iterable, Optional, Set

from opentelemetry import trace

from ..config.settings import ABAC_DENYLISTED_ROLE_IDS
from ..errors import RemoteCallFailed, UnprotectedPrivilegedAssignment
from ..models.provisioning import GroupRole, RoleGroup, UpsertResult, UpsertStatus

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

WRITE_ACTION = "Microsoft.Authorization/roleAssignments/write"
DELETE_ACTION = "Microsoft.Authorization/roleAssignments/delete"

_SUBSCRIPTION_SCOPE = re.compile(r"^/subscriptions/[^/]+/?$", re.IGNORECASE)


def is_subscription_scope(scope: str) -> bool:
    return bool(_SUBSCRIPTION_SCOPE.match(scope or ""))


def requires_condition(role: GroupRole, scope: str) -> bool:
    return role == GroupRole.OWNER and is_subscription_scope(scope)


def build_owner_condition(denied_role_ids: Iterable[str] = ABAC_DENYLISTED_ROLE_IDS) -> str:
    guids = ", ".join(role_id.lower() for role_id in denied_role_ids)
    return (
        "(\n"
        " (\n"
        f"  !(ActionMatches{{'{WRITE_ACTION}'}})\n"
        " )\n"
        " OR\n"
        " (\n"
        "  @Request[Microsoft.Authorization/roleAssignments:RoleDefinitionId] "
        f"ForAnyOfAnyValues:GuidNotEquals {{{guids}}}\n"
        " )\n"
        ")\n"
        "AND\n"
        "(\n"
        " (\n"
        f"  !(ActionMatches{{'{DELETE_ACTION}'}})\n"
        " )\n"
        " OR\n"
        " (\n"
        "  @Resource[Microsoft.Authorization/roleAssignments:RoleDefinitionId] "
        f"ForAnyOfAnyValues:GuidNotEquals {{{guids}}}\n"
        " )\n"
        ")"
    )


_NEGATED_ACTION = re.compile(r"(!\s*\(\s*)?actionmatches\s*\{\s*'([^']+)'\s*\}")
_GUID_NOT_EQUALS = re.compile(
    r"@(request|resource)\[microsoft\.authorization/roleassignments:roledefinitionid\]"
    r"\s*foranyofanyvalues:guidnotequals\s*\{([^}]*)\}"
)
# Each guarded action and the attribute source its deny clause must read.
_GUARDED_ACTIONS = {WRITE_ACTION.lower(): "request", DELETE_ACTION.lower(): "resource"}


def _denied_guids_by_action(text: str) -> Dict[str, Set[str]]:
    """Map each negated action to the GUIDs its own GuidNotEquals clause excludes."""
    actions = list(_NEGATED_ACTION.finditer(text))
    guarded: Dict[str, Set[str]] = {}
    for index, match in enumerate(actions):
        negated, action = match.group(1), match.group(2)
        expected_source = _GUARDED_ACTIONS.get(action)
        if not negated or expected_source is None:
            continue
        end = actions[index + 1].start() if index + 1 < len(actions) else len(text)
        clause = _GUID_NOT_EQUALS.search(text, match.end(), end)
        if clause is None or clause.group(1) != expected_source:
            continue
        guarded[action] = {guid.strip() for guid in clause.group(2).split(",") if guid.strip()}
    return guarded


def has_required_condition(
    condition: Optional[str],
    denied_role_ids: Iterable[str] = ABAC_DENYLISTED_ROLE_IDS,
) -> bool:
    """True when the condition guards both write and delete for every denied role.

    Each action must be negated and paired with its own ``GuidNotEquals`` clause
    listing all denied role GUIDs; a GUID mentioned anywhere else does not count.
    """
    if not condition:
        return False
    guarded = _denied_guids_by_action(condition.lower())
    required = {role_id.lower() for role_id in denied_role_ids}
    return all(required <= guarded.get(action, set()) for action in _GUARDED_ACTIONS)


def assignment_label(group: RoleGroup, scope: str) -> str:
    return f"{group.name}@{scope}"


async def ensure_role_assignment(session, group: RoleGroup, scope: str) -> UpsertResult:
    """Create the group's role assignment at ``scope`` or reconcile the existing one.

    Existing assignments are never downgraded. An Owner assignment missing the
    condition is updated only after the operator confirms.
    """
    report = session.report
    label = assignment_label(group, scope)
    needs_condition = requires_condition(group.role, scope)

    with _tracer.start_as_current_span("abac.ensure_role_assignment") as span:
        span.set_attribute("assignment.label", label)
        try:
            existing = await session.role_assignments.list_role_assignments(
                scope, group.group_id, group.role_definition_id
            )
        except RemoteCallFailed as exc:
            return report.add(
                UpsertResult(kind="role_assignment", name=label, status=UpsertStatus.FAILED, detail=str(exc))
            )

        if not existing:
            condition = build_owner_condition() if needs_condition else None
            try:
                created = await session.role_assignments.create_role_assignment(
                    scope, group.group_id, group.role_definition_id, condition=condition
                )
            except RemoteCallFailed as exc:
                return report.add(
                    UpsertResult(kind="role_assignment", name=label, status=UpsertStatus.FAILED, detail=str(exc))
                )
            return report.add(
                UpsertResult(
                    kind="role_assignment",
                    name=label,
                    resource_id=created.assignment_id,
                    status=UpsertStatus.CREATED,
                    detail="with ABAC condition" if condition else "",
                )
            )

        assignment = existing[0]
        if not needs_condition or has_required_condition(assignment.condition):
            return report.add(
                UpsertResult(
                    kind="role_assignment",
                    name=label,
                    resource_id=assignment.assignment_id,
                    status=UpsertStatus.REUSED,
                )
            )

        finding = UnprotectedPrivilegedAssignment(assignment.assignment_id, assignment.principal_id, scope)
        logger.warning("%s", finding)
        span.set_attribute("assignment.unprotected", True)

        if not session.confirmation.confirm(f"{finding}. Add the ABAC condition now?"):
            return report.add(
                UpsertResult(
                    kind="role_assignment",
                    name=label,
                    resource_id=assignment.assignment_id,
                    status=UpsertStatus.FLAGGED,
                    detail=str(finding),
                )
            )

        try:
            updated = await session.role_assignments.update_condition(assignment, build_owner_condition())
        except RemoteCallFailed as exc:
            return report.add(
                UpsertResult(kind="role_assignment", name=label, status=UpsertStatus.FAILED, detail=str(exc))
            )
        return report.add(
            UpsertResult(
                kind="role_assignment",
                name=label,
                resource_id=updated.assignment_id,
                status=UpsertStatus.UPDATED,
                detail="ABAC condition added",
            )
        )
