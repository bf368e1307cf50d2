"""Graph permission checks performed before any workflow mutates the tenant."""
import logging
from typing import Any, Dict, Iterable, Optional, Set

import jwt

from ..config.settings import REQUIRED_GRAPH_PERMISSIONS
from ..errors import PrerequisiteMissing

logger = logging.getLogger(__name__)


def decode_granted_permissions(access_token: str) -> Set[str]:
    """Return delegated (scp) and application (roles) permissions from a Graph token."""
    try:
        claims: Dict[str, Any] = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError as exc:
        raise PrerequisiteMissing(
            "Unable to read the Microsoft Graph access token",
            remediation="Sign in again (az login) or check the configured credential.",
        ) from exc

    granted: Set[str] = set()
    scopes = claims.get("scp")
    if isinstance(scopes, str):
        granted.update(scopes.split())
    roles = claims.get("roles")
    if isinstance(roles, list):
        granted.update(str(role) for role in roles)
    return granted


def missing_permissions(granted: Iterable[str], required: Iterable[str]) -> Set[str]:
    granted_lower = {permission.lower() for permission in granted}
    missing = set()
    for permission in required:
        if permission.lower() in granted_lower:
            continue
        # A ReadWrite grant covers the matching Read permission.
        if ".read." in permission.lower():
            upgraded = permission.lower().replace(".read.", ".readwrite.")
            if upgraded in granted_lower:
                continue
        missing.add(permission)
    return missing


def ensure_permissions(granted: Optional[Set[str]], workflow: str) -> None:
    """Raise PrerequisiteMissing when the session lacks a permission the workflow needs."""
    required = REQUIRED_GRAPH_PERMISSIONS.get(workflow, [])
    if granted is None:
        logger.debug("Permission check skipped for %s: provider does not expose grants", workflow)
        return

    missing = missing_permissions(granted, required)
    if missing:
        missing_list = ", ".join(sorted(missing))
        raise PrerequisiteMissing(
            f"Missing Microsoft Graph permissions for {workflow}: {missing_list}",
            remediation=(
                "Grant admin consent for these permissions to the app registration, "
                "or sign in with an account holding them (az login --scope "
                "https://graph.microsoft.com/.default)."
            ),
        )
    logger.info("All %s Graph permissions present for %s", len(required), workflow)
