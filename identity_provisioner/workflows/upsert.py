"""Create-or-reuse by exact display name."""
import logging
from typing import Any, Awaitable, Callable, Dict, List

from opentelemetry import trace

from ..errors import RemoteCallFailed
from ..models.provisioning import UpsertResult, UpsertStatus
from ..utils.reporting import RunReport

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

Finder = Callable[[], Awaitable[List[Dict[str, Any]]]]
Creator = Callable[[], Awaitable[Dict[str, Any]]]


def exact_matches(items: List[Dict[str, Any]], name: str) -> List[Dict[str, Any]]:
    """Directory filters compare case-insensitively; names here are case-sensitive."""
    return [item for item in items if item.get("displayName") == name]


async def upsert_resource(
    report: RunReport,
    kind: str,
    name: str,
    find: Finder,
    create: Creator,
) -> UpsertResult:
    """Reuse the object named ``name`` if it exists, otherwise create it.

    Not safe against a second process creating the same name concurrently; runs are
    expected to be sequential.
    """
    with _tracer.start_as_current_span(f"upsert.{kind}") as span:
        span.set_attribute("resource.name", name)
        try:
            existing = exact_matches(await find(), name)
        except RemoteCallFailed as exc:
            return report.add(
                UpsertResult(kind=kind, name=name, status=UpsertStatus.FAILED, detail=f"lookup: {exc}")
            )

        if existing:
            if len(existing) > 1:
                logger.warning("%s '%s' has %s exact matches; reusing the first", kind, name, len(existing))
            span.set_attribute("resource.status", UpsertStatus.REUSED.value)
            return report.add(
                UpsertResult(kind=kind, name=name, resource_id=existing[0].get("id"), status=UpsertStatus.REUSED)
            )

        try:
            created = await create()
        except RemoteCallFailed as exc:
            return report.add(
                UpsertResult(kind=kind, name=name, status=UpsertStatus.FAILED, detail=f"create: {exc}")
            )

        span.set_attribute("resource.status", UpsertStatus.CREATED.value)
        return report.add(
            UpsertResult(kind=kind, name=name, resource_id=created.get("id"), status=UpsertStatus.CREATED)
        )


def skipped(report: RunReport, kind: str, name: str, reason: str) -> UpsertResult:
    return report.add(UpsertResult(kind=kind, name=name, status=UpsertStatus.SKIPPED, detail=reason))


def failed(report: RunReport, kind: str, name: str, error: Exception) -> UpsertResult:
    return report.add(UpsertResult(kind=kind, name=name, status=UpsertStatus.FAILED, detail=str(error)))
