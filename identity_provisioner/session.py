"""Explicit per-run context handed to every workflow operation."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config.settings import Settings, build_credential, get_settings
from .integrations.directory import DirectoryService, GraphDirectoryService, MockDirectoryService
from .integrations.permissions import ensure_permissions
from .integrations.rbac import AzureRoleAssignmentService, MockRoleAssignmentService, RoleAssignmentService
from .utils.reporting import RunReport
from .utils.telemetry import ProvisioningMetrics
from .workflows.confirmation import ConfirmationProvider, StaticConfirmation

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningSession:
    settings: Settings
    directory: DirectoryService
    role_assignments: RoleAssignmentService
    confirmation: ConfirmationProvider
    metrics: ProvisioningMetrics = field(default_factory=ProvisioningMetrics)
    report: Optional[RunReport] = None

    def __post_init__(self) -> None:
        if self.report is None:
            self.report = RunReport(self.settings.output_dir, self.metrics)

    def start(self, workflow: str) -> RunReport:
        """Begin a workflow: results recorded from here on are tagged with its name."""
        self.report.workflow = workflow
        logger.info("Starting %s workflow", workflow)
        return self.report

    async def require_permissions(self, workflow: str) -> None:
        granted = await self.directory.granted_permissions()
        ensure_permissions(granted, workflow)

    async def close(self) -> None:
        await self.role_assignments.close()
        await self.directory.close()


def build_session(
    settings: Optional[Settings] = None,
    confirmation: Optional[ConfirmationProvider] = None,
) -> ProvisioningSession:
    settings = settings or get_settings()
    confirmation = confirmation or StaticConfirmation(False)

    provider = settings.directory_provider.lower()
    if provider == "azure":
        credential = build_credential(settings)
        directory: DirectoryService = GraphDirectoryService(credential)
        role_assignments: RoleAssignmentService = AzureRoleAssignmentService(credential)
        logger.info("Using Microsoft Graph and Azure Resource Manager")
    else:
        if provider != "mock":
            logger.warning("Unknown DIRECTORY_PROVIDER '%s'; defaulting to mock", provider)
        directory = MockDirectoryService()
        role_assignments = MockRoleAssignmentService()
        logger.info("Using in-memory mock directory")

    return ProvisioningSession(
        settings=settings,
        directory=directory,
        role_assignments=role_assignments,
        confirmation=confirmation,
    )
