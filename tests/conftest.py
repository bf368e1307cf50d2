import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identity_provisioner.config.settings import Settings
from identity_provisioner.integrations.directory import MockDirectoryService
from identity_provisioner.integrations.rbac import MockRoleAssignmentService
from identity_provisioner.session import ProvisioningSession
from identity_provisioner.workflows.confirmation import StaticConfirmation

SUBSCRIPTION_ID = "11111111-2222-3333-4444-555555555555"
VM_SCOPE = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-web"
    "/providers/Microsoft.Compute/virtualMachines/vm-webapp-01"
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        directory_provider="mock",
        output_dir=str(tmp_path / "output"),
        fallback_approver_group_id="fallback-approvers",
        vm_team_approver_group_id="vm-team-approvers",
        user_domain="contoso.com",
        onboarding_window_days=14,
    )


@pytest.fixture
def directory():
    return MockDirectoryService()


@pytest.fixture
def role_assignments():
    return MockRoleAssignmentService()


@pytest.fixture
def session(settings, directory, role_assignments):
    return ProvisioningSession(
        settings=settings,
        directory=directory,
        role_assignments=role_assignments,
        confirmation=StaticConfirmation(False),
    )


@pytest.fixture
def new_session(settings, directory, role_assignments):
    """Fresh session (and report) over the same tenant, as a second command run would get."""

    def _build(answer: bool = False) -> ProvisioningSession:
        return ProvisioningSession(
            settings=settings,
            directory=directory,
            role_assignments=role_assignments,
            confirmation=StaticConfirmation(answer),
        )

    return _build


def group_id(directory: MockDirectoryService, name: str) -> str:
    matches = [gid for gid, group in directory.groups.items() if group["displayName"] == name]
    assert len(matches) == 1, f"expected one group named {name}, found {len(matches)}"
    return matches[0]
