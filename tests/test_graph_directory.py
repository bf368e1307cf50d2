import asyncio
from types import SimpleNamespace

from azure.core.exceptions import ClientAuthenticationError

from identity_provisioner.config.settings import ROLE_DEFINITION_IDS
from identity_provisioner.integrations.directory import GraphDirectoryService
from identity_provisioner.integrations.rbac import MockRoleAssignmentService
from identity_provisioner.models.provisioning import GroupRole, RoleGroup, UpsertStatus
from identity_provisioner.session import ProvisioningSession
from identity_provisioner.workflows.confirmation import StaticConfirmation
from identity_provisioner.workflows.pim import register_for_pim


class ExpiredCredential:
    async def get_token(self, *scopes):
        raise ClientAuthenticationError("token expired")

    async def close(self):
        pass


class FakeMethodConfiguration:
    def __init__(self, configuration):
        self.configuration = configuration

    async def get(self):
        return self.configuration


class FakeGraphClient:
    """Only the FIDO2 method configuration path of GraphServiceClient."""

    def __init__(self, configuration):
        configurations = SimpleNamespace(
            by_authentication_method_configuration_id=lambda method_id: FakeMethodConfiguration(configuration)
        )
        self.policies = SimpleNamespace(
            authentication_methods_policy=SimpleNamespace(authentication_method_configurations=configurations)
        )


def test_token_failure_during_pim_registration_is_reported(settings):
    directory = GraphDirectoryService(ExpiredCredential(), client=object())
    session = ProvisioningSession(
        settings=settings,
        directory=directory,
        role_assignments=MockRoleAssignmentService(),
        confirmation=StaticConfirmation(False),
    )
    session.start("rbac")
    group = RoleGroup(
        name="RBAC-sub-work-prod-01-Owner",
        role=GroupRole.OWNER,
        resource_name="sub-work-prod-01",
        privileged=True,
        role_definition_id=ROLE_DEFINITION_IDS["Owner"],
        group_id="owner-group",
    )

    result = asyncio.run(register_for_pim(session, group))

    assert result.status == UpsertStatus.FAILED
    assert "token expired" in result.detail
    assert session.report.failed == [result]


def test_fido2_targets_keep_registration_requirement():
    configuration = SimpleNamespace(
        id="Fido2",
        state=SimpleNamespace(value="enabled"),
        include_targets=[
            SimpleNamespace(id="g-existing", target_type=SimpleNamespace(value="group"), is_registration_required=True),
            SimpleNamespace(id="g-optional", target_type=None, is_registration_required=None),
        ],
    )
    directory = GraphDirectoryService(ExpiredCredential(), client=FakeGraphClient(configuration))

    data = asyncio.run(directory.get_authentication_method_configuration("fido2"))

    assert data["state"] == "enabled"
    assert data["includeTargets"] == [
        {"id": "g-existing", "targetType": "group", "isRegistrationRequired": True},
        {"id": "g-optional", "targetType": "group", "isRegistrationRequired": False},
    ]
