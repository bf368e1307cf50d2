import unittest

from identity_provisioner.config.settings import ABAC_DENYLISTED_ROLE_IDS, ROLE_DEFINITION_IDS
from identity_provisioner.models.provisioning import (
    EnrollmentPlatform,
    EnvironmentTier,
    GroupRole,
    MembershipType,
)
from identity_provisioner.workflows.abac import (
    build_owner_condition,
    has_required_condition,
    requires_condition,
)
from identity_provisioner.workflows.access_packages import (
    build_policy_payload,
    build_role_binding_payload,
    compose_package,
)
from identity_provisioner.workflows.mfa_rollout import REPORT_ONLY_STATE, build_ca_policy_payload


class OwnerConditionTests(unittest.TestCase):
    def test_condition_denies_all_four_roles_for_write_and_delete(self) -> None:
        condition = build_owner_condition()

        self.assertIn("ActionMatches{'Microsoft.Authorization/roleAssignments/write'}", condition)
        self.assertIn("ActionMatches{'Microsoft.Authorization/roleAssignments/delete'}", condition)
        self.assertIn("@Request[Microsoft.Authorization/roleAssignments:RoleDefinitionId]", condition)
        self.assertIn("@Resource[Microsoft.Authorization/roleAssignments:RoleDefinitionId]", condition)
        self.assertEqual(len(ABAC_DENYLISTED_ROLE_IDS), 4)
        for role_id in ABAC_DENYLISTED_ROLE_IDS:
            self.assertEqual(condition.count(role_id), 2)
        self.assertTrue(has_required_condition(condition))

    def test_partial_condition_is_not_accepted(self) -> None:
        partial = build_owner_condition(ABAC_DENYLISTED_ROLE_IDS[:3])

        self.assertFalse(has_required_condition(partial))
        self.assertFalse(has_required_condition(None))
        self.assertFalse(has_required_condition(""))

    def test_guids_outside_the_deny_clauses_are_not_accepted(self) -> None:
        condition = build_owner_condition()
        equals = condition.replace("GuidNotEquals", "GuidEquals")
        guids = ", ".join(ABAC_DENYLISTED_ROLE_IDS)
        write_only = condition.replace(
            f"@Resource[Microsoft.Authorization/roleAssignments:RoleDefinitionId] "
            f"ForAnyOfAnyValues:GuidNotEquals {{{guids}}}",
            "@Resource[Microsoft.Authorization/roleAssignments:RoleDefinitionId] "
            "ForAnyOfAnyValues:GuidNotEquals {00000000-0000-0000-0000-000000000000}",
        )
        trailing = equals + f"\n// GuidNotEquals {{{guids}}}"

        self.assertNotEqual(write_only, condition)
        self.assertFalse(has_required_condition(equals))
        self.assertFalse(has_required_condition(write_only))
        self.assertFalse(has_required_condition(trailing))

    def test_condition_check_ignores_case_and_layout(self) -> None:
        condition = " ".join(build_owner_condition().split()).upper()

        self.assertTrue(has_required_condition(condition))

    def test_condition_required_only_for_owner_at_subscription_scope(self) -> None:
        subscription = "/subscriptions/11111111-2222-3333-4444-555555555555"

        self.assertTrue(requires_condition(GroupRole.OWNER, subscription))
        self.assertFalse(requires_condition(GroupRole.OWNER, f"{subscription}/resourceGroups/rg-web"))
        self.assertFalse(requires_condition(GroupRole.CONTRIBUTOR, subscription))
        self.assertFalse(requires_condition(GroupRole.READER, subscription))

    def test_role_definition_ids_are_builtin(self) -> None:
        self.assertEqual(ROLE_DEFINITION_IDS["Owner"], "8e3af657-a8ff-443c-a75c-2fe8c4bcb635")
        self.assertIn(ROLE_DEFINITION_IDS["User Access Administrator"], ABAC_DENYLISTED_ROLE_IDS)


class AccessPackageCompositionTests(unittest.TestCase):
    EXPECTED = {
        (GroupRole.READER, EnvironmentTier.DEV): (MembershipType.MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.READER, EnvironmentTier.STG): (MembershipType.MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.READER, EnvironmentTier.PROD): (MembershipType.MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.CONTRIBUTOR, EnvironmentTier.DEV): (MembershipType.MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.CONTRIBUTOR, EnvironmentTier.STG): (MembershipType.MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.CONTRIBUTOR, EnvironmentTier.PROD): (MembershipType.ELIGIBLE_MEMBER, ["P1M", "P3M", "P6M"]),
        (GroupRole.OWNER, EnvironmentTier.DEV): (MembershipType.ELIGIBLE_MEMBER, ["PT8H"]),
        (GroupRole.OWNER, EnvironmentTier.STG): (MembershipType.ELIGIBLE_MEMBER, ["PT8H"]),
        (GroupRole.OWNER, EnvironmentTier.PROD): (MembershipType.ELIGIBLE_MEMBER, ["PT8H"]),
        (GroupRole.USERS, None): (MembershipType.MEMBER, ["P1M", "P6M", "P12M"]),
        (GroupRole.ADMINS, None): (MembershipType.MEMBER, ["P1M"]),
    }

    def test_every_role_and_tier_matches_table(self) -> None:
        for (role, tier), (membership, durations) in self.EXPECTED.items():
            with self.subTest(role=role, tier=tier):
                spec = compose_package("sub-work-01", role, tier)
                self.assertEqual(spec.membership, membership)
                self.assertEqual([p.duration for p in spec.policies], durations)

    def test_vm_admins_is_not_extensible(self) -> None:
        admins = compose_package("vm-webapp-01", GroupRole.ADMINS, vm_team_approver_group_id="vm-team")
        users = compose_package("vm-webapp-01", GroupRole.USERS, vm_team_approver_group_id="vm-team")

        self.assertEqual(len(admins.policies), 1)
        self.assertFalse(admins.policies[0].extensible)
        self.assertTrue(all(p.extensible for p in users.policies))

    def test_vm_packages_add_team_approval_stage(self) -> None:
        vm = compose_package("vm-webapp-01", GroupRole.USERS, vm_team_approver_group_id="vm-team")
        sub = compose_package("sub-work-dev-01", GroupRole.READER, EnvironmentTier.DEV)

        for policy in vm.policies:
            self.assertEqual([s.approver for s in policy.approval_stages], ["manager", "group"])
            self.assertEqual(policy.approval_stages[1].group_id, "vm-team")
        for policy in sub.policies:
            self.assertEqual([s.approver for s in policy.approval_stages], ["manager"])

    def test_policy_payload(self) -> None:
        spec = compose_package(
            "sub-work-prod-01",
            GroupRole.OWNER,
            EnvironmentTier.PROD,
            fallback_approver_group_id="fallback",
        )
        body = build_policy_payload(spec.policies[0], "package-1")

        self.assertEqual(body["displayName"], "AP-sub-work-prod-01-Owner - 8 hours")
        self.assertEqual(body["accessPackage"], {"id": "package-1"})
        self.assertEqual(body["expiration"], {"type": "afterDuration", "duration": "PT8H"})
        self.assertTrue(body["requestApprovalSettings"]["isApprovalRequiredForAdd"])
        stage = body["requestApprovalSettings"]["stages"][0]
        self.assertEqual(stage["primaryApprovers"][0]["@odata.type"], "#microsoft.graph.requestorManager")
        self.assertEqual(stage["fallbackPrimaryApprovers"][0]["groupId"], "fallback")

    def test_role_binding_payload_uses_membership_origin(self) -> None:
        eligible = build_role_binding_payload("group-1", "resource-1", MembershipType.ELIGIBLE_MEMBER)
        member = build_role_binding_payload("group-1", "resource-1", MembershipType.MEMBER)

        self.assertEqual(eligible["role"]["originId"], "EligibleMember_group-1")
        self.assertEqual(member["role"]["originId"], "Member_group-1")
        self.assertEqual(eligible["role"]["resource"]["id"], "resource-1")
        self.assertEqual(eligible["scope"]["originId"], "group-1")


class ConditionalAccessPayloadTests(unittest.TestCase):
    def test_policy_is_report_only(self) -> None:
        body = build_ca_policy_payload("CA - Windows", "group-1", EnrollmentPlatform.WINDOWS, "strength-1")

        self.assertEqual(body["state"], REPORT_ONLY_STATE)
        self.assertEqual(body["state"], "enabledForReportingButNotEnforced")
        self.assertEqual(body["conditions"]["users"]["includeGroups"], ["group-1"])
        self.assertEqual(body["conditions"]["platforms"]["includePlatforms"], ["windows"])
        self.assertEqual(body["grantControls"]["authenticationStrength"], {"id": "strength-1"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
