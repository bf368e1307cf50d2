from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class EnvironmentTier(str, Enum):
    DEV = "dev"
    STG = "stg"
    PROD = "prod"


class GroupRole(str, Enum):
    READER = "Reader"
    CONTRIBUTOR = "Contributor"
    OWNER = "Owner"
    USERS = "Users"
    ADMINS = "Admins"


SUBSCRIPTION_ROLES = [GroupRole.READER, GroupRole.CONTRIBUTOR, GroupRole.OWNER]
VM_ROLES = [GroupRole.USERS, GroupRole.ADMINS]


class RoleGroup(BaseModel):
    name: str
    role: GroupRole
    resource_name: str
    tier: Optional[EnvironmentTier] = None
    privileged: bool = False
    role_definition_id: str
    group_id: Optional[str] = None


class MembershipType(str, Enum):
    MEMBER = "Member"
    ELIGIBLE_MEMBER = "EligibleMember"


class ApprovalStage(BaseModel):
    approver: str  # "manager" or "group"
    group_id: Optional[str] = None
    duration_days: int = 14


class AssignmentPolicySpec(BaseModel):
    display_name: str
    duration: str  # ISO 8601, e.g. P3M or PT8H
    approval_stages: List[ApprovalStage] = Field(default_factory=list)
    extensible: bool = True


class AccessPackageSpec(BaseModel):
    name: str
    role: GroupRole
    membership: MembershipType
    policies: List[AssignmentPolicySpec] = Field(default_factory=list)


class RoleAssignmentRecord(BaseModel):
    assignment_id: str
    name: str
    principal_id: str
    role_definition_id: str
    scope: str
    condition: Optional[str] = None


class EnrollmentPlatform(str, Enum):
    WINDOWS = "Windows"
    IOS = "iOS"
    MACOS = "macOS"


# Values accepted by conditions.platforms.includePlatforms
PLATFORM_CONDITION_VALUES = {
    EnrollmentPlatform.WINDOWS: "windows",
    EnrollmentPlatform.IOS: "iOS",
    EnrollmentPlatform.MACOS: "macOS",
}


class UpsertStatus(str, Enum):
    CREATED = "created"
    REUSED = "reused"
    UPDATED = "updated"
    FLAGGED = "flagged"
    FAILED = "failed"
    SKIPPED = "skipped"


class UpsertResult(BaseModel):
    kind: str
    name: str
    resource_id: Optional[str] = None
    status: UpsertStatus
    detail: str = ""
    recorded_at: datetime = Field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.status in (UpsertStatus.CREATED, UpsertStatus.REUSED, UpsertStatus.UPDATED)


class HRRecord(BaseModel):
    employee_id: str
    user_principal_name: Optional[str] = None
    given_name: str
    surname: str
    department: str = ""
    job_title: str = ""
    manager_upn: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None

    @property
    def display_name(self) -> str:
        return f"{self.given_name} {self.surname}".strip()


class EnrollmentRequest(BaseModel):
    user_principal_name: str
    platform: str
