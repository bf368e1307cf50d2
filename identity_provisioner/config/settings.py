import logging
from typing import Dict, List, Literal, Optional, Union

from azure.identity.aio import (
    AzureCliCredential,
    ClientSecretCredential,
    ManagedIdentityCredential,
)
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    framework_env: Literal["development", "staging", "production"] = Field(default="development")

    directory_provider: str = Field(default="mock", description="Directory backend (mock, azure)")

    azure_tenant_id: str = Field(default="", description="Azure tenant ID for Graph access")
    azure_subscription_id: str = Field(default="", description="Default subscription for RBAC scope")
    azure_auth_mode: Literal["azure_cli", "managed_identity", "client_secret"] = Field(default="azure_cli")
    azure_client_id: str = Field(default="", description="App registration or managed identity client ID")
    azure_client_secret: str = Field(default="", description="Client secret for client_secret auth mode")

    output_dir: str = Field(default="output", description="Directory for CSV mapping and findings logs")

    group_prefix: str = Field(default="RBAC", description="Prefix for RBAC role group names")
    access_package_prefix: str = Field(default="AP", description="Prefix for access package names")
    access_package_catalog: str = Field(default="Azure RBAC", description="Entitlement management catalog")
    fallback_approver_group_id: str = Field(default="", description="Approvers used when a requestor has no manager")
    vm_team_approver_group_id: str = Field(default="", description="Second-stage approvers for VM packages")

    authentication_strength_name: str = Field(default="Phishing-resistant MFA")
    enrollment_group_prefix: str = Field(default="MFA-PhishingResistant")
    ca_policy_prefix: str = Field(default="CA-PhishingResistant")

    user_domain: str = Field(default="", description="UPN suffix for users created from HR records")
    usage_location: str = Field(default="US")
    onboarding_window_days: int = Field(default=14, description="Days ahead of a start date to create a joiner")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


_settings_instance = None

logger = logging.getLogger(__name__)


# Built-in Azure role definitions (GUIDs are identical in every tenant).
ROLE_DEFINITION_IDS: Dict[str, str] = {
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Role Based Access Control Administrator": "f58310d9-a9f6-439a-9e8d-f62e7b41a168",
    "Virtual Machine User Login": "fb879df8-f326-4884-b1cf-06f3ad86be52",
    "Virtual Machine Administrator Login": "1c0163c0-47e6-4577-8991-ea5c82e286e4",
}

# Roles an Owner group may never assign or remove.
ABAC_DENYLISTED_ROLE_IDS: List[str] = [
    ROLE_DEFINITION_IDS["Owner"],
    ROLE_DEFINITION_IDS["Contributor"],
    ROLE_DEFINITION_IDS["User Access Administrator"],
    ROLE_DEFINITION_IDS["Role Based Access Control Administrator"],
]

REQUIRED_GRAPH_PERMISSIONS: Dict[str, List[str]] = {
    "rbac": [
        "Group.ReadWrite.All",
        "EntitlementManagement.ReadWrite.All",
        "PrivilegedAccess.ReadWrite.AzureADGroup",
    ],
    "mfa": [
        "Group.ReadWrite.All",
        "Policy.Read.All",
        "Policy.ReadWrite.ConditionalAccess",
    ],
    "mfa_import": [
        "User.Read.All",
        "GroupMember.ReadWrite.All",
    ],
    "passkeys": [
        "Policy.ReadWrite.AuthenticationMethod",
    ],
    "hr": [
        "User.ReadWrite.All",
        "GroupMember.ReadWrite.All",
    ],
}


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def build_credential(
    settings: Optional[Settings] = None,
) -> Union[AzureCliCredential, ManagedIdentityCredential, ClientSecretCredential]:
    """Pick the azure-identity credential matching the configured auth mode."""
    settings = settings or get_settings()
    auth_mode = settings.azure_auth_mode

    if auth_mode == "managed_identity":
        credential = ManagedIdentityCredential(client_id=settings.azure_client_id or None)
        logger.info("Initialized ManagedIdentityCredential")
    elif auth_mode == "client_secret":
        credential = ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )
        logger.info("Initialized ClientSecretCredential for app %s", settings.azure_client_id)
    else:
        credential = AzureCliCredential(tenant_id=settings.azure_tenant_id or None)
        logger.info("Initialized AzureCliCredential")

    return credential
