"""
IdentityProvisioner
Administrative automation for Microsoft Entra ID and Azure RBAC

Workflows:
- RBAC group, PIM and access-package provisioning for subscriptions and VMs
- Phishing-resistant MFA rollout (enrollment groups, Conditional Access, passkeys)
- HR-driven joiner / mover / leaver sync
"""

__version__ = "0.1.0"
__author__ = "Identity Platform Team"
