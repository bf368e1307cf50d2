from typing import Dict, Set

from ..errors import UnrecognizedEnvironment
from ..models.provisioning import EnvironmentTier

# Naming convention: "<kind>-<workload>-<tier>-<nn>", e.g. "sub-work-prod-01".
TIER_TOKENS: Dict[str, EnvironmentTier] = {
    "dev": EnvironmentTier.DEV,
    "stg": EnvironmentTier.STG,
    "prod": EnvironmentTier.PROD,
}


def classify_environment(resource_name: str) -> EnvironmentTier:
    """Return the tier encoded in a resource name.

    A token matches when it is delimited by dashes (``-prod-``) or ends the name
    (``-prod``). Names without a token, or with tokens of more than one tier,
    raise UnrecognizedEnvironment; there is no default tier.
    """
    name = (resource_name or "").strip().lower()
    if not name:
        raise UnrecognizedEnvironment(resource_name, "empty resource name")

    matched: Set[EnvironmentTier] = set()
    for token, tier in TIER_TOKENS.items():
        if f"-{token}-" in name or name.endswith(f"-{token}"):
            matched.add(tier)

    if not matched:
        raise UnrecognizedEnvironment(resource_name)
    if len(matched) > 1:
        tiers = ", ".join(sorted(t.value for t in matched))
        raise UnrecognizedEnvironment(resource_name, f"ambiguous environment tokens ({tiers})")
    return matched.pop()
