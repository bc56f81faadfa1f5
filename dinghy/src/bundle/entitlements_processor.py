from typing import Dict
import copy

from dinghy.src.utils.plist import OrderPreservingDict

# Entitlements an installed test binary needs to launch and be debugged.
# Everything else in a profile (push, iCloud, app groups...) is left out.
EXECUTION_ENTITLEMENTS = (
    "application-identifier",
    "com.apple.developer.team-identifier",
    "get-task-allow",
    "keychain-access-groups",
)


class EntitlementsProcessor:
    """Derive the entitlements to sign with from a profile's entitlements"""

    def __init__(self, team_identifier: str, application_identifier: str):
        self.team_identifier = team_identifier
        self.application_identifier = application_identifier

    def process_entitlements(self, entitlements: Dict) -> OrderPreservingDict:
        """Keep execution keys in profile order; values are copied, not converted"""
        result = OrderPreservingDict()
        for key, value in entitlements.items():
            if key not in EXECUTION_ENTITLEMENTS:
                continue
            result[key] = copy.deepcopy(value)

        # A wildcard profile grants TEAM.*; the signed bundle needs its concrete id
        app_id = result.get("application-identifier")
        if isinstance(app_id, str) and app_id.endswith("*"):
            result["application-identifier"] = f"{self.team_identifier}.{self.application_identifier}"

        return result
