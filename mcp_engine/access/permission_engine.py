"""Permission and access control engine."""

import fnmatch
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..config.models import AccessRule, AuthConfig, ClientRule

logger = logging.getLogger(__name__)

# Parameters naming the entry a request targets, per namespace
_TARGET_PARAMS = {
    "tools": ("name", "id"),
    "resources": ("uri", "id"),
}


class PermissionEngine:
    """Evaluates allow/deny rules for identified clients.

    Deny rules win over allow rules. A rule only constrains the dimensions
    it names: ``methods`` matches the method, ``tools`` and ``resources``
    match the entry a ``tools/*`` or ``resources/*`` request targets.
    """

    def __init__(self, auth: AuthConfig):
        self.auth = auth
        self.client_rules = auth.clients

    def check_access(self, client_id: Optional[str], method: str, params: Mapping[str, Any]) -> bool:
        """Check if a client may call ``method`` with these params."""
        rule = self._rule_for(client_id)
        if rule is None:
            # Only anonymous clients reach here without a rule.
            return self.auth.allow_anonymous

        target = self.request_target(method, params)

        for deny_rule in rule.deny:
            if self._matches_access_rule(deny_rule, method, target):
                logger.debug(f"Access denied by explicit rule: {client_id} -> {method}")
                return False

        for allow_rule in rule.allow:
            if self._matches_access_rule(allow_rule, method, target):
                logger.debug(f"Access allowed by explicit rule: {client_id} -> {method}")
                return True

        if rule.deny_all_except_allowed:
            logger.debug(f"Access denied by default policy: {client_id} -> {method}")
            return False
        return True

    def check_tool_access(self, client_id: Optional[str], tool_name: str) -> bool:
        """Check if a client may call a specific tool."""
        return self.check_access(client_id, "tools/call", {"name": tool_name})

    def check_resource_access(self, client_id: Optional[str], resource_uri: str) -> bool:
        """Check if a client may read a specific resource."""
        return self.check_access(client_id, "resources/read", {"uri": resource_uri})

    @staticmethod
    def request_target(method: str, params: Mapping[str, Any]) -> Optional[Tuple[str, str]]:
        """(namespace, key) of the entry a request targets, if any."""
        namespace = method.split("/", 1)[0]
        for name in _TARGET_PARAMS.get(namespace, ()):
            value = params.get(name)
            if isinstance(value, str):
                return namespace, value
        return None

    def _rule_for(self, client_id: Optional[str]) -> Optional[ClientRule]:
        rule = self.client_rules.get(client_id) if client_id else None
        if rule is None:
            rule = self.client_rules.get("default")
        return rule

    def _matches_access_rule(
        self, rule: AccessRule, method: str, target: Optional[Tuple[str, str]]
    ) -> bool:
        if rule.methods is not None and not self._wildcard_match(method, rule.methods):
            return False

        if rule.tools is None and rule.resources is None:
            return True
        if target is None:
            return False

        namespace, key = target
        items = rule.tools if namespace == "tools" else rule.resources
        if items is None:
            return False
        return self._wildcard_match(key, items)

    def _wildcard_match(self, item_name: str, patterns: List[str]) -> bool:
        return any(fnmatch.fnmatchcase(item_name, pattern) for pattern in patterns)

    def get_client_permissions(self, client_id: str) -> Dict:
        """Get permission summary for a client."""
        rule = self.client_rules.get(client_id)
        if not rule:
            return {"error": "Client not found"}

        return {
            "client_id": client_id,
            "identify_by": rule.identify_by,
            "allow_rules": [r.model_dump() for r in rule.allow],
            "deny_rules": [r.model_dump() for r in rule.deny],
            "deny_all_except_allowed": rule.deny_all_except_allowed,
        }
