"""Client identification system."""

import fnmatch
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config.models import AuthConfig

logger = logging.getLogger(__name__)


class ConnectionContext:
    """Context information about an inbound connection."""

    def __init__(
        self,
        remote_address: str = "",
        headers: Optional[Dict[str, str]] = None,
        client_info: Optional[Dict[str, Any]] = None,
        transport_type: str = "loopback",
    ):
        self.remote_address = remote_address
        self.headers: Dict[str, str] = dict(headers or {})
        self.client_info: Dict[str, Any] = dict(client_info or {})
        self.transport_type = transport_type
        self.timestamp: datetime = datetime.now()
        self.client_id: Optional[str] = None  # Set by identifier

    def __repr__(self) -> str:
        return f"ConnectionContext(client_id={self.client_id!r}, remote_address={self.remote_address!r})"


class ClientIdentifier:
    """Identifies clients based on connection context."""

    def __init__(self, auth: AuthConfig):
        self.client_rules = auth.clients

    def identify_client(self, context: ConnectionContext) -> Optional[str]:
        """Return the first client id whose rule matches, or None."""
        for client_id, rule in self.client_rules.items():
            if rule.identify_by and self._matches_rule(context, rule.identify_by):
                logger.debug(f"Client identified as: {client_id}")
                context.client_id = client_id
                return client_id

        logger.debug(f"Client not identified: {context!r}")
        return None

    def _matches_rule(self, context: ConnectionContext, conditions: List[Dict[str, str]]) -> bool:
        for condition in conditions:
            for key, expected_value in condition.items():
                actual_value = self._extract_context_value(context, key)
                if not self._matches_value(actual_value, str(expected_value)):
                    return False
        return True

    def _matches_value(self, actual: str, expected: str) -> bool:
        if "*" in expected or "?" in expected:
            return fnmatch.fnmatchcase(actual, expected)
        return actual == expected

    def _extract_context_value(self, context: ConnectionContext, key: str) -> str:
        """Extract value from connection context based on key path."""
        if key.startswith("client_info."):
            return str(context.client_info.get(key[len("client_info."):], ""))
        if key in ("connection_source", "transport_type"):
            return context.transport_type
        if key == "user_agent":
            return context.headers.get("User-Agent", "")
        if key == "remote_address":
            return context.remote_address
        if key.startswith("header."):
            return context.headers.get(key[len("header."):], "")

        logger.debug(f"Unknown context key: {key}")
        return ""
