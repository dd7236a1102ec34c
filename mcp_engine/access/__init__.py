"""Access control: the authentication hook applied by the proxy."""

from .client_identifier import ClientIdentifier, ConnectionContext
from .middleware import AccessControlMiddleware, AuthDecision, AuthHook
from .permission_engine import PermissionEngine

__all__ = [
    "ClientIdentifier",
    "ConnectionContext",
    "PermissionEngine",
    "AccessControlMiddleware",
    "AuthDecision",
    "AuthHook",
]
