"""Access control middleware."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..config.models import AuthConfig
from ..dispatch.codec import Envelope
from ..errors import ForbiddenError, ProtocolError, UnauthorizedError
from .client_identifier import ClientIdentifier, ConnectionContext
from .permission_engine import PermissionEngine

logger = logging.getLogger(__name__)


@dataclass
class AuthDecision:
    allowed: bool
    error: Optional[ProtocolError] = None
    client_id: Optional[str] = None

    @classmethod
    def allow(cls, client_id: Optional[str] = None) -> "AuthDecision":
        return cls(allowed=True, client_id=client_id)

    @classmethod
    def deny(cls, error: ProtocolError, client_id: Optional[str] = None) -> "AuthDecision":
        return cls(allowed=False, error=error, client_id=client_id)


# Any callable with this shape can stand in for the middleware.
AuthHook = Callable[[ConnectionContext, Envelope], Awaitable[AuthDecision]]


class AccessControlMiddleware:
    """Pass/fail check applied to every request before it is forwarded."""

    def __init__(
        self,
        permission_engine: PermissionEngine,
        identifier: ClientIdentifier,
        allow_anonymous: bool = False,
    ):
        self.permission_engine = permission_engine
        self.identifier = identifier
        self.allow_anonymous = allow_anonymous

    @classmethod
    def from_config(cls, auth: AuthConfig) -> "AccessControlMiddleware":
        """Build the hook from the ``auth`` configuration section."""
        return cls(PermissionEngine(auth), ClientIdentifier(auth), auth.allow_anonymous)

    async def __call__(self, context: ConnectionContext, envelope: Envelope) -> AuthDecision:
        return await self.process_request(envelope, context)

    async def process_request(self, envelope: Envelope, context: ConnectionContext) -> AuthDecision:
        """Unidentified clients are unauthorized; denied requests are forbidden."""
        if not context.client_id:
            self.identifier.identify_client(context)

        client_id = context.client_id
        if client_id is None and not self.allow_anonymous:
            logger.info(f"Rejected unidentified client for {envelope.method}: {context!r}")
            return AuthDecision.deny(UnauthorizedError("Client could not be identified"))

        if not self.permission_engine.check_access(client_id, envelope.method, envelope.params):
            target = self.permission_engine.request_target(envelope.method, envelope.params)
            subject = f"{envelope.method} ({target[1]})" if target else envelope.method
            logger.info(f"Access denied for {client_id or 'anonymous'}: {subject}")
            return AuthDecision.deny(
                ForbiddenError(f"Access denied to {subject}", {"method": envelope.method}),
                client_id,
            )

        return AuthDecision.allow(client_id)
