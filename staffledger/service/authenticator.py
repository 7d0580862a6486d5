from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Optional, Union

from staffledger.logging import get_logger
from staffledger.service.auth import PrincipalStore, RevocationStore, is_locked
from staffledger.service.errors import (
    AuthenticationFailedError,
    ForbiddenError,
    ServiceError,
)
from staffledger.service.tokens import TokenService
from staffledger.storage.models import Principal

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    roles: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Anonymous:
    reason: str = "no_credentials"

    @property
    def is_authenticated(self) -> bool:
        return False


@dataclass(frozen=True)
class Authenticated:
    context: AuthContext

    @property
    def is_authenticated(self) -> bool:
        return True


AuthResult = Union[Anonymous, Authenticated]


@dataclass(frozen=True)
class AuthorizationView:
    roles: FrozenSet[str]
    enabled: bool
    locked: bool


def authorization_view(principal: Principal, now: datetime) -> AuthorizationView:
    """Derive the authorization-relevant facts about a principal."""
    return AuthorizationView(
        roles=frozenset(principal.roles),
        enabled=principal.is_active and not principal.is_deleted,
        locked=is_locked(principal, now),
    )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None


def require_role(result: AuthResult, *roles: str) -> AuthContext:
    """Return the context if it carries one of ``roles`` (any role when none given).

    Raises:
        AuthenticationFailedError: the request is anonymous
        ForbiddenError: authenticated without a matching role
    """
    if not isinstance(result, Authenticated):
        raise AuthenticationFailedError("authentication required")
    ctx = result.context
    if roles and not ctx.roles.intersection(roles):
        raise ForbiddenError("access denied", detail={"required_roles": sorted(roles)})
    return ctx


class RequestAuthenticator:
    """Turns an ``Authorization`` header into an authentication result.

    Every failure path yields ``Anonymous``; nothing is raised to the caller.
    """

    def __init__(
        self,
        store: PrincipalStore,
        revocations: RevocationStore,
        tokens: TokenService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.tokens = tokens
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def authenticate(
        self,
        authorization: Optional[str],
        current: Optional[AuthResult] = None,
    ) -> AuthResult:
        try:
            return await self._authenticate(authorization, current)
        except Exception as exc:
            logger.error(
                "request_authentication_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Anonymous("error")

    async def _authenticate(
        self, authorization: Optional[str], current: Optional[AuthResult]
    ) -> AuthResult:
        token = extract_bearer(authorization)
        if not token:
            return Anonymous("no_credentials")

        if await self.revocations.exists(token):
            logger.info("revoked_token_presented")
            return Anonymous("revoked")

        try:
            claims = self.tokens.verify(token)
        except ServiceError as exc:
            logger.info("token_rejected", reason=exc.message)
            return Anonymous("invalid_token")
        if not claims.subject:
            return Anonymous("invalid_token")

        if isinstance(current, Authenticated):
            return current

        if not self.tokens.is_valid(token):
            return Anonymous("expired")

        principal = self.store.find_with_roles(claims.subject)
        if not principal:
            logger.info("token_subject_unknown", email=claims.subject)
            return Anonymous("unknown_principal")
        view = authorization_view(principal, self._now())
        if not view.enabled:
            logger.info("token_subject_disabled", user_id=principal.id)
            return Anonymous("disabled")
        return Authenticated(
            AuthContext(user_id=principal.id, email=principal.email, roles=view.roles)
        )
