from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from staffledger.config import Settings
from staffledger.logging import get_logger
from staffledger.service.errors import (
    AuthenticationFailedError,
    AuthenticationLockedError,
    NotFoundError,
    ValidationError,
)
from staffledger.service.tokens import TokenService
from staffledger.storage.models import Principal, PrincipalSummary

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
ACCOUNT_DISABLED = "account disabled"


class PrincipalStore(Protocol):
    def find_by_email(self, email: str) -> Optional[Principal]: ...

    def find_with_roles(self, email: str) -> Optional[Principal]: ...

    def get_principal(self, user_id: str) -> Optional[Principal]: ...

    def save(self, principal: Principal) -> Principal: ...


class RevocationStore(Protocol):
    async def exists(self, token: str) -> bool: ...

    async def insert(self, token: str, expires_at: datetime) -> bool: ...

    async def prune_expired(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(hours=24)
    failure_window: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
            failure_window=timedelta(minutes=settings.failure_window_minutes),
        )


def is_locked(principal: Principal, now: datetime) -> bool:
    return principal.locked_until is not None and principal.locked_until > now


def register_failed_attempt(
    principal: Principal, now: datetime, policy: LockoutPolicy
) -> Principal:
    """Return ``principal`` with one more failure recorded.

    The count restarts at 1 when there is no earlier failure or the last one
    is at least ``policy.failure_window`` old. Reaching ``policy.threshold``
    locks the account for ``policy.duration`` from ``now``.
    """
    last = principal.last_failed_attempt
    if last is None or now - last >= policy.failure_window:
        attempts = 1
    else:
        attempts = principal.failed_attempts + 1
    locked_until = principal.locked_until
    if attempts >= policy.threshold:
        locked_until = now + policy.duration
    return replace(
        principal,
        failed_attempts=attempts,
        last_failed_attempt=now,
        locked_until=locked_until,
    )


def clear_failed_attempts(principal: Principal) -> Principal:
    return replace(
        principal, failed_attempts=0, last_failed_attempt=None, locked_until=None
    )


@dataclass
class LoginResult:
    token: str
    principal: PrincipalSummary


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


class AuthService:
    """Password login with progressive lockout, logout by token revocation.

    Lockout bookkeeping is read-modify-write against the principal store with
    no row locking: two concurrent failures for one account can both read the
    same count and one increment is lost. The lock still engages, one attempt
    later than the threshold at worst.
    """

    def __init__(
        self,
        store: PrincipalStore,
        revocations: RevocationStore,
        tokens: TokenService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.tokens = tokens
        self.settings = settings
        self.policy = LockoutPolicy.from_settings(settings)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, principal: Principal, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=principal.id)
            return False

    async def login(self, email: str, password: str) -> LoginResult:
        """Check credentials and issue a bearer token.

        Raises:
            ValidationError: blank email or password
            NotFoundError: no live principal with that email
            AuthenticationLockedError: account locked, nothing mutated
            AuthenticationFailedError: wrong password or disabled account
        """
        if _blank(email) or _blank(password):
            raise ValidationError("email and password are required")

        principal = self.store.find_by_email(email.strip())
        if not principal:
            self.logger.info("login_unknown_email", email=email)
            raise NotFoundError("user not found")

        now = self._now()
        if principal.locked_until is not None:
            if is_locked(principal, now):
                self.logger.warning(
                    "login_rejected_locked",
                    user_id=principal.id,
                    locked_until=principal.locked_until.isoformat(),
                )
                raise AuthenticationLockedError(principal.locked_until)
            self.logger.info("account_lock_expired", user_id=principal.id)

        if not self.verify_password(principal, password):
            updated = register_failed_attempt(principal, now, self.policy)
            self.store.save(updated)
            if is_locked(updated, now):
                self.logger.warning(
                    "account_locked",
                    user_id=updated.id,
                    failed_attempts=updated.failed_attempts,
                    locked_until=updated.locked_until.isoformat(),
                )
            else:
                self.logger.info(
                    "login_failed",
                    user_id=updated.id,
                    failed_attempts=updated.failed_attempts,
                )
            raise AuthenticationFailedError(INVALID_CREDENTIALS)

        if principal.failed_attempts > 0:
            principal = clear_failed_attempts(principal)
            self.store.save(principal)
            self.logger.info("failed_attempts_reset", user_id=principal.id)

        if not principal.is_active:
            self.logger.warning("login_rejected_disabled", user_id=principal.id)
            raise AuthenticationFailedError(ACCOUNT_DISABLED)

        token = self.tokens.issue(principal.email)
        self.logger.info("login_succeeded", user_id=principal.id)
        return LoginResult(
            token=token, principal=PrincipalSummary.from_principal(principal)
        )

    async def logout(self, token: str) -> None:
        """Revoke ``token`` until it expires. Revoking twice is a no-op.

        Raises:
            ValidationError: blank token
            AuthenticationFailedError: token malformed, forged or expired
        """
        if _blank(token):
            raise ValidationError("token is required")
        if not self.tokens.is_valid(token):
            raise AuthenticationFailedError("invalid or expired token")
        if await self.revocations.exists(token):
            self.logger.info("token_already_revoked")
            return
        expires_at = self.tokens.expiry_of(token)
        inserted = await self.revocations.insert(token, expires_at)
        self.logger.info(
            "token_revoked", expires_at=expires_at.isoformat(), inserted=inserted
        )

    async def change_password(
        self, email: str, old_password: str, new_password: str
    ) -> None:
        """Replace the password of the principal identified by ``email``."""
        if _blank(old_password) or _blank(new_password):
            raise ValidationError("old and new passwords are required")
        principal = self.store.find_by_email(email)
        if not principal:
            raise NotFoundError("user not found")
        if not self.verify_password(principal, old_password):
            self.logger.info("password_change_rejected", user_id=principal.id)
            raise ValidationError("Old password is incorrect")
        self.store.save(replace(principal, password_hash=self.hash_password(new_password)))
        self.logger.info("password_changed", user_id=principal.id)

    async def reset_password(self, user_id: str, new_password: str) -> None:
        """Admin reset; lockout state is left untouched."""
        if _blank(user_id) or _blank(new_password):
            raise ValidationError("user id and new password are required")
        principal = self.store.get_principal(user_id)
        if not principal:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.store.save(replace(principal, password_hash=self.hash_password(new_password)))
        self.logger.info("password_reset_by_admin", user_id=user_id)
