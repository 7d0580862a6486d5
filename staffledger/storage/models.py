from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Set

ROLE_EMPLOYEE = "EMPLOYEE"
ROLE_FINANCE_ADMIN = "FINANCE_ADMIN"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"

KNOWN_ROLES = frozenset({ROLE_EMPLOYEE, ROLE_FINANCE_ADMIN, ROLE_SUPER_ADMIN})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_deleted: bool = False
    failed_attempts: int = 0
    last_failed_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    roles: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[Set[str]] = None,
        is_active: bool = True,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
            roles=set(roles or {ROLE_EMPLOYEE}),
        )

    @property
    def display_name(self) -> str:
        return f"{self.first_name}{self.last_name}"


@dataclass
class PrincipalSummary:
    id: str
    name: str
    email: str
    is_active: bool

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalSummary":
        return cls(
            id=principal.id,
            name=principal.display_name,
            email=principal.email,
            is_active=principal.is_active,
        )


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RevocationRecord:
    token: str
    expires_at: datetime
