from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional

from staffledger.logging import get_logger
from staffledger.storage.errors import ConstraintViolation
from staffledger.storage.models import ROLE_EMPLOYEE, Principal, RevocationRecord


def _detached(principal: Principal) -> Principal:
    # Callers mutate what they get back; only save() writes through.
    return replace(principal, roles=set(principal.roles))


class MemoryStore:
    """In-process principal store persisted to a JSON state file."""

    def __init__(self, fs_root: str = "/tmp/staffledger") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "principals.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _find_live(self, email: str) -> Optional[Principal]:
        needle = (email or "").strip().lower()
        if not needle:
            return None
        return next(
            (
                p
                for p in self.principals.values()
                if not p.is_deleted and p.email.lower() == needle
            ),
            None,
        )

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        roles: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> Principal:
        with self._data_lock:
            if self._find_live(email):
                raise ConstraintViolation("email already exists", field="email")
            principal = Principal.new(
                email.strip(),
                password_hash,
                first_name=first_name,
                last_name=last_name,
                roles=set(roles) if roles else {ROLE_EMPLOYEE},
                is_active=is_active,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return _detached(principal)

    def find_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            found = self._find_live(email)
            return _detached(found) if found else None

    def find_with_roles(self, email: str) -> Optional[Principal]:
        # Roles live on the record here; the split only matters for SQL stores.
        return self.find_by_email(email)

    def get_principal(self, user_id: str) -> Optional[Principal]:
        with self._data_lock:
            found = self.principals.get(user_id)
            if not found or found.is_deleted:
                return None
            return _detached(found)

    def save(self, principal: Principal) -> Principal:
        with self._data_lock:
            if principal.id not in self.principals:
                raise ConstraintViolation(
                    "principal not found", {"user_id": principal.id}
                )
            stored = _detached(principal)
            self.principals[principal.id] = stored
            self._persist_state()
            return _detached(stored)

    def set_roles(self, user_id: str, roles: Iterable[str]) -> Optional[Principal]:
        with self._data_lock:
            found = self.principals.get(user_id)
            if not found:
                return None
            found.roles = set(roles)
            self._persist_state()
            return _detached(found)

    def delete_principal(self, user_id: str) -> bool:
        """Soft-delete; the record stays but lookups stop returning it."""
        with self._data_lock:
            found = self.principals.get(user_id)
            if not found or found.is_deleted:
                return False
            found.is_deleted = True
            self._persist_state()
            self.logger.info("principal_deleted", user_id=user_id)
            return True

    def _persist_state(self) -> None:
        state = {
            "principals": [
                self._serialize_principal(p) for p in self.principals.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p)
            for p in data.get("principals", [])
        }
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "email": principal.email,
            "password_hash": principal.password_hash,
            "first_name": principal.first_name,
            "last_name": principal.last_name,
            "is_active": principal.is_active,
            "is_deleted": principal.is_deleted,
            "failed_attempts": principal.failed_attempts,
            "last_failed_attempt": self._serialize_datetime(
                principal.last_failed_attempt
            ),
            "locked_until": self._serialize_datetime(principal.locked_until),
            "roles": sorted(principal.roles),
            "created_at": self._serialize_datetime(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            is_active=data.get("is_active", True),
            is_deleted=data.get("is_deleted", False),
            failed_attempts=int(data.get("failed_attempts", 0)),
            last_failed_attempt=self._deserialize_datetime(
                data.get("last_failed_attempt")
            ),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            roles=set(data.get("roles", [])),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.now(timezone.utc),
        )


class MemoryRevocationStore:
    """Revoked-token set kept in process memory.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV when Redis is not
    reachable. Entries are not shared across processes.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._records: Dict[str, RevocationRecord] = {}
        self._lock = threading.Lock()

    async def exists(self, token: str) -> bool:
        with self._lock:
            return token in self._records

    async def insert(self, token: str, expires_at: datetime) -> bool:
        with self._lock:
            if token in self._records:
                return False
            self._records[token] = RevocationRecord(token=token, expires_at=expires_at)
            return True

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [
                tok for tok, rec in self._records.items() if rec.expires_at <= cutoff
            ]
            for tok in expired:
                del self._records[tok]
        if expired:
            self.logger.info("revocations_pruned", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
