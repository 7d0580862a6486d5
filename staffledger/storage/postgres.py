from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from staffledger.logging import get_logger
from staffledger.storage.errors import ConstraintViolation
from staffledger.storage.models import KNOWN_ROLES, ROLE_EMPLOYEE, Principal

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS um_users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_attempt TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS um_users_live_email_idx
        ON um_users (lower(email)) WHERE NOT is_deleted
    """,
    """
    CREATE TABLE IF NOT EXISTS um_roles (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS um_user_roles (
        user_id UUID NOT NULL REFERENCES um_users(id),
        role_id INTEGER NOT NULL REFERENCES um_roles(id),
        PRIMARY KEY (user_id, role_id)
    )
    """,
)

_SELECT_WITH_ROLES = """
    SELECT u.*,
           COALESCE(
               array_agg(r.name) FILTER (WHERE r.name IS NOT NULL),
               ARRAY[]::TEXT[]
           ) AS roles
    FROM um_users u
    LEFT JOIN um_user_roles ur ON ur.user_id = u.id
    LEFT JOIN um_roles r ON r.id = ur.role_id
    WHERE {where}
    GROUP BY u.id
"""


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Principal store backed by the ``um_users``/``um_roles`` tables."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the principal tables and seed role names if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
            for role in sorted(KNOWN_ROLES):
                conn.execute(
                    "INSERT INTO um_roles (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (role,),
                )

    def _verify_required_schema(self) -> None:
        required_tables = ["um_users", "um_roles", "um_user_roles"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_principal(row: dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            is_active=bool(row.get("is_active", True)),
            is_deleted=bool(row.get("is_deleted", False)),
            failed_attempts=int(row.get("failed_attempts") or 0),
            last_failed_attempt=_aware(row.get("last_failed_attempt")),
            locked_until=_aware(row.get("locked_until")),
            roles=set(row.get("roles") or []),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
        )

    def find_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM um_users WHERE lower(email) = lower(%s) AND NOT is_deleted",
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_principal(row)

    def find_with_roles(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                _SELECT_WITH_ROLES.format(
                    where="lower(u.email) = lower(%s) AND NOT u.is_deleted"
                ),
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_principal(row)

    def get_principal(self, user_id: str) -> Optional[Principal]:
        # um_users.id is a UUID column; anything else cannot match.
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                _SELECT_WITH_ROLES.format(where="u.id = %s AND NOT u.is_deleted"),
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_principal(row)

    def save(self, principal: Principal) -> Principal:
        """Write account and lockout columns back; roles are managed separately."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE um_users
                SET email = %s,
                    password_hash = %s,
                    first_name = %s,
                    last_name = %s,
                    is_active = %s,
                    is_deleted = %s,
                    failed_attempts = %s,
                    last_failed_attempt = %s,
                    locked_until = %s
                WHERE id = %s
                """,
                (
                    principal.email,
                    principal.password_hash,
                    principal.first_name,
                    principal.last_name,
                    principal.is_active,
                    principal.is_deleted,
                    principal.failed_attempts,
                    principal.last_failed_attempt,
                    principal.locked_until,
                    principal.id,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "principal not found", {"user_id": principal.id}
                )
        return principal

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
        role_names = set(roles) if roles else {ROLE_EMPLOYEE}
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO um_users (id, email, password_hash, first_name, last_name, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user_id, email.strip(), password_hash, first_name, last_name, is_active),
                )
                self._link_roles(conn, user_id, role_names)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown role", {"roles": sorted(role_names)})
        created = self.get_principal(user_id)
        if not created:
            raise RuntimeError("principal vanished after insert")
        return created

    def set_roles(self, user_id: str, roles: Iterable[str]) -> Optional[Principal]:
        with self._connect() as conn:
            conn.execute("DELETE FROM um_user_roles WHERE user_id = %s", (user_id,))
            self._link_roles(conn, user_id, set(roles))
        return self.get_principal(user_id)

    @staticmethod
    def _link_roles(conn, user_id: str, role_names: set[str]) -> None:
        for name in sorted(role_names):
            row = conn.execute(
                "SELECT id FROM um_roles WHERE name = %s", (name,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("unknown role", {"role": name})
            conn.execute(
                """
                INSERT INTO um_user_roles (user_id, role_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                """,
                (user_id, row["id"]),
            )

    def close(self) -> None:
        self.pool.close()
