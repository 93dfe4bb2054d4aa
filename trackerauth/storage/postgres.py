from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from trackerauth.logging import get_logger
from trackerauth.storage.errors import ConstraintViolation, StoreError
from trackerauth.storage.models import (
    LockoutState,
    PasswordResetToken,
    RefreshToken,
    User,
    normalize_email,
    utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "app_role",
    "user_role",
    "refresh_token",
    "password_reset_token",
)


class PostgresStore:
    """Credential and refresh token store backed by Postgres.

    Every public method runs in one transaction. Lockout transitions and token
    rotation lock the affected rows with ``SELECT ... FOR UPDATE`` before
    writing. Driver errors surface as ``StoreError``; unique violations as
    ``ConstraintViolation``.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"operation": operation, "constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(str(exc), operation=operation) from exc

    def _verify_required_schema(self) -> None:
        """Refuse to start when the auth tables have not been migrated."""

        with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required auth tables: " + ", ".join(missing_tables)
            )

    @staticmethod
    def _user_from_row(row: Dict[str, Any], roles: Optional[List[str]] = None) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            roles=list(roles or []),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            created_by_ip=row.get("created_by_ip") or "127.0.0.1",
            revoked_at=row.get("revoked_at"),
            revoked_by_ip=row.get("revoked_by_ip"),
            reason_revoked=row.get("reason_revoked"),
            replaced_by_token=(
                str(row["replaced_by_token"]) if row.get("replaced_by_token") else None
            ),
        )

    @staticmethod
    def _roles_for(conn, user_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT role_name FROM user_role WHERE user_id = %s ORDER BY assigned_at, role_name",
            (user_id,),
        ).fetchall()
        return [r["role_name"] for r in rows]

    # users

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        user_id = str(uuid.uuid4())
        created_at = utcnow()
        with self._connect("create_user") as conn:
            conn.execute(
                """
                INSERT INTO app_user (id, email, normalized_email, first_name, last_name, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (user_id, email.strip(), normalize_email(email), first_name, last_name, created_at),
            )
        return User(
            id=user_id,
            email=email.strip(),
            first_name=first_name,
            last_name=last_name,
            created_at=created_at,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE normalized_email = %s",
                (normalize_email(email),),
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._roles_for(conn, str(row["id"])))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._roles_for(conn, user_id))

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect("list_users") as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
            return [self._user_from_row(r, self._roles_for(conn, str(r["id"]))) for r in rows]

    def delete_user(self, user_id: str) -> bool:
        with self._connect("delete_user") as conn:
            conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # credentials

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect("save_password") as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, password_updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row.get("password_algo") or "")

    # roles

    def create_role(self, role: str) -> None:
        with self._connect("create_role") as conn:
            conn.execute(
                "INSERT INTO app_role (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                (role,),
            )

    def role_exists(self, role: str) -> bool:
        with self._connect("role_exists") as conn:
            row = conn.execute("SELECT 1 AS found FROM app_role WHERE name = %s", (role,)).fetchone()
        return bool(row)

    def add_user_to_role(self, user_id: str, role: str) -> None:
        with self._connect("add_user_to_role") as conn:
            if not conn.execute("SELECT 1 AS found FROM app_role WHERE name = %s", (role,)).fetchone():
                raise ConstraintViolation("role not found", {"role": role})
            try:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_name, assigned_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id, role_name) DO NOTHING
                    """,
                    (user_id, role),
                )
            except errors.ForeignKeyViolation as exc:
                raise ConstraintViolation("user not found", {"user_id": user_id}) from exc

    def get_roles(self, user_id: str) -> List[str]:
        with self._connect("get_roles") as conn:
            return self._roles_for(conn, user_id)

    # account lockout

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> LockoutState:
        return LockoutState(
            failed_count=int(row.get("access_failed_count") or 0),
            lockout_end=row.get("lockout_end"),
            last_reset_at=row.get("access_reset_at"),
        )

    def get_lockout_state(self, user_id: str) -> LockoutState:
        with self._connect("get_lockout_state") as conn:
            row = conn.execute(
                "SELECT access_failed_count, lockout_end, access_reset_at FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._lockout_from_row(row) if row else LockoutState()

    def update_lockout_state(
        self, user_id: str, transition: Callable[[LockoutState], LockoutState]
    ) -> LockoutState:
        with self._connect("update_lockout_state") as conn:
            row = conn.execute(
                """
                SELECT access_failed_count, lockout_end, access_reset_at
                FROM app_user WHERE id = %s FOR UPDATE
                """,
                (user_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            updated = transition(self._lockout_from_row(row))
            if updated.failed_count < 0:
                raise ValueError("failed_count cannot be negative")
            conn.execute(
                """
                UPDATE app_user
                SET access_failed_count = %s, lockout_end = %s, access_reset_at = %s
                WHERE id = %s
                """,
                (updated.failed_count, updated.lockout_end, updated.last_reset_at, user_id),
            )
            return updated

    # password reset

    def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(
            user_id=user_id,
            token_hash=token_hash,
            created_at=utcnow(),
            expires_at=expires_at,
        )
        with self._connect("create_password_reset_token") as conn:
            conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (user_id,))
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, user_id, created_at, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (token_hash, user_id, record.created_at, expires_at),
            )
        return record

    def consume_password_reset_token(
        self, user_id: str, token_hash: str, now: Optional[datetime] = None
    ) -> bool:
        current = now or utcnow()
        with self._connect("consume_password_reset_token") as conn:
            result = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token_hash = %s AND user_id = %s AND used_at IS NULL AND expires_at > %s
                """,
                (current, token_hash, user_id, current),
            )
            return result.rowcount == 1

    # refresh tokens

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect("add_refresh_token") as conn:
            self._insert_refresh_token(conn, token)
        return token

    @staticmethod
    def _insert_refresh_token(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, token, user_id, created_at, expires_at, created_by_ip)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.token,
                token.user_id,
                token.created_at,
                token.expires_at,
                token.created_by_ip,
            ),
        )

    def get_refresh_token(self, user_id: str, token: str) -> Optional[RefreshToken]:
        with self._connect("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND user_id = %s",
                (token, user_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect("list_refresh_tokens") as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(r) for r in rows]

    def rotate_refresh_token(
        self,
        old_token: str,
        replacement: RefreshToken,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> bool:
        with self._connect("rotate_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND user_id = %s FOR UPDATE",
                (old_token, replacement.user_id),
            ).fetchone()
            if not row or not self._token_from_row(row).is_active(revoked_at):
                return False
            conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by_ip = %s, reason_revoked = %s, replaced_by_token = %s
                WHERE id = %s
                """,
                (revoked_at, revoked_by_ip, reason, replacement.id, row["id"]),
            )
            self._insert_refresh_token(conn, replacement)
            return True

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> int:
        with self._connect("revoke_user_refresh_tokens") as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_by_ip = %s, reason_revoked = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (revoked_at, revoked_by_ip, reason, user_id, revoked_at),
            )
            return result.rowcount
