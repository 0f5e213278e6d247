from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from korella.logging import get_logger
from korella.storage.common import normalize_email
from korella.storage.errors import ConstraintViolation
from korella.storage.models import (
    AuthLog,
    EmailVerification,
    PasswordReset,
    Session,
    User,
)

_USER_COLUMNS = """
    id, email, full_name, password_hash, password_algo, email_verified,
    email_verified_at, account_status, subscription_tier, trial_expires_at,
    failed_login_count, locked_until, last_login_at, last_login_ip,
    is_deleted, created_at, updated_at
"""


class PostgresStore:
    """Postgres-backed account store.

    Compound writes (token consumption plus password update) run inside a
    single pooled connection; the pool commits on clean exit and rolls back
    when the block raises.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "user_account",
            "password_reset",
            "email_verification",
            "auth_log",
            "user_session",
        ]

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
                    "Missing required Postgres tables: {}. Apply migrations/001_auth_schema.sql.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Install it and apply migrations/001_auth_schema.sql."
                )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            email_verified=row.get("email_verified", False),
            email_verified_at=row.get("email_verified_at"),
            account_status=row.get("account_status", "active"),
            subscription_tier=row.get("subscription_tier", "trial"),
            trial_expires_at=row.get("trial_expires_at"),
            failed_login_count=row.get("failed_login_count", 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            is_deleted=row.get("is_deleted", False),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordReset:
        return PasswordReset(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used=row.get("used", False),
            used_at=row.get("used_at"),
            request_ip=row.get("request_ip"),
            request_user_agent=row.get("request_user_agent"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _auth_log_from_row(row: dict) -> AuthLog:
        details = row.get("event_details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except json.JSONDecodeError:
                details = {"raw": details}
        return AuthLog(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            event_type=row["event_type"],
            success=row["success"],
            failure_reason=row.get("failure_reason"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            session_id=row.get("session_id"),
            target_email=row.get("target_email"),
            event_details=details,
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        email_verified: bool = False,
        subscription_tier: str = "trial",
        trial_expires_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO user_account (
                        id, email, full_name, password_hash, password_algo,
                        email_verified, email_verified_at, subscription_tier, trial_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, CASE WHEN %s THEN now() END, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        full_name,
                        password_hash,
                        password_algo,
                        email_verified,
                        email_verified,
                        subscription_tier,
                        trial_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM user_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        query = f"SELECT {_USER_COLUMNS} FROM user_account WHERE email = %s"
        if not include_deleted:
            query += " AND is_deleted = FALSE"
        with self._connect() as conn:
            row = conn.execute(query, (normalize_email(email),)).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE user_account SET {assignments}, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        updated = self._update_user(
            user_id,
            "password_hash = %s, password_algo = %s",
            (password_hash, password_algo),
        )
        return updated is not None

    def set_account_status(self, user_id: str, status: str) -> Optional[User]:
        return self._update_user(user_id, "account_status = %s", (status,))

    def soft_delete_user(self, user_id: str) -> bool:
        return self._update_user(user_id, "is_deleted = TRUE", ()) is not None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id, "email_verified = TRUE, email_verified_at = now()", ()
        )

    # lockout
    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET failed_login_count = failed_login_count + 1,
                    locked_until = CASE
                        WHEN failed_login_count + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING failed_login_count, locked_until
                """,
                (max_attempts, lock_until, user_id),
            ).fetchone()
        if not row:
            return 0, None
        return row["failed_login_count"], row.get("locked_until")

    def clear_lockout(self, user_id: str) -> None:
        self._update_user(user_id, "failed_login_count = 0, locked_until = NULL", ())

    def record_successful_login(
        self, user_id: str, ip_address: Optional[str]
    ) -> None:
        self._update_user(
            user_id,
            "failed_login_count = 0, locked_until = NULL, last_login_at = now(), last_login_ip = %s",
            (ip_address,),
        )

    # password reset tokens
    def create_password_reset(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        request_ip: Optional[str] = None,
        request_user_agent: Optional[str] = None,
    ) -> PasswordReset:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset (id, user_id, token, expires_at, request_ip, request_user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        token,
                        expires_at,
                        request_ip,
                        request_user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("reset user missing", {"user_id": user_id})
        return self._reset_from_row(row)

    def get_valid_password_reset(
        self, token: str, now: datetime
    ) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT r.*
                FROM password_reset r
                JOIN user_account u ON u.id = r.user_id
                WHERE r.token = %s
                  AND r.used = FALSE
                  AND r.expires_at > %s
                  AND u.is_deleted = FALSE
                ORDER BY r.created_at DESC
                LIMIT 1
                """,
                (token, now),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_password_reset(
        self, reset_id: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[str]:
        with self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE password_reset
                SET used = TRUE, used_at = %s
                WHERE id = %s
                  AND used = FALSE
                  AND expires_at > %s
                  AND user_id IN (SELECT id FROM user_account WHERE is_deleted = FALSE)
                RETURNING user_id
                """,
                (now, reset_id, now),
            ).fetchone()
            if not claimed:
                return None
            user_id = str(claimed["user_id"])
            conn.execute(
                """
                UPDATE user_account
                SET password_hash = %s,
                    password_algo = %s,
                    failed_login_count = 0,
                    locked_until = NULL,
                    updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
        return user_id

    # email verification tokens
    def create_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO email_verification (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("verification user missing", {"user_id": user_id})
        return EmailVerification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used=row["used"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    def consume_email_verification(self, token: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE email_verification
                SET used = TRUE, used_at = %s
                WHERE token = %s
                  AND used = FALSE
                  AND expires_at > %s
                  AND user_id IN (SELECT id FROM user_account WHERE is_deleted = FALSE)
                RETURNING user_id
                """,
                (now, token, now),
            ).fetchone()
            if not claimed:
                return None
            user_id = str(claimed["user_id"])
            conn.execute(
                """
                UPDATE user_account
                SET email_verified = TRUE, email_verified_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (now, user_id),
            )
        return user_id

    # sessions
    def create_session(
        self,
        user_id: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id, expires_at, ip_address=ip_address, user_agent=user_agent
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, created_at, expires_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        ip_address,
                        user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "DELETE FROM user_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "DELETE FROM user_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    # audit log
    def append_auth_log(self, entry: AuthLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_log (
                    id, user_id, event_type, success, failure_reason, ip_address,
                    user_agent, session_id, target_email, event_details, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.event_type,
                    entry.success,
                    entry.failure_reason,
                    entry.ip_address,
                    entry.user_agent,
                    entry.session_id,
                    entry.target_email,
                    json.dumps(entry.event_details) if entry.event_details else None,
                    entry.created_at,
                ),
            )

    def list_auth_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        target_email: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuthLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        if target_email is not None:
            clauses.append("target_email = %s")
            params.append(target_email)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_log {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._auth_log_from_row(row) for row in rows]

    # retention
    def purge_auth_logs(self, older_than: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_log WHERE created_at < %s", (older_than,)
            )
            return result.rowcount

    def purge_password_resets(self, now: datetime, used_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM password_reset
                WHERE expires_at < %s OR (used = TRUE AND used_at < %s)
                """,
                (now, used_before),
            )
            return result.rowcount

    def purge_email_verifications(self, now: datetime, used_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM email_verification
                WHERE expires_at < %s OR (used = TRUE AND used_at < %s)
                """,
                (now, used_before),
            )
            return result.rowcount
