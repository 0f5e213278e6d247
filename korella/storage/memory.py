from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from korella.storage.common import normalize_email
from korella.storage.errors import ConstraintViolation
from korella.storage.models import (
    AuthLog,
    EmailVerification,
    PasswordReset,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process account store used by tests and single-node development.

    Every read returns a copy so callers cannot mutate stored rows without
    going through a store method.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_resets: Dict[str, PasswordReset] = {}
        self.email_verifications: Dict[str, EmailVerification] = {}
        self.auth_logs: List[AuthLog] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

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
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                full_name=full_name,
                password_hash=password_hash,
                password_algo=password_algo,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
                subscription_tier=subscription_tier,
                trial_expires_at=trial_expires_at,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email != normalized:
                    continue
                if user.is_deleted and not include_deleted:
                    return None
                return replace(user)
        return None

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return replace(user)

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        updated = self._update_user(
            user_id, password_hash=password_hash, password_algo=password_algo
        )
        return updated is not None

    def set_account_status(self, user_id: str, status: str) -> Optional[User]:
        return self._update_user(user_id, account_status=status)

    def soft_delete_user(self, user_id: str) -> bool:
        return self._update_user(user_id, is_deleted=True) is not None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id, email_verified=True, email_verified_at=utcnow()
        )

    # lockout
    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            user.failed_login_count += 1
            if user.failed_login_count >= max_attempts:
                user.locked_until = lock_until
            user.updated_at = utcnow()
            return user.failed_login_count, user.locked_until

    def clear_lockout(self, user_id: str) -> None:
        self._update_user(user_id, failed_login_count=0, locked_until=None)

    def record_successful_login(
        self, user_id: str, ip_address: Optional[str]
    ) -> None:
        self._update_user(
            user_id,
            failed_login_count=0,
            locked_until=None,
            last_login_at=utcnow(),
            last_login_ip=ip_address,
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
        with self._data_lock:
            if any(r.token == token for r in self.password_resets.values()):
                raise ConstraintViolation("reset token collision", {"field": "token"})
            if user_id not in self.users:
                raise ConstraintViolation("reset user missing", {"user_id": user_id})
            reset = PasswordReset(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                request_ip=request_ip,
                request_user_agent=request_user_agent,
            )
            self.password_resets[reset.id] = reset
            return replace(reset)

    def get_valid_password_reset(
        self, token: str, now: datetime
    ) -> Optional[PasswordReset]:
        with self._data_lock:
            candidates = [
                r
                for r in self.password_resets.values()
                if r.token == token
                and r.is_valid(now)
                and self.users.get(r.user_id) is not None
                and not self.users[r.user_id].is_deleted
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda r: r.created_at)
            return replace(latest)

    def consume_password_reset(
        self, reset_id: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[str]:
        with self._data_lock:
            reset = self.password_resets.get(reset_id)
            if not reset or not reset.is_valid(now):
                return None
            user = self.users.get(reset.user_id)
            if not user or user.is_deleted:
                return None
            reset.used = True
            reset.used_at = now
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.failed_login_count = 0
            user.locked_until = None
            user.updated_at = now
            return user.id

    # email verification tokens
    def create_email_verification(
        self, user_id: str, token: str, expires_at: datetime
    ) -> EmailVerification:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("verification user missing", {"user_id": user_id})
            record = EmailVerification(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
            )
            self.email_verifications[record.id] = record
            return replace(record)

    def consume_email_verification(self, token: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            for record in self.email_verifications.values():
                if record.token != token or record.used or record.expires_at <= now:
                    continue
                user = self.users.get(record.user_id)
                if not user or user.is_deleted:
                    return None
                record.used = True
                record.used_at = now
                user.email_verified = True
                user.email_verified_at = now
                user.updated_at = now
                return user.id
        return None

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            self.sessions[sess.id] = sess
        return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # audit log
    def append_auth_log(self, entry: AuthLog) -> None:
        with self._data_lock:
            self.auth_logs.append(replace(entry))

    def list_auth_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        target_email: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuthLog]:
        with self._data_lock:
            rows = [
                replace(entry)
                for entry in self.auth_logs
                if (user_id is None or entry.user_id == user_id)
                and (event_type is None or entry.event_type == event_type)
                and (target_email is None or entry.target_email == target_email)
            ]
        rows.sort(key=lambda entry: entry.created_at, reverse=True)
        return rows[:limit]

    # retention
    def purge_auth_logs(self, older_than: datetime) -> int:
        with self._data_lock:
            kept = [entry for entry in self.auth_logs if entry.created_at >= older_than]
            removed = len(self.auth_logs) - len(kept)
            self.auth_logs = kept
            return removed

    @staticmethod
    def _is_stale(record, now: datetime, used_before: datetime) -> bool:
        if record.expires_at < now:
            return True
        return bool(record.used and record.used_at and record.used_at < used_before)

    def purge_password_resets(self, now: datetime, used_before: datetime) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, reset in self.password_resets.items()
                if self._is_stale(reset, now, used_before)
            ]
            for rid in stale:
                del self.password_resets[rid]
            return len(stale)

    def purge_email_verifications(self, now: datetime, used_before: datetime) -> int:
        with self._data_lock:
            stale = [
                vid
                for vid, record in self.email_verifications.items()
                if self._is_stale(record, now, used_before)
            ]
            for vid in stale:
                del self.email_verifications[vid]
            return len(stale)
