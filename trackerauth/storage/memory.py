from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from trackerauth.logging import get_logger
from trackerauth.storage.errors import ConstraintViolation
from trackerauth.storage.models import (
    DEFAULT_ROLES,
    LockoutState,
    PasswordResetToken,
    RefreshToken,
    User,
    UserCredential,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process credential and refresh token store.

    Used for tests and local development. Every public method takes the data
    lock, so read-modify-write sequences (lockout transitions, token rotation)
    are atomic with respect to other threads.
    """

    def __init__(self, roles: Iterable[str] = DEFAULT_ROLES) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.roles: set[str] = set(roles)
        self.user_roles: Dict[str, List[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    # users

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(u.normalized_email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip(),
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            self.user_roles[user.id] = []
            self.lockouts[user.id] = LockoutState()
            return self._with_roles(user)

    def _with_roles(self, user: User) -> User:
        return replace(user, roles=list(self.user_roles.get(user.id, [])))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.normalized_email == normalized),
                None,
            )
            return self._with_roles(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._with_roles(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [self._with_roles(u) for u in results[:limit]]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.lockouts.pop(user_id, None)
            self.user_roles.pop(user_id, None)
            for key, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(key, None)
            for key, reset in list(self.reset_tokens.items()):
                if reset.user_id == user_id:
                    self.reset_tokens.pop(key, None)
            return True

    # credentials

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            now = utcnow()
            self.credentials[user_id] = UserCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now if existing else None,
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred or not cred.password_hash:
                return None
            return cred.password_hash, cred.password_algo or ""

    # roles

    def create_role(self, role: str) -> None:
        with self._data_lock:
            self.roles.add(role)

    def role_exists(self, role: str) -> bool:
        with self._data_lock:
            return role in self.roles

    def add_user_to_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if role not in self.roles:
                raise ConstraintViolation("role not found", {"role": role})
            assigned = self.user_roles.setdefault(user_id, [])
            if role not in assigned:
                assigned.append(role)

    def get_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.user_roles.get(user_id, []))

    # account lockout

    def get_lockout_state(self, user_id: str) -> LockoutState:
        with self._data_lock:
            return self.lockouts.get(user_id, LockoutState())

    def update_lockout_state(
        self, user_id: str, transition: Callable[[LockoutState], LockoutState]
    ) -> LockoutState:
        """Apply ``transition`` to the stored state atomically and persist the result."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            updated = transition(self.lockouts.get(user_id, LockoutState()))
            if updated.failed_count < 0:
                raise ValueError("failed_count cannot be negative")
            self.lockouts[user_id] = updated
            return updated

    # password reset

    def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            # A new request supersedes any outstanding token for the user
            for key, existing in list(self.reset_tokens.items()):
                if existing.user_id == user_id:
                    self.reset_tokens.pop(key, None)
            record = PasswordResetToken(
                user_id=user_id,
                token_hash=token_hash,
                created_at=utcnow(),
                expires_at=expires_at,
            )
            self.reset_tokens[token_hash] = record
            return record

    def consume_password_reset_token(
        self, user_id: str, token_hash: str, now: Optional[datetime] = None
    ) -> bool:
        current = now or utcnow()
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            if record is None or record.user_id != user_id:
                return False
            if record.used_at is not None or record.expires_at <= current:
                return False
            record.used_at = current
            return True

    # refresh tokens

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": token.user_id})
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            return token

    def get_refresh_token(self, user_id: str, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or record.user_id != user_id:
                return None
            return replace(record)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return sorted(
                (replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id),
                key=lambda t: t.created_at,
            )

    def rotate_refresh_token(
        self,
        old_token: str,
        replacement: RefreshToken,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> bool:
        """Revoke ``old_token`` and store ``replacement`` as one step.

        Returns False, and stores nothing, when the old token is missing,
        belongs to another user, or is no longer active.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(old_token)
            if record is None or record.user_id != replacement.user_id:
                return False
            if not record.is_active(revoked_at):
                return False
            if replacement.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record.revoked_at = revoked_at
            record.revoked_by_ip = revoked_by_ip
            record.reason_revoked = reason
            record.replaced_by_token = replacement.id
            self.refresh_tokens[replacement.token] = replace(replacement)
            return True

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> int:
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or not record.is_active(revoked_at):
                    continue
                record.revoked_at = revoked_at
                record.revoked_by_ip = revoked_by_ip
                record.reason_revoked = reason
                revoked += 1
        return revoked
