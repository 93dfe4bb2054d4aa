from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from trackerauth.config import Settings
from trackerauth.logging import email_fingerprint, get_logger
from trackerauth.service.lockout import (
    AttemptTracker,
    InMemoryAttemptTracker,
    LockoutPolicy,
    LockoutTransition,
    attempt_key,
    current_state,
    is_locked,
    register_failure,
    register_success,
    remaining_attempts,
    remaining_lockout_minutes,
)
from trackerauth.service.tokens import LOCALHOST_IP, TokenClaims, TokenIssuer
from trackerauth.service.validation import is_valid_email, is_valid_password
from trackerauth.storage.errors import ConstraintViolation
from trackerauth.storage.models import (
    LockoutState,
    PasswordResetToken,
    RefreshToken,
    User,
)

logger = get_logger(__name__)

DEFAULT_ROLE = "User"

INVALID_EMAIL = "Invalid email address"
PASSWORD_TOO_SHORT = "Password must be at least 8 characters long"
NAMES_REQUIRED = "First name and last name are required"
DUPLICATE_USER = "User with this email already exists"
INVALID_CREDENTIALS = "Invalid email or password"
INVALID_TOKEN = "Invalid token"
USER_NOT_FOUND = "User not found"
INVALID_REFRESH_TOKEN = "Invalid refresh token"

REASON_REPLACED = "Replaced by new token"
REASON_REVOKED_BY_USER = "Revoked by user"
REASON_PASSWORD_RESET = "Password reset"


class AuthStore(Protocol):
    def create_user(
        self, email: str, *, first_name: str = "", last_name: str = ""
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def add_user_to_role(self, user_id: str, role: str) -> None: ...

    def get_roles(self, user_id: str) -> List[str]: ...

    def get_lockout_state(self, user_id: str) -> LockoutState: ...

    def update_lockout_state(
        self, user_id: str, transition: LockoutTransition
    ) -> LockoutState: ...

    def create_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def consume_password_reset_token(
        self, user_id: str, token_hash: str, now: Optional[datetime] = None
    ) -> bool: ...

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, user_id: str, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        replacement: RefreshToken,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_at: datetime,
        reason: str,
        revoked_by_ip: Optional[str] = None,
    ) -> int: ...


@dataclass
class AuthResult:
    """Outcome of an auth operation.

    Failures carry human-readable ``errors`` and a stable ``error_code``
    (``validation_error``, ``unauthorized`` or ``conflict``). String fields are
    never None.
    """

    success: bool
    token: str = ""
    refresh_token: str = ""
    user_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    role: str = ""
    errors: List[str] = field(default_factory=list)
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, *errors: str, error_code: str = "unauthorized") -> "AuthResult":
        return cls(success=False, errors=list(errors), error_code=error_code)


class AuthService:
    """Registration, login, token refresh/revocation and password reset."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        attempt_tracker: Optional[AttemptTracker] = None,
        password_hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Raises ConfigurationError when signing material is missing
        self.issuer = issuer or TokenIssuer.from_settings(settings, clock=self._clock)
        self.policy = LockoutPolicy(
            max_failed_attempts=settings.max_failed_login_attempts,
            lockout_duration=timedelta(minutes=settings.account_lockout_minutes),
        )
        self.attempt_tracker: AttemptTracker = attempt_tracker or InMemoryAttemptTracker(
            timedelta(minutes=settings.login_lockout_minutes)
        )
        self._email_timeout = settings.email_regex_timeout_ms / 1000
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return self._clock()

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise asyncio.CancelledError()

    def _too_many_attempts_message(self) -> str:
        return (
            "Too many failed attempts. Please try again in "
            f"{self.settings.login_lockout_minutes} minutes."
        )

    async def _email_ok(self, email: str) -> bool:
        return await is_valid_email(email, timeout=self._email_timeout)

    # registration

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        errors: List[str] = []
        if not await self._email_ok(email):
            errors.append(INVALID_EMAIL)
        if not is_valid_password(password):
            errors.append(PASSWORD_TOO_SHORT)
        if not (first_name or "").strip() or not (last_name or "").strip():
            errors.append(NAMES_REQUIRED)
        if errors:
            self.logger.info("registration_rejected", reasons=len(errors))
            return AuthResult.failure(*errors, error_code="validation_error")

        role_name = (role or "").strip() or self.settings.default_registration_role
        if self.store.get_user_by_email(email):
            self.logger.info("registration_duplicate", email_hash=email_fingerprint(email))
            return AuthResult.failure(DUPLICATE_USER, error_code="conflict")

        pwd_hash, algo = self._hash_password(password)
        try:
            user = self.store.create_user(
                email, first_name=first_name.strip(), last_name=last_name.strip()
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same email
            self.logger.info("registration_duplicate", email_hash=email_fingerprint(email))
            return AuthResult.failure(DUPLICATE_USER, error_code="conflict")

        try:
            self.store.save_password(user.id, pwd_hash, algo)
            self.store.add_user_to_role(user.id, role_name)
        except ConstraintViolation as exc:
            self._delete_orphaned_user(user.id, reason=exc.message)
            if "role" in exc.detail:
                return AuthResult.failure(
                    f"Role '{role_name}' does not exist", error_code="validation_error"
                )
            return AuthResult.failure(exc.message, error_code="validation_error")
        except Exception as exc:
            self._delete_orphaned_user(user.id, reason=type(exc).__name__)
            raise

        self.logger.info("user_registered", user_id=user.id, role=role_name)
        return await self._start_session(user, [role_name], ip_addr)

    def _delete_orphaned_user(self, user_id: str, *, reason: str) -> None:
        """Compensating delete for a half-created account. Best effort."""
        try:
            self.store.delete_user(user_id)
            self.logger.warning("registration_rolled_back", user_id=user_id, reason=reason)
        except Exception as exc:
            self.logger.error(
                "registration_rollback_failed",
                user_id=user_id,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # login

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AuthResult:
        attempted_at = self._now()
        client_ip = ip_addr or LOCALHOST_IP
        self._check_cancelled(cancel_event)

        if not password or not password.strip() or not await self._email_ok(email):
            return AuthResult.failure(INVALID_CREDENTIALS)

        key = attempt_key(client_ip)
        attempts = await self.attempt_tracker.get_attempts(key)
        self._check_cancelled(cancel_event)
        if attempts >= self.policy.max_failed_attempts:
            self.logger.warning("login_blocked_ip", ip_addr=client_ip, attempts=attempts)
            return AuthResult.failure(self._too_many_attempts_message())

        user = self.store.get_user_by_email(email)
        self._check_cancelled(cancel_event)
        if not user:
            await asyncio.shield(self.attempt_tracker.track_failed_attempt(key))
            self.logger.info(
                "login_failed_unknown_user",
                email_hash=email_fingerprint(email),
                ip_addr=client_ip,
            )
            return AuthResult.failure(INVALID_CREDENTIALS)

        now = self._now()
        state = current_state(self.store.get_lockout_state(user.id), now)
        if is_locked(state, now):
            minutes = remaining_lockout_minutes(state, now)
            self.logger.info("login_failed_account_locked", user_id=user.id, minutes=minutes)
            return AuthResult.failure(
                f"Account is locked out. Please try again in {minutes} minutes."
            )

        verified = self.verify_password(user.id, password)
        self._check_cancelled(cancel_event)
        if not verified:
            # Both counters are updated together or not at all once we get here
            state = await asyncio.shield(
                self._record_failed_login(user.id, key, attempted_at)
            )
            left = remaining_attempts(state, self.policy)
            self.logger.info(
                "login_failed_wrong_password",
                user_id=user.id,
                failed_count=state.failed_count,
                locked=state.lockout_end is not None,
            )
            return AuthResult.failure(
                f"{INVALID_CREDENTIALS}. {left} attempts remaining."
            )

        await asyncio.shield(self._record_successful_login(user.id, key))
        roles = self.store.get_roles(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return await self._start_session(user, roles, client_ip)

    async def _record_failed_login(
        self, user_id: str, key: str, attempted_at: datetime
    ) -> LockoutState:
        state = self.store.update_lockout_state(
            user_id,
            lambda s: register_failure(
                s, self._now(), self.policy, attempted_at=attempted_at
            ),
        )
        await self.attempt_tracker.track_failed_attempt(key)
        return state

    async def _record_successful_login(self, user_id: str, key: str) -> None:
        now = self._now()
        self.store.update_lockout_state(user_id, lambda s: register_success(s, now))
        await self.attempt_tracker.reset(key)

    # tokens

    async def _start_session(
        self, user: User, roles: Sequence[str], ip_addr: Optional[str]
    ) -> AuthResult:
        access = self.issuer.issue_access_token(user, roles)
        refresh = self.issuer.generate_refresh_token(user.id, ip_addr)
        self.store.add_refresh_token(refresh)
        return self._success(user, roles, access.token, refresh.token)

    @staticmethod
    def _success(
        user: User, roles: Sequence[str], token: str, refresh_token: str
    ) -> AuthResult:
        return AuthResult(
            success=True,
            token=token,
            refresh_token=refresh_token,
            user_id=user.id,
            email=user.email,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
            role=roles[0] if roles else DEFAULT_ROLE,
        )

    def _resolve_identity(self, token: str) -> Tuple[Optional[TokenClaims], Optional[User]]:
        claims = self.issuer.recover_identity(token)
        if claims is None:
            return None, None
        return claims, self.store.get_user(claims.subject)

    async def refresh_token(
        self,
        token: str,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        """Exchange a (possibly expired) bearer token plus a refresh token for a new pair.

        The presented refresh token is single-use: it is revoked and replaced in
        the same store operation that persists its successor.
        """
        claims, user = self._resolve_identity(token)
        if claims is None:
            self.logger.info("refresh_rejected_invalid_token")
            return AuthResult.failure(INVALID_TOKEN)
        if user is None:
            self.logger.info("refresh_rejected_unknown_user", user_id=claims.subject)
            return AuthResult.failure(USER_NOT_FOUND)

        now = self._now()
        existing = (
            self.store.get_refresh_token(user.id, refresh_token) if refresh_token else None
        )
        if existing is None or not existing.is_active(now):
            self.logger.warning(
                "refresh_rejected_inactive_token",
                user_id=user.id,
                revoked=bool(existing and existing.is_revoked),
            )
            return AuthResult.failure(INVALID_REFRESH_TOKEN)

        client_ip = ip_addr or LOCALHOST_IP
        roles = self.store.get_roles(user.id)
        access = self.issuer.issue_access_token(user, roles)
        replacement = self.issuer.generate_refresh_token(user.id, client_ip)
        rotated = self.store.rotate_refresh_token(
            existing.token,
            replacement,
            revoked_at=now,
            reason=REASON_REPLACED,
            revoked_by_ip=client_ip,
        )
        if not rotated:
            # A concurrent refresh consumed the token first
            self.logger.warning("refresh_rotation_conflict", user_id=user.id)
            return AuthResult.failure(INVALID_REFRESH_TOKEN)

        self.logger.info("refresh_token_rotated", user_id=user.id)
        return self._success(user, roles, access.token, replacement.token)

    async def revoke_token(self, token: str, *, ip_addr: Optional[str] = None) -> bool:
        """Revoke every active refresh token of the token's owner."""
        claims, user = self._resolve_identity(token)
        if claims is None or user is None:
            return False
        revoked = self.store.revoke_user_refresh_tokens(
            user.id,
            revoked_at=self._now(),
            reason=REASON_REVOKED_BY_USER,
            revoked_by_ip=ip_addr,
        )
        self.logger.info("refresh_tokens_revoked", user_id=user.id, revoked_count=revoked)
        return True

    async def authenticate(self, token: Optional[str]) -> Optional[TokenClaims]:
        """Validate a bearer token for a protected route, lifetime included."""
        if not token:
            return None
        claims = self.issuer.validate(token)
        if claims is None:
            return None
        if self.store.get_user(claims.subject) is None:
            return None
        return claims

    # password reset

    @staticmethod
    def _hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def generate_password_reset_token(self, email: str) -> str:
        """Return a single-use reset token, or "" when the email is unknown."""
        if not await self._email_ok(email):
            return ""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email", email_hash=email_fingerprint(email)
            )
            return ""
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(
            minutes=self.settings.password_reset_token_ttl_minutes
        )
        self.store.create_password_reset_token(
            user.id, self._hash_reset_token(token), expires_at
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, email: str, token: str, new_password: str) -> bool:
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            # Same answer as success so callers cannot probe for accounts
            return True
        if not is_valid_password(new_password):
            return False
        now = self._now()
        if not token or not self.store.consume_password_reset_token(
            user.id, self._hash_reset_token(token), now
        ):
            self.logger.warning("password_reset_invalid_token", user_id=user.id)
            return False
        self.save_password(user.id, new_password)
        self.store.update_lockout_state(user.id, lambda s: register_success(s, now))
        self.store.revoke_user_refresh_tokens(
            user.id, revoked_at=now, reason=REASON_PASSWORD_RESET
        )
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
