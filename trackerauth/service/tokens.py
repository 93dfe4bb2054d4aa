from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, FrozenSet, Iterable, Optional

from trackerauth.config import Settings
from trackerauth.logging import get_logger
from trackerauth.service.errors import ConfigurationError
from trackerauth.storage.models import RefreshToken, User

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"
LOCALHOST_IP = "127.0.0.1"
REFRESH_TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenClaims:
    """Claims carried by a bearer token."""

    subject: str
    email: str
    name: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    issued_at: int = 0
    token_id: str = ""
    expires_at: int = 0
    issuer: str = ""
    audience: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.subject,
            "jti": self.token_id,
            "iat": self.issued_at,
            "nbf": self.issued_at,
            "exp": self.expires_at,
            "iss": self.issuer,
            "aud": self.audience,
            "email": self.email,
            "name": self.name,
            "role": sorted(self.roles),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["TokenClaims"]:
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        roles = payload.get("role") or []
        if isinstance(roles, str):
            roles = [roles]
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            return None
        try:
            issued_at = int(payload.get("iat", 0))
            expires_at = int(payload.get("exp", 0))
        except (TypeError, ValueError):
            return None
        return cls(
            subject=subject,
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            roles=frozenset(roles),
            issued_at=issued_at,
            token_id=str(payload.get("jti") or ""),
            expires_at=expires_at,
            issuer=str(payload.get("iss") or ""),
            audience=str(payload.get("aud") or ""),
        )

    @property
    def expires(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass
class IssuedToken:
    token: str
    claims: TokenClaims


class TokenIssuer:
    """HS256 bearer tokens and opaque refresh tokens.

    Signing key, issuer and audience are fixed for the lifetime of the issuer and
    are checked once at construction.
    """

    def __init__(
        self,
        secret: Optional[str],
        issuer: Optional[str],
        audience: Optional[str],
        *,
        access_ttl_minutes: int = 60,
        refresh_ttl_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("JWT_SECRET", secret),
                ("JWT_ISSUER", issuer),
                ("JWT_AUDIENCE", audience),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ConfigurationError(
                "JWT configuration is incomplete", detail={"missing": missing}
            )
        if access_ttl_minutes <= 0 or refresh_ttl_days <= 0:
            raise ConfigurationError(
                "token lifetimes must be positive",
                detail={
                    "access_ttl_minutes": access_ttl_minutes,
                    "refresh_ttl_days": refresh_ttl_days,
                },
            )
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl_days = refresh_ttl_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            settings.jwt_issuer,
            settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_days=settings.refresh_token_ttl_days,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def issue_access_token(self, user: User, roles: Iterable[str]) -> IssuedToken:
        issued = self.now()
        iat = int(issued.timestamp())
        claims = TokenClaims(
            subject=user.id,
            email=user.email,
            name=user.email,
            roles=frozenset(roles),
            issued_at=iat,
            token_id=str(uuid.uuid4()),
            expires_at=int((issued + self.access_ttl).timestamp()),
            issuer=self.issuer,
            audience=self.audience,
        )
        return IssuedToken(token=self._encode_jwt(claims.to_payload()), claims=claims)

    def generate_refresh_token(
        self, user_id: str, ip_addr: Optional[str] = None
    ) -> RefreshToken:
        value = base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")
        return RefreshToken.new(
            user_id,
            value,
            ttl_days=self.refresh_ttl_days,
            created_by_ip=ip_addr or LOCALHOST_IP,
            now=self.now(),
        )

    def validate(self, token: str) -> Optional[TokenClaims]:
        """Full validation, lifetime included. Returns None for any failure."""
        claims = self.recover_identity(token)
        if claims is None:
            return None
        now_ts = self.now().timestamp()
        if claims.expires_at <= now_ts:
            return None
        if claims.issued_at > now_ts:
            return None
        return claims

    def recover_identity(self, token: str) -> Optional[TokenClaims]:
        """Verify signature, algorithm, issuer and audience but not lifetime.

        Used by the refresh and revoke flows, which must accept a bearer token
        that has already expired.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        return TokenClaims.from_payload(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        header_b64, payload_b64, sig_b64 = parts

        # Pin the algorithm; "none" and asymmetric algorithms are rejected outright.
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._sign(signing_input).encode("ascii"), sig_b64.encode("utf-8")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        if payload.get("aud") != self.audience:
            return None
        return payload
