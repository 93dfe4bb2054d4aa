from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# Roles a caller may pick for themselves at registration; Admin is seeded only.
SELF_SERVICE_ROLES = frozenset({"User", "Client"})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response wrapper for every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _RequestModel(BaseModel):
    """Accepts both snake_case and camelCase keys (``first_name`` / ``firstName``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Field formats (email syntax, password length) are checked by the auth service
# so that login can answer with a generic message. Only shape and size here.


class RegisterRequest(_RequestModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    role: Optional[str] = Field(default=None, max_length=64)

    @field_validator("role")
    @classmethod
    def _self_service_role(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        role = value.strip()
        if role not in SELF_SERVICE_ROLES:
            raise ValueError(f"role must be one of: {', '.join(sorted(SELF_SERVICE_ROLES))}")
        return role


class LoginRequest(_RequestModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class RefreshTokenRequest(_RequestModel):
    token: str = Field(..., max_length=8192)
    refresh_token: str = Field(..., max_length=2048)


class RevokeTokenRequest(_RequestModel):
    token: Optional[str] = Field(default=None, max_length=8192)


class ForgotPasswordRequest(_RequestModel):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(_RequestModel):
    email: str = Field(..., max_length=254)
    token: str = Field(..., max_length=512)
    new_password: str = Field(..., max_length=128)


class AuthResponse(BaseModel):
    token: str
    refresh_token: str
    user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "User"


class MessageResponse(BaseModel):
    message: str
    reset_token: Optional[str] = None


def error_list(errors: List[str]) -> dict:
    return {"errors": list(errors)}
