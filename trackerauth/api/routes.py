from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from trackerauth.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokeTokenRequest,
    error_list,
)
from trackerauth.logging import get_logger
from trackerauth.service.auth import AuthResult
from trackerauth.service.runtime import get_runtime
from trackerauth.service.tokens import TokenClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If your email is registered, you will receive a password reset link."
RESET_PASSWORD_MESSAGE = "Password has been reset successfully."
RESET_PASSWORD_FAILED = "Invalid token or email."
TOKEN_REVOKED_MESSAGE = "Token revoked successfully."
TOKEN_REVOKE_FAILED = "Invalid token."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _failed(result: AuthResult, status_code: int) -> HTTPException:
    message = result.errors[0] if result.errors else "request failed"
    return _http_error(
        result.error_code or "validation_error",
        message,
        status_code=status_code,
        details=error_list(result.errors),
    )


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        token=result.token,
        refresh_token=result.refresh_token,
        user_id=result.user_id,
        email=result.email,
        first_name=result.first_name,
        last_name=result.last_name,
        role=result.role,
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    claims = await runtime.auth.authenticate(_extract_bearer(authorization))
    if not claims:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return claims


@router.post("/register", response_model=Envelope)
async def register(body: RegisterRequest, request: Request):
    """Create an account and return a bearer/refresh token pair."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        body.role,
        ip_addr=_client_ip(request),
    )
    if not result.success:
        raise _failed(result, status_code=400)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: Invalid credentials, a locked account, or too many failures from this IP
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, ip_addr=_client_ip(request)
    )
    if not result.success:
        raise _failed(result, status_code=401)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest, request: Request):
    """Rotate a refresh token. The bearer token may already be expired."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(
        body.token, body.refresh_token, ip_addr=_client_ip(request)
    )
    if not result.success:
        raise _failed(result, status_code=400)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/revoke-token", response_model=Envelope)
async def revoke_token(
    request: Request,
    body: Optional[RevokeTokenRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: TokenClaims = Depends(get_user),
):
    runtime = get_runtime()
    token = (body.token if body else None) or _extract_bearer(authorization)
    identity = runtime.auth.issuer.recover_identity(token) if token else None
    # Callers may only revoke their own sessions
    if identity is None or identity.subject != principal.subject:
        raise _http_error(
            "validation_error",
            TOKEN_REVOKE_FAILED,
            status_code=400,
            details=error_list([TOKEN_REVOKE_FAILED]),
        )
    revoked = await runtime.auth.revoke_token(token, ip_addr=_client_ip(request))
    if not revoked:
        raise _http_error(
            "validation_error",
            TOKEN_REVOKE_FAILED,
            status_code=400,
            details=error_list([TOKEN_REVOKE_FAILED]),
        )
    return Envelope(status="ok", data=MessageResponse(message=TOKEN_REVOKED_MESSAGE))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    token = await runtime.auth.generate_password_reset_token(body.email)
    data = MessageResponse(message=FORGOT_PASSWORD_MESSAGE)
    # Echo the token only for non-production debugging; email delivery lives elsewhere
    if token and runtime.settings.expose_reset_tokens:
        data.reset_token = token
    return Envelope(status="ok", data=data)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    ok = await runtime.auth.reset_password(body.email, body.token, body.new_password)
    if not ok:
        raise _http_error(
            "validation_error",
            RESET_PASSWORD_FAILED,
            status_code=400,
            details=error_list([RESET_PASSWORD_FAILED]),
        )
    return Envelope(status="ok", data=MessageResponse(message=RESET_PASSWORD_MESSAGE))
