from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Auth outcomes callers are expected to handle (bad credentials, lockout,
    duplicate email) travel as ``AuthResult`` failures, not exceptions. Raising
    is reserved for conditions the request cannot recover from.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Required configuration is missing or invalid; raised at startup (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ConfigurationError",
]
