from __future__ import annotations

from typing import Optional

GENERIC_LOGIN_FAILURE = "Invalid email or password"


class ServiceError(Exception):
    """Base class for service-layer exceptions returned to RPC handlers.

    Each class carries a stable ``error_code`` plus the HTTP-style status the
    handler should map it to:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - transient (503)
    - server_error (500)
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


class ValidationError(ServiceError):
    """Malformed or missing input, rejected before any state change (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable to callers."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = GENERIC_LOGIN_FAILURE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"

    def __init__(self, message: str = GENERIC_LOGIN_FAILURE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidMFACodeError(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid MFA code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Covers bad signatures, malformed tokens and expiry alike."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """The resource belongs to another user (403). Terminal, never retried."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"


class MFANotEnabledError(ServiceError):
    status_code = 400
    error_code = "mfa_not_enabled"


class TransientError(ServiceError):
    """A persistence collaborator failed; the request may be retried upstream (503)."""
    status_code = 503
    error_code = "transient"


class HashingFailure(ServiceError):
    """Password hashing could not complete (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "GENERIC_LOGIN_FAILURE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "InvalidMFACodeError",
    "InvalidTokenError",
    "AuthorizationError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "MFANotEnabledError",
    "TransientError",
    "HashingFailure",
]
