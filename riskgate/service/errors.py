from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for authentication outcomes other than success.

    Each class carries a stable ``error_code`` and an HTTP-style ``status_code``
    so any outer surface can map outcomes without inspecting messages. The
    ``message`` is always safe to show to the caller; internal causes belong in
    ``detail`` and are only ever written to the audit sink and logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: str = "Request could not be completed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.public_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class RateLimitedError(ServiceError):
    """Too many attempts for one (email, ip) pair inside the window (429)."""
    status_code = 429
    error_code = "rate_limited"
    public_message = "Too many authentication attempts. Please try again later."


class InvalidCredentialsError(ServiceError):
    """Primary credential check failed; cause is never disclosed (401)."""
    status_code = 401
    error_code = "invalid_credentials"
    public_message = "Invalid credentials"


class AccountLockedError(ServiceError):
    """Account locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"
    public_message = "Account is locked"


class AccessDeniedError(ServiceError):
    """Risk engine vetoed the attempt (403)."""
    status_code = 403
    error_code = "access_denied"
    public_message = "Access denied due to security policy"


class MFARequired(ServiceError):
    """Structured continuation: a second factor must be presented.

    Not a failure in the usual sense; carries the challenge descriptor and the
    public view of the risk assessment so a client can render the next step.
    """

    status_code = 401
    error_code = "mfa_required"
    public_message = "Multi-factor authentication required"

    def __init__(
        self,
        challenge: Optional[dict[str, Any]] = None,
        *,
        risk: Optional[dict[str, Any]] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(detail=detail)
        self.challenge = challenge
        self.risk = risk


class InvalidMFAError(ServiceError):
    """Second factor rejected (401)."""
    status_code = 401
    error_code = "invalid_mfa"
    public_message = "Invalid MFA token"


class InvalidSessionError(ServiceError):
    """Session or refresh token missing, expired, or rotated away (401)."""
    status_code = 401
    error_code = "invalid_session"
    public_message = "Invalid or expired session"


class ChallengeExpiredError(ServiceError):
    """MFA challenge unknown, consumed, or past its expiry (410)."""
    status_code = 410
    error_code = "challenge_expired"
    public_message = "MFA challenge expired"


class NotFoundError(ServiceError):
    """Referenced user or device does not exist (404)."""
    status_code = 404
    error_code = "not_found"
    public_message = "Not found"


class InternalError(ServiceError):
    """Risk assessment or store failure (500)."""
    status_code = 500
    error_code = "internal_error"
    public_message = "Authentication failed"


__all__ = [
    "ServiceError",
    "RateLimitedError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccessDeniedError",
    "MFARequired",
    "InvalidMFAError",
    "InvalidSessionError",
    "ChallengeExpiredError",
    "NotFoundError",
    "InternalError",
]
