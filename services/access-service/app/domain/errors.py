"""Error taxonomy shared by the gate, policies and domain services.

Every error carries a stable HTTP status and machine-readable code; the
message is short and safe to show to the caller.
"""

from __future__ import annotations

from typing import Any


class AccessError(Exception):
    """Base class for recoverable, user-facing failures."""

    status_code: int = 400
    code: str = "BAD_REQUEST"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class UnauthenticatedError(AccessError):
    """Missing, invalid or expired credential, or an unusable account."""

    status_code = 401
    code = "UNAUTHENTICATED"


class TokenExpiredError(UnauthenticatedError):
    """A well-signed credential whose expiry has passed."""

    code = "TOKEN_EXPIRED"


class InvalidTokenError(UnauthenticatedError):
    code = "INVALID_TOKEN"


class ForbiddenError(AccessError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AccessError):
    """Entity absent, or not in the state the transition requires."""

    status_code = 404
    code = "NOT_FOUND"


class ExpiredError(AccessError):
    status_code = 410
    code = "EXPIRED"


class ConflictError(AccessError):
    status_code = 409
    code = "CONFLICT"


class QuotaExceededError(AccessError):
    status_code = 409
    code = "QUOTA_EXCEEDED"


class MissingRequiredAttributeError(AccessError):
    status_code = 422
    code = "MISSING_REQUIRED_ATTRIBUTE"


class ValidationError(AccessError):
    """Malformed input; ``fields`` maps field names to problems."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, fields: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or {}

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.fields:
            payload["fields"] = self.fields
        return payload


class RateLimitedError(AccessError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
