"""
Error taxonomy shared by the capsule service.

Every error carries a machine-readable ``code`` and the HTTP status the
boundary should answer with. Handlers in ``main.py`` turn them into
``{"error": code, "detail": ...}`` responses.
"""
from __future__ import annotations

from typing import Any, Optional


class CapsuleServiceError(Exception):
    """Base exception for the capsule service."""

    status_code: int = 500
    code: str = "InternalServerError"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message or self.code
        super().__init__(self.message)
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Client body: ``{"error": code, "detail": message, "details"?}``."""
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CapsuleServiceError):
    """Malformed or missing input. ``details`` maps field -> list of messages."""

    status_code = 400
    code = "ValidationError"


class Unauthorized(CapsuleServiceError):
    status_code = 401
    code = "Unauthorized"


class AccessDenied(CapsuleServiceError):
    """Gated read; ``reason`` is locked / not_revealed / invalid_passphrase."""

    status_code = 403
    code = "AccessDenied"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason, code=reason)
        self.reason = reason


class NotFound(CapsuleServiceError):
    status_code = 404
    code = "NotFound"


class PayloadTooLarge(CapsuleServiceError):
    status_code = 413
    code = "PayloadTooLarge"

    def __init__(self, code: str, limit_bytes: int):
        super().__init__(
            f"Upload exceeds the configured limit of {limit_bytes} bytes",
            code=code,
            details={"limit_bytes": limit_bytes},
        )
        self.limit_bytes = limit_bytes


class TooManyAttempts(CapsuleServiceError):
    status_code = 429
    code = "TooManyAttempts"

    def __init__(self, retry_after: float):
        super().__init__(
            f"Too many unlock attempts. Try again in {int(retry_after) + 1} seconds.",
            details={"retry_after": int(retry_after) + 1},
        )
        self.retry_after = retry_after


class UpstreamDependencyFailure(CapsuleServiceError):
    """Object store or transcoder unreachable or erroring."""

    status_code = 502
    code = "UpstreamDependencyFailure"


class ObjectStoreError(UpstreamDependencyFailure):
    code = "ObjectStoreError"


class ObjectStoreMisconfigured(ObjectStoreError):
    status_code = 500
    code = "ObjectStoreMisconfigured"


class TranscoderError(UpstreamDependencyFailure):
    code = "TranscoderError"


class InternalError(CapsuleServiceError):
    """Unexpected failure; the client only ever sees the generic message."""

    status_code = 500
    code = "InternalServerError"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
