"""
Error taxonomy for the sync pipeline.

Every error carries a stable ``code``, an HTTP-equivalent ``status_code`` and
optional ``details`` that are merged into the JSON error body by the handler
registered in ``main.py``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class SyncPipelineError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: Dict[str, Any] = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


class ValidationError(SyncPipelineError):
    """Missing or malformed input. Nothing was written."""

    status_code = 400
    code = "VALIDATION_ERROR"


class EligibilityError(SyncPipelineError):
    """Permanent until an operator flips a flag on the shop."""

    status_code = 403
    code = "NOT_ELIGIBLE"


class SyncDisabledError(EligibilityError):
    code = "SYNC_DISABLED"


class DevelopmentStoreError(EligibilityError):
    code = "DEV_STORE_NOT_WHITELISTED"


class QuotaError(SyncPipelineError):
    """Budget exhausted; retry after the carried reset time."""

    status_code = 429
    code = "QUOTA_EXCEEDED"
    retryable = True


class TokenQuotaExceededError(QuotaError):
    code = "TOKEN_QUOTA_EXCEEDED"


class RefreshLimitExceededError(QuotaError):
    code = "REFRESH_LIMIT_EXCEEDED"


class RateLimitExceeded(QuotaError):
    code = "RATE_LIMIT_EXCEEDED"


class InternalSyncError(SyncPipelineError):
    """Generic failure surfaced after a rolled-back unit of work."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", **kwargs: Any):
        super().__init__(message, **kwargs)
