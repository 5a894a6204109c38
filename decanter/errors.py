"""Error taxonomy shared by every stage of the request pipeline.

Each error knows its HTTP status and a client-safe message. Anything that
could leak provider responses or raw model output goes into ``detail``, which
is only rendered in development mode.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DecanterError(Exception):
    status_code: int = 500
    kind: str = "internal_error"
    message: str = "An error occurred while processing your request"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[Dict[str, Any]] = None) -> None:
        self.message = message or self.message
        self.detail = detail or {}
        super().__init__(self.message)

    def to_payload(self, *, include_detail: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "kind": self.kind}
        if include_detail and self.detail:
            payload["detail"] = self.detail
        return payload

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationFailed(DecanterError):
    status_code = 400
    kind = "validation_error"
    message = "Validation failed"

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None) -> None:
        super().__init__(message)
        self.errors = errors

    def to_payload(self, *, include_detail: bool = False) -> Dict[str, Any]:
        payload = super().to_payload(include_detail=include_detail)
        payload["errors"] = self.errors
        return payload


class PayloadTooLarge(DecanterError):
    status_code = 413
    kind = "payload_too_large"
    message = "Request body is too large"

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(f"Request body exceeds {limit_bytes} bytes")
        self.limit_bytes = limit_bytes


class UnsupportedMediaType(DecanterError):
    status_code = 415
    kind = "unsupported_media_type"
    message = "Content-Type must be application/json"


class RateLimited(DecanterError):
    status_code = 429
    kind = "rate_limited"
    message = "Rate limit exceeded"

    def __init__(self, retry_after_seconds: int, reset_at: int, limit: int) -> None:
        super().__init__(f"Rate limit exceeded. Try again in {retry_after_seconds} seconds.")
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at
        self.limit = limit

    def to_payload(self, *, include_detail: bool = False) -> Dict[str, Any]:
        payload = super().to_payload(include_detail=include_detail)
        payload["retry_after_seconds"] = self.retry_after_seconds
        payload["reset"] = self.reset_at
        return payload

    def headers(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after_seconds),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class UpstreamUnavailable(DecanterError):
    """Provider cannot be used: missing credential, overload, or transport failure."""

    status_code = 503
    kind = "upstream_unavailable"
    message = "The review service is temporarily unavailable"

    def __init__(self, message: Optional[str] = None, *, retryable: bool = True, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, detail=detail)
        self.retryable = retryable

    def to_payload(self, *, include_detail: bool = False) -> Dict[str, Any]:
        payload = super().to_payload(include_detail=include_detail)
        payload["retryable"] = self.retryable
        return payload


class UpstreamTimeout(DecanterError):
    status_code = 504
    kind = "upstream_timeout"
    message = "The model took too long to respond"


class UpstreamError(DecanterError):
    status_code = 502
    kind = "upstream_error"
    message = "The model provider rejected the request"


class NormalizationFailure(DecanterError):
    status_code = 500
    kind = "normalization_failure"
    message = "The model returned an unusable response. Please try again."

    def __init__(self, reason: str, *, raw_excerpt: str = "", issues: Optional[List[Dict[str, str]]] = None) -> None:
        self.reason = reason
        self.raw_excerpt = raw_excerpt
        self.issues = issues or []
        super().__init__(detail={"reason": reason, "raw_excerpt": raw_excerpt, "issues": self.issues})


class InternalError(DecanterError):
    status_code = 500
    kind = "internal_error"
