"""Domain errors raised by ledger, gate, settlement and catalog services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ImaginifyError(RuntimeError):
    """Base class for errors surfaced to API callers."""

    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload.update(self.context)
        return payload


class NotFoundError(ImaginifyError):
    """Entity reference does not resolve."""

    status_code = 404
    code = "not_found"


class UnauthorizedError(ImaginifyError):
    """Actor is not the resource's author."""

    status_code = 403
    code = "unauthorized"


class InsufficientCreditsError(ImaginifyError):
    """Balance is below the required cost."""

    status_code = 402
    code = "insufficient_credits"


class InvalidSignatureError(ImaginifyError):
    """Webhook authenticity check failed."""

    status_code = 400
    code = "invalid_signature"


class InvalidPurchaseEventError(ImaginifyError):
    """Malformed or inconsistent payment event payload."""

    status_code = 422
    code = "invalid_purchase_event"


class UpstreamFailureError(ImaginifyError):
    """External provider call failed or timed out."""

    status_code = 502
    code = "upstream_failure"


class ConflictError(ImaginifyError):
    """Write collides with a unique value held by another record."""

    status_code = 409
    code = "conflict"
