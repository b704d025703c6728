"""Error taxonomy shared by the sync engine and the HTTP layer.

Every error carries a stable machine-readable ``code`` and the HTTP status
the REST layer should use.  Inside a sync batch these errors are captured
per mutation and returned as data; outside a batch the API exception
handler renders them as ``{"error": {"code", "message", "details"}}``.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all expected, user-visible sync failures."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON error body for this error."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(SyncError):
    """Malformed payload, duplicate document number, unknown mutation type."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(SyncError):
    """Entity id unknown to this tenant."""

    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(SyncError):
    """Entity owned by another tenant, or not in an editable state."""

    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(SyncError):
    """A live idempotency key was reused for a different payload."""

    status_code = 409
    default_code = "CONFLICT"


class QuotaExceededError(SyncError):
    """Raised when a tenant has used up its monthly issuance entitlement.

    ``usage`` is the snapshot the client needs to render an upgrade prompt
    without a follow-up call (limit, used, remaining, month key, plan tier).
    """

    status_code = 402
    default_code = "PLAN_LIMIT_REACHED"

    def __init__(self, tenant_id: str, usage: dict[str, Any]) -> None:
        self.tenant_id = tenant_id
        self.usage = usage
        super().__init__(
            f"Monthly invoice limit reached ({usage.get('used')}/{usage.get('limit')}). Please upgrade your plan.",
            details={"usage": usage},
        )
