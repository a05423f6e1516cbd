from __future__ import annotations

from datetime import datetime
from typing import Any


class PlatformError(Exception):
    error_code = "platform_error"
    status_code = 500

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ValidationError(PlatformError):
    error_code = "validation_error"
    status_code = 400


class PlanChangeRejected(ValidationError):
    error_code = "plan_change_rejected"

    def __init__(
        self,
        message: str,
        *,
        renewal_date: datetime | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(context or {})
        if renewal_date is not None:
            payload["renewal_date"] = renewal_date.isoformat()
        super().__init__(message, context=payload)
        self.renewal_date = renewal_date


class ForbiddenError(PlatformError):
    error_code = "forbidden"
    status_code = 403


class NotFoundError(PlatformError):
    error_code = "not_found"
    status_code = 404


class ConflictError(PlatformError):
    error_code = "conflict"
    status_code = 409


class TransactionError(PlatformError):
    error_code = "transaction_failed"
    status_code = 500


class ProvisioningFailed(TransactionError):
    error_code = "provisioning_failed"


class GatewayError(PlatformError):
    error_code = "payment_gateway_error"
    status_code = 502


class ExternalServiceDegraded(PlatformError):
    """Identity provider step that failed and was replaced by a local fallback.

    Recorded on provisioning results; never raised to the caller.
    """

    error_code = "external_service_degraded"
    status_code = 200

    def __init__(self, service: str, step: str, cause: Exception | str) -> None:
        super().__init__(
            f"{service} {step} failed: {cause}",
            context={"service": service, "step": step},
        )
        self.service = service
        self.step = step
        self.cause = cause
