from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for errors raised by the billing and subscription services.

    Each subclass fixes the HTTP status the API boundary maps it to; services
    never build responses themselves.
    """

    status_code = 500
    default_code = "billing_error"

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.context:
            payload["context"] = self.context
        return payload


class ValidationFailed(BillingError):
    status_code = 400
    default_code = "validation_failed"


class Forbidden(BillingError):
    status_code = 403
    default_code = "forbidden"


class NotFound(BillingError):
    status_code = 404
    default_code = "not_found"


class Conflict(BillingError):
    status_code = 409
    default_code = "conflict"


class InvalidStateTransition(Conflict):
    default_code = "invalid_state_transition"


class InvoiceNumberConflict(Conflict):
    default_code = "invoice_number_conflict"


class WorkerAlreadyRunning(Conflict):
    default_code = "worker_already_running"


class TransientError(BillingError):
    status_code = 503
    default_code = "transient_error"
