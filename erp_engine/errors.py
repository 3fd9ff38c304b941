from __future__ import annotations

from typing import Any, Dict

from erp_engine.messages import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400


class InvalidTransition(UserActionError):
    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409


class Forbidden(UserActionError):
    default_code = "forbidden"
    default_message_key = "forbidden"
    default_http_status = 403


class GuardFailed(UserActionError):
    default_code = "guard_failed"
    default_message_key = "guard_failed"
    default_http_status = 409


class DuplicateReceipt(UserActionError):
    """A goods receipt with the same idempotency token was already applied."""

    default_code = "duplicate_receipt"
    default_message_key = "duplicate_receipt"
    default_http_status = 409


class DuplicateReceiptRequest(UserActionError):
    default_code = "duplicate_receipt_request"
    default_message_key = "duplicate_receipt_request"
    default_http_status = 409


class ReceiptAlreadyExists(DuplicateReceiptRequest):
    """Raised on a repeated payment receipt request; callers fetch the stored receipt."""

    default_code = "receipt_already_exists"
    default_message_key = "receipt_already_exists"

    def __init__(self, invoice_id: str, **kwargs) -> None:
        self.invoice_id = invoice_id
        payload = dict(kwargs.pop("payload", None) or {})
        payload.setdefault("invoice_id", invoice_id)
        super().__init__(payload=payload, **kwargs)


class OverpaymentError(UserActionError):
    default_code = "overpayment"
    default_message_key = "overpayment"
    default_http_status = 422


class NotFound(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404


class ConcurrencyConflict(UserActionError):
    default_code = "concurrency_conflict"
    default_message_key = "concurrency_conflict"
    default_http_status = 409


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
