"""Error taxonomy for the credit, idempotency, dispatch and settlement core.

Every error carries a stable machine-readable ``code`` and the HTTP status it
maps to; ``main.py`` renders them as ``{"detail": {"code", "message", ...}}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base exception for caller-visible failures."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retriable = False

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class InsufficientBalanceError(CoreError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 402


class AccountOnHoldError(CoreError):
    code = "ACCOUNT_ON_HOLD"
    status_code = 403


class QuotaExceededError(CoreError):
    code = "QUOTA_EXCEEDED"
    status_code = 429
    retriable = True


class DuplicateInFlightError(CoreError):
    code = "DUPLICATE_IN_FLIGHT"
    status_code = 409
    retriable = True


class BrokerUnavailableError(CoreError):
    code = "BROKER_UNAVAILABLE"
    status_code = 503
    retriable = True


class SignatureInvalidError(CoreError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class PaymentGatewayError(CoreError):
    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502
    retriable = True


class JobFailure(CoreError):
    """Terminal job failure. Stored on the job, never raised to the submitter."""

    code = "JOB_FAILED"
    public_message = "Generation failed."

    def __init__(self, message: str = "", public_message: Optional[str] = None, **extra: Any):
        super().__init__(message, **extra)
        if public_message:
            self.public_message = public_message


class JobTimeoutError(JobFailure):
    code = "JOB_TIMEOUT"
    public_message = "Generation took too long and was stopped. You were not charged."


class UpstreamServiceError(JobFailure):
    code = "JOB_UPSTREAM_ERROR"
    public_message = "The generation service is temporarily unavailable. You were not charged."


class InvalidInputError(JobFailure):
    code = "JOB_INVALID_INPUT"
    public_message = "The submitted pages could not be read. Re-capture them and try again."


class WebhookNotConfiguredError(CoreError):
    code = "WEBHOOK_NOT_CONFIGURED"
    status_code = 500


class InvalidWebhookPayloadError(CoreError):
    code = "INVALID_WEBHOOK_PAYLOAD"
    status_code = 400


class CheckoutPersistError(CoreError):
    code = "PENDING_PAYMENT_SAVE_FAILED"
    status_code = 500
    retriable = True
