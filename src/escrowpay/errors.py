"""Error taxonomy for escrow funding and checkout.

Every error carries a stable machine code, the HTTP status the API answers
with, and a message safe to show to the buyer or payee.
"""

from typing import Optional


class EscrowPayError(Exception):
    """Base class for handled escrow errors."""

    code = "escrow_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class TokenNotFound(EscrowPayError):
    code = "token_not_found"
    status_code = 404


class ChainNotReady(EscrowPayError):
    code = "chain_not_ready"
    status_code = 409


class InvalidAmount(EscrowPayError):
    code = "invalid_amount"
    status_code = 422


class InvalidPayee(EscrowPayError):
    code = "invalid_payee"
    status_code = 422


class ApprovalRejected(EscrowPayError):
    code = "approval_rejected"


class FundingRejected(EscrowPayError):
    code = "funding_rejected"


class TransactionReverted(EscrowPayError):
    code = "transaction_reverted"
    status_code = 422

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class IntentStale(EscrowPayError):
    code = "intent_stale"
    status_code = 409


class EscrowNotFound(EscrowPayError):
    code = "escrow_not_found"
    status_code = 404


class ReceiptNotFound(EscrowPayError):
    code = "receipt_not_found"
    status_code = 404


class InvalidTransition(EscrowPayError):
    code = "invalid_transition"
    status_code = 409


class FundingNotVerified(EscrowPayError):
    code = "funding_not_verified"
    status_code = 422


class ReleaseNotVerified(EscrowPayError):
    code = "release_not_verified"
    status_code = 422


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        TokenNotFound,
        ChainNotReady,
        InvalidAmount,
        InvalidPayee,
        ApprovalRejected,
        FundingRejected,
        TransactionReverted,
        IntentStale,
        EscrowNotFound,
        ReceiptNotFound,
        InvalidTransition,
        FundingNotVerified,
        ReleaseNotVerified,
    )
}


def error_from_payload(payload: dict) -> EscrowPayError:
    """Rebuild a typed error from an API error body."""
    code = payload.get("code", EscrowPayError.code)
    message = payload.get("message", "Unknown error")
    error_cls = ERRORS_BY_CODE.get(code, EscrowPayError)
    return error_cls(message)
