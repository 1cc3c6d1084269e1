"""
Payment protocol error taxonomy

Each reason is distinct because the client remediation differs:
re-sign, wait, fund the wallet, or abandon.
"""

from enum import Enum


class PaymentErrorCode(str, Enum):
    MISSING_PAYMENT = "missing-payment"
    MALFORMED_PAYLOAD = "malformed-payload"
    SIGNATURE_INVALID = "signature-invalid"
    AUTHORIZATION_EXPIRED = "authorization-expired"
    AUTHORIZATION_NOT_YET_VALID = "authorization-not-yet-valid"
    AMOUNT_MISMATCH = "amount-mismatch"
    RECIPIENT_MISMATCH = "recipient-mismatch"
    NETWORK_MISMATCH = "network-mismatch"
    ASSET_MISMATCH = "asset-mismatch"
    NONCE_REPLAY = "nonce-replay"
    SETTLEMENT_FAILED = "settlement-failed"
    VERIFIER_UNREACHABLE = "verifier-unreachable"
    PAYMENT_INVALID = "payment-invalid"


_STATUS_CODES = {
    PaymentErrorCode.MISSING_PAYMENT: 402,
    PaymentErrorCode.MALFORMED_PAYLOAD: 400,
    PaymentErrorCode.SIGNATURE_INVALID: 402,
    PaymentErrorCode.AUTHORIZATION_EXPIRED: 402,
    PaymentErrorCode.AUTHORIZATION_NOT_YET_VALID: 402,
    PaymentErrorCode.AMOUNT_MISMATCH: 402,
    PaymentErrorCode.RECIPIENT_MISMATCH: 402,
    PaymentErrorCode.NETWORK_MISMATCH: 402,
    PaymentErrorCode.ASSET_MISMATCH: 402,
    PaymentErrorCode.NONCE_REPLAY: 409,
    PaymentErrorCode.SETTLEMENT_FAILED: 402,
    PaymentErrorCode.VERIFIER_UNREACHABLE: 503,
    PaymentErrorCode.PAYMENT_INVALID: 402,
}


def status_code_for(code: PaymentErrorCode) -> int:
    """HTTP status used when a request is rejected with this code"""
    return _STATUS_CODES.get(code, 402)


class MalformedPayloadError(ValueError):
    """Raised when a payment header cannot be decoded into a PaymentPayload."""

    code = PaymentErrorCode.MALFORMED_PAYLOAD
