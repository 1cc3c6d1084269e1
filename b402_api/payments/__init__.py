"""
b402 Payment Module
HTTP 402 challenge/response protocol for gasless BNB Chain token payments
"""

from b402_api.payments.models import (
    PaymentRequirement,
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRecord,
    VerificationError,
    SettlementResult,
)
from b402_api.payments.errors import (
    PaymentErrorCode,
    MalformedPayloadError,
    status_code_for,
)
from b402_api.payments.encoding import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    encode_payment_header,
    decode_payment_header,
    encode_payment_response,
    decode_payment_response,
)
from b402_api.payments.signer import PaymentSigner, recover_signer
from b402_api.payments.verifier import (
    Verifier,
    FacilitatorVerifier,
    SimulatedVerifier,
    preflight,
)
from b402_api.payments.coordinator import (
    PaymentState,
    PaymentOutcome,
    PaymentGate,
    PaymentCoordinator,
)

__all__ = [
    "PaymentRequirement",
    "Authorization",
    "ExactPayload",
    "PaymentPayload",
    "PaymentRecord",
    "VerificationError",
    "SettlementResult",
    "PaymentErrorCode",
    "MalformedPayloadError",
    "status_code_for",
    "X_PAYMENT_HEADER",
    "X_PAYMENT_RESPONSE_HEADER",
    "encode_payment_header",
    "decode_payment_header",
    "encode_payment_response",
    "decode_payment_response",
    "PaymentSigner",
    "recover_signer",
    "Verifier",
    "FacilitatorVerifier",
    "SimulatedVerifier",
    "preflight",
    "PaymentState",
    "PaymentOutcome",
    "PaymentGate",
    "PaymentCoordinator",
]
