"""
HTTP header codec for b402 payments
Payloads travel as base64-encoded JSON
"""

import base64
import binascii
import json

from pydantic import ValidationError

from b402_api.payments.errors import MalformedPayloadError
from b402_api.payments.models import PaymentPayload, PaymentRecord

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


def encode_payment_header(payment_payload: PaymentPayload) -> str:
    """Encode PaymentPayload as base64 for the X-PAYMENT header"""
    return base64.b64encode(
        payment_payload.model_dump_json(by_alias=True, exclude_none=True).encode()
    ).decode()


def decode_payment_header(encoded: str) -> PaymentPayload:
    """Decode base64 PaymentPayload from the X-PAYMENT header"""
    if not encoded or not encoded.strip():
        raise MalformedPayloadError("Payment header is empty")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedPayloadError(f"Payment header is not valid base64: {exc}") from exc

    try:
        raw = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise MalformedPayloadError(f"Payment header is not valid JSON: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise MalformedPayloadError("Payment header must encode a JSON object")

    try:
        return PaymentPayload.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise MalformedPayloadError(f"Invalid payment payload: {problems}") from exc


def encode_payment_response(record: PaymentRecord) -> str:
    """Encode a settlement record for the X-PAYMENT-RESPONSE header"""
    return base64.b64encode(
        record.model_dump_json(by_alias=True, exclude_none=True).encode()
    ).decode()


def decode_payment_response(encoded: str) -> PaymentRecord:
    decoded = base64.b64decode(encoded).decode()
    return PaymentRecord.model_validate_json(decoded)
