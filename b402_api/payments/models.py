"""
b402 payment wire models
x402-style value objects exchanged between payer, resource server and verifier
"""

import re
from typing import Annotated, Any, Dict, Optional

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from web3 import Web3

from b402_api.payments.errors import PaymentErrorCode

B402_VERSION = 1
EXACT_SCHEME = "exact"

_INTEGER_RE = re.compile(r"^[0-9]+$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130}$")


def _integer_string(value: Any) -> str:
    # Amounts travel as strings so 256-bit values survive JSON untouched
    if isinstance(value, bool):
        raise ValueError("amount must be an integer string")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("amount must be non-negative")
        return str(value)
    if isinstance(value, str) and _INTEGER_RE.match(value):
        return value
    raise ValueError("amount must be a non-negative integer string")


def _address(value: Any) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value!r}")
    return value


IntegerString = Annotated[str, BeforeValidator(_integer_string)]
Address = Annotated[str, AfterValidator(_address)]


class WireModel(BaseModel):
    """Base for models that travel as camelCase JSON"""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PaymentRequirement(WireModel):
    """What a protected operation demands (body of the 402 challenge)"""

    version: int = Field(default=B402_VERSION, alias="x402Version")
    scheme: str = Field(default=EXACT_SCHEME)
    network: str = Field(description="Chain identifier, e.g. bsc or bsc-testnet")
    asset: Address = Field(description="Token contract address")
    pay_to: Address = Field(alias="payTo")
    max_amount_required: IntegerString = Field(alias="maxAmountRequired", description="Smallest token unit")
    max_timeout_seconds: int = Field(default=300, alias="maxTimeoutSeconds", gt=0)
    relayer_contract: Address = Field(alias="relayerContract")
    description: str = ""
    resource: Optional[str] = None
    mime_type: Optional[str] = Field(default="application/json", alias="mimeType")


class Authorization(WireModel):
    """EIP-3009 style transfer authorization signed by the payer"""

    from_address: Address = Field(alias="from")
    to: Address
    value: IntegerString
    valid_after: int = Field(default=0, alias="validAfter", ge=0)
    valid_before: int = Field(alias="validBefore", gt=0)
    nonce: str

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v):
        if not _BYTES32_RE.match(v):
            raise ValueError("nonce must be a 0x-prefixed 32-byte hex string")
        return v.lower()

    @model_validator(mode="after")
    def validate_window(self):
        if self.valid_after >= self.valid_before:
            raise ValueError("validAfter must be earlier than validBefore")
        return self


class ExactPayload(WireModel):
    authorization: Authorization
    signature: str

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v):
        if not _SIGNATURE_RE.match(v):
            raise ValueError("signature must be a 0x-prefixed 65-byte hex string")
        return v


class PaymentPayload(WireModel):
    """Envelope the payer attaches to the retried request"""

    protocol_version: int = Field(
        default=B402_VERSION,
        validation_alias=AliasChoices("x402Version", "protocolVersion", "protocol_version"),
        serialization_alias="x402Version",
    )
    scheme: str = Field(default=EXACT_SCHEME)
    network: str
    token: str
    payload: ExactPayload

    @property
    def authorization(self) -> Authorization:
        return self.payload.authorization

    @property
    def signature(self) -> str:
        return self.payload.signature


class PaymentRecord(WireModel):
    """Settlement receipt attached to a paid response (informational)"""

    payer: str
    tx_hash: str = Field(alias="txHash")
    amount: IntegerString
    token: str
    network: Optional[str] = None


class VerificationError(BaseModel):
    code: PaymentErrorCode
    message: str


class SettlementResult(BaseModel):
    """Outcome of verify-and-settle: exactly one of record or error"""

    record: Optional[PaymentRecord] = None
    error: Optional[VerificationError] = None

    @model_validator(mode="after")
    def validate_outcome(self):
        if (self.record is None) == (self.error is None):
            raise ValueError("settlement result needs exactly one of record or error")
        return self

    @property
    def success(self) -> bool:
        return self.record is not None

    @classmethod
    def settled(cls, record: PaymentRecord) -> "SettlementResult":
        return cls(record=record)

    @classmethod
    def rejected(cls, code: PaymentErrorCode, message: str) -> "SettlementResult":
        return cls(error=VerificationError(code=code, message=message))
