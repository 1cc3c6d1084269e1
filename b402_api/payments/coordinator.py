"""
Challenge/response coordination for payment-protected operations

A PaymentGate is built once at startup; every inbound request gets its own
PaymentCoordinator, which walks the request through
unchallenged -> challenged -> verifying -> settled | rejected.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from b402_api.payments.encoding import decode_payment_header
from b402_api.payments.errors import MalformedPayloadError, PaymentErrorCode
from b402_api.payments.models import (
    EXACT_SCHEME,
    PaymentPayload,
    PaymentRecord,
    PaymentRequirement,
    SettlementResult,
    VerificationError,
)
from b402_api.payments.networks import NetworkInfo, TokenInfo
from b402_api.payments.verifier import Verifier, preflight

logger = structlog.get_logger()

ProtectedOperation = Callable[[PaymentRecord], Awaitable[Any]]
DisconnectProbe = Callable[[], Awaitable[bool]]


class PaymentState(str, Enum):
    UNCHALLENGED = "unchallenged"
    CHALLENGED = "challenged"
    VERIFYING = "verifying"
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class PaymentOutcome:
    """Terminal result of one coordinated request"""

    state: PaymentState
    requirement: PaymentRequirement
    record: Optional[PaymentRecord] = None
    error: Optional[VerificationError] = None
    result: Any = None
    operation_error: Optional[Exception] = None
    operation_invoked: bool = False

    @property
    def challenged(self) -> bool:
        return self.state == PaymentState.CHALLENGED

    @property
    def settled(self) -> bool:
        return self.state == PaymentState.SETTLED

    @property
    def rejected(self) -> bool:
        return self.state == PaymentState.REJECTED


@dataclass(frozen=True)
class PaymentGate:
    """Immutable payment terms for protected operations"""

    network: NetworkInfo
    token: TokenInfo
    pay_to: str
    amount: str
    max_timeout_seconds: int
    verifier: Verifier
    verifier_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config, verifier: Verifier) -> "PaymentGate":
        return cls(
            network=config.network_info,
            token=config.token_info,
            pay_to=config.pay_to_address,
            amount=config.price_base_units,
            max_timeout_seconds=config.max_timeout_seconds,
            verifier=verifier,
            verifier_timeout_seconds=config.verifier_timeout_seconds,
        )

    def requirement_for(
        self,
        resource: Optional[str] = None,
        description: str = "",
    ) -> PaymentRequirement:
        return PaymentRequirement(
            scheme=EXACT_SCHEME,
            network=self.network.network_id,
            asset=self.token.address,
            pay_to=self.pay_to,
            max_amount_required=self.amount,
            max_timeout_seconds=self.max_timeout_seconds,
            relayer_contract=self.network.relayer_contract,
            description=description,
            resource=resource,
        )

    def coordinator(
        self,
        resource: Optional[str] = None,
        description: str = "",
    ) -> "PaymentCoordinator":
        return PaymentCoordinator(
            requirement=self.requirement_for(resource, description),
            verifier=self.verifier,
            verifier_timeout_seconds=self.verifier_timeout_seconds,
        )


class PaymentCoordinator:
    """
    Request-scoped payment state machine.

    The protected operation runs at most once, and only after the verifier
    reports a successful settlement. Nothing is retried automatically: a
    rejected client starts over with a fresh nonce.
    """

    def __init__(
        self,
        requirement: PaymentRequirement,
        verifier: Verifier,
        verifier_timeout_seconds: float = 30.0,
    ):
        self.requirement = requirement
        self.verifier = verifier
        self.verifier_timeout_seconds = verifier_timeout_seconds
        self.state = PaymentState.UNCHALLENGED
        self._used = False

    async def run(
        self,
        payment_header: Optional[str],
        operation: ProtectedOperation,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> PaymentOutcome:
        """
        Drive one request through the payment lifecycle.

        Args:
            payment_header: Raw X-PAYMENT header value, if the client sent one
            operation: The protected operation, given the settlement record
            is_disconnected: Probe checked after settlement; a gone client
                leaves the settlement standing but skips the operation

        Returns:
            PaymentOutcome describing the terminal state
        """
        if self._used:
            raise RuntimeError("PaymentCoordinator is request-scoped and can only run once")
        self._used = True

        if not payment_header:
            self.state = PaymentState.CHALLENGED
            logger.info(
                "payment_challenge_issued",
                resource=self.requirement.resource,
                amount=self.requirement.max_amount_required,
                pay_to=self.requirement.pay_to,
            )
            return PaymentOutcome(
                state=PaymentState.CHALLENGED,
                requirement=self.requirement,
                error=VerificationError(
                    code=PaymentErrorCode.MISSING_PAYMENT, message="Payment required"
                ),
            )

        # A header answers a challenge issued on an earlier attempt
        self.state = PaymentState.CHALLENGED
        try:
            payment_payload = decode_payment_header(payment_header)
        except MalformedPayloadError as e:
            return self._reject(VerificationError(code=e.code, message=str(e)))

        error = preflight(self.requirement, payment_payload)
        if error is not None:
            return self._reject(error, payment_payload)

        self.state = PaymentState.VERIFYING
        result = await self._verify(payment_payload)
        if not result.success:
            return self._reject(result.error, payment_payload)

        record = result.record
        self.state = PaymentState.SETTLED
        logger.info(
            "payment_settled",
            payer=record.payer,
            tx_hash=record.tx_hash,
            amount=record.amount,
            token=record.token,
        )
        outcome = PaymentOutcome(
            state=PaymentState.SETTLED,
            requirement=self.requirement,
            record=record,
        )

        if is_disconnected is not None and await is_disconnected():
            logger.warning(
                "payment_settled_client_disconnected",
                payer=record.payer,
                tx_hash=record.tx_hash,
            )
            return outcome

        outcome.operation_invoked = True
        try:
            outcome.result = await operation(record)
        except Exception as e:
            # Funds have moved; the caller still gets the payment record
            logger.error(
                "protected_operation_failed",
                error=str(e),
                payer=record.payer,
                tx_hash=record.tx_hash,
            )
            outcome.operation_error = e
        return outcome

    async def _verify(self, payment_payload: PaymentPayload) -> SettlementResult:
        try:
            return await asyncio.wait_for(
                self.verifier.verify_and_settle(self.requirement, payment_payload),
                timeout=self.verifier_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return SettlementResult.rejected(
                PaymentErrorCode.VERIFIER_UNREACHABLE,
                f"Verifier did not respond within {self.verifier_timeout_seconds}s",
            )
        except (httpx.TransportError, OSError) as e:
            return SettlementResult.rejected(
                PaymentErrorCode.VERIFIER_UNREACHABLE, f"Verifier unreachable: {e}"
            )
        except Exception as e:
            # Settlement state unknown; surfaces as a payment failure
            logger.exception(
                "payment_verifier_failed",
                payer=payment_payload.authorization.from_address,
                nonce=payment_payload.authorization.nonce,
                error=str(e),
            )
            return SettlementResult.rejected(
                PaymentErrorCode.SETTLEMENT_FAILED, f"Verifier failed: {e}"
            )

    def _reject(
        self,
        error: VerificationError,
        payment_payload: Optional[PaymentPayload] = None,
    ) -> PaymentOutcome:
        self.state = PaymentState.REJECTED
        logger.warning(
            "payment_rejected",
            reason=error.code.value,
            message=error.message,
            payer=payment_payload.authorization.from_address if payment_payload else None,
        )
        return PaymentOutcome(
            state=PaymentState.REJECTED,
            requirement=self.requirement,
            error=error,
        )
