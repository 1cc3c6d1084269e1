"""
Payment verification and settlement

The resource server never settles payments itself. It hands the payload to a
Verifier: the b402 facilitator over HTTP in production, or an in-process
simulation for local development.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Set, Tuple

import httpx
import structlog
from pydantic import ValidationError
from web3 import Web3

from b402_api.payments.errors import PaymentErrorCode
from b402_api.payments.models import (
    PaymentPayload,
    PaymentRecord,
    PaymentRequirement,
    SettlementResult,
    VerificationError,
)
from b402_api.payments.networks import token_symbol_for
from b402_api.payments.signer import recover_signer

logger = structlog.get_logger()

DEFAULT_FACILITATOR_URL = "https://facilitator.b402.ai"


class Verifier(ABC):
    """Contract for the external verifier/settler"""

    @abstractmethod
    async def verify_and_settle(
        self,
        requirement: PaymentRequirement,
        payment_payload: PaymentPayload,
    ) -> SettlementResult:
        """Verify a payload against its requirement and settle it on-chain"""

    async def aclose(self) -> None:
        return None


def _reject(code: PaymentErrorCode, message: str) -> VerificationError:
    return VerificationError(code=code, message=message)


def preflight(
    requirement: PaymentRequirement,
    payment_payload: PaymentPayload,
    now: Optional[int] = None,
) -> Optional[VerificationError]:
    """
    Stateless checks that can be made before any settlement attempt.

    Nonce usage is deliberately not checked here: the verifier's ledger
    (ultimately the relayer contract) is the only source of truth for it.

    Returns:
        None when the payload passes, otherwise the first problem found
    """
    now = int(time.time()) if now is None else now
    authorization = payment_payload.authorization

    if payment_payload.scheme != requirement.scheme:
        return _reject(
            PaymentErrorCode.MALFORMED_PAYLOAD,
            f"Unsupported scheme {payment_payload.scheme!r}, expected {requirement.scheme!r}",
        )
    if payment_payload.network != requirement.network:
        return _reject(
            PaymentErrorCode.NETWORK_MISMATCH,
            f"Payment is for network {payment_payload.network!r}, expected {requirement.network!r}",
        )
    if payment_payload.token.lower() != requirement.asset.lower():
        return _reject(
            PaymentErrorCode.ASSET_MISMATCH,
            f"Payment token {payment_payload.token} does not match required asset {requirement.asset}",
        )
    if authorization.to.lower() != requirement.pay_to.lower():
        return _reject(
            PaymentErrorCode.RECIPIENT_MISMATCH,
            f"Authorization pays {authorization.to}, expected {requirement.pay_to}",
        )
    if int(authorization.value) != int(requirement.max_amount_required):
        return _reject(
            PaymentErrorCode.AMOUNT_MISMATCH,
            f"Authorization value {authorization.value} does not equal required "
            f"{requirement.max_amount_required}",
        )
    if authorization.valid_before <= now:
        return _reject(
            PaymentErrorCode.AUTHORIZATION_EXPIRED,
            f"Authorization expired at {authorization.valid_before}",
        )
    if authorization.valid_after > now:
        return _reject(
            PaymentErrorCode.AUTHORIZATION_NOT_YET_VALID,
            f"Authorization is not valid until {authorization.valid_after}",
        )

    try:
        signer = recover_signer(requirement, payment_payload)
    except Exception as e:
        return _reject(PaymentErrorCode.SIGNATURE_INVALID, f"Signature could not be recovered: {e}")
    if signer.lower() != authorization.from_address.lower():
        return _reject(
            PaymentErrorCode.SIGNATURE_INVALID,
            "Signature does not match the authorizing address",
        )
    return None


# Ordered: the first matching keyword group wins
_REASON_KEYWORDS: Tuple[Tuple[Tuple[str, ...], PaymentErrorCode], ...] = (
    (("nonce", "replay", "already_used", "already used"), PaymentErrorCode.NONCE_REPLAY),
    (("expired", "validbefore", "valid_before"), PaymentErrorCode.AUTHORIZATION_EXPIRED),
    (("not_yet_valid", "not yet valid", "validafter", "valid_after"), PaymentErrorCode.AUTHORIZATION_NOT_YET_VALID),
    (("signature",), PaymentErrorCode.SIGNATURE_INVALID),
    (("amount", "value"), PaymentErrorCode.AMOUNT_MISMATCH),
    (("recipient", "payto", "pay_to"), PaymentErrorCode.RECIPIENT_MISMATCH),
    (("asset",), PaymentErrorCode.ASSET_MISMATCH),
    (("network", "chain"), PaymentErrorCode.NETWORK_MISMATCH),
    (("insufficient", "balance", "allowance", "funds", "revert"), PaymentErrorCode.SETTLEMENT_FAILED),
    (("malformed", "parse", "invalid_payload"), PaymentErrorCode.MALFORMED_PAYLOAD),
)


def classify_reason(reason: Optional[str], default: PaymentErrorCode) -> PaymentErrorCode:
    """Map a facilitator reason string onto the local error taxonomy"""
    if not reason:
        return default
    normalized = str(reason).strip().lower()
    try:
        return PaymentErrorCode(normalized)
    except ValueError:
        pass
    for keywords, code in _REASON_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return code
    return default


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


class FacilitatorVerifier(Verifier):
    """
    Verifier backed by a b402 facilitator service.

    Calls POST /verify and then POST /settle, each with the body
    {x402Version, paymentPayload, paymentRequirements}.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = (url or DEFAULT_FACILITATOR_URL).rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _request_body(
        requirement: PaymentRequirement,
        payment_payload: PaymentPayload,
    ) -> Dict[str, Any]:
        return {
            "x402Version": payment_payload.protocol_version,
            "paymentPayload": payment_payload.to_wire(),
            "paymentRequirements": requirement.to_wire(),
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Tuple[httpx.Response, Dict[str, Any]]:
        response = await self._client.post(f"{self.url}{path}", json=body)
        try:
            data = response.json()
        except ValueError:
            data = {}
        return response, data if isinstance(data, dict) else {}

    async def verify_and_settle(
        self,
        requirement: PaymentRequirement,
        payment_payload: PaymentPayload,
    ) -> SettlementResult:
        body = self._request_body(requirement, payment_payload)
        payer = payment_payload.authorization.from_address

        try:
            response, data = await self._post("/verify", body)
            if response.status_code >= 500:
                return self._unreachable(f"Facilitator verify failed with HTTP {response.status_code}")

            is_valid = bool(_pick(data, "isValid", "is_valid", "valid")) and response.is_success
            if not is_valid:
                reason = _pick(data, "invalidReason", "invalid_reason", "errorReason", "error", "message")
                code = classify_reason(reason, PaymentErrorCode.PAYMENT_INVALID)
                logger.warning("facilitator_verify_rejected", payer=payer, reason=reason, code=code.value)
                return SettlementResult.rejected(code, str(reason or f"HTTP {response.status_code}"))

            response, data = await self._post("/settle", body)
            if response.status_code >= 500:
                return self._unreachable(f"Facilitator settle failed with HTTP {response.status_code}")

        except httpx.TimeoutException as e:
            return self._unreachable(f"Facilitator timed out: {e}")
        except httpx.TransportError as e:
            return self._unreachable(f"Facilitator unreachable: {e}")

        return self._settle_result(requirement, payment_payload, response, data)

    def _settle_result(
        self,
        requirement: PaymentRequirement,
        payment_payload: PaymentPayload,
        response: httpx.Response,
        data: Dict[str, Any],
    ) -> SettlementResult:
        authorization = payment_payload.authorization
        tx = _pick(data, "transaction", "transactionHash", "txHash", "tx", "hash")
        error_reason = _pick(data, "errorReason", "error_reason", "error", "message")
        success = bool(data.get("success", error_reason is None)) and response.is_success

        if not success or not tx:
            reason = error_reason or ("missing transaction hash" if success else f"HTTP {response.status_code}")
            code = classify_reason(error_reason, PaymentErrorCode.SETTLEMENT_FAILED)
            logger.warning(
                "facilitator_settle_failed",
                payer=authorization.from_address,
                reason=reason,
                code=code.value,
            )
            return SettlementResult.rejected(code, str(reason))

        network = _pick(data, "network", "networkId") or requirement.network
        try:
            record = PaymentRecord(
                payer=_pick(data, "payer", "from") or authorization.from_address,
                tx_hash=str(tx),
                amount=authorization.value,
                token=token_symbol_for(requirement.network, requirement.asset),
                network=str(network),
            )
        except ValidationError as e:
            # Reported as settled; keep the raw response for reconciliation
            logger.error(
                "facilitator_settle_response_invalid",
                payer=authorization.from_address,
                tx_hash=str(tx),
                response=data,
                error=str(e),
            )
            return SettlementResult.rejected(
                PaymentErrorCode.SETTLEMENT_FAILED,
                f"Facilitator settlement response could not be read (transaction {tx})",
            )
        logger.info(
            "facilitator_settled",
            payer=record.payer,
            tx_hash=record.tx_hash,
            amount=record.amount,
            network=record.network,
        )
        return SettlementResult.settled(record)

    def _unreachable(self, message: str) -> SettlementResult:
        logger.error("facilitator_unreachable", url=self.url, error=message)
        return SettlementResult.rejected(PaymentErrorCode.VERIFIER_UNREACHABLE, message)


class SimulatedVerifier(Verifier):
    """
    In-process stand-in for the facilitator (no on-chain transfer).

    Runs the same checks the facilitator would make and keeps its own
    consumed-nonce ledger, scoped to (payer, relayer contract).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._consumed: Set[Tuple[str, str, str]] = set()

    async def verify_and_settle(
        self,
        requirement: PaymentRequirement,
        payment_payload: PaymentPayload,
    ) -> SettlementResult:
        error = preflight(requirement, payment_payload, now=int(self._clock()))
        if error is not None:
            return SettlementResult(error=error)

        authorization = payment_payload.authorization
        key = (
            authorization.from_address.lower(),
            requirement.relayer_contract.lower(),
            authorization.nonce.lower(),
        )
        # Check-and-record must not await in between
        if key in self._consumed:
            logger.warning(
                "payment_nonce_replayed",
                payer=authorization.from_address,
                nonce=authorization.nonce,
            )
            return SettlementResult.rejected(
                PaymentErrorCode.NONCE_REPLAY, "Authorization nonce already used"
            )
        self._consumed.add(key)

        tx_hash = Web3.to_hex(Web3.keccak(hexstr=payment_payload.signature))
        logger.info(
            "payment_settlement_simulated",
            payer=authorization.from_address,
            pay_to=authorization.to,
            amount=authorization.value,
            tx_hash=tx_hash,
            mode="simulated",
        )
        return SettlementResult.settled(
            PaymentRecord(
                payer=authorization.from_address,
                tx_hash=tx_hash,
                amount=authorization.value,
                token=token_symbol_for(requirement.network, requirement.asset),
                network=requirement.network,
            )
        )
