"""
Client-side b402 payment signing
Builds and signs EIP-712 TransferWithAuthorization payloads for the B402 relayer
"""

import secrets
import time
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3
import structlog

from b402_api.payments.models import (
    EXACT_SCHEME,
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequirement,
)
from b402_api.payments.networks import BSC_TOKEN_DECIMALS, chain_id_for

logger = structlog.get_logger()

B402_DOMAIN_NAME = "B402"
B402_DOMAIN_VERSION = "1"

# Minimal ERC20 ABI for balance lookups
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]


def build_typed_data(requirement: PaymentRequirement, authorization: Authorization) -> dict:
    """Create EIP-712 typed data for a b402 transfer authorization"""
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "TransferWithAuthorization": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "validAfter", "type": "uint256"},
                {"name": "validBefore", "type": "uint256"},
                {"name": "nonce", "type": "bytes32"},
            ],
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": B402_DOMAIN_NAME,
            "version": B402_DOMAIN_VERSION,
            "chainId": chain_id_for(requirement.network),
            "verifyingContract": Web3.to_checksum_address(requirement.relayer_contract),
        },
        "message": {
            "from": Web3.to_checksum_address(authorization.from_address),
            "to": Web3.to_checksum_address(authorization.to),
            "value": int(authorization.value),
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": bytes.fromhex(authorization.nonce[2:]),
        },
    }


def recover_signer(requirement: PaymentRequirement, payment_payload: PaymentPayload) -> str:
    """
    Recover the address that signed a payload's authorization.

    The domain is rebuilt from the requirement, so a signature made for another
    chain or relayer recovers to an unrelated address.
    """
    typed_data = build_typed_data(requirement, payment_payload.authorization)
    encoded = encode_typed_data(full_message=typed_data)
    return Account.recover_message(encoded, signature=payment_payload.signature)


class PaymentSigner:
    """
    Signs b402 payment authorizations in response to a 402 challenge.

    Each call to sign() draws a fresh 32-byte nonce from the OS CSPRNG.
    """

    def __init__(self, private_key: str, rpc_url: Optional[str] = None):
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.rpc_url = rpc_url
        self._w3: Optional[Web3] = None

    def create_authorization(
        self,
        requirement: PaymentRequirement,
        now: Optional[int] = None,
        nonce: Optional[bytes] = None,
    ) -> Authorization:
        now = int(time.time()) if now is None else now
        nonce_bytes = secrets.token_bytes(32) if nonce is None else nonce
        if len(nonce_bytes) != 32:
            raise ValueError("nonce must be exactly 32 bytes")

        return Authorization(
            from_address=self.address,
            to=Web3.to_checksum_address(requirement.pay_to),
            value=requirement.max_amount_required,
            valid_after=0,
            valid_before=now + requirement.max_timeout_seconds,
            nonce="0x" + nonce_bytes.hex(),
        )

    def sign(
        self,
        requirement: PaymentRequirement,
        now: Optional[int] = None,
        nonce: Optional[bytes] = None,
    ) -> PaymentPayload:
        """
        Sign a payment authorization for a PaymentRequirement.

        Args:
            requirement: The requirement received in the 402 challenge
            now: Override for the current UNIX time
            nonce: Override for the random 32-byte nonce

        Returns:
            PaymentPayload ready to be encoded into the X-PAYMENT header
        """
        if requirement.scheme != EXACT_SCHEME:
            raise ValueError(f"Unsupported payment scheme: {requirement.scheme}")

        authorization = self.create_authorization(requirement, now=now, nonce=nonce)
        encoded = encode_typed_data(full_message=build_typed_data(requirement, authorization))
        signed = self.account.sign_message(encoded)

        logger.info(
            "payment_signed",
            payer=self.address,
            pay_to=authorization.to,
            amount=authorization.value,
            network=requirement.network,
            valid_before=authorization.valid_before,
        )

        return PaymentPayload(
            protocol_version=requirement.version,
            scheme=requirement.scheme,
            network=requirement.network,
            token=requirement.asset,
            payload=ExactPayload(
                authorization=authorization,
                signature=Web3.to_hex(signed.signature),
            ),
        )

    def token_balance(self, asset: str, decimals: int = BSC_TOKEN_DECIMALS) -> Decimal:
        """Get the signer's token balance in whole token units"""
        if not self.rpc_url:
            raise ValueError("rpc_url is required for balance lookups")
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url))
        token = self._w3.eth.contract(address=Web3.to_checksum_address(asset), abi=ERC20_ABI)
        balance_wei = token.functions.balanceOf(self.address).call()
        return Decimal(balance_wei) / Decimal(10 ** decimals)
