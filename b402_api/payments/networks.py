"""
BNB Chain network, token and relayer constants for b402 payments
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, localcontext
from typing import Dict

from web3 import Web3

# BSC stablecoins are all 18 decimals
BSC_TOKEN_DECIMALS = 18


class UnsupportedNetworkError(ValueError):
    """Raised when a network is not known to b402."""


class UnsupportedTokenError(ValueError):
    """Raised when a token is not offered on a network."""


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int = BSC_TOKEN_DECIMALS


@dataclass(frozen=True)
class NetworkInfo:
    name: str
    network_id: str
    chain_id: int
    rpc_url: str
    explorer_url: str
    relayer_contract: str
    tokens: Dict[str, TokenInfo] = field(default_factory=dict)


def _token(symbol: str, address: str) -> TokenInfo:
    return TokenInfo(symbol=symbol, address=Web3.to_checksum_address(address))


NETWORKS: Dict[str, NetworkInfo] = {
    "mainnet": NetworkInfo(
        name="mainnet",
        network_id="bsc",
        chain_id=56,
        rpc_url="https://bsc-dataseed1.binance.org",
        explorer_url="https://bscscan.com",
        relayer_contract=Web3.to_checksum_address("0xE1C2830d5DDd6B49E9c46EbE03a98Cb44CD8eA5a"),
        tokens={
            "USD1": _token("USD1", "0x8d0d000ee44948fc98c9b98a4fa4921476f08b0d"),
            "USDT": _token("USDT", "0x55d398326f99059fF775485246999027B3197955"),
            "USDC": _token("USDC", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"),
        },
    ),
    "testnet": NetworkInfo(
        name="testnet",
        network_id="bsc-testnet",
        chain_id=97,
        rpc_url="https://data-seed-prebsc-1-s1.binance.org:8545",
        explorer_url="https://testnet.bscscan.com",
        relayer_contract=Web3.to_checksum_address("0x62150F2c3A29fDA8bCf22c0F22Eb17270FCBb78A"),
        tokens={
            "USDT": _token("USDT", "0x337610d27c682E347C9cD60BD4b3b107C9d34dDd"),
        },
    ),
}


def get_network(name: str) -> NetworkInfo:
    try:
        return NETWORKS[name]
    except KeyError as exc:
        raise UnsupportedNetworkError(
            f"Network {name!r} is not supported. Supported networks: {', '.join(NETWORKS)}"
        ) from exc


def get_network_by_id(network_id: str) -> NetworkInfo:
    """Look up a network by its wire identifier ("bsc", "bsc-testnet")"""
    for info in NETWORKS.values():
        if info.network_id == network_id:
            return info
    raise UnsupportedNetworkError(f"Unknown b402 network id {network_id!r}")


def chain_id_for(network_id: str) -> int:
    return get_network_by_id(network_id).chain_id


def get_token(network_name: str, symbol: str) -> TokenInfo:
    network = get_network(network_name)
    try:
        return network.tokens[symbol]
    except KeyError as exc:
        raise UnsupportedTokenError(
            f"Token {symbol!r} is not available on {network_name}. "
            f"Available tokens: {', '.join(network.tokens)}"
        ) from exc


def token_symbol_for(network_id: str, asset: str) -> str:
    """Reverse lookup of a token symbol; falls back to the address"""
    try:
        network = get_network_by_id(network_id)
    except UnsupportedNetworkError:
        return asset
    for token in network.tokens.values():
        if token.address.lower() == asset.lower():
            return token.symbol
    return asset


def to_base_units(price: str, decimals: int) -> str:
    """
    Convert a human price ("0.01" or "$0.01") into the token's smallest unit.

    Returns a decimal integer string; floats never enter the calculation.
    """
    clean = str(price).strip().lstrip("$").strip()
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid price format: {price!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid price format: {price!r}")
    if amount < 0:
        raise ValueError("Price must be non-negative")

    # Enough precision that scaling is exact at any price length
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(amount.as_tuple().digits) + decimals + 1)
        scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Price {price!r} has more precision than {decimals} decimals")
    return str(int(scaled))


def from_base_units(amount: str, decimals: int = BSC_TOKEN_DECIMALS) -> Decimal:
    return Decimal(int(amount)) / (Decimal(10) ** decimals)


def explorer_tx_url(network_id: str, tx_hash: str) -> str:
    return f"{get_network_by_id(network_id).explorer_url}/tx/{tx_hash}"
