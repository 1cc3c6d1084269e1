"""
b402 Payment API Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Dict, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from b402_api.payments.networks import (
    NetworkInfo,
    TokenInfo,
    get_network,
    get_token,
    to_base_units,
)
from b402_api.payments.verifier import DEFAULT_FACILITATOR_URL

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_EIGENAI_BASE_URL = "https://eigenai.eigencloud.xyz/v1"

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "eigenai": "gpt-oss-120b-f16",
}


class ServerConfig(BaseSettings):
    """Configuration for the payment-gated API server"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")
    port: int = Field(default=3000, description="Port to bind the server to")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # Payment Configuration
    pay_to_address: str = Field(description="Recipient wallet for payments")
    network: Literal["mainnet", "testnet"] = Field(default="testnet")
    price: str = Field(default="0.01", description="Price per request in token units")
    token: Literal["USD1", "USDT", "USDC"] = Field(default="USDT")
    max_timeout_seconds: int = Field(default=300, gt=0, description="Authorization validity window")

    # Verifier / Facilitator
    facilitator_url: Optional[str] = Field(default=None)
    verifier_mode: Literal["facilitator", "simulated"] = Field(default="facilitator")
    verifier_timeout_seconds: float = Field(default=30.0, gt=0)

    # AI Provider
    ai_provider: Literal["openai", "eigenai"] = Field(default="openai")
    openai_api_key: Optional[str] = Field(default=None)
    openai_base_url: Optional[str] = Field(default=None)
    eigenai_api_key: Optional[str] = Field(default=None)
    eigenai_base_url: str = Field(default=DEFAULT_EIGENAI_BASE_URL)
    ai_model: Optional[str] = Field(default=None)
    ai_temperature: float = Field(default=0.7)
    ai_max_tokens: int = Field(default=500, gt=0)
    ai_seed: Optional[int] = Field(default=None)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="text")

    @field_validator("pay_to_address")
    @classmethod
    def validate_pay_to_address(cls, v):
        if not Web3.is_address(v):
            raise ValueError(f"PAY_TO_ADDRESS is not a valid address: {v}")
        # Mixed case means EIP-55; a wrong checksum is a typo
        digits = v[2:] if v[:2].lower() == "0x" else v
        if digits != digits.lower() and digits != digits.upper() and not Web3.is_checksum_address(v):
            raise ValueError(f"PAY_TO_ADDRESS has an invalid checksum: {v}")
        return Web3.to_checksum_address(v)

    @field_validator("price")
    @classmethod
    def validate_price(cls, v):
        v = v.strip().lstrip("$")
        to_base_units(v, 18)
        return v

    @field_validator("ai_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def validate_cross_fields(self):
        if self.ai_provider == "openai" and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when AI_PROVIDER=openai")
        if self.ai_provider == "eigenai" and not (self.eigenai_api_key or self.openai_api_key):
            raise ValueError(
                "EIGENAI_API_KEY (or OPENAI_API_KEY fallback) is required when AI_PROVIDER=eigenai"
            )
        # Raises when the token is not offered on the configured network
        get_token(self.network, self.token)
        return self

    @property
    def network_info(self) -> NetworkInfo:
        return get_network(self.network)

    @property
    def token_info(self) -> TokenInfo:
        return get_token(self.network, self.token)

    @property
    def price_base_units(self) -> str:
        return to_base_units(self.price, self.token_info.decimals)

    @property
    def resolved_facilitator_url(self) -> str:
        return self.facilitator_url or DEFAULT_FACILITATOR_URL

    @property
    def resolved_ai_model(self) -> str:
        return self.ai_model or DEFAULT_MODELS[self.ai_provider]

    @property
    def ai_api_key(self) -> Optional[str]:
        if self.ai_provider == "eigenai":
            return self.eigenai_api_key or self.openai_api_key
        return self.openai_api_key

    @property
    def ai_base_url(self) -> str:
        if self.ai_provider == "eigenai":
            return self.eigenai_base_url
        return self.openai_base_url or DEFAULT_OPENAI_BASE_URL

    @property
    def ai_default_headers(self) -> Dict[str, str]:
        if self.ai_provider == "eigenai":
            return {"x-api-key": self.ai_api_key or ""}
        return {}


class ClientConfig(BaseSettings):
    """Configuration for the paying test client"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    agent_url: str = Field(default="http://localhost:3000", description="URL of the payment-gated API")
    client_private_key: str = Field(default="", description="Private key used to sign payments")
    network: Literal["mainnet", "testnet"] = Field(default="testnet")
    token: Literal["USD1", "USDT", "USDC"] = Field(default="USDT")
    rpc_url: Optional[str] = Field(default=None)
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    @field_validator("client_private_key")
    @classmethod
    def validate_private_key(cls, v):
        if v and not v.startswith("0x"):
            return f"0x{v}"
        return v

    @property
    def resolved_rpc_url(self) -> str:
        return self.rpc_url or get_network(self.network).rpc_url


# Singleton instances
_server_config: ServerConfig | None = None
_client_config: ClientConfig | None = None


def get_server_config() -> ServerConfig:
    """Get or create server configuration singleton"""
    global _server_config
    if _server_config is None:
        _server_config = ServerConfig()
    return _server_config


def get_client_config() -> ClientConfig:
    """Get or create client configuration singleton"""
    global _client_config
    if _client_config is None:
        _client_config = ClientConfig()
    return _client_config
