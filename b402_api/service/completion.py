"""
OpenAI-compatible chat completion client
Supports OpenAI and EigenAI (verifiable inference) endpoints
"""

from typing import Dict, List, Literal, Optional

import httpx
import structlog

logger = structlog.get_logger()


class CompletionError(RuntimeError):
    """Raised when the AI provider cannot produce a completion."""


class CompletionProvider:
    """Thin async client for POST {base_url}/chat/completions"""

    def __init__(
        self,
        provider: Literal["openai", "eigenai"] = "openai",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 500,
        seed: Optional[int] = None,
        default_headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.seed = seed
        self.default_headers = dict(default_headers or {})
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    @classmethod
    def from_config(cls, config, http_client: Optional[httpx.AsyncClient] = None) -> "CompletionProvider":
        return cls(
            provider=config.ai_provider,
            api_key=config.ai_api_key if config.ai_provider == "openai" else None,
            base_url=config.ai_base_url,
            model=config.resolved_ai_model,
            temperature=config.ai_temperature,
            max_tokens=config.ai_max_tokens,
            # Seeded sampling is only honoured by EigenAI
            seed=config.ai_seed if config.ai_provider == "eigenai" else None,
            default_headers=config.ai_default_headers,
            http_client=http_client,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.default_headers)
        return headers

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.seed is not None:
            body["seed"] = self.seed

        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error("completion_request_failed", provider=self.provider, error=str(e))
            raise CompletionError(f"{self.provider} request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "completion_http_error",
                provider=self.provider,
                status_code=response.status_code,
            )
            raise CompletionError(
                f"{self.provider} returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"{self.provider} returned an unexpected response") from e
        if not content:
            raise CompletionError(f"{self.provider} returned an empty completion")

        logger.info("completion_received", provider=self.provider, model=self.model, chars=len(content))
        return content.strip()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
