"""Text-understanding clients used by the extraction adapter.

Both clients expose one capability, ``extract_structured(prompt) -> str``:
a single request and a single plain-text response. Which provider is used is
a configuration concern (see ``build_llm_client``).
"""

import asyncio
import logging
from typing import Any

import httpx

from .config import WeaveConfig
from .errors import ExtractionUnavailableError, TransportFailure

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You extract structured knowledge from personal data records. "
    "Reply with a single JSON object and nothing else."
)

ANTHROPIC_VERSION = "2023-06-01"

# Status codes worth another attempt; anything else fails immediately
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class LLMClient:
    """Client for an OpenAI-compatible chat-completions API (vLLM/Ollama)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 0,
        max_tokens: int = 2048,
        backoff_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_tokens = max_tokens
        self.backoff_base = backoff_base
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,
            "max_tokens": self.max_tokens,
            "stream": False,
        }

    def parse_content(self, data: dict[str, Any]) -> str:
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise TransportFailure(f"Unexpected response shape: {e}") from e

    async def extract_structured(self, prompt: str) -> str:
        """Send one prompt and return the raw text of the reply.

        Raises:
            TransportFailure: unreachable service, non-success status after
                retries, or a response without text content
        """
        data = await self._blocking_response(self.build_payload(prompt))
        return self.parse_content(data)

    async def _blocking_response(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with exponential backoff on transient failures."""
        client = await self.get_client()
        last_error = "no attempt made"
        for attempt in range(self.max_retries + 1):
            if attempt:
                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))
            logger.debug(f"Making request to {self.endpoint} (attempt {attempt + 1})")
            try:
                response = await client.post(self.endpoint, json=payload, headers=self.headers)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"LLM request failed: {last_error}")
                continue

            if response.is_success:
                try:
                    return response.json()
                except ValueError as e:
                    raise TransportFailure(f"LLM API returned invalid JSON: {e}") from e

            last_error = f"LLM API error: {response.status_code} - {response.text[:500]}"
            logger.error(last_error)
            if response.status_code not in RETRYABLE_STATUS:
                break

        raise TransportFailure(last_error)


class AnthropicClient(LLMClient):
    """Client for the Anthropic Messages API."""

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/messages"

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }

    def parse_content(self, data: dict[str, Any]) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise TransportFailure("Unexpected response shape: missing content blocks")
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )


def build_llm_client(config: WeaveConfig) -> LLMClient:
    """Create the client for the configured provider.

    Raises:
        ExtractionUnavailableError: the provider cannot be called at all
            (e.g. Anthropic without an API key)
    """
    if not config.has_llm_credentials:
        raise ExtractionUnavailableError(
            f"No credentials configured for LLM provider {config.llm_provider!r}"
        )
    client_cls = AnthropicClient if config.llm_provider == "anthropic" else LLMClient
    return client_cls(
        base_url=config.llm_api_url,
        model=config.llm_model,
        api_key=config.llm_api_key,
        timeout=config.llm_timeout,
        max_retries=config.llm_max_retries,
        max_tokens=config.llm_max_tokens,
    )
