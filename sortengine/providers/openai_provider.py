"""
OpenAI provider for cloud LLM inference.

Uses the chat completions endpoint in JSON mode. Only reached when the
preference profile allows cloud providers and the routing mode is full.
"""

import asyncio
import time
from typing import Dict, List, Optional

import requests

from .base import CategorizationProvider, CategorizationResult, FileSignature, ProviderTier
from .prompts import SYSTEM_PROMPT, build_user_prompt, parse_response
from ..core.errors import InvalidProviderResponse, ProviderTimeout, ProviderUnavailable
from ..utils.logger import logger
from ..utils.secrets import get_api_key


class OpenAIProvider(CategorizationProvider):
    """
    OpenAI provider for cloud LLM inference.

    Features:
    - gpt-4o-mini by default (cost-effective)
    - Structured JSON output with confidence scores
    - Automatic API key retrieval from keyring
    """

    priority = 3

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize OpenAI provider.

        Args:
            config: Provider configuration with:
                - model: Model name (default: gpt-4o-mini)
                - api_key: API key (or retrieved from keyring)
                - base_url: API base URL (for Azure/proxies)
                - timeout: Request timeout in seconds
                - max_tokens: Maximum response tokens
                - temperature: Sampling temperature
                - known_categories: Categories to offer the model
        """
        config = config or {}
        self.model = config.get("model", "gpt-4o-mini")
        self.api_key = config.get("api_key") or get_api_key("openai")
        self.base_url = config.get("base_url", "https://api.openai.com/v1").rstrip("/")
        self.timeout = config.get("timeout", 30)
        self.max_tokens = config.get("max_tokens", 200)
        self.temperature = config.get("temperature", 0.1)
        self.known_categories: List[str] = list(config.get("known_categories", []))

        if not self.api_key:
            raise ValueError(
                "OpenAI API key not configured. "
                "Set it via keyring: python -c \"from sortengine.utils.secrets import "
                "set_api_key; set_api_key('openai', 'sk-...')\""
            )

    def get_name(self) -> str:
        return "openai"

    @property
    def tier(self) -> ProviderTier:
        return ProviderTier.CLOUD

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def health_check(self) -> bool:
        """
        Check if OpenAI API is accessible.
        Uses the models endpoint for a lightweight check.
        """
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers(), timeout=10)
        except requests.exceptions.Timeout:
            logger.warning("OpenAI health check timed out")
            return False
        except requests.exceptions.RequestException as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False

        if response.status_code == 401:
            logger.error("OpenAI API key is invalid")
            return False
        if response.status_code == 429:
            logger.warning("OpenAI rate limit hit during health check")
            return True  # Reachable, just rate limited
        return response.status_code == 200

    async def is_available(self) -> bool:
        return await asyncio.to_thread(self.health_check)

    def _complete(self, user_message: str) -> Dict:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_message},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderTimeout(self.get_name(), float(self.timeout)) from e
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(self.get_name(), f"Request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderUnavailable(self.get_name(), "Rate limited")
        if response.status_code != 200:
            raise ProviderUnavailable(
                self.get_name(), f"API error {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise InvalidProviderResponse(self.get_name(), f"Non-JSON body: {e}") from e

    async def categorize(self, signature: FileSignature) -> CategorizationResult:
        start_time = time.time()
        data = await asyncio.to_thread(
            self._complete, build_user_prompt(signature, self.known_categories)
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidProviderResponse(self.get_name(), f"Unexpected response shape: {e}") from e

        usage = data.get("usage", {})
        logger.debug(f"OpenAI tokens used: {usage.get('total_tokens', 0)}")
        return parse_response(self.get_name(), content, processing_time=time.time() - start_time)
