"""
Ollama provider for local-server LLM inference.

Uses Ollama's HTTP API with JSON output mode. This is the cost-free,
privacy-preserving escalation target when on-device prototypes are
not confident enough.
"""

import asyncio
import time
from typing import Dict, List, Optional

import requests

from .base import CategorizationProvider, CategorizationResult, FileSignature, ProviderTier
from .prompts import build_prompt, parse_response
from ..core.errors import InvalidProviderResponse, ProviderTimeout, ProviderUnavailable
from ..utils.logger import logger


class OllamaProvider(CategorizationProvider):
    """
    Ollama provider for local LLM inference.

    Features:
    - Zero cloud cost (runs locally)
    - Supports various models (llama3, mistral, gemma, etc.)
    - Structured JSON output with confidence
    """

    priority = 2

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize Ollama provider.

        Args:
            config: Provider configuration dict with:
                - base_url: Ollama API URL (default: http://localhost:11434)
                - model: Model name (default: llama3)
                - timeout: Request timeout in seconds (default: 120)
                - known_categories: Categories to offer the model
        """
        config = config or {}
        self.base_url = config.get("base_url", "http://localhost:11434").rstrip("/")
        self.model = config.get("model", "llama3")
        self.timeout = config.get("timeout", 120)
        self.known_categories: List[str] = list(config.get("known_categories", []))
        self.api_endpoint = f"{self.base_url}/api/generate"

    def get_name(self) -> str:
        return "ollama"

    @property
    def tier(self) -> ProviderTier:
        return ProviderTier.LOCAL_SERVER

    def health_check(self) -> bool:
        """
        Check if Ollama is running.
        Uses the /api/tags endpoint to verify connectivity.
        """
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            if response.status_code != 200:
                logger.warning(f"Ollama health check returned status {response.status_code}")
                return False

            names = [m.get("name", "") for m in response.json().get("models", [])]
            if self.model not in [n.split(":")[0] for n in names] and self.model not in names:
                logger.warning(f"Model '{self.model}' not found in Ollama. Available: {names}")
            return True
        except requests.exceptions.Timeout:
            logger.warning("Ollama health check timed out")
            return False
        except requests.exceptions.ConnectionError:
            logger.warning("Could not connect to Ollama - is it running?")
            return False
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def is_available(self) -> bool:
        return await asyncio.to_thread(self.health_check)

    def _generate(self, prompt: str) -> Dict:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
        }
        try:
            response = requests.post(self.api_endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise ProviderTimeout(self.get_name(), float(self.timeout)) from e
        except requests.exceptions.ConnectionError as e:
            raise ProviderUnavailable(self.get_name(), f"Connection failed: {e}") from e
        except requests.exceptions.HTTPError as e:
            raise ProviderUnavailable(self.get_name(), f"HTTP error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(self.get_name(), f"Request failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise InvalidProviderResponse(self.get_name(), f"Non-JSON body: {e}") from e

    async def categorize(self, signature: FileSignature) -> CategorizationResult:
        start_time = time.time()
        prompt = build_prompt(signature, self.known_categories)
        result = await asyncio.to_thread(self._generate, prompt)
        if not isinstance(result, dict):
            raise InvalidProviderResponse(self.get_name(), f"Expected a JSON object, got {type(result).__name__}")
        return parse_response(
            self.get_name(),
            result.get("response", ""),
            processing_time=time.time() - start_time,
        )
