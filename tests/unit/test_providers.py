"""
Unit tests for categorization providers.
"""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from sortengine.core.embedder import NGramEmbedder
from sortengine.core.errors import InvalidProviderResponse, ProviderTimeout, ProviderUnavailable
from sortengine.core.prototype_store import PrototypeStore
from sortengine.providers.base import CategorizationRequest, FileSignature, ProviderTier
from sortengine.providers.heuristic_provider import HeuristicProvider
from sortengine.providers.ollama_provider import OllamaProvider
from sortengine.providers.openai_provider import OpenAIProvider
from sortengine.providers.prompts import build_user_prompt, parse_response
from sortengine.providers.prototype_provider import PrototypeProvider


# Keyring is imported in sortengine.utils.secrets, not in provider modules
KEYRING_PATCH = 'sortengine.utils.secrets.keyring'


def _response(status_code=200, payload=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.text = json.dumps(payload or {})
    response.raise_for_status = Mock()
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code}")
    return response


class TestFileSignature:
    """Tests for reading file signatures from disk."""

    def test_from_path(self, tmp_path):
        path = tmp_path / "Notes" / "todo.txt"
        path.parent.mkdir()
        path.write_text("buy milk", encoding="utf-8")

        signature = FileSignature.from_path(str(path))

        assert signature.filename == "todo.txt"
        assert signature.extension == "txt"
        assert signature.parent_folder == "Notes"
        assert signature.size == 8
        assert len(signature.checksum) == 64
        assert signature.text_preview == "buy milk"

    def test_binary_files_have_no_preview(self, tmp_path):
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"\xff\xd8\xff")
        assert FileSignature.from_path(str(path)).text_preview is None


class TestPrompts:
    """Tests for prompt building and response parsing."""

    def test_user_prompt_includes_context(self):
        signature = FileSignature("budget.xlsx", "/home/me/Finance", "xlsx", 2048)
        prompt = build_user_prompt(signature, ["Finance/Budgets"])

        assert "Name: budget.xlsx" in prompt
        assert "Folder: Finance" in prompt
        assert "Finance/Budgets" in prompt

    def test_parse_json(self):
        result = parse_response(
            "ollama",
            '{"category_path": "Work / Invoices", "confidence": 1.7, "rationale": "invoice", "keywords": ["acme"]}',
        )
        assert result.category_path == "Work/Invoices"
        assert result.confidence == 1.0
        assert result.keywords == ["acme"]
        assert result.provider == "ollama"

    def test_parse_json_wrapped_in_prose(self):
        result = parse_response("ollama", 'Sure! ```{"categoryPath": "Photos", "confidence": 0.8}```')
        assert result.category_path == "Photos"

    def test_parse_rejects_garbage(self):
        with pytest.raises(InvalidProviderResponse):
            parse_response("ollama", "I think it is a photo")

    def test_parse_rejects_missing_category(self):
        with pytest.raises(InvalidProviderResponse):
            parse_response("ollama", '{"confidence": 0.9}')


class TestHeuristicProvider:
    """Tests for HeuristicProvider."""

    def setup_method(self):
        self.provider = HeuristicProvider()

    def test_tier_and_name(self):
        assert self.provider.get_name() == "heuristic"
        assert self.provider.tier == ProviderTier.HEURISTIC
        assert self.provider.is_local is True

    @pytest.mark.asyncio
    async def test_always_available(self):
        assert await self.provider.is_available() is True

    @pytest.mark.asyncio
    async def test_known_extension_in_generic_folder(self):
        result = await self.provider.categorize(FileSignature("report.pdf", "/home/me/Downloads", "pdf"))
        assert result.category_path == "Documents"
        assert result.confidence == 0.6
        assert result.keywords == ["report"]

    @pytest.mark.asyncio
    async def test_agreeing_folder_raises_confidence(self):
        result = await self.provider.categorize(FileSignature("scan.pdf", "/home/me/My Documents", "pdf"))
        assert result.category_path == "Documents"
        assert result.confidence == 0.75

    @pytest.mark.asyncio
    async def test_specific_folder_becomes_subcategory(self):
        result = await self.provider.categorize(FileSignature("march.pdf", "/home/me/Invoices", "pdf"))
        assert result.category_path == "Documents/Invoices"

    @pytest.mark.asyncio
    async def test_unknown_extension(self):
        result = await self.provider.categorize(FileSignature("blob.xyz", "/tmp", "xyz"))
        assert result.category_path == "Other"
        assert result.confidence == 0.3

    @pytest.mark.asyncio
    async def test_confidence_cap(self):
        provider = HeuristicProvider({"max_confidence": 0.5})
        result = await provider.categorize(FileSignature("scan.pdf", "/home/me/My Documents", "pdf"))
        assert result.confidence == 0.5


class TestPrototypeProvider:
    """Tests for PrototypeProvider."""

    def setup_method(self):
        self.embedder = NGramEmbedder()
        self.store = PrototypeStore()
        self.provider = PrototypeProvider(self.store, self.embedder)
        self.signature = FileSignature("invoice_march.pdf", "/home/me/Invoices", "pdf")

    @pytest.mark.asyncio
    async def test_empty_store_has_no_opinion(self):
        """An empty store is still available; it just answers None."""
        assert await self.provider.is_available() is True
        assert await self.provider.categorize(self.signature) is None
        assert await self.provider.categorize_request(CategorizationRequest(self.signature)) is None

    @pytest.mark.asyncio
    async def test_matches_learned_prototype(self):
        vector = self.embedder.embed_file("invoice_march.pdf", "Invoices", "pdf")
        self.store.update("Finance/Invoices", vector, confirmed=True)

        result = await self.provider.categorize(self.signature)

        assert await self.provider.is_available() is True
        assert result.category_path == "Finance/Invoices"
        assert result.confidence == pytest.approx(0.7, abs=1e-4)
        assert result.provider == "prototypes"

    @pytest.mark.asyncio
    async def test_uses_embed_fn_when_given(self):
        calls = []

        def embed(signature):
            calls.append(signature.filename)
            return self.embedder.embed("anything")

        provider = PrototypeProvider(self.store, self.embedder, embed_fn=embed)
        self.store.update("Misc", self.embedder.embed("anything"))

        await provider.categorize(self.signature)

        assert calls == ["invoice_march.pdf"]

    @pytest.mark.asyncio
    async def test_request_embedding_is_matched(self):
        """A caller-supplied vector is matched as-is, without re-embedding the file."""
        calls = []

        def embed(signature):
            calls.append(signature.filename)
            return self.embedder.embed("anything")

        provider = PrototypeProvider(self.store, self.embedder, embed_fn=embed)
        vector = [1.0] + [0.0] * 15
        self.store.update("Finance/Invoices", vector, confirmed=True)

        result = await provider.categorize_request(CategorizationRequest(self.signature, embedding=vector))

        assert result.category_path == "Finance/Invoices"
        assert result.provider == "prototypes"
        assert calls == []

    @pytest.mark.asyncio
    async def test_request_without_embedding_falls_back(self):
        vector = self.embedder.embed_file("invoice_march.pdf", "Invoices", "pdf")
        self.store.update("Finance/Invoices", vector, confirmed=True)

        result = await self.provider.categorize_request(CategorizationRequest(self.signature))

        assert result.category_path == "Finance/Invoices"


class TestOllamaProvider:
    """Tests for OllamaProvider."""

    def setup_method(self):
        self.provider = OllamaProvider({"base_url": "http://localhost:11434/", "model": "llama3"})
        self.signature = FileSignature("contract.docx", "/home/me/Legal", "docx")

    def test_configuration(self):
        assert self.provider.api_endpoint == "http://localhost:11434/api/generate"
        assert self.provider.tier == ProviderTier.LOCAL_SERVER

    @patch('sortengine.providers.ollama_provider.requests.get')
    def test_health_check_ok(self, mock_get):
        mock_get.return_value = _response(200, {"models": [{"name": "llama3:latest"}]})
        assert self.provider.health_check() is True

    @patch('sortengine.providers.ollama_provider.requests.get')
    def test_health_check_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        assert self.provider.health_check() is False

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_success(self, mock_post):
        mock_post.return_value = _response(200, {
            "response": '{"category_path": "Legal/Contracts", "confidence": 0.82, "rationale": "contract"}'
        })

        result = await self.provider.categorize(self.signature)

        assert result.category_path == "Legal/Contracts"
        assert result.confidence == 0.82
        assert result.provider == "ollama"
        assert mock_post.call_args.kwargs["json"]["format"] == "json"

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout()
        with pytest.raises(ProviderTimeout):
            await self.provider.categorize(self.signature)

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_connection_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ProviderUnavailable):
            await self.provider.categorize(self.signature)

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_other_request_errors(self, mock_post):
        for error in (
            requests.exceptions.TooManyRedirects("loop"),
            requests.exceptions.ChunkedEncodingError("cut"),
            requests.exceptions.InvalidURL("bad"),
        ):
            mock_post.side_effect = error
            with pytest.raises(ProviderUnavailable):
                await self.provider.categorize(self.signature)

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_non_object_body(self, mock_post):
        mock_post.return_value = _response(200, ["not", "an", "object"])
        with pytest.raises(InvalidProviderResponse):
            await self.provider.categorize(self.signature)

    @pytest.mark.asyncio
    @patch('sortengine.providers.ollama_provider.requests.post')
    async def test_categorize_unparseable(self, mock_post):
        mock_post.return_value = _response(200, {"response": "no idea"})
        with pytest.raises(InvalidProviderResponse):
            await self.provider.categorize(self.signature)


class TestOpenAIProvider:
    """Tests for OpenAIProvider."""

    def setup_method(self):
        self.config = {"model": "gpt-4o-mini", "api_key": "test-key"}
        self.signature = FileSignature("beach.jpg", "/home/me/Pictures", "jpg")

    @patch(KEYRING_PATCH)
    def test_init_with_explicit_key(self, mock_keyring):
        provider = OpenAIProvider(self.config)
        assert provider.api_key == "test-key"
        mock_keyring.get_password.assert_not_called()

    @patch(KEYRING_PATCH)
    def test_init_with_keyring(self, mock_keyring):
        mock_keyring.get_password.return_value = "keyring-key"
        provider = OpenAIProvider({"model": "gpt-4o-mini"})
        assert provider.api_key == "keyring-key"
        mock_keyring.get_password.assert_called_once_with("sortengine", "openai_api_key")

    @patch(KEYRING_PATCH)
    def test_init_without_key_raises(self, mock_keyring):
        mock_keyring.get_password.return_value = None
        with pytest.raises(ValueError):
            OpenAIProvider({})

    def test_is_cloud(self):
        provider = OpenAIProvider(self.config)
        assert provider.tier == ProviderTier.CLOUD
        assert provider.is_local is False

    @patch('sortengine.providers.openai_provider.requests.get')
    def test_health_check_statuses(self, mock_get):
        provider = OpenAIProvider(self.config)

        mock_get.return_value = _response(200)
        assert provider.health_check() is True
        mock_get.return_value = _response(401)
        assert provider.health_check() is False
        mock_get.return_value = _response(429)
        assert provider.health_check() is True

    @pytest.mark.asyncio
    @patch('sortengine.providers.openai_provider.requests.post')
    async def test_categorize_success(self, mock_post):
        mock_post.return_value = _response(200, {
            "choices": [{"message": {"content": '{"category_path": "Photos/Travel", "confidence": 0.91}'}}],
            "usage": {"total_tokens": 120},
        })

        result = await OpenAIProvider(self.config).categorize(self.signature)

        assert result.category_path == "Photos/Travel"
        assert result.provider == "openai"
        body = mock_post.call_args.kwargs["json"]
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    @patch('sortengine.providers.openai_provider.requests.post')
    async def test_rate_limit_is_unavailable(self, mock_post):
        mock_post.return_value = _response(429)
        with pytest.raises(ProviderUnavailable):
            await OpenAIProvider(self.config).categorize(self.signature)

    @pytest.mark.asyncio
    @patch('sortengine.providers.openai_provider.requests.post')
    async def test_unexpected_shape(self, mock_post):
        mock_post.return_value = _response(200, {"choices": []})
        with pytest.raises(InvalidProviderResponse):
            await OpenAIProvider(self.config).categorize(self.signature)
