"""
Embedding and completion provider gateways.

Each gateway walks an ordered fallback chain of backends:
- Ollama (local, primary)
- OpenAI-compatible HTTP endpoints (local llama.cpp/LocalAI servers or OpenAI)
- Google Gemini (cloud)

Backends are synchronous and run in worker threads under a per-call timeout,
so a hung local model never blocks the event loop or the rest of the chain.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import os
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import requests

from config import Config
from logging_config import get_logger
from utils import clean_json_response, is_well_formed_vector

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

logger = get_logger(__name__)

ChatMessage = dict[str, str]


# =============================================================================
# Errors
# =============================================================================


class ProviderError(Exception):
    """A single backend failed to answer."""


class EmbeddingUnavailable(Exception):
    """Every configured embedding provider failed or none is enabled."""


class CompletionUnavailable(Exception):
    """Every configured completion provider failed or none is enabled."""


class MalformedStructuredResponse(ValueError):
    """A provider answered, but not with the expected JSON object."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    temperature: float = 0.7
    max_tokens: int = 1000
    expect_json: bool = False


class EmbeddingProvider(Protocol):
    name: str

    def embed(self, text: str, query: bool = False) -> list[float]: ...


class CompletionProvider(Protocol):
    name: str

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> str: ...


# =============================================================================
# Gemini Client (Lazy Singleton)
# =============================================================================

_lock = threading.Lock()
_genai_client: GenAIClient | None = None


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ValueError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:  # Double-check after acquiring lock
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


# =============================================================================
# Embedding backends
# =============================================================================


class OllamaEmbedder:
    """Local embeddings via Ollama's /api/embeddings."""

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed(self, text: str, query: bool = False) -> list[float]:
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ProviderError(f"Ollama embedding error: {e}") from e

        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not is_well_formed_vector(embedding):
            raise ProviderError("Ollama returned an empty or malformed embedding")
        return [float(v) for v in embedding]


class OpenAIEmbedder:
    """OpenAI-compatible `POST /embeddings {model, input}`."""

    name = "openai"

    def __init__(self, base_url: str, model: str, api_key: str | None = None, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY")
        self.timeout = timeout

    def embed(self, text: str, query: bool = False) -> list[float]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": text, "encoding_format": "float"},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            data = payload.get("data") if isinstance(payload, dict) else None
        except (requests.RequestException, ValueError) as e:
            raise ProviderError(f"OpenAI embedding error: {e}") from e

        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise ProviderError("OpenAI embedding response missing data")
        embedding = data[0].get("embedding")
        if not is_well_formed_vector(embedding):
            raise ProviderError("OpenAI returned an empty or malformed embedding")
        return [float(v) for v in embedding]


class GoogleEmbedder:
    """Cloud embeddings via Google GenAI."""

    name = "google"

    def __init__(self, model: str, dimension: int):
        self.model = model
        self.dimension = dimension

    def embed(self, text: str, query: bool = False) -> list[float]:
        try:
            from google.genai import types

            client = get_genai_client()
            response = client.models.embed_content(
                model=self.model,
                contents=text,
                config=types.EmbedContentConfig(
                    task_type="RETRIEVAL_QUERY" if query else "RETRIEVAL_DOCUMENT",
                    output_dimensionality=self.dimension,
                ),
            )
            values = list(response.embeddings[0].values)
        except Exception as e:
            raise ProviderError(f"Google embedding error: {e}") from e

        if not is_well_formed_vector(values):
            raise ProviderError("Google returned an empty or malformed embedding")
        return [float(v) for v in values]


# =============================================================================
# Completion backends
# =============================================================================


class OllamaCompleter:
    """Local chat completions via Ollama's /api/chat."""

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "stream": False,
            "options": {"temperature": options.temperature, "num_predict": options.max_tokens},
        }
        if options.expect_json:
            body["format"] = "json"
        try:
            response = requests.post(f"{self.base_url}/api/chat", json=body, timeout=self.timeout)
            response.raise_for_status()
            content = (response.json().get("message") or {}).get("content")
        except (requests.RequestException, ValueError, AttributeError) as e:
            raise ProviderError(f"Ollama completion error: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("Ollama returned an empty completion")
        return content


class OpenAICompleter:
    """OpenAI-compatible `POST /chat/completions`."""

    name = "openai"

    def __init__(self, base_url: str, model: str, api_key: str | None = None, timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY")
        self.timeout = timeout

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.expect_json:
            body["response_format"] = {"type": "json_object"}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions", json=body, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            choices = response.json().get("choices") or []
            content = choices[0]["message"]["content"] if choices else None
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            raise ProviderError(f"OpenAI completion error: {e}") from e
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("OpenAI returned an empty completion")
        return content


class GoogleCompleter:
    """Cloud completions via Google Gemini."""

    name = "google"

    def __init__(self, model: str):
        self.model = model

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> str:
        try:
            from google.genai import types

            system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
            contents = [
                types.Content(
                    role="model" if m.get("role") == "assistant" else "user",
                    parts=[types.Part.from_text(text=m["content"])],
                )
                for m in messages
                if m.get("role") != "system"
            ]
            response = get_genai_client().models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system or None,
                    temperature=options.temperature,
                    max_output_tokens=options.max_tokens,
                    response_mime_type="application/json" if options.expect_json else None,
                ),
            )
            text = response.text
        except Exception as e:
            raise ProviderError(f"Google completion error: {e}") from e
        if not text or not text.strip():
            raise ProviderError("Google returned an empty completion")
        return text


# =============================================================================
# Gateways
# =============================================================================


class EmbeddingGateway:
    """text -> vector, first healthy provider in the chain wins."""

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        timeout: float = 30,
        max_chars: int = 8000,
    ):
        self.providers = list(providers)
        self.timeout = timeout
        self.max_chars = max_chars
        self.dimension: int | None = None
        self.active_provider: str | None = None

    async def embed(self, text: str, query: bool = False) -> list[float]:
        """Embed `text`, truncating to `max_chars`.

        Raises:
            ValueError: text is empty.
            EmbeddingUnavailable: every provider failed.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        text = text[: self.max_chars]
        if not self.providers:
            raise EmbeddingUnavailable("No embedding provider is enabled")

        errors: list[str] = []
        for provider in self.providers:
            try:
                vector = await asyncio.wait_for(
                    asyncio.to_thread(provider.embed, text, query), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                errors.append(f"{provider.name}: timed out after {self.timeout}s")
                logger.warning("Embedding provider %s timed out, trying next", provider.name)
                continue
            except Exception as e:  # CancelledError still propagates
                errors.append(f"{provider.name}: {e}")
                logger.warning("Embedding provider %s failed: %s", provider.name, e)
                continue
            if not is_well_formed_vector(vector):
                errors.append(f"{provider.name}: malformed vector")
                logger.warning("Embedding provider %s returned a malformed vector", provider.name)
                continue
            self._record(provider.name, vector)
            return [float(v) for v in vector]

        raise EmbeddingUnavailable("All embedding providers failed: " + "; ".join(errors))

    def _record(self, name: str, vector: Sequence[float]) -> None:
        if self.active_provider is not None and self.active_provider != name:
            logger.warning("Embedding provider switched from %s to %s", self.active_provider, name)
        self.active_provider = name
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            logger.warning(
                "Embedding provider %s returned %d dims but %d were seen before; "
                "mixed providers need a full rebuild",
                name,
                len(vector),
                self.dimension,
            )

    async def health(self) -> dict[str, bool]:
        status: dict[str, bool] = {}
        for provider in self.providers:
            try:
                vector = await asyncio.wait_for(
                    asyncio.to_thread(provider.embed, "health check"), timeout=self.timeout
                )
                status[provider.name] = is_well_formed_vector(vector)
            except Exception as e:
                logger.warning("Embedding provider %s health check failed: %s", provider.name, e)
                status[provider.name] = False
        return status


class CompletionGateway:
    """messages -> text, with JSON cleanup when requested."""

    def __init__(self, providers: Sequence[CompletionProvider], timeout: float = 120):
        self.providers = list(providers)
        self.timeout = timeout

    async def complete(
        self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None
    ) -> str:
        """Run the chain; with `expect_json` return only the `{...}` span.

        Raises:
            CompletionUnavailable: every provider failed.
            MalformedStructuredResponse: JSON was expected but none was found.
        """
        options = options or CompletionOptions()
        if not self.providers:
            raise CompletionUnavailable("No completion provider is enabled")

        errors: list[str] = []
        for provider in self.providers:
            try:
                text = await asyncio.wait_for(
                    asyncio.to_thread(provider.complete, messages, options), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                errors.append(f"{provider.name}: timed out after {self.timeout}s")
                logger.warning("Completion provider %s timed out, trying next", provider.name)
                continue
            except Exception as e:  # CancelledError still propagates
                errors.append(f"{provider.name}: {e}")
                logger.warning("Completion provider %s failed: %s", provider.name, e)
                continue
            if not isinstance(text, str) or not text.strip():
                errors.append(f"{provider.name}: empty completion")
                logger.warning("Completion provider %s returned an empty completion", provider.name)
                continue

            if not options.expect_json:
                return text
            cleaned = clean_json_response(text)
            if cleaned is None:
                raise MalformedStructuredResponse(
                    f"No JSON object in {provider.name} response: {text[:100]}", raw=text
                )
            return cleaned

        raise CompletionUnavailable("All completion providers failed: " + "; ".join(errors))

    async def complete_json(
        self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None
    ) -> dict[str, Any]:
        """Like complete(), parsed into a dict."""
        options = dataclasses.replace(options or CompletionOptions(), expect_json=True)
        text = await self.complete(messages, options)
        try:
            result = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedStructuredResponse(f"Invalid JSON: {e}", raw=text) from e
        if not isinstance(result, dict):
            raise MalformedStructuredResponse("Expected a JSON object", raw=text)
        return result

    async def health(self) -> dict[str, bool]:
        status: dict[str, bool] = {}
        ping = [{"role": "user", "content": "Reply with OK."}]
        for provider in self.providers:
            try:
                text = await asyncio.wait_for(
                    asyncio.to_thread(provider.complete, ping, CompletionOptions(max_tokens=10)),
                    timeout=self.timeout,
                )
                status[provider.name] = bool(text.strip())
            except Exception as e:
                logger.warning("Completion provider %s health check failed: %s", provider.name, e)
                status[provider.name] = False
        return status


# =============================================================================
# Factories
# =============================================================================


def _enabled(names: Sequence[str], fallback: bool) -> list[str]:
    return list(names) if fallback else list(names[:1])


def build_embedding_gateway(config: Config) -> EmbeddingGateway:
    """Build the embedding chain from config (primary first)."""
    providers: list[EmbeddingProvider] = []
    for name in _enabled(config.embedding_providers, config.embedding_fallback):
        if name == "ollama":
            providers.append(
                OllamaEmbedder(config.ollama_base_url, config.embedding_model, config.provider_timeout)
            )
        elif name == "openai":
            providers.append(
                OpenAIEmbedder(
                    config.openai_base_url, config.openai_embedding_model, timeout=config.provider_timeout
                )
            )
        elif name == "google":
            providers.append(GoogleEmbedder(config.google_embedding_model, config.embedding_dim))
        else:
            raise ValueError(f"Unknown embedding provider '{name}'. Valid: google, ollama, openai")
    return EmbeddingGateway(providers, timeout=config.provider_timeout, max_chars=config.max_embed_chars)


def build_completion_gateway(config: Config) -> CompletionGateway:
    """Build the completion chain from config (primary first)."""
    providers: list[CompletionProvider] = []
    for name in _enabled(config.completion_providers, config.completion_fallback):
        if name == "ollama":
            providers.append(
                OllamaCompleter(config.ollama_base_url, config.completion_model, config.provider_timeout)
            )
        elif name == "openai":
            providers.append(
                OpenAICompleter(config.openai_base_url, config.openai_llm_model, timeout=config.provider_timeout)
            )
        elif name == "google":
            providers.append(GoogleCompleter(config.google_llm_model))
        else:
            raise ValueError(f"Unknown completion provider '{name}'. Valid: google, ollama, openai")
    return CompletionGateway(providers, timeout=config.provider_timeout)
