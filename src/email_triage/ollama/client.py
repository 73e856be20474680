"""Ollama client implementation.

This module provides an async client for the Ollama HTTP API, used both for
query parsing (text generation) and for embeddings.

Connection failures, timeouts, rate limiting and server errors are reported as
``OllamaConnectionError`` and retried here; callers never retry.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from email_triage.config import Settings
from email_triage.exceptions import OllamaConnectionError, OllamaInferenceError
from email_triage.utils import retry_on_failure

logger = structlog.get_logger()

_RETRY_DELAY_SECONDS = 0.5


class OllamaClient:
    """Ollama LLM client for AI inference.

    This client handles communication with the Ollama API
    for language model and embedding requests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize Ollama client.

        Args:
            settings: Application settings. If None, uses default settings.
            http_client: Preconfigured HTTP client. If None, one is created
                lazily from ``settings.ollama_host``.
        """
        from email_triage.config import get_settings

        self.settings = settings or get_settings()
        self._http = http_client
        logger.info(
            "ollama_client_initialized",
            host=self.settings.ollama_host,
            model=self.settings.query_parser_model,
            embedding_model=self.settings.embedding_model,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        system: Optional[str] = None,
        format: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate text using Ollama.

        Args:
            prompt: The prompt to send to the model.
            model: Model name to use. If None, uses the query parser model.
            system: Optional system prompt.
            format: Response format constraint (e.g. ``"json"``).
            temperature: Sampling temperature.

        Returns:
            The generated text.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaInferenceError: If inference fails.
        """
        model = model or self.settings.query_parser_model
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system
        if format:
            payload["format"] = format
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.debug("generating_text", model=model, prompt_length=len(prompt))
        response = await self._post("/api/generate", payload)
        data = self._json(response, "/api/generate")

        text = data.get("response")
        if not isinstance(text, str):
            raise OllamaInferenceError("Ollama generate response missing 'response'")
        return text

    async def embed(self, text: str, model: Optional[str] = None) -> list[float]:
        """Return the embedding of ``text``.

        Uses the ``/api/embed`` endpoint and falls back to the legacy
        ``/api/embeddings`` endpoint on servers that predate it.

        Raises:
            OllamaConnectionError: If unable to connect to Ollama.
            OllamaInferenceError: If the response carries no embedding.
        """
        model = model or self.settings.embedding_model

        response = await self._post("/api/embed", {"model": model, "input": text})
        if response.status_code != 404:
            data = self._json(response, "/api/embed")
            embs = data.get("embeddings")
            if isinstance(embs, list) and embs and isinstance(embs[0], list) and embs[0]:
                return [float(x) for x in embs[0]]
            raise OllamaInferenceError("Ollama embed response missing 'embeddings'")

        logger.debug("ollama_embed_endpoint_missing", fallback="/api/embeddings")
        response = await self._post("/api/embeddings", {"model": model, "prompt": text})
        data = self._json(response, "/api/embeddings")
        emb = data.get("embedding")
        if not isinstance(emb, list) or not emb:
            raise OllamaInferenceError("Ollama embeddings response missing 'embedding'")
        return [float(x) for x in emb]

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.settings.ollama_host,
                timeout=float(self.settings.ollama_timeout),
            )
        return self._http

    @retry_on_failure(
        delay=_RETRY_DELAY_SECONDS,
        exceptions=(OllamaConnectionError,),
        retries_from="settings.max_retries",
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client().post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise OllamaConnectionError(f"Ollama request to {path} timed out") from exc
        except httpx.TransportError as exc:
            raise OllamaConnectionError(f"Unable to reach Ollama at {path}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise OllamaConnectionError(
                f"Ollama unavailable ({response.status_code}) for {path}: {response.text[:200]}"
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, path: str) -> dict[str, Any]:
        if response.is_error:
            raise OllamaInferenceError(
                f"Ollama request to {path} failed ({response.status_code}): {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise OllamaInferenceError(f"Ollama returned invalid JSON for {path}") from exc
        if not isinstance(data, dict):
            raise OllamaInferenceError(f"Ollama returned unexpected payload for {path}")
        return data
