"""Inference client for the local Ollama server."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, model_id: str, prompt: str) -> str: ...


class InferenceClient:
    """Calls ``/api/generate`` on an Ollama server.

    The HTTP client is created lazily and shared across calls. Every call is
    bounded by ``timeout``; HTTP and timeout errors propagate to the caller.
    """

    def __init__(self, base_url: str = "http://localhost:11434", timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def generate(self, model_id: str, prompt: str, **options: Any) -> str:
        client = await self._ensure_client()
        payload: dict[str, Any] = {"model": model_id, "prompt": prompt, "stream": False}
        if options:
            payload["options"] = options

        try:
            response = await client.post(f"{self.base_url}/api/generate", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ollama generation with {model_id} failed: {e!r}")
            raise
        return response.json().get("response", "")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
