from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from typing import Any, Protocol

import httpx

from iris_api.core.config import settings
from iris_api.services.errors import EmbeddingProviderError

_LOGGER = logging.getLogger(__name__)
_TOKEN_RE = re.compile(r"[a-z0-9#+.]+")

_PROVIDER_ALIASES: dict[str, str] = {
    "openai": "openai_compatible",
    "openai_compatible": "openai_compatible",
    "stub": "stub",
}


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def cosine(left: list[float], right: list[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


def _build_async_client(timeout: httpx.Timeout) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


class StubEmbedder:
    """Hashed bag-of-words vectors; deterministic and offline."""

    def __init__(self, dimensions: int | None = None) -> None:
        self.dimensions = int(dimensions or settings.embedding_dimensions)

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(str(text or "").lower()):
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]


class OpenAICompatibleEmbedder:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        self.base_url = str(base_url or settings.embedding_base_url or "").rstrip("/")
        self.api_key = str(api_key or settings.embedding_api_key or "").strip()
        self.model = model or settings.embedding_model
        self.dimensions = int(dimensions or settings.embedding_dimensions)

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any]) -> dict[str, Any]:
        response = await client.post(
            f"{self.base_url}/embeddings",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        response.raise_for_status()
        return response.json()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self.api_key:
            raise EmbeddingProviderError("EMBEDDING_API_KEY is required for provider=openai_compatible")

        body = {"model": self.model, "input": texts, "dimensions": self.dimensions}
        timeout = httpx.Timeout(float(settings.embedding_timeout_seconds))
        async with _build_async_client(timeout) as client:
            try:
                data = await self._post(client, body)
            except (httpx.HTTPError, ValueError) as exc:
                _LOGGER.warning("embedding request failed, retrying once: %s", exc)
                await asyncio.sleep(float(settings.llm_retry_backoff_seconds))
                try:
                    data = await self._post(client, body)
                except (httpx.HTTPError, ValueError) as retry_exc:
                    raise EmbeddingProviderError(f"embedding request failed: {retry_exc}") from retry_exc

        rows = sorted(data.get("data") or [], key=lambda row: int(row.get("index", 0)))
        vectors = [list(row.get("embedding") or []) for row in rows]
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(f"expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors


def build_embedder(provider: str | None = None) -> Embedder:
    raw = str(provider or settings.embedding_provider or "stub").strip().lower()
    normalized = _PROVIDER_ALIASES.get(raw, raw)
    if normalized == "openai_compatible":
        return OpenAICompatibleEmbedder()
    if normalized != "stub":
        _LOGGER.warning("unknown embedding provider %s, using stub", raw)
    return StubEmbedder()
