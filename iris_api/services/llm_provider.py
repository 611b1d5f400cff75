from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Protocol, Sequence

import httpx

from iris_api.core.config import settings
from iris_api.services.errors import LLMProviderError

_LOGGER = logging.getLogger(__name__)

_PROVIDER_ALIASES: dict[str, str] = {
    "openai": "openai_compatible",
    "openai_compatible": "openai_compatible",
    "gpt": "openai_compatible",
    "stub": "stub",
}
_REASONING_MODEL_RE = re.compile(r"^(o\d*|gpt-5)", re.IGNORECASE)
_RETRYABLE_STATUS = frozenset({408, 409, 429})


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


def normalize_provider(value: str | None) -> str:
    raw = str(value or "").strip().lower()
    if not raw:
        return "stub"
    return _PROVIDER_ALIASES.get(raw, raw)


def is_reasoning_model(model: str) -> bool:
    return bool(_REASONING_MODEL_RE.match(str(model or "").strip()))


def _cancelled(cancel_event: CancelSignal | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _build_async_client(timeout: httpx.Timeout) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def build_chat_body(query: str, system_prompt: str, *, model: str | None = None) -> dict[str, Any]:
    resolved_model = model or settings.llm_model
    body: dict[str, Any] = {
        "model": resolved_model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": query},
        ],
        "stream": True,
    }
    if is_reasoning_model(resolved_model):
        body["max_completion_tokens"] = int(settings.llm_max_output_tokens)
    else:
        body["max_tokens"] = int(settings.llm_max_output_tokens)
        body["temperature"] = float(settings.llm_temperature)
    return body


def _stub_answer(query: str, packs: Sequence[Any]) -> str:
    if not packs:
        return f"I don't have anything on that from {settings.subject_name} yet."
    lines = [f"Here's what {settings.subject_name} has shared that relates to your question:"]
    for pack in packs:
        dates = f" ({pack.date_range})" if getattr(pack, "date_range", None) else ""
        summary = str(pack.summary or "").strip()
        lines.append(f"- **{pack.title}**{dates}: {summary}" if summary else f"- **{pack.title}**{dates}")
    return "\n".join(lines)


async def _stream_stub(
    query: str,
    packs: Sequence[Any],
    cancel_event: CancelSignal | None,
) -> AsyncIterator[str]:
    words = re.findall(r"\S+\s*", _stub_answer(query, packs))
    delay = float(settings.stream_chunk_delay_seconds)
    for word in words:
        if _cancelled(cancel_event):
            return
        yield word
        if delay > 0:
            await asyncio.sleep(delay)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else 0
        return status >= 500 or status in _RETRYABLE_STATUS
    return isinstance(exc, httpx.TransportError)


def _delta_text(line: str) -> str | None:
    """Content from one SSE line; None once the stream reports [DONE]."""
    if not line.startswith("data:"):
        return ""
    data = line[5:].strip()
    if data == "[DONE]":
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    return str(delta.get("content") or "")


async def _stream_openai_compatible(
    query: str,
    system_prompt: str,
    cancel_event: CancelSignal | None,
) -> AsyncIterator[str]:
    api_key = str(settings.llm_api_key or "").strip()
    if not api_key:
        raise LLMProviderError("LLM_API_KEY is required for provider=openai_compatible")

    endpoint = str(settings.llm_base_url).rstrip("/") + "/chat/completions"
    body = build_chat_body(query, system_prompt)
    headers = {"Authorization": f"Bearer {api_key}", "Accept": "text/event-stream"}
    timeout = httpx.Timeout(float(settings.llm_timeout_seconds))

    attempts = 2
    async with _build_async_client(timeout) as client:
        for attempt in range(1, attempts + 1):
            started = False
            try:
                async with client.stream("POST", endpoint, json=body, headers=headers) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if _cancelled(cancel_event):
                            return
                        text = _delta_text(line.strip())
                        if text is None:
                            return
                        if text:
                            started = True
                            yield text
                return
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                if started:
                    raise LLMProviderError(f"stream interrupted: {exc}") from exc
                if attempt < attempts and _is_retryable(exc):
                    _LOGGER.warning("llm request failed before first token, retrying: %s", exc)
                    await asyncio.sleep(float(settings.llm_retry_backoff_seconds))
                    continue
                raise LLMProviderError(f"llm request failed: {exc}") from exc


async def stream_answer(
    query: str,
    system_prompt: str,
    *,
    packs: Sequence[Any] = (),
    cancel_event: CancelSignal | None = None,
    provider: str | None = None,
) -> AsyncIterator[str]:
    """Yield answer text chunks from the configured provider."""
    name = normalize_provider(provider or settings.llm_provider)
    if name == "openai_compatible":
        async for chunk in _stream_openai_compatible(query, system_prompt, cancel_event):
            yield chunk
        return
    if name != "stub":
        _LOGGER.warning("unknown llm provider %s, using stub", name)
    async for chunk in _stream_stub(query, packs, cancel_event):
        yield chunk
