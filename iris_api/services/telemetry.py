from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from iris_api.core.config import settings

_LOGGER = logging.getLogger(__name__)


@dataclass
class AnswerTracePayload:
    query_id: str
    session_id: str | None
    query: str
    answer: str
    intent: str | None
    cached: bool
    latency_ms: int
    signals: dict[str, Any] = field(default_factory=dict)
    sources: list[dict[str, Any]] = field(default_factory=list)
    blocked: str | None = None

    def metadata(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "intent": self.intent,
            "cached": self.cached,
            "latency_ms": self.latency_ms,
            "signals": self.signals,
            "source_ids": [source.get("id") for source in self.sources],
            "blocked": self.blocked,
            "llm_provider": settings.llm_provider,
        }


class _LangfuseHandle:
    """Builds the langfuse client on first use; a failed build is not retried."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._client: Any | None = None
        self._failed = False

    def get(self) -> Any | None:
        if not settings.langfuse_enabled or self._failed:
            return None
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None and not self._failed:
                try:
                    from langfuse import Langfuse

                    self._client = Langfuse(
                        public_key=settings.langfuse_public_key,
                        secret_key=settings.langfuse_secret_key,
                        host=settings.langfuse_host,
                    )
                except Exception as exc:  # pragma: no cover - optional network
                    _LOGGER.warning("langfuse client unavailable, tracing disabled: %s", exc)
                    self._failed = True
            return self._client

    def reset(self) -> None:
        with self._lock:
            self._client = None
            self._failed = False


_LANGFUSE = _LangfuseHandle()


def _get_langfuse_client() -> Any | None:
    return _LANGFUSE.get()


def emit_answer_trace(payload: AnswerTracePayload) -> None:
    client = _get_langfuse_client()
    if client is None:
        return

    metadata = payload.metadata()
    try:
        trace = client.trace(
            name="iris_answer",
            session_id=payload.session_id,
            input={"query": payload.query},
            output={"answer": payload.answer},
            metadata=metadata,
        )
        # replayed and blocked answers never reached the model
        if trace is not None and not payload.cached and not payload.blocked:
            trace.generation(
                name="answer_completion",
                model=settings.llm_model,
                input=payload.query,
                output=payload.answer,
                metadata=metadata,
            )
        client.flush()
    except Exception as exc:
        _LOGGER.warning("answer trace failed: %s", exc)
