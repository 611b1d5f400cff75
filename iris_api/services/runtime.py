from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

from iris_api.core.config import settings
from iris_api.services.answer_cache import AnswerCache, build_answer_cache
from iris_api.services.embedding_provider import build_embedder
from iris_api.services.entity_index import EntityIndex
from iris_api.services.knowledge_base import KnowledgeBase, load_knowledge_base
from iris_api.services.rate_limiter import RateLimiter
from iris_api.services.retrieval import RetrievalEngine
from iris_api.services.synthesizer import AnswerSynthesizer

_LOGGER = logging.getLogger(__name__)
_RUNTIME_LOCK = Lock()
_RUNTIME: "IrisRuntime | None" = None


@dataclass
class IrisRuntime:
    kb: KnowledgeBase
    entities: EntityIndex
    engine: RetrievalEngine
    cache: AnswerCache
    rate_limiter: RateLimiter
    synthesizer: AnswerSynthesizer


def build_runtime(kb: KnowledgeBase | None = None) -> IrisRuntime:
    knowledge_base = kb if kb is not None else load_knowledge_base(settings.kb_dir)
    entities = EntityIndex.from_items(knowledge_base.items)
    engine = RetrievalEngine(knowledge_base.items, build_embedder())
    cache = build_answer_cache()
    synthesizer = AnswerSynthesizer(knowledge_base, engine, entities=entities, cache=cache)
    _LOGGER.info(
        "runtime ready: items=%d llm=%s embeddings=%s cache=%s",
        len(knowledge_base.items),
        settings.llm_provider,
        settings.embedding_provider,
        cache.backend.name,
    )
    return IrisRuntime(
        kb=knowledge_base,
        entities=entities,
        engine=engine,
        cache=cache,
        rate_limiter=RateLimiter(),
        synthesizer=synthesizer,
    )


def get_runtime() -> IrisRuntime:
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = build_runtime()
        return _RUNTIME


def reset_runtime() -> None:
    global _RUNTIME
    with _RUNTIME_LOCK:
        _RUNTIME = None
