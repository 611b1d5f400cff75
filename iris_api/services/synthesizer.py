from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable
from uuid import uuid4

from iris_api.core.config import settings
from iris_api.schemas.answer import QueryFilter
from iris_api.services.answer_cache import AnswerCache, build_cache_key, should_cache
from iris_api.services.diversifier import diversify_by_type, evaluative_quotas
from iris_api.services.entity_index import EntityIndex
from iris_api.services.errors import UpstreamFailure
from iris_api.services.evidence import (
    EntityLink,
    EvidencePack,
    EvidenceSignals,
    build_evidence_packs,
    build_evidence_signals,
)
from iris_api.services.intent_router import RouteDecision, classify_intent, is_evaluative_query
from iris_api.services.kb_text import item_label, normalize_query_text
from iris_api.services.knowledge_base import KnowledgeBase
from iris_api.services.llm_provider import CancelSignal, stream_answer
from iris_api.services.planning import (
    AutoContactPlan,
    build_clarification_prompt,
    build_contact_draft,
    build_contact_response,
    build_no_context_response,
    build_no_match_response,
    build_when_answer,
    contact_directive,
    plan_auto_contact,
)
from iris_api.services.prompting import build_grounding_context, build_system_prompt
from iris_api.services.ranking import (
    apply_temporal_boost,
    expand_for_comparison,
    needs_comparison_query,
    rerank_technical,
)
from iris_api.services.retrieval import RetrievalEngine, RetrievalHit
from iris_api.services.security_guard import screen_query
from iris_api.services.temporal import derive_temporal_hints

_LOGGER = logging.getLogger(__name__)

PERSONAL_TYPES: tuple[str, ...] = ("story", "value", "interest", "education", "bio")
PHASES: tuple[tuple[str, str], ...] = (
    ("detecting_intent", "Understanding your question"),
    ("searching", "Searching the knowledge base"),
    ("analyzing", "Weighing the evidence"),
    ("generating", "Writing the answer"),
)
_PHASE_MESSAGES = dict(PHASES)
_WHEN_RE = re.compile(r"\bwhen\b", re.IGNORECASE)
_DIRECTIVE_OPEN = "<ui:contact"
_DIRECTIVE_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')
_MAX_PENDING_TAG_CHARS = 2000

FALLBACK_ANSWER = "I'm having trouble pulling that together right now. Please try again in a moment."
WEAK_EVIDENCE_NOTE = "I only have limited details on that, so here's a quick way to ask directly."

StreamFn = Callable[..., AsyncIterator[str]]


class ContactDirectiveFilter:
    """Pass the first <ui:contact .../> tag through and drop any later one.

    Tags may arrive split across chunks, so an unfinished tag is held back
    until it closes.
    """

    def __init__(self) -> None:
        self.directive: str | None = None
        self._pending = ""
        self._fresh: list[str] = []

    @property
    def emitted(self) -> bool:
        return self.directive is not None

    def feed(self, chunk: str) -> str:
        self._pending += chunk
        out: list[str] = []
        while self._pending:
            idx = self._pending.find("<")
            if idx < 0:
                out.append(self._pending)
                self._pending = ""
                break
            out.append(self._pending[:idx])
            self._pending = self._pending[idx:]
            if self._pending.startswith(_DIRECTIVE_OPEN):
                end = self._pending.find("/>")
                if end < 0:
                    if len(self._pending) > _MAX_PENDING_TAG_CHARS:
                        out.append(self._pending)
                        self._pending = ""
                    break
                tag = self._pending[: end + 2]
                self._pending = self._pending[end + 2 :]
                if self.directive is None:
                    self.directive = tag
                    self._fresh.append(tag)
                    out.append(tag)
                continue
            if _DIRECTIVE_OPEN.startswith(self._pending):
                break
            out.append("<")
            self._pending = self._pending[1:]
        return "".join(out)

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return rest

    def take_new_directives(self) -> list[str]:
        fresh, self._fresh = self._fresh, []
        return fresh


def parse_directive(tag: str) -> dict[str, str]:
    return dict(_DIRECTIVE_ATTR_RE.findall(tag))


def is_weak_evidence(signals: EvidenceSignals) -> bool:
    return (
        signals.evidence_count < int(settings.gate_min_evidence_count)
        or signals.coverage_ratio < float(settings.gate_min_coverage_ratio)
        or signals.entity_link_score < float(settings.gate_min_entity_link_score)
    )


def _cancelled(cancel_event: CancelSignal | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


@dataclass
class _Outcome:
    query_id: str
    intent: str | None = None
    filters: QueryFilter | None = None
    rule: str | None = None
    chunks: list[str] = field(default_factory=list)
    signals: EvidenceSignals = field(default_factory=EvidenceSignals)
    sources: list[dict[str, Any]] = field(default_factory=list)
    phase_seq: int = 0
    cancelled: bool = False
    failed: bool = False

    @property
    def answer(self) -> str:
        return "".join(self.chunks)


class AnswerSynthesizer:
    def __init__(
        self,
        kb: KnowledgeBase,
        engine: RetrievalEngine,
        *,
        entities: EntityIndex | None = None,
        cache: AnswerCache | None = None,
        stream_fn: StreamFn = stream_answer,
    ) -> None:
        self.kb = kb
        self.engine = engine
        self.entities = entities or EntityIndex.from_items(kb.items)
        self.cache = cache
        self.stream_fn = stream_fn
        self._skill_names = kb.skill_names()

    def _phase(self, outcome: _Outcome, phase: str) -> dict[str, Any]:
        outcome.phase_seq += 1
        return {
            "type": "phase",
            "seq": outcome.phase_seq,
            "phase": phase,
            "status": "started",
            "message": _PHASE_MESSAGES[phase],
        }

    @staticmethod
    def _meta(outcome: _Outcome, *, cached: bool) -> dict[str, Any]:
        return {
            "type": "meta",
            "intent": outcome.intent,
            "filters": outcome.filters.to_payload() if outcome.filters is not None else {},
            "cached": cached,
            "rule": outcome.rule,
        }

    @staticmethod
    def _done(outcome: _Outcome, *, cached: bool, blocked: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "done",
            "answer": outcome.answer,
            "cached": cached,
            "intent": outcome.intent,
            "signals": outcome.signals.to_payload(),
            "sources": outcome.sources,
            "query_id": outcome.query_id,
        }
        if blocked:
            payload["blocked"] = blocked
        return payload

    def _filtered(self, text: str, directive_filter: ContactDirectiveFilter, outcome: _Outcome) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        passed = directive_filter.feed(text)
        if passed:
            outcome.chunks.append(passed)
            events.append({"type": "delta", "text": passed})
        for tag in directive_filter.take_new_directives():
            attrs = parse_directive(tag)
            event: dict[str, Any] = {
                "type": "directive",
                "directive": tag,
                "reason": attrs.get("reason", ""),
                "draft": attrs.get("draft", ""),
            }
            if attrs.get("open"):
                event["open"] = attrs["open"]
            events.append(event)
        return events

    def _flush(self, directive_filter: ContactDirectiveFilter, outcome: _Outcome) -> list[dict[str, Any]]:
        rest = directive_filter.flush()
        if not rest:
            return []
        outcome.chunks.append(rest)
        return [{"type": "delta", "text": rest}]

    async def _emit_text(
        self,
        text: str,
        directive_filter: ContactDirectiveFilter,
        outcome: _Outcome,
        cancel_event: CancelSignal | None,
    ) -> AsyncIterator[dict[str, Any]]:
        size = max(1, int(settings.stream_chunk_chars))
        delay = float(settings.stream_chunk_delay_seconds)
        for idx in range(0, len(text), size):
            if _cancelled(cancel_event):
                outcome.cancelled = True
                return
            for event in self._filtered(text[idx : idx + size], directive_filter, outcome):
                yield event
            if delay > 0 and idx + size < len(text):
                await asyncio.sleep(delay)
        for event in self._flush(directive_filter, outcome):
            yield event

    async def stream(
        self,
        query: str,
        *,
        session_id: str | None = None,
        cancel_event: CancelSignal | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Run one question through the answer pipeline as a stream of event dicts."""
        text = query if isinstance(query, str) else ""
        outcome = _Outcome(query_id=uuid4().hex)

        verdict = screen_query(text, self.entities.entities)
        if verdict.blocked:
            async for event in self._emit_text(verdict.response, ContactDirectiveFilter(), outcome, cancel_event):
                yield event
            if not outcome.cancelled:
                yield self._done(outcome, cached=False, blocked=verdict.reason)
            return

        yield self._phase(outcome, "detecting_intent")
        hints = derive_temporal_hints(text)
        decision = classify_intent(text, self.entities, hints)
        plan = plan_auto_contact(text, decision.intent)
        outcome.intent = decision.intent
        outcome.filters = decision.filters
        outcome.rule = decision.rule

        if decision.intent == "contact":
            message, _ = build_contact_response(text, self.kb.contact)
            yield self._meta(outcome, cached=False)
            async for event in self._emit_text(message, ContactDirectiveFilter(), outcome, cancel_event):
                yield event
            if not outcome.cancelled:
                yield self._done(outcome, cached=False)
            return

        cache_key = build_cache_key(text, decision.intent, decision.filters)
        use_cache = self.cache is not None and settings.answer_cache_enabled and should_cache(text)
        if use_cache:
            while True:
                cached = self.cache.get(cache_key)
                if cached is None:
                    pending = self.cache.claim(cache_key)
                    if pending is None:
                        break
                    cached = await asyncio.shield(pending)
                    if cached is None:
                        continue
                _LOGGER.info("answer cache hit: intent=%s", decision.intent)
                async for event in self._replay(cached, outcome, cancel_event):
                    yield event
                return
            _LOGGER.info("answer cache miss: intent=%s", decision.intent)

        stored: dict[str, Any] | None = None
        try:
            async for event in self._compute(text, decision, plan, outcome, cancel_event):
                yield event
            if outcome.cancelled:
                return
            yield self._done(outcome, cached=False)
            if use_cache and not outcome.failed:
                stored = {
                    "query": normalize_query_text(text),
                    "answer": outcome.answer,
                    "intent": outcome.intent,
                    "filters": outcome.filters.to_payload() if outcome.filters is not None else {},
                    "rule": outcome.rule,
                    "signals": outcome.signals.to_payload(),
                    "sources": outcome.sources,
                }
                self.cache.set(cache_key, stored)
        finally:
            if use_cache:
                self.cache.release(cache_key, stored)

    async def _replay(
        self,
        cached: dict[str, Any],
        outcome: _Outcome,
        cancel_event: CancelSignal | None,
    ) -> AsyncIterator[dict[str, Any]]:
        outcome.sources = list(cached.get("sources") or [])
        outcome.signals = EvidenceSignals(**(cached.get("signals") or {}))
        yield self._meta(outcome, cached=True)
        async for event in self._emit_text(str(cached.get("answer") or ""), ContactDirectiveFilter(), outcome, cancel_event):
            yield event
        if not outcome.cancelled:
            yield self._done(outcome, cached=True)

    async def _compute(
        self,
        text: str,
        decision: RouteDecision,
        plan: AutoContactPlan | None,
        outcome: _Outcome,
        cancel_event: CancelSignal | None,
    ) -> AsyncIterator[dict[str, Any]]:
        yield self._meta(outcome, cached=False)
        directive_filter = ContactDirectiveFilter()
        filters = decision.filters
        evaluative = is_evaluative_query(text)
        comparative = needs_comparison_query(text)
        structured = (
            decision.intent in {"filter_query", "specific_item"}
            and filters is not None
            and filters.has_structured_filter()
        )

        if _cancelled(cancel_event):
            outcome.cancelled = True
            return
        yield self._phase(outcome, "searching")

        quotas: dict[str, int] | None = None
        listing = False
        if structured:
            limit = int(settings.filter_result_limit)
            hits = await self.engine.search(text, filters=filters, top_k=limit, hints=decision.hints)
            if not hits:
                relaxed, hits = await self.engine.recover(
                    text, filters, comparative=comparative, top_k=limit, hints=decision.hints
                )
                if relaxed is not None:
                    filters = relaxed
                    outcome.filters = relaxed
            if not hits:
                async for event in self._emit_text(
                    build_no_match_response(text, filters), directive_filter, outcome, cancel_event
                ):
                    yield event
                return
            hits = expand_for_comparison(text, hits, self.kb.items, decision.alias_matches)
            if decision.intent == "specific_item" and not filters.show_all and not comparative:
                template = None
                if len(hits) > 1:
                    template = build_clarification_prompt(text, [hit.item for hit in hits])
                elif _WHEN_RE.search(text):
                    template = build_when_answer(hits[0].item)
                if template is not None:
                    outcome.sources = self._sources(hits)
                    async for event in self._emit_text(template, directive_filter, outcome, cancel_event):
                        yield event
                    return
        else:
            types: list[str] | None = list(PERSONAL_TYPES) if decision.intent == "personal" else None
            top_k = int(settings.general_top_k)
            if evaluative:
                extra = list(filters.type) if filters is not None and filters.type else []
                quotas = evaluative_quotas(text, extra)
                types = list(quotas)
                top_k = max(top_k, int(settings.answer_top_k))
            listing = quotas is None and filters is not None and filters.show_all
            hits = await self.engine.search(text, filters=filters if listing else None, top_k=top_k, types=types)
            if not hits:
                async for event in self._emit_text(build_no_context_response(), directive_filter, outcome, cancel_event):
                    yield event
                return

        if _cancelled(cancel_event):
            outcome.cancelled = True
            return
        yield self._phase(outcome, "analyzing")
        hits = apply_temporal_boost(hits, decision.hints)
        if not structured:
            hits = expand_for_comparison(text, hits, self.kb.items, decision.alias_matches)
        hits = rerank_technical(hits, text)
        if quotas is not None:
            hits = diversify_by_type(hits, quotas)
        packs = build_evidence_packs(hits, self._skill_names)
        outcome.signals = build_evidence_signals(
            packs,
            expected_types=quotas.keys() if quotas is not None else None,
            link=EntityLink(
                exact_ids=frozenset(decision.exact_alias_ids),
                token_ids=frozenset(decision.token_alias_ids),
                unknown_proper_nouns=tuple(decision.unknown_proper_nouns),
            ),
            items_by_id={hit.item.id: hit.item for hit in hits},
        )
        outcome.sources = self._sources(hits)

        if _cancelled(cancel_event):
            outcome.cancelled = True
            return
        yield self._phase(outcome, "generating")
        context = build_grounding_context(
            hits,
            packs,
            intent=decision.intent,
            evaluative=quotas is not None,
            filters=filters,
            skill_names=self._skill_names,
            contact=self.kb.contact,
        )
        async for event in self._generate(text, build_system_prompt(context), packs, directive_filter, outcome, cancel_event):
            yield event
        if outcome.cancelled:
            return

        if plan is not None and not directive_filter.emitted:
            addition = f"\n\n{plan.preface}\n\n{contact_directive(plan.reason, plan.draft, plan.open)}"
            async for event in self._emit_text(addition, directive_filter, outcome, cancel_event):
                yield event
        if not (structured or listing) and is_weak_evidence(outcome.signals) and not directive_filter.emitted:
            _LOGGER.info(
                "weak evidence gate: count=%s coverage=%.2f link=%.2f",
                outcome.signals.evidence_count,
                outcome.signals.coverage_ratio,
                outcome.signals.entity_link_score,
            )
            addition = (
                f"\n\n{WEAK_EVIDENCE_NOTE}\n\n"
                f"{contact_directive('insufficient_context', build_contact_draft(text))}"
            )
            async for event in self._emit_text(addition, directive_filter, outcome, cancel_event):
                yield event

    async def _generate(
        self,
        text: str,
        system_prompt: str,
        packs: list[EvidencePack],
        directive_filter: ContactDirectiveFilter,
        outcome: _Outcome,
        cancel_event: CancelSignal | None,
    ) -> AsyncIterator[dict[str, Any]]:
        stream = self.stream_fn(text, system_prompt, packs=packs, cancel_event=cancel_event)
        try:
            async for chunk in stream:
                if _cancelled(cancel_event):
                    outcome.cancelled = True
                    return
                for event in self._filtered(chunk, directive_filter, outcome):
                    yield event
        except UpstreamFailure as exc:
            _LOGGER.warning("llm provider failed, streaming fallback: %s", exc)
            outcome.failed = True
            prefix = "\n\n" if outcome.chunks else ""
            for event in self._filtered(prefix + FALLBACK_ANSWER, directive_filter, outcome):
                yield event
        finally:
            await stream.aclose()
        if _cancelled(cancel_event):
            outcome.cancelled = True
            return
        for event in self._flush(directive_filter, outcome):
            yield event

    @staticmethod
    def _sources(hits: Iterable[RetrievalHit]) -> list[dict[str, Any]]:
        return [
            {"id": hit.item.id, "type": hit.item.kind, "title": item_label(hit.item), "score": round(float(hit.score), 4)}
            for hit in hits
        ]
