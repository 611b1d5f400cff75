from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from iris_api.schemas.answer import QueryFilter
from iris_api.schemas.kb import (
    BlogItem,
    ClassItem,
    ExperienceItem,
    InterestItem,
    ProjectItem,
    SkillItem,
    StoryItem,
    ValueItem,
)
from iris_api.services.embedding_provider import Embedder, cosine
from iris_api.services.errors import UpstreamFailure
from iris_api.services.kb_text import (
    current_year,
    extract_primary_year,
    is_fuzzy_match,
    item_dates,
    normalize_query_text,
    normalize_skill_token,
    pack_item_text,
    parse_year,
)
from iris_api.services.temporal import TemporalHints, sort_items_for_filter

_LOGGER = logging.getLogger(__name__)
_STOPWORDS = frozenset(
    {"a", "an", "and", "are", "about", "did", "do", "does", "for", "has", "have", "he", "his", "how",
     "i", "in", "is", "it", "me", "of", "on", "or", "she", "the", "their", "they", "to", "was", "what",
     "when", "where", "which", "who", "with", "you", "your"}
)


@dataclass(frozen=True)
class RetrievalHit:
    item: Any
    score: float

    def rescored(self, score: float) -> "RetrievalHit":
        return RetrievalHit(item=self.item, score=score)


def _start_year(item: Any) -> int:
    start, _ = item_dates(item)
    return start or 0


def _title_targets(item: Any) -> list[str]:
    if isinstance(item, (ProjectItem, ClassItem, BlogItem, StoryItem)):
        targets = [item.title]
    elif isinstance(item, ExperienceItem):
        targets = [f"{item.role} {item.company}"]
    elif isinstance(item, ValueItem):
        targets = [item.value]
    elif isinstance(item, InterestItem):
        targets = [item.interest]
    else:
        targets = []
    return [normalize_query_text(target) for target in (*targets, *item.aliases) if target]


def resolve_skill_names_to_ids(names: Iterable[str], skill_items: Iterable[SkillItem]) -> list[str]:
    """Map free-text skill names onto skill ids; unknown names keep their normalized token."""
    skills = list(skill_items)
    resolved: list[str] = []
    for name in names:
        needle = normalize_query_text(name)
        if not needle:
            continue
        matched = [
            skill.id
            for skill in skills
            if is_fuzzy_match(needle, normalize_query_text(skill.name))
            or any(normalize_query_text(alias) == needle for alias in skill.aliases)
        ]
        for skill_id in matched or [normalize_skill_token(name)]:
            if skill_id not in resolved:
                resolved.append(skill_id)
    return resolved


def _matches_year(item: Any, years: list[int]) -> bool:
    start, end = item_dates(item)
    if start is not None:
        dates = getattr(item, "dates", None)
        if end is None:
            open_ended = dates is None or not dates.end or dates.end.strip().lower() == "present"
            end = current_year() if open_ended else start
        return any(start <= year <= end for year in years)
    if isinstance(item, ClassItem):
        return parse_year(item.term) in years
    primary = extract_primary_year(item)
    return primary is not None and primary in years


def _matches_tags(item: Any, tags: list[str], operation: str) -> bool:
    item_tags = [tag.lower() for tag in item.tags]
    wanted = [tag.lower() for tag in tags]
    if operation == "exact":
        return all(tag in item_tags for tag in wanted)
    if operation == "any":
        return any(tag in item_tags for tag in wanted)
    return any(tag in item_tag for tag in wanted for item_tag in item_tags)


class RetrievalEngine:
    def __init__(self, items: Iterable[Any], embedder: Embedder) -> None:
        self.items: list[Any] = list(items)
        self.embedder = embedder
        self._skill_items = [item for item in self.items if isinstance(item, SkillItem)]
        self._skill_names = {item.id: item.name for item in self._skill_items}
        self._vectors: dict[str, list[float]] | None = None
        self._vectors_lock = asyncio.Lock()

    def apply_filters(self, items: Iterable[Any], filters: QueryFilter) -> list[Any]:
        matched = list(items)
        if filters.type:
            kinds = set(filters.type)
            matched = [item for item in matched if item.kind in kinds]
        if filters.title_match:
            needle = normalize_query_text(filters.title_match)
            matched = [item for item in matched if any(needle in target for target in _title_targets(item))]
        if filters.skills:
            wanted = [normalize_skill_token(skill_id) for skill_id in resolve_skill_names_to_ids(filters.skills, self._skill_items)]

            def _skill_hit(item: Any) -> bool:
                owned = {normalize_skill_token(skill) for skill in item.skills}
                if isinstance(item, SkillItem):
                    owned.add(normalize_skill_token(item.id))
                if filters.operation == "exact":
                    return all(skill in owned for skill in wanted)
                return any(skill in owned for skill in wanted)

            matched = [item for item in matched if _skill_hit(item)]
        if filters.company:
            companies = [normalize_query_text(company) for company in filters.company]
            matched = [
                item
                for item in matched
                if isinstance(item, ExperienceItem)
                and any(company in normalize_query_text(item.company) for company in companies)
            ]
        if filters.year:
            matched = [item for item in matched if _matches_year(item, filters.year)]
        if filters.tags:
            matched = [item for item in matched if _matches_tags(item, filters.tags, filters.operation)]
        return matched

    async def _item_vectors(self) -> dict[str, list[float]]:
        if self._vectors is not None:
            return self._vectors
        async with self._vectors_lock:
            if self._vectors is None:
                texts = [pack_item_text(item, self._skill_names) for item in self.items]
                vectors = await self.embedder.embed(texts)
                self._vectors = {item.id: vector for item, vector in zip(self.items, vectors)}
        return self._vectors

    async def _similarity(self, query: str, candidates: list[Any]) -> list[RetrievalHit]:
        item_vectors = await self._item_vectors()
        query_vectors = await self.embedder.embed([query])
        query_vector = query_vectors[0] if query_vectors else []
        return [RetrievalHit(item=item, score=cosine(query_vector, item_vectors.get(item.id, []))) for item in candidates]

    def _keyword(self, query: str, candidates: list[Any]) -> list[RetrievalHit]:
        tokens = {token for token in normalize_query_text(query).split() if token not in _STOPWORDS}
        if not tokens:
            return []
        hits: list[RetrievalHit] = []
        for item in candidates:
            packed = set(normalize_query_text(pack_item_text(item, self._skill_names)).split())
            overlap = len(tokens & packed)
            if overlap:
                hits.append(RetrievalHit(item=item, score=overlap / len(tokens)))
        return hits

    async def _rank(self, query: str, candidates: list[Any]) -> list[RetrievalHit] | None:
        try:
            return await self._similarity(query, candidates)
        except (UpstreamFailure, httpx.HTTPError) as exc:
            _LOGGER.warning("embedding unavailable, falling back to keyword ranking: %s", exc)
            return None

    async def search(
        self,
        query: str,
        *,
        filters: QueryFilter | None = None,
        top_k: int = 10,
        types: Iterable[str] | None = None,
        hints: TemporalHints | None = None,
    ) -> list[RetrievalHit]:
        candidates = self.items
        if types:
            kinds = set(types)
            candidates = [item for item in candidates if item.kind in kinds]
        if not candidates:
            return []

        text = str(query or "").strip()
        if filters is not None and filters.has_structured_filter():
            ordered = sort_items_for_filter(self.apply_filters(candidates, filters), hints or TemporalHints())
            if not ordered:
                return []
            if filters.show_all:
                return [RetrievalHit(item=item, score=1.0) for item in ordered]
            ranked = await self._rank(text, ordered) if text else None
            if ranked is None:
                return [RetrievalHit(item=item, score=1.0) for item in ordered[:top_k]]
            return self._top(ranked, top_k)

        if not text:
            return []
        ranked = await self._rank(text, candidates)
        if ranked is None:
            ranked = self._keyword(text, candidates)
        ranked = [hit for hit in ranked if hit.score > 0]
        if filters is not None and filters.show_all:
            return sorted(ranked, key=lambda hit: (-hit.score, -_start_year(hit.item)))
        return self._top(ranked, top_k)

    @staticmethod
    def _top(hits: list[RetrievalHit], top_k: int) -> list[RetrievalHit]:
        ordered = sorted(hits, key=lambda hit: (-hit.score, -_start_year(hit.item)))
        return ordered[: max(0, int(top_k))]

    async def recover(
        self,
        query: str,
        filters: QueryFilter,
        *,
        comparative: bool = False,
        top_k: int = 10,
        hints: TemporalHints | None = None,
    ) -> tuple[QueryFilter | None, list[RetrievalHit]]:
        """Relax a structured filter that matched nothing; returns the filter that worked."""
        relaxed = filters.model_copy(deep=True)
        attempts: list[QueryFilter] = []
        if comparative and relaxed.year:
            widened = sorted({year + delta for year in relaxed.year for delta in (-1, 0, 1)})
            relaxed = relaxed.model_copy(update={"year": widened})
            attempts.append(relaxed)
        if relaxed.year:
            relaxed = relaxed.model_copy(update={"year": None})
            attempts.append(relaxed)
        if relaxed.title_match:
            relaxed = relaxed.model_copy(update={"title_match": None})
            attempts.append(relaxed)

        for attempt in attempts:
            if not attempt.has_structured_filter():
                break
            hits = await self.search(query, filters=attempt, top_k=top_k, hints=hints)
            if hits:
                _LOGGER.info("structured filter recovered: %s", attempt.to_payload())
                return attempt, hits
        return None, []


