from __future__ import annotations

import re
from typing import Any, Iterable

from iris_api.services.entity_index import AliasMatch
from iris_api.services.kb_text import extract_primary_year, item_label
from iris_api.services.retrieval import RetrievalHit
from iris_api.services.temporal import TemporalHints, temporal_boost_factor

COMPARISON_RE = re.compile(r"\b(compare|comparison|versus|vs|before|after|previous|next|difference)\b", re.IGNORECASE)
_BEFORE_RE = re.compile(r"\b(before|previous|prior|last)\b", re.IGNORECASE)
_AFTER_RE = re.compile(r"\b(after|next|following|upcoming)\b", re.IGNORECASE)
TECHNICAL_QUERY_RE = re.compile(r"(technical|tech|engineer|build|develop|algorithm|ml|ai|data|code|system)", re.IGNORECASE)

_TECHNICAL_SIGNALS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"(document ai|nlp|embeddings|transformers|faiss|sentence|gpt|neural|deep learning)", re.IGNORECASE), 3),
    (re.compile(r"(algorithm|optimization|rule engine|search|similarity|clustering|matching|pipeline)", re.IGNORECASE), 2),
    (re.compile(r"(100\+|600k|batch|parallel|throughput|scale|automation)", re.IGNORECASE), 2),
    (re.compile(r"(c#|\.net|assembly|hardware|cpu|memory)", re.IGNORECASE), 1),
)


def needs_comparison_query(query: str) -> bool:
    return bool(COMPARISON_RE.search(str(query or "")))


def apply_temporal_boost(hits: list[RetrievalHit], hints: TemporalHints) -> list[RetrievalHit]:
    if not hints.years:
        return hits
    boosted = [hit.rescored(hit.score * temporal_boost_factor(hit.item, hints.years)) for hit in hits]
    return sorted(boosted, key=lambda hit: hit.score, reverse=True)


def technical_score(item: Any) -> int:
    if not item.summary:
        return 0
    text = f"{item.summary} {' '.join(item.specifics)}"
    return sum(weight for pattern, weight in _TECHNICAL_SIGNALS if pattern.search(text))


def rerank_technical(hits: list[RetrievalHit], query: str) -> list[RetrievalHit]:
    if not TECHNICAL_QUERY_RE.search(str(query or "")):
        return hits
    reranked = [
        hit.rescored(hit.score * (1 + technical_score(hit.item) * 0.03)) if hit.item.kind == "experience" else hit
        for hit in hits
    ]
    return sorted(reranked, key=lambda hit: hit.score, reverse=True)


def expand_for_comparison(
    query: str,
    hits: list[RetrievalHit],
    items: Iterable[Any],
    alias_matches: list[AliasMatch],
) -> list[RetrievalHit]:
    """Append the named items and the neighbouring year's work for before/after questions."""
    if not needs_comparison_query(query):
        return hits

    all_items = list(items)
    seen: set[str] = set()
    expanded: list[RetrievalHit] = []
    for hit in hits:
        if hit.item.id in seen:
            continue
        seen.add(hit.item.id)
        expanded.append(hit)

    score_seed = min((hit.score for hit in expanded), default=1.0)

    def _push(item: Any) -> None:
        nonlocal score_seed
        if item.id in seen:
            return
        score_seed -= 0.0005
        seen.add(item.id)
        expanded.append(RetrievalHit(item=item, score=score_seed))

    by_id = {item.id: item for item in all_items}
    alias_items = [by_id[match.entry.id] for match in alias_matches if match.entry.id in by_id]
    for item in alias_items:
        _push(item)

    anchor = alias_items[0] if alias_items else (expanded[0].item if expanded else None)
    anchor_year = extract_primary_year(anchor) if anchor is not None else None
    if anchor_year is None:
        return expanded

    pool = [item for item in all_items if item.kind in {"experience", "project"}]

    def _add_year(year: int) -> None:
        for item in sorted((item for item in pool if extract_primary_year(item) == year), key=item_label):
            _push(item)

    if _BEFORE_RE.search(query):
        _add_year(anchor_year - 1)
    if _AFTER_RE.search(query):
        _add_year(anchor_year + 1)
    return expanded
