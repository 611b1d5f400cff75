from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from iris_api.services.kb_text import current_year, extract_primary_year, item_label
from iris_api.services.retrieval import RetrievalHit

MAX_PACK_SPECIFICS = 4
MAX_PACK_SKILLS = 5

METRIC_RE = re.compile(r"\d+(?:\.\d+)?\s*%|\$\s?\d[\d,.]*\s*[kKmMbB]?|\b\d+[kKmM+]")

EXACT_LINK_SCORE = 1.0
TOKEN_LINK_SCORE = 0.85
MISSED_ALIAS_SCORE = 0.5
UNKNOWN_NOUN_SCORE = 0.3


@dataclass(frozen=True)
class EvidencePack:
    id: str
    type: str
    title: str
    summary: str
    specifics: list[str]
    date_range: Optional[str]
    score: float
    skills: list[str] = field(default_factory=list)
    metrics: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EntityLink:
    exact_ids: frozenset[str] = frozenset()
    token_ids: frozenset[str] = frozenset()
    unknown_proper_nouns: tuple[str, ...] = ()


@dataclass(frozen=True)
class EvidenceSignals:
    evidence_count: int = 0
    coverage_ratio: float = 0.0
    entity_link_score: float = 1.0
    has_metrics: bool = False
    freshness_months: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def _date_range(item: Any) -> str | None:
    dates = getattr(item, "dates", None)
    if dates is None:
        return None
    return f"{dates.start} - {dates.end or 'present'}"


def extract_metrics(texts: Iterable[str]) -> list[str]:
    metrics: list[str] = []
    for text in texts:
        for match in METRIC_RE.finditer(str(text or "")):
            value = match.group(0).strip()
            if value not in metrics:
                metrics.append(value)
    return metrics


def build_evidence_packs(hits: Iterable[RetrievalHit], skill_names: dict[str, str] | None = None) -> list[EvidencePack]:
    names = skill_names or {}
    packs: list[EvidencePack] = []
    for hit in hits:
        item = hit.item
        specifics = list(item.specifics[:MAX_PACK_SPECIFICS])
        packs.append(
            EvidencePack(
                id=item.id,
                type=item.kind,
                title=item_label(item),
                summary=item.summary,
                specifics=specifics,
                date_range=_date_range(item),
                score=round(float(hit.score), 4),
                skills=[names.get(skill_id, skill_id) for skill_id in item.skills[:MAX_PACK_SKILLS]],
                metrics=extract_metrics([item.summary, *specifics]),
            )
        )
    return packs


def entity_link_score(packs: list[EvidencePack], link: EntityLink | None) -> float:
    if link is None:
        return 1.0
    present = {pack.id for pack in packs}
    if link.exact_ids & present:
        return EXACT_LINK_SCORE
    if link.token_ids & present:
        return TOKEN_LINK_SCORE
    if link.exact_ids or link.token_ids:
        return MISSED_ALIAS_SCORE
    if link.unknown_proper_nouns:
        return UNKNOWN_NOUN_SCORE
    return 1.0


def _freshness_months(packs: list[EvidencePack], hits_by_id: dict[str, Any]) -> int | None:
    years = [extract_primary_year(hits_by_id[pack.id]) for pack in packs if pack.id in hits_by_id]
    known = [year for year in years if year is not None]
    if not known:
        return None
    return max(0, (current_year() - max(known)) * 12)


def build_evidence_signals(
    packs: list[EvidencePack],
    *,
    expected_types: Iterable[str] | None = None,
    link: EntityLink | None = None,
    items_by_id: dict[str, Any] | None = None,
) -> EvidenceSignals:
    if not packs:
        return EvidenceSignals(evidence_count=0, coverage_ratio=0.0, entity_link_score=0.0)

    expected = set(expected_types or ())
    if expected:
        realized = {pack.type for pack in packs}
        coverage = len(realized & expected) / len(expected)
    else:
        coverage = 1.0
    return EvidenceSignals(
        evidence_count=len(packs),
        coverage_ratio=min(1.0, max(0.0, coverage)),
        entity_link_score=entity_link_score(packs, link),
        has_metrics=any(pack.metrics for pack in packs),
        freshness_months=_freshness_months(packs, items_by_id or {}),
    )
