from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from iris_api.schemas.answer import QueryFilter
from iris_api.services.kb_text import current_year, extract_primary_year, item_label

RelativeHint = Literal["current", "upcoming", "past", "recent"]

_EXPLICIT_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_CURRENT_RE = re.compile(r"\b(this|current)\s+year\b|\bcurrent(ly)?\b|\bnow\b")
_UPCOMING_RE = re.compile(r"\bnext\s+year\b|\bupcoming\b")
_PAST_RE = re.compile(r"\b(last|previous)\s+year\b|\bpast\s+year\b")
_RECENT_SPAN_RE = re.compile(r"\bpast\s+(?:two|couple of)\s+years\b")
_RECENT_RE = re.compile(r"\brecent\b")


@dataclass
class TemporalHints:
    years: list[int] = field(default_factory=list)
    relative: Optional[RelativeHint] = None

    def add_year(self, year: int) -> None:
        if year not in self.years:
            self.years.append(year)


def derive_temporal_hints(query: str, *, now_year: int | None = None) -> TemporalHints:
    year_now = now_year if now_year is not None else current_year()
    hints = TemporalHints()
    text = str(query or "")
    lower = text.lower()

    for match in _EXPLICIT_YEAR_RE.findall(text):
        hints.add_year(int(match))

    if _CURRENT_RE.search(lower):
        hints.add_year(year_now)
        hints.relative = hints.relative or "current"
    if _UPCOMING_RE.search(lower):
        hints.add_year(year_now + 1)
        hints.relative = "upcoming"
    if _PAST_RE.search(lower):
        hints.add_year(year_now - 1)
        hints.relative = "past"
    if _RECENT_SPAN_RE.search(lower):
        hints.add_year(year_now)
        hints.add_year(year_now - 1)
        hints.relative = "recent"
    if _RECENT_RE.search(lower) and hints.relative is None:
        hints.relative = "recent"
    return hints


def year_distance(item: Any, years: list[int]) -> float:
    if not years:
        return float("inf")
    item_year = extract_primary_year(item) or 0
    return min(abs(year - item_year) for year in years)


def temporal_boost_factor(item: Any, years: list[int]) -> float:
    if not years or extract_primary_year(item) is None:
        return 1.0
    closest = year_distance(item, years)
    if closest == 0:
        return 1.25
    if closest == 1:
        return 1.12
    if closest <= 2:
        return 1.05
    return 1.0


def sort_items_for_filter(items: list[Any], hints: TemporalHints) -> list[Any]:
    """Newest first, then nearest to the hinted years, then by label."""
    return sorted(
        items,
        key=lambda item: (
            -(extract_primary_year(item) or 0),
            year_distance(item, hints.years) if hints.years else 0,
            item_label(item),
        ),
    )


def apply_temporal_hints_to_filters(filters: QueryFilter | None, hints: TemporalHints) -> QueryFilter | None:
    if not hints.years:
        return filters
    base = filters.model_copy(deep=True) if filters is not None else QueryFilter()
    years = list(base.year or [])
    for year in hints.years:
        if year not in years:
            years.append(year)
    base.year = years
    return base
