from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, TypeVar

from iris_api.core.config import settings

T = TypeVar("T")

_CLASS_QUERY_RE = re.compile(r"\b(class|classes|course|courses|coursework|academic)\b", re.IGNORECASE)


def _kind_of(candidate: Any) -> str:
    item = getattr(candidate, "item", candidate)
    return str(getattr(item, "kind", "") or "")


def diversify_by_type(candidates: Iterable[T], quotas: Mapping[str, int]) -> list[T]:
    """Keep candidates in rank order while their type is under quota. No backfill."""
    counts: dict[str, int] = {}
    selected: list[T] = []
    for candidate in candidates:
        kind = _kind_of(candidate)
        limit = int(quotas.get(kind, 0))
        if counts.get(kind, 0) >= limit:
            continue
        counts[kind] = counts.get(kind, 0) + 1
        selected.append(candidate)
    return selected


def evaluative_quotas(query: str, extra_types: Iterable[str] = ()) -> dict[str, int]:
    quotas = dict(settings.evaluative_type_quotas)
    if _CLASS_QUERY_RE.search(str(query or "")):
        quotas["class"] = int(settings.evaluative_class_quota)
    for kind in extra_types:
        quotas.setdefault(kind, 1)
    return quotas
