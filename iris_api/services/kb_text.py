from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable

from iris_api.schemas.kb import (
    BioItem,
    BlogItem,
    ClassItem,
    EducationItem,
    ExperienceItem,
    InterestItem,
    ProjectItem,
    SkillItem,
    StoryItem,
    ValueItem,
)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_YEAR_RE = re.compile(r"(19|20)\d{2}")


def current_year() -> int:
    return datetime.now(timezone.utc).year


def normalize_query_text(text: str) -> str:
    lowered = unicodedata.normalize("NFKD", str(text or "").lower())
    stripped = "".join(ch for ch in lowered if not unicodedata.combining(ch))
    return _WHITESPACE_RE.sub(" ", _NON_ALNUM_RE.sub(" ", stripped)).strip()


def normalize_skill_token(value: str) -> str:
    return normalize_query_text(value).replace(" ", "_")


def is_fuzzy_match(search: str, target: str) -> bool:
    if not search or not target:
        return False
    if search == target:
        return True
    if search in target or target in search:
        return True

    target_words = target.split()

    def _word_hit(search_word: str) -> bool:
        for target_word in target_words:
            if search_word == target_word:
                return True
            if len(search_word) >= 3 and len(target_word) >= 3:
                if search_word in target_word or target_word in search_word:
                    return True
        return False

    if all(_word_hit(word) for word in search.split()):
        return True

    search_stripped = search[:-1] if search.endswith("s") else search
    target_stripped = target[:-1] if target.endswith("s") else target
    if search_stripped == target_stripped:
        return True
    if len(search_stripped) >= 3 and len(target_stripped) >= 3:
        return search_stripped in target or target_stripped in search
    return False


def escape_attribute(value: str) -> str:
    return str(value or "").replace('"', "&quot;")


def parse_year(value: Any) -> int | None:
    match = _YEAR_RE.search(str(value or ""))
    if match is None:
        return None
    return int(match.group(0))


def item_label(item: Any) -> str:
    if isinstance(item, (ProjectItem, ClassItem, BlogItem, StoryItem)):
        return item.title
    if isinstance(item, ExperienceItem):
        return f"{item.role} at {item.company}"
    if isinstance(item, ValueItem):
        return item.value
    if isinstance(item, InterestItem):
        return item.interest
    if isinstance(item, EducationItem):
        return f"{item.degree}, {item.school}"
    if isinstance(item, (BioItem, SkillItem)):
        return item.name
    raise TypeError(f"unsupported knowledge base item: {type(item).__name__}")


def item_dates(item: Any) -> tuple[int | None, int | None]:
    """Start/end years for dated items; (None, None) otherwise."""
    dates = getattr(item, "dates", None)
    if dates is None:
        return None, None
    start = parse_year(dates.start)
    end = parse_year(dates.end) if dates.end else None
    return start, end


def extract_primary_year(item: Any) -> int | None:
    dates = getattr(item, "dates", None)
    if dates is not None:
        if dates.end and dates.end.strip().lower() == "present":
            return current_year()
        year = parse_year(dates.end) if dates.end else None
        return year if year is not None else parse_year(dates.start)
    if isinstance(item, ClassItem):
        return parse_year(item.term)
    if isinstance(item, BlogItem):
        return parse_year(item.published_date)
    if isinstance(item, EducationItem):
        return parse_year(item.expected_grad)
    return None


def _variant_text(item: Any) -> list[str]:
    if isinstance(item, ProjectItem):
        return [item.architecture or "", " ".join(item.tech_stack)]
    if isinstance(item, ExperienceItem):
        return [item.company, item.role, item.location or ""]
    if isinstance(item, ClassItem):
        return [item.school, item.term, item.professor or ""]
    if isinstance(item, BlogItem):
        return [item.context or "", item.published_date]
    if isinstance(item, StoryItem):
        return [item.text]
    if isinstance(item, (ValueItem, InterestItem)):
        return [item.why]
    if isinstance(item, EducationItem):
        return [item.school, item.degree, item.gpa or "", item.expected_grad or ""]
    if isinstance(item, BioItem):
        return [
            item.headline,
            item.bio,
            item.work_authorization or "",
            item.location or "",
            item.availability or "",
            " ".join(item.language_proficiency),
        ]
    if isinstance(item, SkillItem):
        return [item.type, item.description or ""]
    raise TypeError(f"unsupported knowledge base item: {type(item).__name__}")


def pack_item_text(item: Any, skill_names: dict[str, str] | None = None) -> str:
    """Flatten an item into the text used for similarity ranking."""
    names = skill_names or {}
    skills = [names.get(skill_id, skill_id) for skill_id in item.skills]
    parts = [
        f"[{item.kind}]",
        item_label(item),
        item.summary,
        " ".join(item.specifics),
        *_variant_text(item),
        " ".join(skills),
        " ".join(item.tags),
        " ".join(item.aliases),
    ]
    return " ".join(part.strip() for part in parts if part and part.strip())


def entity_terms(item: Any) -> list[str]:
    """Lowercased names an off-topic check should recognise for this item."""
    terms: list[str] = []
    if isinstance(item, (ProjectItem, BlogItem, StoryItem, ClassItem)):
        terms.append(item.title)
    if isinstance(item, ExperienceItem):
        terms.append(item.company)
    if isinstance(item, (ClassItem, EducationItem)):
        terms.append(item.school)
    if isinstance(item, SkillItem):
        terms.append(item.name)
    terms.extend(item.skills)
    terms.extend(item.aliases)
    return [term.strip().lower() for term in terms if term and term.strip()]


def unique_preserving_order(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    ordered: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
