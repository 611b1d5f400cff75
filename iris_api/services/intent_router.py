from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from iris_api.core.config import settings
from iris_api.schemas.answer import IntentResult, QueryFilter
from iris_api.services.entity_index import AliasMatch, EntityIndex
from iris_api.services.kb_text import normalize_query_text
from iris_api.services.temporal import TemporalHints, apply_temporal_hints_to_filters, derive_temporal_hints

_LOGGER = logging.getLogger(__name__)

LIST_RE = re.compile(r"\b(list|show (me )?all|every|enumerate)\b", re.IGNORECASE)
EVALUATIVE_RE = re.compile(
    r"\b(best|strongest|top|most|unique|what makes|why should|why .* hire|biggest|differen(t|ce))\b",
    re.IGNORECASE,
)
CONTACT_RE = re.compile(
    r"\b(contact|e-?mail|reach out|get in touch|linkedin|message|connect with|write to|send a message)\b",
    re.IGNORECASE,
)
_EXPLICIT_YEAR_RE = re.compile(r"\b20\d{2}\b")
_PERSONAL_RE = re.compile(
    r"\b(values?|interests?|hobbies|hobby|story|stories|background|family|education|school|degree|gpa|bio|headline"
    r"|grew up|where .* from)\b",
    re.IGNORECASE,
)
_PROPER_NOUN_RE = re.compile(r"\b[A-Z][A-Za-z0-9]+\b")
_SPECIFIC_ALIAS_TYPES = frozenset({"project", "experience", "class", "blog"})

_DEFAULT_SHOW_ALL_RE = re.compile(r"\b(list|show|give me|display|enumerate|all|every|everything)\b")
_DEFAULT_TYPE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bskill(s)?\b|\btech\b|\btechnology\b|\bstack\b|\blanguage(s)?\b|\btools?\b"), "skill"),
    (re.compile(r"\bproject(s)?\b"), "project"),
    (re.compile(r"\bexperience(s)?\b|\bwork\b|\brole(s)?\b|\bjob(s)?\b|\bintern(ship|ships)?\b"), "experience"),
    (re.compile(r"\bclass(es)?\b|\bcourse(s)?\b"), "class"),
)
_PROFILE_RULES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bavailability\b|\bavailable\b|\bopen to\b"),
    re.compile(r"\bwork authorization\b|\bvisa\b|\bwork permit\b|\bcitizen(ship)?\b"),
    re.compile(r"\blocation\b|\bwhere\b.*\b(based|located)\b|\bwhat city\b"),
    re.compile(r"\blanguage(s)?\b|\bspeak\b|\bfluency\b"),
)
_NON_PROFILE_RULES = frozenset({"empty", "contact"})


def _availability_contact_re() -> re.Pattern[str]:
    subject = re.escape(normalize_query_text(settings.subject_name) or "mike")
    return re.compile(rf"\bis {subject} (available|open to|looking for|seeking)\b")


def _unique_re() -> re.Pattern[str]:
    subject = re.escape(normalize_query_text(settings.subject_name) or "mike")
    return re.compile(
        rf"\bwhat\b.*\bmakes\b.*\b({subject}|him|her|them)\b.*\b(special|unique)\b|\bunique\b.*\babout\b.*\b{subject}\b"
    )


@dataclass
class RoutingContext:
    query: str
    normalized: str
    entities: EntityIndex
    hints: TemporalHints
    alias_matches: list[AliasMatch] = field(default_factory=list)


@dataclass(frozen=True)
class RoutingRule:
    name: str
    predicate: Callable[[RoutingContext], bool]
    resolve: Callable[[RoutingContext], IntentResult]


@dataclass
class RouteDecision:
    result: IntentResult
    rule: str
    alias_matches: list[AliasMatch] = field(default_factory=list)
    unknown_proper_nouns: list[str] = field(default_factory=list)
    hints: TemporalHints = field(default_factory=TemporalHints)

    @property
    def intent(self) -> str:
        return self.result.intent

    @property
    def filters(self) -> QueryFilter | None:
        return self.result.filters

    @property
    def exact_alias_ids(self) -> set[str]:
        return {match.entry.id for match in self.alias_matches if match.exact}

    @property
    def token_alias_ids(self) -> set[str]:
        return {match.entry.id for match in self.alias_matches if not match.exact}


def _specific_alias(ctx: RoutingContext) -> AliasMatch | None:
    for match in ctx.alias_matches:
        if match.entry.type in _SPECIFIC_ALIAS_TYPES:
            return match
    return None


def _facet_filters(ctx: RoutingContext) -> QueryFilter:
    filters = QueryFilter()
    skills = ctx.entities.match_skills(ctx.normalized)
    if skills:
        filters.skills = skills
    years = [int(value) for value in _EXPLICIT_YEAR_RE.findall(ctx.query)]
    if years:
        filters.year = sorted(set(years))
    companies = ctx.entities.match_companies(ctx.normalized)
    if companies:
        filters.company = companies
    return filters


def _is_empty(ctx: RoutingContext) -> bool:
    return not ctx.normalized


def _is_contact(ctx: RoutingContext) -> bool:
    return bool(CONTACT_RE.search(ctx.query) or _availability_contact_re().search(ctx.normalized))


ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule("empty", _is_empty, lambda ctx: IntentResult(intent="general", filters=QueryFilter())),
    RoutingRule(
        "list",
        lambda ctx: bool(LIST_RE.search(ctx.query)),
        lambda ctx: IntentResult(intent="filter_query", filters=QueryFilter(show_all=True)),
    ),
    RoutingRule("contact", _is_contact, lambda ctx: IntentResult(intent="contact")),
    RoutingRule(
        "evaluative",
        lambda ctx: bool(EVALUATIVE_RE.search(ctx.query)),
        lambda ctx: IntentResult(intent="general"),
    ),
    RoutingRule(
        "alias",
        lambda ctx: _specific_alias(ctx) is not None,
        lambda ctx: IntentResult(
            intent="specific_item",
            filters=QueryFilter(title_match=_specific_alias(ctx).entry.name),
        ),
    ),
    RoutingRule(
        "facet",
        lambda ctx: _facet_filters(ctx).has_structured_filter(),
        lambda ctx: IntentResult(intent="filter_query", filters=_facet_filters(ctx)),
    ),
    RoutingRule(
        "personal",
        lambda ctx: bool(_PERSONAL_RE.search(ctx.query)),
        lambda ctx: IntentResult(intent="personal"),
    ),
    RoutingRule("fallback", lambda ctx: True, lambda ctx: IntentResult(intent="general")),
)


def is_evaluative_query(query: str) -> bool:
    return bool(EVALUATIVE_RE.search(str(query or "")))


def merge_filters(base: QueryFilter | None, extra: QueryFilter) -> QueryFilter:
    if base is None:
        return extra.model_copy(deep=True)
    merged = base.model_copy(deep=True)
    for name in ("type", "skills", "company", "year", "tags"):
        values = getattr(extra, name)
        if not values:
            continue
        current = list(getattr(merged, name) or [])
        for value in values:
            if value is not None and value not in current:
                current.append(value)
        setattr(merged, name, current)
    if extra.title_match:
        merged.title_match = extra.title_match
    if extra.operation != "contains":
        merged.operation = extra.operation
    if extra.show_all:
        merged.show_all = True
    return merged


def _ensure_type(filters: QueryFilter, kind: str) -> None:
    current = list(filters.type or [])
    if kind not in current:
        current.append(kind)
    filters.type = current


def derive_filter_defaults(query: str, filters: QueryFilter | None, alias_matches: list[AliasMatch]) -> QueryFilter | None:
    normalized = normalize_query_text(query)
    next_filters = filters.model_copy(deep=True) if filters is not None else QueryFilter()
    mutated = False

    if _DEFAULT_SHOW_ALL_RE.search(normalized) and not next_filters.show_all:
        next_filters.show_all = True
        mutated = True
    for pattern, kind in _DEFAULT_TYPE_RULES:
        if pattern.search(normalized):
            _ensure_type(next_filters, kind)
            mutated = True

    companies = [match.entry.name for match in alias_matches if match.entry.type == "experience"]
    if companies:
        _ensure_type(next_filters, "experience")
        current = list(next_filters.company or [])
        for name in companies:
            if name not in current:
                current.append(name)
        next_filters.company = current
        mutated = True

    if not next_filters.title_match:
        for match in alias_matches:
            if match.entry.type in {"project", "experience"}:
                next_filters.title_match = match.entry.name
                mutated = True
                break

    if next_filters.type and "skill" in next_filters.type and not next_filters.show_all:
        next_filters.show_all = True
        mutated = True

    return next_filters if mutated else filters


def detect_profile_filter(query: str) -> QueryFilter | None:
    normalized = normalize_query_text(query)
    types: list[str] = []
    if any(pattern.search(normalized) for pattern in _PROFILE_RULES):
        types.append("bio")
    if _unique_re().search(normalized):
        for kind in ("bio", "value", "story"):
            if kind not in types:
                types.append(kind)
    if not types:
        return None
    return QueryFilter(type=types, show_all=True)


def find_unknown_proper_nouns(query: str, entities: EntityIndex) -> list[str]:
    text = str(query or "")
    ignored = {
        normalize_query_text(settings.subject_name),
        normalize_query_text(settings.assistant_name),
    }
    first_word_start = len(text) - len(text.lstrip())
    unknown: list[str] = []
    for match in _PROPER_NOUN_RE.finditer(text):
        token = match.group(0)
        if match.start() == first_word_start:
            continue
        # short acronyms (AI, ML, API) are topics, not names
        if token.isupper() and len(token) <= 4:
            continue
        lowered = token.lower()
        if lowered in ignored or lowered.rstrip("s") in ignored:
            continue
        if entities.is_known(token):
            continue
        if token not in unknown:
            unknown.append(token)
    return unknown


def classify_intent(
    query: str,
    entities: EntityIndex,
    hints: TemporalHints | None = None,
) -> RouteDecision:
    """Route a query with the first matching rule, then enrich structured filters."""
    text = query if isinstance(query, str) else ""
    ctx = RoutingContext(
        query=text,
        normalized=normalize_query_text(text),
        entities=entities,
        hints=hints if hints is not None else derive_temporal_hints(text),
    )
    ctx.alias_matches = entities.match_aliases(ctx.normalized) if ctx.normalized else []

    rule = next(rule for rule in ROUTING_RULES if rule.predicate(ctx))
    result = rule.resolve(ctx)

    profile_filters = None if rule.name in _NON_PROFILE_RULES else detect_profile_filter(text)
    if profile_filters is not None:
        if rule.name == "evaluative":
            # evaluative answers stay on the similarity path; the profile
            # types widen what that path retrieves
            result = IntentResult(intent="general", filters=profile_filters)
        else:
            result = IntentResult(intent="filter_query", filters=merge_filters(result.filters, profile_filters))

    if result.intent in {"filter_query", "specific_item"}:
        filters = derive_filter_defaults(text, result.filters, ctx.alias_matches)
        filters = apply_temporal_hints_to_filters(filters, ctx.hints)
        result = IntentResult(intent=result.intent, filters=filters or QueryFilter())

    unknown = [] if ctx.alias_matches else find_unknown_proper_nouns(text, entities)
    _LOGGER.info("intent routed: rule=%s intent=%s", rule.name, result.intent)
    return RouteDecision(
        result=result,
        rule=rule.name,
        alias_matches=ctx.alias_matches,
        unknown_proper_nouns=unknown,
        hints=ctx.hints,
    )
