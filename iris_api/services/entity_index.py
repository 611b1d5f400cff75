from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from iris_api.schemas.kb import ExperienceItem, SkillItem
from iris_api.services.kb_text import normalize_query_text
from iris_api.services.knowledge_base import AliasEntry, build_alias_index
from iris_api.services.security_guard import build_context_entities

# Alias tokens that name a category rather than a specific item.
GENERIC_ALIAS_TOKENS: frozenset[str] = frozenset(
    {
        "about",
        "analytics",
        "application",
        "apps",
        "build",
        "class",
        "classes",
        "course",
        "data",
        "design",
        "developer",
        "development",
        "engineer",
        "engineering",
        "experience",
        "intern",
        "internship",
        "learning",
        "machine",
        "model",
        "platform",
        "project",
        "projects",
        "research",
        "science",
        "software",
        "system",
        "systems",
        "team",
        "tool",
        "tools",
        "work",
    }
)

# Skill names too short or common to match as bare words.
_AMBIGUOUS_SKILL_TERMS: frozenset[str] = frozenset({"a", "c", "r", "go", "it", "ml"})


@dataclass(frozen=True)
class AliasMatch:
    entry: AliasEntry
    exact: bool


def _contains_phrase(normalized_query: str, phrase: str) -> bool:
    if not phrase:
        return False
    return f" {phrase} " in f" {normalized_query} "


@dataclass(frozen=True)
class EntityIndex:
    """Lowercased names and aliases for everything the knowledge base knows about."""

    entities: frozenset[str] = frozenset()
    aliases: tuple[AliasEntry, ...] = ()
    skill_terms: dict[str, str] = field(default_factory=dict)
    company_terms: dict[str, str] = field(default_factory=dict)
    known_tokens: frozenset[str] = frozenset()

    @classmethod
    def from_items(cls, items: Iterable[Any]) -> "EntityIndex":
        item_list = list(items)
        entities = build_context_entities(item_list)
        all_entries = build_alias_index(item_list)
        # the bio entry names the subject, which every question may mention
        alias_entries = tuple(entry for entry in all_entries if entry.type != "bio")

        skill_terms: dict[str, str] = {}
        company_terms: dict[str, str] = {}
        for item in item_list:
            if isinstance(item, SkillItem):
                for term in (item.name, item.id.replace("_", " ").replace("-", " "), *item.aliases):
                    normalized = normalize_query_text(term)
                    if normalized and normalized not in _AMBIGUOUS_SKILL_TERMS:
                        skill_terms.setdefault(normalized, item.name)
            elif isinstance(item, ExperienceItem):
                for term in (item.company, *item.aliases):
                    normalized = normalize_query_text(term)
                    if normalized and len(normalized) >= 3:
                        company_terms.setdefault(normalized, item.company)

        known_tokens: set[str] = set()
        for entity in entities:
            known_tokens.update(normalize_query_text(entity).split())
        for entry in all_entries:
            known_tokens.update(normalize_query_text(entry.name).split())

        return cls(
            entities=frozenset(entities),
            aliases=alias_entries,
            skill_terms=skill_terms,
            company_terms=company_terms,
            known_tokens=frozenset(known_tokens),
        )

    def match_aliases(self, normalized_query: str) -> list[AliasMatch]:
        """Alias entries named by the query; ``exact`` marks full name/alias hits."""
        matches: list[AliasMatch] = []
        query_tokens = set(normalized_query.split())
        for entry in self.aliases:
            candidates = [normalize_query_text(value) for value in (entry.name, *entry.aliases)]
            candidates = [value for value in candidates if value]
            if any(_contains_phrase(normalized_query, value) for value in candidates):
                matches.append(AliasMatch(entry=entry, exact=True))
                continue
            token_hit = any(
                token in query_tokens
                for value in candidates
                for token in value.split()
                if len(token) >= 4 and not token.isdigit() and token not in GENERIC_ALIAS_TOKENS
            )
            if token_hit:
                matches.append(AliasMatch(entry=entry, exact=False))
        return matches

    def match_skills(self, normalized_query: str) -> list[str]:
        names: list[str] = []
        for term, name in self.skill_terms.items():
            if _contains_phrase(normalized_query, term) and name not in names:
                names.append(name)
        return names

    def match_companies(self, normalized_query: str) -> list[str]:
        names: list[str] = []
        for term, name in self.company_terms.items():
            if _contains_phrase(normalized_query, term) and name not in names:
                names.append(name)
        return names

    def is_known(self, token: str) -> bool:
        lowered = token.lower()
        return lowered in self.known_tokens or any(lowered in entity for entity in self.entities)
