from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from iris_api.core.config import settings
from iris_api.services.kb_text import entity_terms

_LOGGER = logging.getLogger(__name__)

PROMPT_INJECTION_RE = re.compile(
    r"(ignore|forget|bypass|override)\b[^.]*\b(instruction|rule|system prompt)",
    re.IGNORECASE,
)

OFF_TOPIC_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bcapital of\b", re.IGNORECASE),
    re.compile(r"\bweather\b", re.IGNORECASE),
    re.compile(r"\bstock\b", re.IGNORECASE),
    re.compile(r"\bcrypto\b", re.IGNORECASE),
    re.compile(r"\bnews\b", re.IGNORECASE),
    re.compile(r"\bjoke\b", re.IGNORECASE),
    re.compile(r"\briddle\b", re.IGNORECASE),
    re.compile(r"\bpoem\b", re.IGNORECASE),
    re.compile(r"\bmovie\b", re.IGNORECASE),
    re.compile(r"\bcelebrity\b", re.IGNORECASE),
    re.compile(r"\b2\s*\+\s*2\b"),
    re.compile(r"\btranslate\b", re.IGNORECASE),
    re.compile(r"\brandom\b", re.IGNORECASE),
)

_SUGGESTED_QUESTIONS: tuple[str, ...] = (
    "What projects has {subject} built?",
    "Tell me about {subject}'s work experience",
    "How can I contact {subject}?",
)


@dataclass(frozen=True)
class SecurityVerdict:
    blocked: bool
    reason: str | None = None
    response: str = ""


def detect_prompt_injection(query: str) -> bool:
    return bool(PROMPT_INJECTION_RE.search(str(query or "")))


def build_context_entities(items: Iterable[Any]) -> set[str]:
    entities: set[str] = set()
    for item in items:
        entities.update(entity_terms(item))
    return entities


def is_clearly_off_topic(query: str, entities: Iterable[str]) -> bool:
    lowered = str(query or "").lower()
    for entity in entities:
        if entity and entity in lowered:
            return False
    return any(pattern.search(str(query or "")) for pattern in OFF_TOPIC_PATTERNS)


def rewrite_to_valid_query(query: str) -> str | None:
    lowered = str(query or "").lower()
    if "salary" in lowered or "money" in lowered or " pay" in f" {lowered}":
        return "How can I contact you about opportunities?"
    if "address" in lowered or "phone" in lowered:
        return "What's the best way to contact you?"
    if "personal" in lowered and "life" in lowered:
        return "Tell me about your interests and hobbies"
    return None


def build_injection_response(subject: str | None = None) -> str:
    name = subject or settings.subject_name
    return (
        f"I have to stick with {name}-focused instructions, but I'm happy to help with "
        "their projects, experience, or contact details."
    )


def build_guardrail_response(query: str, subject: str | None = None) -> str:
    name = subject or settings.subject_name
    suggestions = "\n".join(f"- {template.format(subject=name)}" for template in _SUGGESTED_QUESTIONS)
    text = (
        f"I can only help with {name}'s work, background, and contact details. "
        f"Here are some things you could ask instead:\n\n{suggestions}"
    )
    rewrite = rewrite_to_valid_query(query)
    if rewrite:
        text += f'\n\nTry asking something like: "{rewrite}".'
    return text


def screen_query(query: str, entities: Iterable[str]) -> SecurityVerdict:
    """Run the injection and off-topic checks ahead of any retrieval."""
    if not settings.security_guard_enabled:
        return SecurityVerdict(blocked=False)
    if detect_prompt_injection(query):
        _LOGGER.warning("query blocked: prompt_injection")
        return SecurityVerdict(blocked=True, reason="prompt_injection", response=build_injection_response())
    if is_clearly_off_topic(query, entities):
        _LOGGER.warning("query blocked: off_topic")
        return SecurityVerdict(blocked=True, reason="off_topic", response=build_guardrail_response(query))
    return SecurityVerdict(blocked=False)
