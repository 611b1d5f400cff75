from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from iris_api.core.config import settings
from iris_api.schemas.answer import QueryFilter
from iris_api.schemas.kb import ContactInfo
from iris_api.services.kb_text import escape_attribute, extract_primary_year, item_label

KIND_LABELS: dict[str, str] = {
    "project": "Projects",
    "experience": "Experience",
    "class": "Classes",
    "blog": "Writing",
    "story": "Stories",
    "value": "Values",
    "interest": "Interests",
    "education": "Education",
    "bio": "Bio",
    "skill": "Skills",
}

DEFAULT_COLLABORATION_DRAFT = "I would love to chat about opportunities to collaborate."

_FILLER_RE = re.compile(
    r"\b(show|list|tell me|give me|find|can you|could you|would you|please|kindly)\b",
    re.IGNORECASE,
)
_FILLER_ME_RE = re.compile(r"\b(show|describe|explain)\s+me\b", re.IGNORECASE)
_LEADING_PREPOSITION_RE = re.compile(r"^(about|regarding|on)\s+", re.IGNORECASE)

_FUTURE_PLANS_RE = re.compile(r"\b(future|upcoming|next|later)\b.*\bplan(s)?\b|\broadmap\b")
_OPINION_RE = re.compile(r"\b(thoughts?|opinion|stance|favorite|favourite)\b")
_COLLABORATION_RE = re.compile(
    r"\b(collaborate|partner|hire|bring (him|her|them|you) on|consult|speaking|speaker|panel|work with|work together)\b"
)
_AVAILABILITY_RE = re.compile(r"\bavailability\b|\bavailable\b|\bwork authorization\b|\bvisa\b|\bwhere\b.*\bbased\b")


@dataclass(frozen=True)
class AutoContactPlan:
    reason: str
    draft: str
    preface: str
    open: Optional[str] = None


def _subject() -> str:
    return settings.subject_name


def contact_directive(reason: str, draft: str, open_mode: str | None = None) -> str:
    open_attr = f' open="{escape_attribute(open_mode)}"' if open_mode else ""
    return f'<ui:contact reason="{escape_attribute(reason)}" draft="{escape_attribute(draft)}"{open_attr} />'


def build_contact_draft(query: str) -> str:
    subject = re.escape(_subject().lower())
    stripped = re.sub(r'["<>]', "", str(query or ""))
    stripped = _FILLER_ME_RE.sub("", _FILLER_RE.sub("", stripped)).strip()
    cleaned = re.sub(rf"\b{subject}'s\b", "your", stripped, flags=re.IGNORECASE)
    cleaned = re.sub(rf"\b{subject}s\b", "your", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(rf"\b{subject}\b", "you", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", _LEADING_PREPOSITION_RE.sub("", cleaned.strip())).strip()
    if not cleaned:
        return DEFAULT_COLLABORATION_DRAFT
    return f"I'd love to talk about {cleaned[0].lower()}{cleaned[1:]}"


def plan_auto_contact(query: str, intent: str) -> AutoContactPlan | None:
    if intent == "contact":
        return None
    lower = str(query or "").lower()
    draft = build_contact_draft(query)
    subject = _subject()

    if _FUTURE_PLANS_RE.search(lower):
        return AutoContactPlan(
            reason="insufficient_context",
            draft=draft,
            preface=f"{subject} hasn't shared future plans publicly yet, so I teed up a note you can send directly.",
            open="auto",
        )
    if _OPINION_RE.search(lower):
        return AutoContactPlan(
            reason="insufficient_context",
            draft=draft,
            preface="No personal opinions on that have been published, so I prepared a quick draft if you'd like to ask yourself.",
            open="auto",
        )
    if _COLLABORATION_RE.search(lower):
        return AutoContactPlan(
            reason="more_detail",
            draft=draft,
            preface="I can connect you two directly so you can discuss the opportunity.",
            open="auto",
        )
    if _AVAILABILITY_RE.search(lower):
        return AutoContactPlan(
            reason="more_detail",
            draft=draft,
            preface="If you'd like to confirm details or kick off a conversation, I queued up a quick message you can send.",
            open="auto",
        )
    return None


def build_no_match_response(query: str, filters: QueryFilter | None) -> str:
    parts: list[str] = []
    if filters is not None:
        if filters.type:
            parts.append(f"{' or '.join(KIND_LABELS.get(kind, kind) for kind in filters.type)} work")
        if filters.skills:
            parts.append(f"that uses {', '.join(filters.skills)}")
        if filters.company:
            parts.append(f"for {', '.join(filters.company)}")
        if filters.year:
            parts.append(f"from {', '.join(str(year) for year in filters.year)}")
    descriptor = " ".join(parts) if parts else "anything in that area"
    directive = contact_directive("insufficient_context", build_contact_draft(query))
    return (
        f"{_subject()} hasn't shared {descriptor.strip()} yet, so I teed up the contact info "
        f"if you want to reach out directly.\n\n{directive}"
    )


def build_clarification_prompt(query: str, items: list[Any]) -> str:
    options: list[str] = []
    for idx, item in enumerate(items[:5], start=1):
        year = extract_primary_year(item)
        year_text = f" ({year})" if year else ""
        options.append(f"{idx}. {item_label(item)}{year_text} - {item.kind}")
    return (
        f'I found multiple matches for "{query}". Which one do you want to dive into?\n'
        + "\n".join(options)
        + "\n\nReply with the number or title so I can focus on the right work."
    )


def build_when_answer(item: Any) -> str:
    dates = getattr(item, "dates", None)
    if dates is not None:
        end = dates.end or "present"
        timeframe = f"{dates.start} - {end}"
    else:
        timeframe = getattr(item, "term", "") or getattr(item, "published_date", "") or ""
    if not timeframe:
        return f"{item_label(item)}: I don't have dates for that yet."
    return f"{item_label(item)}: {timeframe}"


def build_no_context_response() -> str:
    return (
        f"{_subject()} hasn't shared anything about that yet. Here are some ways to explore what has been shared:\n\n"
        "**Quick Actions:** Use the buttons below to see projects, experiences, and more.\n\n"
        "**Search Bar:** You can also type a new question in the search bar above to explore different topics."
    )


_WANTS_TO_MESSAGE_TEMPLATES: tuple[str, ...] = (
    r"\b(write|send|message|contact|reach(?: out)?|connect|dm|get in touch|tell|collaborate|partner|work with|hire|book|schedule)\b.*\b({subject}|you|him|her|them)\b",
    r"\b({subject}|you|him|her|them)\b.*\b(collaborate|partner|work with|work together|hire|book|schedule|connect|dm)\b",
)


def wants_to_message(query: str) -> bool:
    subject = re.escape(_subject().lower())
    lower = str(query or "").lower()
    return any(re.search(template.format(subject=subject), lower) for template in _WANTS_TO_MESSAGE_TEMPLATES)


def build_message_draft(query: str) -> str:
    subject = re.escape(_subject().lower())
    cleaned = re.sub(
        rf"\b(write|send|a message to|message|contact|reach out to|get in touch with|tell)\s+({subject}|you|him|her|them)\s+(about|regarding|that)?\s*",
        "",
        str(query or ""),
        flags=re.IGNORECASE,
    ).strip()
    cleaned = re.sub(r'["<>]', "", cleaned)
    if len(cleaned) > 5:
        return f"I wanted to reach out: {cleaned}"
    return "I'd like to get in touch"


def build_contact_response(query: str, contact: ContactInfo | None) -> tuple[str, str | None]:
    """Contact links for the fast path, plus the message draft when the user wants to write."""
    subject = _subject()
    if contact is None:
        parts = [f"Here's how you can reach {subject}: contact details haven't been published yet."]
    else:
        parts = [f"Here's how you can reach {subject}:", f"[LinkedIn]({contact.linkedin})"]
        if contact.github:
            parts.append(f"[GitHub]({contact.github})")
        if contact.booking is not None and contact.booking.enabled and contact.booking.link:
            parts.append(f"[Schedule a chat]({contact.booking.link})")
        if contact.email:
            parts.append(f"[Email](mailto:{contact.email})")
    message = "\n\n".join(parts)
    draft = build_message_draft(query) if wants_to_message(query) else None
    if draft is not None:
        message += "\n\n" + contact_directive("user_request", draft)
    return message, draft
