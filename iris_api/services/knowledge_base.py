from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from iris_api.schemas.kb import (
    KB_ITEM_ADAPTER,
    BioItem,
    ContactInfo,
    EducationItem,
    InterestItem,
    SkillItem,
    StoryItem,
    ValueItem,
)
from iris_api.services.errors import KnowledgeBaseError

_LOGGER = logging.getLogger(__name__)

_LIST_FILES: tuple[tuple[str, str, str | None], ...] = (
    ("projects.json", "project", None),
    ("experience.json", "experience", None),
    ("classes.json", "class", None),
    ("blogs.json", "blog", "blog_posts"),
    ("skills.json", "skill", None),
)


@dataclass(frozen=True)
class AliasEntry:
    id: str
    type: str
    name: str
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class KnowledgeBase:
    items: tuple[Any, ...]
    profile: dict[str, Any] = field(default_factory=dict)
    contact: ContactInfo | None = None

    def by_id(self, item_id: str) -> Any | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def skill_names(self) -> dict[str, str]:
        return {item.id: item.name for item in self.items if isinstance(item, SkillItem)}

    def of_kind(self, *kinds: str) -> list[Any]:
        wanted = set(kinds)
        return [item for item in self.items if item.kind in wanted]


def _slug(value: str) -> str:
    return re.sub(r"\s+", "_", str(value or "").strip().lower())


def _read_json(path: Path, *, required: bool) -> Any:
    if not path.exists():
        if required:
            raise KnowledgeBaseError(f"knowledge base file missing: {path}")
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise KnowledgeBaseError(f"failed to read {path.name}: {exc}") from exc


def _parse_item(raw: dict[str, Any], kind: str, source: str) -> Any:
    try:
        return KB_ITEM_ADAPTER.validate_python({**raw, "kind": kind})
    except ValidationError as exc:
        raise KnowledgeBaseError(f"invalid {kind} entry in {source}: {exc}") from exc


def _load_list_items(kb_dir: Path) -> list[Any]:
    items: list[Any] = []
    for filename, kind, wrapper_key in _LIST_FILES:
        payload = _read_json(kb_dir / filename, required=False)
        if payload is None:
            continue
        if wrapper_key is not None and isinstance(payload, dict):
            payload = payload.get(wrapper_key, [])
        if not isinstance(payload, list):
            raise KnowledgeBaseError(f"{filename} must hold a list of entries")
        for idx, raw in enumerate(payload):
            if not isinstance(raw, dict):
                raise KnowledgeBaseError(f"{filename}[{idx}] is not an object")
            if kind == "blog" and not raw.get("id"):
                raw = {**raw, "id": f"blog_{idx}"}
            items.append(_parse_item(raw, kind, filename))
    return items


def _profile_items(profile: dict[str, Any]) -> list[Any]:
    items: list[Any] = []
    family = profile.get("family") if isinstance(profile.get("family"), dict) else {}
    for story in family.get("stories") or []:
        items.append(StoryItem(**story))
    for entry in profile.get("key_values") or []:
        items.append(ValueItem(id=f"value_{_slug(entry['value'])}", value=entry["value"], why=entry["why"]))
    for entry in profile.get("interests") or []:
        items.append(
            InterestItem(id=f"interest_{_slug(entry['interest'])}", interest=entry["interest"], why=entry["why"])
        )
    for idx, entry in enumerate(profile.get("education") or []):
        items.append(
            EducationItem(
                id=f"education_{idx}",
                school=entry["school"],
                degree=entry["degree"],
                gpa=entry.get("gpa"),
                expected_grad=entry.get("expected_grad"),
            )
        )
    if profile.get("name"):
        items.append(
            BioItem(
                id="bio_profile",
                name=profile["name"],
                headline=profile.get("headline", ""),
                bio=profile.get("bio", ""),
                work_authorization=profile.get("work_authorization"),
                location=profile.get("location"),
                availability=profile.get("availability"),
                language_proficiency=list(profile.get("language_proficiency") or []),
            )
        )
    return items


def _ensure_unique_ids(items: list[Any]) -> None:
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise KnowledgeBaseError(f"duplicate knowledge base id: {item.id}")
        seen.add(item.id)


def load_knowledge_base(kb_dir: str | Path) -> KnowledgeBase:
    root = Path(kb_dir)
    if not root.is_dir():
        raise KnowledgeBaseError(f"knowledge base directory not found: {root}")

    profile = _read_json(root / "profile.json", required=False) or {}
    if not isinstance(profile, dict):
        raise KnowledgeBaseError("profile.json must hold an object")
    contact_raw = _read_json(root / "contact.json", required=False)
    contact: ContactInfo | None = None
    if contact_raw is not None:
        try:
            contact = ContactInfo.model_validate(contact_raw)
        except ValidationError as exc:
            raise KnowledgeBaseError(f"invalid contact.json: {exc}") from exc

    try:
        items = _load_list_items(root) + _profile_items(profile)
    except (KeyError, TypeError, ValidationError) as exc:
        raise KnowledgeBaseError(f"invalid profile.json: {exc}") from exc
    _ensure_unique_ids(items)

    _LOGGER.info("knowledge base loaded: %d items from %s", len(items), root)
    return KnowledgeBase(items=tuple(items), profile=profile, contact=contact)


def _alias_name(item: Any) -> str:
    for attr in ("title", "name", "company", "role", "value", "interest", "school"):
        value = getattr(item, attr, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def build_alias_index(items: list[Any] | tuple[Any, ...]) -> list[AliasEntry]:
    entries: list[AliasEntry] = []
    for item in items:
        name = _alias_name(item)
        if not name:
            continue
        entries.append(AliasEntry(id=item.id, type=item.kind, name=name, aliases=tuple(item.aliases)))
    return entries
