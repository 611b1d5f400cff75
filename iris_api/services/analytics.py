from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from iris_api.core import database
from iris_api.core.config import settings
from iris_api.models import QueryLog, QuickActionClick

_LOGGER = logging.getLogger(__name__)


def log_query(
    *,
    query: str,
    intent: str | None,
    filters: dict[str, Any] | None,
    sources: list[dict[str, Any]] | None,
    answer: str,
    latency_ms: int,
    cached: bool,
    session_id: str | None = None,
    user_agent: str | None = None,
    engine: Engine | None = None,
) -> int | None:
    """Persist one answered query; failures are logged and never raised."""
    if not settings.analytics_enabled:
        return None
    context_items = [
        {"id": source.get("id"), "type": source.get("type"), "score": source.get("score")}
        for source in (sources or [])
    ]
    try:
        with Session(engine or database.engine) as db:
            row = QueryLog(
                query=str(query or "")[:2000],
                intent=intent or "general",
                filters=dict(filters or {}),
                results_count=len(context_items),
                context_items=context_items,
                answer_length=len(answer or ""),
                latency_ms=int(latency_ms),
                cached=bool(cached),
                session_id=session_id,
                user_agent=(user_agent or "")[:512] or None,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
    except Exception as exc:
        _LOGGER.warning("query log write failed: %s", exc)
        return None


def record_quick_action_click(query_id: str, suggestion: str, *, engine: Engine | None = None) -> int | None:
    if not settings.analytics_enabled:
        return None
    try:
        with Session(engine or database.engine) as db:
            row = QuickActionClick(query_id=str(query_id)[:128], suggestion=str(suggestion)[:512])
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
    except Exception as exc:
        _LOGGER.warning("quick action click write failed: %s", exc)
        return None
