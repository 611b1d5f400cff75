from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QueryLog(SQLModel, table=True):
    __table_args__ = (Index("ix_query_log_intent_created_at", "intent", "created_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    query: str = Field(default="", max_length=2000)
    intent: str = Field(default="general", max_length=32, index=True)
    filters: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    results_count: int = Field(default=0)
    context_items: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    answer_length: int = Field(default=0)
    latency_ms: int = Field(default=0)
    cached: bool = Field(default=False)
    session_id: Optional[str] = Field(default=None, max_length=128, index=True)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    created_at: datetime = Field(default_factory=utc_now, nullable=False)


class QuickActionClick(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    query_id: str = Field(max_length=128, index=True)
    suggestion: str = Field(max_length=512)
    clicked_at: datetime = Field(default_factory=utc_now, nullable=False)
