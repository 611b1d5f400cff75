from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

IntentName = Literal["contact", "filter_query", "specific_item", "personal", "general"]
FilterOperation = Literal["contains", "exact", "any"]


class QueryFilter(BaseModel):
    type: Optional[list[str]] = None
    skills: Optional[list[str]] = None
    company: Optional[list[str]] = None
    year: Optional[list[int]] = None
    tags: Optional[list[str]] = None
    title_match: Optional[str] = None
    operation: FilterOperation = "contains"
    show_all: bool = False

    def has_structured_filter(self) -> bool:
        return bool(
            self.type
            or self.skills
            or self.company
            or self.year
            or self.tags
            or self.title_match
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude_defaults=True)


class IntentResult(BaseModel):
    intent: IntentName = "general"
    filters: Optional[QueryFilter] = None
    about_subject: bool = True


class AnswerRequest(BaseModel):
    query: str = Field(default="", max_length=2000)
    session_id: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("sessionId", "session_id"),
    )


class CacheStatsRead(BaseModel):
    size: int
    hits: int
    misses: int
    hit_rate: float
    backend: str


class CacheClearResult(BaseModel):
    success: bool
    message: str
    cleared_count: int
    pattern: Optional[str] = None
    stats_before: CacheStatsRead
    stats_after: CacheStatsRead


class QuickActionClickRequest(BaseModel):
    query_id: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("queryId", "query_id"),
    )
    suggestion: Optional[str] = Field(default=None, max_length=512)


class RateLimitedResponse(BaseModel):
    error: str = "rate_limited"
    message: str
    remaining: int = 0
    reset_at: float
