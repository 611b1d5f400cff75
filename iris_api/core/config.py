import os

from iris_api.core.settings import CoreSettings, PolicySettings, RuntimeSettings

def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except Exception:
        return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except Exception:
        return default


def _parse_csv(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_quota_map(value: str | None) -> dict[str, int]:
    quotas: dict[str, int] = {}
    for item in _parse_csv(value):
        if ":" not in item:
            continue
        kind, raw_count = item.split(":", 1)
        kind = kind.strip().lower()
        count = _parse_int(raw_count.strip(), -1)
        if kind and count >= 0:
            quotas[kind] = count
    return quotas


def _stringify_env_default(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


PROFILE_ALIASES = {
    "dev": "local-dev",
    "local": "local-dev",
    "default": "local-dev",
    "prod": "production",
    "live": "production",
}


STRATEGY_DEFAULTS = {
    "local-dev": {
        "LLM_PROVIDER": "stub",
        "EMBEDDING_PROVIDER": "stub",
        "ANSWER_CACHE_BACKEND": "memory",
        "ADMIN_AUTH_ENABLED": True,
    },
    "production": {
        "LLM_PROVIDER": "openai_compatible",
        "EMBEDDING_PROVIDER": "openai_compatible",
        "ANSWER_CACHE_BACKEND": "redis",
        "ADMIN_AUTH_ENABLED": True,
    },
}


IMPLEMENTATION_DEFAULTS = {
    "local-dev": {
        "LLM_TIMEOUT_SECONDS": 30,
        "LLM_RETRY_BACKOFF_SECONDS": 0.2,
        "EMBEDDING_TIMEOUT_SECONDS": 10,
        "ANSWER_CACHE_MAX_ENTRIES": 1000,
        "STREAM_CHUNK_DELAY_SECONDS": 0.0,
    },
    "production": {
        "LLM_TIMEOUT_SECONDS": 60,
        "LLM_RETRY_BACKOFF_SECONDS": 0.8,
        "EMBEDDING_TIMEOUT_SECONDS": 15,
        "ANSWER_CACHE_MAX_ENTRIES": 1000,
        "STREAM_CHUNK_DELAY_SECONDS": 0.02,
    },
}


def _resolve_profile(raw_profile: str) -> str:
    candidate = PROFILE_ALIASES.get(raw_profile, raw_profile)
    if candidate in STRATEGY_DEFAULTS:
        return candidate
    return "local-dev"


def _apply_profile_defaults() -> str:
    profile = os.getenv("CONFIG_PROFILE", "local-dev").strip().lower()
    resolved_profile = _resolve_profile(profile)
    os.environ.setdefault("CONFIG_PROFILE", resolved_profile)

    merged_defaults = {
        **STRATEGY_DEFAULTS[resolved_profile],
        **IMPLEMENTATION_DEFAULTS[resolved_profile],
    }
    for key, value in merged_defaults.items():
        os.environ.setdefault(key, _stringify_env_default(value))

    return resolved_profile


_ACTIVE_CONFIG_PROFILE = _apply_profile_defaults()


class Settings:
    def __init__(self) -> None:
        self.config_profile = _ACTIVE_CONFIG_PROFILE
        self.core = CoreSettings(self)
        self.policy = PolicySettings(self)
        self.runtime = RuntimeSettings(self)

    api_prefix = "/api"
    database_url = os.getenv("DATABASE_URL", "sqlite:///./iris_analytics.db")
    admin_auth_enabled = _parse_bool(os.getenv("ADMIN_AUTH_ENABLED"), True)
    admin_tokens = os.getenv("ADMIN_TOKENS", "")
    llm_provider = os.getenv("LLM_PROVIDER", "stub")
    llm_model = os.getenv("LLM_MODEL", "gpt-4.1-mini")
    llm_base_url = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    llm_api_key = os.getenv("LLM_API_KEY", "")
    llm_timeout_seconds = _parse_int(os.getenv("LLM_TIMEOUT_SECONDS"), 60)
    llm_max_output_tokens = max(_parse_int(os.getenv("LLM_MAX_OUTPUT_TOKENS"), 800), 64)
    llm_temperature = _parse_float(os.getenv("LLM_TEMPERATURE"), 1.0)
    llm_retry_backoff_seconds = _parse_float(os.getenv("LLM_RETRY_BACKOFF_SECONDS"), 0.5)
    embedding_provider = os.getenv("EMBEDDING_PROVIDER", "stub")
    embedding_model = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    embedding_base_url = os.getenv("EMBEDDING_BASE_URL", os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"))
    embedding_api_key = os.getenv("EMBEDDING_API_KEY", os.getenv("LLM_API_KEY", ""))
    embedding_dimensions = max(_parse_int(os.getenv("EMBEDDING_DIMENSIONS"), 256), 16)
    embedding_timeout_seconds = _parse_float(os.getenv("EMBEDDING_TIMEOUT_SECONDS"), 15.0)
    langfuse_enabled = _parse_bool(os.getenv("LANGFUSE_ENABLED"), False)
    langfuse_host = os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com")
    langfuse_public_key = os.getenv("LANGFUSE_PUBLIC_KEY", "")
    langfuse_secret_key = os.getenv("LANGFUSE_SECRET_KEY", "")

    answer_top_k = max(_parse_int(os.getenv("ANSWER_TOP_K"), 10), 1)
    general_top_k = max(_parse_int(os.getenv("GENERAL_TOP_K"), 5), 1)
    filter_result_limit = max(_parse_int(os.getenv("FILTER_RESULT_LIMIT"), 10), 1)
    evaluative_type_quotas = _parse_quota_map(os.getenv("EVALUATIVE_TYPE_QUOTAS", "project:3,experience:2"))
    evaluative_class_quota = max(_parse_int(os.getenv("EVALUATIVE_CLASS_QUOTA"), 2), 0)
    gate_min_evidence_count = max(_parse_int(os.getenv("GATE_MIN_EVIDENCE_COUNT"), 2), 0)
    gate_min_coverage_ratio = min(max(_parse_float(os.getenv("GATE_MIN_COVERAGE_RATIO"), 0.5), 0.0), 1.0)
    gate_min_entity_link_score = min(max(_parse_float(os.getenv("GATE_MIN_ENTITY_LINK_SCORE"), 0.7), 0.0), 1.0)
    rate_limit_enabled = _parse_bool(os.getenv("RATE_LIMIT_ENABLED"), True)
    rate_limit_window_seconds = max(_parse_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60), 1)
    rate_limit_max_requests = max(_parse_int(os.getenv("RATE_LIMIT_MAX_REQUESTS"), 3), 1)
    rate_limit_sweep_threshold = max(_parse_int(os.getenv("RATE_LIMIT_SWEEP_THRESHOLD"), 1000), 1)
    security_guard_enabled = _parse_bool(os.getenv("SECURITY_GUARD_ENABLED"), True)
    subject_name = os.getenv("SUBJECT_NAME", "Mike")
    assistant_name = os.getenv("ASSISTANT_NAME", "Iris")

    kb_dir = os.getenv("KB_DIR", "./data/kb")
    answer_cache_enabled = _parse_bool(os.getenv("ANSWER_CACHE_ENABLED"), True)
    answer_cache_backend = os.getenv("ANSWER_CACHE_BACKEND", "memory")
    answer_cache_ttl_seconds = max(_parse_int(os.getenv("ANSWER_CACHE_TTL_SECONDS"), 3600), 1)
    answer_cache_max_entries = max(_parse_int(os.getenv("ANSWER_CACHE_MAX_ENTRIES"), 1000), 1)
    answer_cache_key_prefix = os.getenv("ANSWER_CACHE_KEY_PREFIX", "iris:answer")
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    stream_chunk_chars = max(_parse_int(os.getenv("STREAM_CHUNK_CHARS"), 8), 1)
    stream_chunk_delay_seconds = max(_parse_float(os.getenv("STREAM_CHUNK_DELAY_SECONDS"), 0.02), 0.0)
    analytics_enabled = _parse_bool(os.getenv("ANALYTICS_ENABLED"), True)


settings = Settings()
