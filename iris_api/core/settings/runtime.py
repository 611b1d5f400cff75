from .view import SettingsView


class RuntimeSettings(SettingsView):
    """Knowledge base location, answer cache, stream pacing and analytics."""

    FIELD_NAMES = (
        "kb_dir",
        "answer_cache_enabled",
        "answer_cache_backend",
        "answer_cache_ttl_seconds",
        "answer_cache_max_entries",
        "answer_cache_key_prefix",
        "redis_url",
        "stream_chunk_chars",
        "stream_chunk_delay_seconds",
        "analytics_enabled",
    )
