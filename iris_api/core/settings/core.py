from .view import SettingsView


class CoreSettings(SettingsView):
    """API, database, admin auth, model provider and tracing settings."""

    FIELD_NAMES = (
        "api_prefix",
        "database_url",
        "admin_auth_enabled",
        "admin_tokens",
        "llm_provider",
        "llm_model",
        "llm_base_url",
        "llm_api_key",
        "llm_timeout_seconds",
        "llm_max_output_tokens",
        "llm_temperature",
        "llm_retry_backoff_seconds",
        "embedding_provider",
        "embedding_model",
        "embedding_base_url",
        "embedding_api_key",
        "embedding_dimensions",
        "embedding_timeout_seconds",
        "langfuse_enabled",
        "langfuse_host",
        "langfuse_public_key",
        "langfuse_secret_key",
    )
