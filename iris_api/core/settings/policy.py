from .view import SettingsView


class PolicySettings(SettingsView):
    """Retrieval depth, evidence gate, abuse limits and persona names."""

    FIELD_NAMES = (
        "answer_top_k",
        "general_top_k",
        "filter_result_limit",
        "evaluative_type_quotas",
        "evaluative_class_quota",
        "gate_min_evidence_count",
        "gate_min_coverage_ratio",
        "gate_min_entity_link_score",
        "rate_limit_enabled",
        "rate_limit_window_seconds",
        "rate_limit_max_requests",
        "rate_limit_sweep_threshold",
        "security_guard_enabled",
        "subject_name",
        "assistant_name",
    )
