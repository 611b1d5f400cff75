from iris_api.models.analytics import QueryLog, QuickActionClick

__all__ = [
    "QueryLog",
    "QuickActionClick",
]
