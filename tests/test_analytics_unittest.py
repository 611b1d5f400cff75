import unittest
from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from iris_api.api.router import api_router
from iris_api.core.config import settings
from iris_api.models import QueryLog, QuickActionClick
from iris_api.services.analytics import log_query, record_quick_action_click


def _memory_engine(with_tables: bool = True):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    if with_tables:
        SQLModel.metadata.create_all(engine)
    return engine


class AnalyticsServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._snapshot = {"analytics_enabled": settings.analytics_enabled}
        settings.analytics_enabled = True
        self.engine = _memory_engine()

    def tearDown(self) -> None:
        for name, value in self._snapshot.items():
            setattr(settings, name, value)
        self.engine.dispose()

    def _log(self, **overrides):
        kwargs = {
            "query": "What Python projects has Mike built?",
            "intent": "filter_query",
            "filters": {"skills": ["Python"], "type": ["project"]},
            "sources": [
                {"id": "proj_hilite", "type": "project", "title": "HiLiTe", "score": 0.91},
                {"id": "proj_euros_predictor", "type": "project", "title": "Euros Predictor", "score": 0.8},
            ],
            "answer": "Two projects.",
            "latency_ms": 120,
            "cached": False,
            "session_id": "session-1",
            "user_agent": "pytest",
            "engine": self.engine,
        }
        kwargs.update(overrides)
        return log_query(**kwargs)

    def test_log_query_persists_summary_row(self) -> None:
        row_id = self._log()

        self.assertIsNotNone(row_id)
        with Session(self.engine) as db:
            row = db.get(QueryLog, row_id)
        self.assertEqual(row.intent, "filter_query")
        self.assertEqual(row.filters, {"skills": ["Python"], "type": ["project"]})
        self.assertEqual(row.results_count, 2)
        self.assertEqual(
            [item["id"] for item in row.context_items],
            ["proj_hilite", "proj_euros_predictor"],
        )
        self.assertNotIn("title", row.context_items[0])
        self.assertEqual(row.answer_length, len("Two projects."))
        self.assertEqual(row.session_id, "session-1")

    def test_missing_intent_defaults_to_general(self) -> None:
        row_id = self._log(intent=None, sources=None, filters=None)

        with Session(self.engine) as db:
            row = db.get(QueryLog, row_id)
        self.assertEqual(row.intent, "general")
        self.assertEqual(row.results_count, 0)
        self.assertEqual(row.filters, {})

    def test_write_failures_are_swallowed(self) -> None:
        broken = _memory_engine(with_tables=False)

        with self.assertLogs("iris_api.services.analytics", level="WARNING"):
            self.assertIsNone(self._log(engine=broken))
            self.assertIsNone(record_quick_action_click("q1", "Show projects", engine=broken))
        broken.dispose()

    def test_disabled_analytics_skips_writes(self) -> None:
        settings.analytics_enabled = False

        self.assertIsNone(self._log())
        self.assertIsNone(record_quick_action_click("q1", "Show projects", engine=self.engine))
        with Session(self.engine) as db:
            self.assertEqual(db.exec(select(QueryLog)).all(), [])

    def test_record_quick_action_click(self) -> None:
        row_id = record_quick_action_click("q-123", "Tell me about HiLiTe", engine=self.engine)

        with Session(self.engine) as db:
            row = db.get(QuickActionClick, row_id)
        self.assertEqual((row.query_id, row.suggestion), ("q-123", "Tell me about HiLiTe"))
        self.assertIsNotNone(row.clicked_at)


class QuickActionEndpointTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._snapshot = {"analytics_enabled": settings.analytics_enabled}
        settings.analytics_enabled = True
        self.engine = _memory_engine()
        app = FastAPI()
        app.include_router(api_router, prefix=settings.api_prefix)
        self.client = TestClient(app)
        self.url = f"{settings.api_prefix}/iris/analytics/quick-action-click"

    def tearDown(self) -> None:
        self.client.close()
        for name, value in self._snapshot.items():
            setattr(settings, name, value)
        self.engine.dispose()

    def test_click_is_recorded_in_background(self) -> None:
        with patch("iris_api.core.database.engine", self.engine):
            response = self.client.post(self.url, json={"queryId": "q-1", "suggestion": "Show Python projects"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True})
        with Session(self.engine) as db:
            rows = db.exec(select(QuickActionClick)).all()
        self.assertEqual([(row.query_id, row.suggestion) for row in rows], [("q-1", "Show Python projects")])

    def test_missing_fields_are_rejected(self) -> None:
        with patch("iris_api.api.endpoints.analytics.record_quick_action_click") as mock_record:
            response = self.client.post(self.url, json={"queryId": "q-1", "suggestion": "   "})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "queryId and suggestion are required")
        mock_record.assert_not_called()


if __name__ == "__main__":
    unittest.main()
