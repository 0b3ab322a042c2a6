"""
Tests for environment-driven settings, errors and the logging setup.

Run: python -m pytest tests/test_settings.py -v
"""

import os
from unittest import TestCase, mock

import structlog

from knowledge_activation.domain.activation.errors import ActivationError, KeywordMatchError
from knowledge_activation.infrastructure.config.settings import load_settings
from knowledge_activation.domain.models.knowledge import ExclusionReason
from knowledge_activation.infrastructure.observability.logging import ActivationMetrics, setup_logging

from factories import make_activated


class TestLoadSettings(TestCase):

    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.logging.level, "INFO")
        self.assertEqual(settings.store.knowledge_collection, "knowledge")
        self.assertEqual(settings.store.activation_log_collection, "knowledgeActivationLog")
        self.assertEqual(settings.store.entry_fetch_limit, 1000)
        self.assertEqual(settings.vector.similarity_threshold, 0.7)
        self.assertEqual(settings.vector.max_results, 20)
        self.assertEqual(settings.state.ttl_seconds, 21600)
        self.assertEqual(settings.budget.max_context_tokens, 8000)
        self.assertEqual(settings.budget.reserved_for_conversation, 4000)

    def test_environment_overrides(self):
        env = {
            "KA_ENTRY_FETCH_LIMIT": "50",
            "KA_VECTOR_SIMILARITY_THRESHOLD": "0.55",
            "KA_STATE_MAX_CONVERSATIONS": "3",
            "KA_BUDGET_CAP_TOKENS": "900",
            "KA_MIN_ACTIVATIONS": "2",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.store.entry_fetch_limit, 50)
        self.assertEqual(settings.vector.similarity_threshold, 0.55)
        self.assertEqual(settings.state.max_conversations, 3)
        self.assertEqual(settings.budget.budget_cap_tokens, 900)
        self.assertEqual(settings.budget.min_activations, 2)

    def test_search_options_scope_to_user(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            vector = load_settings().vector

        self.assertEqual(vector.search_options("u1").filters, {"user_id": "u1"})
        self.assertEqual(vector.search_options(None).filters, {})


class TestErrors(TestCase):

    def test_code_in_str(self):
        error = KeywordMatchError("bad entry", {"entry_id": "e1"})

        self.assertIsInstance(error, ActivationError)
        self.assertEqual(str(error), "[KEYWORD_MATCH_ERROR] bad entry")
        self.assertEqual(error.details, {"entry_id": "e1"})


class TestObservability(TestCase):

    def tearDown(self):
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()

    def test_setup_logging_binds_service(self):
        setup_logging("DEBUG", "console", service_name="ka-test")
        self.assertEqual(structlog.contextvars.get_contextvars()["service"], "ka-test")

    def test_metrics_summary(self):
        collector = ActivationMetrics()
        collector.record_activation(
            [make_activated("a"), make_activated("b").exclude(ExclusionReason.BUDGET_EXCEEDED)],
            budget_remaining=300,
            duration_ms=10.0,
        )
        collector.record_activation(
            [make_activated("a"), make_activated("c").exclude(ExclusionReason.COOLDOWN_ACTIVE)],
            budget_remaining=120,
            duration_ms=30.0,
        )

        summary = collector.get_metrics_summary()
        self.assertEqual(summary["calls"], 2)
        self.assertEqual(summary["latency_ms"], {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0})
        self.assertEqual(summary["included_by_method"], {"keyword": 2})
        self.assertEqual(summary["excluded_by_reason"], {"budget_exceeded": 1, "cooldown_active": 1})
        self.assertEqual(summary["exclusion_rates"], {"budget_exceeded": 0.25, "cooldown_active": 0.25})
        self.assertEqual(summary["inclusion_rate"], 0.5)
        self.assertEqual(summary["budget_remaining"], 120)

        collector.reset()
        summary = collector.get_metrics_summary()
        self.assertEqual(summary["calls"], 0)
        self.assertEqual(summary["exclusion_rates"], {})
        self.assertEqual(summary["inclusion_rate"], 0.0)
        self.assertIsNone(summary["budget_remaining"])
