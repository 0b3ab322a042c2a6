"""
Tests for token budgeting and estimation.

Run: python -m pytest tests/test_budget_manager.py -v
"""

from unittest import TestCase

from knowledge_activation.domain.models.knowledge import ExclusionReason, KnowledgeEntry
from knowledge_activation.domain.models.activation import BudgetConfig
from knowledge_activation.domain.activation.budget_manager import BudgetManager, check_budget_fit
from knowledge_activation.domain.activation.errors import BudgetExceededError

from factories import make_activated


def by_id(entries):
    return {e.entry_id: e for e in entries}


class TestCalculateBudget(TestCase):

    def setUp(self):
        self.manager = BudgetManager()

    def test_reserve_larger_than_budget_floors_at_zero(self):
        self.assertEqual(self.manager.calculate_budget(BudgetConfig()), 0)

    def test_percentage_then_cap_then_reserve(self):
        config = BudgetConfig(max_context_tokens=32000, budget_percentage=25,
                              budget_cap_tokens=6000, reserved_for_conversation=1500)
        self.assertEqual(self.manager.total_budget(config), 6000)
        self.assertEqual(self.manager.calculate_budget(config), 4500)

    def test_fractional_budget_is_floored(self):
        config = BudgetConfig(max_context_tokens=1001, budget_percentage=10,
                              budget_cap_tokens=5000, reserved_for_conversation=0)
        self.assertEqual(self.manager.calculate_budget(config), 100)


class TestApplyBudget(TestCase):

    def setUp(self):
        self.manager = BudgetManager()

    def test_high_score_wins_when_both_do_not_fit(self):
        entries = [make_activated("low", score=10, cost=500), make_activated("high", score=90, cost=500)]
        result = by_id(self.manager.apply_budget_with_min(entries, 600, 1))

        self.assertTrue(result["high"].was_included)
        self.assertFalse(result["low"].was_included)
        self.assertEqual(result["low"].exclusion_reason, ExclusionReason.BUDGET_EXCEEDED)

    def test_smaller_entry_still_fits_after_a_miss(self):
        entries = [
            make_activated("a", score=10, cost=60),
            make_activated("b", score=5, cost=50),
            make_activated("c", score=1, cost=30),
        ]
        result = by_id(self.manager.apply_budget(entries, 100))

        self.assertTrue(result["a"].was_included)
        self.assertFalse(result["b"].was_included)
        self.assertTrue(result["c"].was_included)

    def test_min_activations_is_a_hard_floor(self):
        entries = [make_activated("a", score=3, cost=500), make_activated("b", score=2, cost=500),
                   make_activated("c", score=1, cost=500)]
        result = by_id(self.manager.apply_budget_with_min(entries, 10, 2))

        self.assertTrue(result["a"].was_included)
        self.assertTrue(result["b"].was_included)
        self.assertFalse(result["c"].was_included)

    def test_ignore_budget_always_included_and_not_counted(self):
        entries = [make_activated("free", score=0, cost=10_000, ignore_budget=True),
                   make_activated("paid", score=1, cost=100)]
        result = by_id(self.manager.apply_budget(entries, 100))

        self.assertTrue(result["free"].was_included)
        self.assertTrue(result["paid"].was_included)

    def test_already_excluded_entries_pass_through(self):
        excluded = make_activated("gone", score=99, cost=1).exclude(ExclusionReason.FILTER_EXCLUDED)
        result = self.manager.apply_budget([excluded], 100)

        self.assertEqual(result[0].exclusion_reason, ExclusionReason.FILTER_EXCLUDED)

    def test_equal_scores_keep_input_order(self):
        entries = [make_activated("first", score=5, cost=60), make_activated("second", score=5, cost=60)]
        result = by_id(self.manager.apply_budget(entries, 100))

        self.assertTrue(result["first"].was_included)
        self.assertFalse(result["second"].was_included)

    def test_optimize_prefers_score_per_token(self):
        entries = [make_activated("big", score=10, cost=100), make_activated("small", score=6, cost=20),
                   make_activated("mid", score=5, cost=50)]
        result = by_id(self.manager.optimize_budget_allocation(entries, 80))

        self.assertTrue(result["small"].was_included)
        self.assertTrue(result["mid"].was_included)
        self.assertFalse(result["big"].was_included)


class TestEstimation(TestCase):

    def setUp(self):
        self.manager = BudgetManager()

    def test_four_chars_per_token(self):
        self.assertEqual(self.manager.estimate_tokens(""), 0)
        self.assertEqual(self.manager.estimate_tokens("abcd"), 1)
        self.assertEqual(self.manager.estimate_tokens("abcde"), 2)

    def test_formatting_overhead(self):
        self.assertEqual(self.manager.estimate_entry_tokens("abcde"), 12)
        self.assertEqual(self.manager.estimate_entry_tokens("abcde", include_formatting=False), 2)

    def test_explicit_token_cost_wins(self):
        derived = KnowledgeEntry(id="1", content="x" * 40)
        explicit = KnowledgeEntry(id="2", content="x" * 40, budget_control={"token_cost": 7})

        self.assertEqual(self.manager.token_cost_for(derived), 20)
        self.assertEqual(self.manager.token_cost_for(explicit), 7)

    def test_calculate_entry_costs(self):
        entries = self.manager.calculate_entry_costs([make_activated("a", content="x" * 8, cost=0)])
        self.assertEqual(entries[0].token_cost, 12)


class TestBudgetReporting(TestCase):

    def setUp(self):
        self.manager = BudgetManager()
        self.entries = [
            make_activated("a", cost=300),
            make_activated("b", cost=100, ignore_budget=True),
            make_activated("c", cost=50).exclude(ExclusionReason.BUDGET_EXCEEDED),
        ]

    def test_usage_stats(self):
        stats = self.manager.get_usage_stats(self.entries, 1000)

        self.assertEqual(stats.used_budget, 400)
        self.assertEqual(stats.remaining_budget, 600)
        self.assertEqual(stats.percent_used, 40.0)
        self.assertEqual(stats.included_entries, 2)
        self.assertEqual(stats.excluded_entries, 1)
        self.assertEqual(stats.ignore_budget_entries, 1)
        self.assertEqual(stats.average_tokens_per_entry, 200.0)
        self.assertIn("Used: 400 tokens (40.0%)", self.manager.format_budget_stats(stats))

    def test_check_budget_fit_ignores_free_entries(self):
        self.assertEqual(check_budget_fit(self.entries, 300), {"fits": True, "overage_tokens": 0})
        self.assertEqual(check_budget_fit(self.entries, 250), {"fits": False, "overage_tokens": 50})

    def test_ensure_fits_raises(self):
        with self.assertRaises(BudgetExceededError) as ctx:
            self.manager.ensure_fits(self.entries, 250)
        self.assertEqual(ctx.exception.code, "BUDGET_EXCEEDED")
        self.assertEqual(ctx.exception.details["overage_tokens"], 50)

    def test_would_exceed_budget(self):
        self.assertTrue(self.manager.would_exceed_budget(900, 101, 1000))
        self.assertFalse(self.manager.would_exceed_budget(900, 100, 1000))

    def test_recommended_config(self):
        config = self.manager.get_recommended_budget_config(8000, 10)

        self.assertEqual(config.reserved_for_conversation, 1500)
        self.assertEqual(config.budget_cap_tokens, 2000)
        self.assertEqual(config.min_activations, 2)
