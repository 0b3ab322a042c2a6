from typing import Any, Dict, List, Tuple
import math

from knowledge_activation.domain.models.knowledge import ExclusionReason, KnowledgeEntry
from knowledge_activation.domain.models.activation import ActivatedEntry, BudgetConfig, BudgetStats
from .errors import BudgetExceededError

CHARS_PER_TOKEN = 4
FORMATTING_OVERHEAD = 10


class BudgetManager:
    """Fits activated entries into the knowledge token budget"""

    def calculate_budget(self, config: BudgetConfig) -> int:
        """Tokens left for knowledge once the conversation reserve is taken out"""

        capped = self.total_budget(config)
        return math.floor(max(0.0, capped - config.reserved_for_conversation))

    def total_budget(self, config: BudgetConfig) -> float:
        """Percentage of the context window, capped; the reserve is not subtracted"""
        return min(config.max_context_tokens * (config.budget_percentage / 100), config.budget_cap_tokens)

    def apply_budget(self, entries: List[ActivatedEntry], budget: float) -> List[ActivatedEntry]:
        """Admit highest-scoring entries while they fit"""
        return self.apply_budget_with_min(entries, budget, 0)

    def apply_budget_with_min(
        self,
        entries: List[ActivatedEntry],
        budget: float,
        min_activations: int,
    ) -> List[ActivatedEntry]:
        """Admit highest-scoring entries while they fit, always admitting the first `min_activations`

        Returns ignore-budget entries first, then budgeted entries in admission
        order, then entries that were already excluded.
        """

        ignore_budget, budgeted, already_excluded = self._partition(entries)
        ranked = sorted(budgeted, key=lambda e: e.activation_score, reverse=True)
        return ignore_budget + self._admit(ranked, budget, min_activations) + already_excluded

    def optimize_budget_allocation(self, entries: List[ActivatedEntry], budget: float) -> List[ActivatedEntry]:
        """Greedy knapsack approximation: admit by score per token"""

        ignore_budget, budgeted, already_excluded = self._partition(entries)

        def ratio(entry: ActivatedEntry) -> float:
            if entry.token_cost > 0:
                return entry.activation_score / entry.token_cost
            return entry.activation_score

        ranked = sorted(budgeted, key=ratio, reverse=True)
        return ignore_budget + self._admit(ranked, budget, 0) + already_excluded

    def _partition(
        self, entries: List[ActivatedEntry]
    ) -> Tuple[List[ActivatedEntry], List[ActivatedEntry], List[ActivatedEntry]]:
        ignore_budget = [e for e in entries if e.ignore_budget and e.was_included]
        budgeted = [e for e in entries if not e.ignore_budget and e.was_included]
        already_excluded = [e for e in entries if not e.was_included]
        return ignore_budget, budgeted, already_excluded

    def _admit(self, ranked: List[ActivatedEntry], budget: float, min_activations: int) -> List[ActivatedEntry]:
        used = 0
        admitted = 0
        processed = []
        for entry in ranked:
            # min_activations is a hard floor, even past the budget
            if used + entry.token_cost <= budget or admitted < min_activations:
                used += entry.token_cost
                admitted += 1
                processed.append(entry)
            else:
                processed.append(entry.exclude(ExclusionReason.BUDGET_EXCEEDED))
        return processed

    def estimate_tokens(self, text: str) -> int:
        """Roughly four characters per token"""
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate_entry_tokens(self, entry_text: str, include_formatting: bool = True) -> int:
        overhead = FORMATTING_OVERHEAD if include_formatting else 0
        return self.estimate_tokens(entry_text) + overhead

    def token_cost_for(self, entry: KnowledgeEntry) -> int:
        """Explicit token_cost wins; otherwise derive it from the content"""
        if entry.budget_control.token_cost > 0:
            return entry.budget_control.token_cost
        return self.estimate_entry_tokens(entry.content, True)

    def calculate_entry_costs(self, entries: List[ActivatedEntry]) -> List[ActivatedEntry]:
        return [
            e.model_copy(update={"token_cost": self.estimate_entry_tokens(e.entry.content, True)})
            for e in entries
        ]

    def get_usage_stats(self, entries: List[ActivatedEntry], total_budget: int) -> BudgetStats:
        included = [e for e in entries if e.was_included]
        used = sum(e.token_cost for e in included)

        return BudgetStats(
            total_budget=total_budget,
            used_budget=used,
            remaining_budget=max(0, total_budget - used),
            percent_used=(used / total_budget) * 100 if total_budget > 0 else 0.0,
            total_entries=len(entries),
            included_entries=len(included),
            excluded_entries=len(entries) - len(included),
            ignore_budget_entries=sum(1 for e in included if e.ignore_budget),
            average_tokens_per_entry=used / len(included) if included else 0.0,
        )

    def format_budget_stats(self, stats: BudgetStats) -> str:
        lines = [
            "=== Token Budget Statistics ===",
            f"Total Budget: {stats.total_budget} tokens",
            f"Used: {stats.used_budget} tokens ({stats.percent_used:.1f}%)",
            f"Remaining: {stats.remaining_budget} tokens",
            "",
            f"Total Entries: {stats.total_entries}",
            f"  Included: {stats.included_entries}",
            f"  Excluded: {stats.excluded_entries}",
            f"  Ignore Budget: {stats.ignore_budget_entries}",
            "",
            f"Average Tokens/Entry: {stats.average_tokens_per_entry:.1f}",
        ]
        return "\n".join(lines)

    def would_exceed_budget(self, current_usage: int, entry_tokens: int, total_budget: float) -> bool:
        return current_usage + entry_tokens > total_budget

    def ensure_fits(self, entries: List[ActivatedEntry], budget: float) -> None:
        """Raise BudgetExceededError when included budgeted entries overrun `budget`"""
        fit = check_budget_fit(entries, budget)
        if not fit["fits"]:
            raise BudgetExceededError(
                "Included knowledge exceeds the token budget",
                {"budget": budget, "overage_tokens": fit["overage_tokens"]},
            )

    def get_recommended_budget_config(self, model_context_window: int, conversation_length: int) -> BudgetConfig:
        """Reasonable defaults for a model context window and conversation length"""

        reserved = min(conversation_length * 150, model_context_window * 0.6)
        cap = min(model_context_window * 0.3, 2000)

        return BudgetConfig(
            max_context_tokens=model_context_window,
            budget_percentage=25,
            budget_cap_tokens=int(cap),
            reserved_for_conversation=int(reserved),
            min_activations=2,
        )


def create_budget_manager() -> BudgetManager:
    return BudgetManager()


def check_budget_fit(entries: List[ActivatedEntry], budget: float) -> Dict[str, Any]:
    """Whether included, budgeted entries fit, and by how much they overrun"""
    total = sum(e.token_cost for e in entries if e.was_included and not e.ignore_budget)
    return {"fits": total <= budget, "overage_tokens": max(0, total - budget)}


