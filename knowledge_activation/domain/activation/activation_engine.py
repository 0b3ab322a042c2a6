from typing import Callable, Dict, List, Optional, Set
import asyncio
import random
import time
import structlog
from pydantic import ValidationError

from knowledge_activation.domain.models.knowledge import (
    ActivationMethod,
    ActivationMode,
    ExclusionReason,
    KnowledgeEntry,
)
from knowledge_activation.domain.models.activation import (
    ActivatedEntry,
    ActivationContext,
    ActivationLogRecord,
    ActivationResult,
    BudgetConfig,
    FilterConfig,
    ScanConfig,
)
from knowledge_activation.infrastructure.config.settings import Settings, get_settings
from knowledge_activation.infrastructure.observability.logging import (
    ActivationMetrics,
    activation_logger,
    metrics as default_metrics,
)
from .budget_manager import BudgetManager
from .errors import ACTIVATION_FAILED, STORE_REQUIRED, ActivationError, KeywordMatchError, VectorSearchError
from .keyword_matcher import KeywordMatcher
from .state.conversation_state import (
    ConversationState,
    ConversationStateStore,
    EntryState,
    InMemoryConversationStateStore,
)
from .store.document_store import DocumentStore
from .vector_retriever import VectorRetriever

logger = structlog.get_logger(__name__)

CONSTANT_SCORE = 100.0
VECTOR_SCORE_SCALE = 100.0
HYBRID_BOOST = 0.5

KEYWORD_MODES = (ActivationMode.KEYWORD, ActivationMode.HYBRID)
VECTOR_MODES = (ActivationMode.VECTOR, ActivationMode.HYBRID)


class ActivationEngine:
    """Decides which knowledge entries go into the prompt for a conversation turn

    Conversation state (sticky/cooldown windows) lives in the injected
    ConversationStateStore. The default in-memory store is process local, so
    engines in different processes serving one conversation do not see each
    other's timed effects.
    """

    def __init__(
        self,
        state_store: Optional[ConversationStateStore] = None,
        settings: Optional[Settings] = None,
        keyword_matcher: Optional[KeywordMatcher] = None,
        vector_retriever: Optional[VectorRetriever] = None,
        budget_manager: Optional[BudgetManager] = None,
        random_source: Optional[Callable[[], float]] = None,
        metrics: Optional[ActivationMetrics] = None,
    ):
        self.settings = settings or get_settings()
        self.state_store = state_store or InMemoryConversationStateStore(
            ttl_seconds=self.settings.state.ttl_seconds,
            max_conversations=self.settings.state.max_conversations,
        )
        self.keyword_matcher = keyword_matcher or KeywordMatcher()
        self.vector_retriever = vector_retriever or VectorRetriever()
        self.budget_manager = budget_manager or BudgetManager()
        self.random_source = random_source or random.random
        self.metrics = metrics or default_metrics
        self._pending_logs: Set[asyncio.Task] = set()

    async def activate(self, context: ActivationContext) -> ActivationResult:
        """Run the full activation pipeline for one conversation turn"""

        start_time = time.perf_counter()

        with structlog.contextvars.bound_contextvars(
            conversation_id=context.conversation_id,
            user_id=context.user_id,
            message_index=context.current_message_index,
        ):
            try:
                all_entries = await self.fetch_knowledge_entries(context)

                state = await self.state_store.load(context.conversation_id, context.current_message_index)

                keyword_results = self.keyword_activation(all_entries, context)
                vector_results = await self.vector_activation(all_entries, context)
                constant_results = self.constant_activation(all_entries)

                activated = self.merge_results(keyword_results, vector_results, constant_results)
                activated = self.add_sticky_carryover(activated, all_entries, state)
                self._stage(context, "merge", activated)

                activated = self.apply_filtering(activated, context.filters)
                self._stage(context, "filter", activated)

                activated = self.apply_timed_effects(activated, state)
                self._stage(context, "timed_effects", activated)

                activated = self.apply_probability(activated)
                self._stage(context, "probability", activated)

                activated = self.apply_group_scoring(activated)
                self._stage(context, "group_scoring", activated)

                activated = self.apply_budget(activated, context.budget_config)
                self._stage(context, "budget", activated)

                self.update_conversation_state(state, activated)
                await self.state_store.save(state)

            except Exception as e:
                logger.error("Activation failed", error=str(e), exc_info=True)
                raise ActivationError(
                    "Activation failed",
                    ACTIVATION_FAILED,
                    {
                        "conversation_id": context.conversation_id,
                        "user_id": context.user_id,
                        "error": str(e),
                    },
                ) from e

            self._schedule_activation_logs(context, activated)

            result = ActivationResult.from_entries(
                activated, self.budget_manager.calculate_budget(context.budget_config)
            )

            duration_ms = (time.perf_counter() - start_time) * 1000
            self.metrics.record_activation(activated, result.budget_remaining, duration_ms)

            for excluded in activated:
                if not excluded.was_included:
                    activation_logger.log_exclusion(
                        conversation_id=context.conversation_id,
                        entry_id=excluded.entry_id,
                        reason=excluded.exclusion_reason.value if excluded.exclusion_reason else "unknown",
                        score=excluded.activation_score,
                    )

            activation_logger.log_activation_event(
                "knowledge_activated",
                context.conversation_id,
                {
                    "candidates": len(all_entries),
                    "processed": len(activated),
                    "included": len(result.activated_entries),
                    "total_tokens": result.total_tokens,
                    "budget_remaining": result.budget_remaining,
                },
                duration_ms=round(duration_ms, 2),
            )

            return result

    async def fetch_knowledge_entries(self, context: ActivationContext) -> List[KnowledgeEntry]:
        """Load every entry the user owns, in one bounded fetch"""

        if context.store is None:
            raise ActivationError("Document store required for fetching entries", STORE_REQUIRED)

        limit = self.settings.store.entry_fetch_limit
        result = await context.store.find(
            self.settings.store.knowledge_collection,
            {"user": context.user_id},
            limit,
        )

        if len(result.docs) >= limit:
            logger.warning("Knowledge fetch may be truncated", limit=limit, total_docs=result.total_docs)

        entries = []
        for doc in result.docs:
            try:
                entries.append(KnowledgeEntry.model_validate(doc))
            except ValidationError as e:
                logger.warning("Skipping malformed knowledge entry", entry_id=doc.get("id"), error=str(e))
        return entries

    def keyword_activation(self, all_entries: List[KnowledgeEntry], context: ActivationContext) -> List[ActivatedEntry]:
        results = []

        for entry in all_entries:
            if entry.mode not in KEYWORD_MODES:
                continue

            try:
                match = self.keyword_matcher.match_entry(entry, context.messages, ScanConfig.for_entry(entry))
            except KeywordMatchError as e:
                logger.warning("Keyword match failed", entry_id=entry.id, error=str(e))
                continue

            if match.matched:
                results.append(self._build_activated(
                    entry,
                    ActivationMethod.KEYWORD,
                    float(match.score),
                    matched_keywords=match.matched_keywords,
                ))

        return results

    async def vector_activation(self, all_entries: List[KnowledgeEntry], context: ActivationContext) -> List[ActivatedEntry]:
        if context.embedder is None or context.vector_index is None:
            logger.warning("Vector services not available, skipping vector activation")
            return []

        vector_entries = {e.id: e for e in all_entries if e.mode in VECTOR_MODES}
        if not vector_entries:
            return []

        query_text = self.vector_retriever.build_query_text(context.messages, self.settings.vector.query_window)
        if not query_text.strip():
            return []

        options = self.settings.vector.search_options(context.user_id)
        try:
            hits = await self.vector_retriever.retrieve_relevant(
                query_text, options, context.embedder, context.vector_index
            )
        except VectorSearchError as e:
            logger.warning("Vector search failed, continuing without vector results", error=str(e))
            return []

        results = []
        for hit in hits:
            entry = vector_entries.get(hit.entry_id)
            if entry is None:
                continue
            if hit.similarity < entry.activation_settings.vector_similarity_threshold:
                continue

            results.append(self._build_activated(
                entry,
                ActivationMethod.VECTOR,
                hit.similarity * VECTOR_SCORE_SCALE,
                vector_similarity=hit.similarity,
            ))

        return results

    def constant_activation(self, all_entries: List[KnowledgeEntry]) -> List[ActivatedEntry]:
        return [
            self._build_activated(entry, ActivationMethod.CONSTANT, CONSTANT_SCORE)
            for entry in all_entries
            if entry.mode == ActivationMode.CONSTANT
        ]

    def merge_results(
        self,
        keyword_results: List[ActivatedEntry],
        vector_results: List[ActivatedEntry],
        constant_results: List[ActivatedEntry],
    ) -> List[ActivatedEntry]:
        """Union by entry id; the keyword record wins and is boosted by a vector hit"""

        merged: Dict[str, ActivatedEntry] = {}

        for result in keyword_results:
            merged[result.entry_id] = result

        for result in vector_results:
            existing = merged.get(result.entry_id)
            if existing is None:
                merged[result.entry_id] = result
            else:
                merged[result.entry_id] = existing.model_copy(update={
                    "activation_score": existing.activation_score + result.activation_score * HYBRID_BOOST,
                    "vector_similarity": result.vector_similarity,
                })

        for result in constant_results:
            merged.setdefault(result.entry_id, result)

        return list(merged.values())

    def add_sticky_carryover(
        self,
        activated: List[ActivatedEntry],
        all_entries: List[KnowledgeEntry],
        state: ConversationState,
    ) -> List[ActivatedEntry]:
        """Bring back entries inside a sticky window that matched nothing this turn"""

        current_index = state.current_message_index
        present = {a.entry_id for a in activated}
        carried = []

        for entry in all_entries:
            if entry.id in present or entry.mode == ActivationMode.DISABLED:
                continue
            if not state.is_sticky(entry.id):
                continue

            entry_state = state.entry_state(entry.id)

            # Delay and cooldown win over sticky; an unmatched entry they hold back is left out entirely
            if current_index < entry.advanced_activation.delay:
                continue
            if entry_state.cooldown_until is not None and current_index < entry_state.cooldown_until:
                continue

            carried.append(self._build_activated(
                entry,
                entry_state.last_method or ActivationMethod.MANUAL,
                entry_state.last_score,
                sticky=True,
                carried_over=True,
            ))

        return activated + carried

    def apply_filtering(self, entries: List[ActivatedEntry], filters: FilterConfig) -> List[ActivatedEntry]:
        """Bot and persona allow/deny lists; the deny list wins"""

        results = []
        for activated in entries:
            settings = activated.entry.filtering
            excluded = False

            if settings.filter_by_bots and filters.current_bot_id:
                excluded = excluded or self._is_filtered_out(
                    filters.current_bot_id, settings.allowed_bot_ids, settings.excluded_bot_ids
                )

            if settings.filter_by_personas and filters.current_persona_id:
                excluded = excluded or self._is_filtered_out(
                    filters.current_persona_id, settings.allowed_persona_ids, settings.excluded_persona_ids
                )

            results.append(activated.exclude(ExclusionReason.FILTER_EXCLUDED) if excluded else activated)

        return results

    def _is_filtered_out(self, current_id: str, allowed: List[str], denied: List[str]) -> bool:
        # An empty allow list means no restriction
        if allowed and current_id not in allowed:
            return True
        return current_id in denied

    def apply_timed_effects(self, entries: List[ActivatedEntry], state: ConversationState) -> List[ActivatedEntry]:
        """Delay, then cooldown, then the sticky override"""

        current_index = state.current_message_index
        results = []

        for activated in entries:
            entry_state = state.entry_state(activated.entry_id)

            if current_index < activated.entry.advanced_activation.delay:
                results.append(activated.exclude(ExclusionReason.DELAY_NOT_MET))
            elif entry_state.cooldown_until is not None and current_index < entry_state.cooldown_until:
                results.append(activated.exclude(ExclusionReason.COOLDOWN_ACTIVE))
            elif state.is_sticky(activated.entry_id):
                # The only stage that can re-include an excluded entry
                results.append(activated.include(sticky=True))
            else:
                results.append(activated)

        return results

    def apply_probability(self, entries: List[ActivatedEntry]) -> List[ActivatedEntry]:
        results = []

        for activated in entries:
            settings = activated.entry.activation_settings
            if (
                activated.was_included
                and not activated.sticky
                and settings.use_probability
                and settings.probability < 100
            ):
                roll = self.random_source() * 100
                if roll > settings.probability:
                    results.append(activated.exclude(ExclusionReason.PROBABILITY_FAILED))
                    continue
            results.append(activated)

        return results

    def apply_group_scoring(self, entries: List[ActivatedEntry]) -> List[ActivatedEntry]:
        """Keep only the best weighted score in each scoring group"""

        groups: Dict[str, List[ActivatedEntry]] = {}
        for activated in entries:
            if (
                activated.was_included
                and activated.group_name
                and activated.entry.group_settings.use_group_scoring
            ):
                groups.setdefault(activated.group_name, []).append(activated)

        losers: Set[str] = set()
        for members in groups.values():
            if len(members) <= 1:
                continue
            # Stable sort: ties go to the earlier entry
            ranked = sorted(members, key=lambda a: a.weighted_score, reverse=True)
            losers.update(a.entry_id for a in ranked[1:])

        return [
            a.exclude(ExclusionReason.GROUP_SCORING_LOST) if a.entry_id in losers else a
            for a in entries
        ]

    def apply_budget(self, entries: List[ActivatedEntry], budget_config: BudgetConfig) -> List[ActivatedEntry]:
        total_budget = self.budget_manager.total_budget(budget_config)
        return self.budget_manager.apply_budget_with_min(entries, total_budget, budget_config.min_activations)

    def update_conversation_state(self, state: ConversationState, entries: List[ActivatedEntry]) -> None:
        """Record activation and open sticky/cooldown windows for included entries"""

        current_index = state.current_message_index

        for activated in entries:
            if not activated.was_included:
                continue

            entry_state = state.entry_states.get(activated.entry_id) or EntryState()
            entry_state.last_activated_at = current_index

            # A carried-over entry rides its existing window without reopening it
            if not activated.carried_over:
                entry_state.last_method = activated.activation_method
                entry_state.last_score = activated.activation_score

                advanced = activated.entry.advanced_activation
                if advanced.sticky > 0:
                    entry_state.sticky_until = current_index + advanced.sticky
                if advanced.cooldown > 0:
                    entry_state.cooldown_until = current_index + advanced.cooldown

            state.entry_states[activated.entry_id] = entry_state

    async def clear_conversation(self, conversation_id: str) -> None:
        await self.state_store.clear(conversation_id)

    def _schedule_activation_logs(self, context: ActivationContext, entries: List[ActivatedEntry]) -> None:
        if context.store is None or not entries:
            return

        records = [
            ActivationLogRecord.from_activated(context.conversation_id, context.current_message_index, e)
            for e in entries
        ]
        task = asyncio.create_task(self._log_activations(context.store, records))
        self._pending_logs.add(task)
        task.add_done_callback(self._pending_logs.discard)

    async def _log_activations(self, store: DocumentStore, records: List[ActivationLogRecord]) -> None:
        """Best-effort: a failed write is logged and skipped"""

        collection = self.settings.store.activation_log_collection
        for record in records:
            try:
                await store.create(collection, record.model_dump(mode="json"))
            except Exception as e:
                logger.warning(
                    "Failed to log activation",
                    entry_id=record.knowledge_entry_id,
                    error=str(e),
                )

    async def drain_pending_logs(self) -> None:
        """Wait for scheduled activation-log writes to finish"""
        if self._pending_logs:
            await asyncio.gather(*list(self._pending_logs), return_exceptions=True)

    def _build_activated(
        self,
        entry: KnowledgeEntry,
        method: ActivationMethod,
        score: float,
        **extra,
    ) -> ActivatedEntry:
        return ActivatedEntry(
            entry=entry,
            entry_id=entry.id,
            activation_method=method,
            activation_score=score,
            position=entry.positioning.position,
            depth=entry.positioning.depth,
            role=entry.positioning.role,
            order=entry.positioning.order,
            token_cost=self.budget_manager.token_cost_for(entry),
            ignore_budget=entry.budget_control.ignore_budget,
            group_name=entry.group_settings.group_name,
            group_weight=entry.group_settings.group_weight,
            **extra,
        )

    def _stage(self, context: ActivationContext, stage: str, entries: List[ActivatedEntry]) -> None:
        included = sum(1 for e in entries if e.was_included)
        activation_logger.log_stage_result(
            conversation_id=context.conversation_id,
            stage=stage,
            included=included,
            excluded=len(entries) - included,
        )


def create_activation_engine(**kwargs) -> ActivationEngine:
    return ActivationEngine(**kwargs)


async def activate_knowledge(context: ActivationContext) -> ActivationResult:
    """One-off activation with a fresh engine and empty conversation state"""

    engine = ActivationEngine()
    result = await engine.activate(context)
    await engine.drain_pending_logs()
    return result
