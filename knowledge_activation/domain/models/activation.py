from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from .knowledge import (
    ActivationMethod,
    ConversationMessage,
    ExclusionReason,
    KnowledgeEntry,
    MessageRole,
    Position,
)


class ScanConfig(BaseModel):
    """Which recent messages keyword matching looks at"""
    scan_depth: int = Field(default=2, ge=0)
    match_in_user_messages: bool = True
    match_in_bot_messages: bool = True
    match_in_system_prompts: bool = False

    @classmethod
    def for_entry(cls, entry: KnowledgeEntry) -> "ScanConfig":
        settings = entry.activation_settings
        return cls(
            scan_depth=settings.scan_depth,
            match_in_user_messages=settings.match_in_user_messages,
            match_in_bot_messages=settings.match_in_bot_messages,
            match_in_system_prompts=settings.match_in_system_prompts,
        )


class KeywordMatchResult(BaseModel):
    """Outcome of matching one entry's keywords"""
    matched: bool = False
    score: int = 0
    matched_keywords: List[str] = Field(default_factory=list)
    primary_matches: List[str] = Field(default_factory=list)
    secondary_matches: List[str] = Field(default_factory=list)


class VectorSearchOptions(BaseModel):
    """Options for a nearest-neighbour knowledge lookup"""
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_results: int = Field(default=20, ge=1)
    filters: Dict[str, Any] = Field(default_factory=dict, description="Index metadata filter, e.g. user_id")


class VectorSearchResult(BaseModel):
    """One chunk hit from the vector index"""
    entry_id: str
    similarity: float
    chunk_index: int = 0
    chunk_text: str = ""


class BudgetConfig(BaseModel):
    """Token budget for injected knowledge, supplied per call"""
    max_context_tokens: int = Field(default=8000, ge=0, description="Model context window")
    budget_percentage: float = Field(default=25, ge=0, le=100, description="Share of context for knowledge")
    budget_cap_tokens: int = Field(default=2000, ge=0, description="Absolute cap")
    reserved_for_conversation: int = Field(default=4000, ge=0, description="Tokens kept for chat history")
    min_activations: int = Field(default=0, ge=0, description="Entries admitted even over budget")


class FilterConfig(BaseModel):
    """Per-request scope used by bot/persona filtering and vector search"""
    user_id: Optional[str] = None
    current_bot_id: Optional[str] = None
    current_persona_id: Optional[str] = None

    @field_validator("user_id", "current_bot_id", "current_persona_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)


class ActivatedEntry(BaseModel):
    """An entry that matched at least one activation path during a single call"""
    entry: KnowledgeEntry
    entry_id: str
    activation_method: ActivationMethod
    activation_score: float
    matched_keywords: Optional[List[str]] = None
    vector_similarity: Optional[float] = None

    position: Position
    depth: int = 0
    role: MessageRole = MessageRole.SYSTEM
    order: int = 100

    token_cost: int = 0
    ignore_budget: bool = False

    group_name: Optional[str] = None
    group_weight: float = 1.0

    sticky: bool = Field(default=False, description="Forced in by an active sticky window")
    carried_over: bool = Field(default=False, description="Matched nothing this turn, kept by its sticky window")
    was_included: bool = True
    exclusion_reason: Optional[ExclusionReason] = None

    def exclude(self, reason: ExclusionReason) -> "ActivatedEntry":
        return self.model_copy(update={"was_included": False, "exclusion_reason": reason})

    def include(self, **updates: Any) -> "ActivatedEntry":
        return self.model_copy(update={"was_included": True, "exclusion_reason": None, **updates})

    @property
    def weighted_score(self) -> float:
        return self.activation_score * self.group_weight

    @property
    def position_label(self) -> str:
        return f"{self.position.value}:{self.depth}"


class ActivationResult(BaseModel):
    """What a single activation call hands back to the caller"""
    activated_entries: List[ActivatedEntry] = Field(default_factory=list)
    total_tokens: int = 0
    budget_remaining: int = 0
    entries_excluded_by_budget: int = 0
    entries_excluded_by_filter: int = 0
    entries_excluded_by_probability: int = 0
    entries_excluded_by_cooldown: int = 0
    entries_excluded_by_delay: int = 0
    entries_excluded_by_group_scoring: int = 0

    @classmethod
    def from_entries(cls, entries: List[ActivatedEntry], budget_total: int) -> "ActivationResult":
        included = [e for e in entries if e.was_included]
        total_tokens = sum(e.token_cost for e in included)

        def excluded(reason: ExclusionReason) -> int:
            return sum(1 for e in entries if e.exclusion_reason == reason)

        return cls(
            activated_entries=included,
            total_tokens=total_tokens,
            budget_remaining=budget_total - total_tokens,
            entries_excluded_by_budget=excluded(ExclusionReason.BUDGET_EXCEEDED),
            entries_excluded_by_filter=excluded(ExclusionReason.FILTER_EXCLUDED),
            entries_excluded_by_probability=excluded(ExclusionReason.PROBABILITY_FAILED),
            entries_excluded_by_cooldown=excluded(ExclusionReason.COOLDOWN_ACTIVE),
            entries_excluded_by_delay=excluded(ExclusionReason.DELAY_NOT_MET),
            entries_excluded_by_group_scoring=excluded(ExclusionReason.GROUP_SCORING_LOST),
        )


class ActivationContext(BaseModel):
    """Everything one activation call needs"""
    conversation_id: str
    user_id: str
    current_message_index: int = Field(ge=0)
    messages: List[ConversationMessage] = Field(default_factory=list)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    budget_config: BudgetConfig = Field(default_factory=BudgetConfig)
    store: Optional[Any] = Field(None, description="DocumentStore for entries and activation logs")
    embedder: Optional[Any] = Field(None, description="EmbeddingService")
    vector_index: Optional[Any] = Field(None, description="VectorIndex")

    @field_validator("conversation_id", "user_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)


class ActivationLogRecord(BaseModel):
    """One persisted row per processed entry"""
    conversation_id: str
    message_index: int
    knowledge_entry_id: str
    activation_method: ActivationMethod
    activation_score: float
    matched_keywords: List[Dict[str, str]] = Field(default_factory=list)
    vector_similarity: Optional[float] = None
    position_inserted: str
    tokens_used: int
    was_included: bool
    exclusion_reason: Optional[ExclusionReason] = None
    activation_timestamp: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_activated(
        cls, conversation_id: str, message_index: int, entry: ActivatedEntry
    ) -> "ActivationLogRecord":
        return cls(
            conversation_id=conversation_id,
            message_index=message_index,
            knowledge_entry_id=entry.entry_id,
            activation_method=entry.activation_method,
            activation_score=entry.activation_score,
            matched_keywords=[{"keyword": k} for k in entry.matched_keywords or []],
            vector_similarity=entry.vector_similarity,
            position_inserted=entry.position_label,
            tokens_used=entry.token_cost,
            was_included=entry.was_included,
            exclusion_reason=entry.exclusion_reason,
        )


class BudgetStats(BaseModel):
    """Budget usage summary"""
    total_budget: int
    used_budget: int
    remaining_budget: int
    percent_used: float
    total_entries: int
    included_entries: int
    excluded_entries: int
    ignore_budget_entries: int
    average_tokens_per_entry: float
