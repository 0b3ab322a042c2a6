from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum


class ActivationMode(str, Enum):
    """How an entry may be activated"""
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"
    CONSTANT = "constant"
    DISABLED = "disabled"


class KeywordsLogic(str, Enum):
    """Selective logic combining primary and secondary keyword matches"""
    AND_ANY = "AND_ANY"
    AND_ALL = "AND_ALL"
    NOT_ALL = "NOT_ALL"
    NOT_ANY = "NOT_ANY"


class Position(str, Enum):
    """Where an activated entry is inserted into the prompt"""
    BEFORE_CHARACTER = "before_character"
    AFTER_CHARACTER = "after_character"
    BEFORE_EXAMPLES = "before_examples"
    AFTER_EXAMPLES = "after_examples"
    AT_DEPTH = "at_depth"
    SYSTEM_TOP = "system_top"
    SYSTEM_BOTTOM = "system_bottom"


class MessageRole(str, Enum):
    """Conversation message roles"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ActivationMethod(str, Enum):
    """Path through which an entry was activated"""
    KEYWORD = "keyword"
    VECTOR = "vector"
    CONSTANT = "constant"
    MANUAL = "manual"


class ExclusionReason(str, Enum):
    """Why an activated entry was left out of the prompt"""
    BUDGET_EXCEEDED = "budget_exceeded"
    FILTER_EXCLUDED = "filter_excluded"
    PROBABILITY_FAILED = "probability_failed"
    COOLDOWN_ACTIVE = "cooldown_active"
    DELAY_NOT_MET = "delay_not_met"
    GROUP_SCORING_LOST = "group_scoring_lost"


def _unwrap(item: Any, *keys: str) -> Any:
    """Pull a scalar out of the `{"keyword": ...}` style wrappers stored documents use"""
    if isinstance(item, dict):
        for key in keys:
            if key in item:
                return item[key]
        return None
    return item


def _normalize_ids(value: Any, *keys: str) -> List[str]:
    if not value:
        return []
    ids = []
    for item in value:
        raw = _unwrap(item, *keys)
        if raw is None or raw == "":
            continue
        ids.append(str(raw))
    return ids


class ActivationSettings(BaseModel):
    """Keyword, vector and probability settings for an entry"""
    activation_mode: ActivationMode = Field(default=ActivationMode.VECTOR)
    primary_keys: List[str] = Field(default_factory=list, description="Primary keywords (2 points each)")
    secondary_keys: List[str] = Field(default_factory=list, description="Secondary keywords (1 point each)")
    keywords_logic: KeywordsLogic = Field(default=KeywordsLogic.AND_ANY)
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_regex: bool = False
    vector_similarity_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    max_vector_results: int = Field(default=5, ge=1)
    probability: float = Field(default=100, ge=0, le=100)
    use_probability: bool = False
    scan_depth: int = Field(default=2, ge=0, description="How many recent messages to scan")
    match_in_user_messages: bool = True
    match_in_bot_messages: bool = True
    match_in_system_prompts: bool = False

    @field_validator("primary_keys", "secondary_keys", mode="before")
    @classmethod
    def _flatten_keywords(cls, value: Any) -> List[str]:
        if not value:
            return []
        keywords = []
        for item in value:
            keyword = _unwrap(item, "keyword")
            if isinstance(keyword, str) and keyword.strip():
                keywords.append(keyword)
        return keywords


class Positioning(BaseModel):
    """Prompt placement for an entry"""
    position: Position = Field(default=Position.BEFORE_CHARACTER)
    depth: int = Field(default=0, ge=0, description="Messages from the end for at_depth entries")
    role: MessageRole = Field(default=MessageRole.SYSTEM)
    order: int = Field(default=100, description="Lower order is inserted first within a position")


class AdvancedActivation(BaseModel):
    """Timed effects, measured in message indexes"""
    sticky: int = Field(default=0, ge=0)
    cooldown: int = Field(default=0, ge=0)
    delay: int = Field(default=0, ge=0)


class FilterSettings(BaseModel):
    """Bot and persona allow/deny lists"""
    filter_by_bots: bool = False
    allowed_bot_ids: List[str] = Field(default_factory=list)
    excluded_bot_ids: List[str] = Field(default_factory=list)
    filter_by_personas: bool = False
    allowed_persona_ids: List[str] = Field(default_factory=list)
    excluded_persona_ids: List[str] = Field(default_factory=list)

    @field_validator("allowed_bot_ids", "excluded_bot_ids", mode="before")
    @classmethod
    def _normalize_bot_ids(cls, value: Any) -> List[str]:
        return _normalize_ids(value, "bot_id", "id")

    @field_validator("allowed_persona_ids", "excluded_persona_ids", mode="before")
    @classmethod
    def _normalize_persona_ids(cls, value: Any) -> List[str]:
        return _normalize_ids(value, "persona_id", "id")


class BudgetControl(BaseModel):
    """Per-entry budget overrides"""
    ignore_budget: bool = False
    token_cost: int = Field(default=0, ge=0, description="Explicit cost; 0 derives it from content")
    max_tokens: int = Field(default=1000, ge=0)


class GroupSettings(BaseModel):
    """Group-exclusive scoring"""
    group_name: Optional[str] = None
    use_group_scoring: bool = False
    group_weight: float = Field(default=1.0, ge=0.0)

    @field_validator("group_name", mode="before")
    @classmethod
    def _blank_group_is_none(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class KnowledgeEntry(BaseModel):
    """A stored snippet of lore, fact or memory that can be injected into a prompt"""
    id: str = Field(description="Opaque entry identifier")
    user_id: Optional[str] = Field(None, description="Owning user")
    content: str = Field(default="", description="Literal text to inject")
    tags: List[str] = Field(default_factory=list)
    activation_settings: ActivationSettings = Field(default_factory=ActivationSettings)
    positioning: Positioning = Field(default_factory=Positioning)
    advanced_activation: AdvancedActivation = Field(default_factory=AdvancedActivation)
    filtering: FilterSettings = Field(default_factory=FilterSettings)
    budget_control: BudgetControl = Field(default_factory=BudgetControl)
    group_settings: GroupSettings = Field(default_factory=GroupSettings)

    @model_validator(mode="before")
    @classmethod
    def _from_document(cls, data: Any) -> Any:
        """Accept raw store documents (`entry` text, `user` owner, null setting groups)"""
        if not isinstance(data, dict):
            return data
        doc = dict(data)
        if "content" not in doc and "entry" in doc:
            doc["content"] = doc.pop("entry")
        if "user_id" not in doc and "user" in doc:
            doc["user_id"] = _unwrap(doc.pop("user"), "id")
        for group in (
            "activation_settings",
            "positioning",
            "advanced_activation",
            "filtering",
            "budget_control",
            "group_settings",
        ):
            if doc.get(group) is None:
                doc.pop(group, None)
        if doc.get("content") is None:
            doc["content"] = ""
        return doc

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _flatten_tags(cls, value: Any) -> List[str]:
        if not value:
            return []
        tags = []
        for item in value:
            tag = _unwrap(item, "tag")
            if isinstance(tag, str) and tag:
                tags.append(tag)
        return tags

    @property
    def mode(self) -> ActivationMode:
        return self.activation_settings.activation_mode


class ConversationMessage(BaseModel):
    """A single turn of conversation history"""
    role: MessageRole
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BotProfile(BaseModel):
    """The character the prompt is built for"""
    id: Optional[str] = None
    name: str
    description: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)


class PersonaProfile(BaseModel):
    """The persona the user is speaking as"""
    id: Optional[str] = None
    name: str
    description: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)
