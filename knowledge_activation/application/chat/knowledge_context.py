from typing import Dict, List, Optional
import math
import structlog
from pydantic import BaseModel, Field

from knowledge_activation.domain.models.knowledge import (
    BotProfile,
    ConversationMessage,
    MessageRole,
    PersonaProfile,
)
from knowledge_activation.domain.models.activation import ActivatedEntry, ActivationContext, FilterConfig
from knowledge_activation.domain.activation.activation_engine import ActivationEngine
from knowledge_activation.domain.activation.errors import ActivationError
from knowledge_activation.domain.activation.prompt_builder import PromptBuilder
from knowledge_activation.domain.activation.store.document_store import DocumentStore
from knowledge_activation.domain.activation.store.vector_store import EmbeddingService, VectorIndex
from knowledge_activation.infrastructure.config.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# Per-message framing overhead used in the rough token estimate
MESSAGE_OVERHEAD_TOKENS = 4


class KnowledgeContext(BaseModel):
    """Prompt and message list for one LLM call, with knowledge injected"""
    system_prompt: str
    messages: List[Dict[str, str]] = Field(default_factory=list)
    activated_count: int = 0
    total_tokens_estimate: int = 0


class KnowledgeContextService:
    """Runs knowledge activation for a chat turn and assembles the LLM context

    Activation failures never fail the turn: the base prompt is used as is.
    """

    def __init__(
        self,
        store: DocumentStore,
        engine: Optional[ActivationEngine] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        embedder: Optional[EmbeddingService] = None,
        vector_index: Optional[VectorIndex] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.engine = engine or ActivationEngine(settings=self.settings)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.embedder = embedder
        self.vector_index = vector_index

    async def build_context(
        self,
        base_prompt: str,
        messages: List[ConversationMessage],
        conversation_id: str,
        user_id: str,
        message_index: int,
        bot: Optional[BotProfile] = None,
        persona: Optional[PersonaProfile] = None,
    ) -> KnowledgeContext:
        """Build the system prompt and message list for the next reply"""

        logger.info("Building knowledge context", conversation_id=conversation_id, message_index=message_index)

        system_prompt = base_prompt
        activated: List[ActivatedEntry] = []

        # Nothing to react to until the user has spoken
        if any(m.role == MessageRole.USER for m in messages):
            activated = await self._activate(messages, conversation_id, user_id, message_index, bot, persona)
            if activated:
                system_prompt = self.prompt_builder.build_prompt(base_prompt, activated, bot, persona)

        history = [
            {"role": m.role.value, "content": m.content}
            for m in messages
            if m.content
        ]
        # Depth counts back through the history only; the system prompt always stays first
        history = self.prompt_builder.build_messages_with_depth_entries(history, activated)
        chat_messages = [{"role": MessageRole.SYSTEM.value, "content": system_prompt}] + history

        return KnowledgeContext(
            system_prompt=system_prompt,
            messages=chat_messages,
            activated_count=len(activated),
            total_tokens_estimate=self.estimate_tokens(chat_messages),
        )

    async def _activate(
        self,
        messages: List[ConversationMessage],
        conversation_id: str,
        user_id: str,
        message_index: int,
        bot: Optional[BotProfile],
        persona: Optional[PersonaProfile],
    ) -> List[ActivatedEntry]:
        context = ActivationContext(
            conversation_id=conversation_id,
            user_id=user_id,
            current_message_index=message_index,
            messages=messages,
            filters=FilterConfig(
                user_id=user_id,
                current_bot_id=bot.id if bot else None,
                current_persona_id=persona.id if persona else None,
            ),
            budget_config=self.settings.budget,
            store=self.store,
            embedder=self.embedder,
            vector_index=self.vector_index,
        )

        try:
            result = await self.engine.activate(context)
        except ActivationError as e:
            logger.warning(
                "Knowledge activation failed, continuing without knowledge",
                conversation_id=conversation_id,
                code=e.code,
                error=e.message,
            )
            return []

        return result.activated_entries

    def estimate_tokens(self, messages: List[Dict[str, str]]) -> int:
        return sum(math.ceil(len(m["content"]) / 4) + MESSAGE_OVERHEAD_TOKENS for m in messages)
