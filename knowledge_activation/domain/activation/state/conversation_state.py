from typing import Dict, Any, Callable, Optional, Protocol, runtime_checkable
from collections import OrderedDict
import asyncio
import time
import structlog
from pydantic import BaseModel, Field

from knowledge_activation.domain.models.knowledge import ActivationMethod

logger = structlog.get_logger(__name__)


class EntryState(BaseModel):
    """Timing state for one entry, measured in message indexes"""
    last_activated_at: Optional[int] = None
    sticky_until: Optional[int] = None
    cooldown_until: Optional[int] = None
    last_method: Optional[ActivationMethod] = None
    last_score: float = 0.0


class ConversationState(BaseModel):
    """Per-conversation timed-effect state"""
    conversation_id: str
    current_message_index: int = 0
    entry_states: Dict[str, EntryState] = Field(default_factory=dict)

    def entry_state(self, entry_id: str) -> EntryState:
        return self.entry_states.get(entry_id) or EntryState()

    def is_sticky(self, entry_id: str) -> bool:
        state = self.entry_states.get(entry_id)
        return bool(state and state.sticky_until is not None
                    and self.current_message_index <= state.sticky_until)


@runtime_checkable
class ConversationStateStore(Protocol):
    """Where conversation state lives between activation calls

    Implementations are single-writer per conversation. Two engines serving the
    same conversation concurrently can lose sticky/cooldown updates.
    """

    async def load(self, conversation_id: str, message_index: int) -> ConversationState:
        ...

    async def save(self, state: ConversationState) -> None:
        ...

    async def clear(self, conversation_id: str) -> None:
        ...


class InMemoryConversationStateStore:
    """Process-local state with idle expiry and an LRU cap"""

    def __init__(
        self,
        ttl_seconds: float = 6 * 3600,
        max_conversations: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_conversations = max_conversations
        self._clock = clock
        self.states: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def load(self, conversation_id: str, message_index: int) -> ConversationState:
        """Get or lazily create state, moved to the supplied message index"""

        async with self._lock:
            slot = self.states.get(conversation_id)

            if slot and self._clock() > slot["expires_at"]:
                logger.info("Conversation state expired", conversation_id=conversation_id)
                del self.states[conversation_id]
                slot = None

            if slot is None:
                state = ConversationState(conversation_id=conversation_id)
            else:
                state = slot["state"].model_copy(deep=True)

            state.current_message_index = message_index
            return state

    async def save(self, state: ConversationState) -> None:
        async with self._lock:
            self.states[state.conversation_id] = {
                "state": state.model_copy(deep=True),
                "expires_at": self._clock() + self.ttl_seconds,
            }
            self.states.move_to_end(state.conversation_id)

            while len(self.states) > self.max_conversations:
                evicted, _ = self.states.popitem(last=False)
                logger.info("Conversation state evicted", conversation_id=evicted)

    async def clear(self, conversation_id: str) -> None:
        async with self._lock:
            self.states.pop(conversation_id, None)

    async def clear_expired(self) -> int:
        """Drop expired conversations and return how many went"""

        async with self._lock:
            now = self._clock()
            expired = [cid for cid, slot in self.states.items() if now > slot["expires_at"]]
            for cid in expired:
                del self.states[cid]
            return len(expired)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            now = self._clock()
            active = sum(1 for slot in self.states.values() if now <= slot["expires_at"])
            return {
                "total_conversations": len(self.states),
                "active_conversations": active,
                "expired_conversations": len(self.states) - active,
            }
