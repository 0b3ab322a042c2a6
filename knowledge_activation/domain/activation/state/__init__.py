# Conversation state = what one activation call leaves behind for the next one.

# It is "the NOW" of each entry's timed effects, keyed by entry id:

# When the entry last made it into a prompt

# Until which message index it stays forced in (sticky)

# Until which message index it is suppressed (cooldown)

# Delay is entry configuration, not state: it is read from the entry each call.

from .conversation_state import (
    ConversationState,
    ConversationStateStore,
    EntryState,
    InMemoryConversationStateStore,
)

__all__ = [
    "ConversationState",
    "ConversationStateStore",
    "EntryState",
    "InMemoryConversationStateStore",
]
