from typing import Dict, List, Optional, Sequence
import structlog

from knowledge_activation.domain.models.knowledge import BotProfile, PersonaProfile, Position
from knowledge_activation.domain.models.activation import ActivatedEntry
from .position_strategies import POSITION_ORDER, PositionStrategy, default_strategies

logger = structlog.get_logger(__name__)

ENTRY_SEPARATOR = "\n\n"


class PromptBuilder:
    """Places activated entries into the system prompt and the message list"""

    def __init__(self, strategies: Optional[Dict[Position, PositionStrategy]] = None):
        self.strategies = default_strategies()
        if strategies:
            self.strategies.update(strategies)

    def build_prompt(
        self,
        base_prompt: str,
        activated_entries: Sequence[ActivatedEntry],
        bot: Optional[BotProfile] = None,
        persona: Optional[PersonaProfile] = None,
    ) -> str:
        """Insert each position group into the prompt, in a fixed position order"""

        grouped = self.group_by_position(activated_entries)
        prompt = base_prompt

        for position in POSITION_ORDER:
            entries = grouped.get(position)
            if not entries:
                continue
            block = ENTRY_SEPARATOR.join(self.format_entry(e) for e in entries)
            prompt = self.strategies[position].insert(prompt, block, bot)

        logger.debug(
            "Built prompt",
            entries=len(activated_entries),
            positions=[p.value for p in grouped],
            persona=persona.name if persona else None,
        )
        return prompt

    def group_by_position(self, entries: Sequence[ActivatedEntry]) -> Dict[Position, List[ActivatedEntry]]:
        """Group entries by position, each group ascending by order"""

        groups: Dict[Position, List[ActivatedEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.position, []).append(entry)

        for position_entries in groups.values():
            position_entries.sort(key=lambda e: e.order)

        return groups

    def format_entry(self, activated_entry: ActivatedEntry) -> str:
        """Entry content, prefixed with its first tag when it has one"""

        entry = activated_entry.entry
        if entry.tags:
            return f"[{entry.tags[0]}]\n{entry.content}"
        return entry.content

    def build_messages_with_depth_entries(
        self,
        messages: Sequence[Dict[str, str]],
        activated_entries: Sequence[ActivatedEntry],
    ) -> List[Dict[str, str]]:
        """Splice at_depth entries into a message list, `depth` messages from the end"""

        depth_entries = [e for e in activated_entries if e.position == Position.AT_DEPTH]
        new_messages = list(messages)
        if not depth_entries:
            return new_messages

        for entry in sorted(depth_entries, key=lambda e: e.depth):
            insert_index = max(0, len(new_messages) - entry.depth)
            new_messages.insert(insert_index, {
                "role": entry.role.value,
                "content": self.format_entry(entry),
            })

        return new_messages

    def get_activation_debug_info(self, activated_entries: Sequence[ActivatedEntry]) -> str:
        grouped = self.group_by_position(activated_entries)
        lines = [
            "=== Knowledge Activation Debug ===",
            f"Total Entries: {len(activated_entries)}",
            "",
        ]

        for position, entries in grouped.items():
            lines.append(f"{position.value.upper()} ({len(entries)}):")
            for entry in entries:
                lines.append(
                    f"  - [{entry.activation_method.value}] Score: {entry.activation_score:.2f}"
                    f" | Order: {entry.order} | Tokens: {entry.token_cost}"
                )
                if entry.matched_keywords:
                    lines.append(f"    Keywords: {', '.join(entry.matched_keywords)}")
                if entry.vector_similarity:
                    lines.append(f"    Similarity: {entry.vector_similarity * 100:.1f}%")
            lines.append("")

        return "\n".join(lines)


def create_prompt_builder() -> PromptBuilder:
    return PromptBuilder()


def insert_knowledge_into_prompt(
    base_prompt: str,
    activated_entries: Sequence[ActivatedEntry],
    bot: Optional[BotProfile] = None,
    persona: Optional[PersonaProfile] = None,
) -> str:
    return PromptBuilder().build_prompt(base_prompt, activated_entries, bot, persona)
