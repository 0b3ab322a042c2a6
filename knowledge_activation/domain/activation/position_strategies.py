from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Pattern
import re

from knowledge_activation.domain.models.knowledge import BotProfile, Position


def _splice(prompt: str, index: int, block: str) -> str:
    """Insert `block` as its own paragraph at `index`"""
    return prompt[:index] + "\n\n" + block + prompt[index:]


def _prepend(prompt: str, block: str) -> str:
    return f"{block}\n\n{prompt}"


def _append(prompt: str, block: str) -> str:
    return f"{prompt}\n\n{block}"


class PositionStrategy(ABC):
    """Finds the anchor for one insertion position and splices a block there"""

    position: Position

    @abstractmethod
    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        """Return `prompt` with `block` inserted"""
        pass


class SystemTopStrategy(PositionStrategy):
    position = Position.SYSTEM_TOP

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        return _prepend(prompt, block)


class SystemBottomStrategy(PositionStrategy):
    position = Position.SYSTEM_BOTTOM

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        return _append(prompt, block)


class BeforeCharacterStrategy(PositionStrategy):
    """Before the character card

    Anchors, in order: "Character: <name>", "Name: <name>", "<name>:".
    Falls back to after the first line, then to prepending.
    """

    position = Position.BEFORE_CHARACTER

    def _patterns(self, bot: Optional[BotProfile]) -> List[Pattern]:
        if bot is None or not bot.name:
            return []
        name = re.escape(bot.name)
        return [
            re.compile(rf"Character:\s*{name}", re.IGNORECASE),
            re.compile(rf"Name:\s*{name}", re.IGNORECASE),
            re.compile(rf"{name}:", re.IGNORECASE),
        ]

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        for pattern in self._patterns(bot):
            match = pattern.search(prompt)
            if match:
                return prompt[:match.start()] + block + "\n\n" + prompt[match.start():]

        first_line_break = prompt.find("\n")
        if first_line_break != -1:
            return _splice(prompt, first_line_break, block)

        return _prepend(prompt, block)


class AfterCharacterStrategy(PositionStrategy):
    """After the character card

    Anchors on the paragraph break before a "###" heading, a "---" rule or an
    examples section. Falls back to the second paragraph break, then the
    first, then appends.
    """

    position = Position.AFTER_CHARACTER

    patterns = [
        re.compile(r"\n\n(?=###)"),
        re.compile(r"\n\n(?=---)"),
        re.compile(r"\n\n(?=Example:|Examples:)", re.IGNORECASE),
        re.compile(r"\n\n(?=\[Example)", re.IGNORECASE),
    ]

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        for pattern in self.patterns:
            match = pattern.search(prompt)
            if match:
                return prompt[:match.end()] + block + "\n\n" + prompt[match.end():]

        first_break = prompt.find("\n\n")
        if first_break != -1:
            second_break = prompt.find("\n\n", first_break + 2)
            if second_break != -1:
                return _splice(prompt, second_break, block)
            return _splice(prompt, first_break, block)

        return _append(prompt, block)


class BeforeExamplesStrategy(PositionStrategy):
    """Before the first examples marker, else appended"""

    position = Position.BEFORE_EXAMPLES

    patterns = [
        re.compile(r"Example:|Examples:", re.IGNORECASE),
        re.compile(r"\[Example \d+\]", re.IGNORECASE),
        re.compile(r"###\s*Examples", re.IGNORECASE),
        re.compile(r"---\s*Examples", re.IGNORECASE),
    ]

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        for pattern in self.patterns:
            match = pattern.search(prompt)
            if match:
                return prompt[:match.start()] + block + "\n\n" + prompt[match.start():]
        return _append(prompt, block)


class AfterExamplesStrategy(PositionStrategy):
    """After the last numbered example, else appended"""

    position = Position.AFTER_EXAMPLES

    patterns = [
        re.compile(r"\[Example \d+\][^\[]*?(?=\n\n)", re.IGNORECASE),
        re.compile(r"Example \d+:[^\n]*(?:\n(?!\n).*)*", re.IGNORECASE),
    ]

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        last_example_end = -1
        for pattern in self.patterns:
            for match in pattern.finditer(prompt):
                last_example_end = max(last_example_end, match.end())

        if last_example_end != -1:
            return _splice(prompt, last_example_end, block)
        return _append(prompt, block)


class AtDepthStrategy(PositionStrategy):
    """at_depth entries go into the message list, not the prompt text"""

    position = Position.AT_DEPTH

    def insert(self, prompt: str, block: str, bot: Optional[BotProfile] = None) -> str:
        return prompt


def default_strategies() -> Dict[Position, PositionStrategy]:
    strategies = [
        SystemTopStrategy(),
        BeforeCharacterStrategy(),
        AfterCharacterStrategy(),
        BeforeExamplesStrategy(),
        AfterExamplesStrategy(),
        AtDepthStrategy(),
        SystemBottomStrategy(),
    ]
    return {s.position: s for s in strategies}


# Insertion order used when building a prompt
POSITION_ORDER = [
    Position.SYSTEM_TOP,
    Position.BEFORE_CHARACTER,
    Position.AFTER_CHARACTER,
    Position.BEFORE_EXAMPLES,
    Position.AFTER_EXAMPLES,
    Position.AT_DEPTH,
    Position.SYSTEM_BOTTOM,
]
