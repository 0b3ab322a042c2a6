"""
Tests for prompt positions and at_depth message splicing.

Run: python -m pytest tests/test_prompt_builder.py -v
"""

from unittest import TestCase

from knowledge_activation.domain.models.knowledge import BotProfile, MessageRole, Position
from knowledge_activation.domain.activation.position_strategies import PositionStrategy
from knowledge_activation.domain.activation.prompt_builder import PromptBuilder, insert_knowledge_into_prompt

from factories import make_activated

CARD = (
    "You are roleplaying.\n"
    "Character: Aria\n"
    "A wandering bard.\n\n"
    "### Scenario\n"
    "A tavern at dusk.\n\n"
    "Examples:\n"
    "Example 1: Aria sings.\n\n"
    "Stay in character."
)
BOT = BotProfile(id=7, name="Aria")


class TestBuildPrompt(TestCase):

    def setUp(self):
        self.builder = PromptBuilder()

    def build(self, *entries, prompt=CARD, bot=BOT):
        return self.builder.build_prompt(prompt, list(entries), bot)

    def test_no_entries_leaves_prompt_unchanged(self):
        self.assertEqual(self.build(), CARD)

    def test_system_top_and_bottom(self):
        prompt = self.build(
            make_activated("top", position=Position.SYSTEM_TOP, content="TOP LORE"),
            make_activated("bottom", position=Position.SYSTEM_BOTTOM, content="BOTTOM LORE"),
        )
        self.assertTrue(prompt.startswith("TOP LORE\n\n"))
        self.assertTrue(prompt.endswith("\n\nBOTTOM LORE"))

    def test_before_character_anchors_on_character_line(self):
        prompt = self.build(make_activated("e", position=Position.BEFORE_CHARACTER, content="WORLD"))
        self.assertIn("WORLD\n\nCharacter: Aria", prompt)

    def test_before_character_falls_back_to_first_line(self):
        prompt = self.build(
            make_activated("e", position=Position.BEFORE_CHARACTER, content="WORLD"),
            prompt="Line one\nLine two",
            bot=None,
        )
        self.assertEqual(prompt, "Line one\n\nWORLD\nLine two")

    def test_after_character_anchors_before_heading(self):
        prompt = self.build(make_activated("e", position=Position.AFTER_CHARACTER, content="AFTER"))
        self.assertIn("A wandering bard.\n\nAFTER\n\n### Scenario", prompt)

    def test_after_character_without_breaks_appends(self):
        prompt = self.build(make_activated("e", position=Position.AFTER_CHARACTER, content="AFTER"),
                            prompt="single line")
        self.assertEqual(prompt, "single line\n\nAFTER")

    def test_before_examples(self):
        prompt = self.build(make_activated("e", position=Position.BEFORE_EXAMPLES, content="PRE"))
        self.assertIn("PRE\n\nExamples:", prompt)

    def test_after_examples(self):
        prompt = self.build(make_activated("e", position=Position.AFTER_EXAMPLES, content="POST"))
        self.assertIn("Example 1: Aria sings.\n\nPOST\n\nStay in character.", prompt)

    def test_order_within_position(self):
        prompt = self.build(
            make_activated("late", position=Position.SYSTEM_TOP, order=200, content="SECOND"),
            make_activated("early", position=Position.SYSTEM_TOP, order=10, content="FIRST"),
        )
        self.assertTrue(prompt.startswith("FIRST\n\nSECOND\n\n"))

    def test_tag_prefix(self):
        prompt = self.build(make_activated("e", position=Position.SYSTEM_TOP, content="Elves live long.",
                                           tags=["Elves", "Races"]))
        self.assertTrue(prompt.startswith("[Elves]\nElves live long."))

    def test_content_appears_once(self):
        entries = [
            make_activated(f"e{i}", position=position, content=f"UNIQUE-{position.value}")
            for i, position in enumerate(Position)
        ]
        prompt = self.build(*entries)

        for position in Position:
            expected = 0 if position == Position.AT_DEPTH else 1
            self.assertEqual(prompt.count(f"UNIQUE-{position.value}"), expected, position.value)

    def test_strategy_override(self):
        class Marker(PositionStrategy):
            position = Position.SYSTEM_TOP

            def insert(self, prompt, block, bot=None):
                return f"<<{block}>>{prompt}"

        builder = PromptBuilder(strategies={Position.SYSTEM_TOP: Marker()})
        prompt = builder.build_prompt("base", [make_activated("e", position=Position.SYSTEM_TOP, content="X")])

        self.assertEqual(prompt, "<<X>>base")

    def test_insert_knowledge_into_prompt_helper(self):
        prompt = insert_knowledge_into_prompt("base", [make_activated("e", content="X")])
        self.assertEqual(prompt, "base\n\nX")


class TestDepthEntries(TestCase):

    def setUp(self):
        self.builder = PromptBuilder()
        self.messages = [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_inserted_depth_from_end(self):
        entry = make_activated("e", position=Position.AT_DEPTH, depth=1, role=MessageRole.USER, content="NOTE")
        result = self.builder.build_messages_with_depth_entries(self.messages, [entry])

        self.assertEqual(result[2], {"role": "user", "content": "NOTE"})
        self.assertEqual(len(result), 4)
        self.assertEqual(len(self.messages), 3)

    def test_depth_beyond_history_goes_first(self):
        entry = make_activated("e", position=Position.AT_DEPTH, depth=10, content="NOTE")
        result = self.builder.build_messages_with_depth_entries(self.messages, [entry])

        self.assertEqual(result[0], {"role": "system", "content": "NOTE"})

    def test_depth_zero_appends(self):
        entry = make_activated("e", position=Position.AT_DEPTH, depth=0, content="NOTE")
        result = self.builder.build_messages_with_depth_entries(self.messages, [entry])

        self.assertEqual(result[-1]["content"], "NOTE")

    def test_other_positions_ignored(self):
        entry = make_activated("e", position=Position.SYSTEM_TOP, content="NOTE")
        self.assertEqual(self.builder.build_messages_with_depth_entries(self.messages, [entry]), self.messages)

    def test_debug_info(self):
        info = self.builder.get_activation_debug_info([
            make_activated("e", score=4, cost=12, position=Position.SYSTEM_TOP),
        ])
        self.assertIn("Total Entries: 1", info)
        self.assertIn("SYSTEM_TOP (1):", info)
        self.assertIn("[keyword] Score: 4.00 | Order: 100 | Tokens: 12", info)
