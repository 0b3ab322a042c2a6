from typing import List, Sequence
import re
import structlog

from knowledge_activation.domain.models.knowledge import (
    ConversationMessage,
    KeywordsLogic,
    KnowledgeEntry,
    MessageRole,
)
from knowledge_activation.domain.models.activation import KeywordMatchResult, ScanConfig
from .errors import KeywordMatchError

logger = structlog.get_logger(__name__)

PRIMARY_WEIGHT = 2
SECONDARY_WEIGHT = 1


class KeywordMatcher:
    """Matches an entry's keywords against recent conversation turns"""

    def match_entry(
        self,
        entry: KnowledgeEntry,
        messages: Sequence[ConversationMessage],
        scan_config: ScanConfig,
    ) -> KeywordMatchResult:
        """Match one entry against messages and apply its selective logic"""

        settings = entry.activation_settings
        primary_keys = list(settings.primary_keys)
        secondary_keys = list(settings.secondary_keys)

        # Entries without keywords never activate through this path
        if not primary_keys and not secondary_keys:
            return KeywordMatchResult()

        try:
            search_text = self.build_search_text(messages, scan_config)

            primary_matches = self._find_matches(search_text, primary_keys, settings.case_sensitive,
                                                 settings.match_whole_words, settings.use_regex)
            secondary_matches = self._find_matches(search_text, secondary_keys, settings.case_sensitive,
                                                   settings.match_whole_words, settings.use_regex)

            matched = self.apply_selective_logic(
                primary_matches,
                secondary_matches,
                primary_keys,
                secondary_keys,
                settings.keywords_logic,
            )
        except Exception as e:
            raise KeywordMatchError(
                f"Failed to match keywords for entry {entry.id}",
                {"entry_id": entry.id, "error": str(e)},
            ) from e

        return KeywordMatchResult(
            matched=matched,
            score=len(primary_matches) * PRIMARY_WEIGHT + len(secondary_matches) * SECONDARY_WEIGHT,
            matched_keywords=primary_matches + secondary_matches,
            primary_matches=primary_matches,
            secondary_matches=secondary_matches,
        )

    def build_search_text(self, messages: Sequence[ConversationMessage], scan_config: ScanConfig) -> str:
        """Join the last `scan_depth` messages whose role is enabled"""

        if scan_config.scan_depth <= 0:
            return ""

        enabled_roles = set()
        if scan_config.match_in_user_messages:
            enabled_roles.add(MessageRole.USER)
        if scan_config.match_in_bot_messages:
            enabled_roles.add(MessageRole.ASSISTANT)
        if scan_config.match_in_system_prompts:
            enabled_roles.add(MessageRole.SYSTEM)

        parts = [
            message.content or ""
            for message in list(messages)[-scan_config.scan_depth:]
            if message.role in enabled_roles
        ]
        return "\n".join(parts)

    def _find_matches(
        self,
        text: str,
        keywords: List[str],
        case_sensitive: bool,
        whole_words: bool,
        use_regex: bool,
    ) -> List[str]:
        return [
            keyword for keyword in keywords
            if self.match_keyword(text, keyword, case_sensitive, whole_words, use_regex)
        ]

    def match_keyword(
        self,
        text: str,
        keyword: str,
        case_sensitive: bool = False,
        whole_words: bool = False,
        use_regex: bool = False,
    ) -> bool:
        """Test a single keyword; an invalid pattern counts as no match"""

        flags = 0 if case_sensitive else re.IGNORECASE

        if use_regex:
            try:
                return re.search(keyword, text, flags) is not None
            except re.error as e:
                logger.warning("Invalid keyword pattern", keyword=keyword, error=str(e))
                return False

        if whole_words:
            return re.search(rf"\b{re.escape(keyword)}\b", text, flags) is not None

        if case_sensitive:
            return keyword in text
        return keyword.lower() in text.lower()

    def apply_selective_logic(
        self,
        primary_matches: List[str],
        secondary_matches: List[str],
        primary_keys: List[str],
        secondary_keys: List[str],
        logic: KeywordsLogic,
    ) -> bool:
        """Decide pass/fail from the primary and secondary match sets"""

        if logic == KeywordsLogic.AND_ANY:
            return bool(primary_matches) or bool(secondary_matches)

        if logic == KeywordsLogic.AND_ALL:
            # An empty list is vacuously satisfied
            all_primary = not primary_keys or len(primary_matches) == len(primary_keys)
            all_secondary = not secondary_keys or len(secondary_matches) == len(secondary_keys)
            return all_primary and all_secondary

        if logic == KeywordsLogic.NOT_ALL:
            # Only a complete match on two non-empty lists excludes
            all_primary = bool(primary_keys) and len(primary_matches) == len(primary_keys)
            all_secondary = bool(secondary_keys) and len(secondary_matches) == len(secondary_keys)
            return not (all_primary and all_secondary)

        if logic == KeywordsLogic.NOT_ANY:
            return not primary_matches and not secondary_matches

        return False

    def calculate_score(self, result: KeywordMatchResult) -> int:
        """Primary matches are worth 2 points, secondary 1"""
        return len(result.primary_matches) * PRIMARY_WEIGHT + len(result.secondary_matches) * SECONDARY_WEIGHT


def create_keyword_matcher() -> KeywordMatcher:
    return KeywordMatcher()


def match_keywords(
    entry: KnowledgeEntry,
    messages: Sequence[ConversationMessage],
    scan_config: ScanConfig,
) -> KeywordMatchResult:
    return KeywordMatcher().match_entry(entry, messages, scan_config)
