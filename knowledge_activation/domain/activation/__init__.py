# This module decides which knowledge goes into the prompt

# +---------------------+   +---------------------+   +---------------------+
# |       Keyword       |   |       Vector        |   |      Constant       |
# |---------------------|   |---------------------|   |---------------------|
# | primary x2 + second |   | embed recent turns  |   | always on           |
# | AND_ANY / AND_ALL   |   | cosine >= threshold |   | score 100           |
# | NOT_ALL / NOT_ANY   |   | score = sim x 100   |   |                     |
# +---------------------+   +---------------------+   +---------------------+
#            |                         |                         |
#            v                         v                         v
# +-------------------------------------------------------------------------+
# | merge (keyword wins, +0.5 x vector)  ->  sticky carry-over              |
# | ->  bot/persona filter  ->  delay / cooldown / sticky  ->  probability  |
# | ->  groups  ->  token budget (min_activations floor)                    |
# +-------------------------------------------------------------------------+
#            |
#            v
#   [PromptBuilder: system prompt positions + at_depth messages]

from .activation_engine import ActivationEngine, activate_knowledge, create_activation_engine
from .budget_manager import BudgetManager, check_budget_fit, create_budget_manager
from .errors import (
    ACTIVATION_FAILED,
    STORE_REQUIRED,
    ActivationError,
    BudgetExceededError,
    KeywordMatchError,
    VectorSearchError,
)
from .keyword_matcher import KeywordMatcher, create_keyword_matcher, match_keywords
from .prompt_builder import PromptBuilder, create_prompt_builder, insert_knowledge_into_prompt
from .vector_retriever import VectorRetriever, create_vector_retriever, search_vectors

__all__ = [
    "ActivationEngine",
    "activate_knowledge",
    "create_activation_engine",
    "BudgetManager",
    "check_budget_fit",
    "create_budget_manager",
    "ACTIVATION_FAILED",
    "STORE_REQUIRED",
    "ActivationError",
    "BudgetExceededError",
    "KeywordMatchError",
    "VectorSearchError",
    "KeywordMatcher",
    "create_keyword_matcher",
    "match_keywords",
    "PromptBuilder",
    "create_prompt_builder",
    "insert_knowledge_into_prompt",
    "VectorRetriever",
    "create_vector_retriever",
    "search_vectors",
]
