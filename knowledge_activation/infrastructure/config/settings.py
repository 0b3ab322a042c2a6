"""
Environment-driven settings for the activation engine.
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field

from knowledge_activation.domain.models.activation import BudgetConfig, VectorSearchOptions


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "json"
    service_name: str = "knowledge-activation"


class VectorSettings(BaseModel):
    """Defaults for the engine's vector lookup"""
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_results: int = Field(default=20, ge=1)
    query_window: int = Field(default=2, ge=1, description="Recent messages joined into the query")

    def search_options(self, user_id: Optional[str]) -> VectorSearchOptions:
        filters = {"user_id": user_id} if user_id else {}
        return VectorSearchOptions(
            similarity_threshold=self.similarity_threshold,
            max_results=self.max_results,
            filters=filters,
        )


class StateSettings(BaseModel):
    ttl_seconds: float = Field(default=21600, gt=0, description="Idle time before a conversation's state expires")
    max_conversations: int = Field(default=10_000, ge=1)


class StoreSettings(BaseModel):
    knowledge_collection: str = "knowledge"
    activation_log_collection: str = "knowledgeActivationLog"
    entry_fetch_limit: int = Field(default=1000, ge=1)


class Settings(BaseModel):
    """Main application settings"""
    environment: str = "development"
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    vector: VectorSettings = Field(default_factory=VectorSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)


def load_settings() -> Settings:
    """Load settings from KA_* environment variables with defaults"""

    logging_settings = LoggingSettings(level=os.getenv('KA_LOG_LEVEL', 'INFO'),
                                       format=os.getenv('KA_LOG_FORMAT', 'json'),
                                       service_name=os.getenv('KA_SERVICE_NAME', 'knowledge-activation'))

    vector_settings = VectorSettings(similarity_threshold=float(os.getenv('KA_VECTOR_SIMILARITY_THRESHOLD', '0.7')),
                                     max_results=int(os.getenv('KA_VECTOR_MAX_RESULTS', '20')),
                                     query_window=int(os.getenv('KA_VECTOR_QUERY_WINDOW', '2')))

    state_settings = StateSettings(ttl_seconds=float(os.getenv('KA_STATE_TTL_SECONDS', '21600')),
                                   max_conversations=int(os.getenv('KA_STATE_MAX_CONVERSATIONS', '10000')))

    store_settings = StoreSettings(knowledge_collection=os.getenv('KA_KNOWLEDGE_COLLECTION', 'knowledge'),
                                   activation_log_collection=os.getenv('KA_ACTIVATION_LOG_COLLECTION',
                                                                       'knowledgeActivationLog'),
                                   entry_fetch_limit=int(os.getenv('KA_ENTRY_FETCH_LIMIT', '1000')))

    # Defaults match the chat pipeline's budget
    budget = BudgetConfig(max_context_tokens=int(os.getenv('KA_MAX_CONTEXT_TOKENS', '8000')),
                          budget_percentage=float(os.getenv('KA_BUDGET_PERCENTAGE', '25')),
                          budget_cap_tokens=int(os.getenv('KA_BUDGET_CAP_TOKENS', '2000')),
                          reserved_for_conversation=int(os.getenv('KA_RESERVED_FOR_CONVERSATION', '4000')),
                          min_activations=int(os.getenv('KA_MIN_ACTIVATIONS', '0')))

    return Settings(environment=os.getenv('ENVIRONMENT', 'development'),
                    logging=logging_settings,
                    vector=vector_settings,
                    state=state_settings,
                    store=store_settings,
                    budget=budget)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide default settings"""
    return load_settings()
