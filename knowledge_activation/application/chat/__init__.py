from .knowledge_context import KnowledgeContext, KnowledgeContextService

__all__ = ["KnowledgeContext", "KnowledgeContextService"]
