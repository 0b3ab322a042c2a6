from .document_store import CreateResult, DocumentStore, FindResult, InMemoryDocumentStore
from .vector_store import (
    EmbeddingService,
    HashingEmbedder,
    InMemoryVectorIndex,
    VectorIndex,
    VectorMatch,
    cosine_similarity,
)

__all__ = [
    "CreateResult",
    "DocumentStore",
    "FindResult",
    "InMemoryDocumentStore",
    "EmbeddingService",
    "HashingEmbedder",
    "InMemoryVectorIndex",
    "VectorIndex",
    "VectorMatch",
    "cosine_similarity",
]
