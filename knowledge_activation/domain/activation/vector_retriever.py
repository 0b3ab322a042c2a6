from typing import Dict, List, Optional, Sequence
import asyncio
import structlog

from knowledge_activation.domain.models.knowledge import ConversationMessage
from knowledge_activation.domain.models.activation import VectorSearchOptions, VectorSearchResult
from .errors import VectorSearchError
from .store.vector_store import EmbeddingService, VectorIndex

logger = structlog.get_logger(__name__)

QUERY_WINDOW = 2


class VectorRetriever:
    """Embeds a query and looks up similar knowledge chunks"""

    def build_query_text(self, messages: Sequence[ConversationMessage], window: int = QUERY_WINDOW) -> str:
        """Join the text of the last `window` messages, regardless of role"""
        if window <= 0:
            return ""
        return " ".join(m.content or "" for m in list(messages)[-window:])

    async def retrieve_relevant(
        self,
        query_text: str,
        options: VectorSearchOptions,
        embedder: Optional[EmbeddingService],
        vector_index: Optional[VectorIndex],
    ) -> List[VectorSearchResult]:
        """Return hits at or above the similarity threshold, in index order"""

        embedding = await self._generate_embedding(query_text, embedder)
        results = await self._search_index(embedding, options, vector_index)

        filtered = [r for r in results if r.similarity >= options.similarity_threshold]
        return filtered[:options.max_results]

    async def _generate_embedding(self, text: str, embedder: Optional[EmbeddingService]) -> List[float]:
        if embedder is None:
            raise VectorSearchError("Embedding service not available")

        try:
            embedding = await embedder.embed(text)
        except Exception as e:
            raise VectorSearchError("Failed to generate embedding", {"error": str(e)}) from e

        if not embedding:
            raise VectorSearchError("No embedding returned for query")
        return embedding

    async def _search_index(
        self,
        embedding: List[float],
        options: VectorSearchOptions,
        vector_index: Optional[VectorIndex],
    ) -> List[VectorSearchResult]:
        if vector_index is None:
            raise VectorSearchError("Vector index not available")

        try:
            # Over-fetch to leave room for threshold and duplicate filtering
            matches = await vector_index.query(
                embedding,
                top_k=options.max_results * 2,
                filter=options.filters or None,
            )
        except Exception as e:
            raise VectorSearchError("Vector index query failed", {"error": str(e)}) from e

        results: List[VectorSearchResult] = []
        seen = set()
        for match in matches or []:
            metadata = match.metadata or {}
            entry_id = str(metadata.get("source_id") or match.id)
            # Several chunks of one entry can match; the first is the best ranked
            if entry_id in seen:
                continue
            seen.add(entry_id)
            results.append(VectorSearchResult(
                entry_id=entry_id,
                similarity=match.score or 0.0,
                chunk_index=metadata.get("chunk_index") or 0,
                chunk_text=metadata.get("chunk_text") or "",
            ))
        return results

    async def batch_retrieve(
        self,
        queries: List[str],
        options: VectorSearchOptions,
        embedder: Optional[EmbeddingService],
        vector_index: Optional[VectorIndex],
    ) -> Dict[str, List[VectorSearchResult]]:
        """Run several queries concurrently; a failed query yields an empty list"""

        async def run(query: str) -> List[VectorSearchResult]:
            try:
                return await self.retrieve_relevant(query, options, embedder, vector_index)
            except VectorSearchError as e:
                logger.warning("Batch retrieve failed", query=query[:50], error=str(e))
                return []

        results = await asyncio.gather(*(run(q) for q in queries))
        return dict(zip(queries, results))


def create_vector_retriever() -> VectorRetriever:
    return VectorRetriever()


async def search_vectors(
    query_text: str,
    options: VectorSearchOptions,
    embedder: EmbeddingService,
    vector_index: VectorIndex,
) -> List[VectorSearchResult]:
    return await VectorRetriever().retrieve_relevant(query_text, options, embedder, vector_index)
