"""
Tests for vector retrieval: thresholding, index order, duplicate chunks and failures.

Run: python -m pytest tests/test_vector_retriever.py -v
"""

from unittest import IsolatedAsyncioTestCase, TestCase

from knowledge_activation.domain.models.activation import VectorSearchOptions
from knowledge_activation.domain.activation.errors import VectorSearchError
from knowledge_activation.domain.activation.store.vector_store import (
    HashingEmbedder,
    InMemoryVectorIndex,
    cosine_similarity,
)
from knowledge_activation.domain.activation.vector_retriever import VectorRetriever, search_vectors

from factories import FakeEmbedder, FakeVectorIndex, bot_msg, user_msg


class TestRetrieveRelevant(IsolatedAsyncioTestCase):

    def setUp(self):
        self.retriever = VectorRetriever()
        self.options = VectorSearchOptions(similarity_threshold=0.7, max_results=5)

    async def test_threshold_filters_low_scores(self):
        index = FakeVectorIndex([("a", 0.9), ("b", 0.71), ("c", 0.5)])
        results = await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), index)

        self.assertEqual([r.entry_id for r in results], ["a", "b"])

    async def test_threshold_is_inclusive(self):
        index = FakeVectorIndex([("a", 0.7)])
        results = await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), index)

        self.assertEqual(len(results), 1)

    async def test_index_order_is_preserved(self):
        index = FakeVectorIndex([("b", 0.8), ("a", 0.95)])
        results = await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), index)

        self.assertEqual([r.entry_id for r in results], ["b", "a"])

    async def test_duplicate_chunks_keep_first(self):
        index = FakeVectorIndex([("a", 0.9), ("b", 0.8), ("a", 0.85)])
        results = await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), index)

        self.assertEqual([r.entry_id for r in results], ["a", "b"])
        self.assertEqual(results[0].similarity, 0.9)
        self.assertEqual(results[0].chunk_index, 0)
        self.assertEqual(results[0].chunk_text, "chunk of a")

    async def test_over_fetches_and_truncates(self):
        options = VectorSearchOptions(similarity_threshold=0.1, max_results=2, filters={"user_id": "u1"})
        index = FakeVectorIndex([("a", 0.9), ("b", 0.8), ("c", 0.7)])
        results = await self.retriever.retrieve_relevant("query", options, FakeEmbedder(), index)

        self.assertEqual(len(results), 2)
        self.assertEqual(index.queries[0]["top_k"], 4)
        self.assertEqual(index.queries[0]["filter"], {"user_id": "u1"})

    async def test_missing_embedder_raises(self):
        with self.assertRaises(VectorSearchError):
            await self.retriever.retrieve_relevant("query", self.options, None, FakeVectorIndex())

    async def test_missing_index_raises(self):
        with self.assertRaises(VectorSearchError):
            await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), None)

    async def test_embedding_failure_raises_typed_error(self):
        with self.assertRaises(VectorSearchError) as ctx:
            await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(fail=True), FakeVectorIndex())
        self.assertEqual(ctx.exception.code, "VECTOR_SEARCH_ERROR")
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    async def test_index_failure_raises_typed_error(self):
        with self.assertRaises(VectorSearchError):
            await self.retriever.retrieve_relevant("query", self.options, FakeEmbedder(), FakeVectorIndex(fail=True))

    async def test_batch_retrieve_maps_failures_to_empty(self):
        index = FakeVectorIndex([("a", 0.9)])
        ok = await self.retriever.batch_retrieve(["q1", "q2"], self.options, FakeEmbedder(), index)
        failed = await self.retriever.batch_retrieve(["q1"], self.options, FakeEmbedder(), FakeVectorIndex(fail=True))

        self.assertEqual([r.entry_id for r in ok["q1"]], ["a"])
        self.assertEqual([r.entry_id for r in ok["q2"]], ["a"])
        self.assertEqual(failed, {"q1": []})

    async def test_with_local_embedder_and_index(self):
        embedder = HashingEmbedder()
        index = InMemoryVectorIndex()
        await index.index_text(embedder, "dragons", "dragons breathe fire over the mountains", user_id="u1")
        await index.index_text(embedder, "taxes", "quarterly tax filing deadlines", user_id="u1")
        await index.index_text(embedder, "other", "dragons breathe fire over the mountains", user_id="u2")

        options = VectorSearchOptions(similarity_threshold=0.5, max_results=5, filters={"user_id": "u1"})
        results = await search_vectors("dragons breathe fire over the mountains", options, embedder, index)

        self.assertEqual([r.entry_id for r in results], ["dragons"])
        self.assertAlmostEqual(results[0].similarity, 1.0, places=6)


class TestQueryText(TestCase):

    def test_last_two_messages_joined_with_space(self):
        retriever = VectorRetriever()
        messages = [user_msg("one"), bot_msg("two"), user_msg("three")]

        self.assertEqual(retriever.build_query_text(messages), "two three")

    def test_cosine_similarity(self):
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [1.0, 0.0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [0.0, 1.0]), 0.0)
        self.assertEqual(cosine_similarity([], [1.0]), 0.0)
