from typing import Dict, List, Any, Optional, Protocol, runtime_checkable
import asyncio
import hashlib
import math
import re
from pydantic import BaseModel, Field

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+", re.UNICODE)


class VectorMatch(BaseModel):
    """A nearest-neighbour hit; metadata carries source_id, chunk_index and chunk_text"""
    id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class EmbeddingService(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


@runtime_checkable
class VectorIndex(Protocol):
    async def query(
        self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None
    ) -> List[VectorMatch]:
        ...


class HashingEmbedder:
    """Local embedder based on stable feature hashing

    Deterministic across runs (sha256 rather than the salted builtin hash) and
    L2-normalised, so a dot product is the cosine similarity.
    """

    def __init__(self, dim: int = 256):
        self.dim = dim

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % self.dim] += 1.0

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0.0:
            return vector
        return [v / norm for v in vector]


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if not a or not b:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Brute-force cosine index over chunk vectors"""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record_id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        async with self._lock:
            self.records[record_id] = {"vector": vector, "metadata": dict(metadata)}

    async def index_text(
        self,
        embedder: EmbeddingService,
        source_id: str,
        text: str,
        user_id: Optional[str] = None,
        chunk_index: int = 0,
    ) -> str:
        """Embed a chunk of an entry and store it under `<source_id>_<chunk_index>`"""

        record_id = f"{source_id}_{chunk_index}"
        metadata = {"source_id": str(source_id), "chunk_index": chunk_index, "chunk_text": text}
        if user_id is not None:
            metadata["user_id"] = str(user_id)
        await self.upsert(record_id, await embedder.embed(text), metadata)
        return record_id

    async def query(
        self, vector: List[float], top_k: int, filter: Optional[Dict[str, Any]] = None
    ) -> List[VectorMatch]:
        async with self._lock:
            matches = []
            for record_id, record in self.records.items():
                metadata = record["metadata"]
                if filter and any(str(metadata.get(k)) != str(v) for k, v in filter.items()):
                    continue
                matches.append(VectorMatch(
                    id=record_id,
                    score=cosine_similarity(vector, record["vector"]),
                    metadata=metadata,
                ))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]
