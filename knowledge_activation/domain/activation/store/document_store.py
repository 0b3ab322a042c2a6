from typing import Dict, List, Any, Optional, Protocol, runtime_checkable
import asyncio
import uuid
from pydantic import BaseModel, Field


class FindResult(BaseModel):
    """Documents returned by a store query"""
    docs: List[Dict[str, Any]] = Field(default_factory=list)
    total_docs: int = 0


class CreateResult(BaseModel):
    """Identifier of a created document"""
    id: str


@runtime_checkable
class DocumentStore(Protocol):
    """Persistence boundary: knowledge entries in, activation logs out"""

    async def find(self, collection: str, where: Dict[str, Any], limit: int) -> FindResult:
        ...

    async def create(self, collection: str, data: Dict[str, Any]) -> CreateResult:
        ...


class InMemoryDocumentStore:
    """Document store held in process memory

    `where` is an equality filter on top-level fields, e.g. {"user": "42"}.
    Values are compared as strings so numeric and string ids match.
    """

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.collections: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(doc) for doc in docs] for name, docs in (collections or {}).items()
        }
        self._lock = asyncio.Lock()

    async def find(self, collection: str, where: Dict[str, Any], limit: int) -> FindResult:
        async with self._lock:
            docs = [
                dict(doc) for doc in self.collections.get(collection, [])
                if self._matches(doc, where)
            ]
        return FindResult(docs=docs[:limit], total_docs=len(docs))

    async def create(self, collection: str, data: Dict[str, Any]) -> CreateResult:
        async with self._lock:
            doc = dict(data)
            doc.setdefault("id", uuid.uuid4().hex)
            self.collections.setdefault(collection, []).append(doc)
            return CreateResult(id=str(doc["id"]))

    async def all(self, collection: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(doc) for doc in self.collections.get(collection, [])]

    def _matches(self, doc: Dict[str, Any], where: Dict[str, Any]) -> bool:
        for key, expected in (where or {}).items():
            actual = doc.get(key)
            if isinstance(actual, dict):
                actual = actual.get("id")
            if actual is None or str(actual) != str(expected):
                return False
        return True
