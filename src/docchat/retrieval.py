"""
Namespace-scoped retrieval against the vector index.

``retrieve`` returns two things: LangChain documents for answer synthesis and
an immutable ``RetrievalCapture`` of the full result, which the orchestrator
reads to build the source manifest. The capture is a snapshot; whatever
synthesis does to its own list never reaches the manifest.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple

from langchain_core.documents import Document

from .config import RETRIEVER_K
from .errors import RetrievalError
from .observability import get_logger

logger = get_logger(__name__)

_MISSING_NAMESPACE_HINTS = ("does not exist", "not found", "notfound")


@dataclass(frozen=True)
class RetrievedChunk:
    content: str
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_document(cls, doc: Document) -> "RetrievedChunk":
        metadata = dict(getattr(doc, "metadata", None) or {})
        return cls(content=str(getattr(doc, "page_content", "")), metadata=MappingProxyType(metadata))

    def to_document(self) -> Document:
        return Document(page_content=self.content, metadata=dict(self.metadata))


@dataclass(frozen=True)
class RetrievalCapture:
    namespace: str
    query: str
    chunks: tuple[RetrievedChunk, ...]
    elapsed_ms: float = 0.0

    def __len__(self) -> int:
        return len(self.chunks)


class RetrievalResult(NamedTuple):
    documents: list[Document]
    capture: RetrievalCapture


def _is_missing_namespace(exc: Exception) -> bool:
    text = f"{type(exc).__name__} {exc}".lower()
    return any(hint in text for hint in _MISSING_NAMESPACE_HINTS)


class RetrievalAdapter:
    """Runs one nearest-neighbour search per request, scoped to one namespace."""

    def __init__(self, vector_index: Any, k: int = RETRIEVER_K):
        self.vector_index = vector_index
        self.k = max(1, int(k))

    async def _open(self, namespace: str):
        try:
            # Opening a collection is a blocking client call.
            return await asyncio.to_thread(self.vector_index.store_for, namespace)
        except RetrievalError:
            raise
        except Exception as exc:
            if _is_missing_namespace(exc):
                raise RetrievalError(
                    f"Document namespace '{namespace}' does not exist.", status_code=404
                ) from exc
            if isinstance(exc, ValueError):
                raise RetrievalError(f"Invalid document namespace '{namespace}': {exc}") from exc
            raise RetrievalError(f"Vector index unavailable: {exc}") from exc

    async def retrieve(self, query: str, namespace: str) -> RetrievalResult:
        if not isinstance(namespace, str) or not namespace.strip():
            raise RetrievalError("A document namespace is required for retrieval.", status_code=400)

        start = time.perf_counter()
        store = await self._open(namespace)
        try:
            docs = await store.asimilarity_search(query, k=self.k)
        except Exception as exc:
            logger.error("retrieval_failed", namespace=namespace, error=str(exc))
            raise RetrievalError(f"Vector index search failed: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        chunks = tuple(RetrievedChunk.from_document(doc) for doc in docs or [])
        capture = RetrievalCapture(namespace=namespace, query=query, chunks=chunks, elapsed_ms=elapsed_ms)
        logger.info(
            "retrieval_complete",
            namespace=namespace,
            chunks=len(chunks),
            elapsed_ms=round(elapsed_ms, 2),
        )
        return RetrievalResult(documents=[chunk.to_document() for chunk in chunks], capture=capture)
