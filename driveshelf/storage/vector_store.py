"""
ChromaDB vector store for semantic search over the knowledge base.

Stores text file chunks as embeddings so the assistant layer can retrieve
relevant notes and extracted PDF sources. The record store keeps it in step
with local mutations (index on write, drop on delete, re-key on rename).

Collections:
  - file_chunks: paragraph-packed chunks of indexable files, keyed by file path
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

from driveshelf.config.settings import settings
from driveshelf.storage import paths

logger = logging.getLogger(__name__)


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 200) -> list[str]:
    """
    Pack paragraphs into chunks of at most ``max_chunk_size`` characters.

    A single paragraph longer than the limit is hard-cut; the remainder keeps
    ``overlap`` characters of context from the cut chunk.
    """
    if not text:
        return []
    if not 0 <= overlap < max_chunk_size:
        raise ValueError(f"overlap ({overlap}) must be smaller than max_chunk_size ({max_chunk_size})")

    chunks: list[str] = []
    current = ""
    for para in text.replace("\r\n", "\n").split("\n\n"):
        para = para.strip("\n")
        if len(current) + len(para) <= max_chunk_size:
            current = f"{current}\n\n{para}" if current else para
            continue
        if current:
            chunks.append(current)
        current = para
        while len(current) > max_chunk_size:
            chunks.append(current[:max_chunk_size])
            current = current[max_chunk_size - overlap:]
    if current.strip():
        chunks.append(current)
    return chunks


class VectorStore:
    """ChromaDB-backed chunk index keyed by virtual file path."""

    CHUNKS_COLLECTION = "file_chunks"

    def __init__(self, persist_dir: Optional[Path] = None, client=None):
        self._chunk_size = settings.index_chunk_size
        self._overlap = settings.index_chunk_overlap
        try:
            if client is None:
                import chromadb
                from chromadb.config import Settings as ChromaSettings
                persist = Path(persist_dir or settings.chroma_dir)
                persist.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(
                    path=str(persist),
                    settings=ChromaSettings(anonymized_telemetry=False),
                )
            self._client = client
            self._chunks = self._client.get_or_create_collection(
                name=self.CHUNKS_COLLECTION,
                metadata={"hnsw:space": "cosine"},
            )
            self._available = True
            logger.info("VectorStore initialized: %d chunks", self._chunks.count())
        except Exception as e:
            logger.warning("ChromaDB unavailable, semantic index disabled: %s", e)
            self._client = None
            self._chunks = None
            self._available = False

    @property
    def available(self) -> bool:
        return self._available

    @staticmethod
    def _chunk_id(path: str, index: int) -> str:
        digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:16]
        return f"{digest}_{index}"

    def index_file(self, path: str, text: str) -> int:
        """Replace all chunks of ``path`` with a fresh chunking of ``text``."""
        if not self._available:
            return 0
        self.remove_file(path)
        chunks = chunk_text(text, self._chunk_size, self._overlap)
        if not chunks:
            return 0
        self._chunks.upsert(
            ids=[self._chunk_id(path, i) for i in range(len(chunks))],
            documents=chunks,
            metadatas=[{"file_path": path, "chunk": i} for i in range(len(chunks))],
        )
        logger.info("Indexed %s (%d chunks)", path, len(chunks))
        return len(chunks)

    def remove_file(self, path: str) -> None:
        if not self._available:
            return
        existing = self._chunks.get(where={"file_path": path})
        if existing["ids"]:
            self._chunks.delete(ids=existing["ids"])

    def rename_file(self, old_path: str, new_path: str) -> None:
        """Re-key chunks after a move without re-embedding from the record."""
        if not self._available:
            return
        existing = self._chunks.get(
            where={"file_path": old_path},
            include=["documents", "metadatas"],
        )
        if not existing["ids"]:
            return
        documents = existing["documents"]
        order = [m.get("chunk", i) for i, m in enumerate(existing["metadatas"])]
        self._chunks.delete(ids=existing["ids"])
        self._chunks.upsert(
            ids=[self._chunk_id(new_path, i) for i in order],
            documents=documents,
            metadatas=[{"file_path": new_path, "chunk": i} for i in order],
        )

    def clear(self) -> None:
        if not self._available:
            return
        self._client.delete_collection(self.CHUNKS_COLLECTION)
        self._chunks = self._client.get_or_create_collection(
            name=self.CHUNKS_COLLECTION,
            metadata={"hnsw:space": "cosine"},
        )

    def search(self, query: str, n_results: int = 8) -> list[dict]:
        """Semantic search across indexed chunks."""
        if not self._available or not self._chunks.count():
            return []
        results = self._chunks.query(
            query_texts=[query],
            n_results=min(n_results, self._chunks.count()),
            include=["documents", "metadatas", "distances"],
        )
        formatted = []
        if not results["documents"]:
            return formatted
        for doc, meta, dist in zip(
            results["documents"][0],
            results["metadatas"][0],
            results["distances"][0],
        ):
            formatted.append({
                "text": doc,
                "source": paths.display_name(meta.get("file_path", "")),
                "relevance": round(1.0 - dist, 3),
                **meta,
            })
        return formatted

    def stats(self) -> dict:
        if not self._available:
            return {"chunks_count": 0, "available": False}
        return {"chunks_count": self._chunks.count(), "available": True}


# Lazy singleton, initialized on first access
_vector_store_instance: Optional[VectorStore] = None


def _get_vector_store() -> VectorStore:
    global _vector_store_instance
    if _vector_store_instance is None:
        _vector_store_instance = VectorStore()
    return _vector_store_instance


class _VectorStoreProxy:
    """Proxy that lazily initializes VectorStore on first attribute access."""

    def __getattr__(self, name):
        return getattr(_get_vector_store(), name)


vector_store = _VectorStoreProxy()
