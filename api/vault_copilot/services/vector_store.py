"""
Local vector index of vault chunks.

LocalVectorStore keeps chunk documents and L2-normalized embeddings in
memory and persists them as JSON next to the vault. VectorStoreManager
owns the lazily-initialized store and rebuilds it from the vault on demand.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from vault_copilot.core.config import Settings
from vault_copilot.core.telemetry import get_tracer
from vault_copilot.services.chunking import chunk_note
from vault_copilot.services.embeddings import EmbeddingsManager
from vault_copilot.services.vault import Vault

logger = logging.getLogger(__name__)


@dataclass
class Document:
    """A retrievable chunk of a note."""

    page_content: str
    metadata: dict = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.metadata.get("title", "")

    @property
    def path(self) -> str:
        return self.metadata.get("path", "")


def _normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class LocalVectorStore:
    """In-memory cosine index over chunk embeddings."""

    def __init__(self, embedding_model: str = "") -> None:
        self.embedding_model = embedding_model
        self._documents: list[Document] = []
        self._vectors: np.ndarray | None = None

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def documents(self) -> list[Document]:
        return list(self._documents)

    def add(self, documents: list[Document], embeddings: list[list[float]]) -> None:
        if len(documents) != len(embeddings):
            raise ValueError("documents and embeddings must have the same length")
        if not documents:
            return
        vectors = _normalize(np.asarray(embeddings, dtype="float32"))
        self._vectors = vectors if self._vectors is None else np.vstack([self._vectors, vectors])
        self._documents.extend(documents)

    def similarity_search_by_vector(
        self, vector: list[float], k: int = 4
    ) -> list[tuple[Document, float]]:
        """Return up to `k` (document, cosine similarity) pairs, best first."""
        if self._vectors is None or not self._documents:
            return []
        query = _normalize(np.asarray(vector, dtype="float32"))
        scores = self._vectors @ query
        order = np.argsort(-scores, kind="stable")[:k]
        return [(self._documents[int(i)], float(scores[int(i)])) for i in order]

    def documents_for_titles(self, titles: set[str]) -> list[Document]:
        return [doc for doc in self._documents if doc.title in titles]

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        vectors = self._vectors.tolist() if self._vectors is not None else []
        payload = {
            "embedding_model": self.embedding_model,
            "documents": [
                {"page_content": d.page_content, "metadata": d.metadata, "embedding": v}
                for d, v in zip(self._documents, vectors)
            ],
        }
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f)

    @classmethod
    def load(cls, path: Path) -> "LocalVectorStore":
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        store = cls(payload.get("embedding_model", ""))
        entries = payload.get("documents", [])
        store.add(
            [Document(e["page_content"], e.get("metadata", {})) for e in entries],
            [e["embedding"] for e in entries],
        )
        return store


class VectorStoreManager:
    """Lazily-initialized access to the vault index."""

    def __init__(
        self,
        settings: Settings,
        vault: Vault,
        embeddings_manager: EmbeddingsManager,
    ) -> None:
        self._index_path = settings.index_path
        self.vault = vault
        self._embeddings_manager = embeddings_manager
        self._db: LocalVectorStore | None = None
        self._tracer = get_tracer()

    def get_embeddings_manager(self) -> EmbeddingsManager:
        return self._embeddings_manager

    def get_db(self) -> LocalVectorStore | None:
        """
        The loaded index, or None when it is not loaded yet or was built with
        another embedding model than the current one.
        """
        if self._db is None:
            return None
        embeddings = self._embeddings_manager.get_embeddings_api()
        if embeddings is not None and self._db.embedding_model != embeddings.model_name:
            logger.warning(
                "Vault index was built with %s, current model is %s; dropping it.",
                self._db.embedding_model, embeddings.model_name,
            )
            self._db = None
        return self._db

    async def initialize_db(self) -> LocalVectorStore | None:
        """
        Load the persisted index, or start an empty one.

        Returns None when no embeddings API is configured. An index built
        with a different embedding model is discarded.
        """
        embeddings = self._embeddings_manager.get_embeddings_api()
        if embeddings is None:
            logger.error("Cannot initialize the vault index without an embeddings API.")
            return None

        db = LocalVectorStore(embeddings.model_name)
        if self._index_path.exists():
            try:
                loaded = await asyncio.to_thread(LocalVectorStore.load, self._index_path)
            except (OSError, ValueError, KeyError) as e:
                logger.error("Failed to load vault index from %s: %s", self._index_path, e)
            else:
                if loaded.embedding_model == embeddings.model_name:
                    db = loaded
                else:
                    logger.warning(
                        "Index at %s was built with %s, current model is %s; starting empty.",
                        self._index_path, loaded.embedding_model, embeddings.model_name,
                    )
        self._db = db
        logger.info("Vault index ready with %d chunks.", len(db))
        return db

    async def index_vault_to_vector_store(self) -> int:
        """Rebuild the index from every note in the vault. Returns the chunk count."""
        embeddings = self._embeddings_manager.get_embeddings_api()
        if embeddings is None:
            logger.error("Cannot index the vault without an embeddings API.")
            return 0

        with self._tracer.start_as_current_span("vault.index") as span:
            notes = await self.vault.aread_notes()
            chunks = [chunk for note in notes for chunk in chunk_note(note)]
            span.set_attribute("vault.note_count", len(notes))
            span.set_attribute("vault.chunk_count", len(chunks))
            logger.info("Indexing %d chunks from %d notes.", len(chunks), len(notes))

            vectors = await embeddings.embed_documents([c.text for c in chunks]) if chunks else []
            db = LocalVectorStore(embeddings.model_name)
            db.add([Document(c.text, c.metadata) for c in chunks], vectors)
            await asyncio.to_thread(db.save, self._index_path)

        self._db = db
        logger.info("Vault index rebuilt and saved to %s.", self._index_path)
        return len(db)
