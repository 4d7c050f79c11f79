"""
VECTOR STORE SERVICE MODULE
===========================

Embedding + similarity search capability used by the knowledge base.
Segments are embedded locally with a HuggingFace sentence-transformers model and
stored in a FAISS index that is saved to VECTOR_STORE_DIR after every write, so
the knowledge base survives restarts.

LIFECYCLE:
  - load(): Load a previously saved FAISS index from disk (called once at startup).
  - embed_and_store(texts, metadatas): Embed segments, add them to the index, save.
  - search(query, max_results, min_score): k nearest segments above a relevance threshold.
    Relevance is (1 + cosine similarity) / 2, so 0.3 keeps segments with cosine above -0.4.
  - get_all_documents(limit): Read stored segments back (used to rebuild knowledge metadata).

The index is created lazily by the first write; searching an empty store returns [].
Embeddings run locally (no extra API key). Tests inject any LangChain Embeddings object.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from langchain_community.vectorstores import FAISS
from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings


logger = logging.getLogger("ragchat")

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


@dataclass(frozen=True)
class VectorMatch:
    """One stored segment returned by a search: text, relevance (0-1) and metadata."""
    text: str
    score: float
    metadata: Dict[str, object] = field(default_factory=dict)


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def cosine_relevance(squared_l2: float) -> float:
    """
    Map FAISS squared-L2 distance between unit vectors to (1 + cos) / 2.
    For unit vectors squared_l2 == 2 - 2cos, so the relevance is 1 - d / 4.
    """
    return 1.0 - squared_l2 / 4.0


# Vectors are L2-normalized on insert and query so distances are cosine-based
# whatever the embedder returns.
INDEX_KWARGS = {"normalize_L2": True, "relevance_score_fn": cosine_relevance}


# ==============================================================================
# VECTOR STORE SERVICE CLASS
# ==============================================================================

class VectorStoreService:
    """
    Stores knowledge segments in FAISS and answers relevance-thresholded
    nearest-neighbour queries. Writes are serialized by a lock; FAISS reads are
    safe to run alongside them.
    """

    def __init__(
        self,
        embeddings: Optional[Embeddings] = None,
        store_dir: Optional[Path] = None,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
    ):
        """Create the embedding model (local) unless one is injected; the index is built on first write."""
        if embeddings is None:
            from langchain_huggingface import HuggingFaceEmbeddings

            embeddings = HuggingFaceEmbeddings(
                model_name=model_name,
                model_kwargs={"device": "cpu"},
                encode_kwargs={"normalize_embeddings": True},
            )
        self.embeddings = embeddings
        self.model_name = model_name
        self.store_dir = Path(store_dir) if store_dir else None
        self.vector_store: Optional[FAISS] = None
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------------------
    # LOAD AND SAVE
    # ------------------------------------------------------------------------------

    def load(self) -> bool:
        """Load the FAISS index saved in store_dir. Returns False when there is nothing to load."""
        if not self.store_dir or not (self.store_dir / "index.faiss").exists():
            logger.info("No saved vector index found; starting with an empty knowledge base")
            return False
        self.vector_store = FAISS.load_local(
            str(self.store_dir),
            self.embeddings,
            allow_dangerous_deserialization=True,
            **INDEX_KWARGS,
        )
        logger.info("Loaded vector index from %s (%d segments)", self.store_dir, self.count())
        return True

    def save_vector_store(self):
        """Write the current FAISS index to store_dir. On error we only log."""
        if self.vector_store and self.store_dir:
            try:
                self.vector_store.save_local(str(self.store_dir))
            except Exception as e:
                logger.error("Failed to save vector store to disk: %s", e)

    # ------------------------------------------------------------------------------
    # WRITE
    # ------------------------------------------------------------------------------

    def embed_and_store(self, texts: List[str], metadatas: List[dict]) -> List[str]:
        """
        Embed texts and add them to the index with their metadata.
        Returns the generated segment ids in input order. Embedding errors propagate.
        """
        if len(texts) != len(metadatas):
            raise ValueError(f"Length mismatch: {len(texts)} texts vs {len(metadatas)} metadatas.")
        if not texts:
            return []

        ids = [str(uuid.uuid4()) for _ in texts]
        logger.info("Storing %d segments in the vector store", len(texts))
        with self._write_lock:
            if self.vector_store is None:
                self.vector_store = FAISS.from_texts(
                    texts, self.embeddings, metadatas=metadatas, ids=ids, **INDEX_KWARGS
                )
            else:
                self.vector_store.add_texts(texts, metadatas=metadatas, ids=ids)
            self.save_vector_store()
        return ids

    # ------------------------------------------------------------------------------
    # READ
    # ------------------------------------------------------------------------------

    def search(self, query: str, max_results: int, min_score: float) -> List[VectorMatch]:
        """Return up to max_results segments with relevance >= min_score, best first."""
        logger.info(
            "Similarity search: '%s', max_results=%d, min_score=%.2f",
            _preview(query), max_results, min_score,
        )
        if self.vector_store is None:
            return []

        results = self.vector_store.similarity_search_with_relevance_scores(
            query,
            k=max_results,
            score_threshold=min_score,
        )
        matches = [
            VectorMatch(text=doc.page_content, score=float(score), metadata=dict(doc.metadata))
            for doc, score in results
        ]
        logger.info("Search finished, %d relevant segments", len(matches))
        return matches

    def get_all_documents(self, limit: int = 1000) -> List[VectorMatch]:
        """Return up to limit stored segments (score fixed at 1.0), in index order."""
        if self.vector_store is None:
            return []
        matches = []
        for doc_id in list(self.vector_store.index_to_docstore_id.values())[:limit]:
            doc = self.vector_store.docstore.search(doc_id)
            if isinstance(doc, Document):
                matches.append(VectorMatch(text=doc.page_content, score=1.0, metadata=dict(doc.metadata)))
        return matches

    def count(self) -> int:
        if self.vector_store is None:
            return 0
        return self.vector_store.index.ntotal

    def model_info(self) -> str:
        return f"{self.model_name} (local sentence-transformers model)"
