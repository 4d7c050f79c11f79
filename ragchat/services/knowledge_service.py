"""
KNOWLEDGE SERVICE MODULE
========================

Manages the RAG knowledge base: add, list, inspect and delete knowledge entries,
search them, and build augmented prompts for the conversation service.

STORAGE:
  - Segment text + vectors live in the vector store (VectorStoreService).
  - Entry metadata (title, sizes, segment ids) lives in an in-memory dict keyed
    by entry id. Single-key writes are atomic; readers work on a snapshot, so
    add / delete / list can run concurrently without an index-wide lock.
  - restore_from_vector_store() rebuilds the metadata at startup from the
    "source" tag stored with every segment.

KNOWN LIMITATION:
  delete_knowledge() drops the metadata record only. The segments stay in the
  vector store and can still be retrieved by build_augmented_prompt().
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from ragchat.exceptions import KnowledgeStoreException
from ragchat.services.chunker import split_text
from ragchat.services.vector_store import VectorStoreService

logger = logging.getLogger("ragchat")

AUGMENT_INSTRUCTION = (
    "Answer the user's question using the reference material below. "
    "If the references are not enough to answer, answer from your own knowledge "
    "but say that the answer does not come from the references."
)


# ==============================================================================
# DATA CLASSES
# ==============================================================================

@dataclass(frozen=True)
class KnowledgeEntry:
    id: str
    title: str
    content_length: int
    segment_count: int
    segment_ids: List[str]
    created_at: int  # epoch milliseconds


@dataclass(frozen=True)
class RelevantKnowledge:
    content: str
    score: float
    source_id: Optional[str]


@dataclass(frozen=True)
class KnowledgeStats:
    total_entries: int
    total_segments: int
    total_characters: int
    embedding_model: str


@dataclass(frozen=True)
class KnowledgeDetail:
    id: str
    title: str
    content_length: int
    segment_count: int
    segments: List[str]
    created_at: int


def _now_millis() -> int:
    return int(time.time() * 1000)


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# ==============================================================================
# KNOWLEDGE SERVICE CLASS
# ==============================================================================

class KnowledgeService:
    """Knowledge base on top of a vector store, plus the prompt augmenter used for RAG."""

    def __init__(
        self,
        vector_store: VectorStoreService,
        segment_size: int = 500,
        segment_overlap: int = 50,
        min_score: float = 0.3,
        max_results: int = 3,
    ):
        self.vector_store = vector_store
        self.segment_size = segment_size
        self.segment_overlap = segment_overlap
        self.min_score = min_score
        self.max_results = max_results
        self._entries: Dict[str, KnowledgeEntry] = {}

    # ------------------------------------------------------------------------------
    # STARTUP
    # ------------------------------------------------------------------------------

    def restore_from_vector_store(self, limit: int = 1000) -> int:
        """
        Rebuild entry metadata from segments already in the vector store.
        Segments are grouped by their "source" tag. Segment ids cannot be
        recovered, so restored entries carry an empty segment_ids list.
        Returns the number of restored entries; on failure logs and returns 0.
        """
        logger.info("Restoring knowledge entries from the vector store...")
        try:
            matches = self.vector_store.get_all_documents(limit)
        except Exception as e:
            logger.warning("Could not restore knowledge entries, starting empty: %s", e)
            return 0

        groups: Dict[str, list] = {}
        for match in matches:
            source = match.metadata.get("source")
            if source:
                groups.setdefault(str(source), []).append(match)

        for source_id, segments in groups.items():
            first = segments[0]
            title = first.metadata.get("title") or _preview(first.text, 30)
            try:
                created_at = int(first.metadata.get("createdAt"))
            except (TypeError, ValueError):
                created_at = _now_millis()
            self._entries[source_id] = KnowledgeEntry(
                id=source_id,
                title=str(title),
                content_length=sum(len(m.text) for m in segments),
                segment_count=len(segments),
                segment_ids=[],
                created_at=created_at,
            )

        logger.info("Restored %d knowledge entries", len(groups))
        return len(groups)

    # ------------------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------------------

    def add_knowledge(self, title: str, content: str) -> str:
        """
        Chunk content, embed and store every segment, then record the entry.
        Raises KnowledgeStoreException if storing fails; no entry is recorded then.
        """
        logger.info("Adding knowledge: %s (%d characters)", title, len(content))
        entry_id = uuid.uuid4().hex[:8]
        segments = split_text(content, self.segment_size, self.segment_overlap)
        created_at = _now_millis()
        metadatas = [
            {"source": entry_id, "title": title, "createdAt": created_at}
            for _ in segments
        ]

        try:
            segment_ids = self.vector_store.embed_and_store(segments, metadatas)
        except Exception as e:
            logger.error("Storing knowledge '%s' failed: %s", title, e)
            raise KnowledgeStoreException(f"Failed to store knowledge '{title}': {e}") from e

        self._entries[entry_id] = KnowledgeEntry(
            id=entry_id,
            title=title,
            content_length=len(content),
            segment_count=len(segments),
            segment_ids=list(segment_ids),
            created_at=created_at,
        )
        logger.info("Knowledge stored, id=%s, %d segments", entry_id, len(segments))
        return entry_id

    def list_knowledge(self) -> List[KnowledgeEntry]:
        """All entries, newest first."""
        return sorted(list(self._entries.values()), key=lambda e: e.created_at, reverse=True)

    def get_knowledge(self, entry_id: str) -> Optional[KnowledgeEntry]:
        return self._entries.get(entry_id)

    def get_knowledge_detail(self, entry_id: str) -> Optional[KnowledgeDetail]:
        """Entry metadata plus its segment texts as stored in the vector store; None if unknown."""
        entry = self.get_knowledge(entry_id)
        if entry is None:
            return None
        segments = [
            m.text for m in self.vector_store.get_all_documents()
            if m.metadata.get("source") == entry_id
        ]
        return KnowledgeDetail(
            id=entry.id,
            title=entry.title,
            content_length=entry.content_length,
            segment_count=entry.segment_count,
            segments=segments,
            created_at=entry.created_at,
        )

    def delete_knowledge(self, entry_id: str) -> bool:
        """Remove the metadata record. Vectors stay in the store (see module docstring)."""
        removed = self._entries.pop(entry_id, None)
        if removed is None:
            return False
        logger.info("Knowledge entry deleted: %s - %s", entry_id, removed.title)
        return True

    def get_stats(self) -> KnowledgeStats:
        entries = list(self._entries.values())
        return KnowledgeStats(
            total_entries=len(entries),
            total_segments=sum(e.segment_count for e in entries),
            total_characters=sum(e.content_length for e in entries),
            embedding_model=self.vector_store.model_info(),
        )

    # ------------------------------------------------------------------------------
    # RETRIEVAL AND AUGMENTATION
    # ------------------------------------------------------------------------------

    def retrieve_knowledge(self, query: str, max_results: int) -> List[RelevantKnowledge]:
        """Segments relevant to query, in the order the vector store ranked them."""
        logger.info("Retrieving knowledge for '%s'", _preview(query))
        matches = self.vector_store.search(query, max_results, self.min_score)
        return [
            RelevantKnowledge(content=m.text, score=m.score, source_id=m.metadata.get("source"))
            for m in matches
        ]

    def build_augmented_prompt(self, query: str) -> str:
        """
        Prepend the most relevant segments to the user's question.
        Returns query itself (same object) when nothing relevant is found.
        Retrieval errors propagate; the caller decides how to fall back.
        """
        relevant = self.retrieve_knowledge(query, self.max_results)
        if not relevant:
            logger.info("No relevant knowledge found, using the original question")
            return query

        parts = [AUGMENT_INSTRUCTION, "", "[References]"]
        for i, doc in enumerate(relevant, 1):
            parts.append(f"[{i}] (relevance: {doc.score:.2f})\n{doc.content}\n")
        parts.append("[User question]")
        parts.append(query)

        logger.info("Built augmented prompt with %d references", len(relevant))
        return "\n".join(parts)
