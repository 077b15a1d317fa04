"""
Hybrid memory search over the vector index with MMR reranking and a
plain-text fallback over the durable store.
"""

import hashlib
import math
import uuid
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from ..models.core import ConversationChunk, ConversationSummary, MemoryEntry, SearchHit
from ..utils.config import MemoryConfig
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.sqlite_client import StorageError
from .mmr import Candidate, MMRReranker

logger = get_logger(__name__)

T = TypeVar('T')


def deterministic_id(key: str) -> str:
    """
    Derive a stable UUID (version 5 layout) from the SHA-256 of a semantic key.

    Args:
        key: e.g. 'chunk:<conversation_id>:<chunk_index>'

    Returns:
        The UUID string; identical keys always yield identical ids
    """
    digest = bytearray(hashlib.sha256(key.encode('utf-8')).digest()[:16])
    digest[6] = (digest[6] & 0x0F) | 0x50
    digest[8] = (digest[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(digest)))


def chunk_document_id(chunk: ConversationChunk) -> str:
    return deterministic_id(f'chunk:{chunk.conversation_id}:{chunk.chunk_index}')


def summary_document_id(summary: ConversationSummary) -> str:
    return deterministic_id(f'summary:{summary.agent_id}:{summary.conversation_id}:{summary.conversation_at}')


class HybridSearchIndex:
    """Search facade over an optional vector index backend.

    Durable storage is the source of truth; the backend only holds derived
    documents. A missing or failing backend never raises: reads fall back to
    LIKE search over storage and writes are skipped with an event.
    """

    def __init__(self,
                 storage,
                 backend=None,
                 config: Optional[MemoryConfig] = None,
                 events: Optional[MemoryEventLog] = None):
        self.storage = storage
        self.backend = backend
        self.config = config or MemoryConfig()
        self.events = events or MemoryEventLog(logger)

    @property
    def is_available(self) -> bool:
        return self.backend is not None

    def initialize(self) -> bool:
        """Prepare the backend index; on failure the text fallback stays active."""
        if self.backend is None:
            return False
        try:
            status = self.backend.create_index_if_not_exists()
        except Exception as e:
            status = 'failed'
            logger.error(f'Search index initialization failed: {e}')
        if status == 'failed':
            self.events.warning('search_index_unavailable', 'Search index unavailable, text search fallback active')
            self.backend = None
            return False
        logger.info(f'Search index ready ({status})')
        return True

    # Indexing

    def _write(self, operation: str, action: Callable[[], None], **fields) -> bool:
        if self.backend is None:
            return False
        try:
            action()
            return True
        except Exception as e:
            self.events.warning('index_write_failed',
                                f'Search index {operation} failed',
                                operation=operation,
                                error=str(e),
                                **fields)
            return False

    def index_memory_entry(self, entry: MemoryEntry) -> bool:
        return self._write('index_entry',
                           lambda: self.backend.add_document(entry.index_text, entry.id),
                           document_id=entry.id)

    def index_conversation_chunk(self, chunk: ConversationChunk) -> bool:
        doc_id = chunk_document_id(chunk)
        return self._write('index_chunk', lambda: self.backend.add_document(chunk.content, doc_id), document_id=doc_id)

    def index_summary(self, summary: ConversationSummary) -> bool:
        doc_id = summary_document_id(summary)
        return self._write('index_summary',
                           lambda: self.backend.add_document(summary.summary, doc_id),
                           document_id=doc_id)

    def remove_document(self, doc_id: str) -> bool:
        return self._write('remove', lambda: self.backend.delete_documents([doc_id]), document_id=doc_id)

    def rebuild_index(self) -> int:
        """
        Drop every indexed document and re-add all active entries.

        Returns:
            Number of entries indexed (0 when the backend is unavailable)
        """
        if self.backend is None:
            return 0
        try:
            entries = self.storage.load_all_active_entries()
        except StorageError as e:
            self.events.error('storage_failed', 'Failed to load entries for rebuild', operation='rebuild', error=str(e))
            return 0

        def rebuild():
            self.backend.reset()
            if entries:
                self.backend.add_documents([entry.index_text for entry in entries], [entry.id for entry in entries])

        if not self._write('rebuild', rebuild):
            return 0
        logger.info(f'Index rebuilt with {len(entries)} entries')
        return len(entries)

    def reset(self) -> bool:
        """Drop every indexed document without re-adding anything."""
        return self._write('reset', lambda: self.backend.reset())

    # Search

    def _fetch_size(self, top_k: int, fetch_multiplier: Optional[float]) -> int:
        multiplier = self.config.mmr_fetch_multiplier if fetch_multiplier is None else fetch_multiplier
        return max(top_k, int(math.ceil(top_k * max(1.0, multiplier))))

    def _backend_hits(self, query: str, fetch: int, scope: str) -> Optional[List[SearchHit]]:
        """Backend hits, or None when the caller should fall back to text search."""
        if self.backend is None:
            self.events.debug('search_fallback', 'Search index unavailable, using text search', scope=scope)
            return None
        try:
            return self.backend.search(query, k=fetch, threshold=self.config.search_threshold)
        except Exception as e:
            self.events.warning('search_fallback',
                                'Vector search failed, falling back to text',
                                scope=scope,
                                error=str(e))
            return None

    def _rerank(self, hits: Sequence[SearchHit], by_id: Dict[str, T], text_of: Callable[[T], str], top_k: int,
                lambda_: Optional[float]) -> List[T]:
        candidates = [Candidate(item=by_id[hit.id], score=hit.score, text=text_of(by_id[hit.id]))
                      for hit in hits if hit.id in by_id]
        reranker = MMRReranker(self.config.mmr_lambda if lambda_ is None else lambda_)
        return reranker.rerank(candidates, top_k)

    def search_memory_entries(self,
                              query: str,
                              agent_id: Optional[str] = None,
                              top_k: int = 10,
                              lambda_: Optional[float] = None,
                              fetch_multiplier: Optional[float] = None) -> List[MemoryEntry]:
        """
        Search active entries, diversity-reranked.

        Args:
            query: Natural language query
            agent_id: Restrict to one agent's entries
            top_k: Maximum results
            lambda_: MMR relevance weight (config default when None)
            fetch_multiplier: Backend over-fetch factor (config default when None)
        """
        hits = self._backend_hits(query, self._fetch_size(top_k, fetch_multiplier), 'entries')
        if hits is not None:
            try:
                entries = self.storage.load_active_entries_by_ids([hit.id for hit in hits])
            except StorageError as e:
                self.events.error('storage_failed', 'Failed to load matched entries', operation='search', error=str(e))
                return []
            by_id = {entry.id: entry for entry in entries if agent_id is None or entry.agent_id == agent_id}
            return self._rerank(hits, by_id, lambda entry: entry.content, top_k, lambda_)

        try:
            return self.storage.search_memory_entries(query, agent_id=agent_id, limit=top_k)
        except StorageError as e:
            self.events.error('storage_failed', 'Text search over entries failed', operation='search', error=str(e))
            return []

    def search_conversations(self,
                             query: str,
                             agent_id: Optional[str] = None,
                             top_k: int = 10,
                             days: int = 30,
                             lambda_: Optional[float] = None,
                             fetch_multiplier: Optional[float] = None) -> List[ConversationChunk]:
        """Search conversation chunks from the last ``days`` days."""
        hits = self._backend_hits(query, self._fetch_size(top_k, fetch_multiplier), 'conversations')
        try:
            if hits is not None:
                chunks = self.storage.load_chunks(agent_id=agent_id, days=days)
                by_id = {chunk_document_id(chunk): chunk for chunk in chunks}
                matched = self._rerank(hits, by_id, lambda chunk: chunk.content, top_k, lambda_)
                if matched:
                    return matched
            return self.storage.search_chunks(query, agent_id=agent_id, days=days)[:top_k]
        except StorageError as e:
            self.events.error('storage_failed', 'Conversation search failed', operation='search', error=str(e))
            return []

    def search_summaries(self,
                         query: str,
                         agent_id: Optional[str] = None,
                         top_k: int = 10,
                         days: int = 30,
                         lambda_: Optional[float] = None,
                         fetch_multiplier: Optional[float] = None) -> List[ConversationSummary]:
        """Search conversation summaries from the last ``days`` days."""
        hits = self._backend_hits(query, self._fetch_size(top_k, fetch_multiplier), 'summaries')
        try:
            if hits is not None:
                summaries = self.storage.load_summaries(agent_id=agent_id, days=days)
                by_id = {summary_document_id(summary): summary for summary in summaries}
                matched = self._rerank(hits, by_id, lambda summary: summary.summary, top_k, lambda_)
                if matched:
                    return matched
            return self.storage.search_summaries(query, agent_id=agent_id, days=days)[:top_k]
        except StorageError as e:
            self.events.error('storage_failed', 'Summary search failed', operation='search', error=str(e))
            return []
