"""
Memory Management Service: the in-process entry point of the memory subsystem.
"""

from functools import wraps
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import (ConversationChunk, ConversationSummary, GraphRelationship, MemoryEntry, ProfileEvent,
                           ProfileEventKind, SignalType, UserProfile)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, MemoryConfig
from ..utils.config import config as default_config
from ..utils.health_check import get_health_status
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.model_router import ModelRouter
from ..utils.neptune_client import NeptuneError, NeptuneGraphStore
from ..utils.opensearch_client import OpenSearchVectorIndex
from ..utils.sqlite_client import MemoryDatabase
from .activity_tracker import ActivityTracker
from .context_assembler import ContextAssembler
from .extraction import AgentLocks, AgentProcessingState, ExtractionOrchestrator
from .memory_search import HybridSearchIndex

logger = get_logger(__name__)


def best_effort(default: Any = None):
    """Skip the call when memory is disabled and never let an error escape it."""

    def decorator(func):

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            if not self.config.enabled:
                logger.debug(f'{func.__name__} skipped, memory system is disabled')
                return default() if callable(default) else default
            try:
                return func(self, *args, **kwargs)
            except Exception as e:
                self.events.error('operation_failed', f'{func.__name__} failed', operation=func.__name__, error=str(e))
                return default() if callable(default) else default

        return wrapper

    return decorator


class MemoryService:
    """Unified service for memory extraction, consolidation and retrieval.

    Every public operation is best-effort background work: it either improves
    memory or leaves it unchanged, and never raises into the caller.
    """

    def __init__(self,
                 storage,
                 model_invoker,
                 search_index: HybridSearchIndex,
                 config: Optional[MemoryConfig] = None,
                 graph_store=None,
                 events: Optional[MemoryEventLog] = None,
                 embedder=None):
        """
        Initialize the memory service from explicit collaborators.

        Args:
            storage: Durable store (MemoryDatabase)
            model_invoker: ModelRouter or any object with the same generate()
            search_index: HybridSearchIndex over the vector backend
            config: Memory settings
            graph_store: Graph backend; defaults to the durable store
            events: Structured event sink shared by all components
            embedder: Embedding client, only used for health reporting
        """
        self.storage = storage
        self.model_invoker = model_invoker
        self.search_index = search_index
        self.config = config or MemoryConfig()
        self.graph_store = graph_store if graph_store is not None else storage
        self.events = events or MemoryEventLog(logger)
        self.embedder = embedder

        self.processing_state = AgentProcessingState()
        self.locks = AgentLocks()
        self.orchestrator = ExtractionOrchestrator(storage,
                                                   model_invoker,
                                                   search_index,
                                                   self.config,
                                                   graph_store=self.graph_store,
                                                   events=self.events,
                                                   processing_state=self.processing_state,
                                                   locks=self.locks)
        self.assembler = ContextAssembler(storage, self.graph_store, self.config, self.events)
        self.activity = ActivityTracker(storage, self.process_post_activity, self.config)

        logger.info('Initialized MemoryService')

    @classmethod
    def from_config(cls, app_config: Optional[AppConfig] = None, events: Optional[MemoryEventLog] = None) -> 'MemoryService':
        """Build the service with the AWS-backed collaborators described by ``app_config``."""
        app_config = app_config or default_config
        memory_config = app_config.memory
        events = events or MemoryEventLog(logger)

        storage = MemoryDatabase(app_config.storage)
        router = ModelRouter([BedrockLLM(app_config.bedrock_llm)],
                             temperature=app_config.bedrock_llm.temperature,
                             max_tokens=app_config.bedrock_llm.max_tokens)

        embedder = None
        backend = None
        try:
            embedder = BedrockEmbed(app_config.bedrock_embed)
            backend = OpenSearchVectorIndex(app_config.opensearch, embedder)
        except Exception as e:
            logger.warning(f'Search index unavailable, text search fallback active: {e}')
        search_index = HybridSearchIndex(storage, backend, memory_config, events)
        search_index.initialize()

        graph_store = storage
        if memory_config.graph_backend == 'neptune':
            try:
                graph_store = NeptuneGraphStore(app_config.neptune)
            except NeptuneError as e:
                logger.warning(f'Neptune unavailable, using SQLite graph: {e}')

        return cls(storage, router, search_index, memory_config, graph_store, events, embedder)

    # Extraction

    @best_effort()
    def process_immediate_signals(self,
                                  signals: Sequence[SignalType],
                                  user_message: str,
                                  assistant_message: Optional[str],
                                  agent_id: str,
                                  conversation_id: str) -> None:
        """Extract memories from a turn in which at least one signal fired."""
        self.orchestrator.run_immediate(signals, user_message, assistant_message, agent_id, conversation_id)

    @best_effort()
    def process_post_activity(self, agent_id: str) -> None:
        """Consolidate an agent's pending signals; a no-op while a run is in progress."""
        self.orchestrator.run_batched(agent_id)

    @best_effort()
    def regenerate_profile(self) -> Optional[UserProfile]:
        return self.orchestrator.profile.regenerate()

    @best_effort()
    def sync_now(self) -> None:
        """Process every agent with pending signals, then refresh the profile if facts are outstanding."""
        agent_ids = self.storage.agents_with_pending_signals()
        if agent_ids:
            logger.info(f'Sync: processing {len(agent_ids)} agent(s): {agent_ids}')
        for agent_id in agent_ids:
            self.process_post_activity(agent_id)

        count = self.storage.contribution_count_since_last_regeneration()
        if count > 0:
            logger.info(f'Sync: regenerating profile ({count} unincorporated contributions)')
            self.regenerate_profile()

    # Search

    def _top_k(self, top_k: Optional[int]) -> int:
        return self.config.recall_top_k if top_k is None else top_k

    @best_effort(default=list)
    def search_memory_entries(self,
                              query: str,
                              agent_id: Optional[str] = None,
                              top_k: Optional[int] = None,
                              lambda_: Optional[float] = None,
                              fetch_multiplier: Optional[float] = None) -> List[MemoryEntry]:
        return self.search_index.search_memory_entries(query, agent_id, self._top_k(top_k), lambda_,
                                                       fetch_multiplier)

    @best_effort(default=list)
    def search_conversations(self,
                             query: str,
                             agent_id: Optional[str] = None,
                             top_k: Optional[int] = None,
                             days: int = 30,
                             lambda_: Optional[float] = None,
                             fetch_multiplier: Optional[float] = None) -> List[ConversationChunk]:
        return self.search_index.search_conversations(query, agent_id, self._top_k(top_k), days,
                                                      lambda_, fetch_multiplier)

    @best_effort(default=list)
    def search_summaries(self,
                         query: str,
                         agent_id: Optional[str] = None,
                         top_k: Optional[int] = None,
                         days: int = 30,
                         lambda_: Optional[float] = None,
                         fetch_multiplier: Optional[float] = None) -> List[ConversationSummary]:
        return self.search_index.search_summaries(query, agent_id, self._top_k(top_k), days, lambda_,
                                                  fetch_multiplier)

    @best_effort(default=list)
    def search_graph(self,
                     entity_name: Optional[str] = None,
                     relation: Optional[str] = None,
                     depth: int = 1) -> List[GraphRelationship]:
        """Exact relational lookup: edges within ``depth`` hops of an entity, optionally filtered by relation."""
        return self.graph_store.query_relationships(entity_name=entity_name, relation=relation, depth=depth)

    # Context

    @best_effort(default='')
    def assemble_context(self, agent_id: str, config: Optional[MemoryConfig] = None) -> str:
        return self.assembler.assemble_context(agent_id, config)

    # Writes outside the extraction pipeline

    @best_effort(default=False)
    def store_conversation_chunk(self, chunk: ConversationChunk) -> bool:
        """Persist a chunk, then index it under its deterministic id."""
        with self.locks.lock_for(chunk.agent_id):
            self.storage.insert_chunk(chunk)
            self.search_index.index_conversation_chunk(chunk)
        return True

    @best_effort()
    def add_user_edit(self, content: str) -> Optional[ProfileEvent]:
        """Record an explicit user override; overrides are never trimmed or superseded."""
        content = (content or '').strip()
        if not content:
            return None
        event = ProfileEvent(agent_id='user', kind=ProfileEventKind.USER_EDIT, content=content)
        self.storage.insert_profile_event(event)
        self.events.info('user_edit_added', 'Stored user override', event_id=event.id)
        return event

    # Index management

    @best_effort(default=0)
    def rebuild_index(self) -> int:
        return self.search_index.rebuild_index()

    @best_effort(default=False)
    def reset_index(self) -> bool:
        return self.search_index.reset()

    # Activity

    @best_effort()
    def record_activity(self, agent_id: str) -> None:
        self.activity.record_activity(agent_id)

    def start_activity_tracking(self) -> None:
        if self.config.enabled:
            self.activity.start()

    def stop_activity_tracking(self) -> None:
        self.activity.stop()

    # Lifecycle

    def get_health_status(self) -> Dict[str, Any]:
        return get_health_status(model_invoker=self.model_invoker,
                                 embedder=self.embedder,
                                 search_index=self.search_index,
                                 graph_store=self.graph_store,
                                 storage=self.storage)

    def close(self) -> None:
        self.activity.stop(wait=False)
        if self.graph_store is not self.storage and hasattr(self.graph_store, 'close'):
            self.graph_store.close()
        self.storage.close()
