"""
LLM-driven memory extraction on two cadences: immediately per conversational
turn, and batched per agent after a period of inactivity.
"""

import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import (AgentStatus, ConversationSummary, ExtractedRelationship, ExtractionResult, MemoryEntry,
                           MemoryEntryType, PendingSignal, ProcessingLog, SignalType)
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.config import MemoryConfig
from ..utils.json_utils import extract_json
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.model_router import ModelUnavailableError
from ..utils.sqlite_client import StorageError
from ..utils.timestamp_utils import elapsed_ms, now_iso
from ..utils.token_budget import estimate_tokens
from .contradiction import ContradictionResolver
from .graph_upsert import GraphUpserter
from .profile import ProfileFactDeduper, ProfileRegenerator
from .signal_ingestion import SignalIngestor

logger = get_logger(__name__)

IMMEDIATE_EXISTING_LIMIT = 20
BATCHED_EXISTING_LIMIT = 30
DEFAULT_CONFIDENCE = 0.8

MODEL_ERRORS = (ModelUnavailableError, BedrockLLMError)

EXTRACTION_SYSTEM_PROMPT = ('You extract structured memories from conversations. '
                            'Respond ONLY with a valid JSON object. Never ask questions. Never refuse. '
                            'The JSON must have: "entries" (array of objects with "type", "content", "confidence", '
                            '"tags"), "profile_facts" (array of strings), "summary" (string or null), '
                            '"entities" (array of objects with "name" and "type"), and "relationships" '
                            '(array of objects with "source", "relation", "target", "confidence").')

ENTRY_TYPES = '/'.join(t.value for t in MemoryEntryType)


def build_immediate_prompt(user_message: str, assistant_message: Optional[str], signals: Sequence[SignalType],
                           existing: Sequence[MemoryEntry]) -> str:
    prompt = ''
    if existing:
        prompt += 'Existing memories (avoid duplicates, note contradictions):\n'
        for entry in existing[:IMMEDIATE_EXISTING_LIMIT]:
            prompt += f'- [{entry.type.value}] {entry.content}\n'
        prompt += '\n'

    signal_names = ', '.join(s.value if isinstance(s, SignalType) else str(s) for s in signals)
    prompt += f'Detected signals: {signal_names}\n\nUser message:\n{user_message}'
    if assistant_message:
        prompt += f'\n\nAssistant response:\n{assistant_message}'

    prompt += f"""

Extract memories as JSON with:
- "entries": array, each with "type" ({ENTRY_TYPES}), "content" (concise statement), "confidence" (0.0-1.0), "tags" (keywords array)
- "profile_facts": array of strings, global facts about this user for their profile
- "summary": null
- "entities": array of people, places, organizations and things mentioned, each with "name" and "type"
- "relationships": array, each with "source", "relation", "target" (entity names) and "confidence" (0.0-1.0)"""
    return prompt


def build_batched_prompt(pending: Sequence[PendingSignal], existing: Sequence[MemoryEntry]) -> str:
    prompt = 'Existing memories (check for contradictions):'
    for entry in existing[:BATCHED_EXISTING_LIMIT]:
        prompt += f'\n- [{entry.type.value}] {entry.content} (confidence: {entry.confidence})'

    prompt += '\n\nNew conversation signals to process:'
    for signal in pending:
        prompt += f'\n---\nSignal type: {signal.signal_type}\nUser: {signal.user_message}'
        if signal.assistant_message:
            prompt += f'\nAssistant: {signal.assistant_message}'

    prompt += """

Extract memories as JSON with:
- "entries": array of new entries, each with "type", "content", "confidence", "tags"
- "profile_facts": array of strings, global facts about this user for their profile
- "summary": a 2-4 sentence summary of this conversation session
- "entities": array of people, places, organizations and things mentioned, each with "name" and "type"
- "relationships": array, each with "source", "relation", "target" (entity names) and "confidence" (0.0-1.0)"""
    return prompt


def signal_entry_type(signals: Sequence[SignalType]) -> Optional[MemoryEntryType]:
    """Entry type implied by the first recognised signal of a turn."""
    for signal in signals:
        try:
            return SignalType(signal).memory_entry_type
        except ValueError:
            continue
    return None


def _confidence(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def build_extraction_result(data: Dict[str, Any],
                            agent_id: str,
                            conversation_id: Optional[str],
                            model: str,
                            default_type: Optional[MemoryEntryType] = None) -> ExtractionResult:
    """
    Convert decoded JSON into typed records.

    Entries with empty content are dropped. An entry with a missing or unknown
    type takes ``default_type`` when one is given and is dropped otherwise; a
    missing confidence defaults to 0.8.
    """
    result = ExtractionResult()

    for item in data.get('entries') or []:
        if not isinstance(item, dict):
            continue
        content = item.get('content')
        if not isinstance(content, str) or not content.strip():
            continue
        try:
            entry_type = MemoryEntryType(str(item.get('type', '')).strip().lower())
        except ValueError:
            if default_type is None:
                logger.debug(f"Dropping entry with unknown type '{item.get('type')}'")
                continue
            entry_type = default_type
        result.entries.append(
            MemoryEntry(agent_id=agent_id,
                        type=entry_type,
                        content=content.strip(),
                        confidence=_confidence(item.get('confidence'), DEFAULT_CONFIDENCE),
                        model=model,
                        source_conversation_id=conversation_id,
                        tags=_strings(item.get('tags'))))

    result.profile_facts = _strings(data.get('profile_facts'))

    summary = data.get('summary')
    if isinstance(summary, str) and summary.strip():
        result.summary = summary.strip()

    for item in data.get('entities') or []:
        if isinstance(item, dict) and isinstance(item.get('name'), str) and item['name'].strip():
            result.entities.append({'name': item['name'].strip(), 'type': str(item.get('type') or 'unknown')})

    for item in data.get('relationships') or []:
        if not isinstance(item, dict):
            continue
        source, relation, target = item.get('source'), item.get('relation'), item.get('target')
        if not all(isinstance(v, str) and v.strip() for v in (source, relation, target)):
            continue
        result.relationships.append(
            ExtractedRelationship(source=source.strip(),
                                  relation=relation.strip(),
                                  target=target.strip(),
                                  confidence=_confidence(item.get('confidence'), 1.0)))

    return result


class AgentProcessingState:
    """Per-agent batched-run status; at most one run per agent is PROCESSING."""

    def __init__(self):
        self._status: Dict[str, AgentStatus] = {}
        self._lock = threading.Lock()

    def status(self, agent_id: str) -> AgentStatus:
        with self._lock:
            return self._status.get(agent_id, AgentStatus.IDLE)

    def try_acquire(self, agent_id: str) -> bool:
        with self._lock:
            if self._status.get(agent_id, AgentStatus.IDLE) != AgentStatus.IDLE:
                return False
            self._status[agent_id] = AgentStatus.PROCESSING
            return True

    def release(self, agent_id: str) -> None:
        with self._lock:
            self._status[agent_id] = AgentStatus.IDLE


class AgentLocks:
    """One re-entrant lock per agent; different agents never contend."""

    def __init__(self):
        self._locks = defaultdict(threading.RLock)
        self._guard = threading.Lock()

    def lock_for(self, agent_id: str) -> threading.RLock:
        with self._guard:
            return self._locks[agent_id]


class ExtractionOrchestrator:
    """Runs extraction and applies its results to storage, index, profile and graph."""

    def __init__(self,
                 storage,
                 model_invoker,
                 search_index,
                 config: MemoryConfig,
                 graph_store=None,
                 events: Optional[MemoryEventLog] = None,
                 processing_state: Optional[AgentProcessingState] = None,
                 locks: Optional[AgentLocks] = None):
        """
        Args:
            storage: Durable store (MemoryDatabase)
            model_invoker: Anything with generate(prompt, system_prompt=, model_id=)
            search_index: HybridSearchIndex
            config: Memory settings
            graph_store: Graph backend; defaults to the durable store
            events: Structured event sink
            processing_state: Shared per-agent batched-run status
            locks: Shared per-agent serialization locks
        """
        self.storage = storage
        self.model_invoker = model_invoker
        self.search_index = search_index
        self.config = config
        self.events = events or MemoryEventLog(logger)
        self.processing_state = processing_state or AgentProcessingState()
        self.locks = locks or AgentLocks()

        self.ingestor = SignalIngestor(storage, self.events)
        self.resolver = ContradictionResolver(storage, search_index, config.contradiction_threshold, self.events)
        self.deduper = ProfileFactDeduper(storage, config.dedup_threshold, self.events)
        self.graph = GraphUpserter(graph_store if graph_store is not None else storage, self.events)
        self.profile = ProfileRegenerator(storage, model_invoker, config, self.events)

    def parse(self,
              response: str,
              agent_id: str,
              conversation_id: Optional[str],
              model: str,
              default_type: Optional[MemoryEntryType] = None) -> ExtractionResult:
        """Parse a model response; unrecoverable output yields an empty result."""
        parsed = extract_json(response)
        if not parsed.ok:
            self.events.warning('extraction_parse_failed',
                                'Could not extract JSON from response',
                                agent_id=agent_id,
                                error=str(parsed.error),
                                preview=(response or '')[:200])
            return ExtractionResult()
        if not isinstance(parsed.value, dict):
            self.events.warning('extraction_parse_failed',
                                "JSON decoded but doesn't match expected schema",
                                agent_id=agent_id,
                                strategy=parsed.strategy,
                                preview=(response or '')[:200])
            return ExtractionResult()

        result = build_extraction_result(parsed.value, agent_id, conversation_id, model, default_type)
        logger.debug(f'Parsed {len(result.entries)} entries via {parsed.strategy}')
        return result

    def _load_existing(self, agent_id: str) -> Optional[List[MemoryEntry]]:
        try:
            return self.storage.load_active_entries(agent_id)
        except StorageError as e:
            self.events.error('storage_failed', 'Failed to load active entries', operation='load_active_entries', error=str(e))
            return None

    def _call_model(self, prompt: str, agent_id: str, task_type: str) -> Optional[str]:
        model = self.config.core_model_id
        try:
            return self.model_invoker.generate(prompt, system_prompt=EXTRACTION_SYSTEM_PROMPT, model_id=model)
        except MODEL_ERRORS as e:
            self.events.error('extraction_failed', f'{task_type} extraction failed', agent_id=agent_id, error=str(e))
            self._log(agent_id, task_type, 'error', details=str(e))
            return None

    def _apply(self, result: ExtractionResult, existing: List[MemoryEntry], agent_id: str,
               conversation_id: Optional[str]) -> Dict[str, int]:
        outcome = self.resolver.apply(result.entries, existing)
        facts = self.deduper.add_facts(result.profile_facts, agent_id, conversation_id, self.config.core_model_id)
        graph = self.graph.upsert(result.entities, result.relationships, agent_id)
        return {
            'entries': len(outcome.inserted),
            'contradictions': len(outcome.superseded),
            'profile_facts': len(facts),
            'relationships': graph.relationships
        }

    def _mark_processed(self, signal_ids: List[int]) -> None:
        if not signal_ids:
            return
        try:
            self.storage.mark_signals_processed(signal_ids)
        except StorageError as e:
            self.events.error('storage_failed',
                              'Failed to mark signals processed',
                              operation='mark_signals_processed',
                              error=str(e))

    def _log(self, agent_id: str, task_type: str, status: str, **fields) -> None:
        try:
            self.storage.insert_processing_log(
                ProcessingLog(agent_id=agent_id,
                              task_type=task_type,
                              status=status,
                              model=self.config.core_model_id,
                              **fields))
        except StorageError as e:
            logger.warning(f'Failed to write processing log: {e}')

    def run_immediate(self,
                      signals: Sequence[SignalType],
                      user_message: str,
                      assistant_message: Optional[str],
                      agent_id: str,
                      conversation_id: str) -> Optional[ExtractionResult]:
        """
        Extract memories from one turn that fired at least one signal.

        The turn's signals are recorded first. They are marked processed only
        when the model call succeeds; otherwise they stay queued for the
        batched path.

        Returns:
            The parsed result, or None when the model could not be called
        """
        if not signals:
            return None

        with self.locks.lock_for(agent_id):
            start = time.monotonic()
            self.events.info('immediate_extraction_started',
                             'Immediate extraction starting',
                             agent_id=agent_id,
                             signals=[s.value if isinstance(s, SignalType) else str(s) for s in signals],
                             model=self.config.core_model_id)

            stored = self.ingestor.ingest(signals, user_message, assistant_message, agent_id, conversation_id)
            existing = self._load_existing(agent_id) or []
            prompt = build_immediate_prompt(user_message, assistant_message, signals, existing)

            response = self._call_model(prompt, agent_id, 'immediate_extraction')
            if response is None:
                return None

            result = self.parse(response, agent_id, conversation_id, self.config.core_model_id,
                                signal_entry_type(signals))
            counts = self._apply(result, existing, agent_id, conversation_id)
            self._mark_processed([signal.id for signal in stored])

            duration = elapsed_ms(start)
            self._log(agent_id,
                      'immediate_extraction',
                      'success',
                      input_tokens=estimate_tokens(prompt),
                      output_tokens=estimate_tokens(response),
                      duration_ms=duration)
            self.events.info('immediate_extraction_completed',
                             f'Immediate extraction completed in {duration}ms',
                             agent_id=agent_id,
                             **counts)

            self.profile.maybe_regenerate()
            return result

    def run_batched(self, agent_id: str) -> Optional[ExtractionResult]:
        """
        Consolidate an agent's pending signals and write a session summary.

        A trigger for an agent whose batched run is already in progress is a
        no-op. The agent always returns to idle, including on failure.
        """
        if not self.processing_state.try_acquire(agent_id):
            self.events.info('batched_run_skipped', 'Batched run already in progress', agent_id=agent_id)
            return None
        try:
            with self.locks.lock_for(agent_id):
                return self._run_batched(agent_id)
        finally:
            self.processing_state.release(agent_id)

    def _run_batched(self, agent_id: str) -> Optional[ExtractionResult]:
        start = time.monotonic()
        try:
            pending = self.storage.load_pending_signals(agent_id)
        except StorageError as e:
            self.events.error('storage_failed', 'Failed to load pending signals', operation='load_pending_signals', error=str(e))
            self._log(agent_id, 'post_activity', 'error', details=str(e))
            return None

        existing = self._load_existing(agent_id)
        if existing is None:
            self._log(agent_id, 'post_activity', 'error', details='Failed to load active entries')
            return None

        self.events.info('post_activity_started',
                         'Post-activity processing starting',
                         agent_id=agent_id,
                         pending_signals=len(pending),
                         existing_entries=len(existing))
        if not pending:
            logger.debug(f'No pending signals for {agent_id}, skipping')
            return None

        prompt = build_batched_prompt(pending, existing)
        response = self._call_model(prompt, agent_id, 'post_activity')
        if response is None:
            return None

        conversation_id = pending[0].conversation_id
        result = self.parse(response, agent_id, conversation_id, self.config.core_model_id)
        counts = self._apply(result, existing, agent_id, conversation_id)

        if result.summary:
            self._store_summary(result.summary, agent_id, conversation_id or agent_id)

        self._mark_processed([signal.id for signal in pending])

        duration = elapsed_ms(start)
        self._log(agent_id,
                  'post_activity',
                  'success',
                  input_tokens=estimate_tokens(prompt),
                  output_tokens=estimate_tokens(response),
                  duration_ms=duration)
        self.events.info('post_activity_completed',
                         f'Post-activity completed in {duration}ms',
                         agent_id=agent_id,
                         summary=result.summary is not None,
                         **counts)

        self.profile.maybe_regenerate()
        return result

    def _store_summary(self, text: str, agent_id: str, conversation_id: str) -> None:
        summary = ConversationSummary(agent_id=agent_id,
                                      conversation_id=conversation_id,
                                      summary=text,
                                      token_count=estimate_tokens(text),
                                      model=self.config.core_model_id,
                                      conversation_at=now_iso())
        try:
            self.storage.insert_summary(summary)
        except StorageError as e:
            self.events.error('storage_failed', 'Failed to insert summary', operation='insert_summary', error=str(e))
            return
        self.search_index.index_summary(summary)
