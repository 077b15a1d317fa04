"""
Core data models for the agent memory subsystem.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MemoryEntryType(str, Enum):
    """Kinds of working-memory entries."""
    FACT = 'fact'
    PREFERENCE = 'preference'
    DECISION = 'decision'
    CORRECTION = 'correction'
    COMMITMENT = 'commitment'
    RELATIONSHIP = 'relationship'
    SKILL = 'skill'

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class SignalType(str, Enum):
    """Triggers detected in a conversation turn that warrant extraction."""
    EXPLICIT_MEMORY = 'explicit_memory'
    CORRECTION = 'correction'
    IDENTITY = 'identity'
    PREFERENCE = 'preference'
    DECISION = 'decision'
    COMMITMENT = 'commitment'

    @property
    def memory_entry_type(self) -> MemoryEntryType:
        return _SIGNAL_ENTRY_TYPES[self]


_SIGNAL_ENTRY_TYPES = {
    SignalType.EXPLICIT_MEMORY: MemoryEntryType.FACT,
    SignalType.CORRECTION: MemoryEntryType.CORRECTION,
    SignalType.IDENTITY: MemoryEntryType.FACT,
    SignalType.PREFERENCE: MemoryEntryType.PREFERENCE,
    SignalType.DECISION: MemoryEntryType.DECISION,
    SignalType.COMMITMENT: MemoryEntryType.COMMITMENT,
}


class ProfileEventKind(str, Enum):
    CONTRIBUTION = 'contribution'
    USER_EDIT = 'user_edit'
    REGENERATION = 'regeneration'


class AgentStatus(str, Enum):
    IDLE = 'idle'
    PROCESSING = 'processing'


@dataclass
class MemoryEntry:
    """A discrete fact about the user held in an agent's working memory.

    An entry whose ``superseded_by`` is set has been replaced by a newer entry
    and is excluded from active-entry queries and from the search index.
    """
    agent_id: str
    type: MemoryEntryType
    content: str
    confidence: float = 0.8
    model: str = ''
    source_conversation_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = 'active'
    superseded_by: Optional[str] = None
    created_at: str = ''
    last_accessed: str = ''
    access_count: int = 0

    @property
    def is_active(self) -> bool:
        return self.superseded_by is None and self.status == 'active'

    @property
    def index_text(self) -> str:
        """Text stored in the search index for this entry."""
        return f'[{self.type.value}] {self.content}'

    @property
    def tags_json(self) -> Optional[str]:
        return json.dumps(self.tags) if self.tags else None


@dataclass
class PendingSignal:
    """A raw extraction trigger waiting for the batched path."""
    agent_id: str
    conversation_id: str
    signal_type: str
    user_message: str
    assistant_message: Optional[str] = None
    processed: bool = False
    id: int = 0
    created_at: str = ''


@dataclass
class ProfileEvent:
    """A profile contribution, explicit user edit, or regeneration audit record."""
    agent_id: str
    kind: ProfileEventKind
    content: str
    conversation_id: Optional[str] = None
    model: Optional[str] = None
    status: str = 'active'
    incorporated_in: Optional[int] = None
    id: int = 0
    created_at: str = ''


@dataclass
class UserProfile:
    """The single current user profile; version starts at 1."""
    content: str
    token_count: int
    version: int = 1
    model: str = ''
    generated_at: str = ''


@dataclass
class ConversationSummary:
    agent_id: str
    conversation_id: str
    summary: str
    token_count: int
    model: str = ''
    conversation_at: str = ''
    status: str = 'active'
    id: int = 0
    created_at: str = ''


@dataclass
class ConversationChunk:
    conversation_id: str
    chunk_index: int
    role: str
    content: str
    token_count: int
    agent_id: str = ''
    conversation_title: Optional[str] = None
    id: int = 0
    created_at: str = ''


@dataclass
class GraphEntity:
    """A knowledge-graph node; identity is the case-insensitive name."""
    name: str
    type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = ''


@dataclass
class GraphRelationship:
    """A directed, labelled edge between two graph entities."""
    source_id: str
    target_id: str
    relation: str
    confidence: float = 1.0
    agent_id: Optional[str] = None
    source_name: str = ''
    target_name: str = ''
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = ''

    def describe(self) -> str:
        return f'{self.source_name} {self.relation} {self.target_name}'


@dataclass
class ProcessingLog:
    """Append-only audit record of one processing run."""
    agent_id: str
    task_type: str
    status: str
    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    duration_ms: Optional[int] = None
    details: Optional[str] = None
    id: int = 0
    created_at: str = ''


@dataclass
class ExtractedRelationship:
    source: str
    relation: str
    target: str
    confidence: float = 1.0


@dataclass
class ExtractionResult:
    """Structured result of one extraction call.

    An empty result (``is_empty``) is what a response yields when no JSON
    could be recovered from it.
    """
    entries: List[MemoryEntry] = field(default_factory=list)
    profile_facts: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    entities: List[Dict[str, str]] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.entries or self.profile_facts or self.summary or self.entities or self.relationships)


@dataclass
class SearchHit:
    """A single result returned by the vector index."""
    id: str
    score: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
