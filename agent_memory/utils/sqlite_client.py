"""
SQLite-backed durable store for memory entries, signals, profile state,
summaries, conversation chunks, the knowledge graph and processing logs.
"""

import json
import sqlite3
import threading
from functools import wraps
from pathlib import Path
from typing import Iterable, List, Optional

from ..models.core import (ConversationChunk, ConversationSummary, GraphEntity, GraphRelationship, MemoryEntry, MemoryEntryType,
                           PendingSignal, ProcessingLog, ProfileEvent, ProfileEventKind, UserProfile)
from .config import StorageConfig
from .logging_config import get_logger
from .timestamp_utils import days_ago_iso, now_iso, seconds_ago_iso

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_entries (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    type TEXT NOT NULL,
    content TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.8,
    model TEXT NOT NULL DEFAULT '',
    source_conversation_id TEXT,
    tags_json TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    superseded_by TEXT,
    superseded_reason TEXT,
    created_at TEXT NOT NULL,
    last_accessed TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_entries_agent_status ON memory_entries(agent_id, status);

CREATE TABLE IF NOT EXISTS pending_signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    signal_type TEXT NOT NULL,
    user_message TEXT NOT NULL,
    assistant_message TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_signals_agent_status ON pending_signals(agent_id, status);

CREATE TABLE IF NOT EXISTS profile_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    conversation_id TEXT,
    event_type TEXT NOT NULL,
    content TEXT NOT NULL,
    model TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    incorporated_in INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_profile (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    content TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    version INTEGER NOT NULL,
    model TEXT NOT NULL,
    generated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    model TEXT NOT NULL DEFAULT '',
    conversation_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    token_count INTEGER NOT NULL,
    agent_id TEXT NOT NULL DEFAULT '',
    conversation_title TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (conversation_id, chunk_index)
);

CREATE TABLE IF NOT EXISTS graph_entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS graph_relationships (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES graph_entities(id),
    target_id TEXT NOT NULL REFERENCES graph_entities(id),
    relation TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 1.0,
    agent_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_relationships_source ON graph_relationships(source_id);
CREATE INDEX IF NOT EXISTS idx_relationships_target ON graph_relationships(target_id);

CREATE TABLE IF NOT EXISTS processing_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    task_type TEXT NOT NULL,
    model TEXT,
    status TEXT NOT NULL,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_activity (
    agent_id TEXT PRIMARY KEY,
    last_activity TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Custom exception for durable store errors."""
    pass


def translate_errors(func):
    """Decorator turning sqlite3 errors into StorageError."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error(f'Error in {func.__name__}: {e}')
            raise StorageError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _like(query: str) -> str:
    escaped = query.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f'%{escaped}%'


class MemoryDatabase:
    """SQLite store; every public call runs under the connection lock."""

    def __init__(self, config: StorageConfig):
        """
        Open (and migrate) the database.

        Args:
            config: StorageConfig with the database path (':memory:' allowed)
        """
        self.config = config
        path = config.database_path
        if path != ':memory:':
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            path = str(Path(path).expanduser())
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()
        logger.info(f'Opened memory database at {config.database_path}')

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _execute(self, sql: str, params: Iterable = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cursor

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    # Memory entries

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(id=row['id'],
                           agent_id=row['agent_id'],
                           type=MemoryEntryType(row['type']),
                           content=row['content'],
                           confidence=row['confidence'],
                           model=row['model'],
                           source_conversation_id=row['source_conversation_id'],
                           tags=json.loads(row['tags_json']) if row['tags_json'] else [],
                           status=row['status'],
                           superseded_by=row['superseded_by'],
                           created_at=row['created_at'],
                           last_accessed=row['last_accessed'],
                           access_count=row['access_count'])

    @translate_errors
    def insert_memory_entry(self, entry: MemoryEntry) -> None:
        now = now_iso()
        entry.created_at = entry.created_at or now
        entry.last_accessed = entry.last_accessed or now
        self._execute(
            'INSERT INTO memory_entries (id, agent_id, type, content, confidence, model, source_conversation_id, '
            'tags_json, status, superseded_by, created_at, last_accessed, access_count) '
            'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (entry.id, entry.agent_id, entry.type.value, entry.content, entry.confidence, entry.model,
             entry.source_conversation_id, entry.tags_json, entry.status, entry.superseded_by, entry.created_at,
             entry.last_accessed, entry.access_count))

    @translate_errors
    def load_active_entries(self, agent_id: str, limit: Optional[int] = None) -> List[MemoryEntry]:
        """Active entries for an agent, highest confidence and newest first."""
        sql = ("SELECT * FROM memory_entries WHERE agent_id = ? AND status = 'active' AND superseded_by IS NULL "
               'ORDER BY confidence DESC, created_at DESC, rowid DESC')
        params: list = [agent_id]
        if limit is not None:
            sql += ' LIMIT ?'
            params.append(limit)
        return [self._row_to_entry(row) for row in self._query(sql, params)]

    @translate_errors
    def load_all_active_entries(self) -> List[MemoryEntry]:
        rows = self._query("SELECT * FROM memory_entries WHERE status = 'active' AND superseded_by IS NULL "
                           'ORDER BY created_at DESC, rowid DESC')
        return [self._row_to_entry(row) for row in rows]

    @translate_errors
    def load_entry(self, entry_id: str) -> Optional[MemoryEntry]:
        rows = self._query('SELECT * FROM memory_entries WHERE id = ?', (entry_id, ))
        return self._row_to_entry(rows[0]) if rows else None

    @translate_errors
    def load_active_entries_by_ids(self, ids: List[str]) -> List[MemoryEntry]:
        if not ids:
            return []
        placeholders = ','.join('?' * len(ids))
        rows = self._query(
            f"SELECT * FROM memory_entries WHERE id IN ({placeholders}) AND status = 'active' AND superseded_by IS NULL",
            ids)
        return [self._row_to_entry(row) for row in rows]

    @translate_errors
    def supersede(self, entry_id: str, by: str, reason: str) -> None:
        self._execute(
            "UPDATE memory_entries SET status = 'superseded', superseded_by = ?, superseded_reason = ? WHERE id = ?",
            (by, reason, entry_id))

    @translate_errors
    def touch_entries(self, ids: List[str]) -> None:
        """Bump recency metadata for entries injected into a prompt."""
        if not ids:
            return
        now = now_iso()
        with self._lock:
            self.conn.executemany(
                'UPDATE memory_entries SET last_accessed = ?, access_count = access_count + 1 WHERE id = ?',
                [(now, entry_id) for entry_id in ids])
            self.conn.commit()

    @translate_errors
    def search_memory_entries(self, query: str, agent_id: Optional[str] = None, limit: int = 50) -> List[MemoryEntry]:
        sql = ("SELECT * FROM memory_entries WHERE status = 'active' AND superseded_by IS NULL "
               "AND content LIKE ? ESCAPE '\\'")
        params: list = [_like(query)]
        if agent_id is not None:
            sql += ' AND agent_id = ?'
            params.append(agent_id)
        sql += ' ORDER BY confidence DESC, created_at DESC LIMIT ?'
        params.append(limit)
        return [self._row_to_entry(row) for row in self._query(sql, params)]

    # Pending signals

    @translate_errors
    def insert_pending_signal(self, signal: PendingSignal) -> int:
        signal.created_at = signal.created_at or now_iso()
        cursor = self._execute(
            'INSERT INTO pending_signals (agent_id, conversation_id, signal_type, user_message, assistant_message, '
            'status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)',
            (signal.agent_id, signal.conversation_id, signal.signal_type, signal.user_message, signal.assistant_message,
             'processed' if signal.processed else 'pending', signal.created_at))
        signal.id = cursor.lastrowid
        return signal.id

    @translate_errors
    def load_pending_signals(self, agent_id: str) -> List[PendingSignal]:
        rows = self._query("SELECT * FROM pending_signals WHERE agent_id = ? AND status = 'pending' ORDER BY id",
                           (agent_id, ))
        return [
            PendingSignal(id=row['id'],
                          agent_id=row['agent_id'],
                          conversation_id=row['conversation_id'],
                          signal_type=row['signal_type'],
                          user_message=row['user_message'],
                          assistant_message=row['assistant_message'],
                          processed=False,
                          created_at=row['created_at']) for row in rows
        ]

    @translate_errors
    def mark_signals_processed(self, signal_ids: List[int]) -> None:
        if not signal_ids:
            return
        placeholders = ','.join('?' * len(signal_ids))
        self._execute(f"UPDATE pending_signals SET status = 'processed' WHERE id IN ({placeholders})", signal_ids)

    @translate_errors
    def agents_with_pending_signals(self) -> List[str]:
        rows = self._query("SELECT DISTINCT agent_id FROM pending_signals WHERE status = 'pending' ORDER BY agent_id")
        return [row['agent_id'] for row in rows]

    @translate_errors
    def pending_signal_count(self, agent_id: str) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM pending_signals WHERE agent_id = ? AND status = 'pending'",
                           (agent_id, ))
        return rows[0]['n']

    # Profile events and profile

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ProfileEvent:
        return ProfileEvent(id=row['id'],
                            agent_id=row['agent_id'],
                            conversation_id=row['conversation_id'],
                            kind=ProfileEventKind(row['event_type']),
                            content=row['content'],
                            model=row['model'],
                            status=row['status'],
                            incorporated_in=row['incorporated_in'],
                            created_at=row['created_at'])

    @translate_errors
    def insert_profile_event(self, event: ProfileEvent) -> int:
        event.created_at = event.created_at or now_iso()
        cursor = self._execute(
            'INSERT INTO profile_events (agent_id, conversation_id, event_type, content, model, status, incorporated_in, '
            'created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)',
            (event.agent_id, event.conversation_id, event.kind.value, event.content, event.model, event.status,
             event.incorporated_in, event.created_at))
        event.id = cursor.lastrowid
        return event.id

    @translate_errors
    def load_unincorporated_contributions(self) -> List[ProfileEvent]:
        rows = self._query("SELECT * FROM profile_events WHERE event_type = ? AND status = 'active' "
                           'AND incorporated_in IS NULL ORDER BY id', (ProfileEventKind.CONTRIBUTION.value, ))
        return [self._row_to_event(row) for row in rows]

    @translate_errors
    def load_user_edits(self) -> List[ProfileEvent]:
        rows = self._query("SELECT * FROM profile_events WHERE event_type = ? AND status = 'active' ORDER BY id",
                           (ProfileEventKind.USER_EDIT.value, ))
        return [self._row_to_event(row) for row in rows]

    @translate_errors
    def load_profile_events(self, kind: Optional[ProfileEventKind] = None) -> List[ProfileEvent]:
        if kind is None:
            rows = self._query('SELECT * FROM profile_events ORDER BY id')
        else:
            rows = self._query('SELECT * FROM profile_events WHERE event_type = ? ORDER BY id', (kind.value, ))
        return [self._row_to_event(row) for row in rows]

    @translate_errors
    def contribution_count_since_last_regeneration(self) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM profile_events WHERE event_type = ? AND status = 'active' "
                           'AND incorporated_in IS NULL', (ProfileEventKind.CONTRIBUTION.value, ))
        return rows[0]['n']

    @translate_errors
    def mark_contributions_incorporated(self, event_ids: List[int], version: int) -> None:
        if not event_ids:
            return
        placeholders = ','.join('?' * len(event_ids))
        self._execute(f'UPDATE profile_events SET incorporated_in = ? WHERE id IN ({placeholders})',
                      [version, *event_ids])

    @translate_errors
    def load_user_profile(self) -> Optional[UserProfile]:
        rows = self._query('SELECT * FROM user_profile WHERE id = 1')
        if not rows:
            return None
        row = rows[0]
        return UserProfile(content=row['content'],
                           token_count=row['token_count'],
                           version=row['version'],
                           model=row['model'],
                           generated_at=row['generated_at'])

    @translate_errors
    def save_user_profile(self, profile: UserProfile) -> None:
        self._execute(
            'INSERT INTO user_profile (id, content, token_count, version, model, generated_at) VALUES (1, ?, ?, ?, ?, ?) '
            'ON CONFLICT(id) DO UPDATE SET content = excluded.content, token_count = excluded.token_count, '
            'version = excluded.version, model = excluded.model, generated_at = excluded.generated_at',
            (profile.content, profile.token_count, profile.version, profile.model, profile.generated_at))

    # Summaries

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> ConversationSummary:
        return ConversationSummary(id=row['id'],
                                   agent_id=row['agent_id'],
                                   conversation_id=row['conversation_id'],
                                   summary=row['summary'],
                                   token_count=row['token_count'],
                                   model=row['model'],
                                   conversation_at=row['conversation_at'],
                                   status=row['status'],
                                   created_at=row['created_at'])

    @translate_errors
    def insert_summary(self, summary: ConversationSummary) -> int:
        summary.created_at = summary.created_at or now_iso()
        summary.conversation_at = summary.conversation_at or summary.created_at
        cursor = self._execute(
            'INSERT INTO conversation_summaries (agent_id, conversation_id, summary, token_count, model, conversation_at, '
            'status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)',
            (summary.agent_id, summary.conversation_id, summary.summary, summary.token_count, summary.model,
             summary.conversation_at, summary.status, summary.created_at))
        summary.id = cursor.lastrowid
        return summary.id

    @translate_errors
    def load_summaries(self, agent_id: Optional[str] = None, days: int = 30) -> List[ConversationSummary]:
        """Active summaries from the last ``days`` days, newest first."""
        sql = "SELECT * FROM conversation_summaries WHERE status = 'active' AND conversation_at >= ?"
        params: list = [days_ago_iso(days)]
        if agent_id is not None:
            sql += ' AND agent_id = ?'
            params.append(agent_id)
        sql += ' ORDER BY conversation_at DESC, id DESC'
        return [self._row_to_summary(row) for row in self._query(sql, params)]

    @translate_errors
    def search_summaries(self, query: str, agent_id: Optional[str] = None, days: int = 30) -> List[ConversationSummary]:
        sql = ("SELECT * FROM conversation_summaries WHERE status = 'active' AND conversation_at >= ? "
               "AND summary LIKE ? ESCAPE '\\'")
        params: list = [days_ago_iso(days), _like(query)]
        if agent_id is not None:
            sql += ' AND agent_id = ?'
            params.append(agent_id)
        sql += ' ORDER BY conversation_at DESC, id DESC'
        return [self._row_to_summary(row) for row in self._query(sql, params)]

    # Conversation chunks

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> ConversationChunk:
        return ConversationChunk(id=row['id'],
                                 conversation_id=row['conversation_id'],
                                 chunk_index=row['chunk_index'],
                                 role=row['role'],
                                 content=row['content'],
                                 token_count=row['token_count'],
                                 agent_id=row['agent_id'],
                                 conversation_title=row['conversation_title'],
                                 created_at=row['created_at'])

    @translate_errors
    def insert_chunk(self, chunk: ConversationChunk) -> int:
        """Insert or replace the chunk at (conversation_id, chunk_index)."""
        chunk.created_at = chunk.created_at or now_iso()
        cursor = self._execute(
            'INSERT INTO conversation_chunks (conversation_id, chunk_index, role, content, token_count, agent_id, '
            'conversation_title, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) '
            'ON CONFLICT(conversation_id, chunk_index) DO UPDATE SET role = excluded.role, content = excluded.content, '
            'token_count = excluded.token_count, conversation_title = excluded.conversation_title',
            (chunk.conversation_id, chunk.chunk_index, chunk.role, chunk.content, chunk.token_count, chunk.agent_id,
             chunk.conversation_title, chunk.created_at))
        chunk.id = cursor.lastrowid
        return chunk.id

    @translate_errors
    def load_chunks(self, agent_id: Optional[str] = None, days: int = 30) -> List[ConversationChunk]:
        sql = 'SELECT * FROM conversation_chunks WHERE created_at >= ?'
        params: list = [days_ago_iso(days)]
        if agent_id is not None:
            sql += ' AND agent_id = ?'
            params.append(agent_id)
        sql += ' ORDER BY created_at DESC, conversation_id, chunk_index'
        return [self._row_to_chunk(row) for row in self._query(sql, params)]

    @translate_errors
    def search_chunks(self, query: str, agent_id: Optional[str] = None, days: int = 30) -> List[ConversationChunk]:
        sql = "SELECT * FROM conversation_chunks WHERE created_at >= ? AND content LIKE ? ESCAPE '\\'"
        params: list = [days_ago_iso(days), _like(query)]
        if agent_id is not None:
            sql += ' AND agent_id = ?'
            params.append(agent_id)
        sql += ' ORDER BY created_at DESC, conversation_id, chunk_index'
        return [self._row_to_chunk(row) for row in self._query(sql, params)]

    # Knowledge graph

    @translate_errors
    def resolve_or_create_entity(self, name: str, entity_type: str) -> GraphEntity:
        """Return the entity with this case-insensitive name, creating it if absent."""
        key = name.strip().lower()
        with self._lock:
            rows = self.conn.execute('SELECT * FROM graph_entities WHERE name_key = ?', (key, )).fetchall()
            if rows:
                row = rows[0]
                return GraphEntity(id=row['id'], name=row['name'], type=row['type'], created_at=row['created_at'])
            entity = GraphEntity(name=name.strip(), type=entity_type or 'unknown', created_at=now_iso())
            self.conn.execute('INSERT INTO graph_entities (id, name, name_key, type, created_at) VALUES (?, ?, ?, ?, ?)',
                              (entity.id, entity.name, key, entity.type, entity.created_at))
            self.conn.commit()
            return entity

    @translate_errors
    def find_entity(self, name: str) -> Optional[GraphEntity]:
        rows = self._query('SELECT * FROM graph_entities WHERE name_key = ?', (name.strip().lower(), ))
        if not rows:
            return None
        row = rows[0]
        return GraphEntity(id=row['id'], name=row['name'], type=row['type'], created_at=row['created_at'])

    @translate_errors
    def insert_relationship(self, relationship: GraphRelationship) -> None:
        relationship.created_at = relationship.created_at or now_iso()
        self._execute(
            'INSERT INTO graph_relationships (id, source_id, target_id, relation, confidence, agent_id, created_at) '
            'VALUES (?, ?, ?, ?, ?, ?, ?)', (relationship.id, relationship.source_id, relationship.target_id,
                                             relationship.relation, relationship.confidence, relationship.agent_id,
                                             relationship.created_at))

    _RELATIONSHIP_SELECT = ('SELECT r.*, s.name AS source_name, t.name AS target_name FROM graph_relationships r '
                            'JOIN graph_entities s ON s.id = r.source_id JOIN graph_entities t ON t.id = r.target_id')

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> GraphRelationship:
        return GraphRelationship(id=row['id'],
                                 source_id=row['source_id'],
                                 target_id=row['target_id'],
                                 relation=row['relation'],
                                 confidence=row['confidence'],
                                 agent_id=row['agent_id'],
                                 source_name=row['source_name'],
                                 target_name=row['target_name'],
                                 created_at=row['created_at'])

    @translate_errors
    def load_recent_relationships(self, limit: int = 20) -> List[GraphRelationship]:
        rows = self._query(f'{self._RELATIONSHIP_SELECT} ORDER BY r.created_at DESC, r.rowid DESC LIMIT ?', (limit, ))
        return [self._row_to_relationship(row) for row in rows]

    @translate_errors
    def query_relationships(self,
                            entity_name: Optional[str] = None,
                            relation: Optional[str] = None,
                            depth: int = 1,
                            limit: int = 100) -> List[GraphRelationship]:
        """
        Relationships reachable from an entity within ``depth`` hops.

        Without an entity name, every edge (optionally filtered by relation)
        is returned, most recent first. A named entity with ``depth`` below 1
        has no edges in range.
        """
        relation_key = relation.strip().lower() if relation else None
        if not entity_name:
            sql = self._RELATIONSHIP_SELECT
            params: list = []
            if relation_key:
                sql += ' WHERE lower(r.relation) = ?'
                params.append(relation_key)
            sql += ' ORDER BY r.created_at DESC, r.rowid DESC LIMIT ?'
            params.append(limit)
            return [self._row_to_relationship(row) for row in self._query(sql, params)]

        start = self.find_entity(entity_name)
        if start is None or depth < 1:
            return []

        frontier = {start.id}
        visited = {start.id}
        seen_edges = set()
        results: List[GraphRelationship] = []
        for _ in range(depth):
            if not frontier:
                break
            placeholders = ','.join('?' * len(frontier))
            rows = self._query(
                f'{self._RELATIONSHIP_SELECT} WHERE r.source_id IN ({placeholders}) OR r.target_id IN ({placeholders}) '
                'ORDER BY r.created_at DESC, r.rowid DESC', [*frontier, *frontier])
            next_frontier = set()
            for row in rows:
                if row['id'] in seen_edges:
                    continue
                seen_edges.add(row['id'])
                edge = self._row_to_relationship(row)
                if relation_key is None or edge.relation.lower() == relation_key:
                    results.append(edge)
                for node in (edge.source_id, edge.target_id):
                    if node not in visited:
                        visited.add(node)
                        next_frontier.add(node)
            frontier = next_frontier
        return results[:limit]

    # Processing logs and agent activity

    @translate_errors
    def insert_processing_log(self, log: ProcessingLog) -> None:
        log.created_at = log.created_at or now_iso()
        self._execute(
            'INSERT INTO processing_logs (agent_id, task_type, model, status, input_tokens, output_tokens, duration_ms, '
            'details, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)',
            (log.agent_id, log.task_type, log.model, log.status, log.input_tokens, log.output_tokens, log.duration_ms,
             log.details, log.created_at))

    @translate_errors
    def load_processing_logs(self, agent_id: Optional[str] = None) -> List[ProcessingLog]:
        if agent_id is None:
            rows = self._query('SELECT * FROM processing_logs ORDER BY id')
        else:
            rows = self._query('SELECT * FROM processing_logs WHERE agent_id = ? ORDER BY id', (agent_id, ))
        return [
            ProcessingLog(id=row['id'],
                          agent_id=row['agent_id'],
                          task_type=row['task_type'],
                          model=row['model'],
                          status=row['status'],
                          input_tokens=row['input_tokens'],
                          output_tokens=row['output_tokens'],
                          duration_ms=row['duration_ms'],
                          details=row['details'],
                          created_at=row['created_at']) for row in rows
        ]

    @translate_errors
    def update_agent_activity(self, agent_id: str) -> None:
        self._execute(
            'INSERT INTO agent_activity (agent_id, last_activity) VALUES (?, ?) '
            'ON CONFLICT(agent_id) DO UPDATE SET last_activity = excluded.last_activity', (agent_id, now_iso()))

    @translate_errors
    def agents_needing_processing(self, inactivity_seconds: int) -> List[str]:
        """Agents idle for at least ``inactivity_seconds`` that still have pending signals."""
        rows = self._query(
            "SELECT DISTINCT s.agent_id FROM pending_signals s LEFT JOIN agent_activity a ON a.agent_id = s.agent_id "
            "WHERE s.status = 'pending' AND (a.last_activity IS NULL OR a.last_activity <= ?) ORDER BY s.agent_id",
            (seconds_ago_iso(inactivity_seconds), ))
        return [row['agent_id'] for row in rows]
