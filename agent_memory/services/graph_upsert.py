"""
Knowledge-graph upserts for extracted entities and relationships.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models.core import ExtractedRelationship, GraphEntity, GraphRelationship
from ..utils.logging_config import MemoryEventLog, get_logger
from ..utils.neptune_client import NeptuneError
from ..utils.sqlite_client import StorageError

logger = get_logger(__name__)

GRAPH_ERRORS = (StorageError, NeptuneError)


@dataclass
class GraphUpsertOutcome:
    entities: int = 0
    relationships: int = 0
    failures: int = 0


class GraphUpserter:
    """Resolves or creates entities by case-insensitive name and links them.

    ``graph_store`` is either the SQLite store or the Neptune store.
    """

    def __init__(self, graph_store, events: Optional[MemoryEventLog] = None):
        self.graph_store = graph_store
        self.events = events or MemoryEventLog(logger)

    def upsert(self,
               entities: List[Dict[str, str]],
               relationships: List[ExtractedRelationship],
               agent_id: Optional[str] = None) -> GraphUpsertOutcome:
        outcome = GraphUpsertOutcome()
        resolved: Dict[str, GraphEntity] = {}
        declared_types = {}

        for item in entities:
            name = (item.get('name') or '').strip()
            if not name:
                continue
            declared_types[name.lower()] = (item.get('type') or 'unknown').strip().lower() or 'unknown'
            entity = self._resolve(name, declared_types[name.lower()], resolved)
            if entity is None:
                outcome.failures += 1
            else:
                outcome.entities += 1

        for rel in relationships:
            source = self._resolve(rel.source, declared_types.get(rel.source.lower(), 'unknown'), resolved)
            target = self._resolve(rel.target, declared_types.get(rel.target.lower(), 'unknown'), resolved)
            if source is None or target is None:
                outcome.failures += 1
                continue
            edge = GraphRelationship(source_id=source.id,
                                     target_id=target.id,
                                     relation=rel.relation,
                                     confidence=rel.confidence,
                                     agent_id=agent_id,
                                     source_name=source.name,
                                     target_name=target.name)
            try:
                self.graph_store.insert_relationship(edge)
                outcome.relationships += 1
            except GRAPH_ERRORS as e:
                outcome.failures += 1
                self.events.error('graph_upsert_failed',
                                  'Failed to insert relationship',
                                  relationship=edge.describe(),
                                  error=str(e))

        if entities or relationships:
            self.events.debug('graph_upserted',
                              'Graph upsert finished',
                              entities=outcome.entities,
                              relationships=outcome.relationships,
                              failures=outcome.failures)
        return outcome

    def _resolve(self, name: str, entity_type: str, resolved: Dict[str, GraphEntity]) -> Optional[GraphEntity]:
        key = name.strip().lower()
        if key in resolved:
            return resolved[key]
        try:
            entity = self.graph_store.resolve_or_create_entity(name.strip(), entity_type)
        except GRAPH_ERRORS as e:
            self.events.error('graph_upsert_failed', 'Failed to resolve entity', entity=name, error=str(e))
            return None
        resolved[key] = entity
        return entity
