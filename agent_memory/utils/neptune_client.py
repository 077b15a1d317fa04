"""
Amazon Neptune knowledge-graph store with Gremlin Python driver and AWS SigV4 authentication.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Order

from ..models.core import GraphEntity, GraphRelationship
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[str, Any], key: str, default: Any = '') -> Any:
    """value_map(True) wraps each property in a list."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


class NeptuneGraphStore:
    """Knowledge-graph store on Amazon Neptune.

    Entities are ``Entity`` vertices keyed by a lower-cased ``name_key``;
    relationships are ``Relation`` edges.
    """

    def __init__(self, config: NeptuneConfig, g: Optional[Any] = None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Optional pre-built traversal source
        """
        self.config = config
        self.connection = None
        self.g = g
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        # Get AWS credentials
        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    @staticmethod
    def _to_entity(data: Dict[str, Any]) -> GraphEntity:
        return GraphEntity(id=_first(data, 'id'),
                           name=_first(data, 'name'),
                           type=_first(data, 'type', 'unknown'),
                           created_at=_first(data, 'created_at'))

    @retry_on_connection_error
    def find_entity(self, name: str) -> Optional[GraphEntity]:
        found = self.g.V().has_label('Entity').has('name_key', name.strip().lower()).value_map(True).to_list()
        return self._to_entity(found[0]) if found else None

    @retry_on_connection_error
    def resolve_or_create_entity(self, name: str, entity_type: str) -> GraphEntity:
        """Return the entity with this case-insensitive name, creating it if absent."""
        existing = self.find_entity(name)
        if existing is not None:
            return existing

        entity = GraphEntity(name=name.strip(), type=entity_type or 'unknown', created_at=now_iso())
        self.g.addV('Entity').property('id', entity.id)\
            .property('name', entity.name)\
            .property('name_key', entity.name.lower())\
            .property('type', entity.type)\
            .property('created_at', entity.created_at)\
            .next()
        logger.debug(f'Created entity vertex: {entity.name} ({entity.id})')
        return entity

    @retry_on_connection_error
    def insert_relationship(self, relationship: GraphRelationship) -> None:
        relationship.created_at = relationship.created_at or now_iso()
        source = self.g.V().has('id', relationship.source_id).next()
        target = self.g.V().has('id', relationship.target_id).next()

        edge = self.g.V(source).addE('Relation').to(target)\
            .property('id', relationship.id)\
            .property('relation', relationship.relation)\
            .property('relation_key', relationship.relation.lower())\
            .property('confidence', relationship.confidence)\
            .property('created_at', relationship.created_at)
        if relationship.agent_id:
            edge = edge.property('agent_id', relationship.agent_id)
        edge.next()
        logger.debug(f'Created relationship edge: {relationship.relation} ({relationship.id})')

    def _edges_to_relationships(self, rows: List[Dict[str, Any]]) -> List[GraphRelationship]:
        relationships = []
        seen = set()
        for row in rows:
            edge = row.get('edge', {})
            edge_id = _first(edge, 'id')
            if not edge_id or edge_id in seen:
                continue
            seen.add(edge_id)
            source, target = row.get('source', {}), row.get('target', {})
            relationships.append(
                GraphRelationship(id=edge_id,
                                  source_id=_first(source, 'id'),
                                  target_id=_first(target, 'id'),
                                  relation=_first(edge, 'relation'),
                                  confidence=float(_first(edge, 'confidence', 1.0)),
                                  agent_id=_first(edge, 'agent_id', None),
                                  source_name=_first(source, 'name'),
                                  target_name=_first(target, 'name'),
                                  created_at=_first(edge, 'created_at')))
        return relationships

    def _project(self, edges):
        return edges.project('edge', 'source', 'target')\
            .by(__.value_map(True))\
            .by(__.out_v().value_map(True))\
            .by(__.in_v().value_map(True))

    @retry_on_connection_error
    def load_recent_relationships(self, limit: int = 20) -> List[GraphRelationship]:
        edges = self.g.E().has_label('Relation').order().by('created_at', Order.desc).limit(limit)
        return self._edges_to_relationships(self._project(edges).to_list())

    @retry_on_connection_error
    def query_relationships(self,
                            entity_name: Optional[str] = None,
                            relation: Optional[str] = None,
                            depth: int = 1,
                            limit: int = 100) -> List[GraphRelationship]:
        """Relationships reachable from an entity within ``depth`` hops."""
        if not entity_name:
            edges = self.g.E().has_label('Relation')
            if relation:
                edges = edges.has('relation_key', relation.strip().lower())
            edges = edges.order().by('created_at', Order.desc).limit(limit)
            return self._edges_to_relationships(self._project(edges).to_list())

        if depth < 1:
            return []

        edges = self.g.V().has_label('Entity').has('name_key', entity_name.strip().lower())\
            .repeat(__.both_e().has_label('Relation').as_('e').other_v())\
            .emit()\
            .times(depth)\
            .select('e')\
            .dedup()
        if relation:
            edges = edges.has('relation_key', relation.strip().lower())
        return self._edges_to_relationships(self._project(edges.limit(limit)).to_list())

    @retry_on_connection_error
    def cleanup(self) -> bool:
        """Delete every vertex and edge."""
        logger.info('Deleting all edges from Neptune...')
        self.g.E().drop().iterate()
        logger.info('Deleting all vertices from Neptune...')
        self.g.V().drop().iterate()
        return True

    @retry_on_connection_error
    def health_check(self) -> bool:
        self.g.V().limit(1).count().next()
        return True
