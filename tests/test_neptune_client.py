"""
Tests for the Neptune graph store with a mocked traversal source.
"""

from unittest.mock import MagicMock

import pytest

from agent_memory.utils.config import NeptuneConfig
from agent_memory.utils.neptune_client import NeptuneError, NeptuneGraphStore


@pytest.fixture
def store():
    return NeptuneGraphStore(NeptuneConfig(endpoint='localhost', port=8182, region='us-east-1'), g=MagicMock())


class TestNeptuneGraphStore:
    def test_find_entity_reads_value_map(self, store):
        store.g.V.return_value.has_label.return_value.has.return_value.value_map.return_value.to_list.return_value = [{
            'id': ['e-1'],
            'name': ['Sam'],
            'type': ['person'],
            'created_at': ['2024-01-01T00:00:00+00:00']
        }]

        entity = store.find_entity(' SAM ')

        assert (entity.id, entity.name, entity.type) == ('e-1', 'Sam', 'person')
        store.g.V.return_value.has_label.return_value.has.assert_called_once_with('name_key', 'sam')

    def test_errors_wrapped(self, store):
        store.g.V.side_effect = RuntimeError('socket closed')
        with pytest.raises(NeptuneError):
            store.find_entity('Sam')

    def test_edges_deduplicated(self, store):
        row = {
            'edge': {
                'id': 'r-1',
                'relation': 'works_at',
                'confidence': 0.9,
                'agent_id': 'agent-1'
            },
            'source': {
                'id': ['e-1'],
                'name': ['Sam']
            },
            'target': {
                'id': ['e-2'],
                'name': ['Acme']
            }
        }

        [edge] = store._edges_to_relationships([row, row])

        assert edge.describe() == 'Sam works_at Acme'
        assert (edge.confidence, edge.agent_id) == (0.9, 'agent-1')

    def test_health_check(self, store):
        assert store.health_check() is True
        store.g.V.side_effect = RuntimeError('down')
        with pytest.raises(NeptuneError):
            store.health_check()

    def test_zero_depth_skips_traversal(self, store):
        assert store.query_relationships('Sam', depth=0) == []
        store.g.V.assert_not_called()
