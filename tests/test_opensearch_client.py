"""
Tests for the OpenSearch hybrid index client with a mocked OpenSearch client.
"""

from unittest.mock import MagicMock, patch

import pytest
from opensearchpy.exceptions import NotFoundError, TransportError

from agent_memory.utils.bedrock_embed import BedrockEmbedError
from agent_memory.utils.config import OpenSearchConfig
from agent_memory.utils.opensearch_client import OpenSearchError, OpenSearchVectorIndex, normalize_scores


def _response(*hits):
    return {'hits': {'hits': [{'_id': doc_id, '_score': score, '_source': {'text': text}} for doc_id, score, text in hits]}}


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def embedder():
    embed = MagicMock()
    embed.embed_documents.side_effect = lambda texts: [[0.1, 0.2, 0.3, 0.4] for _ in texts]
    embed.embed_query.return_value = [0.1, 0.2, 0.3, 0.4]
    return embed


@pytest.fixture
def index(client, embedder):
    config = OpenSearchConfig(endpoint='localhost',
                              port=443,
                              region='us-east-1',
                              index_name='memory-test',
                              dimension=4,
                              index_ready_wait_seconds=0)
    return OpenSearchVectorIndex(config, embedder, client=client)


class TestNormalizeScores:
    def test_min_max(self):
        results = normalize_scores([{'score': 2.0}, {'score': 4.0}])
        assert [r['score'] for r in results] == [0.0, 1.0]

    def test_equal_scores(self):
        assert [r['score'] for r in normalize_scores([{'score': 3.0}, {'score': 3.0}])] == [1.0, 1.0]


class TestCreateIndex:
    def test_existing_index(self, index, client):
        client.indices.exists.return_value = True
        assert index.create_index_if_not_exists() == 'exists'
        client.indices.create.assert_not_called()

    def test_created_with_knn_mapping(self, index, client):
        client.indices.exists.return_value = False
        client.indices.create.return_value = {'acknowledged': True}

        assert index.create_index_if_not_exists() == 'created'
        body = client.indices.create.call_args.kwargs['body']
        assert body['mappings']['properties']['embedding']['dimension'] == 4
        assert body['settings']['index']['knn'] is True

    def test_not_acknowledged(self, index, client):
        client.indices.exists.return_value = False
        client.indices.create.return_value = {'acknowledged': False}
        assert index.create_index_if_not_exists() == 'failed'

    def test_transport_error_wrapped(self, index, client):
        client.indices.exists.side_effect = TransportError(500, 'boom', {})
        with pytest.raises(OpenSearchError):
            index.create_index_if_not_exists()


class TestAddDocuments:
    def test_bulk_index_actions(self, index):
        with patch('agent_memory.utils.opensearch_client.helpers.bulk', return_value=(2, [])) as bulk:
            index.add_documents(['first text', 'second text'], ['id-1', 'id-2'])

        actions = bulk.call_args.args[1]
        assert [a['_id'] for a in actions] == ['id-1', 'id-2']
        assert actions[0]['_source']['text'] == 'first text'
        assert actions[0]['_source']['embedding'] == [0.1, 0.2, 0.3, 0.4]

    def test_bulk_errors_raise(self, index):
        with patch('agent_memory.utils.opensearch_client.helpers.bulk', return_value=(0, [{'error': 'x'}])):
            with pytest.raises(OpenSearchError):
                index.add_document('text', 'id-1')

    def test_mismatched_lengths(self, index):
        with pytest.raises(OpenSearchError):
            index.add_documents(['a'], ['1', '2'])

    def test_embedding_failure_wrapped(self, index, embedder):
        embedder.embed_documents.side_effect = BedrockEmbedError('throttled')
        with pytest.raises(OpenSearchError):
            index.add_document('text', 'id-1')


class TestSearch:
    def test_hybrid_scores_combined_and_thresholded(self, index, client):
        client.search.side_effect = [
            _response(('a', 0.9, 'alpha'), ('b', 0.5, 'beta')),
            _response(('b', 3.0, 'beta'), ('c', 1.0, 'gamma')),
        ]

        hits = index.search('query', k=5, threshold=0.3)

        assert {hit.id: hit.score for hit in hits} == {'a': 0.5, 'b': 0.5}
        assert client.search.call_count == 2
        vector_body = client.search.call_args_list[0].kwargs['body']
        assert vector_body['query']['knn']['embedding']['k'] == 10

    def test_truncated_to_k(self, index, client):
        client.search.side_effect = [_response(('a', 0.9, 'a'), ('b', 0.5, 'b'), ('c', 0.1, 'c')), _response()]
        assert [hit.id for hit in index.search('query', k=1)] == ['a']

    def test_query_embedding_failure_wrapped(self, index, embedder):
        embedder.embed_query.side_effect = BedrockEmbedError('throttled')
        with pytest.raises(OpenSearchError):
            index.search('query')


class TestDeleteAndReset:
    def test_missing_document_tolerated(self, index, client):
        client.delete.side_effect = [NotFoundError(404, 'not_found', {}), None]
        index.delete_documents(['gone', 'present'])
        assert client.delete.call_count == 2

    def test_delete_error_raises(self, index, client):
        client.delete.side_effect = TransportError(500, 'boom', {})
        with pytest.raises(OpenSearchError):
            index.delete_documents(['x'])

    def test_reset_recreates_index(self, index, client):
        client.indices.exists.side_effect = [True, False]
        client.indices.create.return_value = {'acknowledged': True}

        index.reset()

        client.indices.delete.assert_called_once_with(index='memory-test')
        client.indices.create.assert_called_once()
