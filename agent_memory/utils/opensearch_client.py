"""
OpenSearch hybrid (k-NN + BM25) document index for memory search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import SearchHit
from .bedrock_embed import BedrockEmbed, BedrockEmbedError
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import now_iso

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def normalize_scores(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Min-max normalize result scores in place to the 0-1 range."""
    if not results:
        return results
    scores = [r['score'] for r in results]
    min_score, max_score = min(scores), max(scores)
    if max_score == min_score:
        for result in results:
            result['score'] = 1.0
        return results
    for result in results:
        result['score'] = (result['score'] - min_score) / (max_score - min_score)
    return results


class OpenSearchVectorIndex:
    """Hybrid vector + lexical document index backed by OpenSearch.

    Documents carry only an id, their text, and an embedding. Every call may
    raise OpenSearchError; callers treat that as "index unavailable".
    """

    def __init__(self, config: OpenSearchConfig, embedder: BedrockEmbed, client: Optional[OpenSearch] = None):
        """
        Initialize the index client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            embedder: Embedding client for documents and queries
            client: Optional pre-built OpenSearch client
        """
        self.config = config
        self.embedder = embedder
        self.index_name = config.index_name
        self.client = client or self._build_client(config)
        logger.info(f'Initialized OpenSearch index {self.index_name} at {config.endpoint}')

    @staticmethod
    def _build_client(config: OpenSearchConfig) -> OpenSearch:
        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=True,
                          verify_certs=True,
                          connection_class=RequestsHttpConnection)

    def _index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'text': {
                        'type': 'text'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'indexed_at': {
                        'type': 'date'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    def create_index_if_not_exists(self) -> str:
        """
        Create the document index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=self._index_body())
            if not response.get('acknowledged', False):
                return 'failed'
            logger.info(f'Created index {self.index_name}')
            if self.config.index_ready_wait_seconds > 0:
                logger.info(f'Waiting {self.config.index_ready_wait_seconds}s for index {self.index_name} sync-up...')
                time.sleep(self.config.index_ready_wait_seconds)
            return 'created'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def add_document(self, text: str, doc_id: str) -> None:
        """Index (or replace) one document under ``doc_id``."""
        self.add_documents([text], [doc_id])

    def add_documents(self, texts: List[str], ids: List[str]) -> None:
        """Index (or replace) documents; ids and texts are paired by position."""
        if len(texts) != len(ids):
            raise OpenSearchError(f'Got {len(texts)} texts for {len(ids)} ids')
        if not texts:
            return
        try:
            embeddings = self.embedder.embed_documents(texts)
            indexed_at = now_iso()
            actions = [{
                '_op_type': 'index',
                '_index': self.index_name,
                '_id': doc_id,
                '_source': {
                    'id': doc_id,
                    'text': text,
                    'embedding': embedding,
                    'indexed_at': indexed_at
                }
            } for doc_id, text, embedding in zip(ids, texts, embeddings)]
            success, errors = helpers.bulk(self.client, actions, raise_on_error=False)
            if errors:
                raise OpenSearchError(f'{len(errors)} documents failed to index: {errors[:3]}')
            logger.debug(f'Indexed {success} documents in {self.index_name}')
        except BedrockEmbedError as e:
            raise OpenSearchError(f'Embedding failed while indexing: {e}')
        except OpenSearchException as e:
            logger.error(f'Error indexing documents: {e}')
            raise OpenSearchError(f'Failed to index documents: {e}')

    def _run_query(self, query: Dict[str, Any], size: int) -> List[Dict[str, Any]]:
        body = {'size': size, 'query': query, '_source': {'excludes': ['embedding']}}
        response = self.client.search(index=self.index_name, body=body)
        return [{
            'id': hit['_id'],
            'score': hit['_score'],
            'text': hit['_source'].get('text', '')
        } for hit in response['hits']['hits']]

    def vector_search(self, query_vector: List[float], top_k: int) -> List[Dict[str, Any]]:
        return self._run_query({'knn': {'embedding': {'vector': query_vector, 'k': top_k}}}, top_k)

    def keyword_search(self, query_text: str, top_k: int) -> List[Dict[str, Any]]:
        return self._run_query({'match': {'text': query_text}}, top_k)

    def search(self, query: str, k: int = 10, threshold: float = 0.0) -> List[SearchHit]:
        """
        Hybrid search combining vector and keyword relevance.

        Args:
            query: Natural language query
            k: Number of results to return
            threshold: Minimum combined score (0-1) to keep a hit

        Returns:
            Hits sorted by combined score, best first
        """
        try:
            query_vector = self.embedder.embed_query(query)
            vector_results = normalize_scores(self.vector_search(query_vector, k * 2))
            keyword_results = normalize_scores(self.keyword_search(query, k * 2))
        except BedrockEmbedError as e:
            raise OpenSearchError(f'Query embedding failed: {e}')
        except OpenSearchException as e:
            logger.error(f'Error performing hybrid search: {e}')
            raise OpenSearchError(f'Hybrid search failed: {e}')

        # Combine normalized scores
        vector_weight = self.config.vector_weight
        combined: Dict[str, Dict[str, Any]] = {}
        for result in vector_results:
            combined[result['id']] = {'text': result['text'], 'vector_score': result['score'], 'keyword_score': 0.0}
        for result in keyword_results:
            entry = combined.setdefault(result['id'], {'text': result['text'], 'vector_score': 0.0, 'keyword_score': 0.0})
            entry['keyword_score'] = result['score']

        hits = []
        for doc_id, data in combined.items():
            score = data['vector_score'] * vector_weight + data['keyword_score'] * (1.0 - vector_weight)
            if score >= threshold:
                hits.append(SearchHit(id=doc_id, score=score, text=data['text']))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        logger.debug(f'Hybrid search returned {len(hits[:k])} hits for: {query[:50]}')
        return hits[:k]

    def delete_documents(self, ids: List[str]) -> None:
        for doc_id in ids:
            try:
                self.client.delete(index=self.index_name, id=doc_id)
                logger.debug(f'Deleted document {doc_id} from {self.index_name}')
            except NotFoundError:
                logger.warning(f'Document {doc_id} not found for deletion')
            except OpenSearchException as e:
                logger.error(f'Error deleting document {doc_id}: {e}')
                raise OpenSearchError(f'Failed to delete document: {e}')

    def reset(self) -> None:
        """Drop every document by recreating the index."""
        try:
            if self.client.indices.exists(index=self.index_name):
                self.client.indices.delete(index=self.index_name)
                logger.info(f'Deleted index: {self.index_name}')
        except OpenSearchException as e:
            logger.error(f'Error resetting index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to reset index: {e}')
        self.create_index_if_not_exists()

    def health_check(self) -> bool:
        try:
            return self.client.indices.exists(index=self.index_name) in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
