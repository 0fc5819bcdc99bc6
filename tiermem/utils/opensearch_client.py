"""
OpenSearch k-NN index adapter for L3 fragment embeddings.

Each document stores the embedding and its insertion slot; search() returns
slots so the vector memory can map hits back to its fragment list.
"""

import math
import time
from typing import List, Optional, Sequence, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch vector index with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None, sync_wait_seconds: float = 15.0):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (a signed one is created if None)
            sync_wait_seconds: Pause after index creation while the collection syncs
        """
        self.config = config
        self.index_name = config.index_name
        self.dimension = config.dimension
        self.sync_wait_seconds = sync_wait_seconds

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        self.create_index_if_not_exists()
        self._size = self._count()
        logger.info(f'Initialized OpenSearch index {self.index_name} at {config.endpoint} ({self._size} vectors)')

    def create_index_if_not_exists(self) -> str:
        """
        Create the k-NN index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'slot': {
                            'type': 'integer'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'l2',
                                'engine': 'nmslib'
                            }
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

            response = self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            if response.get('acknowledged', False):
                if self.sync_wait_seconds > 0:
                    logger.info(f'Waiting {self.sync_wait_seconds}s for index {self.index_name} sync-up...')
                    time.sleep(self.sync_wait_seconds)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def _count(self) -> int:
        try:
            return int(self.client.count(index=self.index_name)['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting documents in {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to count documents: {e}')

    def add(self, vectors: Sequence[Sequence[float]]) -> None:
        """
        Index vectors at the next free slots.

        Args:
            vectors: Vectors to index, in slot order
        """
        for vector in vectors:
            if len(vector) != self.dimension:
                raise OpenSearchError(f'Expected vectors of dimension {self.dimension}, got {len(vector)}')
            try:
                response = self.client.index(index=self.index_name, body={'slot': self._size, 'embedding': list(vector)})
            except OpenSearchException as e:
                logger.error(f'Error indexing vector at slot {self._size}: {e}')
                raise OpenSearchError(f'Failed to index vector: {e}')
            if response.get('result') not in ['created', 'updated']:
                raise OpenSearchError(f'Unexpected result indexing vector: {response}')
            self._size += 1

    def search(self, query_vector: Sequence[float], k: int) -> Tuple[List[float], List[int]]:
        """
        Perform k-NN search.

        Args:
            query_vector: Query vector
            k: Number of neighbours

        Returns:
            (distances, slots) sorted by ascending Euclidean distance
        """
        if self._size == 0 or k <= 0:
            return [], []

        search_body = {
            'size': k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': list(query_vector),
                        'k': k
                    }
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        distances = []
        slots = []
        for hit in response['hits']['hits']:
            slots.append(int(hit['_source']['slot']))
            distances.append(self.score_to_distance(hit['_score']))

        logger.debug(f'Vector search returned {len(slots)} results')
        return distances, slots

    @staticmethod
    def score_to_distance(score: float) -> float:
        """Invert the l2 space score 1 / (1 + d^2) back to the Euclidean distance d."""
        if score <= 0:
            return math.inf
        return math.sqrt(max(0.0, 1.0 / score - 1.0))

    def size(self) -> int:
        return self._size

    def reset(self) -> None:
        """Drop and recreate the index."""
        try:
            if self.client.indices.exists(index=self.index_name):
                self.client.indices.delete(index=self.index_name)
                logger.info(f'Deleted index: {self.index_name}')
        except OpenSearchException as e:
            logger.error(f'Error deleting index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to reset index: {e}')
        self.create_index_if_not_exists()
        self._size = 0

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)
            return response in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
