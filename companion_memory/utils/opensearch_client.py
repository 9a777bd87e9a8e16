"""
OpenSearch client wrapper for companion passage similarity search.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from opensearchpy.helpers import bulk
from requests_aws4auth import AWS4Auth

from ..models.core import SearchResult
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def parse_hits(response: Any) -> List[SearchResult]:
    """Turn a raw search response into results, treating malformed shapes as empty.

    Individual hits without string content are skipped.
    """
    outer = response.get('hits') if isinstance(response, dict) else None
    hits = outer.get('hits') if isinstance(outer, dict) else None
    if not isinstance(hits, list):
        logger.warning('Unexpected response format from similarity search')
        return []

    results = []
    for hit in hits:
        if not isinstance(hit, dict):
            continue
        source = hit.get('_source')
        if not isinstance(source, dict):
            continue
        content = source.get('content')
        if not isinstance(content, str):
            continue
        try:
            score = float(hit.get('_score') or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        metadata = {k: v for k, v in source.items() if k not in ('content', 'embedding')}
        results.append(SearchResult(content=content, score=score, metadata=metadata))
    return results


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built OpenSearch client
        """
        self.config = config
        self.index_name = config.index_name

        if client is not None:
            self.client = client
            return

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self, sync_wait: float = 15.0) -> str:
        """
        Create the passage index if it doesn't exist.

        Args:
            sync_wait: Seconds to wait after creation for the collection to sync

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
                        'content': {
                            'type': 'text'
                        },
                        'file_name': {
                            'type': 'keyword'
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
                        'created_at': {
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

            response = self.client.indices.create(index=self.index_name, body=index_body)
            if not response.get('acknowledged', False):
                return 'failed'

            logger.info(f'Created index {self.index_name}, waiting {sync_wait}s for sync-up...')
            time.sleep(sync_wait)
            return 'created'

        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def upsert_passages(self, passages: List[Dict[str, Any]]) -> int:
        """
        Index passages produced by document ingestion.

        Args:
            passages: Dicts with 'content', 'embedding', 'file_name' and optional 'id'
                and 'metadata' keys

        Returns:
            Number of passages indexed
        """
        actions = []
        for passage in passages:
            source = {
                **passage.get('metadata', {}),
                'content': passage['content'],
                'file_name': passage['file_name'],
                'embedding': passage['embedding'],
                'created_at': datetime.now(timezone.utc).isoformat(),
            }
            action = {'_index': self.index_name, '_source': source}
            if passage.get('id'):
                action['_id'] = passage['id']
            actions.append(action)

        if not actions:
            return 0

        try:
            indexed, errors = bulk(self.client, actions, raise_on_error=False)
        except OpenSearchException as e:
            logger.error(f'Error indexing passages: {e}')
            raise OpenSearchError(f'Failed to index passages: {e}')

        if errors:
            logger.warning(f'{len(errors)} passages failed to index')
        logger.debug(f'Indexed {indexed} passages in {self.index_name}')
        return indexed

    def query_similar(self, query_vector: List[float], k: int, file_name: Optional[str] = None) -> List[SearchResult]:
        """
        Perform k-NN similarity search, optionally restricted to one companion file.

        Args:
            query_vector: Query vector for similarity search
            k: Number of results to return
            file_name: Scope filter on the passage's file_name

        Returns:
            Results ordered by descending score

        Raises:
            OpenSearchError: If the search request fails
        """
        knn = {'knn': {'embedding': {'vector': query_vector, 'k': k}}}
        if file_name is not None:
            query = {'bool': {'must': [knn], 'filter': [{'term': {'file_name': file_name}}]}}
        else:
            query = knn

        search_body = {
            'size': k,
            'query': query,
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

        results = parse_hits(response)
        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f'Vector search returned {len(results)} results (filter: {file_name})')
        return results[:k]

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
