"""
OpenSearch-backed business profile storage and analysis audit trail.
"""

import time
from typing import Any, Dict, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import AnalysisOutput, Confidence
from .config import OpenSearchConfig
from .logging_config import get_logger
from .profile_store import ProfileStoreError
from .timestamp_utils import to_datetime

logger = get_logger(__name__)

INDEX_BODIES = {
    'profile': {
        'mappings': {
            'properties': {
                'profile_id': {
                    'type': 'keyword'
                },
                'slot': {
                    'type': 'keyword'
                },
                'value': {
                    'type': 'object',
                    'enabled': False  # Any JSON shape; stored, never indexed
                },
                'confidence': {
                    'type': 'keyword'
                },
                'updated_at': {
                    'type': 'date'
                }
            }
        }
    },
    'analysis': {
        'mappings': {
            'properties': {
                'session_id': {
                    'type': 'keyword'
                },
                'analyzer_id': {
                    'type': 'keyword'
                },
                'prose': {
                    'type': 'text'
                },
                'input_message_count': {
                    'type': 'integer'
                },
                'created_at': {
                    'type': 'date'
                }
            }
        }
    },
}


class OpenSearchError(ProfileStoreError):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
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

    def index_name(self, index_type: str) -> str:
        return f'{self.config.index_name}_{index_type}'

    def create_index_if_not_exists(self, index_type: str = 'profile') -> str:
        """
        Create the profile or analysis index if it doesn't exist.

        Args:
            index_type: 'profile' or 'analysis'

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=INDEX_BODIES[index_type])
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None) -> bool:
        """
        Index (create or overwrite) a document.

        Args:
            document: Document body
            index_type: 'profile' or 'analysis'
            doc_id: Document ID (generated by OpenSearch if None)

        Returns:
            True if the document was created or updated
        """
        index_name = self.index_name(index_type)

        try:
            if doc_id is None:
                response = self.client.index(index=index_name, body=document)
            else:
                response = self.client.index(index=index_name, body=document, id=doc_id)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document in {index_name}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a document source by ID.

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            return response.get('_source') if response.get('found', False) else None
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')

    def term_search(self, field: str, value: str, index_type: str, size: int = 1000) -> list:
        """Return the sources of every document whose keyword ``field`` equals ``value``."""
        index_name = self.index_name(index_type)

        try:
            response = self.client.search(index=index_name, body={'size': size, 'query': {'term': {field: value}}})
            return [hit['_source'] for hit in response['hits']['hits']]
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name} for {field}={value}: {e}')
            raise OpenSearchError(f'Search failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('profile'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False


class OpenSearchProfileRecord:
    """Profile record stored as one document per slot, ID ``{profile_id}:{slot}``."""

    def __init__(self, client: OpenSearchClient, profile_id: str):
        self.client = client
        self.profile_id = profile_id

    def _doc_id(self, slot: str) -> str:
        return f'{self.profile_id}:{slot}'

    def get_profile_field(self, slot: str) -> Tuple[Any, Optional[Confidence]]:
        document = self.client.get_document(self._doc_id(slot), 'profile')
        if document is None:
            return None, None
        return document.get('value'), Confidence.parse(document.get('confidence'))

    def set_profile_field(self, slot: str, value: Any, confidence: Confidence) -> None:
        document = {
            'profile_id': self.profile_id,
            'slot': slot,
            'value': value,
            'confidence': confidence.value,
            'updated_at': to_datetime().isoformat()
        }
        if not self.client.index_document(document, 'profile', doc_id=self._doc_id(slot)):
            raise OpenSearchError(f'Slot {slot} of profile {self.profile_id} was not written')
        logger.debug(f'Profile {self.profile_id}: wrote {slot} at {confidence.value}')

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            document['slot']: {
                'value': document.get('value'),
                'confidence': document.get('confidence')
            }
            for document in self.client.term_search('profile_id', self.profile_id, 'profile')
        }


class OpenSearchProfileRepository:
    """Profile repository over the ``_profile`` and ``_analysis`` indices."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearchClient] = None):
        self.client = client if client is not None else OpenSearchClient(config)

    def ensure_indices(self) -> None:
        for index_type in INDEX_BODIES:
            self.client.create_index_if_not_exists(index_type)

    def record_for(self, profile_id: str) -> OpenSearchProfileRecord:
        return OpenSearchProfileRecord(self.client, profile_id)

    def record_analysis(self, session_id: str, output: AnalysisOutput) -> None:
        document = {
            'session_id': session_id,
            'analyzer_id': output.analyzer_id.value,
            'prose': output.prose,
            'input_message_count': output.input_message_count,
            'created_at': output.timestamp.isoformat()
        }
        self.client.index_document(document, 'analysis')
