"""
OpenSearch client construction and error translation for the document store.
"""

from typing import Optional
from urllib.parse import urlparse

import boto3
from opensearchpy import AsyncHttpConnection, AsyncOpenSearch, AWSV4SignerAsyncAuth
from opensearchpy.exceptions import AuthenticationException, AuthorizationException, ConflictError
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from opensearchpy.exceptions import ConnectionTimeout
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from opensearchpy.exceptions import SerializationError as OpenSearchSerializationError
from opensearchpy.exceptions import TransportError

from .config import DatabaseConfig
from .errors import (AuthenticationError, ConcurrencyConflictError, ConfigurationError, ConnectionFailedError,
                     NotFoundError, OperationFailedError, OperationTimeoutError, PermissionDeniedError,
                     RateLimitedError, SentioMemoryError, SerializationError, StorageLimitExceededError)
from .logging_config import get_logger

logger = get_logger(__name__)


def validate_database_config(config: DatabaseConfig) -> None:
    """
    Validate the document store configuration.

    Raises:
        ConfigurationError: If the URL, pool size or timeout is unusable
    """
    if not config.url:
        raise ConfigurationError('database.url is empty')

    parsed = urlparse(config.url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigurationError('database.url must be an http(s) OpenSearch endpoint')

    if config.max_pool_size <= 0:
        raise ConfigurationError('database.max_pool_size must be greater than 0')

    if config.connect_timeout <= 0:
        raise ConfigurationError('database.connect_timeout must be greater than 0')

    if not config.index_prefix:
        raise ConfigurationError('database.index_prefix is empty')


def build_client(config: DatabaseConfig) -> AsyncOpenSearch:
    """
    Build an async OpenSearch client. No request is sent until first use.

    Args:
        config: DatabaseConfig instance with connection parameters

    Returns:
        AsyncOpenSearch client
    """
    validate_database_config(config)

    auth = None
    if config.aws_region:
        # Get AWS credentials and create SigV4 auth
        credentials = boto3.Session().get_credentials()
        if credentials is None:
            raise AuthenticationError('No AWS credentials found for SigV4 signing')
        auth = AWSV4SignerAsyncAuth(credentials, config.aws_region, config.aws_service)

    parsed = urlparse(config.url)
    client = AsyncOpenSearch(hosts=[config.url],
                             http_auth=auth,
                             use_ssl=parsed.scheme == 'https',
                             verify_certs=config.verify_certs,
                             connection_class=AsyncHttpConnection,
                             maxsize=config.max_pool_size,
                             timeout=config.connect_timeout)

    logger.info(f'Initialized OpenSearch client for endpoint: {parsed.hostname} '
                f'(pool size {config.max_pool_size}, timeout {config.connect_timeout}s)')
    return client


def _error_text(exc: TransportError) -> str:
    return f'{exc.error} {exc.info}'.lower()


def translate_opensearch_error(operation: str,
                               exc: OpenSearchException,
                               document_type: str = 'document',
                               document_id: Optional[str] = None) -> SentioMemoryError:
    """
    Map an opensearch-py exception onto the error taxonomy.

    Args:
        operation: Name of the failed operation
        exc: The client exception
        document_type: Document kind, reported by NotFoundError
        document_id: Document id, reported by NotFoundError

    Returns:
        The matching SentioMemoryError (not raised)
    """
    # ConnectionTimeout subclasses ConnectionError, check it first
    if isinstance(exc, ConnectionTimeout):
        return OperationTimeoutError(operation)
    if isinstance(exc, OpenSearchConnectionError):
        return ConnectionFailedError(f'{operation}: {exc}')
    if isinstance(exc, AuthenticationException):
        return AuthenticationError(f'{operation}: {exc}')
    if isinstance(exc, AuthorizationException):
        if 'flood_stage' in _error_text(exc) or 'read-only' in _error_text(exc):
            return StorageLimitExceededError('disk flood stage', operation)
        return PermissionDeniedError(operation, str(exc))
    if isinstance(exc, OpenSearchNotFoundError):
        return NotFoundError(document_type, document_id or 'unknown')
    if isinstance(exc, ConflictError):
        return ConcurrencyConflictError(f'{document_type} {document_id or ""}'.strip())
    if isinstance(exc, OpenSearchSerializationError):
        return SerializationError(f'{operation}: {exc}')
    if isinstance(exc, TransportError) and exc.status_code == 429:
        return RateLimitedError(details=f'{operation}: {exc}')
    return OperationFailedError(operation, str(exc))
