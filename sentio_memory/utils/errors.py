"""
Error taxonomy shared by the memory repositories, the retry executor and the LLM client.
"""

from typing import Optional

_TRANSIENT_MARKERS = ('network', 'timeout', 'connection')


class SentioMemoryError(Exception):
    """Base class for every error raised by the memory service."""

    error_code = 'MEMORY_ERROR'
    retryable = False
    fatal = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Set by ResilientExecutor on the error it finally raises
        self.attempts = 1

    def is_retryable(self) -> bool:
        """Whether the failure is transient and may be attempted again."""
        return self.retryable

    def is_fatal(self) -> bool:
        """Whether the failure must never be retried and should surface immediately."""
        return self.fatal

    def is_critical(self) -> bool:
        """Whether the failure should raise an alert rather than a plain error log."""
        return False


class ConnectionFailedError(SentioMemoryError):
    error_code = 'DB_CONNECTION_FAILED'
    retryable = True

    def __init__(self, message: str):
        super().__init__(f'Database connection failed: {message}')
        self.details = message

    def is_critical(self) -> bool:
        return True


class OperationFailedError(SentioMemoryError):
    """A backend operation failed; retryable only when the cause looks like a network problem."""

    error_code = 'DB_OPERATION_FAILED'

    def __init__(self, operation: str, details: str):
        super().__init__(f'Database operation failed: {operation} - {details}')
        self.operation = operation
        self.details = details

    def is_retryable(self) -> bool:
        details = self.details.lower()
        return any(marker in details for marker in _TRANSIENT_MARKERS)


class NotFoundError(SentioMemoryError):
    error_code = 'DOCUMENT_NOT_FOUND'

    def __init__(self, document_type: str, id: str):
        super().__init__(f'Document not found: {document_type} with id {id}')
        self.document_type = document_type
        self.id = id


class SerializationError(SentioMemoryError):
    error_code = 'SERIALIZATION_ERROR'

    def __init__(self, details: str):
        super().__init__(f'Serialization error: {details}')
        self.details = details


class ConfigurationError(SentioMemoryError):
    error_code = 'CONFIGURATION_ERROR'
    fatal = True

    def __init__(self, field: str):
        super().__init__(f'Configuration error: {field}')
        self.field = field

    def is_critical(self) -> bool:
        return True


class ValidationError(SentioMemoryError):
    error_code = 'VALIDATION_ERROR'
    fatal = True

    def __init__(self, field: str, reason: str):
        super().__init__(f'Data validation failed: {field} - {reason}')
        self.field = field
        self.reason = reason


class ConcurrencyConflictError(SentioMemoryError):
    error_code = 'CONCURRENCY_CONFLICT'

    def __init__(self, resource: str):
        super().__init__(f'Concurrent modification detected for {resource}')
        self.resource = resource


class StorageLimitExceededError(SentioMemoryError):
    error_code = 'STORAGE_LIMIT_EXCEEDED'

    def __init__(self, limit: str, resource: str):
        super().__init__(f'Storage limit exceeded: {limit} for {resource}')
        self.limit = limit
        self.resource = resource

    def is_critical(self) -> bool:
        return True


class IndexOperationError(SentioMemoryError):
    error_code = 'INDEX_ERROR'

    def __init__(self, index_name: str, details: str):
        super().__init__(f'Index operation failed: {index_name} - {details}')
        self.index_name = index_name
        self.details = details


class AuthenticationError(SentioMemoryError):
    error_code = 'AUTHENTICATION_FAILED'
    fatal = True

    def __init__(self, reason: str):
        super().__init__(f'Authentication failed: {reason}')
        self.reason = reason


class PermissionDeniedError(SentioMemoryError):
    error_code = 'PERMISSION_DENIED'
    fatal = True

    def __init__(self, resource: str, reason: str):
        super().__init__(f'Permission denied on {resource}: {reason}')
        self.resource = resource
        self.reason = reason


class RateLimitedError(SentioMemoryError):
    error_code = 'RATE_LIMITED'
    retryable = True

    def __init__(self, retry_after: Optional[float] = None, details: str = ''):
        hint = f', retry after {retry_after} seconds' if retry_after is not None else ''
        super().__init__(f'Rate limited{hint}{": " + details if details else ""}')
        self.retry_after = retry_after
        self.details = details


class OperationTimeoutError(SentioMemoryError):
    error_code = 'TIMEOUT'
    retryable = True

    def __init__(self, operation: str, seconds: Optional[float] = None):
        after = f' after {seconds} seconds' if seconds is not None else ''
        super().__init__(f'Operation {operation} timed out{after}')
        self.operation = operation
        self.seconds = seconds
