"""
Backend selection for the memory repository.
"""

from ..utils.config import StorageConfig
from ..utils.errors import ConfigurationError
from ..utils.logging_config import get_logger
from .file_repository import FileMemoryRepository
from .opensearch_repository import OpenSearchMemoryRepository
from .repository import MemoryRepository

logger = get_logger(__name__)

SUPPORTED_BACKENDS = ('opensearch', 'file')


async def create_memory_repository(config: StorageConfig) -> MemoryRepository:
    """
    Build and initialize the repository named by config.backend.

    Args:
        config: StorageConfig with the backend name and its settings

    Returns:
        An initialized MemoryRepository

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    backend = (config.backend or '').lower()
    logger.info(f'Creating memory repository with backend: {backend}')

    if backend == 'opensearch':
        return await OpenSearchMemoryRepository.connect(config.database)

    if backend == 'file':
        repository = FileMemoryRepository(config.file)
        await repository.initialize()
        return repository

    raise ConfigurationError(f'storage.backend must be one of {", ".join(SUPPORTED_BACKENDS)}, got {backend!r}')
