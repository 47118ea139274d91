"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .. import __version__
from ..services.file_repository import FileMemoryRepository
from ..services.opensearch_repository import OpenSearchMemoryRepository
from ..services.repository import MemoryRepository
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .errors import SentioMemoryError
from .logging_config import get_logger

logger = get_logger(__name__)


def _describe_repository(repository: MemoryRepository) -> Dict[str, Any]:
    if isinstance(repository, OpenSearchMemoryRepository):
        return {'service': 'Amazon OpenSearch', 'index_prefix': repository.config.index_prefix}
    if isinstance(repository, FileMemoryRepository):
        return {'service': 'File snapshot', 'path': str(repository.path)}
    return {'service': type(repository).__name__}


async def get_health_status(repository: MemoryRepository, llm: Optional[BedrockLLM] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        repository: Memory storage backend
        llm: Bedrock client, skipped if None

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check memory repository
    try:
        repository_healthy = await repository.health_check()
        health_status['memory_repository'] = {'healthy': repository_healthy, **_describe_repository(repository)}
    except SentioMemoryError as e:
        health_status['memory_repository'] = {
            'healthy': False,
            **_describe_repository(repository), 'error': str(e)
        }

    # Check Bedrock LLM
    if llm is not None:
        llm_healthy = await llm.health_check()
        health_status['bedrock_llm'] = {'healthy': llm_healthy, 'service': 'Amazon Bedrock LLM', 'model': llm.model_id}

    return health_status


async def check_health(repository: MemoryRepository, llm: Optional[BedrockLLM] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = await get_health_status(repository, llm)

    # Check if all components are healthy
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Some system components are unhealthy: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info(config: AppConfig) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'Sentio Memory',
        'version': __version__,
        'environment': config.environment,
        'configuration': {
            'storage_backend': config.storage.backend,
            'index_prefix': config.storage.database.index_prefix,
            'memory_file_path': config.storage.file.path,
            'database_max_retries': config.storage.database.retry.max_retries,
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'aws_region': config.bedrock_llm.region,
            'mcp_transport': config.mcp.transport,
        }
    }
