"""
Configuration management for the memory store, the LLM client and the MCP interface.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


@dataclass
class RetryConfig:
    """Retry budget and backoff base for remote calls."""
    max_retries: int = 3
    base_delay: float = 1.0


@dataclass
class DatabaseConfig:
    """Configuration for the OpenSearch document store."""
    url: str
    max_pool_size: int = 10
    connect_timeout: float = 10.0
    index_prefix: str = 'sentio'
    aws_region: Optional[str] = None  # enables SigV4 signing when set
    aws_service: str = 'es'
    verify_certs: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class FileStoreConfig:
    """Configuration for the local JSON snapshot store."""
    path: str


@dataclass
class StorageConfig:
    """Which repository backend to build, and its settings."""
    backend: str
    database: DatabaseConfig
    file: FileStoreConfig


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    max_retry_delay: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    storage: StorageConfig
    bedrock_llm: BedrockLLMConfig
    mcp: MCPConfig


def _get_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f'{name} must be an integer, got {value!r}')


def _get_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f'{name} must be a number, got {value!r}')


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    load_dotenv()

    environment = os.getenv('ENVIRONMENT', 'development')

    # Document store configuration
    database_config = DatabaseConfig(url=os.getenv('DATABASE_URL', 'http://localhost:9200'),
                                     max_pool_size=_get_int('DATABASE_MAX_POOL_SIZE', '10'),
                                     connect_timeout=_get_float('DATABASE_CONNECT_TIMEOUT', '10'),
                                     index_prefix=os.getenv('DATABASE_INDEX_PREFIX', 'sentio'),
                                     aws_region=os.getenv('DATABASE_AWS_REGION') or None,
                                     aws_service=os.getenv('DATABASE_AWS_SERVICE', 'es'),
                                     verify_certs=_get_bool('DATABASE_VERIFY_CERTS', 'true'),
                                     retry=RetryConfig(max_retries=_get_int('DATABASE_MAX_RETRIES', '3'),
                                                       base_delay=_get_float('DATABASE_RETRY_DELAY', '1.0')))

    # File snapshot configuration
    file_config = FileStoreConfig(path=os.getenv('MEMORY_FILE_PATH', 'data/memory_store.json'))

    storage_config = StorageConfig(backend=os.getenv('STORAGE_BACKEND', 'file').lower(),
                                   database=database_config,
                                   file=file_config)

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=_get_int('BEDROCK_LLM_MAX_TOKENS', '4096'),
                                          temperature=_get_float('BEDROCK_LLM_TEMPERATURE', '0.0'),
                                          retry_attempts=_get_int('BEDROCK_LLM_RETRY_ATTEMPTS', '3'),
                                          retry_delay=_get_float('BEDROCK_LLM_RETRY_DELAY', '1.0'),
                                          max_retry_delay=_get_float('BEDROCK_LLM_MAX_RETRY_DELAY', '30.0'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=_get_int('MCP_PORT', '8000'))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     storage=storage_config,
                     bedrock_llm=bedrock_llm_config,
                     mcp=mcp_config)
