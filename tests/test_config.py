"""Tests for environment-driven configuration and backend selection."""

import asyncio

import pytest

from sentio_memory.services.factory import create_memory_repository
from sentio_memory.services.file_repository import FileMemoryRepository
from sentio_memory.utils import config as config_module
from sentio_memory.utils.config import DatabaseConfig, FileStoreConfig, StorageConfig, load_config
from sentio_memory.utils.errors import ConfigurationError

ENV_VARS = [
    'ENVIRONMENT', 'LOG_LEVEL', 'STORAGE_BACKEND', 'DATABASE_URL', 'DATABASE_MAX_POOL_SIZE', 'DATABASE_CONNECT_TIMEOUT',
    'DATABASE_INDEX_PREFIX', 'DATABASE_AWS_REGION', 'DATABASE_VERIFY_CERTS', 'DATABASE_MAX_RETRIES',
    'DATABASE_RETRY_DELAY', 'MEMORY_FILE_PATH', 'MCP_PORT'
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env file out of the picture
    monkeypatch.setattr(config_module, 'load_dotenv', lambda *args, **kwargs: False)


def test_defaults():
    config = load_config()

    assert config.environment == 'development'
    assert config.storage.backend == 'file'
    assert config.storage.file.path == 'data/memory_store.json'
    assert config.storage.database.url == 'http://localhost:9200'
    assert config.storage.database.max_pool_size == 10
    assert config.storage.database.index_prefix == 'sentio'
    assert config.storage.database.aws_region is None
    assert config.storage.database.retry.max_retries == 3
    assert config.storage.database.retry.base_delay == 1.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('STORAGE_BACKEND', 'OpenSearch')
    monkeypatch.setenv('DATABASE_URL', 'https://search.example.com')
    monkeypatch.setenv('DATABASE_MAX_POOL_SIZE', '25')
    monkeypatch.setenv('DATABASE_AWS_REGION', 'eu-west-1')
    monkeypatch.setenv('DATABASE_VERIFY_CERTS', 'false')
    monkeypatch.setenv('DATABASE_MAX_RETRIES', '5')
    monkeypatch.setenv('MCP_PORT', '9000')

    config = load_config()

    assert config.storage.backend == 'opensearch'
    assert config.storage.database.url == 'https://search.example.com'
    assert config.storage.database.max_pool_size == 25
    assert config.storage.database.aws_region == 'eu-west-1'
    assert config.storage.database.verify_certs is False
    assert config.storage.database.retry.max_retries == 5
    assert config.mcp.port == 9000


@pytest.mark.parametrize('name, value', [('DATABASE_MAX_POOL_SIZE', 'ten'), ('DATABASE_RETRY_DELAY', 'soon'),
                                         ('MCP_PORT', '80.5')])
def test_malformed_numbers_raise_configuration_error(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        load_config()


def _storage(backend, tmp_path):
    return StorageConfig(backend=backend,
                         database=DatabaseConfig(url='http://localhost:9200'),
                         file=FileStoreConfig(path=str(tmp_path / 'store.json')))


def test_factory_builds_file_backend(tmp_path):
    repository = asyncio.run(create_memory_repository(_storage('file', tmp_path)))
    assert isinstance(repository, FileMemoryRepository)


def test_factory_rejects_unknown_backend(tmp_path):
    with pytest.raises(ConfigurationError):
        asyncio.run(create_memory_repository(_storage('mongodb', tmp_path)))
