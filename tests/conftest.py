"""Shared test fixtures for the Sentio memory tests."""

import copy
import re
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Tuple

import pytest
from opensearchpy.exceptions import ConflictError, NotFoundError

from sentio_memory.services.file_repository import FileMemoryRepository
from sentio_memory.services.opensearch_repository import OpenSearchMemoryRepository
from sentio_memory.utils.config import DatabaseConfig, FileStoreConfig, RetryConfig
from sentio_memory.utils.retry import LinearBackoff, ResilientExecutor


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that only records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return value
    return value


def _terms(text: str) -> List[str]:
    return re.findall(r'\w+', (text or '').lower())


def _matches(source: Dict[str, Any], query: Dict[str, Any]) -> bool:
    (kind, clause), = query.items()
    if kind == 'match_all':
        return True
    if kind == 'bool':
        return all(_matches(source, q) for q in clause.get('must', []) + clause.get('filter', []))
    (field, condition), = clause.items()
    if kind == 'term':
        return source.get(field) == condition
    if kind == 'terms':
        return source.get(field) in condition
    if kind == 'range':
        value = _comparable(source.get(field))
        if value is None:
            return False
        if 'gte' in condition and value < _comparable(condition['gte']):
            return False
        if 'lte' in condition and value > _comparable(condition['lte']):
            return False
        return True
    if kind == 'match':
        wanted = _terms(condition['query'])
        present = set(_terms(source.get(field)))
        if condition.get('operator') == 'and':
            return all(term in present for term in wanted)
        return any(term in present for term in wanted)
    raise AssertionError(f'FakeOpenSearch does not understand query clause {kind}')


def _deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeIndices:

    def __init__(self, client: 'FakeOpenSearch'):
        self.client = client
        self.created: Dict[str, Dict[str, Any]] = {}

    async def exists(self, index: str) -> bool:
        self.client._enter('indices.exists', index=index)
        return index in self.created

    async def create(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self.client._enter('indices.create', index=index, body=body)
        self.created[index] = body
        return {'acknowledged': True, 'index': index}


class FakeOpenSearch:
    """In-memory AsyncOpenSearch double. Records every call and raises scripted failures."""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.ping_result = True
        self.closed = False
        self.indices = FakeIndices(self)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._lost_responses: Dict[str, List[Exception]] = defaultdict(list)
        self._seq_no = 0
        self.seq_nos: Dict[Tuple[str, str], int] = {}

    def fail(self, method: str, *errors: Exception) -> None:
        """Raise errors, one per call, on the next calls to method."""
        self._failures[method].extend(errors)

    def lose_response(self, method: str, *errors: Exception) -> None:
        """Apply the next writes through method, then raise errors as if the reply was lost."""
        self._lost_responses[method].extend(errors)

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _enter(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if self._failures[method]:
            raise self._failures[method].pop(0)

    async def ping(self) -> bool:
        self._enter('ping')
        return self.ping_result

    def _store(self, method: str, index: str, id: str, body: Dict[str, Any], result: str) -> Dict[str, Any]:
        self.documents[index][id] = copy.deepcopy(body)
        self._seq_no += 1
        self.seq_nos[(index, id)] = self._seq_no
        if self._lost_responses[method]:
            raise self._lost_responses[method].pop(0)
        return {'_index': index, '_id': id, 'result': result, '_seq_no': self._seq_no, '_primary_term': 1}

    async def index(self,
                    index: str,
                    id: str,
                    body: Dict[str, Any],
                    refresh: bool = False,
                    if_seq_no: int = None,
                    if_primary_term: int = None) -> Dict[str, Any]:
        self._enter('index', index=index, id=id, body=body, refresh=refresh, if_seq_no=if_seq_no)
        if if_seq_no is not None and self.seq_nos.get((index, id)) != if_seq_no:
            raise ConflictError(409, 'version_conflict_engine_exception', {'_id': id})
        result = 'updated' if id in self.documents[index] else 'created'
        return self._store('index', index, id, body, result)

    async def create(self, index: str, id: str, body: Dict[str, Any], refresh: bool = False) -> Dict[str, Any]:
        self._enter('create', index=index, id=id, body=body, refresh=refresh)
        if id in self.documents[index]:
            raise ConflictError(409, 'version_conflict_engine_exception', {'_id': id})
        return self._store('create', index, id, body, 'created')

    async def get(self, index: str, id: str) -> Dict[str, Any]:
        self._enter('get', index=index, id=id)
        if id not in self.documents[index]:
            raise NotFoundError(404, 'not_found', {'_index': index, '_id': id, 'found': False})
        return {
            '_index': index,
            '_id': id,
            'found': True,
            '_seq_no': self.seq_nos[(index, id)],
            '_primary_term': 1,
            '_source': copy.deepcopy(self.documents[index][id])
        }

    async def update(self, index: str, id: str, body: Dict[str, Any], refresh: bool = False) -> Dict[str, Any]:
        self._enter('update', index=index, id=id, body=body, refresh=refresh)
        if id not in self.documents[index]:
            raise NotFoundError(404, 'document_missing_exception', {'error': {'type': 'document_missing_exception'}})
        _deep_merge(self.documents[index][id], body['doc'])
        return {'_index': index, '_id': id, 'result': 'updated'}

    def _select(self, index: str, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [doc for doc in self.documents[index].values() if _matches(doc, query)]

    async def search(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._enter('search', index=index, body=body)
        hits = self._select(index, body.get('query', {'match_all': {}}))

        for sort in reversed(body.get('sort', [])):
            (field, order), = sort.items()
            hits.sort(key=lambda doc: _comparable(doc.get(field)), reverse=order['order'] == 'desc')

        response: Dict[str, Any] = {
            'hits': {
                'total': {
                    'value': len(hits)
                },
                'hits': [{
                    '_id': doc.get('id') or doc.get('user_id'),
                    '_source': copy.deepcopy(doc)
                } for doc in hits[:body.get('size', 10)]]
            }
        }

        aggregations = {}
        for name, agg in body.get('aggs', {}).items():
            counts: Dict[str, int] = defaultdict(int)
            for doc in hits:
                counts[doc.get(agg['terms']['field'])] += 1
            aggregations[name] = {'buckets': [{'key': k, 'doc_count': v} for k, v in counts.items()]}
        if aggregations:
            response['aggregations'] = aggregations
        return response

    async def count(self, index: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._enter('count', index=index, body=body)
        return {'count': len(self._select(index, body['query']))}

    async def delete(self, index: str, id: str, refresh: bool = False) -> Dict[str, Any]:
        self._enter('delete', index=index, id=id, refresh=refresh)
        if id not in self.documents[index]:
            raise NotFoundError(404, 'not_found', {'_id': id, 'result': 'not_found'})
        del self.documents[index][id]
        return {'_id': id, 'result': 'deleted'}

    async def delete_by_query(self,
                              index: str,
                              body: Dict[str, Any],
                              refresh: bool = False,
                              conflicts: str = 'abort') -> Dict[str, Any]:
        self._enter('delete_by_query', index=index, body=body, refresh=refresh, conflicts=conflicts)
        doomed = [key for key, doc in self.documents[index].items() if _matches(doc, body['query'])]
        for key in doomed:
            del self.documents[index][key]
        return {'deleted': len(doomed)}

    async def close(self) -> None:
        self.calls.append(('close', {}))
        self.closed = True


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def executor(sleep_recorder):
    """Linear-backoff executor that never actually sleeps."""
    return ResilientExecutor(max_retries=3, policy=LinearBackoff(1.0), sleep=sleep_recorder)


@pytest.fixture
def database_config():
    return DatabaseConfig(url='http://localhost:9200', index_prefix='test', retry=RetryConfig(max_retries=3))


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture
def opensearch_repository(database_config, fake_opensearch, executor):
    return OpenSearchMemoryRepository(database_config, client=fake_opensearch, executor=executor)


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / 'data' / 'memory_store.json'


@pytest.fixture
def file_repository(snapshot_path):
    return FileMemoryRepository(FileStoreConfig(path=str(snapshot_path)))
