"""
Memory repository backed by OpenSearch indices.

Three indices hold the data: one corpus document per user (document id is
the user_id, which keeps it unique), append-only interaction logs sorted by
timestamp, and memory fragments with a full-text content field. Every call
runs through the ResilientExecutor with linear backoff. Interaction ids are
write-once; a fragment id stays with the user that first stored it.
"""

import copy
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import ConflictError, OpenSearchException
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError

from ..models.core import InteractionLog, MemoryCorpus, MemoryFragment, MemoryQuery, MemoryType, UserStatistics
from ..utils.config import DatabaseConfig
from ..utils.errors import (ConnectionFailedError, IndexOperationError, NotFoundError, SentioMemoryError,
                            ValidationError)
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import build_client, translate_opensearch_error, validate_database_config
from ..utils.retry import LinearBackoff, ResilientExecutor
from ..utils.timestamp_utils import to_iso, utc_now
from .repository import (MemoryRepository, build_partial_document, effective_limit, normalize_updates,
                         validate_fragment, validate_interaction, validate_memory_corpus, validate_user_id)

logger = get_logger(__name__)

_KEYWORD = {'type': 'keyword'}
_DATE = {'type': 'date'}
_OPAQUE = {'type': 'object', 'enabled': False}

CORPUS_MAPPING = {
    'mappings': {
        'properties': {
            'user_id': _KEYWORD,
            'version': _KEYWORD,
            'created_at': _DATE,
            'updated_at': _DATE,
            'core_profile': _OPAQUE,
            'episodic_memory': _OPAQUE,
            'semantic_memory': _OPAQUE,
            'action_state_memory': _OPAQUE,
            'strategic_inferential_memory': _OPAQUE,
        }
    }
}

INTERACTION_MAPPING = {
    'mappings': {
        'properties': {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'session_id': _KEYWORD,
            'timestamp': _DATE,
            'direction': _KEYWORD,
            'content': {
                'type': 'text'
            },
            'metadata': _OPAQUE,
        }
    }
}

FRAGMENT_MAPPING = {
    'mappings': {
        'properties': {
            'id': _KEYWORD,
            'user_id': _KEYWORD,
            'memory_type': _KEYWORD,
            'content': {
                'type': 'text'
            },
            'keywords': _KEYWORD,
            'importance_score': {
                'type': 'float'
            },
            'created_at': _DATE,
            'source_id': _KEYWORD,
        }
    }
}


class OpenSearchMemoryRepository(MemoryRepository):
    """Memory repository on OpenSearch with retrying, validated operations."""

    def __init__(self,
                 config: DatabaseConfig,
                 client: Optional[AsyncOpenSearch] = None,
                 executor: Optional[ResilientExecutor] = None):
        """
        Initialize the repository. Call initialize() (or use connect()) before first use.

        Args:
            config: DatabaseConfig with endpoint, pool size, timeout and retry settings
            client: Pre-built client, built from config if None
            executor: Retry executor, linear backoff from config.retry if None
        """
        validate_database_config(config)

        self.config = config
        self.client = client if client is not None else build_client(config)
        self.executor = executor or ResilientExecutor(max_retries=config.retry.max_retries,
                                                      policy=LinearBackoff(config.retry.base_delay))

        self.corpus_index = f'{config.index_prefix}_memory_corpus'
        self.interaction_index = f'{config.index_prefix}_interactions'
        self.fragment_index = f'{config.index_prefix}_memory_fragments'

    @classmethod
    async def connect(cls, config: DatabaseConfig, **kwargs) -> 'OpenSearchMemoryRepository':
        """Build, probe and index a repository in one step."""
        repository = cls(config, **kwargs)
        try:
            await repository.initialize()
        except SentioMemoryError:
            await repository.close()
            raise
        return repository

    async def _call(self,
                    operation: str,
                    request: Callable[[], Awaitable[Any]],
                    document_type: str = 'document',
                    document_id: Optional[str] = None) -> Any:
        """Run one client request through the executor, translating client errors."""

        async def attempt():
            try:
                return await request()
            except OpenSearchException as e:
                raise translate_opensearch_error(operation, e, document_type, document_id) from e

        return await self.executor.execute(attempt, operation)

    async def _ping(self) -> bool:
        if not await self.client.ping():
            raise ConnectionFailedError('OpenSearch ping returned no response')
        return True

    async def initialize(self) -> None:
        logger.info(f'Initializing OpenSearch memory repository (indices prefix {self.config.index_prefix})')
        await self._call('ping', self._ping)
        await self.ensure_indexes()
        logger.info('OpenSearch memory repository initialized successfully')

    def _index_definitions(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (self.corpus_index, CORPUS_MAPPING),
            (self.interaction_index, INTERACTION_MAPPING),
            (self.fragment_index, FRAGMENT_MAPPING),
        ]

    async def ensure_indexes(self) -> None:
        logger.info('Creating OpenSearch indices for optimal performance')

        for index_name, body in self._index_definitions():
            try:
                if await self.client.indices.exists(index=index_name):
                    logger.debug(f'Index {index_name} already exists')
                    continue
                await self.client.indices.create(index=index_name, body=body)
                logger.info(f'Created index {index_name}')
            except OpenSearchException as e:
                if 'resource_already_exists_exception' in str(e):
                    logger.debug(f'Index {index_name} was created concurrently')
                    continue
                error = IndexOperationError(index_name, str(e))
                logger.warning(f'{error}. Repository will still function but with reduced performance.')

        logger.info('Index creation process completed')

    async def save_memory_corpus(self, corpus: MemoryCorpus) -> MemoryCorpus:
        validate_memory_corpus(corpus)
        logger.debug(f'Saving memory corpus for user {corpus.user_id} (version {corpus.version})')

        stored = copy.deepcopy(corpus)
        stored.updated_at = max(utc_now(), stored.created_at)
        document = stored.to_dict()

        await self._call('save_memory_corpus',
                         lambda: self.client.index(index=self.corpus_index, id=stored.user_id, body=document, refresh=True),
                         'MemoryCorpus', stored.user_id)

        logger.info(f'Memory corpus saved for user {stored.user_id}')
        return stored

    async def get_memory_corpus(self, user_id: str) -> Optional[MemoryCorpus]:
        validate_user_id(user_id)
        logger.debug(f'Retrieving memory corpus for user {user_id}')

        try:
            response = await self._call('get_memory_corpus',
                                        lambda: self.client.get(index=self.corpus_index, id=user_id),
                                        'MemoryCorpus', user_id)
        except NotFoundError:
            logger.debug(f'Memory corpus not found for user {user_id}')
            return None

        if not response.get('found', True):
            return None
        return MemoryCorpus.from_dict(response['_source'])

    async def update_memory_corpus(self, user_id: str, updates: Dict[str, Any]) -> None:
        validate_user_id(user_id)
        normalized = normalize_updates(updates)
        logger.debug(f'Updating memory corpus for user {user_id} ({len(normalized)} fields)')

        # Field-level set restricted to the recognised keys plus updated_at
        document = build_partial_document(normalized)
        document['updated_at'] = to_iso(utc_now())

        await self._call('update_memory_corpus',
                         lambda: self.client.update(index=self.corpus_index,
                                                    id=user_id,
                                                    body={'doc': document},
                                                    refresh=True),
                         'MemoryCorpus', user_id)

        logger.info(f'Memory corpus updated for user {user_id}')

    async def save_interaction(self, user_id: str, interaction: InteractionLog) -> None:
        validate_interaction(user_id, interaction)

        stored = copy.deepcopy(interaction)
        stored.user_id = user_id
        stored.id = stored.id or str(uuid.uuid4())
        document = stored.to_dict()
        sent = False

        async def create():
            nonlocal sent
            retrying, sent = sent, True
            try:
                return await self.client.create(index=self.interaction_index, id=stored.id, body=document, refresh=True)
            except ConflictError:
                # A 409 on a retry is fine when the earlier attempt landed this very document
                if retrying and await self._stored_source(self.interaction_index, stored.id) == document:
                    logger.debug(f'Interaction {stored.id} was stored by an earlier attempt')
                    return None
                raise

        await self._call('save_interaction', create, 'InteractionLog', stored.id)

        logger.debug(f'Interaction {stored.id} saved for user {user_id}')

    async def _stored_source(self, index_name: str, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.get(index=index_name, id=document_id)
        except OpenSearchNotFoundError:
            return None
        return response.get('_source')

    async def save_memory_fragment(self, fragment: MemoryFragment) -> MemoryFragment:
        validate_fragment(fragment)

        stored = copy.deepcopy(fragment)
        stored.id = stored.id or str(uuid.uuid4())
        document = stored.to_dict()

        async def upsert():
            try:
                current = await self.client.get(index=self.fragment_index, id=stored.id)
            except OpenSearchNotFoundError:
                current = None

            if current is None or not current.get('found', True):
                return await self.client.create(index=self.fragment_index, id=stored.id, body=document, refresh=True)

            owner = current['_source'].get('user_id')
            if owner != stored.user_id:
                raise ValidationError('id', f'Memory fragment {stored.id} belongs to another user')
            # Only replace the version that was read, so a racing writer surfaces as a conflict
            return await self.client.index(index=self.fragment_index,
                                           id=stored.id,
                                           body=document,
                                           refresh=True,
                                           if_seq_no=current['_seq_no'],
                                           if_primary_term=current['_primary_term'])

        await self._call('save_memory_fragment', upsert, 'MemoryFragment', stored.id)

        logger.debug(f'Memory fragment {stored.id} saved for user {stored.user_id}')
        return stored

    def _search_body(self, query: MemoryQuery) -> Dict[str, Any]:
        filters: List[Dict[str, Any]] = []
        if query.user_id is not None:
            filters.append({'term': {'user_id': query.user_id}})
        if query.memory_types:
            filters.append({'terms': {'memory_type': [t.value for t in query.memory_types]}})
        if query.time_range is not None:
            filters.append({
                'range': {
                    'created_at': {
                        'gte': to_iso(query.time_range.start),
                        'lte': to_iso(query.time_range.end)
                    }
                }
            })
        if query.min_importance is not None:
            filters.append({'range': {'importance_score': {'gte': query.min_importance}}})

        # Every analysed query term must match the content
        must = [{
            'match': {
                'content': {
                    'query': query.query_text,
                    'operator': 'and'
                }
            }
        }] if query.tokens() else []

        return {
            'size': effective_limit(query),
            'query': {
                'bool': {
                    'must': must or [{
                        'match_all': {}
                    }],
                    'filter': filters
                }
            },
            'sort': [{
                'importance_score': {
                    'order': 'desc'
                }
            }, {
                'created_at': {
                    'order': 'desc'
                }
            }]
        }

    async def search_memories(self, query: MemoryQuery) -> List[MemoryFragment]:
        if query.user_id is not None:
            validate_user_id(query.user_id)
        logger.debug(f'Searching memories for {query.query_text!r} (user {query.user_id})')

        if effective_limit(query) == 0:
            return []

        body = self._search_body(query)
        response = await self._call('search_memories', lambda: self.client.search(index=self.fragment_index, body=body))

        results = [MemoryFragment.from_dict(hit['_source']) for hit in response['hits']['hits']]
        logger.info(f'Memory search for {query.query_text!r} returned {len(results)} fragments')
        return results

    async def get_recent_interactions(self, user_id: str, limit: int) -> List[InteractionLog]:
        validate_user_id(user_id)
        if limit < 0:
            raise ValidationError('limit', 'Limit cannot be negative')
        if limit == 0:
            return []

        body = {
            'size': limit,
            'query': {
                'term': {
                    'user_id': user_id
                }
            },
            'sort': [{
                'timestamp': {
                    'order': 'desc'
                }
            }],
        }
        response = await self._call('get_recent_interactions',
                                    lambda: self.client.search(index=self.interaction_index, body=body))

        interactions = [InteractionLog.from_dict(hit['_source']) for hit in response['hits']['hits']]
        logger.debug(f'Retrieved {len(interactions)} recent interactions for user {user_id}')
        return interactions

    async def _interaction_edge(self, user_id: str, order: str) -> Optional[InteractionLog]:
        body = {'size': 1, 'query': {'term': {'user_id': user_id}}, 'sort': [{'timestamp': {'order': order}}]}
        response = await self._call(f'interaction_edge_{order}',
                                    lambda: self.client.search(index=self.interaction_index, body=body))
        hits = response['hits']['hits']
        return InteractionLog.from_dict(hits[0]['_source']) if hits else None

    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        validate_user_id(user_id)
        logger.debug(f'Getting statistics for user {user_id}')

        user_filter = {'query': {'term': {'user_id': user_id}}}
        interaction_count = await self._call('count_interactions',
                                             lambda: self.client.count(index=self.interaction_index, body=user_filter))
        total_interactions = int(interaction_count['count'])

        fragment_body = {
            **user_filter,
            'size': 0,
            'track_total_hits': True,
            'aggs': {
                'by_type': {
                    'terms': {
                        'field': 'memory_type',
                        'size': len(MemoryType)
                    }
                }
            },
        }
        fragment_stats = await self._call('aggregate_memory_fragments',
                                          lambda: self.client.search(index=self.fragment_index, body=fragment_body))
        total_memories = int(fragment_stats['hits']['total']['value'])
        distribution = {
            bucket['key']: int(bucket['doc_count'])
            for bucket in fragment_stats.get('aggregations', {}).get('by_type', {}).get('buckets', [])
        }

        now = utc_now()
        first_interaction = last_interaction = now
        if total_interactions:
            first = await self._interaction_edge(user_id, 'asc')
            last = await self._interaction_edge(user_id, 'desc')
            first_interaction = first.timestamp if first else now
            last_interaction = last.timestamp if last else now

        corpus = await self.get_memory_corpus(user_id)

        stats = UserStatistics(user_id=user_id,
                               total_interactions=total_interactions,
                               total_memories=total_memories,
                               first_interaction=first_interaction,
                               last_interaction=last_interaction,
                               account_created=corpus.created_at if corpus else now,
                               memory_type_distribution=distribution)
        logger.info(f'User statistics computed for {user_id}: {total_interactions} interactions, '
                    f'{total_memories} memories')
        return stats

    async def delete_user_data(self, user_id: str) -> None:
        validate_user_id(user_id)
        logger.warning(f'Deleting all data for user {user_id} - this is irreversible')

        # Per-index deletes, no cross-index transaction: a crash in between leaves orphans
        try:
            await self._call('delete_memory_corpus',
                             lambda: self.client.delete(index=self.corpus_index, id=user_id, refresh=True),
                             'MemoryCorpus', user_id)
        except NotFoundError:
            logger.debug(f'No memory corpus to delete for user {user_id}')

        by_user = {'query': {'term': {'user_id': user_id}}}
        for operation, index_name in (('delete_interactions', self.interaction_index),
                                      ('delete_memory_fragments', self.fragment_index)):
            await self._call(operation,
                             lambda index_name=index_name: self.client.delete_by_query(
                                 index=index_name, body=by_user, refresh=True, conflicts='proceed'))

        logger.warning(f'All data deleted for user {user_id}')

    async def health_check(self) -> bool:
        logger.debug('Performing memory repository health check')

        try:
            await self._call('health_check', self._ping)
        except SentioMemoryError as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

        try:
            await self.client.search(index=self.corpus_index, body={'size': 0, 'query': {'match_all': {}}})
            logger.debug('Index access test successful')
        except OpenSearchException as e:
            logger.warning(f'Index access test failed: {e}. This may indicate permission issues '
                           f'but core functionality should still work.')
        return True

    async def close(self) -> None:
        await self.client.close()
