"""Tests for the JSON snapshot repository."""

import asyncio
import json
import os
from datetime import timedelta

import pytest

from sentio_memory.models.core import (InteractionLog, MemoryCorpus, MemoryFragment, MemoryQuery, MemoryType,
                                       MessageDirection, TimeRange)
from sentio_memory.services.file_repository import FileMemoryRepository
from sentio_memory.utils.config import FileStoreConfig
from sentio_memory.utils.errors import (ConcurrencyConflictError, NotFoundError, OperationFailedError,
                                        SerializationError, ValidationError)
from sentio_memory.utils.retry import LinearBackoff, ResilientExecutor
from sentio_memory.utils.timestamp_utils import utc_now

USER = 'alice@example.com'
OTHER_USER = 'bob@example.com'


def _interaction(content: str, seconds_ago: int = 0, user_id: str = USER) -> InteractionLog:
    interaction = InteractionLog.new(user_id, 'thread-1', MessageDirection.INBOUND, content)
    interaction.timestamp = utc_now() - timedelta(seconds=seconds_ago)
    return interaction


def test_initialize_without_snapshot_starts_empty(file_repository, snapshot_path):

    async def scenario():
        await file_repository.initialize()
        return await file_repository.get_memory_corpus(USER)

    assert asyncio.run(scenario()) is None
    assert snapshot_path.parent.is_dir()
    assert not snapshot_path.exists()


def test_save_and_get_corpus(file_repository):

    async def scenario():
        await file_repository.initialize()
        corpus = MemoryCorpus.new(USER)
        corpus.core_profile.name = 'Alice'
        saved = await file_repository.save_memory_corpus(corpus)
        loaded = await file_repository.get_memory_corpus(USER)
        return corpus, saved, loaded

    corpus, saved, loaded = asyncio.run(scenario())
    assert loaded.core_profile.name == 'Alice'
    assert loaded.updated_at >= corpus.created_at
    assert saved.updated_at == loaded.updated_at


def test_save_writes_pretty_printed_snapshot(file_repository, snapshot_path):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))

    asyncio.run(scenario())
    raw = snapshot_path.read_text(encoding='utf-8')
    data = json.loads(raw)
    assert set(data) == {'memory_corpus', 'interactions', 'memory_fragments'}
    assert USER in data['memory_corpus']
    assert '\n  ' in raw


def test_snapshot_survives_reload(snapshot_path):
    config = FileStoreConfig(path=str(snapshot_path))

    async def write():
        repository = FileMemoryRepository(config)
        await repository.initialize()
        await repository.save_memory_corpus(MemoryCorpus.new(USER))
        await repository.save_interaction(USER, _interaction('hello there'))
        await repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'likes hiking'))

    async def read():
        repository = FileMemoryRepository(config)
        await repository.initialize()
        corpus = await repository.get_memory_corpus(USER)
        interactions = await repository.get_recent_interactions(USER, 10)
        fragments = await repository.search_memories(MemoryQuery.simple_text_search('hiking', USER))
        return corpus, interactions, fragments

    asyncio.run(write())
    corpus, interactions, fragments = asyncio.run(read())
    assert corpus.user_id == USER
    assert [i.content for i in interactions] == ['hello there']
    assert [f.content for f in fragments] == ['likes hiking']


def test_corrupt_snapshot_raises_serialization_error(file_repository, snapshot_path):
    snapshot_path.parent.mkdir(parents=True)
    snapshot_path.write_text('{not json', encoding='utf-8')

    with pytest.raises(SerializationError):
        asyncio.run(file_repository.initialize())


def test_updated_at_strictly_increases(file_repository):

    async def scenario():
        await file_repository.initialize()
        corpus = MemoryCorpus.new(USER)
        first = await file_repository.save_memory_corpus(corpus)
        second = await file_repository.save_memory_corpus(corpus)
        await file_repository.update_memory_corpus(USER, {'core_profile.city': 'Lisbon'})
        third = await file_repository.get_memory_corpus(USER)
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first.updated_at < second.updated_at < third.updated_at


def test_partial_update_sets_only_named_fields(file_repository):

    async def scenario():
        await file_repository.initialize()
        corpus = MemoryCorpus.new(USER)
        corpus.core_profile.name = 'Alice'
        await file_repository.save_memory_corpus(corpus)
        await file_repository.update_memory_corpus(
            USER, {
                'core_profile.city': 'Lisbon',
                'semantic_memory.preferences_and_dislikes.likes': ['tea'],
                'not_a_field': 'ignored',
            })
        return await file_repository.get_memory_corpus(USER)

    corpus = asyncio.run(scenario())
    assert corpus.core_profile.name == 'Alice'
    assert corpus.core_profile.city == 'Lisbon'
    assert corpus.semantic_memory.preferences_and_dislikes.likes == ['tea']


def test_update_missing_corpus_raises_not_found(file_repository):

    async def scenario():
        await file_repository.initialize()
        await file_repository.update_memory_corpus(USER, {'core_profile.city': 'Lisbon'})

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


def test_update_rejects_empty_updates(file_repository):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))
        await file_repository.update_memory_corpus(USER, {})

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_update_rejects_value_of_wrong_shape(file_repository):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))
        await file_repository.update_memory_corpus(USER, {'action_state_memory.current_tasks': 'not a list'})

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


@pytest.mark.parametrize('updates', [{
    'core_profile.age': 'abc'
}, {
    'core_profile.age': True
}, {
    'semantic_memory.preferences_and_dislikes.likes': 'tea'
}, {
    'strategic_inferential_memory.communication_strategy.user_communication_preferences.tone': 3
}])
def test_update_rejects_scalar_of_wrong_type(file_repository, updates):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))
        with pytest.raises(ValidationError):
            await file_repository.update_memory_corpus(USER, updates)
        await file_repository.update_memory_corpus(USER, {'core_profile.age': 41})
        return await file_repository.get_memory_corpus(USER)

    assert asyncio.run(scenario()).core_profile.age == 41


@pytest.mark.parametrize('user_id', ['', 'x' * 256, 'bob@localhost'])
def test_invalid_user_ids_rejected(file_repository, user_id):
    with pytest.raises(ValidationError):
        asyncio.run(file_repository.get_memory_corpus(user_id))


def test_save_corpus_rejects_updated_before_created(file_repository):
    corpus = MemoryCorpus.new(USER)
    corpus.updated_at = corpus.created_at - timedelta(seconds=1)

    with pytest.raises(ValidationError):
        asyncio.run(file_repository.save_memory_corpus(corpus))


def test_interactions_are_appended_and_returned_newest_first(file_repository):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_interaction(USER, _interaction('oldest', seconds_ago=30))
        await file_repository.save_interaction(USER, _interaction('newest', seconds_ago=0))
        await file_repository.save_interaction(USER, _interaction('middle', seconds_ago=10))
        everything = await file_repository.get_recent_interactions(USER, 10)
        latest_two = await file_repository.get_recent_interactions(USER, 2)
        none = await file_repository.get_recent_interactions(USER, 0)
        return everything, latest_two, none

    everything, latest_two, none = asyncio.run(scenario())
    assert [i.content for i in everything] == ['newest', 'middle', 'oldest']
    assert [i.content for i in latest_two] == ['newest', 'middle']
    assert none == []


def test_recent_interactions_for_unknown_user_is_empty(file_repository):

    async def scenario():
        await file_repository.initialize()
        return await file_repository.get_recent_interactions('nobody@example.com', 5)

    assert asyncio.run(scenario()) == []


def test_negative_limit_rejected(file_repository):
    with pytest.raises(ValidationError):
        asyncio.run(file_repository.get_recent_interactions(USER, -1))


def test_interaction_for_another_user_rejected(file_repository):
    interaction = _interaction('hi', user_id='bob@example.com')

    with pytest.raises(ValidationError):
        asyncio.run(file_repository.save_interaction(USER, interaction))


def test_search_requires_every_token_and_ranks_by_importance(file_repository):

    async def scenario():
        await file_repository.initialize()
        for content, score in [('Rust programming tips', 0.4), ('Advanced rust PROGRAMMING', 0.9),
                               ('Rust belt travel', 1.0), ('python programming', 0.8)]:
            await file_repository.save_memory_fragment(
                MemoryFragment.new(USER, MemoryType.SEMANTIC, content, importance_score=score))
        await file_repository.save_memory_fragment(
            MemoryFragment.new('bob@example.com', MemoryType.SEMANTIC, 'rust programming', importance_score=1.0))
        return await file_repository.search_memories(MemoryQuery.simple_text_search('rust programming', USER))

    results = asyncio.run(scenario())
    assert [f.content for f in results] == ['Advanced rust PROGRAMMING', 'Rust programming tips']


def test_search_filters_by_type_importance_and_time(file_repository):

    async def scenario():
        await file_repository.initialize()
        old = MemoryFragment.new(USER, MemoryType.EPISODIC, 'old lunch', importance_score=0.9)
        old.created_at = utc_now() - timedelta(days=30)
        await file_repository.save_memory_fragment(old)
        await file_repository.save_memory_fragment(
            MemoryFragment.new(USER, MemoryType.EPISODIC, 'recent lunch', importance_score=0.9))
        await file_repository.save_memory_fragment(
            MemoryFragment.new(USER, MemoryType.EPISODIC, 'minor lunch', importance_score=0.1))
        await file_repository.save_memory_fragment(
            MemoryFragment.new(USER, MemoryType.SEMANTIC, 'lunch preference', importance_score=0.9))

        now = utc_now()
        query = MemoryQuery(query_text='lunch',
                            user_id=USER,
                            memory_types=[MemoryType.EPISODIC],
                            time_range=TimeRange(start=now - timedelta(days=7), end=now),
                            min_importance=0.5)
        return await file_repository.search_memories(query)

    results = asyncio.run(scenario())
    assert [f.content for f in results] == ['recent lunch']


def test_empty_query_returns_everything_up_to_limit(file_repository):

    async def scenario():
        await file_repository.initialize()
        for i in range(5):
            await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, f'fact {i}'))
        return await file_repository.search_memories(MemoryQuery(user_id=USER, limit=3))

    assert len(asyncio.run(scenario())) == 3


def test_fragment_validation(file_repository):
    with pytest.raises(ValidationError):
        asyncio.run(file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, '   ')))
    with pytest.raises(ValidationError):
        asyncio.run(
            file_repository.save_memory_fragment(
                MemoryFragment.new(USER, MemoryType.SEMANTIC, 'fact', importance_score=1.5)))


def test_statistics(file_repository):

    async def scenario():
        await file_repository.initialize()
        corpus = await file_repository.save_memory_corpus(MemoryCorpus.new(USER))
        await file_repository.save_interaction(USER, _interaction('first', seconds_ago=60))
        await file_repository.save_interaction(USER, _interaction('second', seconds_ago=5))
        await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'a'))
        await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'b'))
        await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.EPISODIC, 'c'))
        return corpus, await file_repository.get_user_statistics(USER)

    corpus, stats = asyncio.run(scenario())
    assert stats.total_interactions == 2
    assert stats.total_memories == 3
    assert stats.first_interaction < stats.last_interaction
    assert stats.account_created == corpus.created_at
    assert stats.memory_type_distribution == {'semantic': 2, 'episodic': 1}


def test_statistics_for_unknown_user(file_repository):

    async def scenario():
        await file_repository.initialize()
        return await file_repository.get_user_statistics('nobody@example.com')

    stats = asyncio.run(scenario())
    assert stats.total_interactions == 0
    assert stats.total_memories == 0
    assert stats.memory_type_distribution == {}


def test_delete_user_data_is_idempotent_and_scoped(file_repository, snapshot_path):

    async def scenario():
        await file_repository.initialize()
        for user_id in (USER, 'bob@example.com'):
            await file_repository.save_memory_corpus(MemoryCorpus.new(user_id))
            await file_repository.save_interaction(user_id, _interaction('hi', user_id=user_id))
            await file_repository.save_memory_fragment(MemoryFragment.new(user_id, MemoryType.SEMANTIC, 'fact'))

        await file_repository.delete_user_data(USER)
        await file_repository.delete_user_data(USER)
        return (await file_repository.get_memory_corpus(USER), await file_repository.get_recent_interactions(USER, 5),
                await file_repository.get_memory_corpus('bob@example.com'))

    corpus, interactions, other = asyncio.run(scenario())
    assert corpus is None
    assert interactions == []
    assert other is not None
    assert USER not in json.loads(snapshot_path.read_text(encoding='utf-8'))['memory_corpus']


def test_concurrent_writers_do_not_lose_interactions(file_repository):

    async def scenario():
        await file_repository.initialize()
        await asyncio.gather(*(file_repository.save_interaction(USER, _interaction(f'message {i}')) for i in range(20)))
        return await file_repository.get_user_statistics(USER)

    assert asyncio.run(scenario()).total_interactions == 20


def test_failed_write_raises_operation_failed(file_repository, monkeypatch):

    def broken_write(payload):
        raise OSError('disk full')

    async def scenario():
        await file_repository.initialize()
        monkeypatch.setattr(file_repository, '_write_atomically', broken_write)
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))

    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.operation == 'persist_snapshot'


def test_failed_write_leaves_no_visible_change(file_repository, monkeypatch, sleep_recorder):
    executor = ResilientExecutor(max_retries=2, policy=LinearBackoff(1.0), sleep=sleep_recorder)

    def timed_out_write(payload):
        raise OSError(110, 'Connection timed out')

    async def scenario():
        await file_repository.initialize()
        corpus = MemoryCorpus.new(USER)
        corpus.core_profile.city = 'Porto'
        await file_repository.save_memory_corpus(corpus)
        await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'likes tea'))

        monkeypatch.setattr(file_repository, '_write_atomically', timed_out_write)
        interaction = _interaction('hello')
        with pytest.raises(OperationFailedError) as exc_info:
            await executor.execute(lambda: file_repository.save_interaction(USER, interaction), 'save_interaction')
        with pytest.raises(OperationFailedError):
            await file_repository.update_memory_corpus(USER, {'core_profile.city': 'Lisbon'})
        with pytest.raises(OperationFailedError):
            await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'likes jazz'))
        with pytest.raises(OperationFailedError):
            await file_repository.delete_user_data(USER)

        return (exc_info.value, await file_repository.get_recent_interactions(USER, 10),
                await file_repository.get_memory_corpus(USER),
                await file_repository.search_memories(MemoryQuery.simple_text_search('', USER)))

    error, interactions, corpus, fragments = asyncio.run(scenario())
    assert error.attempts == 3
    assert interactions == []
    assert corpus.core_profile.city == 'Porto'
    assert [f.content for f in fragments] == ['likes tea']


def test_interaction_ids_are_never_reused(file_repository):
    mine = _interaction('hello alice')
    mine.id = 'fixed'
    theirs = _interaction('hello bob', user_id=OTHER_USER)
    theirs.id = 'fixed'

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_interaction(USER, mine)
        with pytest.raises(ConcurrencyConflictError):
            await file_repository.save_interaction(OTHER_USER, theirs)
        with pytest.raises(ConcurrencyConflictError):
            await file_repository.save_interaction(USER, mine)
        return (await file_repository.get_recent_interactions(USER, 10),
                await file_repository.get_recent_interactions(OTHER_USER, 10))

    alice, bob = asyncio.run(scenario())
    assert [i.content for i in alice] == ['hello alice']
    assert bob == []


def test_fragment_id_stays_with_its_user(file_repository):

    async def scenario():
        await file_repository.initialize()
        mine = await file_repository.save_memory_fragment(MemoryFragment.new(USER, MemoryType.SEMANTIC, 'likes tea'))
        theirs = MemoryFragment.new(OTHER_USER, MemoryType.SEMANTIC, 'likes coffee')
        theirs.id = mine.id
        with pytest.raises(ValidationError):
            await file_repository.save_memory_fragment(theirs)

        mine.content = 'likes green tea'
        await file_repository.save_memory_fragment(mine)
        return (await file_repository.search_memories(MemoryQuery.simple_text_search('', USER)),
                await file_repository.search_memories(MemoryQuery.simple_text_search('', OTHER_USER)))

    alice, bob = asyncio.run(scenario())
    assert [f.content for f in alice] == ['likes green tea']
    assert bob == []


def test_atomic_write_leaves_no_temp_files(file_repository, snapshot_path):

    async def scenario():
        await file_repository.initialize()
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))
        await file_repository.save_memory_corpus(MemoryCorpus.new(USER))

    asyncio.run(scenario())
    assert os.listdir(snapshot_path.parent) == [snapshot_path.name]


def test_health_check(file_repository, tmp_path):

    async def scenario():
        await file_repository.initialize()
        return await file_repository.health_check()

    assert asyncio.run(scenario()) is True

    missing = FileMemoryRepository(FileStoreConfig(path=str(tmp_path / 'nowhere' / 'store.json')))
    assert asyncio.run(missing.health_check()) is False
