"""
Memory repository persisted as a single JSON snapshot file.

All state lives in three in-process maps guarded by one reader/writer lock.
Every mutation rewrites the whole snapshot before returning and is undone
in memory when that write fails; reads never touch the disk.
"""

import asyncio
import copy
import json
import os
import tempfile
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..models.core import InteractionLog, MemoryCorpus, MemoryFragment, MemoryQuery, UserStatistics
from ..utils.config import FileStoreConfig
from ..utils.errors import (ConcurrencyConflictError, NotFoundError, OperationFailedError, SerializationError,
                            ValidationError)
from ..utils.locks import ReadWriteLock
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .repository import (MemoryRepository, apply_updates, build_statistics, effective_limit, matches_query,
                         normalize_updates, rank_fragments, validate_fragment, validate_interaction,
                         validate_memory_corpus, validate_user_id)

logger = get_logger(__name__)


def _next_timestamp(previous: Optional[datetime]) -> datetime:
    """Current time, nudged past previous so successive stamps strictly increase."""
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class FileMemoryRepository(MemoryRepository):
    """Process-local memory store snapshotted to a JSON file on every write."""

    def __init__(self, config: FileStoreConfig):
        """
        Initialize the file-backed repository. Call initialize() to load an existing snapshot.

        Args:
            config: FileStoreConfig with the snapshot path
        """
        self.config = config
        self.path = Path(config.path)
        self._lock = ReadWriteLock()
        self._memory_corpus: Dict[str, MemoryCorpus] = {}
        self._interactions: Dict[str, List[InteractionLog]] = {}
        self._memory_fragments: Dict[str, List[MemoryFragment]] = {}

        logger.info(f'Initialized file memory repository at: {self.path}')

    async def initialize(self) -> None:
        async with self._lock.write():
            self.path.parent.mkdir(parents=True, exist_ok=True)

            if not self.path.exists():
                logger.info(f'No snapshot at {self.path}, starting empty')
                self._memory_corpus, self._interactions, self._memory_fragments = {}, {}, {}
                return

            raw = await asyncio.to_thread(self.path.read_text, encoding='utf-8')
            try:
                data = json.loads(raw) if raw.strip() else {}
                memory_corpus = {
                    user_id: MemoryCorpus.from_dict(doc)
                    for user_id, doc in data.get('memory_corpus', {}).items()
                }
                interactions = {
                    user_id: [InteractionLog.from_dict(doc) for doc in docs]
                    for user_id, docs in data.get('interactions', {}).items()
                }
                memory_fragments = {
                    user_id: [MemoryFragment.from_dict(doc) for doc in docs]
                    for user_id, docs in data.get('memory_fragments', {}).items()
                }
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error(f'Failed to load snapshot {self.path}: {e}')
                raise SerializationError(f'Corrupt memory snapshot {self.path}: {e}') from e

            self._memory_corpus = memory_corpus
            self._interactions = interactions
            self._memory_fragments = memory_fragments

            logger.info(f'Loaded snapshot with {len(memory_corpus)} corpora, '
                        f'{sum(len(v) for v in interactions.values())} interactions, '
                        f'{sum(len(v) for v in memory_fragments.values())} fragments')

    async def ensure_indexes(self) -> None:
        logger.debug('File repository keeps no indexes')

    def _serialize(self) -> str:
        snapshot = {
            'memory_corpus': {user_id: corpus.to_dict() for user_id, corpus in self._memory_corpus.items()},
            'interactions': {user_id: [i.to_dict() for i in logs] for user_id, logs in self._interactions.items()},
            'memory_fragments': {
                user_id: [f.to_dict() for f in fragments]
                for user_id, fragments in self._memory_fragments.items()
            },
        }
        return json.dumps(snapshot, indent=2, ensure_ascii=False)

    def _write_atomically(self, payload: str) -> None:
        # Temp file in the target directory so os.replace stays on one filesystem
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _persist(self) -> None:
        """Write the full snapshot. Caller must hold the write lock."""
        payload = self._serialize()
        try:
            await asyncio.to_thread(self._write_atomically, payload)
        except OSError as e:
            logger.error(f'Failed to persist snapshot {self.path}: {e}')
            raise OperationFailedError('persist_snapshot', str(e)) from e

    async def _commit(self, undo: Callable[[], None]) -> None:
        """Persist the snapshot, reverting the in-memory change if the write fails. Caller holds the write lock."""
        try:
            await self._persist()
        except Exception:
            undo()
            raise

    def _restore_corpus(self, user_id: str, previous: Optional[MemoryCorpus]) -> Callable[[], None]:

        def undo():
            if previous is None:
                self._memory_corpus.pop(user_id, None)
            else:
                self._memory_corpus[user_id] = previous

        return undo

    async def save_memory_corpus(self, corpus: MemoryCorpus) -> MemoryCorpus:
        validate_memory_corpus(corpus)
        logger.debug(f'Saving memory corpus for user {corpus.user_id} (version {corpus.version})')

        async with self._lock.write():
            existing = self._memory_corpus.get(corpus.user_id)
            stored = copy.deepcopy(corpus)
            stored.updated_at = max(_next_timestamp(existing.updated_at if existing else None), stored.created_at)
            self._memory_corpus[corpus.user_id] = stored
            await self._commit(self._restore_corpus(corpus.user_id, existing))

        logger.info(f'Memory corpus saved for user {corpus.user_id}')
        return copy.deepcopy(stored)

    async def get_memory_corpus(self, user_id: str) -> Optional[MemoryCorpus]:
        validate_user_id(user_id)

        async with self._lock.read():
            corpus = self._memory_corpus.get(user_id)
            return copy.deepcopy(corpus) if corpus is not None else None

    async def update_memory_corpus(self, user_id: str, updates: Dict[str, Any]) -> None:
        validate_user_id(user_id)
        normalized = normalize_updates(updates)
        logger.debug(f'Updating memory corpus for user {user_id} ({len(normalized)} fields)')

        async with self._lock.write():
            existing = self._memory_corpus.get(user_id)
            if existing is None:
                raise NotFoundError('MemoryCorpus', user_id)

            updated = apply_updates(existing, normalized)
            updated.updated_at = _next_timestamp(existing.updated_at)
            self._memory_corpus[user_id] = updated
            await self._commit(self._restore_corpus(user_id, existing))

        logger.info(f'Memory corpus updated for user {user_id}')

    async def save_interaction(self, user_id: str, interaction: InteractionLog) -> None:
        validate_interaction(user_id, interaction)

        stored = copy.deepcopy(interaction)
        stored.user_id = user_id
        stored.id = stored.id or str(uuid.uuid4())

        async with self._lock.write():
            if any(log.id == stored.id for logs in self._interactions.values() for log in logs):
                raise ConcurrencyConflictError(f'InteractionLog {stored.id}')

            logs = self._interactions.setdefault(user_id, [])
            logs.append(stored)

            def undo():
                logs.pop()
                if not logs:
                    del self._interactions[user_id]

            await self._commit(undo)

        logger.debug(f'Interaction {stored.id} saved for user {user_id}')

    def _fragment_owner(self, fragment_id: str) -> Optional[str]:
        for user_id, fragments in self._memory_fragments.items():
            if any(f.id == fragment_id for f in fragments):
                return user_id
        return None

    async def save_memory_fragment(self, fragment: MemoryFragment) -> MemoryFragment:
        validate_fragment(fragment)

        stored = copy.deepcopy(fragment)
        stored.id = stored.id or str(uuid.uuid4())

        async with self._lock.write():
            owner = self._fragment_owner(stored.id)
            if owner is not None and owner != stored.user_id:
                raise ValidationError('id', f'Memory fragment {stored.id} belongs to another user')

            fragments = self._memory_fragments.setdefault(stored.user_id, [])
            previous = list(fragments)
            for index, existing in enumerate(fragments):
                if existing.id == stored.id:
                    fragments[index] = stored
                    break
            else:
                fragments.append(stored)

            def undo():
                if previous:
                    self._memory_fragments[stored.user_id] = previous
                else:
                    del self._memory_fragments[stored.user_id]

            await self._commit(undo)

        logger.debug(f'Memory fragment {stored.id} saved for user {stored.user_id}')
        return copy.deepcopy(stored)

    async def search_memories(self, query: MemoryQuery) -> List[MemoryFragment]:
        if query.user_id is not None:
            validate_user_id(query.user_id)

        tokens = query.tokens()
        async with self._lock.read():
            if query.user_id is not None:
                candidates = list(self._memory_fragments.get(query.user_id, []))
            else:
                candidates = [f for fragments in self._memory_fragments.values() for f in fragments]
            matched = [f for f in candidates if matches_query(f, query, tokens)]
            results = [copy.deepcopy(f) for f in rank_fragments(matched)[:effective_limit(query)]]

        logger.debug(f'Memory search for {query.query_text!r} returned {len(results)} fragments')
        return results

    async def get_recent_interactions(self, user_id: str, limit: int) -> List[InteractionLog]:
        validate_user_id(user_id)
        if limit < 0:
            raise ValidationError('limit', 'Limit cannot be negative')

        async with self._lock.read():
            logs = self._interactions.get(user_id, [])
            # Later appends win ties on equal timestamps
            ordered = sorted(enumerate(logs), key=lambda item: (item[1].timestamp, item[0]), reverse=True)
            return [copy.deepcopy(log) for _, log in ordered[:limit]]

    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        validate_user_id(user_id)

        async with self._lock.read():
            return build_statistics(user_id,
                                    self._interactions.get(user_id, []),
                                    self._memory_fragments.get(user_id, []),
                                    self._memory_corpus.get(user_id))

    async def delete_user_data(self, user_id: str) -> None:
        validate_user_id(user_id)
        logger.warning(f'Deleting all data for user {user_id} - this is irreversible')

        async with self._lock.write():
            removed = [(store, store.pop(user_id)) for store in (self._memory_corpus, self._interactions,
                                                                  self._memory_fragments) if user_id in store]

            def undo():
                for store, value in removed:
                    store[user_id] = value

            if removed:
                await self._commit(undo)

        logger.warning(f'All data deleted for user {user_id}')

    async def health_check(self) -> bool:
        directory = self.path.parent
        healthy = directory.is_dir() and os.access(directory, os.W_OK)
        if not healthy:
            logger.warning(f'Snapshot directory {directory} is missing or not writable')
        return healthy
