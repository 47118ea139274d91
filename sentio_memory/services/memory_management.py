"""
Memory Management Service for higher-level memory operations.

Wraps any MemoryRepository with the read-modify-write operations the
assistant performs on a user's corpus: tasks, follow-ups, hypotheses,
communication strategy and self-reflection, plus interaction recording
and fragment search.
"""

import asyncio
import weakref
from typing import Any, Dict, List, Optional, Union

from ..models.core import (CommunicationStrategy, FollowUp, InteractionLog, MemoryCorpus, MemoryFragment,
                           MemoryQuery, MemoryType, MessageDirection, SelfReflectionEntry, Task,
                           UserModelHypothesis)
from ..utils.logging_config import get_logger
from ..utils.retry import ResilientExecutor
from ..utils.timestamp_utils import utc_now
from .repository import MemoryRepository, validate_user_id

logger = get_logger(__name__)

EPISODIC_IMPORTANCE = 0.5


class MemoryManagementService:
    """Unified service for memory operations over a repository backend."""

    def __init__(self, repository: MemoryRepository, executor: Optional[ResilientExecutor] = None):
        """
        Initialize the memory management service.

        Args:
            repository: Initialized storage backend
            executor: Extra retries around each read-modify-write. None leaves retrying to the
                repository, which already retries every backend call
        """
        self.repository = repository
        self.executor = executor
        # One lock per user so concurrent mutators do not lose each other's writes; dropped once unused
        self._user_locks: 'weakref.WeakValueDictionary[str, asyncio.Lock]' = weakref.WeakValueDictionary()

        logger.info(f'Initialized MemoryManagementService with {type(repository).__name__}')

    async def get_or_create_corpus(self, user_id: str) -> MemoryCorpus:
        """Return the user's corpus, creating and saving an empty one if none exists."""
        corpus = await self.repository.get_memory_corpus(user_id)
        if corpus is not None:
            return corpus

        logger.info(f'Creating empty memory corpus for user {user_id}')
        return await self.repository.save_memory_corpus(MemoryCorpus.new(user_id))

    async def _mutate(self, user_id: str, operation_name: str, mutation, create: bool = True) -> Any:
        """
        Load the corpus, apply mutation and save it when mutation reports a change.

        mutation receives the corpus and returns True when it changed something.
        Without create, a missing corpus short-circuits to False.
        """
        validate_user_id(user_id)

        async def attempt():
            if create:
                corpus = await self.get_or_create_corpus(user_id)
            else:
                corpus = await self.repository.get_memory_corpus(user_id)
                if corpus is None:
                    return False

            changed = mutation(corpus)
            if changed:
                corpus.updated_at = utc_now()
                await self.repository.save_memory_corpus(corpus)
            return changed

        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()

        async with lock:
            if self.executor is None:
                return await attempt()
            return await self.executor.execute(attempt, operation_name)

    async def record_interaction(self,
                                 user_id: str,
                                 session_id: str,
                                 direction: Union[MessageDirection, str],
                                 content: str,
                                 metadata: Optional[Dict[str, Any]] = None) -> InteractionLog:
        """Append an interaction to the user's log and index it as an episodic fragment.

        Args:
            user_id: User ID
            session_id: Conversation or email thread id
            direction: 'inbound' for user messages, 'outbound' for assistant replies
            content: Message text
            metadata: Free-form attributes such as subject or message id

        Returns:
            The saved InteractionLog
        """
        interaction = InteractionLog.new(user_id=user_id,
                                         session_id=session_id,
                                         direction=MessageDirection(direction),
                                         content=content,
                                         metadata=metadata)
        await self.repository.save_interaction(user_id, interaction)

        fragment = MemoryFragment.new(user_id=user_id,
                                      memory_type=MemoryType.EPISODIC,
                                      content=content,
                                      importance_score=EPISODIC_IMPORTANCE,
                                      source_id=interaction.id)
        await self.repository.save_memory_fragment(fragment)

        logger.debug(f'Recorded {interaction.direction.value} interaction {interaction.id} for user {user_id}')
        return interaction

    async def remember(self,
                       user_id: str,
                       memory_type: Union[MemoryType, str],
                       content: str,
                       keywords: Optional[List[str]] = None,
                       importance_score: float = 0.5,
                       source_id: Optional[str] = None) -> MemoryFragment:
        """Store a searchable memory fragment."""
        fragment = MemoryFragment.new(user_id=user_id,
                                      memory_type=MemoryType(memory_type),
                                      content=content,
                                      keywords=keywords,
                                      importance_score=importance_score,
                                      source_id=source_id)
        return await self.repository.save_memory_fragment(fragment)

    async def search(self,
                     user_id: str,
                     query_text: str,
                     memory_types: Optional[List[Union[MemoryType, str]]] = None,
                     limit: int = 10) -> List[MemoryFragment]:
        """Search a user's memory fragments by keywords."""
        query = MemoryQuery(query_text=query_text,
                            user_id=user_id,
                            memory_types=[MemoryType(t) for t in memory_types or []],
                            limit=limit)
        return await self.repository.search_memories(query)

    async def upsert_task(self, user_id: str, task: Task) -> None:
        logger.debug(f'Upserting task {task.task_id} for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            tasks = corpus.action_state_memory.current_tasks
            for index, existing in enumerate(tasks):
                if existing.task_id == task.task_id:
                    tasks[index] = task
                    break
            else:
                tasks.append(task)
            return True

        await self._mutate(user_id, 'upsert_task', mutation)

    async def get_tasks(self, user_id: str, status_filter: Optional[str] = None) -> List[Task]:
        corpus = await self.repository.get_memory_corpus(user_id)
        if corpus is None:
            return []

        tasks = corpus.action_state_memory.current_tasks
        if status_filter is not None:
            tasks = [task for task in tasks if task.status == status_filter]
        return tasks

    async def complete_task(self, user_id: str, task_id: str) -> bool:
        """Mark a task completed. Returns False if the user or the task is unknown."""
        logger.debug(f'Completing task {task_id} for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            for task in corpus.action_state_memory.current_tasks:
                if task.task_id == task_id:
                    task.status = 'completed'
                    task.updated_at = utc_now()
                    return True
            return False

        return await self._mutate(user_id, 'complete_task', mutation, create=False)

    async def add_follow_up(self, user_id: str, follow_up: FollowUp) -> None:
        logger.debug(f'Adding follow-up for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            corpus.action_state_memory.follow_ups.append(follow_up)
            return True

        await self._mutate(user_id, 'add_follow_up', mutation)

    async def get_pending_follow_ups(self, user_id: str) -> List[FollowUp]:
        corpus = await self.repository.get_memory_corpus(user_id)
        if corpus is None:
            return []
        return [f for f in corpus.action_state_memory.follow_ups if not f.resolved]

    async def add_user_hypothesis(self, user_id: str, hypothesis: UserModelHypothesis) -> None:
        logger.debug(f'Adding user hypothesis {hypothesis.hypothesis_id} for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            corpus.strategic_inferential_memory.user_model_hypotheses.append(hypothesis)
            return True

        await self._mutate(user_id, 'add_user_hypothesis', mutation)

    async def update_hypothesis_status(self,
                                       user_id: str,
                                       hypothesis_id: str,
                                       status: str,
                                       evidence: Optional[List[str]] = None) -> bool:
        """Confirm or refute a hypothesis, appending the supporting interaction ids.

        Returns:
            False if the user or the hypothesis is unknown
        """
        logger.debug(f'Updating hypothesis {hypothesis_id} to {status} for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            for hypothesis in corpus.strategic_inferential_memory.user_model_hypotheses:
                if hypothesis.hypothesis_id == hypothesis_id:
                    hypothesis.status = status
                    hypothesis.evidence.extend(evidence or [])
                    hypothesis.updated_at = utc_now()
                    return True
            return False

        return await self._mutate(user_id, 'update_hypothesis_status', mutation, create=False)

    async def get_active_hypotheses(self, user_id: str) -> List[UserModelHypothesis]:
        corpus = await self.repository.get_memory_corpus(user_id)
        if corpus is None:
            return []
        return [h for h in corpus.strategic_inferential_memory.user_model_hypotheses if h.status == 'active']

    async def update_communication_strategy(self, user_id: str, strategy: CommunicationStrategy) -> None:
        logger.debug(f'Updating communication strategy for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            corpus.strategic_inferential_memory.communication_strategy = strategy
            return True

        await self._mutate(user_id, 'update_communication_strategy', mutation)

    async def add_self_reflection(self, user_id: str, reflection: SelfReflectionEntry) -> None:
        logger.debug(f'Adding {reflection.reflection_type} self reflection for user {user_id}')

        def mutation(corpus: MemoryCorpus) -> bool:
            corpus.strategic_inferential_memory.self_reflection_log.append(reflection)
            return True

        await self._mutate(user_id, 'add_self_reflection', mutation)
