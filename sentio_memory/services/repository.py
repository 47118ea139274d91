"""
Memory repository interface and the validation/query helpers shared by its backends.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import fields
from typing import Any, Dict, Iterable, List, Optional, Union, get_args, get_origin

from ..models.core import (InteractionLog, MemoryCorpus, MemoryFragment, MemoryQuery, UserStatistics,
                           to_jsonable)
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

MAX_USER_ID_LENGTH = 255
DEFAULT_SEARCH_LIMIT = 10

# Key fields a partial update may never touch
_PROTECTED_FIELDS = {'user_id', 'created_at', 'updated_at'}
# Free-form maps whose keys are not part of the schema
_FREE_MAPS = {('strategic_inferential_memory', 'communication_strategy', 'user_communication_preferences')}


class MemoryRepository(ABC):
    """Storage contract for per-user memory corpora, interaction logs and searchable fragments.

    Every method is a coroutine and safe to call concurrently. Failures are raised as
    SentioMemoryError subclasses; "absent" results are returned, not raised.
    """

    @abstractmethod
    async def save_memory_corpus(self, corpus: MemoryCorpus) -> MemoryCorpus:
        """Validate and upsert a corpus by user_id, stamping updated_at.

        Returns:
            The stored copy of the corpus

        Raises:
            ValidationError: If the corpus is invalid
            OperationFailedError: If the backend fails
        """

    @abstractmethod
    async def get_memory_corpus(self, user_id: str) -> Optional[MemoryCorpus]:
        """Return the user's corpus, or None if the user has none."""

    @abstractmethod
    async def update_memory_corpus(self, user_id: str, updates: Dict[str, Any]) -> None:
        """Apply a partial update addressed by dot-paths such as 'core_profile.name'.

        Unrecognised paths are skipped. updated_at is always bumped.

        Raises:
            ValidationError: If updates is empty or a value does not fit the schema
            NotFoundError: If the user has no corpus
        """

    @abstractmethod
    async def save_interaction(self, user_id: str, interaction: InteractionLog) -> None:
        """Append an interaction to the user's log. Never overwrites earlier entries.

        Raises:
            ConcurrencyConflictError: If an interaction with the same id is already stored
        """

    @abstractmethod
    async def save_memory_fragment(self, fragment: MemoryFragment) -> MemoryFragment:
        """Validate and upsert a searchable fragment by id, assigning one if missing.

        Raises:
            ValidationError: If the fragment is invalid or its id belongs to another user
        """

    @abstractmethod
    async def search_memories(self, query: MemoryQuery) -> List[MemoryFragment]:
        """Return fragments whose content contains every query token (case-insensitive)."""

    @abstractmethod
    async def get_recent_interactions(self, user_id: str, limit: int) -> List[InteractionLog]:
        """Return up to limit interactions, newest first."""

    @abstractmethod
    async def get_user_statistics(self, user_id: str) -> UserStatistics:
        """Compute the user's aggregate statistics."""

    @abstractmethod
    async def delete_user_data(self, user_id: str) -> None:
        """Irreversibly remove corpus, interactions and fragments of a user. Idempotent."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend is reachable. Does not raise for a failed probe."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend. Idempotent."""

    @abstractmethod
    async def ensure_indexes(self) -> None:
        """Create the backend's indexes. Idempotent; failures are logged, not raised."""

    async def close(self) -> None:
        """Release backend resources."""


def validate_user_id(user_id: str) -> None:
    """
    Validate a user identifier.

    Args:
        user_id: Opaque user id, often an email address

    Raises:
        ValidationError: If the id is empty, too long or a malformed email
    """
    if not user_id:
        raise ValidationError('user_id', 'User ID cannot be empty')

    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError('user_id', f'User ID cannot exceed {MAX_USER_ID_LENGTH} characters')

    # Basic email sanity check when the id looks like an address
    if '@' in user_id and '.' not in user_id:
        raise ValidationError('user_id', 'Invalid email format')


def validate_memory_corpus(corpus: MemoryCorpus) -> None:
    validate_user_id(corpus.user_id)

    if not corpus.version:
        raise ValidationError('version', 'Version cannot be empty')

    if corpus.updated_at < corpus.created_at:
        raise ValidationError('updated_at', 'Updated time cannot be before created time')


def validate_interaction(user_id: str, interaction: InteractionLog) -> None:
    validate_user_id(user_id)

    if interaction.user_id and interaction.user_id != user_id:
        raise ValidationError('user_id', f'Interaction belongs to {interaction.user_id}, not {user_id}')

    if not interaction.session_id:
        raise ValidationError('session_id', 'Session ID cannot be empty')

    if not interaction.content:
        raise ValidationError('content', 'Content cannot be empty')


def validate_fragment(fragment: MemoryFragment) -> None:
    validate_user_id(fragment.user_id)

    if not fragment.content or not fragment.content.strip():
        raise ValidationError('content', 'Content cannot be empty')

    if not 0.0 <= fragment.importance_score <= 1.0:
        raise ValidationError('importance_score', 'Importance score must be between 0.0 and 1.0')


def _corpus_template() -> Dict[str, Any]:
    return MemoryCorpus.new('template@example.com').to_dict()


def _is_recognized(parts: List[str], template: Dict[str, Any]) -> bool:
    if not all(parts) or parts[0] in _PROTECTED_FIELDS:
        return False

    node: Any = template
    for i, part in enumerate(parts):
        if tuple(parts[:i]) in _FREE_MAPS:
            return i == len(parts) - 1
        if not isinstance(node, dict) or part not in node:
            return False
        node = node[part]
    return True


def _set_path(document: Dict[str, Any], parts: List[str], value: Any) -> None:
    node = document
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def _field_type(parts: List[str]) -> Any:
    node: Any = MemoryCorpus
    for part in parts:
        if get_origin(node) is dict:
            node = get_args(node)[1]
        else:
            node = {f.name: f.type for f in fields(node)}[part]
    return node


def _fits(hint: Any, value: Any) -> bool:
    """Whether a JSON value can be held by a field of the given type."""
    origin = get_origin(hint)
    if origin is Union:
        return any(_fits(arg, value) for arg in get_args(hint))
    if hint is type(None):
        return value is None
    if hint is bool:
        return isinstance(value, bool)
    if hint is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if hint is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if hint is str:
        return isinstance(value, str)
    if origin is list:
        return isinstance(value, list) and all(_fits(get_args(hint)[0], v) for v in value)
    if origin is dict:
        return isinstance(value, dict) and all(_fits(get_args(hint)[1], v) for v in value.values())
    # Nested models and timestamps are checked when the corpus is rebuilt
    return True


def _rebuild(document: Dict[str, Any], field_name: str) -> MemoryCorpus:
    try:
        return MemoryCorpus.from_dict(document)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ValidationError(field_name, f'Value does not fit the corpus schema: {e}') from e


def normalize_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keep the dot-paths that address a field of the corpus schema.

    Args:
        updates: Map of dot-path to new value

    Returns:
        Recognised paths mapped to JSON-safe values

    Raises:
        ValidationError: If updates is empty or a value does not fit its field
    """
    if not updates:
        raise ValidationError('updates', 'Updates cannot be empty')

    template = _corpus_template()
    normalized = {}
    for path, value in updates.items():
        parts = path.split('.')
        if not _is_recognized(parts, template):
            logger.debug(f'Skipping unrecognised corpus field: {path}')
            continue

        value = to_jsonable(value)
        if not _fits(_field_type(parts), value):
            raise ValidationError(path, f'Value of type {type(value).__name__} does not fit this field')
        candidate = copy.deepcopy(template)
        _set_path(candidate, parts, value)
        _rebuild(candidate, path)
        normalized[path] = value

    return normalized


def apply_updates(corpus: MemoryCorpus, updates: Dict[str, Any]) -> MemoryCorpus:
    """Return a copy of corpus with already-normalised dot-path updates applied."""
    document = corpus.to_dict()
    for path, value in updates.items():
        _set_path(document, path.split('.'), copy.deepcopy(value))
    return _rebuild(document, 'updates')


def build_partial_document(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Nest already-normalised dot-path updates into a partial document."""
    document: Dict[str, Any] = {}
    for path, value in updates.items():
        _set_path(document, path.split('.'), value)
    return document


def matches_query(fragment: MemoryFragment, query: MemoryQuery, tokens: Optional[List[str]] = None) -> bool:
    """Whether a fragment satisfies every filter of the query."""
    if query.user_id is not None and fragment.user_id != query.user_id:
        return False

    if query.memory_types and fragment.memory_type not in query.memory_types:
        return False

    if query.time_range is not None and not query.time_range.contains(fragment.created_at):
        return False

    if query.min_importance is not None and fragment.importance_score < query.min_importance:
        return False

    content = fragment.content.lower()
    return all(token in content for token in (tokens if tokens is not None else query.tokens()))


def rank_fragments(fragments: Iterable[MemoryFragment]) -> List[MemoryFragment]:
    """Most important first, newest first among equals."""
    return sorted(fragments, key=lambda f: (f.importance_score, f.created_at), reverse=True)


def effective_limit(query: MemoryQuery) -> int:
    return query.limit if query.limit is not None and query.limit >= 0 else DEFAULT_SEARCH_LIMIT


def build_statistics(user_id: str,
                     interactions: List[InteractionLog],
                     fragments: List[MemoryFragment],
                     corpus: Optional[MemoryCorpus]) -> UserStatistics:
    """
    Aggregate a user's statistics from in-memory data.

    first_interaction and last_interaction are "now" when the user has no interactions.
    """
    now = utc_now()
    timestamps = [i.timestamp for i in interactions]

    distribution: Dict[str, int] = {}
    for fragment in fragments:
        key = fragment.memory_type.value
        distribution[key] = distribution.get(key, 0) + 1

    return UserStatistics(user_id=user_id,
                          total_interactions=len(interactions),
                          total_memories=len(fragments),
                          first_interaction=min(timestamps) if timestamps else now,
                          last_interaction=max(timestamps) if timestamps else now,
                          account_created=corpus.created_at if corpus is not None else now,
                          memory_type_distribution=distribution)
