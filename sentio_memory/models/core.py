"""
Core data models for the per-user memory corpus.

Every model converts to and from a JSON-safe dict: timestamps travel as
ISO-8601 UTC strings and enums as their values, so the same documents are
written to the OpenSearch indices and to the local snapshot file.
"""

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import from_iso, utc_now


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses, enums and timestamps into JSON-safe values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return from_iso(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _required_dt(value: Any) -> datetime:
    return from_iso(value) if value is not None else utc_now()


class MessageDirection(Enum):
    """Direction of a message relative to the user."""
    INBOUND = 'inbound'
    OUTBOUND = 'outbound'

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower()
            aliases = {
                'inbound': cls.INBOUND,
                'user_to_system': cls.INBOUND,
                'usertosystem': cls.INBOUND,
                'outbound': cls.OUTBOUND,
                'system_to_user': cls.OUTBOUND,
                'systemtouser': cls.OUTBOUND,
            }
            return aliases.get(normalized)
        return None


class MemoryType(Enum):
    """Kinds of searchable memory fragments."""
    EPISODIC = 'episodic'
    SEMANTIC = 'semantic'
    PROCEDURAL = 'procedural'
    STRATEGIC = 'strategic'
    ACTION_STATE = 'action_state'

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower().replace('-', '_')
            if normalized in ('actionstate', 'action_state'):
                return cls.ACTION_STATE
            if normalized in ('strategicinferential', 'strategic_inferential'):
                return cls.STRATEGIC
            for member in cls:
                if member.value == normalized:
                    return member
        return None


@dataclass
class Relationship:
    """An important person in the user's life."""
    relationship_type: str  # family, friend, colleague...
    name: str
    description: Optional[str] = None
    importance_level: int = 3  # 1-5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Relationship':
        return cls(relationship_type=data.get('relationship_type', ''),
                   name=data.get('name', ''),
                   description=data.get('description'),
                   importance_level=data.get('importance_level', 3))


@dataclass
class CoreProfile:
    """Stable facts about the user."""
    name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    city: Optional[str] = None
    occupation: Optional[str] = None
    relationships: List[Relationship] = field(default_factory=list)
    personality_traits: List[str] = field(default_factory=list)
    current_life_summary: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoreProfile':
        return cls(name=data.get('name'),
                   age=data.get('age'),
                   gender=data.get('gender'),
                   city=data.get('city'),
                   occupation=data.get('occupation'),
                   relationships=[Relationship.from_dict(r) for r in data.get('relationships', [])],
                   personality_traits=list(data.get('personality_traits', [])),
                   current_life_summary=data.get('current_life_summary'))


@dataclass
class InteractionSummary:
    """Summary of one exchange, kept in the corpus' episodic memory."""
    log_id: str
    timestamp: datetime
    direction: MessageDirection
    summary: str
    emotional_tone: List[str] = field(default_factory=list)
    key_topics: List[str] = field(default_factory=list)
    llm_model_version: str = 'demo'
    reasoning_chain_snapshot: Optional[str] = None
    cost_usd: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InteractionSummary':
        return cls(log_id=data.get('log_id', ''),
                   timestamp=_required_dt(data.get('timestamp')),
                   direction=MessageDirection(data.get('direction', 'inbound')),
                   summary=data.get('summary', ''),
                   emotional_tone=list(data.get('emotional_tone', [])),
                   key_topics=list(data.get('key_topics', [])),
                   llm_model_version=data.get('llm_model_version', 'demo'),
                   reasoning_chain_snapshot=data.get('reasoning_chain_snapshot'),
                   cost_usd=data.get('cost_usd'))


@dataclass
class EpisodicMemory:
    interaction_log: List[InteractionSummary] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EpisodicMemory':
        return cls(interaction_log=[InteractionSummary.from_dict(i) for i in data.get('interaction_log', [])])


@dataclass
class PreferencesAndDislikes:
    likes: List[str] = field(default_factory=list)
    dislikes: List[str] = field(default_factory=list)
    hobbies: List[str] = field(default_factory=list)
    food_preferences: List[str] = field(default_factory=list)
    entertainment_preferences: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PreferencesAndDislikes':
        return cls(**{f.name: list(data.get(f.name, [])) for f in fields(cls)})


@dataclass
class HabitPattern:
    description: str
    frequency: str  # daily, weekly, monthly...
    confidence: float
    first_observed: datetime
    last_confirmed: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HabitPattern':
        return cls(description=data.get('description', ''),
                   frequency=data.get('frequency', ''),
                   confidence=data.get('confidence', 0.0),
                   first_observed=_required_dt(data.get('first_observed')),
                   last_confirmed=_required_dt(data.get('last_confirmed')))


@dataclass
class SignificantEvent:
    description: str
    date: 'Optional[date]' = None  # may be approximate
    emotional_impact: str = 'neutral'
    importance_level: int = 3
    related_topics: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignificantEvent':
        return cls(description=data.get('description', ''),
                   date=_date(data.get('date')),
                   emotional_impact=data.get('emotional_impact', 'neutral'),
                   importance_level=data.get('importance_level', 3),
                   related_topics=list(data.get('related_topics', [])))


@dataclass
class SkillExpertise:
    skill_name: str
    proficiency_level: str  # beginner, intermediate, advanced, expert
    experience_description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SkillExpertise':
        return cls(skill_name=data.get('skill_name', ''),
                   proficiency_level=data.get('proficiency_level', ''),
                   experience_description=data.get('experience_description'))


@dataclass
class SemanticMemory:
    """What the assistant knows about the user in general."""
    preferences_and_dislikes: PreferencesAndDislikes = field(default_factory=PreferencesAndDislikes)
    habits_and_patterns: List[HabitPattern] = field(default_factory=list)
    significant_events: List[SignificantEvent] = field(default_factory=list)
    skills_and_expertise: List[SkillExpertise] = field(default_factory=list)
    values_and_beliefs: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SemanticMemory':
        return cls(preferences_and_dislikes=PreferencesAndDislikes.from_dict(data.get('preferences_and_dislikes', {})),
                   habits_and_patterns=[HabitPattern.from_dict(h) for h in data.get('habits_and_patterns', [])],
                   significant_events=[SignificantEvent.from_dict(e) for e in data.get('significant_events', [])],
                   skills_and_expertise=[SkillExpertise.from_dict(s) for s in data.get('skills_and_expertise', [])],
                   values_and_beliefs=list(data.get('values_and_beliefs', [])))


@dataclass
class Task:
    task_id: str
    description: str
    priority: str = 'medium'  # low, medium, high, urgent
    status: str = 'pending'  # pending, in_progress, completed, cancelled
    due_date: Optional[date] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(task_id=data.get('task_id', ''),
                   description=data.get('description', ''),
                   priority=data.get('priority', 'medium'),
                   status=data.get('status', 'pending'),
                   due_date=_date(data.get('due_date')),
                   created_at=_required_dt(data.get('created_at')),
                   updated_at=_required_dt(data.get('updated_at')))


@dataclass
class Plan:
    description: str
    timeframe: str
    related_goals: List[str] = field(default_factory=list)
    confidence: float = 0.5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Plan':
        return cls(description=data.get('description', ''),
                   timeframe=data.get('timeframe', ''),
                   related_goals=list(data.get('related_goals', [])),
                   confidence=data.get('confidence', 0.5))


@dataclass
class FollowUp:
    content: str
    suggested_time: datetime
    importance: int = 3
    resolved: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FollowUp':
        return cls(content=data.get('content', ''),
                   suggested_time=_required_dt(data.get('suggested_time')),
                   importance=data.get('importance', 3),
                   resolved=bool(data.get('resolved', False)))


@dataclass
class ActionStateMemory:
    """Open tasks, plans and follow-ups."""
    current_tasks: List[Task] = field(default_factory=list)
    future_plans: List[Plan] = field(default_factory=list)
    follow_ups: List[FollowUp] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionStateMemory':
        return cls(current_tasks=[Task.from_dict(t) for t in data.get('current_tasks', [])],
                   future_plans=[Plan.from_dict(p) for p in data.get('future_plans', [])],
                   follow_ups=[FollowUp.from_dict(f) for f in data.get('follow_ups', [])])


@dataclass
class UserModelHypothesis:
    hypothesis_id: str
    hypothesis: str
    confidence: float
    status: str = 'active'  # active, confirmed, refuted
    evidence: List[str] = field(default_factory=list)  # interaction log ids
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserModelHypothesis':
        return cls(hypothesis_id=data.get('hypothesis_id', ''),
                   hypothesis=data.get('hypothesis', ''),
                   confidence=data.get('confidence', 0.0),
                   status=data.get('status', 'active'),
                   evidence=list(data.get('evidence', [])),
                   created_at=_required_dt(data.get('created_at')),
                   updated_at=_required_dt(data.get('updated_at')))


@dataclass
class RelationalGoals:
    short_term: List[str] = field(default_factory=list)  # 1-4 weeks
    medium_term: List[str] = field(default_factory=list)  # 1-6 months
    long_term: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelationalGoals':
        return cls(short_term=list(data.get('short_term', [])),
                   medium_term=list(data.get('medium_term', [])),
                   long_term=list(data.get('long_term', [])))


@dataclass
class CommunicationStrategy:
    current_tone_style: str = 'friendly_and_supportive'
    suitable_topics: List[str] = field(default_factory=list)
    topics_to_avoid: List[str] = field(default_factory=list)
    user_communication_preferences: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommunicationStrategy':
        return cls(current_tone_style=data.get('current_tone_style', 'friendly_and_supportive'),
                   suitable_topics=list(data.get('suitable_topics', [])),
                   topics_to_avoid=list(data.get('topics_to_avoid', [])),
                   user_communication_preferences=dict(data.get('user_communication_preferences', {})))


@dataclass
class SelfReflectionEntry:
    content: str
    reflection_type: str  # strategy_adjustment, user_insight, communication_improvement...
    timestamp: datetime = field(default_factory=utc_now)
    related_interaction: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SelfReflectionEntry':
        return cls(content=data.get('content', ''),
                   reflection_type=data.get('reflection_type', ''),
                   timestamp=_required_dt(data.get('timestamp')),
                   related_interaction=data.get('related_interaction'))


@dataclass
class StrategicInferentialMemory:
    """The assistant's own hypotheses and plans about the relationship."""
    user_model_hypotheses: List[UserModelHypothesis] = field(default_factory=list)
    relational_goals: RelationalGoals = field(default_factory=RelationalGoals)
    communication_strategy: CommunicationStrategy = field(default_factory=CommunicationStrategy)
    self_reflection_log: List[SelfReflectionEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StrategicInferentialMemory':
        return cls(user_model_hypotheses=[UserModelHypothesis.from_dict(h) for h in data.get('user_model_hypotheses', [])],
                   relational_goals=RelationalGoals.from_dict(data.get('relational_goals', {})),
                   communication_strategy=CommunicationStrategy.from_dict(data.get('communication_strategy', {})),
                   self_reflection_log=[SelfReflectionEntry.from_dict(s) for s in data.get('self_reflection_log', [])])


@dataclass
class MemoryCorpus:
    """The complete structured memory of one user, keyed by user_id (usually an email address)."""
    user_id: str
    version: str = '1.0'
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    core_profile: CoreProfile = field(default_factory=CoreProfile)
    episodic_memory: EpisodicMemory = field(default_factory=EpisodicMemory)
    semantic_memory: SemanticMemory = field(default_factory=SemanticMemory)
    action_state_memory: ActionStateMemory = field(default_factory=ActionStateMemory)
    strategic_inferential_memory: StrategicInferentialMemory = field(default_factory=StrategicInferentialMemory)

    @classmethod
    def new(cls, user_id: str) -> 'MemoryCorpus':
        now = utc_now()
        return cls(user_id=user_id, created_at=now, updated_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemoryCorpus':
        return cls(user_id=data['user_id'],
                   version=data.get('version', '1.0'),
                   created_at=_required_dt(data.get('created_at')),
                   updated_at=_required_dt(data.get('updated_at')),
                   core_profile=CoreProfile.from_dict(data.get('core_profile', {})),
                   episodic_memory=EpisodicMemory.from_dict(data.get('episodic_memory', {})),
                   semantic_memory=SemanticMemory.from_dict(data.get('semantic_memory', {})),
                   action_state_memory=ActionStateMemory.from_dict(data.get('action_state_memory', {})),
                   strategic_inferential_memory=StrategicInferentialMemory.from_dict(
                       data.get('strategic_inferential_memory', {})))


@dataclass
class InteractionLog:
    """One message exchanged with the user. Append-only."""
    id: str
    user_id: str
    session_id: str
    timestamp: datetime
    direction: MessageDirection
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls,
            user_id: str,
            session_id: str,
            direction: MessageDirection,
            content: str,
            metadata: Optional[Dict[str, Any]] = None) -> 'InteractionLog':
        return cls(id=str(uuid.uuid4()),
                   user_id=user_id,
                   session_id=session_id,
                   timestamp=utc_now(),
                   direction=direction,
                   content=content,
                   metadata=metadata or {})

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InteractionLog':
        return cls(id=data.get('id') or data.get('log_id') or '',
                   user_id=data.get('user_id', ''),
                   session_id=data.get('session_id', ''),
                   timestamp=_required_dt(data.get('timestamp')),
                   direction=MessageDirection(data.get('direction', 'inbound')),
                   content=data.get('content', ''),
                   metadata=dict(data.get('metadata') or {}))


@dataclass
class MemoryFragment:
    """A denormalized, independently searchable excerpt of a user's memory."""
    id: str
    user_id: str
    memory_type: MemoryType
    content: str
    keywords: List[str] = field(default_factory=list)
    importance_score: float = 0.5  # 0.0-1.0
    created_at: datetime = field(default_factory=utc_now)
    source_id: Optional[str] = None  # originating corpus entry

    @classmethod
    def new(cls,
            user_id: str,
            memory_type: MemoryType,
            content: str,
            keywords: Optional[List[str]] = None,
            importance_score: float = 0.5,
            source_id: Optional[str] = None) -> 'MemoryFragment':
        return cls(id=str(uuid.uuid4()),
                   user_id=user_id,
                   memory_type=memory_type,
                   content=content,
                   keywords=list(keywords or []),
                   importance_score=importance_score,
                   created_at=utc_now(),
                   source_id=source_id)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemoryFragment':
        return cls(id=data.get('id', ''),
                   user_id=data.get('user_id', ''),
                   memory_type=MemoryType(data.get('memory_type', 'episodic')),
                   content=data.get('content', ''),
                   keywords=list(data.get('keywords', [])),
                   importance_score=float(data.get('importance_score', 0.5)),
                   created_at=_required_dt(data.get('created_at')),
                   source_id=data.get('source_id'))


@dataclass
class UserStatistics:
    """Aggregate view over one user's data. Computed on demand, never persisted."""
    user_id: str
    total_interactions: int
    total_memories: int
    first_interaction: datetime
    last_interaction: datetime
    account_created: datetime
    memory_type_distribution: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class TimeRange:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class MemoryQuery:
    """Keyword search over memory fragments."""
    query_text: str = ''
    user_id: Optional[str] = None
    memory_types: List[MemoryType] = field(default_factory=list)  # empty means all
    time_range: Optional[TimeRange] = None
    limit: Optional[int] = 10
    min_importance: Optional[float] = None

    def tokens(self) -> List[str]:
        """Lowercased whitespace-delimited tokens of the query text."""
        return self.query_text.lower().split()

    @classmethod
    def simple_text_search(cls, query_text: str, user_id: str) -> 'MemoryQuery':
        return cls(query_text=query_text, user_id=user_id, limit=10)

    @classmethod
    def recent_memories(cls, user_id: str, days: int) -> 'MemoryQuery':
        end = utc_now()
        return cls(user_id=user_id,
                   memory_types=[MemoryType.EPISODIC],
                   time_range=TimeRange(start=end - timedelta(days=days), end=end),
                   limit=20)
