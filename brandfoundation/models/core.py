"""
Core data models for the onboarding analysis pipeline.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from ..utils.timestamp_utils import to_datetime


class BucketId(str, Enum):
    """Conversation topics, in onboarding order."""
    BASICS = 'basics'
    ASSETS = 'assets'
    STORY = 'story'
    WORDS = 'words'
    STYLE = 'style'
    HUB = 'hub'
    DONE = 'done'


class AnalyzerId(str, Enum):
    CUSTOMER_EMPATHY = 'customer_empathy'
    VALUES_INFERRER = 'values_inferrer'
    VOICE_DETECTOR = 'voice_detector'
    DIFFERENTIATION_DETECTOR = 'differentiation_detector'
    COMPLETENESS_CHECKER = 'completeness_checker'
    SESSION_SUMMARIZER = 'session_summarizer'


class ParserId(str, Enum):
    BASICS_FIELDS = 'basics_fields'
    CUSTOMER_FIELDS = 'customer_fields'
    VALUES_FIELDS = 'values_fields'
    VOICE_FIELDS = 'voice_fields'
    POSITIONING_FIELDS = 'positioning_fields'
    VISION_FIELDS = 'vision_fields'


class MessageRole(str, Enum):
    USER = 'user'
    ASSISTANT = 'assistant'


class Confidence(str, Enum):
    """Ranked confidence of an extracted value: low < medium < high."""
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    # Order by rank, not by the underlying string value
    def __lt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, raw: Any) -> Optional['Confidence']:
        """Return the level named by ``raw`` or None if it names none."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                return None
        return None


_CONFIDENCE_RANK = {Confidence.LOW: 1, Confidence.MEDIUM: 2, Confidence.HIGH: 3}


def confidence_rank(confidence: Optional[Confidence]) -> int:
    """Rank of a stored stamp; a missing stamp ranks below ``low``."""
    return confidence.rank if confidence is not None else 0


class MergePolicy(str, Enum):
    ACCUMULATE = 'accumulate'
    REPLACE = 'replace'


class MergeOutcome(str, Enum):
    WRITTEN = 'written'
    UNCHANGED = 'unchanged'
    SKIPPED_LOW_CONFIDENCE = 'skipped-low-confidence'
    SKIPPED_NO_MAPPING = 'skipped-no-mapping'


class JobKind(str, Enum):
    ANALYSIS = 'analysis'
    PARSING = 'parsing'


class JobStatus(str, Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class Bucket:
    """A topic stage of the onboarding conversation."""
    id: BucketId
    name: str
    order: int
    is_optional: bool
    description: str
    slots: Tuple[str, ...] = ()  # Profile slots this bucket collects
    required_slots: Tuple[str, ...] = ()  # Slots that must be filled before auto-advance
    weight: int = 1  # Importance in overall completion (1-3)


@dataclass(frozen=True)
class ConversationMessage:
    """A single immutable turn of the onboarding conversation."""
    id: str
    role: MessageRole
    content: str
    sequence: int  # Monotonic within a session, never reused
    timestamp: datetime


@dataclass(frozen=True)
class ConversationChunk:
    """Read-only, sequence-ordered window over a contiguous run of messages."""
    messages: Tuple[ConversationMessage, ...] = ()

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def size(self) -> int:
        return len(self.messages)

    @property
    def message_ids(self) -> List[str]:
        return [message.id for message in self.messages]

    def to_text(self) -> str:
        return '\n\n'.join(f'{message.role.value.upper()}: {message.content}' for message in self.messages)


@dataclass
class Session:
    """One onboarding conversation and its pipeline bookkeeping.

    ``messages`` is append-only; ``processed`` maps a stage id (analyzer or
    parser) to the ordered message ids that stage has already consumed.
    """
    id: str
    profile_id: str
    business_name: str
    business_description: str = ''
    industry: str = ''
    current_bucket: BucketId = BucketId.BASICS
    messages: List[ConversationMessage] = field(default_factory=list)
    processed: Dict[str, List[str]] = field(default_factory=dict)

    def add_message(self, role: Union[MessageRole, str], content: str, timestamp: Optional[float] = None) -> ConversationMessage:
        """Append a message, assigning the next sequence number."""
        sequence = self.messages[-1].sequence + 1 if self.messages else 1
        message = ConversationMessage(id=str(uuid.uuid4()),
                                      role=MessageRole(role),
                                      content=content,
                                      sequence=sequence,
                                      timestamp=to_datetime(timestamp))
        self.messages.append(message)
        return message

    def mark_processed(self, stage_id: str, message_ids: List[str]) -> None:
        seen = self.processed.setdefault(stage_id, [])
        known = set(seen)
        seen.extend(message_id for message_id in message_ids if message_id not in known)

    def unprocessed(self, stage_id: str, message_ids: List[str]) -> List[str]:
        known = set(self.processed.get(stage_id, []))
        return [message_id for message_id in message_ids if message_id not in known]


@dataclass
class AnalyzerContext:
    """Inputs an analyzer prompt is rendered from."""
    business_name: str
    chunk: ConversationChunk
    business_description: str = ''
    industry: str = ''
    existing_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnalyzerDefinition:
    id: AnalyzerId
    name: str
    trigger_buckets: Tuple[BucketId, ...]
    prompt_template: str  # string.Template with $business_name, $conversation, ...
    parser: ParserId


@dataclass
class AnalysisOutput:
    """Free-text result of one analyzer run; kept only as an audit artifact."""
    analyzer_id: AnalyzerId
    prose: str
    timestamp: datetime
    input_message_count: int


@dataclass(frozen=True)
class FieldSpec:
    """Schema of one extractable field, in function-calling terms."""
    type: str  # string | number | boolean | array | object
    description: str
    enum: Optional[Tuple[str, ...]] = None
    items: Optional['FieldSpec'] = None
    properties: Optional[Tuple[Tuple[str, 'FieldSpec'], ...]] = None

    def to_json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {'type': self.type, 'description': self.description}
        if self.enum:
            schema['enum'] = list(self.enum)
        if self.items is not None:
            schema['items'] = self.items.to_json_schema()
        if self.properties is not None:
            schema['properties'] = {name: spec.to_json_schema() for name, spec in self.properties}
        return schema


@dataclass(frozen=True)
class ParserDefinition:
    id: ParserId
    function_name: str
    description: str
    fields: Tuple[Tuple[str, FieldSpec], ...]
    self_reports_confidence: bool = True

    @property
    def target_fields(self) -> List[str]:
        return [field_id for field_id, _ in self.fields]

    def field_spec(self, field_id: str) -> Optional[FieldSpec]:
        return dict(self.fields).get(field_id)


@dataclass
class ParsedFieldValue:
    value: Union[str, List[str], float, int, Dict[str, Any]]
    confidence: Confidence = Confidence.MEDIUM
    reasoning: Optional[str] = None


@dataclass
class ParsedFields:
    """Confidence-tagged extraction result; partial success is normal."""
    fields: Dict[str, ParsedFieldValue] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    violations: Dict[str, str] = field(default_factory=dict)  # Field ID -> why the value was dropped
    declined: bool = False  # Model declined to call the extraction function


@dataclass(frozen=True)
class FieldMappingEntry:
    field_id: str
    slot: str
    policy: MergePolicy


@dataclass
class MergeResult:
    outcomes: Dict[str, MergeOutcome] = field(default_factory=dict)

    @property
    def written(self) -> List[str]:
        return [field_id for field_id, outcome in self.outcomes.items() if outcome == MergeOutcome.WRITTEN]

    @property
    def skipped(self) -> List[str]:
        return [field_id for field_id, outcome in self.outcomes.items() if outcome != MergeOutcome.WRITTEN]


@dataclass
class Job:
    """An analyzer or parser invocation tracked through its lifecycle."""
    session_id: str
    stage_id: str  # Analyzer or parser identifier
    kind: JobKind
    id: str = field(default_factory=lambda: f'job_{uuid.uuid4().hex[:16]}')
    status: JobStatus = JobStatus.QUEUED
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime = field(default_factory=to_datetime)
    completed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.session_id, self.stage_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.id,
            'session_id': self.session_id,
            'stage_id': self.stage_id,
            'kind': self.kind.value,
            'status': self.status.value,
            'error': self.error,
            'error_kind': self.error_kind,
            'duration_ms': self.duration_ms,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
