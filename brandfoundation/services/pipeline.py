"""
Onboarding pipeline: routes conversation turns through analyzer, parser and merge.

One user turn flows as: bucket lookup -> chunk -> analysis job -> parse job
-> merge into the profile record -> optional auto-advance. Buckets without an
analyzer either parse the raw chunk directly (basics) or do nothing (assets).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..models.core import (AnalysisOutput, AnalyzerContext, AnalyzerDefinition, AnalyzerId, Bucket, BucketId,
                           ConversationChunk, ConversationMessage, Job, JobKind, JobStatus, MergeResult, MessageRole,
                           ParsedFields, ParserDefinition, ParserId, Session)
from ..utils.bedrock_llm import LLMCapability
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.profile_store import ProfileRepository, ProfileStoreError
from .analyzers import AnalyzerStage, analyzer_for_bucket, get_analyzer
from .bucket_state import BUCKET_ORDER, BucketState, bucket_completion, get_bucket, is_bucket_satisfied, overall_completion
from .chunker import chunk
from .field_mapping import FieldMapping, load_field_mapping
from .field_merge import FieldMergeEngine
from .job_tracker import AdmissionConflict, JobTracker, SessionClosedError
from .parsers import ParserStage, get_parser

logger = get_logger(__name__)

# Buckets whose raw chunk goes straight to a parser, with no analyzer in front
CHUNK_PARSERS: Dict[BucketId, ParserId] = {
    BucketId.BASICS: ParserId.BASICS_FIELDS,
}


@dataclass
class ParseJobResult:
    """What a completed parse job leaves behind."""
    parsed: ParsedFields
    merge: MergeResult
    satisfied_bucket: Optional[BucketId] = None  # Current bucket, if its required slots are now filled


class OnboardingPipeline:
    """Drives analysis and extraction for onboarding sessions."""

    def __init__(self,
                 llm: LLMCapability,
                 repository: ProfileRepository,
                 mapping: Optional[FieldMapping] = None,
                 tracker: Optional[JobTracker] = None,
                 auto_advance: Optional[bool] = None):
        """
        Initialize the pipeline.

        Args:
            llm: Text-completion and structured-extraction capability
            repository: Profile persistence and analysis audit sink
            mapping: Field mapping table (loaded and validated from config if None)
            tracker: Job tracker (a new one if None)
            auto_advance: Advance past satisfied buckets (uses config default if None)
        """
        self.repository = repository
        self.mapping = mapping if mapping is not None else load_field_mapping()
        self.tracker = tracker if tracker is not None else JobTracker()
        self.auto_advance = auto_advance if auto_advance is not None else config.pipeline.auto_advance
        self.buckets = BucketState()
        self.analyzer_stage = AnalyzerStage(llm)
        self.parser_stage = ParserStage(llm)
        self.merge_engine = FieldMergeEngine(self.mapping)
        logger.info(f'Onboarding pipeline ready (mapping v{self.mapping.version}, auto_advance={self.auto_advance})')

    def record_message(self, session: Session, role: Union[MessageRole, str], content: str) -> Dict[str, Any]:
        """Append a message and, for user turns, kick off processing.

        Must be called from a running event loop. A duplicate in-flight job is
        not an error here: the running job will pick up the conversation on
        the next turn.

        Returns:
            Dict with the stored message and the job started, if any

        Raises:
            SessionClosedError: If the session was closed; nothing is stored
        """
        if self.tracker.is_closed(session.id):
            raise SessionClosedError(f'Session {session.id} is closed')

        message = session.add_message(role, content)
        job = None
        if message.role == MessageRole.USER:
            try:
                job = self.process(session, trigger=message)
            except AdmissionConflict as e:
                logger.info(f'Session {session.id}: {e}; not starting another')
        return {'message': message, 'job': job}

    def process(self, session: Session, trigger: Optional[ConversationMessage] = None) -> Optional[Job]:
        """Start the job the session's current bucket calls for.

        Args:
            session: Session to process
            trigger: Message that caused this run; the window ends at it

        Returns:
            The admitted Job, or None when the bucket has no stage or the
            window holds nothing the stage has not already consumed

        Raises:
            AdmissionConflict: If the stage already has a job in flight
            SessionClosedError: If the session was closed
        """
        bucket = self.buckets.current_bucket(session)
        window = chunk(session, trigger=trigger)
        if not window:
            logger.debug(f'Session {session.id}: no messages to process')
            return None

        analyzer = analyzer_for_bucket(bucket.id)
        if analyzer is not None:
            if not session.unprocessed(analyzer.id.value, window.message_ids):
                logger.debug(f'Session {session.id}: {analyzer.id.value} already saw every message in the window')
                return None
            return self._submit_analysis(session, analyzer, window)

        parser_id = CHUNK_PARSERS.get(bucket.id)
        if parser_id is not None:
            if not session.unprocessed(parser_id.value, window.message_ids):
                logger.debug(f'Session {session.id}: {parser_id.value} already saw every message in the window')
                return None
            return self._submit_parse(session, get_parser(parser_id), window, watermark=parser_id.value, window=window)

        logger.debug(f'Session {session.id}: bucket {bucket.id.value} has no analysis stage')
        return None

    def run_analyzer(self, session: Session, analyzer_id: Union[AnalyzerId, str]) -> Optional[Job]:
        """Manually run one analyzer (and its parser) over the latest window.

        Manual runs ignore the processed-message watermark.

        Raises:
            AdmissionConflict: If the analyzer already has a job in flight
            SessionClosedError: If the session was closed
        """
        definition = get_analyzer(analyzer_id)
        window = chunk(session)
        if not window:
            logger.debug(f'Session {session.id}: no messages for {definition.id.value}')
            return None
        return self._submit_analysis(session, definition, window)

    def _submit_analysis(self, session: Session, definition: AnalyzerDefinition, window: ConversationChunk) -> Job:

        def call() -> AnalysisOutput:
            return self.analyzer_stage.analyze(definition, self._context(session, window))

        def finalize(output: AnalysisOutput) -> AnalysisOutput:
            try:
                self.repository.record_analysis(session.id, output)
            except ProfileStoreError as e:
                logger.warning(f'Could not store {definition.id.value} analysis for session {session.id}: {e}')
            return output

        def then(job: Job) -> None:
            if job.status != JobStatus.COMPLETED:
                return
            try:
                self._submit_parse(session, get_parser(definition.parser), job.result, watermark=definition.id.value, window=window)
            except AdmissionConflict as e:
                logger.warning(f'Dropping {definition.parser.value} run after {definition.id.value}: {e}')
            except SessionClosedError:
                logger.info(f'Session {session.id} closed before {definition.parser.value} could run')

        return self.tracker.submit(session.id, definition.id.value, JobKind.ANALYSIS, call, finalize=finalize, then=then)

    def _submit_parse(self, session: Session, definition: ParserDefinition, source: Union[AnalysisOutput, ConversationChunk],
                      watermark: str, window: ConversationChunk) -> Job:

        def call() -> ParsedFields:
            return self.parser_stage.parse(definition, source)

        def finalize(parsed: ParsedFields) -> ParseJobResult:
            record = self.repository.record_for(session.profile_id)
            merge = self.merge_engine.merge(record, parsed)
            current = get_bucket(session.current_bucket)
            written_slots = {self.mapping.resolve(field_id).slot for field_id in merge.written}
            # Revising a finished bucket's optional slots must not move the user on
            filled_required = bool(written_slots.intersection(current.required_slots))
            satisfied = current.id if filled_required and is_bucket_satisfied(record, current) else None
            logger.info(f'Session {session.id}: {definition.id.value} wrote {merge.written or "nothing"}')
            return ParseJobResult(parsed=parsed, merge=merge, satisfied_bucket=satisfied)

        def then(job: Job) -> None:
            if job.status != JobStatus.COMPLETED:
                return
            session.mark_processed(watermark, window.message_ids)
            result: ParseJobResult = job.result
            if self.auto_advance and result.satisfied_bucket is not None and result.satisfied_bucket == session.current_bucket:
                self.buckets.advance(session)

        return self.tracker.submit(session.id, definition.id.value, JobKind.PARSING, call, finalize=finalize, then=then)

    def _context(self, session: Session, window: ConversationChunk) -> AnalyzerContext:
        record = self.repository.record_for(session.profile_id)
        existing = {slot: entry['value'] for slot, entry in record.snapshot().items()}
        return AnalyzerContext(business_name=session.business_name,
                               chunk=window,
                               business_description=session.business_description,
                               industry=session.industry,
                               existing_fields=existing)

    def advance(self, session: Session) -> Bucket:
        return self.buckets.advance(session)

    def skip(self, session: Session) -> Bucket:
        return self.buckets.skip(session)

    def navigate(self, session: Session, bucket_id: Union[BucketId, str]) -> Bucket:
        return self.buckets.navigate(session, bucket_id)

    def close_session(self, session: Session) -> None:
        self.tracker.close_session(session.id)

    def profile_summary(self, session: Session) -> Dict[str, Any]:
        """Current slot values with per-bucket and overall completion."""
        record = self.repository.record_for(session.profile_id)
        return {
            'profile_id': session.profile_id,
            'current_bucket': session.current_bucket.value,
            'fields': record.snapshot(),
            'buckets': {bucket.id.value: bucket_completion(record, bucket) for bucket in BUCKET_ORDER if bucket.slots},
            'overall_completion': overall_completion(record),
        }
