"""
MCP Interface Layer using fastmcp for the onboarding conversation.

Run with ``python -m brandfoundation.mcp_interface``.
"""
import asyncio
import uuid
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from brandfoundation.models.core import AnalysisOutput, Session
from brandfoundation.services.bucket_state import BucketTransitionError
from brandfoundation.services.job_tracker import AdmissionConflict, SessionClosedError
from brandfoundation.services.pipeline import OnboardingPipeline, ParseJobResult
from brandfoundation.utils.bedrock_llm import BedrockLLM
from brandfoundation.utils.config import config
from brandfoundation.utils.health_check import check_health
from brandfoundation.utils.logging_config import get_logger
from brandfoundation.utils.opensearch_client import OpenSearchProfileRepository
from brandfoundation.utils.profile_store import InMemoryProfileRepository, ProfileStoreError

logger = get_logger(__name__)


def _build_repository():
    if config.mcp.profile_store == 'memory':
        logger.warning('Using in-memory profile store; profiles are lost on restart')
        return InMemoryProfileRepository()
    repository = OpenSearchProfileRepository(config.opensearch)
    repository.ensure_indices()
    return repository


# Initialize FastMCP application
mcp = FastMCP('Brand Foundation')
pipeline = OnboardingPipeline(BedrockLLM(config.bedrock_llm), _build_repository())
sessions: Dict[str, Session] = {}


def _session(session_id: str) -> Session:
    session = sessions.get(session_id)
    if session is None:
        raise ValueError(f'Unknown session: {session_id}')
    return session


def _result_summary(result: Any) -> Optional[Dict[str, Any]]:
    if isinstance(result, AnalysisOutput):
        return {'analysis': result.prose, 'input_message_count': result.input_message_count}
    if isinstance(result, ParseJobResult):
        return {
            'fields': {
                field_id: {
                    'value': parsed.value,
                    'confidence': parsed.confidence.value,
                    'reasoning': parsed.reasoning
                }
                for field_id, parsed in result.parsed.fields.items()
            },
            'skipped': result.parsed.skipped,
            'violations': result.parsed.violations,
            'declined': result.parsed.declined,
            'merge': {field_id: outcome.value for field_id, outcome in result.merge.outcomes.items()}
        }
    return None


def _bucket_view(session: Session) -> Dict[str, Any]:
    bucket = pipeline.buckets.current_bucket(session)
    return {'session_id': session.id, 'bucket': bucket.id.value, 'name': bucket.name, 'is_optional': bucket.is_optional}


@mcp.tool()
async def start_session(business_name: str, business_description: str = '', industry: str = '', profile_id: str = '') -> Dict[str, Any]:
    """Start an onboarding conversation for a business.

    Args:
        business_name: Name of the business or brand
        business_description: Short description, if known
        industry: Industry, if known
        profile_id: Existing profile to continue (a new one if empty)

    Returns:
        Session ID, profile ID and the bucket in focus
    """
    if not business_name or not business_name.strip():
        raise ValueError('Business name is required')

    session = Session(id=f'sess_{uuid.uuid4().hex[:16]}',
                      profile_id=profile_id.strip() or f'prof_{uuid.uuid4().hex[:16]}',
                      business_name=business_name.strip(),
                      business_description=business_description.strip(),
                      industry=industry.strip())
    sessions[session.id] = session
    logger.info(f'Started session {session.id} for profile {session.profile_id}')
    return {**_bucket_view(session), 'profile_id': session.profile_id}


@mcp.tool()
async def add_message(session_id: str, content: str, role: str = 'user') -> Dict[str, Any]:
    """Add a conversation turn; user turns start analysis for the current bucket.

    Args:
        session_id: Session ID
        content: Message text
        role: 'user' or 'assistant'

    Returns:
        Stored message ID and sequence, plus the job started (if any)
    """
    session = _session(session_id)
    if not content or not content.strip():
        raise ValueError('Message content is required')

    try:
        recorded = pipeline.record_message(session, role, content)
    except SessionClosedError as e:
        logger.error(f'Message for closed session {session_id}: {e}')
        raise Exception(f'Adding message failed: {e}')

    message, job = recorded['message'], recorded['job']
    return {'message_id': message.id, 'sequence': message.sequence, 'job': job.to_dict() if job else None}


@mcp.tool()
async def run_analyzer(session_id: str, analyzer_id: str) -> Optional[Dict[str, Any]]:
    """Run one analyzer and its parser on demand (e.g. completeness_checker).

    Args:
        session_id: Session ID
        analyzer_id: Analyzer identifier

    Returns:
        The started job, or None if the session has no messages yet
    """
    session = _session(session_id)
    try:
        job = pipeline.run_analyzer(session, analyzer_id)
    except AdmissionConflict as e:
        logger.info(f'Analyzer already running: {e}')
        return e.existing.to_dict()
    except (SessionClosedError, ValueError) as e:
        logger.error(f'Cannot run analyzer {analyzer_id}: {e}')
        raise Exception(f'Running analyzer failed: {e}')
    return job.to_dict() if job else None


@mcp.tool()
async def get_job(job_id: str) -> Dict[str, Any]:
    """Poll a job's status and, once completed, its result.

    Args:
        job_id: Job ID returned by add_message or run_analyzer
    """
    job = pipeline.tracker.get(job_id)
    if job is None:
        raise ValueError(f'Unknown job: {job_id}')
    return {**job.to_dict(), 'result': _result_summary(job.result)}


@mcp.tool()
async def advance_bucket(session_id: str) -> Dict[str, Any]:
    """Move the session to the next bucket."""
    session = _session(session_id)
    pipeline.advance(session)
    return _bucket_view(session)


@mcp.tool()
async def skip_bucket(session_id: str) -> Dict[str, Any]:
    """Skip the current bucket; only optional buckets can be skipped."""
    session = _session(session_id)
    try:
        pipeline.skip(session)
    except BucketTransitionError as e:
        logger.error(f'Skip rejected for session {session_id}: {e}')
        raise Exception(f'Skipping bucket failed: {e}')
    return _bucket_view(session)


@mcp.tool()
async def navigate_bucket(session_id: str, bucket_id: str) -> Dict[str, Any]:
    """Jump to any bucket.

    Args:
        session_id: Session ID
        bucket_id: One of basics, assets, story, words, style, hub, done
    """
    session = _session(session_id)
    try:
        pipeline.navigate(session, bucket_id)
    except BucketTransitionError as e:
        logger.error(f'Navigation rejected for session {session_id}: {e}')
        raise Exception(f'Navigating failed: {e}')
    return _bucket_view(session)


@mcp.tool()
async def get_profile(session_id: str) -> Dict[str, Any]:
    """Return the profile fields collected so far with completion scores."""
    session = _session(session_id)
    try:
        return pipeline.profile_summary(session)
    except ProfileStoreError as e:
        logger.error(f'Profile read failed for session {session_id}: {e}')
        raise Exception(f'Reading profile failed: {e}')


@mcp.tool()
async def close_session(session_id: str) -> Dict[str, Any]:
    """Stop starting new jobs for a session; running jobs still finish."""
    session = _session(session_id)
    pipeline.close_session(session)
    return {'session_id': session.id, 'closed': True}


@mcp.tool()
async def health() -> Dict[str, Any]:
    """Report whether Bedrock and the profile store are reachable, with the active pipeline settings."""
    return await asyncio.to_thread(check_health)


if __name__ == '__main__':
    if config.mcp.transport == 'stdio':
        mcp.run(transport='stdio')
    else:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
