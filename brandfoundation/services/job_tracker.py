"""
Job Tracker: single-flight admission and lifecycle of analyzer/parser jobs.

Jobs are keyed by (session, stage) where the stage is an analyzer or parser
identifier. At most one non-terminal job exists per key. Each admitted job
runs as its own asyncio task; the blocking LLM and persistence calls run in
worker threads so one slow session never stalls another.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..models.core import Job, JobKind, JobStatus
from ..utils.bedrock_llm import call_cancelled
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.profile_store import ProfileStoreError
from ..utils.timestamp_utils import elapsed_ms, to_datetime
from .analyzers import GenerationFailure

logger = get_logger(__name__)


class AdmissionConflict(Exception):
    """A job for the same (session, stage) key is still in flight."""

    def __init__(self, existing: Job):
        super().__init__(f'Job {existing.id} for {existing.stage_id} in session {existing.session_id} is still {existing.status.value}')
        self.existing = existing


class SessionClosedError(Exception):
    """New jobs are no longer admitted for a closed session."""
    pass


class JobTracker:
    """In-memory, per-process registry of pipeline jobs."""

    def __init__(self, timeout_seconds: Optional[float] = None, history_limit: Optional[int] = None):
        """
        Initialize the tracker.

        Args:
            timeout_seconds: Bound on each LLM call (uses config default if None)
            history_limit: Terminal jobs kept for polling (uses config default if None)
        """
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.pipeline.llm_timeout_seconds
        self.history_limit = history_limit if history_limit is not None else config.pipeline.job_history_limit
        self._jobs: Dict[str, Job] = {}
        self._in_flight: Dict[Tuple[str, str], Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed: Set[str] = set()
        # Worker calls still running after their job timed out, by key
        self._orphans: Dict[Tuple[str, str], asyncio.Future] = {}

    def submit(self,
               session_id: str,
               stage_id: str,
               kind: JobKind,
               call: Callable[[], Any],
               finalize: Optional[Callable[[Any], Any]] = None,
               then: Optional[Callable[[Job], None]] = None) -> Job:
        """Admit a job and schedule it on the running event loop.

        Args:
            session_id: Session the job belongs to
            stage_id: Analyzer or parser identifier
            kind: Analysis or parsing
            call: Blocking LLM step, run in a worker thread under the timeout
            finalize: Blocking step applied to the call result (e.g. the merge)
                before the job is marked completed
            then: Callback run on the event loop once the job is terminal

        Returns:
            The queued Job

        Raises:
            AdmissionConflict: If a job with the same key is not yet terminal
            SessionClosedError: If the session was closed
        """
        if session_id in self._closed:
            raise SessionClosedError(f'Session {session_id} is closed')

        loop = asyncio.get_running_loop()
        key = (session_id, stage_id)
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.info(f'Rejected duplicate {kind.value} job for {stage_id} in session {session_id}')
            raise AdmissionConflict(existing)

        job = Job(session_id=session_id, stage_id=stage_id, kind=kind)
        self._in_flight[key] = job
        self._jobs[job.id] = job
        self._tasks[job.id] = loop.create_task(self._run(job, call, finalize, then))

        logger.info(f'Queued {kind.value} job {job.id} for {stage_id} in session {session_id}')
        return job

    async def _run(self, job: Job, call: Callable[[], Any], finalize: Optional[Callable[[Any], Any]],
                   then: Optional[Callable[[Job], None]]) -> None:
        orphan = self._orphans.get(job.key)
        if orphan is not None:
            logger.info(f'Job {job.id} waiting for the timed-out {job.stage_id} call to return')
            await asyncio.wait([orphan])

        started = time.monotonic()
        job.status = JobStatus.RUNNING
        logger.debug(f'Job {job.id} running')

        # The worker thread inherits this context, so the LLM client sees the event
        cancel = threading.Event()
        call_cancelled.set(cancel)
        worker = asyncio.ensure_future(asyncio.to_thread(call))

        try:
            result = await asyncio.wait_for(asyncio.shield(worker), timeout=self.timeout_seconds)
            if finalize is not None:
                result = await asyncio.to_thread(finalize, result)
            job.result = result
            self._finish(job, JobStatus.COMPLETED, started)
            logger.info(f'Job {job.id} ({job.stage_id}) completed in {job.duration_ms}ms')

        except asyncio.TimeoutError:
            cancel.set()
            self._hold_orphan(job.key, worker)
            self._fail(job, 'generation_failure', f'LLM call timed out after {self.timeout_seconds}s', started)
        except GenerationFailure as e:
            self._fail(job, 'generation_failure', str(e), started)
        except ProfileStoreError as e:
            self._fail(job, 'persistence_error', str(e), started)
        except Exception as e:
            self._fail(job, 'unexpected', f'{type(e).__name__}: {e}', started)

        if then is not None:
            try:
                then(job)
            except Exception as e:
                logger.error(f'Completion handler for job {job.id} failed: {e}')

    def _hold_orphan(self, key: Tuple[str, str], worker: asyncio.Future) -> None:
        """Keep the next job for ``key`` from calling the LLM until ``worker`` returns."""
        self._orphans[key] = worker

        def release(done: asyncio.Future) -> None:
            if not done.cancelled() and done.exception() is not None:
                logger.debug(f'Timed-out {key[1]} call in session {key[0]} ended with: {done.exception()}')
            if self._orphans.get(key) is done:
                del self._orphans[key]

        worker.add_done_callback(release)

    def _finish(self, job: Job, status: JobStatus, started: float) -> None:
        job.duration_ms = elapsed_ms(started)
        job.completed_at = to_datetime()
        job.status = status
        if self._in_flight.get(job.key) is job:
            del self._in_flight[job.key]
        self._prune()

    def _fail(self, job: Job, kind: str, message: str, started: float) -> None:
        job.error_kind = kind
        job.error = message
        self._finish(job, JobStatus.FAILED, started)
        logger.error(f'Job {job.id} ({job.stage_id}) failed after {job.duration_ms}ms: {message}')

    def _prune(self) -> None:
        overflow = len(self._jobs) - self.history_limit
        if overflow <= 0:
            return
        for job_id in [job_id for job_id, job in self._jobs.items() if job.status.is_terminal][:overflow]:
            del self._jobs[job_id]
            self._tasks.pop(job_id, None)

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def in_flight(self, session_id: str, stage_id: str) -> Optional[Job]:
        return self._in_flight.get((session_id, stage_id))

    def jobs_for_session(self, session_id: str) -> List[Job]:
        return [job for job in self._jobs.values() if job.session_id == session_id]

    async def wait(self, job_id: str) -> Optional[Job]:
        """Wait for a job to become terminal and return it."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self._jobs.get(job_id)

    async def drain(self) -> None:
        """Wait until no job is running, including jobs queued by completion handlers."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)

    def is_closed(self, session_id: str) -> bool:
        return session_id in self._closed

    def close_session(self, session_id: str) -> None:
        """Stop admitting jobs for a session; running jobs still complete."""
        self._closed.add(session_id)
        logger.info(f'Session {session_id} closed to new jobs')
