"""
Job Manager
Owns job records and the job state machine, and runs the fetch -> analyze
pipeline for each job on a bounded worker pool.

States:
    pending -> fetching_reviews -> analyzing -> completed
    any non-terminal state -> failed

Each manager registers itself in the workers table and refreshes a heartbeat
while it runs. Jobs belong to the manager that created them; only jobs whose
owner stopped heartbeating are failed as interrupted.

advance() is the only mutator. It rejects moves out of terminal states,
transitions the state machine does not allow, and progress that goes
backwards. Every accepted update is also appended to the job's event stream.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from config.cache_db import JobDatabase
from pipeline.errors import (
    InvalidTransition, JobCancelled, JobNotFound, NoReviewsFound, PipelineError
)
from pipeline.models import (
    ALLOWED_TRANSITIONS, TERMINAL_STATUSES, CompositeAnalysis, Job, JobOptions,
    JobStatus, ProgressEvent, to_iso, utc_now
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [s.value for s in JobStatus if s not in TERMINAL_STATUSES]
FINISHED_STATUSES = [s.value for s in TERMINAL_STATUSES]

INTERRUPTED_MESSAGE = 'Interrupted by server restart'

FETCH_START_PROGRESS = 10
ANALYZE_START_PROGRESS = 60


class JobManager:
    """Creates jobs, schedules their pipeline and enforces the state machine"""

    def __init__(self, job_db: JobDatabase, fetcher, orchestrator,
                 max_workers: int = 4,
                 retention_hours: int = 24,
                 gc_interval_seconds: int = 3600,
                 fetch_timeout: Optional[float] = 600.0,
                 recover_interrupted: bool = True,
                 heartbeat_interval_seconds: float = 30.0,
                 worker_timeout_seconds: float = 120.0,
                 clock: Callable = utc_now):
        self.job_db = job_db
        self.fetcher = fetcher
        self.orchestrator = orchestrator
        self.retention_hours = retention_hours
        self.gc_interval_seconds = gc_interval_seconds
        self.fetch_timeout = fetch_timeout
        self.recover_interrupted = recover_interrupted
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.worker_timeout_seconds = worker_timeout_seconds
        self.clock = clock
        self.owner_id = uuid.uuid4().hex

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._lock = threading.RLock()

        # Cancellation flags for jobs that have not finished yet
        self._cancel_flags: Dict[str, threading.Event] = {}
        self._cancel_flags_lock = threading.Lock()

        self._gc_stop = threading.Event()
        self._gc_thread: Optional[threading.Thread] = None

        self.job_db.touch_worker(self.owner_id, to_iso(self.clock()))
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread = threading.Thread(target=self._heartbeat_loop, name="job-heartbeat", daemon=True)
        self._heartbeat_thread.start()

        if recover_interrupted:
            self.recover_orphaned_jobs()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        """Get a job by id, raising JobNotFound if it does not exist"""
        row = self.job_db.get_job(job_id)
        if not row:
            raise JobNotFound(job_id)
        return self._job_from_row(row)

    def list_by_app(self, app_id: str) -> List[Job]:
        """All jobs for an app, oldest first"""
        return [self._job_from_row(row) for row in self.job_db.get_jobs_by_app(app_id)]

    def find_active(self, app_id: str, store: str) -> Optional[Job]:
        """The oldest non-terminal job for (app_id, store), if any"""
        rows = self.job_db.get_active_jobs(ACTIVE_STATUSES, app_id=app_id, store=store)
        return self._job_from_row(rows[0]) if rows else None

    def count_active(self) -> int:
        return self.job_db.count_jobs(ACTIVE_STATUSES)

    def events(self, job_id: str) -> List[ProgressEvent]:
        """Progress events of a job in the order they happened"""
        self.get(job_id)
        return [ProgressEvent(**event) for event in self.job_db.get_events(job_id)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, app_id: str, store: str, options: Optional[JobOptions] = None,
               user_id: Optional[str] = None, start: bool = True) -> Job:
        """
        Allocate a pending job and schedule its pipeline

        Returns immediately; the pipeline runs on the worker pool.
        """
        options = options or JobOptions()
        now = to_iso(self.clock())
        job = Job(
            id=str(uuid.uuid4()),
            app_id=app_id,
            store=store,
            status=JobStatus.PENDING,
            progress=0,
            message='Job created, waiting to start...',
            options=options,
            created_at=now,
            updated_at=now,
            user_id=user_id,
        )

        self.job_db.create_job({
            'job_id': job.id,
            'app_id': app_id,
            'store': store,
            'user_id': user_id,
            'status': job.status.value,
            'progress': job.progress,
            'message': job.message,
            'options': options.to_dict(),
            'owner_id': self.owner_id,
            'created_at': now,
        })
        logger.info("Created job %s for %s/%s", job.id, store, app_id)

        with self._cancel_flags_lock:
            self._cancel_flags[job.id] = threading.Event()

        if start:
            self._executor.submit(self._run_job, job.id)
        return job

    def advance(self, job_id: str, status: JobStatus, progress: int, message: str,
                result: Optional[CompositeAnalysis] = None, error: Optional[str] = None) -> Job:
        """
        Apply a status/progress update

        Completed always carries progress 100 and a result. Failed keeps the
        last reported progress and carries an error.

        Raises:
            JobNotFound: unknown job id
            InvalidTransition: the update breaks the state machine
        """
        status = JobStatus(status)
        progress = max(0, min(100, int(progress)))

        with self._lock:
            job = self.get(job_id)
            current = job.status

            if job.is_terminal:
                raise InvalidTransition(job_id, current.value, status.value, "job already finished")
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(job_id, current.value, status.value)

            if status == JobStatus.COMPLETED:
                if result is None:
                    raise InvalidTransition(job_id, current.value, status.value, "missing result")
                progress = 100
                error = None
            elif status == JobStatus.FAILED:
                if not error:
                    raise InvalidTransition(job_id, current.value, status.value, "missing error")
                progress = job.progress
                result = None
            else:
                if result is not None or error is not None:
                    raise InvalidTransition(job_id, current.value, status.value,
                                            "result and error are only set on finished jobs")
                if progress < job.progress:
                    raise InvalidTransition(job_id, current.value, status.value,
                                            f"progress cannot go from {job.progress} to {progress}")

            now = to_iso(self.clock())
            updates = {
                'status': status.value,
                'progress': progress,
                'message': message,
                'updated_at': now,
            }
            if status == JobStatus.COMPLETED:
                updates['result_data'] = result.to_dict()
            elif status == JobStatus.FAILED:
                updates['error'] = error

            self.job_db.record_update(job_id, updates, {
                'timestamp': now,
                'status': status.value,
                'progress': progress,
                'message': message,
            })

        if status == current:
            logger.debug("Job %s: %s (%d%%) - %s", job_id, status.value, progress, message)
        else:
            logger.info("Job %s: %s -> %s (%d%%) - %s", job_id, current.value, status.value, progress, message)

        return replace(job, status=status, progress=progress, message=message, updated_at=now,
                       result=result, error=error)

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a job that has not finished

        The job fails right away with "Job cancelled"; a running pipeline stops
        at its next page or heartbeat.
        """
        with self._cancel_flags_lock:
            flag = self._cancel_flags.get(job_id)
            if flag is not None:
                flag.set()

        with self._lock:
            job = self.get(job_id)
            if job.is_terminal:
                return job
            job = self.advance(job_id, JobStatus.FAILED, job.progress, 'Job cancelled',
                               error=str(JobCancelled(job_id)))

        self._log_unrefunded(job)
        return job

    def gc(self, max_age_hours: Optional[float] = None) -> List[str]:
        """Remove finished jobs created more than max_age_hours ago. Returns removed ids."""
        if max_age_hours is None:
            max_age_hours = self.retention_hours
        cutoff = to_iso(self.clock() - timedelta(hours=max_age_hours))

        removed = self.job_db.delete_jobs_created_before(cutoff, FINISHED_STATUSES)
        for job_id in removed:
            logger.info("Cleaned up old job %s", job_id)
        return removed

    def recover_orphaned_jobs(self) -> List[str]:
        """
        Fail unfinished jobs whose manager has stopped heartbeating

        Jobs of live managers, in this process or another one sharing the
        database, are left alone. Returns the ids of the failed jobs.
        """
        alive_since = to_iso(self.clock() - timedelta(seconds=self.worker_timeout_seconds))
        recovered = []
        for row in self.job_db.get_orphaned_jobs(ACTIVE_STATUSES, alive_since, exclude_owner=self.owner_id):
            try:
                job = self.advance(row['job_id'], JobStatus.FAILED, row['progress'],
                                   INTERRUPTED_MESSAGE, error=INTERRUPTED_MESSAGE)
            except PipelineError:
                # Finished by its owner in the meantime
                continue
            logger.warning("Job %s lost its worker %s, marked failed", job.id, row.get('owner_id'))
            self._log_unrefunded(job)
            recovered.append(job.id)

        self.job_db.delete_stale_workers(alive_since)
        return recovered

    def start_gc(self):
        """Run gc() every gc_interval_seconds on a daemon thread"""
        if self._gc_thread is not None and self._gc_thread.is_alive():
            return

        def loop():
            while not self._gc_stop.wait(self.gc_interval_seconds):
                try:
                    self.gc()
                except Exception:
                    logger.exception("Job cleanup failed")

        self._gc_stop.clear()
        self._gc_thread = threading.Thread(target=loop, name="job-gc", daemon=True)
        self._gc_thread.start()

    def shutdown(self, wait: bool = True):
        """Stop GC, cancel unfinished jobs and stop the worker pool"""
        self._gc_stop.set()
        self._heartbeat_stop.set()

        with self._cancel_flags_lock:
            job_ids = list(self._cancel_flags)
        for job_id in job_ids:
            try:
                self.cancel(job_id)
            except PipelineError:
                logger.debug("Could not cancel job %s during shutdown", job_id, exc_info=True)

        self._executor.shutdown(wait=wait, cancel_futures=True)
        if wait and self._gc_thread is not None:
            self._gc_thread.join(timeout=5)
        if wait:
            self._heartbeat_thread.join(timeout=5)
        self.job_db.remove_worker(self.owner_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _lookup_app_name(self, job: Job) -> Optional[str]:
        """Store listing title for the result; a failed lookup does not fail the job"""
        try:
            info = self.fetcher.app_info(job.app_id, job.store, job.options.country)
        except PipelineError as e:
            logger.warning("App info lookup failed for %s/%s: %s", job.store, job.app_id, e)
            return None
        return info.title if info else None

    def _run_job(self, job_id: str):
        """
        Background task that runs the analysis pipeline for one job
        Any exception ends the job as failed; nothing is raised to the pool.
        """
        with self._cancel_flags_lock:
            cancel_event = self._cancel_flags.setdefault(job_id, threading.Event())

        try:
            job = self.get(job_id)
            if job.is_terminal:
                return
            if cancel_event.is_set():
                raise JobCancelled(job_id)

            # Phase 1: fetch
            self.advance(job_id, JobStatus.FETCHING_REVIEWS, FETCH_START_PROGRESS,
                         'Fetching reviews from app store...')
            reviews = self.fetcher.fetch(
                job.app_id, job.store, job.options,
                on_progress=self._progress_callback(job_id, JobStatus.FETCHING_REVIEWS),
                cancel_event=cancel_event,
                timeout=self.fetch_timeout,
                job_id=job_id,
            )
            if not reviews:
                raise NoReviewsFound(job.app_id, job.store)
            app_name = self._lookup_app_name(job)

            # Phase 2: analyze
            self.advance(job_id, JobStatus.ANALYZING, ANALYZE_START_PROGRESS, 'Analyzing reviews with AI...')
            analysis = self.orchestrator.analyze(
                reviews, job.app_id, job.store,
                app_name=app_name,
                on_progress=self._progress_callback(job_id, JobStatus.ANALYZING),
                cancel_event=cancel_event,
                job_id=job_id,
            )

            self.advance(job_id, JobStatus.COMPLETED, 100, 'Analysis completed successfully', result=analysis)

        except Exception as e:
            self._fail(job_id, e)
        finally:
            with self._cancel_flags_lock:
                self._cancel_flags.pop(job_id, None)

    def _progress_callback(self, job_id: str, status: JobStatus):
        def on_progress(progress: int, message: str):
            self.advance(job_id, status, progress, message)
        return on_progress

    def _fail(self, job_id: str, exc: Exception):
        error = str(exc) or type(exc).__name__
        message = error if isinstance(exc, JobCancelled) else f'Processing failed: {error}'

        with self._lock:
            try:
                job = self.get(job_id)
            except JobNotFound:
                logger.warning("Job %s disappeared before it could be marked failed", job_id)
                return
            if job.is_terminal:
                # Already cancelled; the pipeline noticed late
                logger.debug("Job %s stopped after finishing: %s", job_id, exc)
                return

            if isinstance(exc, PipelineError):
                logger.warning("Job %s failed: %s", job_id, exc)
            else:
                logger.error("Job %s failed with unexpected error", job_id, exc_info=exc)
            job = self.advance(job_id, JobStatus.FAILED, job.progress, message, error=error)

        self._log_unrefunded(job)

    @staticmethod
    def _log_unrefunded(job: Job):
        if job.user_id:
            logger.warning("Job %s for user %s failed after a credit was debited; "
                           "no refund issued, flagging for reconciliation", job.id, job.user_id)

    def _heartbeat_loop(self):
        while not self._heartbeat_stop.wait(self.heartbeat_interval_seconds):
            try:
                self.job_db.touch_worker(self.owner_id, to_iso(self.clock()))
                if self.recover_interrupted:
                    self.recover_orphaned_jobs()
            except Exception:
                logger.exception("Worker heartbeat failed")

    @staticmethod
    def _job_from_row(row: dict) -> Job:
        result = row.get('result_data')
        return Job(
            id=row['job_id'],
            app_id=row['app_id'],
            store=row['store'],
            status=JobStatus(row['status']),
            progress=row['progress'],
            message=row.get('message') or '',
            options=JobOptions.from_dict(row.get('options')),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            user_id=row.get('user_id'),
            result=CompositeAnalysis.from_dict(result) if result else None,
            error=row.get('error'),
        )
