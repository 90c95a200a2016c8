"""
Cache & Dedup Gate

Decides what a submission turns into, in this order:
1. a fresh cached analysis   -> synthetic completed job, nothing billed
2. an in-flight job          -> that job, nothing billed
3. otherwise                 -> debit one credit, create a new job

The whole sequence runs under one process-wide lock, so simultaneous first
requests for the same app in this process create a single job and a single
debit. Separate processes sharing the database are not coordinated.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Union

from config.credit_ledger import BaseCreditLedger, InsufficientFunds
from pipeline.errors import InsufficientCredit, InvalidInput, JobQueueFull
from pipeline.models import CompositeAnalysis, Job, JobOptions, JobStatus, to_iso, utc_now
from utils.store_detector import resolve_app

logger = logging.getLogger(__name__)

_submit_lock = threading.Lock()

CREDITS_PER_ANALYSIS = 1


@dataclass
class SubmissionResult:
    cache_hit: bool
    duplicate_hit: bool
    job: Job

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cache_hit': self.cache_hit,
            'duplicate_hit': self.duplicate_hit,
            'job': self.job.to_dict(),
        }


class SubmissionGate:
    """Front door of the job pipeline"""

    def __init__(self, job_manager, analysis_store, credit_ledger: Optional[BaseCreditLedger] = None,
                 cache_ttl_hours: float = 24, max_pending_jobs: int = 50, max_pages_limit: int = 100,
                 clock=utc_now):
        self.job_manager = job_manager
        self.analysis_store = analysis_store
        self.credit_ledger = credit_ledger
        self.cache_ttl_hours = cache_ttl_hours
        self.max_pending_jobs = max_pending_jobs
        self.max_pages_limit = max_pages_limit
        self.clock = clock

    def submit(self, raw_input: str, store_hint: Optional[str] = None, user_id: Optional[str] = None,
               options: Union[JobOptions, Dict[str, Any], None] = None) -> SubmissionResult:
        """
        Submit an analysis request

        Args:
            raw_input: App id, package name or store URL
            store_hint: 'apple' or 'google', optional
            user_id: Billed user; anonymous submissions are not billed
            options: JobOptions or a dict of option values

        Raises:
            InvalidInput: the app or store could not be determined
            JobQueueFull: too many unfinished jobs
            InsufficientCredit: the user cannot pay for a new analysis
        """
        try:
            detected = resolve_app(raw_input, store_hint)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        if detected is None:
            raise InvalidInput(
                "Could not determine the app store. Provide an Apple app id, a Google Play "
                "package name or a store URL."
            )

        app_id, store = detected.app_id, detected.store
        if not isinstance(options, JobOptions):
            options = JobOptions.from_dict(options)
        if options.max_pages > self.max_pages_limit:
            logger.info("Capping max_pages %d at %d for %s/%s",
                        options.max_pages, self.max_pages_limit, store, app_id)
            options = replace(options, max_pages=self.max_pages_limit)

        with _submit_lock:
            cached = self.lookup_cached(app_id, store)
            if cached is not None:
                logger.info("Cache hit for %s/%s (analysis from %s)", store, app_id, cached.timestamp)
                return SubmissionResult(cache_hit=True, duplicate_hit=False,
                                        job=self._cached_job(cached, options, user_id))

            active = self.job_manager.find_active(app_id, store)
            if active is not None:
                logger.info("Returning in-flight job %s for %s/%s", active.id, store, app_id)
                return SubmissionResult(cache_hit=False, duplicate_hit=True, job=active)

            pending = self.job_manager.count_active()
            if pending >= self.max_pending_jobs:
                logger.warning("Rejecting %s/%s: %d jobs in progress", store, app_id, pending)
                raise JobQueueFull(pending, self.max_pending_jobs)

            debited = self._debit(user_id)
            try:
                job = self.job_manager.create(app_id, store, options=options, user_id=user_id)
            except Exception:
                if debited:
                    logger.warning("Job creation failed after debiting user %s; "
                                   "no refund issued, flagging for reconciliation", user_id)
                raise

        return SubmissionResult(cache_hit=False, duplicate_hit=False, job=job)

    def lookup_cached(self, app_id: str, store: str) -> Optional[CompositeAnalysis]:
        """The stored analysis if it is no older than the cache TTL"""
        analysis = self.latest_analysis(app_id, store)
        if analysis is None:
            return None

        try:
            age = analysis.age_seconds(self.clock())
        except (TypeError, ValueError):
            logger.warning("Ignoring cached analysis for %s/%s with bad timestamp %r",
                           store, app_id, analysis.timestamp)
            return None

        if age > self.cache_ttl_hours * 3600:
            logger.debug("Cached analysis for %s/%s is stale (%.0fs old)", store, app_id, age)
            return None
        return analysis

    def latest_analysis(self, app_id: str, store: str) -> Optional[CompositeAnalysis]:
        """The stored analysis regardless of age"""
        data = self.analysis_store.get_latest(app_id, store)
        return CompositeAnalysis.from_dict(data) if data else None

    def _debit(self, user_id: Optional[str]) -> bool:
        if not user_id or self.credit_ledger is None:
            return False

        try:
            balance = self.credit_ledger.debit(user_id, CREDITS_PER_ANALYSIS)
        except InsufficientFunds as e:
            raise InsufficientCredit(e.balance, CREDITS_PER_ANALYSIS) from e

        logger.info("Charged %d credit to user %s, remaining balance %d",
                    CREDITS_PER_ANALYSIS, user_id, balance)
        return True

    def _cached_job(self, analysis: CompositeAnalysis, options: JobOptions, user_id: Optional[str]) -> Job:
        now = to_iso(self.clock())
        return Job(
            id=str(uuid.uuid4()),
            app_id=analysis.app_id,
            store=analysis.store,
            status=JobStatus.COMPLETED,
            progress=100,
            message='Loaded cached analysis',
            options=options,
            created_at=now,
            updated_at=now,
            user_id=user_id,
            result=analysis,
        )
