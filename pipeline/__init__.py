"""
Analysis job pipeline: submission gate, job manager, review fetchers,
analysis orchestrator and insight generator.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config.cache_db import AnalysisStore, JobDatabase, ReviewStore
from config.credit_ledger import BaseCreditLedger, get_credit_ledger
from config.llm_client import BaseLLMClient, get_llm_client
from config.settings import Settings, get_settings
from pipeline.analysis import AnalysisOrchestrator
from pipeline.insight_generator import InsightGenerator
from pipeline.job_manager import JobManager
from pipeline.review_fetcher import (
    AppleReviewSource, BaseReviewSource, GoogleReviewSource, PaginatedFetcher
)
from pipeline.submission_gate import SubmissionGate

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    job_db: JobDatabase
    analysis_store: AnalysisStore
    review_store: ReviewStore
    credit_ledger: Optional[BaseCreditLedger]
    llm_client: Optional[BaseLLMClient]
    insight_generator: InsightGenerator
    fetcher: PaginatedFetcher
    orchestrator: AnalysisOrchestrator
    job_manager: JobManager
    gate: SubmissionGate

    def shutdown(self, wait: bool = True):
        self.job_manager.shutdown(wait=wait)
        self.insight_generator.shutdown(wait=wait)
        self.fetcher.shutdown(wait=wait)


def build_services(settings: Settings = None,
                   llm_client: BaseLLMClient = None,
                   credit_ledger: BaseCreditLedger = None,
                   sources: Dict[str, BaseReviewSource] = None,
                   start_gc: bool = True,
                   recover_interrupted: bool = True) -> Services:
    """
    Wire the pipeline from settings

    Collaborators passed in explicitly are used as-is; anything missing is built
    from settings.

    recover_interrupted=False leaves unfinished jobs of stopped workers alone,
    for short-lived processes such as the CLI that share the job database.
    """
    settings = settings or get_settings()

    if llm_client is None:
        try:
            llm_client = get_llm_client(settings)
        except ValueError as e:
            # Jobs still run; every insight call falls back to the default shape
            logger.error("LLM client unavailable: %s", e)

    if credit_ledger is None:
        credit_ledger = get_credit_ledger(settings)

    if sources is None:
        sources = {
            'apple': AppleReviewSource(timeout=settings.request_timeout),
            'google': GoogleReviewSource(),
        }

    job_db = JobDatabase(settings.jobs_db_path)
    analysis_store = AnalysisStore(settings.analysis_db_path)
    review_store = ReviewStore(settings.analysis_db_path)

    insight_generator = InsightGenerator(
        llm_client,
        char_budget=settings.insight_char_budget,
        call_timeout=settings.insight_call_timeout,
        tick_seconds=settings.progress_tick_seconds,
        max_workers=settings.max_concurrent_jobs,
    )
    fetcher = PaginatedFetcher(sources, review_store=review_store, max_workers=settings.max_concurrent_jobs)
    orchestrator = AnalysisOrchestrator(insight_generator, analysis_store)
    job_manager = JobManager(
        job_db, fetcher, orchestrator,
        max_workers=settings.max_concurrent_jobs,
        retention_hours=settings.job_retention_hours,
        gc_interval_seconds=settings.gc_interval_seconds,
        fetch_timeout=settings.fetch_stage_timeout,
        recover_interrupted=recover_interrupted,
        heartbeat_interval_seconds=settings.worker_heartbeat_seconds,
        worker_timeout_seconds=settings.worker_timeout_seconds,
    )
    gate = SubmissionGate(
        job_manager, analysis_store, credit_ledger,
        cache_ttl_hours=settings.cache_ttl_hours,
        max_pending_jobs=settings.max_pending_jobs,
        max_pages_limit=settings.max_pages_limit,
    )

    if start_gc:
        job_manager.start_gc()

    return Services(
        settings=settings,
        job_db=job_db,
        analysis_store=analysis_store,
        review_store=review_store,
        credit_ledger=credit_ledger,
        llm_client=llm_client,
        insight_generator=insight_generator,
        fetcher=fetcher,
        orchestrator=orchestrator,
        job_manager=job_manager,
        gate=gate,
    )
