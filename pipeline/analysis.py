"""
Analysis Orchestrator

Partitions fetched reviews by sentiment, runs the insight generator for every
non-empty positive/negative bucket, computes the summary statistics and
replaces the stored composite analysis for the app.
"""

import logging
import sqlite3
import threading
from typing import Callable, List, Optional

from pipeline.errors import PersistenceFailure
from pipeline.models import CompositeAnalysis, Review, to_iso, utc_now
from utils.sentiment_analyzer import NEGATIVE, POSITIVE, SentimentAnalyzer

logger = logging.getLogger(__name__)

# Job progress range for the analyze stage
ANALYZE_START_PROGRESS = 60
ANALYZE_SPAN = 30
ANALYZE_MAX_PROGRESS = 89


def insight_progress(completed_steps: int, sub_progress: float, total_steps: int) -> int:
    """Map one insight call's sub-progress into the job's 60-89 range"""
    value = ANALYZE_START_PROGRESS + ((completed_steps / total_steps) + (sub_progress / total_steps)) * ANALYZE_SPAN
    return min(int(value), ANALYZE_MAX_PROGRESS)


class AnalysisOrchestrator:
    """Builds and persists the composite analysis for one (app_id, store)"""

    def __init__(self, insight_generator, analysis_store, analyzer: SentimentAnalyzer = None,
                 clock: Callable = utc_now):
        self.insight_generator = insight_generator
        self.analysis_store = analysis_store
        self.analyzer = analyzer or SentimentAnalyzer()
        self.clock = clock

    def analyze(self, reviews: List[Review], app_id: str, store: str,
                on_progress: Optional[Callable[[int, str], None]] = None,
                cancel_event: Optional[threading.Event] = None,
                job_id: Optional[str] = None,
                app_name: Optional[str] = None) -> CompositeAnalysis:
        """
        Run insight calls per bucket, summarise and upsert

        Raises:
            PersistenceFailure: the analysis could not be stored
            JobCancelled: the job was cancelled during an insight call
        """
        buckets = self.analyzer.partition(reviews)
        positive = buckets[POSITIVE]
        negative = buckets[NEGATIVE]
        logger.info("Analyzing %d reviews for %s/%s: %d positive, %d negative, %d neutral",
                    len(reviews), store, app_id, len(positive), len(negative), len(buckets['neutral']))

        # +1 is the summary step
        total_steps = (1 if positive else 0) + (1 if negative else 0) + 1
        completed_steps = 0
        insights = {POSITIVE: None, NEGATIVE: None}

        for bucket, bucket_reviews in ((POSITIVE, positive), (NEGATIVE, negative)):
            if not bucket_reviews:
                continue

            message = f"Analyzing {len(bucket_reviews)} {bucket} reviews with AI..."
            self._report(on_progress, insight_progress(completed_steps, 0.0, total_steps), message)

            def heartbeat(sub_progress, _done=completed_steps, _message=message):
                self._report(on_progress, insight_progress(_done, sub_progress, total_steps), _message)

            insights[bucket] = self.insight_generator.summarize(
                bucket, bucket_reviews, on_progress=heartbeat,
                cancel_event=cancel_event, job_id=job_id
            )
            completed_steps += 1
            self._report(on_progress, insight_progress(completed_steps, 0.0, total_steps),
                         f"{bucket.capitalize()} review analysis completed")

        summary = self.analyzer.get_sentiment_distribution(reviews)
        analysis = CompositeAnalysis(
            app_id=app_id,
            store=store,
            summary=summary,
            positive_insight=insights[POSITIVE],
            negative_insight=insights[NEGATIVE],
            timestamp=to_iso(self.clock()),
            app_name=app_name,
        )

        self._report(on_progress, ANALYZE_MAX_PROGRESS, "Analysis completed, saving results...")
        try:
            self.analysis_store.upsert(app_id, store, analysis.to_dict())
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to save analysis for %s/%s: %s", store, app_id, e)
            raise PersistenceFailure(f"Could not save analysis: {e}") from e

        logger.info("Saved analysis for %s/%s (%d reviews)", store, app_id, summary['total_reviews'])
        return analysis

    @staticmethod
    def _report(on_progress, progress: int, message: str):
        if on_progress is None:
            return
        try:
            on_progress(progress, message)
        except Exception:
            logger.debug("Progress callback failed", exc_info=True)
