"""
Error taxonomy for the analysis job pipeline
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the job pipeline"""


class InvalidInput(PipelineError):
    """The app identifier or store could not be determined"""


class InsufficientCredit(PipelineError):
    """The caller's credit balance does not cover a new analysis"""

    def __init__(self, balance: int, required: int = 1):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits: balance {balance}, required {required}")


class JobNotFound(PipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransition(PipelineError):
    """A job update would violate the job state machine"""

    def __init__(self, job_id: str, current: str, requested: str, reason: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        detail = f": {reason}" if reason else ""
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}{detail}")


class NoReviewsFound(PipelineError):
    def __init__(self, app_id: str, store: str):
        self.app_id = app_id
        self.store = store
        super().__init__(
            f"No reviews found for app {app_id} in {store} store. The app might not exist, "
            "have no reviews, or the ID might be incorrect."
        )


class ReviewSourceError(PipelineError):
    """A page request to an app store failed"""


class InsightGeneratorFailure(PipelineError):
    """The LLM call failed or returned something that is not the expected JSON"""


class PersistenceFailure(PipelineError):
    """Writing the composite analysis failed"""


class StageTimeout(PipelineError):
    def __init__(self, stage: str, seconds: float):
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"{stage} timed out after {seconds:g} seconds")


class JobCancelled(PipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__("Job cancelled")


class JobQueueFull(PipelineError):
    def __init__(self, pending: int, limit: int):
        self.pending = pending
        self.limit = limit
        super().__init__(f"Too many analyses in progress ({pending}/{limit}), try again shortly")
