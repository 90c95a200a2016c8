"""
Data models for the analysis job pipeline.
Every review, no matter which store it comes from, is converted into these shapes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Store(str, Enum):
    """Supported app stores"""
    APPLE = "apple"     # page-number pagination
    GOOGLE = "google"   # continuation-token pagination


class JobStatus(str, Enum):
    PENDING = "pending"
    FETCHING_REVIEWS = "fetching_reviews"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Allowed forward moves; self-transitions carry progress-only updates
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PENDING, JobStatus.FETCHING_REVIEWS, JobStatus.FAILED},
    JobStatus.FETCHING_REVIEWS: {JobStatus.FETCHING_REVIEWS, JobStatus.ANALYZING, JobStatus.FAILED},
    JobStatus.ANALYZING: {JobStatus.ANALYZING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as strings
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class JobOptions:
    """Per-job fetch options"""
    country: str = "us"
    limit: int = 100            # single-shot size when pagination is off
    use_pagination: bool = True
    start_page: int = 1         # apple only
    max_pages: int = 100
    page_size: int = 100        # google only
    per_page_save: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        """Build options from request data, ignoring unknown keys and bad values"""
        options = cls()
        if not data:
            return options

        if data.get('country'):
            options.country = str(data['country']).lower()
        for key in ('limit', 'start_page', 'max_pages', 'page_size'):
            if data.get(key) is not None:
                try:
                    value = int(data[key])
                except (TypeError, ValueError):
                    continue
                if value > 0:
                    setattr(options, key, value)
        for key in ('use_pagination', 'per_page_save'):
            if data.get(key) is not None:
                setattr(options, key, _as_bool(data[key]))
        return options

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


@dataclass
class RawReview:
    """A review as returned by a review source, before sentiment is attached"""
    rating: int
    content: str
    title: str = ""
    author: str = "Anonymous"
    date: Optional[str] = None


@dataclass
class ReviewPage:
    """One page of reviews; next_cursor is None when the source has no more data"""
    reviews: List[RawReview]
    next_cursor: Any = None


@dataclass
class Review:
    """A single review attributed to exactly one (app_id, store)"""
    app_id: str
    store: str
    rating: int
    content: str
    sentiment: str
    title: str = ""
    author: str = "Anonymous"
    date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppInfo:
    """Store listing details of an app"""
    app_id: str
    store: str
    title: str
    developer: Optional[str] = None
    icon: Optional[str] = None
    rating: Optional[float] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CompositeAnalysis:
    """The persisted, overwritable summary + insight artifact for one app/store pair"""
    app_id: str
    store: str
    summary: Dict[str, Any]
    positive_insight: Optional[Dict[str, Any]]
    negative_insight: Optional[Dict[str, Any]]
    timestamp: str
    app_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompositeAnalysis":
        return cls(
            app_id=data['app_id'],
            store=data['store'],
            summary=data.get('summary') or {},
            positive_insight=data.get('positive_insight'),
            negative_insight=data.get('negative_insight'),
            timestamp=data['timestamp'],
            app_name=data.get('app_name'),
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - from_iso(self.timestamp)).total_seconds()


@dataclass
class ProgressEvent:
    timestamp: str
    status: str
    progress: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    """Unit of work routed through fetch -> analyze -> complete/fail"""
    id: str
    app_id: str
    store: str
    status: JobStatus
    progress: int
    message: str
    options: JobOptions
    created_at: str
    updated_at: str
    user_id: Optional[str] = None
    result: Optional[CompositeAnalysis] = None
    error: Optional[str] = None
    events: List[ProgressEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_result: bool = True) -> Dict[str, Any]:
        data = {
            'job_id': self.id,
            'app_id': self.app_id,
            'store': self.store,
            'status': self.status.value,
            'progress': self.progress,
            'message': self.message,
            'options': self.options.to_dict(),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }
        if include_result and self.status == JobStatus.COMPLETED and self.result:
            data['result'] = self.result.to_dict()
        if self.status == JobStatus.FAILED and self.error:
            data['error'] = self.error
        return data

    def to_summary(self) -> Dict[str, Any]:
        data = self.to_dict(include_result=False)
        data.pop('options')
        data['has_result'] = self.status == JobStatus.COMPLETED and self.result is not None
        return data
