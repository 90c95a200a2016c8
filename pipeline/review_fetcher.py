"""
Review fetching for both app stores.

Each store is a ReviewSource that returns one page at a time; PaginatedFetcher
drives the page loop, reports progress after every page and persists the pages
it reads.

- Apple: public iTunes RSS feed, page-number cursor (the feed stops at page 10)
- Google: google-play-scraper, opaque continuation-token cursor
"""

import logging
import sqlite3
import threading
import time
from concurrent import futures
from dataclasses import replace
from typing import Callable, Dict, List, Optional

import requests
from google_play_scraper import Sort, app as gplay_app, reviews as gplay_reviews
from google_play_scraper.exceptions import NotFoundError

from pipeline.errors import JobCancelled, ReviewSourceError, StageTimeout
from pipeline.models import AppInfo, JobOptions, RawReview, Review, ReviewPage, Store
from utils.sentiment_analyzer import SentimentAnalyzer

logger = logging.getLogger(__name__)

APPLE_FEED_URL = (
    "https://itunes.apple.com/{country}/rss/customerreviews/"
    "page={page}/id={app_id}/sortby=mostrecent/json"
)
APPLE_LOOKUP_URL = "https://itunes.apple.com/lookup"

# Job progress range reserved for the fetch stage
FETCH_START_PROGRESS = 10
FETCH_END_PROGRESS = 55

ProgressCallback = Callable[[int, str], None]


class BaseReviewSource:
    """One app store's page API"""

    store: Store = None

    def first_cursor(self, options: JobOptions):
        return None

    def fetch_page(self, app_id: str, cursor, options: JobOptions) -> ReviewPage:
        """Fetch one page. An empty page or a None next_cursor ends pagination."""
        raise NotImplementedError

    def fetch_app_info(self, app_id: str, country: str = "us") -> Optional[AppInfo]:
        """Store listing details, or None if the store does not know the app"""
        return None


class AppleReviewSource(BaseReviewSource):
    """Apple App Store customer reviews RSS feed"""

    store = Store.APPLE

    def __init__(self, session: requests.Session = None, timeout: float = 15.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def first_cursor(self, options: JobOptions):
        return options.start_page

    def fetch_page(self, app_id: str, cursor, options: JobOptions) -> ReviewPage:
        page = int(cursor or 1)
        url = APPLE_FEED_URL.format(country=options.country, page=page, app_id=app_id)

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ReviewSourceError(f"Apple feed request failed on page {page}: {e}") from e

        # The feed answers past-the-end pages with 400/404
        if response.status_code in (400, 404):
            return ReviewPage(reviews=[], next_cursor=None)
        if response.status_code != 200:
            raise ReviewSourceError(f"Apple feed returned HTTP {response.status_code} on page {page}")

        try:
            data = response.json()
        except ValueError as e:
            raise ReviewSourceError(f"Apple feed returned invalid JSON on page {page}") from e

        entries = (data.get("feed") or {}).get("entry") or []
        # A single entry comes back as an object rather than a list
        if isinstance(entries, dict):
            entries = [entries]

        page_reviews = [self._parse_entry(entry) for entry in entries if "im:rating" in entry]
        if not page_reviews:
            return ReviewPage(reviews=[], next_cursor=None)
        return ReviewPage(reviews=page_reviews, next_cursor=page + 1)

    @staticmethod
    def _parse_entry(entry: dict) -> RawReview:
        def label(key):
            return (entry.get(key) or {}).get("label")

        try:
            rating = int(label("im:rating") or 0)
        except (TypeError, ValueError):
            rating = 0

        author = ((entry.get("author") or {}).get("name") or {}).get("label")
        return RawReview(
            rating=rating,
            title=label("title") or "",
            content=label("content") or "",
            author=author or "Anonymous",
            date=label("updated"),
        )

    def fetch_app_info(self, app_id: str, country: str = "us") -> Optional[AppInfo]:
        try:
            response = self.session.get(APPLE_LOOKUP_URL, params={"id": app_id, "country": country},
                                        timeout=self.timeout)
            response.raise_for_status()
            results = response.json().get("results") or []
        except (requests.RequestException, ValueError) as e:
            raise ReviewSourceError(f"Apple lookup failed for {app_id}: {e}") from e

        if not results:
            return None
        info = results[0]
        return AppInfo(
            app_id=app_id,
            store=self.store.value,
            title=info.get("trackName") or app_id,
            developer=info.get("artistName"),
            icon=info.get("artworkUrl100"),
            rating=info.get("averageUserRating"),
            url=info.get("trackViewUrl"),
        )


class GoogleReviewSource(BaseReviewSource):
    """Google Play reviews via google-play-scraper"""

    store = Store.GOOGLE

    def fetch_page(self, app_id: str, cursor, options: JobOptions) -> ReviewPage:
        try:
            result, token = gplay_reviews(
                app_id,
                lang="en",
                country=options.country,
                sort=Sort.NEWEST,
                count=options.page_size,
                continuation_token=cursor,
            )
        except Exception as e:
            raise ReviewSourceError(f"Google Play request failed: {e}") from e

        page_reviews = []
        for raw in result or []:
            at = raw.get("at")
            page_reviews.append(RawReview(
                rating=int(raw.get("score") or 0),
                title=raw.get("title") or "",
                content=raw.get("content") or "",
                author=raw.get("userName") or "Anonymous",
                date=at.isoformat() if hasattr(at, "isoformat") else at,
            ))

        # An exhausted token still comes back as an object with an empty .token
        if token is None or not getattr(token, "token", None):
            token = None
        return ReviewPage(reviews=page_reviews, next_cursor=token)

    def fetch_app_info(self, app_id: str, country: str = "us") -> Optional[AppInfo]:
        try:
            info = gplay_app(app_id, lang="en", country=country)
        except NotFoundError:
            return None
        except Exception as e:
            raise ReviewSourceError(f"Google Play lookup failed for {app_id}: {e}") from e

        return AppInfo(
            app_id=app_id,
            store=self.store.value,
            title=info.get("title") or app_id,
            developer=info.get("developer"),
            icon=info.get("icon"),
            rating=info.get("score"),
            url=info.get("url"),
        )


class PaginatedFetcher:
    """Runs the page loop for any review source"""

    def __init__(self, sources: Dict[str, BaseReviewSource], review_store=None,
                 analyzer: SentimentAnalyzer = None, clock: Callable[[], float] = time.monotonic,
                 max_workers: int = 4, poll_seconds: float = 1.0):
        self.sources = {Store(key).value: source for key, source in sources.items()}
        self.review_store = review_store
        self.analyzer = analyzer or SentimentAnalyzer()
        self.clock = clock
        self.poll_seconds = poll_seconds
        # Page requests run here; fetch() waits on them no longer than the stage deadline
        self._executor = futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fetch")

    def fetch(self, app_id: str, store: str, options: JobOptions,
              on_progress: Optional[ProgressCallback] = None,
              cancel_event: Optional[threading.Event] = None,
              timeout: Optional[float] = None,
              job_id: Optional[str] = None) -> List[Review]:
        """
        Fetch reviews page by page until the source runs dry or max_pages is reached

        Args:
            on_progress: called as on_progress(job_progress, message) after every page,
                with job_progress inside the 10-55 range
            cancel_event: checked before and while waiting for each page request
            timeout: seconds allowed for the whole fetch, enforced while a page request is
                in flight and after every page

        Returns:
            All reviews read, in page order. An empty list is not an error here.

        Raises:
            ReviewSourceError: the first page could not be read
            StageTimeout: the fetch ran past timeout
            JobCancelled: cancel_event was set
        """
        source = self._source(store)

        if options.use_pagination:
            max_pages = max(1, options.max_pages)
        else:
            max_pages = 1
            options = replace(options, page_size=options.limit)

        deadline = self.clock() + timeout if timeout else None
        cursor = source.first_cursor(options)
        collected: List[Review] = []

        self._report(on_progress, FETCH_START_PROGRESS, f"Fetching reviews from {store} store...")

        for page_number in range(1, max_pages + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(job_id)

            try:
                page = self._fetch_page(source, app_id, cursor, options, deadline, timeout,
                                        cancel_event, job_id)
            except ReviewSourceError:
                if page_number == 1:
                    raise
                logger.warning("Page %d for %s/%s failed, keeping %d reviews",
                               page_number, store, app_id, len(collected), exc_info=True)
                break

            if not page.reviews:
                logger.info("No more reviews for %s/%s after %d page(s)", store, app_id, page_number - 1)
                break

            page_reviews = [self._to_review(raw, app_id, store) for raw in page.reviews]
            if not options.use_pagination:
                page_reviews = page_reviews[:options.limit]

            if options.per_page_save:
                self._persist(page_reviews, app_id, store)
            collected.extend(page_reviews)

            logger.info("Page %d: fetched %d reviews for %s/%s (total: %d)",
                        page_number, len(page_reviews), store, app_id, len(collected))
            progress = FETCH_START_PROGRESS + int(
                (FETCH_END_PROGRESS - FETCH_START_PROGRESS) * page_number / max_pages
            )
            self._report(on_progress, progress,
                         f"Fetched page {page_number} ({len(collected)} reviews so far)")

            if deadline is not None and self.clock() > deadline:
                raise StageTimeout("Fetching reviews", timeout)

            cursor = page.next_cursor
            if cursor is None:
                break

        if not options.per_page_save:
            self._persist(collected, app_id, store)

        self._report(on_progress, FETCH_END_PROGRESS, f"Fetched {len(collected)} reviews")
        return collected

    def app_info(self, app_id: str, store: str, country: str = "us",
                 timeout: Optional[float] = 15.0) -> Optional[AppInfo]:
        """
        Listing details of an app, None if the store does not know it

        Raises:
            ReviewSourceError: the lookup failed
            StageTimeout: the lookup took longer than timeout
        """
        source = self._source(store)
        future = self._executor.submit(source.fetch_app_info, app_id, country)
        try:
            return future.result(timeout=timeout)
        except futures.TimeoutError:
            future.cancel()
            raise StageTimeout("App info lookup", timeout)

    def _source(self, store: str) -> BaseReviewSource:
        source = self.sources.get(Store(store).value)
        if source is None:
            raise ReviewSourceError(f"No review source configured for {store}")
        return source

    def _fetch_page(self, source: BaseReviewSource, app_id: str, cursor, options: JobOptions,
                    deadline: Optional[float], timeout: Optional[float],
                    cancel_event: Optional[threading.Event], job_id: Optional[str]) -> ReviewPage:
        future = self._executor.submit(source.fetch_page, app_id, cursor, options)
        while True:
            wait_seconds = self.poll_seconds
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    future.cancel()
                    logger.warning("Page request for %s timed out, abandoning it", app_id)
                    raise StageTimeout("Fetching reviews", timeout)
                wait_seconds = min(wait_seconds, remaining)

            done, _ = futures.wait([future], timeout=wait_seconds)
            if done:
                return future.result()

            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise JobCancelled(job_id)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _to_review(self, raw: RawReview, app_id: str, store: str) -> Review:
        return Review(
            app_id=app_id,
            store=store,
            rating=raw.rating,
            content=raw.content,
            sentiment=self.analyzer.label_for_rating(raw.rating),
            title=raw.title,
            author=raw.author,
            date=raw.date,
        )

    def _persist(self, page_reviews: List[Review], app_id: str, store: str):
        if self.review_store is None or not page_reviews:
            return
        try:
            self.review_store.append(page_reviews)
        except sqlite3.Error:
            # Review rows are fetch artifacts; the analysis does not depend on them
            logger.exception("Could not save %d reviews for %s/%s", len(page_reviews), store, app_id)

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], progress: int, message: str):
        if on_progress is None:
            return
        try:
            on_progress(progress, message)
        except Exception:
            logger.debug("Progress callback failed", exc_info=True)
