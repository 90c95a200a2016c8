"""
Insight Generator Adapter

Turns one sentiment bucket of reviews into a structured insight object with a
single LLM call. While the call is outstanding the adapter reports heartbeat
progress on a fixed interval; the heartbeat approaches but never reaches 1.0 and
stops as soon as the response arrives.

Call failures, timeouts and unparseable responses are recovered here: the
bucket gets the default-empty insight and the job carries on.
"""

import copy
import logging
import re
import threading
import time
from concurrent import futures
from typing import Callable, Dict, List, Optional

from pipeline.errors import InsightGeneratorFailure, JobCancelled
from utils.sentiment_analyzer import NEGATIVE, POSITIVE

logger = logging.getLogger(__name__)

PRIORITIES = ('High', 'Medium', 'Low')

DEFAULT_INSIGHTS = {
    POSITIVE: {
        'top_features': [],
        'positive_experiences': [],
        'user_appreciation': [],
        'strength_highlights': [],
    },
    NEGATIVE: {
        'top_issues': [],
        'critical_problems': [],
        'suggested_improvements': [],
        'priority_actions': [],
    },
}

POSITIVE_PROMPT = """Analyze the following positive app reviews and extract:
1. Key features and functionalities that users love
2. Positive user experiences and satisfaction points
3. What makes the app stand out positively

Reviews:
{reviews}

Please provide a structured analysis with:
- Top 5 most mentioned features
- Key positive user experiences
- What users appreciate most about the app
- Suggestions for highlighting these strengths

Format the response as JSON with the following structure:
{{
  "top_features": ["feature1", "feature2", ...],
  "positive_experiences": ["experience1", "experience2", ...],
  "user_appreciation": ["point1", "point2", ...],
  "strength_highlights": ["highlight1", "highlight2", ...]
}}

Return ONLY the JSON object, no other text."""

NEGATIVE_PROMPT = """Analyze the following negative app reviews and extract:
1. Main issues and problems users are facing
2. Specific areas that need improvement
3. Common complaints and pain points
4. Suggested improvements and solutions

Reviews:
{reviews}

Please provide a structured analysis with:
- Top 5 most common issues
- Critical problems that need immediate attention
- Suggested improvements for each major issue
- Priority levels for fixes (High/Medium/Low)

Format the response as JSON with the following structure:
{{
  "top_issues": ["issue1", "issue2", ...],
  "critical_problems": ["problem1", "problem2", ...],
  "suggested_improvements": [
    {{
      "issue": "issue description",
      "improvement": "suggested solution",
      "priority": "High/Medium/Low"
    }}
  ],
  "priority_actions": ["action1", "action2", ...]
}}

Return ONLY the JSON object, no other text."""

PROMPTS = {POSITIVE: POSITIVE_PROMPT, NEGATIVE: NEGATIVE_PROMPT}

# Heartbeat: each tick closes this fraction of the gap to HEARTBEAT_CEILING
HEARTBEAT_CEILING = 0.95
HEARTBEAT_STEP = 0.15


def default_insight(bucket: str) -> Dict:
    """The default-empty insight shape for a bucket"""
    if bucket not in DEFAULT_INSIGHTS:
        raise ValueError(f"Unknown insight bucket: {bucket}")
    return copy.deepcopy(DEFAULT_INSIGHTS[bucket])


def build_review_text(reviews: List, max_chars: int = 8000) -> str:
    """
    Concatenate reviews into a prompt block, earliest first

    Stops before the first review that would push the block past max_chars;
    that review and everything after it are left out.
    """
    text = ''
    for review in reviews:
        entry = f"Rating: {review.rating}/5\nTitle: {review.title}\nContent: {review.content}\n\n"
        if len(text) + len(entry) > max_chars:
            break
        text += entry
    return text


def _snake_case(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def _string_list(value) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _improvement(item) -> Optional[Dict]:
    if not isinstance(item, dict):
        return None
    item = {_snake_case(k): v for k, v in item.items()}
    priority = str(item.get('priority') or '').strip().capitalize()
    if priority not in PRIORITIES:
        priority = 'Medium'
    return {
        'issue': str(item.get('issue') or '').strip(),
        'improvement': str(item.get('improvement') or '').strip(),
        'priority': priority,
    }


def normalize_insight(bucket: str, data) -> Dict:
    """
    Fit a parsed LLM response to the bucket's schema

    Unknown keys are dropped and missing keys come from the default shape.
    camelCase keys are accepted.

    Raises:
        InsightGeneratorFailure: data is not a JSON object
    """
    if not isinstance(data, dict):
        raise InsightGeneratorFailure(f"Expected a JSON object, got {type(data).__name__}")

    data = {_snake_case(k): v for k, v in data.items()}
    insight = default_insight(bucket)
    for key in insight:
        if key not in data:
            continue
        if key == 'suggested_improvements':
            items = data[key] if isinstance(data[key], list) else []
            insight[key] = [i for i in (_improvement(item) for item in items) if i]
        else:
            insight[key] = _string_list(data[key])
    return insight


class InsightGenerator:
    """Runs one insight call per bucket with heartbeat progress and a call timeout"""

    def __init__(self, llm_client, char_budget: int = 8000, call_timeout: float = 300.0,
                 tick_seconds: float = 1.0, max_workers: int = 4,
                 clock: Callable[[], float] = time.monotonic):
        self.llm_client = llm_client
        self.char_budget = char_budget
        self.call_timeout = call_timeout
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._executor = futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="insight")

    def summarize(self, bucket: str, reviews: List,
                  on_progress: Optional[Callable[[float], None]] = None,
                  cancel_event: Optional[threading.Event] = None,
                  job_id: Optional[str] = None) -> Dict:
        """
        Produce the structured insight for one bucket

        Args:
            bucket: 'positive' or 'negative'
            reviews: Reviews in the bucket, earliest first
            on_progress: receives heartbeat sub-progress in [0, 1)
            cancel_event: checked on every heartbeat

        Returns:
            The insight dict; the default-empty shape if the call failed

        Raises:
            JobCancelled: cancel_event was set while waiting
        """
        if bucket not in PROMPTS:
            raise ValueError(f"Unknown insight bucket: {bucket}")

        prompt = PROMPTS[bucket].format(reviews=build_review_text(reviews, self.char_budget))
        future = self._executor.submit(self._request_insight, bucket, prompt)

        started = self.clock()
        sub_progress = 0.0
        while True:
            done, _ = futures.wait([future], timeout=self.tick_seconds)
            if done:
                break

            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise JobCancelled(job_id)

            if self.clock() - started > self.call_timeout:
                future.cancel()
                logger.warning("%s insight call timed out after %ss, using default insight",
                               bucket.capitalize(), self.call_timeout)
                return default_insight(bucket)

            sub_progress += (HEARTBEAT_CEILING - sub_progress) * HEARTBEAT_STEP
            if on_progress is not None:
                try:
                    on_progress(sub_progress)
                except Exception:
                    logger.debug("Heartbeat callback failed", exc_info=True)

        try:
            return future.result()
        except Exception as e:
            logger.warning("%s insight failed (%s), using default insight", bucket.capitalize(), e)
            return default_insight(bucket)

    def _request_insight(self, bucket: str, prompt: str) -> Dict:
        if self.llm_client is None:
            raise InsightGeneratorFailure("LLM client is not configured")

        try:
            response_text = self.llm_client.complete(prompt)
        except Exception as e:
            raise InsightGeneratorFailure(f"Insight call failed: {e}") from e

        try:
            data = self.llm_client.extract_json(response_text)
        except ValueError as e:
            raise InsightGeneratorFailure(str(e)) from e

        return normalize_insight(bucket, data)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=True)
