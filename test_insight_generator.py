#!/usr/bin/env python3
"""
Tests for the insight generator adapter: prompt budget, response parsing,
fallbacks and heartbeat progress
"""

import json
import threading
import unittest

from config.llm_client import BaseLLMClient
from pipeline.errors import InsightGeneratorFailure, JobCancelled
from pipeline.insight_generator import (
    InsightGenerator, build_review_text, default_insight, normalize_insight
)
from pipeline.models import Review

POSITIVE_RESPONSE = {
    'top_features': ['Fast sync', 'Clean design'],
    'positive_experiences': ['Easy onboarding'],
    'user_appreciation': ['Support team'],
    'strength_highlights': ['Reliability'],
}


class FakeLLMClient(BaseLLMClient):
    """Returns a canned response, optionally after being released"""

    def __init__(self, response='', error=None, release=None):
        self.response = response
        self.error = error
        self.release = release
        self.prompts = []

    def chat(self, prompt, max_tokens=1500, temperature=0.3):
        self.prompts.append(prompt)
        if self.release is not None:
            self.release.wait(5)
        if self.error:
            raise self.error
        return self.response


def review(rating, content='Works well', title='Nice'):
    return Review('123456', 'apple', rating, content, 'positive' if rating >= 4 else 'negative', title=title)


class TestBuildReviewText(unittest.TestCase):

    def test_format(self):
        text = build_review_text([review(5, 'Love it', 'Great')])
        self.assertEqual(text, "Rating: 5/5\nTitle: Great\nContent: Love it\n\n")

    def test_budget_stops_at_first_overflow(self):
        """Later reviews are dropped once one does not fit, even short ones"""
        reviews = [review(5, 'a' * 40), review(5, 'b' * 40), review(5, 'c' * 200), review(5, 'd')]
        text = build_review_text(reviews, max_chars=150)

        self.assertIn('a' * 40, text)
        self.assertIn('b' * 40, text)
        self.assertNotIn('c' * 200, text)
        self.assertNotIn('Content: d\n', text)
        self.assertLessEqual(len(text), 150)

    def test_empty(self):
        self.assertEqual(build_review_text([]), '')


class TestNormalizeInsight(unittest.TestCase):

    def test_unknown_keys_dropped_and_missing_filled(self):
        insight = normalize_insight('positive', {'top_features': ['x'], 'extra': 'ignored'})

        self.assertEqual(insight, {
            'top_features': ['x'],
            'positive_experiences': [],
            'user_appreciation': [],
            'strength_highlights': [],
        })

    def test_camel_case_keys(self):
        insight = normalize_insight('negative', {
            'topIssues': ['Crashes'],
            'suggestedImprovements': [{'issue': 'Crashes', 'improvement': 'Fix it', 'priority': 'high'}],
        })

        self.assertEqual(insight['top_issues'], ['Crashes'])
        self.assertEqual(insight['suggested_improvements'],
                         [{'issue': 'Crashes', 'improvement': 'Fix it', 'priority': 'High'}])

    def test_bad_priority_defaults_to_medium(self):
        insight = normalize_insight('negative', {
            'suggested_improvements': [{'issue': 'Slow', 'improvement': 'Cache', 'priority': 'urgent'}, 'junk']
        })
        self.assertEqual(insight['suggested_improvements'][0]['priority'], 'Medium')
        self.assertEqual(len(insight['suggested_improvements']), 1)

    def test_not_an_object(self):
        with self.assertRaises(InsightGeneratorFailure):
            normalize_insight('positive', ['a', 'b'])

    def test_default_shapes_are_copies(self):
        first = default_insight('negative')
        first['top_issues'].append('mutated')
        self.assertEqual(default_insight('negative')['top_issues'], [])


class TestInsightGenerator(unittest.TestCase):

    def setUp(self):
        self.release = threading.Event()
        self.generators = []

    def tearDown(self):
        self.release.set()
        for generator in self.generators:
            generator.shutdown(wait=True)

    def make(self, client, **kwargs):
        kwargs.setdefault('tick_seconds', 0.01)
        generator = InsightGenerator(client, **kwargs)
        self.generators.append(generator)
        return generator

    def test_successful_call(self):
        client = FakeLLMClient(json.dumps(POSITIVE_RESPONSE))
        insight = self.make(client).summarize('positive', [review(5)])

        self.assertEqual(insight, POSITIVE_RESPONSE)
        self.assertIn('positive app reviews', client.prompts[0])
        self.assertIn('Rating: 5/5', client.prompts[0])

    def test_markdown_wrapped_response(self):
        client = FakeLLMClient("```json\n" + json.dumps(POSITIVE_RESPONSE) + "\n```")
        insight = self.make(client).summarize('positive', [review(5)])
        self.assertEqual(insight['top_features'], ['Fast sync', 'Clean design'])

    def test_call_failure_returns_default(self):
        client = FakeLLMClient(error=RuntimeError('rate limited'))
        insight = self.make(client).summarize('negative', [review(1)])
        self.assertEqual(insight, default_insight('negative'))

    def test_unparseable_response_returns_default(self):
        client = FakeLLMClient('I cannot help with that')
        insight = self.make(client).summarize('negative', [review(1)])
        self.assertEqual(insight, default_insight('negative'))

    def test_missing_client_returns_default(self):
        insight = self.make(None).summarize('positive', [review(5)])
        self.assertEqual(insight, default_insight('positive'))

    def test_heartbeat_approaches_but_never_reaches_one(self):
        ticks = []

        def on_progress(value):
            ticks.append(value)
            if len(ticks) >= 5:
                self.release.set()

        client = FakeLLMClient(json.dumps(POSITIVE_RESPONSE), release=self.release)
        insight = self.make(client).summarize('positive', [review(5)], on_progress=on_progress)

        self.assertEqual(insight, POSITIVE_RESPONSE)
        self.assertGreaterEqual(len(ticks), 5)
        self.assertEqual(ticks, sorted(ticks))
        self.assertTrue(all(0 < t < 1.0 for t in ticks))

    def test_heartbeat_stops_after_response(self):
        ticks = []
        client = FakeLLMClient(json.dumps(POSITIVE_RESPONSE))
        generator = self.make(client)
        generator.summarize('positive', [review(5)], on_progress=ticks.append)

        count = len(ticks)
        threading.Event().wait(0.05)
        self.assertEqual(len(ticks), count)

    def test_call_timeout_returns_default(self):
        client = FakeLLMClient(json.dumps(POSITIVE_RESPONSE), release=self.release)
        insight = self.make(client, call_timeout=0.05).summarize('positive', [review(5)])
        self.assertEqual(insight, default_insight('positive'))

    def test_cancel_while_waiting(self):
        cancel_event = threading.Event()
        cancel_event.set()
        client = FakeLLMClient(json.dumps(POSITIVE_RESPONSE), release=self.release)

        with self.assertRaises(JobCancelled):
            self.make(client).summarize('positive', [review(5)], cancel_event=cancel_event)

    def test_unknown_bucket(self):
        with self.assertRaises(ValueError):
            self.make(FakeLLMClient()).summarize('neutral', [review(3)])


if __name__ == '__main__':
    unittest.main()
