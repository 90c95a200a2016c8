#!/usr/bin/env python3
"""
Tests for the submission gate: cache hits, in-flight dedup, billing and
queue limits
"""

import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from config.cache_db import AnalysisStore, JobDatabase
from config.credit_ledger import SQLiteCreditLedger
from pipeline.errors import (
    InsufficientCredit, InvalidInput, JobCancelled, JobNotFound, JobQueueFull
)
from pipeline.job_manager import JobManager
from pipeline.models import JobOptions, JobStatus, to_iso
from pipeline.submission_gate import SubmissionGate

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
APP_ID = '284882215'


class BlockingFetcher:
    """Keeps every job in fetching_reviews until it is cancelled"""

    def fetch(self, app_id, store, options, on_progress=None, cancel_event=None, timeout=None, job_id=None):
        cancel_event.wait(10)
        raise JobCancelled(job_id)


class UnusedOrchestrator:
    def analyze(self, *args, **kwargs):
        raise AssertionError('analysis should not run')


class SubmissionGateTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        tmp = Path(self.tmp.name)
        self.analysis_store = AnalysisStore(tmp / 'analyses.db')
        self.ledger = SQLiteCreditLedger(tmp / 'credits.db')
        self.job_manager = JobManager(JobDatabase(tmp / 'jobs.db'), BlockingFetcher(), UnusedOrchestrator(),
                                      max_workers=4, clock=lambda: NOW)
        self.gate = self.make_gate()

    def tearDown(self):
        self.job_manager.shutdown(wait=True)
        self.tmp.cleanup()

    def make_gate(self, **kwargs):
        return SubmissionGate(self.job_manager, self.analysis_store, self.ledger,
                              clock=lambda: NOW, **kwargs)

    def store_analysis(self, age, app_id=APP_ID, store='apple'):
        timestamp = to_iso(NOW - age)
        self.analysis_store.upsert(app_id, store, {
            'summary': {'total_reviews': 10},
            'positive_insight': None,
            'negative_insight': None,
            'timestamp': timestamp,
        })
        return timestamp


class TestCacheHit(SubmissionGateTestCase):

    def test_fresh_analysis_is_returned_without_charge(self):
        timestamp = self.store_analysis(timedelta(hours=1))
        self.ledger.add('user-1', 3)

        first = self.gate.submit(APP_ID, user_id='user-1')
        second = self.gate.submit(f'https://apps.apple.com/us/app/some-app/id{APP_ID}', user_id='user-1')

        for submission in (first, second):
            self.assertTrue(submission.cache_hit)
            self.assertFalse(submission.duplicate_hit)
            self.assertEqual(submission.job.status, JobStatus.COMPLETED)
            self.assertEqual(submission.job.progress, 100)
            self.assertEqual(submission.job.message, 'Loaded cached analysis')
            self.assertEqual(submission.job.result.timestamp, timestamp)

        self.assertNotEqual(first.job.id, second.job.id)
        self.assertEqual(self.ledger.get_balance('user-1'), 3)
        self.assertEqual(self.job_manager.count_active(), 0)

    def test_cached_job_is_not_stored(self):
        self.store_analysis(timedelta(minutes=5))
        submission = self.gate.submit(APP_ID)

        with self.assertRaises(JobNotFound):
            self.job_manager.get(submission.job.id)

    def test_stale_analysis_starts_a_new_job(self):
        self.store_analysis(timedelta(hours=25))
        self.ledger.add('user-1', 1)

        submission = self.gate.submit(APP_ID, user_id='user-1')

        self.assertFalse(submission.cache_hit)
        self.assertEqual(self.ledger.get_balance('user-1'), 0)
        self.assertEqual(self.job_manager.get(submission.job.id).store, 'apple')

    def test_ttl_is_configurable(self):
        self.store_analysis(timedelta(hours=3))
        gate = self.make_gate(cache_ttl_hours=2)

        self.assertIsNone(gate.lookup_cached(APP_ID, 'apple'))
        self.assertIsNotNone(gate.latest_analysis(APP_ID, 'apple'))

    def test_cache_is_per_store(self):
        self.store_analysis(timedelta(hours=1), app_id='com.example.app', store='google')
        self.assertIsNone(self.gate.lookup_cached('com.example.app', 'apple'))
        self.assertIsNotNone(self.gate.lookup_cached('com.example.app', 'google'))


class TestDedup(SubmissionGateTestCase):

    def test_in_flight_job_is_reused(self):
        self.ledger.add('user-1', 5)
        first = self.gate.submit(APP_ID, user_id='user-1')
        second = self.gate.submit(APP_ID, user_id='user-1')

        self.assertFalse(first.duplicate_hit)
        self.assertTrue(second.duplicate_hit)
        self.assertEqual(second.job.id, first.job.id)
        self.assertEqual(self.ledger.get_balance('user-1'), 4)

    def test_other_store_is_not_a_duplicate(self):
        first = self.gate.submit('com.example.app')
        second = self.gate.submit(APP_ID)

        self.assertFalse(second.duplicate_hit)
        self.assertNotEqual(first.job.id, second.job.id)

    def test_simultaneous_submissions_create_one_job(self):
        self.ledger.add('user-1', 10)
        results = []
        barrier = threading.Barrier(5)

        def submit():
            barrier.wait()
            results.append(self.gate.submit(APP_ID, user_id='user-1'))

        threads = [threading.Thread(target=submit) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len({r.job.id for r in results}), 1)
        self.assertEqual(sum(not r.duplicate_hit for r in results), 1)
        self.assertEqual(self.ledger.get_balance('user-1'), 9)

    def test_finished_job_is_not_reused(self):
        first = self.gate.submit(APP_ID)
        self.job_manager.cancel(first.job.id)

        second = self.gate.submit(APP_ID)
        self.assertFalse(second.duplicate_hit)
        self.assertNotEqual(second.job.id, first.job.id)


class TestBilling(SubmissionGateTestCase):

    def test_insufficient_credit_creates_nothing(self):
        with self.assertRaises(InsufficientCredit) as ctx:
            self.gate.submit(APP_ID, user_id='broke-user')

        self.assertEqual(ctx.exception.balance, 0)
        self.assertEqual(ctx.exception.required, 1)
        self.assertEqual(self.ledger.get_balance('broke-user'), 0)
        self.assertEqual(self.job_manager.count_active(), 0)
        self.assertEqual(self.job_manager.list_by_app(APP_ID), [])

    def test_anonymous_submission_is_not_billed(self):
        submission = self.gate.submit(APP_ID)
        self.assertIsNone(submission.job.user_id)

    def test_without_ledger_nothing_is_billed(self):
        gate = SubmissionGate(self.job_manager, self.analysis_store, None, clock=lambda: NOW)
        submission = gate.submit(APP_ID, user_id='user-1')
        self.assertEqual(submission.job.user_id, 'user-1')

    def test_one_debit_per_new_job(self):
        self.ledger.add('user-1', 2)
        self.gate.submit(APP_ID, user_id='user-1')
        self.gate.submit('com.example.app', user_id='user-1')

        self.assertEqual(self.ledger.get_balance('user-1'), 0)
        with self.assertRaises(InsufficientCredit):
            self.gate.submit('com.example.other', user_id='user-1')


class TestLimitsAndInput(SubmissionGateTestCase):

    def test_queue_full(self):
        self.ledger.add('user-1', 5)
        gate = self.make_gate(max_pending_jobs=1)
        gate.submit(APP_ID, user_id='user-1')

        with self.assertRaises(JobQueueFull):
            gate.submit('com.example.app', user_id='user-1')
        self.assertEqual(self.ledger.get_balance('user-1'), 4)

    def test_duplicate_allowed_when_queue_full(self):
        gate = self.make_gate(max_pending_jobs=1)
        first = gate.submit(APP_ID)
        self.assertEqual(gate.submit(APP_ID).job.id, first.job.id)

    def test_unrecognised_input(self):
        with self.assertRaises(InvalidInput):
            self.gate.submit('not an app')

    def test_unknown_store_hint(self):
        with self.assertRaises(InvalidInput):
            self.gate.submit(APP_ID, store_hint='windows')

    def test_store_hint_mismatch(self):
        with self.assertRaises(InvalidInput):
            self.gate.submit(APP_ID, store_hint='google')

    def test_options_from_dict(self):
        submission = self.gate.submit('com.example.app', store_hint='google',
                                      options={'country': 'GB', 'max_pages': '3', 'bogus': 1})

        stored = self.job_manager.get(submission.job.id)
        self.assertEqual(stored.options.country, 'gb')
        self.assertEqual(stored.options.max_pages, 3)
        self.assertEqual(stored.options.page_size, JobOptions().page_size)

    def test_max_pages_is_capped(self):
        gate = self.make_gate(max_pages_limit=10)

        huge = gate.submit(APP_ID, options={'max_pages': 10 ** 9})
        small = gate.submit('com.example.app', options=JobOptions(max_pages=4))

        self.assertEqual(self.job_manager.get(huge.job.id).options.max_pages, 10)
        self.assertEqual(self.job_manager.get(small.job.id).options.max_pages, 4)

    def test_default_max_pages_limit(self):
        submission = self.gate.submit(APP_ID, options={'max_pages': 5000})
        self.assertEqual(self.job_manager.get(submission.job.id).options.max_pages, 100)

    def test_to_dict(self):
        data = self.gate.submit(APP_ID).to_dict()

        self.assertEqual(set(data), {'cache_hit', 'duplicate_hit', 'job'})
        self.assertEqual(data['job']['app_id'], APP_ID)
        self.assertIn(data['job']['status'], ('pending', 'fetching_reviews'))


if __name__ == '__main__':
    unittest.main()
