#!/usr/bin/env python3
"""
End-to-end tests of the Flask API with fake store sources and a fake LLM
"""

import json
import tempfile
import time
import unittest
from pathlib import Path

from app import create_app
from config.credit_ledger import SQLiteCreditLedger
from config.llm_client import BaseLLMClient
from config.settings import Settings
from pipeline import build_services
from pipeline.models import AppInfo, RawReview, ReviewPage
from pipeline.review_fetcher import BaseReviewSource

APP_ID = '284882215'


class FakeLLMClient(BaseLLMClient):

    def chat(self, prompt, max_tokens=1500, temperature=0.3):
        if 'negative app reviews' in prompt:
            return json.dumps({
                'top_issues': ['Crashes on launch'],
                'critical_problems': ['Login loops'],
                'suggested_improvements': [
                    {'issue': 'Crashes', 'improvement': 'Fix startup', 'priority': 'High'}
                ],
            })
        return json.dumps({'top_features': ['Dark mode']})


class FakeStoreSource(BaseReviewSource):
    """Two pages of reviews, then an empty page"""

    PAGES = [
        [RawReview(5, 'Love it'), RawReview(4, 'Good'), RawReview(1, 'Crashes')],
        [RawReview(3, 'Okay'), RawReview(2, 'Slow')],
    ]

    def first_cursor(self, options):
        return 0

    def fetch_page(self, app_id, cursor, options):
        if cursor >= len(self.PAGES):
            return ReviewPage(reviews=[], next_cursor=None)
        return ReviewPage(reviews=list(self.PAGES[cursor]), next_cursor=cursor + 1)

    def fetch_app_info(self, app_id, country='us'):
        return AppInfo(app_id, 'apple', 'Example Notes', developer='Example Inc.')


class EmptyStoreSource(BaseReviewSource):

    def first_cursor(self, options):
        return None

    def fetch_page(self, app_id, cursor, options):
        return ReviewPage(reviews=[], next_cursor=None)


class APITestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        tmp = Path(self.tmp.name)
        settings = Settings(
            data_dir=tmp,
            jobs_db_path=tmp / 'jobs.db',
            analysis_db_path=tmp / 'analyses.db',
            credit_db_path=tmp / 'credits.db',
            progress_tick_seconds=0.01,
        )
        self.ledger = SQLiteCreditLedger(settings.credit_db_path)
        self.services = build_services(
            settings,
            llm_client=FakeLLMClient(),
            credit_ledger=self.ledger,
            sources={'apple': FakeStoreSource(), 'google': EmptyStoreSource()},
            start_gc=False,
        )
        self.client = create_app(self.services).test_client()

    def tearDown(self):
        self.services.shutdown(wait=True)
        self.tmp.cleanup()

    def submit(self, payload, user_id=None):
        headers = {'X-User-Id': user_id} if user_id else {}
        return self.client.post('/api/jobs/analyze', json=payload, headers=headers)

    def wait_for_job(self, job_id, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            data = self.client.get(f'/api/jobs/status/{job_id}').get_json()['data']
            if data['status'] in ('completed', 'failed'):
                return data
            time.sleep(0.02)
        self.fail(f'job {job_id} did not finish')


class TestAnalyzeFlow(APITestCase):

    def test_submit_poll_and_fetch_result(self):
        self.ledger.add('user-1', 2)

        response = self.submit({'app_id': APP_ID, 'options': {'max_pages': 5}}, user_id='user-1')
        self.assertEqual(response.status_code, 202)
        body = response.get_json()
        self.assertTrue(body['success'])
        self.assertFalse(body['data']['cache_hit'])
        job_id = body['data']['job']['job_id']

        job = self.wait_for_job(job_id)
        self.assertEqual(job['status'], 'completed')
        self.assertEqual(job['progress'], 100)
        self.assertEqual(job['result']['summary']['total_reviews'], 5)
        self.assertEqual(job['result']['app_name'], 'Example Notes')

        result = self.client.get(f'/api/jobs/result/{job_id}').get_json()['data']
        self.assertEqual(result['positive_insight']['top_features'], ['Dark mode'])
        self.assertEqual(result['negative_insight']['top_issues'], ['Crashes on launch'])

        events = self.client.get(f'/api/jobs/events/{job_id}').get_json()['data']['events']
        progress = [e['progress'] for e in events]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(events[-1]['status'], 'completed')

        summary = self.client.get(f'/api/analysis/summary/apple/{APP_ID}').get_json()['data']
        self.assertEqual(summary['timestamp'], result['timestamp'])

        self.assertEqual(self.ledger.get_balance('user-1'), 1)

    def test_second_request_is_served_from_cache(self):
        self.ledger.add('user-1', 2)
        first = self.submit({'app_link': f'https://apps.apple.com/us/app/id{APP_ID}'}, user_id='user-1')
        first_job = self.wait_for_job(first.get_json()['data']['job']['job_id'])

        response = self.submit({'app_id': APP_ID, 'store_type': 'apple'}, user_id='user-1')

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertTrue(data['cache_hit'])
        self.assertEqual(data['job']['result']['timestamp'], first_job['result']['timestamp'])
        self.assertEqual(self.ledger.get_balance('user-1'), 1)

    def test_app_without_reviews_fails(self):
        response = self.submit({'app_id': 'com.example.empty'})
        job = self.wait_for_job(response.get_json()['data']['job']['job_id'])

        self.assertEqual(job['status'], 'failed')
        self.assertIn('No reviews found', job['error'])

        result = self.client.get(f"/api/jobs/result/{job['job_id']}")
        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.get_json()['status'], 'failed')

    def test_jobs_for_app(self):
        response = self.submit({'app_id': APP_ID})
        self.wait_for_job(response.get_json()['data']['job']['job_id'])

        data = self.client.get(f'/api/jobs/app/{APP_ID}').get_json()['data']
        self.assertEqual(data['total'], 1)
        self.assertTrue(data['jobs'][0]['has_result'])
        self.assertNotIn('result', data['jobs'][0])


class TestErrors(APITestCase):

    def test_missing_app_id(self):
        response = self.submit({})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.get_json()['success'])

    def test_unrecognised_app(self):
        self.assertEqual(self.submit({'app_id': 'not an app'}).status_code, 400)

    def test_insufficient_credit(self):
        response = self.submit({'app_id': APP_ID}, user_id='broke-user')

        self.assertEqual(response.status_code, 402)
        body = response.get_json()
        self.assertEqual(body['balance'], 0)
        self.assertEqual(body['required'], 1)
        self.assertEqual(self.client.get(f'/api/jobs/app/{APP_ID}').get_json()['data']['total'], 0)

    def test_unknown_job(self):
        for path in ('/api/jobs/status/nope', '/api/jobs/result/nope', '/api/jobs/events/nope'):
            self.assertEqual(self.client.get(path).status_code, 404)
        self.assertEqual(self.client.post('/api/jobs/cancel/nope').status_code, 404)

    def test_unknown_route_stays_404(self):
        self.assertEqual(self.client.get('/api/nothing-here').status_code, 404)

    def test_bad_store_in_summary(self):
        self.assertEqual(self.client.get(f'/api/analysis/summary/windows/{APP_ID}').status_code, 400)

    def test_summary_not_found(self):
        self.assertEqual(self.client.get(f'/api/analysis/summary/apple/{APP_ID}').status_code, 404)


class TestAppInfo(APITestCase):

    def test_app_info(self):
        response = self.client.get(f'/api/apps/apple/{APP_ID}?country=GB')

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertEqual(data['title'], 'Example Notes')
        self.assertEqual(data['developer'], 'Example Inc.')
        self.assertEqual(data['app_id'], APP_ID)

    def test_unknown_app(self):
        response = self.client.get('/api/apps/google/com.example.empty')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])

    def test_bad_store(self):
        self.assertEqual(self.client.get(f'/api/apps/windows/{APP_ID}').status_code, 400)


class TestCreditsAndHealth(APITestCase):

    def test_balance(self):
        self.ledger.add('user-1', 7)
        response = self.client.get('/api/credit/balance', headers={'X-User-Id': 'user-1'})
        self.assertEqual(response.get_json()['data'], {'user_id': 'user-1', 'credit': 7})

    def test_balance_requires_user(self):
        self.assertEqual(self.client.get('/api/credit/balance').status_code, 401)

    def test_health(self):
        data = self.client.get('/api/health').get_json()
        self.assertEqual(data['status'], 'ok')
        self.assertEqual(data['active_jobs'], 0)

    def test_llm_health(self):
        response = self.client.get('/api/health/llm')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['status'], 'ok')

    def test_llm_health_without_client(self):
        self.services.llm_client = None
        self.assertEqual(self.client.get('/api/health/llm').status_code, 503)


if __name__ == '__main__':
    unittest.main()
