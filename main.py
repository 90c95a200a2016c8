#!/usr/bin/env python3
"""
App Store Review Analysis - command line entry point

Submits one analysis through the same gate the API uses and polls the job
until it finishes.

Usage:
    python main.py 284882215
    python main.py https://play.google.com/store/apps/details?id=com.spotify.music --max-pages 5
"""

import argparse
import json
import logging
import sys
import time

from config.settings import get_settings, setup_logging
from pipeline import build_services
from pipeline.errors import PipelineError
from pipeline.models import JobStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="App Store Review Analysis")
    parser.add_argument("app", help="Apple app id, Google Play package name or store URL")
    parser.add_argument("--store", choices=["apple", "google"], default=None,
                        help="Store type (default: detected from the app argument)")
    parser.add_argument("--country", default="us", help="Store country code (default: us)")
    parser.add_argument("--max-pages", type=int, default=None, help="Maximum pages to fetch")
    parser.add_argument("--page-size", type=int, default=None, help="Google Play reviews per page")
    parser.add_argument("--start-page", type=int, default=None, help="First Apple feed page")
    parser.add_argument("--no-pagination", action="store_true",
                        help="Fetch a single page of --limit reviews")
    parser.add_argument("--limit", type=int, default=None, help="Reviews to fetch without pagination")
    parser.add_argument("--user-id", default=None, help="Bill the analysis to this user")
    parser.add_argument("--poll-interval", type=float, default=1.0, help="Seconds between status checks")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser.parse_args(argv)


def build_options(args) -> dict:
    options = {'country': args.country, 'use_pagination': not args.no_pagination}
    for key in ('max_pages', 'page_size', 'start_page', 'limit'):
        value = getattr(args, key)
        if value is not None:
            options[key] = value
    return options


def print_summary(job):
    analysis = job.result
    summary = analysis.summary

    print()
    print("=" * 60)
    print(f"Analysis for {analysis.app_id} ({analysis.store})")
    print("=" * 60)
    print(f"Reviews:        {summary['total_reviews']}")
    print(f"Average rating: {summary['average_rating']}")
    print(f"Positive:       {summary['positive_count']} ({summary['positive_percentage']}%)")
    print(f"Negative:       {summary['negative_count']} ({summary['negative_percentage']}%)")
    print(f"Neutral:        {summary['neutral_count']} ({summary['neutral_percentage']}%)")

    if analysis.positive_insight:
        print("\nTop features:")
        for feature in analysis.positive_insight.get('top_features', []):
            print(f"  - {feature}")

    if analysis.negative_insight:
        print("\nTop issues:")
        for issue in analysis.negative_insight.get('top_issues', []):
            print(f"  - {issue}")
        improvements = analysis.negative_insight.get('suggested_improvements', [])
        if improvements:
            print("\nSuggested improvements:")
            for item in improvements:
                print(f"  [{item['priority']}] {item['issue']}: {item['improvement']}")


def main(argv=None) -> int:
    """Main execution flow."""
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    services = build_services(settings, start_gc=False, recover_interrupted=False)
    try:
        try:
            submission = services.gate.submit(
                args.app, store_hint=args.store, user_id=args.user_id, options=build_options(args)
            )
        except PipelineError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        job = submission.job
        if submission.cache_hit:
            print(f"Using cached analysis from {job.result.timestamp}")
        elif submission.duplicate_hit:
            print(f"Joining analysis already in progress (job {job.id})")
        else:
            print(f"Started job {job.id} for {job.app_id} ({job.store})")

        last_seen = None
        while not job.is_terminal:
            time.sleep(args.poll_interval)
            job = services.job_manager.get(job.id)
            if (job.progress, job.message) != last_seen:
                print(f"  [{job.progress:3d}%] {job.message}")
                last_seen = (job.progress, job.message)

        if job.status == JobStatus.FAILED:
            print(f"\nAnalysis failed: {job.error}", file=sys.stderr)
            return 1

        if args.json:
            print(json.dumps(job.result.to_dict(), indent=2))
        else:
            print_summary(job)
        return 0

    except KeyboardInterrupt:
        print("\nInterrupted, cancelling job...", file=sys.stderr)
        return 130
    finally:
        services.shutdown(wait=False)


if __name__ == "__main__":
    sys.exit(main())
