#!/usr/bin/env python3
"""
Flask Backend API for App Store Review Analysis
Submit analysis jobs and poll them until they finish
"""

import logging

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config.llm_client import check_llm_status
from config.settings import get_settings, setup_logging
from pipeline import Services, build_services
from pipeline.errors import (
    InsufficientCredit, InvalidInput, JobNotFound, JobQueueFull, PipelineError
)
from pipeline.models import JobStatus, Store

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

OPTION_KEYS = ('country', 'limit', 'use_pagination', 'start_page', 'max_pages', 'page_size', 'per_page_save')

ERROR_STATUS_CODES = (
    (InvalidInput, 400),
    (InsufficientCredit, 402),
    (JobNotFound, 404),
    (JobQueueFull, 503),
)


def services() -> Services:
    return current_app.config['SERVICES']


def current_user_id():
    """Caller's user id; authentication happens in front of this service"""
    return request.headers.get('X-User-Id') or None


# ============================================
# Error handling
# ============================================

@api.app_errorhandler(PipelineError)
def handle_pipeline_error(error):
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            body = {'success': False, 'error': str(error)}
            if isinstance(error, InsufficientCredit):
                body['balance'] = error.balance
                body['required'] = error.required
            return jsonify(body), status_code

    logger.error("Unhandled pipeline error: %s", error)
    return jsonify({'success': False, 'error': str(error)}), 500


def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Request failed")
    return jsonify({'success': False, 'error': str(error)}), 500


# ============================================
# Jobs
# ============================================

@api.route('/api/jobs/analyze', methods=['POST'])
def submit_analysis():
    """
    Submit an analysis request

    Request body:
    {
        "app_id": "284882215", "com.spotify.music" or a store URL,
        "store_type": "apple" | "google" (optional, detected from app_id),
        "options": {"country": "us", "max_pages": 10, ...} (optional)
    }

    Billed to the user in the X-User-Id header, if any.
    """
    data = request.get_json(silent=True) or {}

    app_input = data.get('app_link') or data.get('app_id')
    if not app_input:
        raise InvalidInput('App ID is required')

    options = dict(data.get('options') or {})
    for key in OPTION_KEYS:
        if key in data and key not in options:
            options[key] = data[key]

    submission = services().gate.submit(
        app_input,
        store_hint=data.get('store_type') or data.get('store'),
        user_id=current_user_id(),
        options=options,
    )

    status_code = 200 if submission.cache_hit or submission.duplicate_hit else 202
    return jsonify({'success': True, 'data': submission.to_dict()}), status_code


@api.route('/api/jobs/status/<job_id>', methods=['GET'])
def get_job_status(job_id):
    """Current status of a job; includes the result once completed"""
    job = services().job_manager.get(job_id)
    return jsonify({'success': True, 'data': job.to_dict()})


@api.route('/api/jobs/app/<app_id>', methods=['GET'])
def get_jobs_for_app(app_id):
    jobs = [job.to_summary() for job in services().job_manager.list_by_app(app_id)]
    return jsonify({
        'success': True,
        'data': {
            'app_id': app_id,
            'jobs': jobs,
            'total': len(jobs)
        }
    })


@api.route('/api/jobs/result/<job_id>', methods=['GET'])
def get_job_result(job_id):
    job = services().job_manager.get(job_id)

    if job.status != JobStatus.COMPLETED:
        return jsonify({
            'success': False,
            'error': 'Job is not completed yet',
            'status': job.status.value,
            'progress': job.progress,
            'message': job.message
        }), 400

    if job.result is None:
        return jsonify({'success': False, 'error': 'Job result not found'}), 404

    return jsonify({'success': True, 'data': job.result.to_dict()})


@api.route('/api/jobs/events/<job_id>', methods=['GET'])
def get_job_events(job_id):
    """Progress events of a job, oldest first"""
    events = [event.to_dict() for event in services().job_manager.events(job_id)]
    return jsonify({'success': True, 'data': {'job_id': job_id, 'events': events}})


@api.route('/api/jobs/cancel/<job_id>', methods=['POST'])
def cancel_job(job_id):
    job = services().job_manager.cancel(job_id)
    return jsonify({'success': True, 'data': job.to_dict(include_result=False)})


# ============================================
# Analyses, credits, health
# ============================================

@api.route('/api/analysis/summary/<store>/<app_id>', methods=['GET'])
def get_analysis_summary(store, app_id):
    """Latest stored analysis for an app, whatever its age"""
    try:
        store = Store(store.lower()).value
    except ValueError:
        raise InvalidInput('Store type must be either "apple" or "google"')

    analysis = services().gate.latest_analysis(app_id, store)
    if analysis is None:
        return jsonify({'success': False, 'error': 'Analysis not found'}), 404
    return jsonify({'success': True, 'data': analysis.to_dict()})


@api.route('/api/apps/<store>/<app_id>', methods=['GET'])
def get_app_info(store, app_id):
    """Store listing details (title, developer, icon) for an app"""
    try:
        store = Store(store.lower()).value
    except ValueError:
        raise InvalidInput('Store type must be either "apple" or "google"')

    country = request.args.get('country', 'us').lower()
    info = services().fetcher.app_info(app_id, store, country)
    if info is None:
        return jsonify({'success': False, 'error': 'App not found'}), 404
    return jsonify({'success': True, 'data': info.to_dict()})


@api.route('/api/credit/balance', methods=['GET'])
def get_credit_balance():
    user_id = current_user_id()
    if not user_id:
        return jsonify({'success': False, 'error': 'User ID is required'}), 401

    ledger = services().credit_ledger
    if ledger is None:
        return jsonify({'success': False, 'error': 'Credit ledger is not configured'}), 500

    return jsonify({'success': True, 'data': {'user_id': user_id, 'credit': ledger.get_balance(user_id)}})


@api.route('/api/health', methods=['GET'])
def health():
    stats = services().job_db.get_stats()
    return jsonify({
        'status': 'ok',
        'active_jobs': services().job_manager.count_active(),
        'jobs': stats
    })


@api.route('/api/health/llm', methods=['GET'])
def check_llm_health():
    """
    Check the status of the configured LLM provider

    Returns JSON with:
    - status: 'ok', 'warning', or 'error'
    - message: Human-readable status message
    - provider: LLM provider being used
    """
    health_data = check_llm_status(services().llm_client, services().settings.llm_provider)

    # Warnings still return 200
    status_code = 503 if health_data['status'] == 'error' else 200
    return jsonify(health_data), status_code


def create_app(app_services: Services = None) -> Flask:
    """Build the Flask app around a wired pipeline"""
    app = Flask(__name__)
    CORS(app)  # Enable CORS for the web client

    app.config['SERVICES'] = app_services or build_services()
    app.register_blueprint(api)
    app.register_error_handler(Exception, handle_unexpected_error)
    return app


if __name__ == '__main__':
    settings = get_settings()
    setup_logging(settings.log_level)

    app = create_app(build_services(settings))
    logger.info("Starting review analysis API on http://%s:%d", settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port)
    finally:
        app.config['SERVICES'].shutdown(wait=False)
