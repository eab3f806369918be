"""
Run routes — create, list, status and report for skip-trace runs.
"""
import logging

from flask import Blueprint, request, jsonify, current_app

from skiptrace.errors import ValidationError, RunNotFoundError
from skiptrace.pipeline.manager import create_run, enqueue_run
from skiptrace.pipeline.report import ReportGenerator

logger = logging.getLogger('routes.runs')

bp = Blueprint('runs', __name__)


def _engine():
    return current_app.extensions['skiptrace']


def _report_generator():
    """Built on first use so the contact-schema probe runs once per app."""
    ext = _engine()
    if ext.get('report_generator') is None:
        ext['report_generator'] = ReportGenerator(ext['session_factory'], bind=ext['bind'])
    return ext['report_generator']


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


# ── Run API ──────────────────────────────────────────────────────────────────

@bp.route('/api/skiptrace-runs', methods=['POST'])
def create_skiptrace_run():
    """Create a run from a JSON list of leads and enqueue it."""
    data = request.get_json(silent=True) or {}
    leads = data.get('leads')
    if not isinstance(leads, list):
        return jsonify({'error': 'leads must be a list'}), 400

    try:
        run_id = create_run(
            leads,
            source_label=data.get('source_label', ''),
            provider_name=data.get('provider'),
            session_factory=_engine()['session_factory'],
        )
    except ValidationError as e:
        return jsonify({'error': str(e), 'kind': e.kind, 'rejected': e.rejected}), 400
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    enqueued = True
    try:
        enqueue_run(run_id)
    except Exception as e:
        # Run is persisted; a later resume (or the CLI) can still process it
        logger.error("Could not enqueue run %s: %s", run_id, e, exc_info=True, extra={'run_id': run_id})
        enqueued = False

    run = _engine()['run_manager'].get_status(run_id)
    body = run.to_dict()
    body['rejected'] = run.rejected or []
    body['enqueued'] = enqueued
    return jsonify(body), 202


@bp.route('/api/skiptrace-runs')
def list_skiptrace_runs():
    """List recent runs."""
    limit = request.args.get('limit', 20, type=int)
    runs = _engine()['run_manager'].list_runs(limit=limit)
    return jsonify([run.to_dict() for run in runs])


@bp.route('/api/skiptrace-runs/<run_id>/status')
def run_status(run_id):
    """Live counters for one run."""
    try:
        run = _engine()['run_manager'].get_status(run_id)
    except RunNotFoundError:
        return jsonify({'error': 'Run not found'}), 404
    body = run.to_dict()
    body.pop('source_label', None)
    body.pop('provider', None)
    return jsonify(body)


@bp.route('/api/skiptrace-runs/<run_id>/report')
def run_report(run_id):
    """Report rebuilt from persisted rows."""
    try:
        return jsonify(_report_generator().generate(run_id))
    except RunNotFoundError:
        return jsonify({'error': 'Run not found'}), 404
    except Exception as e:
        logger.error("Report failed for run %s: %s", run_id, e, exc_info=True, extra={'run_id': run_id})
        return jsonify({'error': f'Report generation failed: {e}'}), 500
