"""
Admin routes — pause/resume runs and inspect guardrail state.

Protected by the X-Admin-Token header whenever ADMIN_TOKEN is configured.
"""
import logging
from functools import wraps

from flask import Blueprint, request, jsonify, current_app

from skiptrace.errors import RunNotFoundError
from skiptrace.pipeline.cost_config import load_cost_config
from skiptrace.pipeline.manager import enqueue_run
from skiptrace.services.guardrails import read_snapshot

logger = logging.getLogger('routes.admin')

bp = Blueprint('admin', __name__, url_prefix='/admin')


def require_admin(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        token = current_app.config.get('ADMIN_TOKEN')
        if token and request.headers.get('X-Admin-Token') != token:
            return jsonify({'error': 'forbidden'}), 403
        return func(*args, **kwargs)
    return wrapper


def _engine():
    return current_app.extensions['skiptrace']


@bp.route('/skiptrace-runs/<run_id>/pause', methods=['POST'])
@require_admin
def pause_run(run_id):
    """Stop new claims on a run; in-flight items finish."""
    data = request.get_json(silent=True) or {}
    try:
        _engine()['run_manager'].pause(run_id, data.get('reason'))
    except RunNotFoundError:
        return jsonify({'error': 'Run not found'}), 404
    return jsonify({'ok': True, 'run_id': run_id, 'soft_paused': True})


@bp.route('/skiptrace-runs/<run_id>/resume', methods=['POST'])
@require_admin
def resume_run(run_id):
    """Clear soft_paused and re-enqueue the run's remaining backlog."""
    data = request.get_json(silent=True) or {}
    try:
        _engine()['run_manager'].resume(run_id, data.get('reason'))
    except RunNotFoundError:
        return jsonify({'error': 'Run not found'}), 404

    enqueued = True
    try:
        enqueue_run(run_id)
    except Exception as e:
        logger.error("Could not enqueue resumed run %s: %s", run_id, e, exc_info=True,
                     extra={'run_id': run_id})
        enqueued = False
    return jsonify({'ok': True, 'run_id': run_id, 'soft_paused': False, 'enqueued': enqueued})


@bp.route('/guardrails-state')
@require_admin
def guardrails_state():
    """Last published guardrail state per provider (budget, bucket, breaker)."""
    redis_client = _engine()['redis']
    providers = sorted(load_cost_config().get('providers', {}))
    return jsonify({'providers': {p: read_snapshot(redis_client, p) for p in providers}})
