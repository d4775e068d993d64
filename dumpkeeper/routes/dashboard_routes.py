"""
Dashboard routes - Overview and scheduler endpoints.
"""

from flask import Blueprint, current_app, jsonify

from dumpkeeper.models import RetentionRun
from dumpkeeper.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
def get_overview():
    """
    Get dashboard overview.

    Returns:
        JSON with:
        - targets: Number of configured storage targets
        - policy: Active retention limits
        - last_run: Most recent retention run
        - scheduler_status: Scheduler running status
    """
    settings = current_app.extensions['dumpkeeper']

    last_run = RetentionRun.query.order_by(
        RetentionRun.started_at.desc(), RetentionRun.id.desc()
    ).first()

    last_run_info = None
    if last_run:
        last_run_info = {
            'target': last_run.target_name,
            'status': last_run.status,
            'completed_at': last_run.completed_at.isoformat() if last_run.completed_at else None,
            'deleted_count': last_run.deleted_count
        }

    return jsonify({
        'targets': len(settings.targets),
        'policy': settings.policy.to_dict(),
        'last_run': last_run_info,
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/scheduled-jobs', methods=['GET'])
def get_scheduled_jobs_info():
    """
    Get information about currently scheduled jobs.
    """
    return jsonify(get_scheduled_jobs())
