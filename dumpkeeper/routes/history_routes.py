"""
Retention history routes - View recorded retention runs.
"""

from flask import Blueprint, jsonify, request

from dumpkeeper.models import RetentionRun


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ['success', 'partial', 'failed']


def _serialize(run, detail=False):
    data = {
        'id': run.id,
        'target': run.target_name,
        'status': run.status,
        'started_at': run.started_at.isoformat(),
        'completed_at': run.completed_at.isoformat() if run.completed_at else None,
        'kept_count': run.kept_count,
        'deleted_count': run.deleted_count,
        'error_count': run.error_count,
        'error_message': run.error_message,
    }
    if detail:
        data['deleted'] = run.deleted_list()
        data['errors'] = run.error_list()
        data['logs'] = run.logs
    return data


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get retention history with filtering and pagination.

    Query params:
        - target: Filter by storage target
        - status: Filter by status (success/partial/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    target_filter = request.args.get('target')
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if offset < 0:
        offset = 0

    query = RetentionRun.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(RetentionRun.status == status_filter)

    if target_filter:
        query = query.filter(RetentionRun.target_name == target_filter)

    total_count = query.count()

    runs = query.order_by(
        RetentionRun.started_at.desc(), RetentionRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_serialize(run) for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """
    Get a retention run including deleted paths, errors and logs.
    """
    run = RetentionRun.query.get_or_404(run_id)
    return jsonify(_serialize(run, detail=True))
