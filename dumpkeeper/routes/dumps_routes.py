"""
Dump routes - list dumps on storage targets and run retention.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from dumpkeeper.config import ConfigError, StorageTargetNotFound
from dumpkeeper.dumps.artifact import InvalidPeriod
from dumpkeeper.dumps.grouping import build_dump_tree, tree_to_dict
from dumpkeeper.dumps.service import get_dump_service, run_retention
from dumpkeeper.dumps.storage import StorageError

logger = logging.getLogger(__name__)

bp = Blueprint('dumps', __name__, url_prefix='/api/dumps')


@bp.errorhandler(StorageTargetNotFound)
def handle_target_not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(ConfigError)
@bp.errorhandler(InvalidPeriod)
def handle_config_error(e):
    return jsonify({'error': str(e)}), 400


@bp.errorhandler(StorageError)
def handle_storage_error(e):
    logger.error(f"Storage backend error: {e}")
    return jsonify({'error': f'Storage backend error: {e}'}), 502


@bp.route('/targets', methods=['GET'])
def list_targets():
    """
    Get configured storage targets.

    Returns:
        JSON array of {name, disk, driver, path}
    """
    settings = current_app.extensions['dumpkeeper']

    targets = []
    for name in sorted(settings.targets):
        target = settings.targets[name]
        disk = settings.disks.get(target.disk)
        targets.append({
            'name': target.name,
            'disk': target.disk,
            'driver': disk.driver if disk else None,
            'path': target.path
        })

    return jsonify(targets)


@bp.route('/<target_name>', methods=['GET'])
def list_dumps(target_name):
    """
    Get dumps on a target, newest first.

    Returns:
        JSON with target name, count and dump records
    """
    dumps = get_dump_service().list_artifacts(target_name)

    return jsonify({
        'target': target_name,
        'count': len(dumps),
        'dumps': [dump.to_dict() for dump in dumps]
    })


@bp.route('/<target_name>/tree', methods=['GET'])
def dump_tree(target_name):
    """
    Get dumps on a target grouped by year, month and day.
    """
    dumps = get_dump_service().list_artifacts(target_name)

    return jsonify({
        'target': target_name,
        'count': len(dumps),
        'tree': tree_to_dict(build_dump_tree(dumps))
    })


@bp.route('/<target_name>/retention', methods=['POST'])
def apply_retention(target_name):
    """
    Run the retention policy on a target now.

    Query params:
        - dry_run: 'true' to only report what would be deleted
        - async: 'true' to queue the run on the scheduler and return at once

    Returns:
        JSON retention report (with run_id when the run was recorded),
        or 202 with the queued job id
    """
    dry_run = request.args.get('dry_run', 'false').lower() == 'true'
    queued = request.args.get('async', 'false').lower() == 'true'

    if dry_run:
        report = get_dump_service().apply_retention(target_name, dry_run=True)
        return jsonify(report.to_dict())

    if queued:
        from dumpkeeper.scheduler import trigger_retention_now
        try:
            job_id = trigger_retention_now(target_name)
        except RuntimeError as e:
            return jsonify({'error': f'Retention scheduler unavailable in this worker: {e}'}), 409
        return jsonify({'target': target_name, 'job_id': job_id, 'status': 'queued'}), 202

    # Failures before any delete are recorded as failed runs, then re-raised
    report = run_retention(target_name, get_dump_service())
    return jsonify(report.to_dict())
