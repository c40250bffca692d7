"""
Backup run routes - View backup run history and scheduler state.
"""

from flask import Blueprint, jsonify, request

from backupdb import db
from backupdb.models import BackupRun


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

RUN_STATUSES = ('running', 'success', 'failed')


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get backup runs with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(0, offset)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()

    runs = query.order_by(
        BackupRun.started_at.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'runs': [run.to_dict() for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get a single run with its per-database outcomes and captured log.

    Returns:
        JSON with run details, or 404
    """
    run = db.get_or_404(BackupRun, run_id)

    data = run.to_dict(include_logs=True)
    data['tasks'] = [task.to_dict() for task in run.tasks]
    return jsonify(data)


@bp.route('/scheduler', methods=['GET'])
def scheduler_status():
    """
    Get scheduler status and upcoming runs.

    Returns:
        JSON with running flag and scheduled jobs
    """
    from backupdb.scheduler import get_scheduled_jobs, is_scheduler_running

    return jsonify({
        'running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })
