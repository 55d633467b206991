"""
Replication history routes - View replication run history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from replicator.models import ReplicationRun


bp = Blueprint('history', __name__, url_prefix='/api/history')


def _duration_seconds(run):
    if not run.completed_at:
        return None
    return int((run.completed_at - run.started_at).total_seconds())


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - job_id: Filter by job ID
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    job_id_filter = request.args.get('job_id', type=int)
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if offset < 0:
        offset = 0

    query = ReplicationRun.query

    if status_filter:
        if status_filter not in ['running', 'success', 'failed']:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(ReplicationRun.status == status_filter)

    if job_id_filter:
        query = query.filter(ReplicationRun.job_id == job_id_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(ReplicationRun.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    runs = query.order_by(
        ReplicationRun.started_at.desc()
    ).limit(limit).offset(offset).all()

    records = []
    for run in runs:
        records.append({
            'id': run.id,
            'job_id': run.job_id,
            'job_name': run.job.name,
            'status': run.status,
            'started_at': run.started_at.isoformat(),
            'completed_at': run.completed_at.isoformat() if run.completed_at else None,
            'sources_total': run.sources_total,
            'sources_failed': run.sources_failed,
            'snapshots_evicted': run.snapshots_evicted,
            'error_message': run.error_message,
            'has_logs': bool(run.logs)
        })

    return jsonify({
        'records': records,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """
    Get detailed information for a specific run, including per-source results.

    Args:
        run_id: Replication run ID

    Returns:
        JSON with full run record including logs
    """
    run = ReplicationRun.query.get_or_404(run_id)

    sources = []
    for result in run.source_results:
        sources.append({
            'source_path': result.source_path,
            'namespace': result.namespace,
            'status': result.status,
            'destination': result.destination,
            'snapshot_path': result.snapshot_path,
            'predecessor_path': result.predecessor_path,
            'exit_code': result.exit_code,
            'attempts': result.attempts,
            'error_message': result.error_message
        })

    return jsonify({
        'id': run.id,
        'job_id': run.job_id,
        'job_name': run.job.name,
        'status': run.status,
        'started_at': run.started_at.isoformat(),
        'completed_at': run.completed_at.isoformat() if run.completed_at else None,
        'duration_seconds': _duration_seconds(run),
        'sources_total': run.sources_total,
        'sources_failed': run.sources_failed,
        'snapshots_evicted': run.snapshots_evicted,
        'error_message': run.error_message,
        'sources': sources,
        'logs': run.logs
    })


@bp.route('/<int:run_id>/logs', methods=['GET'])
def get_history_logs(run_id):
    """
    Get logs for a specific run.

    Args:
        run_id: Replication run ID

    Returns:
        JSON with logs
    """
    run = ReplicationRun.query.get_or_404(run_id)

    return jsonify({
        'id': run.id,
        'job_name': run.job.name,
        'status': run.status,
        'logs': run.logs or 'No logs available'
    })


@bp.route('/summary', methods=['GET'])
def get_history_summary():
    """
    Get summary statistics for run history.

    Query params:
        - days: Calculate summary for last N days (default: 30)

    Returns:
        JSON with summary statistics
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.utcnow() - timedelta(days=days)

    query = ReplicationRun.query.filter(ReplicationRun.started_at >= cutoff_date)

    total = query.count()
    running = query.filter(ReplicationRun.status == 'running').count()
    success = query.filter(ReplicationRun.status == 'success').count()
    failed = query.filter(ReplicationRun.status == 'failed').count()

    completed = success + failed
    success_rate = round((success / completed * 100) if completed > 0 else 0, 1)

    recent = ReplicationRun.query.order_by(ReplicationRun.started_at.desc()).first()

    recent_info = None
    if recent:
        recent_info = {
            'job_name': recent.job.name,
            'status': recent.status,
            'started_at': recent.started_at.isoformat()
        }

    return jsonify({
        'days': days,
        'total_runs': total,
        'running': running,
        'successful': success,
        'failed': failed,
        'success_rate': success_rate,
        'most_recent': recent_info
    })
