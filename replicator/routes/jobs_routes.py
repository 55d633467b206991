"""
Replication jobs routes - CRUD operations and job execution.
"""

import json
from apscheduler.triggers.cron import CronTrigger
from flask import Blueprint, jsonify, request

from replicator import db
from replicator.models import ReplicationJob, ReplicationRun
from replicator.replication.settings import JobSettings, ConfigurationError
from replicator.scheduler import sync_replication_jobs, trigger_replication_now, get_scheduled_jobs


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')

# Request fields copied verbatim onto the model
JOB_FIELDS = (
    'description', 'enabled', 'transfer_mode', 'replication_type', 'destination_root',
    'remote_user', 'remote_host', 'remote_port', 'ssh_key_path',
    'retention_policy', 'retention_days', 'retention_count', 'retention_max_bytes', 'retention_scope',
    'max_attempts', 'backoff_base_seconds', 'backoff_cap_seconds',
    'rsync_checksum', 'rsync_compress', 'rsync_partial', 'rsync_timeout',
    'schedule_cron'
)


def _serialize_job(job: ReplicationJob) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'description': job.description,
        'enabled': job.enabled,
        'transfer_mode': job.transfer_mode,
        'replication_type': job.replication_type,
        'source_paths': job.source_path_list,
        'destination_root': job.destination_root,
        'remote_user': job.remote_user,
        'remote_host': job.remote_host,
        'remote_port': job.remote_port,
        'ssh_key_path': job.ssh_key_path,
        'retention_policy': job.retention_policy,
        'retention_days': job.retention_days,
        'retention_count': job.retention_count,
        'retention_max_bytes': job.retention_max_bytes,
        'retention_scope': job.retention_scope,
        'max_attempts': job.max_attempts,
        'backoff_base_seconds': job.backoff_base_seconds,
        'backoff_cap_seconds': job.backoff_cap_seconds,
        'rsync_checksum': job.rsync_checksum,
        'rsync_compress': job.rsync_compress,
        'rsync_partial': job.rsync_partial,
        'rsync_timeout': job.rsync_timeout,
        'schedule_cron': job.schedule_cron,
        'created_at': job.created_at.isoformat() if job.created_at else None,
        'updated_at': job.updated_at.isoformat() if job.updated_at else None
    }


def _apply_fields(job: ReplicationJob, data: dict):
    for name in JOB_FIELDS:
        if name in data:
            setattr(job, name, data[name])

    if 'source_paths' in data:
        source_paths = data['source_paths']
        job.source_paths = source_paths if isinstance(source_paths, str) else json.dumps(source_paths)


def _validate(job: ReplicationJob):
    """
    Raises:
        ConfigurationError: If the job could not be run as configured
    """
    JobSettings.from_job(job)

    if job.schedule_cron:
        try:
            CronTrigger.from_crontab(job.schedule_cron, timezone='UTC')
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron expression '{job.schedule_cron}': {e}")


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all replication jobs.

    Returns:
        JSON array of replication jobs
    """
    jobs = ReplicationJob.query.order_by(ReplicationJob.created_at.desc()).all()
    return jsonify([_serialize_job(job) for job in jobs])


@bp.route('/<int:job_id>', methods=['GET'])
def get_job(job_id):
    """
    Get a single replication job by ID.

    Args:
        job_id: Replication job ID

    Returns:
        JSON with job details
    """
    job = ReplicationJob.query.get_or_404(job_id)
    return jsonify(_serialize_job(job))


@bp.route('/', methods=['POST'])
def create_job():
    """
    Create a new replication job.

    Request body:
        - name: Job name (required)
        - transfer_mode: 'push', 'pull' or 'local' (required)
        - replication_type: 'incremental' or 'mirror' (required)
        - source_paths: List of absolute source directories (required)
        - destination_root: Absolute destination directory (required)
        - remote_user, remote_host, remote_port, ssh_key_path: push/pull only
        - retention_policy: 'off', 'time', 'count' or 'storage' plus its parameter
        - max_attempts, backoff_base_seconds, backoff_cap_seconds: retry bounds
        - rsync_checksum, rsync_compress, rsync_partial, rsync_timeout: rsync flags
        - schedule_cron: Cron expression (optional)

    Returns:
        JSON with created job details
    """
    data = request.get_json(silent=True) or {}

    if not data.get('name'):
        return jsonify({'error': 'Job name is required'}), 400

    existing = ReplicationJob.query.filter_by(name=data['name']).first()
    if existing:
        return jsonify({'error': 'Job name already exists'}), 400

    job = ReplicationJob(name=data['name'])
    _apply_fields(job, data)

    try:
        _validate(job)
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(job)
    db.session.commit()

    sync_replication_jobs()

    return jsonify({
        'id': job.id,
        'message': 'Replication job created successfully'
    }), 201


@bp.route('/<int:job_id>', methods=['PUT'])
def update_job(job_id):
    """
    Update an existing replication job.

    Args:
        job_id: Replication job ID

    Request body: Same as create_job (all fields optional)

    Returns:
        JSON with success message
    """
    job = ReplicationJob.query.get_or_404(job_id)
    data = request.get_json(silent=True) or {}

    if 'name' in data and data['name'] != job.name:
        existing = ReplicationJob.query.filter_by(name=data['name']).first()
        if existing:
            return jsonify({'error': 'Job name already exists'}), 400
        job.name = data['name']

    _apply_fields(job, data)

    try:
        _validate(job)
    except ConfigurationError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()

    sync_replication_jobs()

    return jsonify({'message': 'Replication job updated successfully'})


@bp.route('/<int:job_id>', methods=['DELETE'])
def delete_job(job_id):
    """
    Delete a replication job.

    Snapshots already written to the destination are left untouched.

    Args:
        job_id: Replication job ID

    Returns:
        JSON with success message
    """
    job = ReplicationJob.query.get_or_404(job_id)

    # Cascade deletes run history
    db.session.delete(job)
    db.session.commit()

    sync_replication_jobs()

    return jsonify({'message': 'Replication job deleted successfully'})


@bp.route('/<int:job_id>/toggle', methods=['POST'])
def toggle_job(job_id):
    """
    Toggle a job's enabled status.

    Args:
        job_id: Replication job ID

    Returns:
        JSON with new enabled status
    """
    job = ReplicationJob.query.get_or_404(job_id)

    job.enabled = not job.enabled
    db.session.commit()

    sync_replication_jobs()

    return jsonify({
        'enabled': job.enabled,
        'message': f"Job {'enabled' if job.enabled else 'disabled'} successfully"
    })


@bp.route('/<int:job_id>/run', methods=['POST'])
def run_job_now(job_id):
    """
    Manually trigger a replication job to run immediately.

    Args:
        job_id: Replication job ID

    Returns:
        JSON with success message
    """
    job = ReplicationJob.query.get_or_404(job_id)

    try:
        trigger_replication_now(job_id)
    except RuntimeError as e:
        return jsonify({'error': f"Scheduler is not running in this process: {e}"}), 503
    except ValueError as e:
        return jsonify({'error': str(e)}), 404

    return jsonify({
        'message': f"Replication job '{job.name}' has been queued for immediate execution"
    })


@bp.route('/<int:job_id>/history', methods=['GET'])
def get_job_history(job_id):
    """
    Get run history for a specific job.

    Args:
        job_id: Replication job ID

    Query params:
        - limit: Max number of records (default: 50)

    Returns:
        JSON array of run records
    """
    ReplicationJob.query.get_or_404(job_id)

    limit = request.args.get('limit', 50, type=int)
    if limit > 200:
        limit = 200

    runs = ReplicationRun.query.filter_by(job_id=job_id).order_by(
        ReplicationRun.started_at.desc()
    ).limit(limit).all()

    runs_data = []
    for run in runs:
        runs_data.append({
            'id': run.id,
            'status': run.status,
            'started_at': run.started_at.isoformat(),
            'completed_at': run.completed_at.isoformat() if run.completed_at else None,
            'sources_total': run.sources_total,
            'sources_failed': run.sources_failed,
            'snapshots_evicted': run.snapshots_evicted,
            'error_message': run.error_message
        })

    return jsonify(runs_data)


@bp.route('/scheduled', methods=['GET'])
def list_scheduled():
    """
    Get jobs currently registered with the scheduler.

    Returns:
        JSON array with id, name, next_run and trigger of each scheduled job
    """
    return jsonify(get_scheduled_jobs())
