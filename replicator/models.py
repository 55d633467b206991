import json
from datetime import datetime
from replicator import db


class ReplicationJob(db.Model):
    """Replication job configuration"""
    __tablename__ = 'replication_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)

    transfer_mode = db.Column(db.String(20), nullable=False)  # push, pull, local
    replication_type = db.Column(db.String(20), nullable=False)  # incremental, mirror
    source_paths = db.Column(db.Text, nullable=False)  # JSON list of directories
    destination_root = db.Column(db.String(1024), nullable=False)

    # Remote endpoint (push/pull only), key or agent authentication
    remote_user = db.Column(db.String(255))
    remote_host = db.Column(db.String(255))
    remote_port = db.Column(db.Integer, default=22)
    ssh_key_path = db.Column(db.String(1024))

    # Retention: off, time, count, storage
    retention_policy = db.Column(db.String(20), default='off', nullable=False)
    retention_days = db.Column(db.Integer)
    retention_count = db.Column(db.Integer)
    retention_max_bytes = db.Column(db.BigInteger)
    retention_scope = db.Column(db.String(20), default='namespace', nullable=False)  # namespace, root

    # Retry bounds
    max_attempts = db.Column(db.Integer, default=3, nullable=False)
    backoff_base_seconds = db.Column(db.Integer, default=30, nullable=False)
    backoff_cap_seconds = db.Column(db.Integer, default=600, nullable=False)

    # rsync flags
    rsync_checksum = db.Column(db.Boolean, default=False, nullable=False)
    rsync_compress = db.Column(db.Boolean, default=True, nullable=False)
    rsync_partial = db.Column(db.Boolean, default=True, nullable=False)
    rsync_timeout = db.Column(db.Integer)  # --timeout seconds

    schedule_cron = db.Column(db.String(100))  # Cron expression
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    runs = db.relationship('ReplicationRun', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def source_path_list(self):
        try:
            paths = json.loads(self.source_paths or '[]')
        except ValueError:
            return []
        return paths if isinstance(paths, list) else []

    def __repr__(self):
        return f'<ReplicationJob {self.name} mode={self.transfer_mode} type={self.replication_type}>'


class ReplicationRun(db.Model):
    """One execution of a replication job"""
    __tablename__ = 'replication_runs'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('replication_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    sources_total = db.Column(db.Integer, default=0, nullable=False)
    sources_failed = db.Column(db.Integer, default=0, nullable=False)
    snapshots_evicted = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationships
    job = db.relationship('ReplicationJob', back_populates='runs')
    source_results = db.relationship('SourceResult', back_populates='run', cascade='all, delete-orphan',
                                     order_by='SourceResult.id')

    def __repr__(self):
        return f'<ReplicationRun job_id={self.job_id} status={self.status}>'


class SourceResult(db.Model):
    """Outcome of replicating one source within a run"""
    __tablename__ = 'source_results'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('replication_runs.id'), nullable=False)
    source_path = db.Column(db.String(1024), nullable=False)
    namespace = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # success, failed
    destination = db.Column(db.String(1024))
    snapshot_path = db.Column(db.String(1024))
    predecessor_path = db.Column(db.String(1024))
    exit_code = db.Column(db.Integer)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)

    # Relationship
    run = db.relationship('ReplicationRun', back_populates='source_results')

    def __repr__(self):
        return f'<SourceResult {self.namespace} status={self.status}>'
