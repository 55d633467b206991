"""
Shared pytest fixtures for replicator tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Replication job fixtures (local incremental, local mirror, push)
- An in-process rsync stand-in for end-to-end runs
- Mock fixtures for external services (SSH, scheduler)
"""

import filecmp
import json
import os
import shutil
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from replicator import create_app, db as _db
from replicator.models import ReplicationJob, ReplicationRun
from replicator.replication.transfer import TransferResult


@pytest.fixture
def local_timezone():
    """
    Switch the process local time zone (POSIX TZ string) for one test.

    The original zone is restored afterwards.
    """
    original = os.environ.get('TZ')

    def switch(name):
        os.environ['TZ'] = name
        time.tzset()

    yield switch

    if original is None:
        os.environ.pop('TZ', None)
    else:
        os.environ['TZ'] = original
    time.tzset()


@pytest.fixture(autouse=True)
def utc_local_time(local_timezone):
    """Legacy snapshot names are local time; keep them equal to UTC by default."""
    local_timezone('UTC')


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and a per-test lock directory.
    """
    app = create_app('testing')

    app.config.update({
        'LOCK_DIR': str(tmp_path / 'locks'),
    })
    os.makedirs(app.config['LOCK_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create two source directories with a few files each.

    Creates:
    - data/a/report.txt, data/a/nested/notes.txt
    - data/b/photo.jpg
    """
    a = tmp_path / 'data' / 'a'
    b = tmp_path / 'data' / 'b'
    (a / 'nested').mkdir(parents=True)
    b.mkdir(parents=True)

    (a / 'report.txt').write_text('quarterly numbers')
    (a / 'nested' / 'notes.txt').write_text('remember the milk')
    (b / 'photo.jpg').write_bytes(b'\xff\xd8\xff' + b'\x00' * 2048)

    return tmp_path / 'data'


@pytest.fixture
def destination_root(tmp_path):
    path = tmp_path / 'replicas'
    path.mkdir()
    return path


@pytest.fixture(scope='function')
def local_job(db, source_tree, destination_root):
    """
    Create an incremental local replication job with count retention.
    """
    job = ReplicationJob(
        name='nightly',
        description='Nightly incremental replication',
        enabled=True,
        transfer_mode='local',
        replication_type='incremental',
        source_paths=json.dumps([str(source_tree / 'a'), str(source_tree / 'b')]),
        destination_root=str(destination_root),
        retention_policy='count',
        retention_count=2,
        max_attempts=3,
        backoff_base_seconds=30,
        backoff_cap_seconds=600,
        schedule_cron='0 2 * * *'  # Daily at 2 AM
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def mirror_job(db, source_tree, destination_root):
    """
    Create a single-source mirror job.
    """
    job = ReplicationJob(
        name='mirror',
        enabled=True,
        transfer_mode='local',
        replication_type='mirror',
        source_paths=json.dumps([str(source_tree / 'a')]),
        destination_root=str(destination_root),
        retention_policy='off'
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def push_job(db):
    """
    Create a push job replicating to a remote host over SSH.
    """
    job = ReplicationJob(
        name='offsite',
        enabled=False,
        transfer_mode='push',
        replication_type='incremental',
        source_paths=json.dumps(['/srv/www', '/var/lib/postgresql']),
        destination_root='/backups/web01',
        remote_user='backup',
        remote_host='vault.example.com',
        remote_port=2222,
        retention_policy='time',
        retention_days=30,
        schedule_cron='30 3 * * *'
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def replication_run(db, local_job):
    """
    Create a finished run record for testing.
    """
    run = ReplicationRun(
        job_id=local_job.id,
        status='success',
        started_at=datetime.utcnow() - timedelta(minutes=5),
        completed_at=datetime.utcnow(),
        sources_total=2,
        sources_failed=0,
        snapshots_evicted=1,
        logs='[2024-01-15 02:00:00] INFO Starting replication job: nightly'
    )
    db.session.add(run)
    db.session.commit()
    return run


def _sync_tree(source, destination, link_dest=None):
    """Copy source into destination like `rsync -a --delete [--link-dest]`."""
    os.makedirs(destination, exist_ok=True)
    wanted = set()

    for root, dirs, files in os.walk(source):
        rel_root = os.path.relpath(root, source)
        for name in dirs:
            rel = os.path.normpath(os.path.join(rel_root, name))
            wanted.add(rel)
            os.makedirs(os.path.join(destination, rel), exist_ok=True)
        for name in files:
            rel = os.path.normpath(os.path.join(rel_root, name))
            wanted.add(rel)
            src = os.path.join(root, name)
            dst = os.path.join(destination, rel)
            if os.path.lexists(dst):
                os.unlink(dst)
            previous = os.path.join(link_dest, rel) if link_dest else None
            if previous and os.path.isfile(previous) and filecmp.cmp(src, previous, shallow=False):
                os.link(previous, dst)
            else:
                shutil.copy2(src, dst)

    for root, dirs, files in os.walk(destination, topdown=False):
        rel_root = os.path.relpath(root, destination)
        for name in files:
            if os.path.normpath(os.path.join(rel_root, name)) not in wanted:
                os.unlink(os.path.join(root, name))
        for name in dirs:
            if os.path.normpath(os.path.join(rel_root, name)) not in wanted:
                shutil.rmtree(os.path.join(root, name))


class FakeRsync:
    """
    In-process stand-in for RsyncTransfer.

    Returns the queued exit codes in order (0 once the queue is empty) and
    copies the tree on success.
    """

    def __init__(self, exit_codes=None):
        self.exit_codes = list(exit_codes or [])
        self.calls = []

    def run(self, source, destination, link_dest=None):
        self.calls.append((source, destination, link_dest))
        code = self.exit_codes.pop(0) if self.exit_codes else 0
        if code == 0:
            _sync_tree(source, destination, link_dest)
        return TransferResult(exit_code=code, output=f'fake rsync exit {code}')


@pytest.fixture
def fake_rsync():
    return FakeRsync()


@pytest.fixture
def make_fake_rsync():
    return FakeRsync


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for remote transport testing.

    exec_command succeeds with empty output unless a test overrides
    ``configure``.
    """
    with patch('replicator.replication.transport.SSHClient') as mock_ssh:
        client = mock_ssh.return_value
        client.connect.return_value = None

        def configure(exit_status=0, stdout=b'', stderr=b''):
            out = MagicMock()
            out.channel.recv_exit_status.return_value = exit_status
            out.read.return_value = stdout
            err = MagicMock()
            err.read.return_value = stderr
            client.exec_command.return_value = (MagicMock(), out, err)

        configure()
        client.configure = configure

        yield client


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import replicator.scheduler as scheduler_module

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None

    with patch('replicator.scheduler.BackgroundScheduler') as mock_sched, \
            patch('replicator.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
