"""
Unit tests for the replication engine (replicator/replication/engine.py).

Tests snapshot planning, predecessor selection and the retry loop.
"""

import logging
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from replicator.replication.engine import ReplicationEngine, select_predecessor
from replicator.replication.settings import JobSettings, RetrySettings
from replicator.replication.snapshots import INCREMENTAL, MIRROR, Snapshot
from replicator.replication.transfer import TransferError, TransferResult
from replicator.replication.transport import LocalTransport, TransportError


T1 = datetime(2024, 1, 1, 2, 0, 0)
T2 = datetime(2024, 1, 2, 2, 0, 0)
T3 = datetime(2024, 1, 3, 2, 0, 0)
T4 = datetime(2024, 1, 4, 2, 0, 0)


def make_settings(destination_root, replication_type='incremental', **retry):
    return JobSettings(
        name='nightly',
        transfer_mode='local',
        replication_type=replication_type,
        source_paths=('/srv/www',),
        destination_root=str(destination_root),
        retry=RetrySettings(**retry) if retry else RetrySettings()
    )


def snapshot_at(moment, namespace_path='/replicas/www'):
    name = moment.strftime('%Y-%m-%d_%H%M%S')
    return Snapshot(name=name, path=f'{namespace_path}/{name}', mode=INCREMENTAL, timestamp=moment)


@pytest.fixture
def source(tmp_path):
    path = tmp_path / 'srv' / 'www'
    path.mkdir(parents=True)
    (path / 'index.html').write_text('<h1>hello</h1>')
    return path


@pytest.fixture
def transfer():
    mock = MagicMock()
    mock.run.return_value = TransferResult(exit_code=0)
    return mock


class TestSelectPredecessor:
    """Test predecessor selection by parsed timestamp."""

    def test_most_recent_before_new_snapshot(self):
        snapshots = [snapshot_at(T2), snapshot_at(T3), snapshot_at(T1)]

        assert select_predecessor(snapshots, T4).timestamp == T3

    def test_ignores_snapshots_not_older(self):
        snapshots = [snapshot_at(T1), snapshot_at(T2), snapshot_at(T3)]

        assert select_predecessor(snapshots, T2).timestamp == T1

    def test_none_without_older_snapshots(self):
        assert select_predecessor([], T1) is None
        assert select_predecessor([snapshot_at(T2)], T1) is None


class TestPlan:
    """Test ReplicationEngine.plan()."""

    def test_incremental_plan(self, tmp_path, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        for moment in (T1, T3, T2):
            (namespace / moment.strftime('%Y-%m-%d_%H%M%S')).mkdir(parents=True)

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T4
        )
        plan = engine.plan('/srv/www', 'www')

        assert plan.mode == INCREMENTAL
        assert plan.timestamp == T4
        assert plan.destination == str(namespace / '2024-01-04_020000')
        assert plan.working_path == str(namespace / 'in_progress_2024-01-04_020000')
        assert plan.predecessor.timestamp == T3
        assert plan.resume_from is None

    def test_unfinished_attempt_is_never_predecessor(self, tmp_path, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        (namespace / '2024-01-01_020000').mkdir(parents=True)
        (namespace / 'in_progress_2024-01-02_020000').mkdir()

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T3
        )
        plan = engine.plan('/srv/www', 'www')

        assert plan.predecessor.path == str(namespace / '2024-01-01_020000')
        assert plan.resume_from == str(namespace / 'in_progress_2024-01-02_020000')

    def test_timestamp_pushed_past_newest_snapshot(self, tmp_path, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        (namespace / '2024-01-03_020000').mkdir(parents=True)

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T3
        )
        plan = engine.plan('/srv/www', 'www')

        assert plan.destination.endswith('2024-01-03_020001')
        assert plan.predecessor.timestamp == T3

    def test_mirror_plan(self, tmp_path, transfer):
        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas', replication_type='mirror'), transfer,
            LocalTransport(), LocalTransport()
        )
        plan = engine.plan('/srv/www', 'www')

        assert plan.mode == MIRROR
        assert plan.destination == str(tmp_path / 'replicas' / 'www')
        assert plan.working_path == plan.destination
        assert plan.predecessor is None


class TestReplicate:
    """Test ReplicationEngine.replicate()."""

    def test_first_snapshot_is_full_copy(self, tmp_path, source, transfer):
        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T1
        )

        outcome = engine.replicate(str(source), 'www')

        namespace = tmp_path / 'replicas' / 'www'
        assert outcome.success
        assert outcome.attempts == 1
        assert outcome.snapshot_path == str(namespace / '2024-01-01_020000')
        assert outcome.predecessor_path is None
        transfer.run.assert_called_once_with(
            str(source), str(namespace / 'in_progress_2024-01-01_020000'), None
        )
        assert sorted(entry.name for entry in namespace.iterdir()) == ['2024-01-01_020000']

    def test_links_against_latest_snapshot(self, tmp_path, source, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        for moment in (T1, T2, T3):
            (namespace / moment.strftime('%Y-%m-%d_%H%M%S')).mkdir(parents=True)

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T4
        )
        outcome = engine.replicate(str(source), 'www')

        predecessor = str(namespace / '2024-01-03_020000')
        assert outcome.success
        assert outcome.predecessor_path == predecessor
        transfer.run.assert_called_once_with(
            str(source), str(namespace / 'in_progress_2024-01-04_020000'), predecessor
        )

    def test_missing_predecessor_warns_and_copies(self, tmp_path, source, transfer, caplog):
        """Test a predecessor that vanished after listing only costs a full copy."""
        destination = MagicMock()
        destination.list_directories.return_value = ['2024-01-03_020000']
        destination.is_dir.side_effect = lambda path: not path.endswith('2024-01-03_020000')
        destination.describe.side_effect = lambda path: path

        engine = ReplicationEngine(
            make_settings('/replicas'), transfer,
            LocalTransport(), destination, clock=lambda: T4
        )

        with caplog.at_level(logging.WARNING):
            outcome = engine.replicate(str(source), 'www')

        assert outcome.success
        assert outcome.predecessor_path is None
        assert '--link-dest arg does not exist' in caplog.text
        transfer.run.assert_called_once_with(
            str(source), '/replicas/www/in_progress_2024-01-04_020000', None
        )
        destination.rename.assert_called_once_with(
            '/replicas/www/in_progress_2024-01-04_020000', '/replicas/www/2024-01-04_020000'
        )

    def test_retryable_twice_then_success(self, tmp_path, source, transfer):
        transfer.run.side_effect = [
            TransferResult(exit_code=10),
            TransferResult(exit_code=10),
            TransferResult(exit_code=0)
        ]
        sleep = MagicMock()

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas', max_attempts=3, backoff_base=30.0, backoff_cap=600.0),
            transfer, LocalTransport(), LocalTransport(), clock=lambda: T1, sleep=sleep
        )
        outcome = engine.replicate(str(source), 'www')

        assert outcome.success
        assert outcome.attempts == 3
        assert outcome.backoff_history == [30.0, 60.0]
        assert [c.args[0] for c in sleep.call_args_list] == [30.0, 60.0]
        assert transfer.run.call_count == 3

    def test_retries_exhausted(self, tmp_path, source, transfer):
        transfer.run.return_value = TransferResult(exit_code=30)
        sleep = MagicMock()

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas', max_attempts=3, backoff_base=1.0, backoff_cap=1.5),
            transfer, LocalTransport(), LocalTransport(), clock=lambda: T1, sleep=sleep
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert outcome.exit_code == 30
        assert outcome.attempts == 3
        assert outcome.backoff_history == [1.0, 1.5]
        assert 'retries exhausted' in outcome.error

    def test_fatal_code_not_retried(self, tmp_path, source, transfer):
        transfer.run.return_value = TransferResult(exit_code=23)
        sleep = MagicMock()

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T1, sleep=sleep
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert outcome.exit_code == 23
        assert outcome.attempts == 1
        sleep.assert_not_called()

    def test_missing_source_fails_without_transfer(self, tmp_path, transfer):
        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T1
        )
        outcome = engine.replicate(str(tmp_path / 'nope'), 'nope')

        assert not outcome.success
        assert 'does not exist' in outcome.error
        transfer.run.assert_not_called()

    def test_transfer_error_fails_source(self, tmp_path, source, transfer):
        transfer.run.side_effect = TransferError('rsync: not found')

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T1
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert outcome.attempts == 1
        assert 'rsync: not found' in outcome.error

    def test_destination_failure_reported(self, source, transfer):
        destination = MagicMock()
        destination.list_directories.return_value = []
        destination.describe.side_effect = lambda path: path
        destination.makedirs.side_effect = TransportError('permission denied')

        engine = ReplicationEngine(
            make_settings('/replicas'), transfer,
            LocalTransport(), destination, clock=lambda: T1
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert 'permission denied' in outcome.error
        transfer.run.assert_not_called()

    def test_mirror_never_links(self, tmp_path, source, transfer):
        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas', replication_type='mirror'), transfer,
            LocalTransport(), LocalTransport()
        )
        outcome = engine.replicate(str(source), 'www')

        assert outcome.success
        assert outcome.snapshot.mode == MIRROR
        transfer.run.assert_called_once_with(str(source), str(tmp_path / 'replicas' / 'www'), None)


class TestUnfinishedAttempts:
    """Test that failed transfers never become snapshots."""

    def test_failed_attempt_is_left_in_progress(self, tmp_path, source, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        (namespace / '2024-01-01_020000').mkdir(parents=True)
        transfer.run.return_value = TransferResult(exit_code=23)

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T2
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert outcome.snapshot is None
        assert sorted(entry.name for entry in namespace.iterdir()) == [
            '2024-01-01_020000', 'in_progress_2024-01-02_020000'
        ]

    def test_next_run_resumes_and_links_completed_snapshot(self, tmp_path, source, transfer):
        namespace = tmp_path / 'replicas' / 'www'
        (namespace / '2024-01-01_020000').mkdir(parents=True)
        leftover = namespace / 'in_progress_2024-01-02_020000'
        leftover.mkdir()
        (leftover / 'index.html').write_text('<h1>hel')

        engine = ReplicationEngine(
            make_settings(tmp_path / 'replicas'), transfer,
            LocalTransport(), LocalTransport(), clock=lambda: T3
        )
        outcome = engine.replicate(str(source), 'www')

        assert outcome.success
        assert outcome.predecessor_path == str(namespace / '2024-01-01_020000')
        transfer.run.assert_called_once_with(
            str(source), str(namespace / 'in_progress_2024-01-03_020000'),
            str(namespace / '2024-01-01_020000')
        )
        # The partial files were carried over into the finished snapshot
        assert (namespace / '2024-01-03_020000' / 'index.html').read_text() == '<h1>hel'
        assert sorted(entry.name for entry in namespace.iterdir()) == [
            '2024-01-01_020000', '2024-01-03_020000'
        ]

    def test_finalize_failure_reported(self, source, transfer):
        destination = MagicMock()
        destination.list_directories.return_value = []
        destination.describe.side_effect = lambda path: path
        destination.rename.side_effect = TransportError('mv: permission denied')

        engine = ReplicationEngine(
            make_settings('/replicas'), transfer,
            LocalTransport(), destination, clock=lambda: T1
        )
        outcome = engine.replicate(str(source), 'www')

        assert not outcome.success
        assert outcome.snapshot is None
        assert 'Failed to finalize snapshot' in outcome.error
