"""
Unit tests for backup executor (s3backup/backup/executor.py).

Tests UploadPipeline directory sync, run_upload/run_retention and the
BackupExecutor dump, retention and upload workflow.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from s3backup.backup.dump import DumpError
from s3backup.backup.executor import (
    BackupExecutor,
    UploadError,
    UploadPipeline,
    run_retention,
    run_upload,
)
from s3backup.backup.orchestrator import CancellationToken, RunCounters
from s3backup.backup.retention import Grouping, KeepCountPolicy
from s3backup.backup.scanner import ScanError
from s3backup.backup.storage import LocalIOError
from s3backup.backup.transfer import TransferError
from s3backup.config import BackupSettings, DatabaseConfig


def _settings(local_dir, databases=()):
    return BackupSettings(
        endpoint=None,
        region='us-east-1',
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket='test-bucket',
        local_dir=str(local_dir),
        remote_prefix='backup',
        part_size=5 * 1024 * 1024,
        part_concurrency=2,
        file_concurrency=2,
        timeout_seconds=3600,
        backup_pattern='*.sql.gz',
        databases=tuple(databases),
    )


@pytest.fixture
def shop_database():
    return DatabaseConfig(
        type='mysql',
        host='localhost',
        port='3306',
        user='backup',
        password='secret',
        dbname='shop'
    )


class TestUploadPipeline:
    """Test UploadPipeline directory sync."""

    def test_upload_directory(self, backup_dir, fake_storage):
        """Test every non-empty file is uploaded under the remote prefix."""
        result = UploadPipeline(fake_storage, str(backup_dir), 'backup').run()

        assert result.ok
        assert result.counters.uploaded == 2
        assert result.counters.skipped == 1
        assert sorted(fake_storage.objects) == [
            'backup/nested/report.csv',
            'backup/shop_2024-01-10_02-00-00.sql.gz',
        ]

    def test_second_run_skips_everything(self, backup_dir, fake_storage):
        """Test that re-running over an unchanged directory uploads nothing."""
        UploadPipeline(fake_storage, str(backup_dir), 'backup').run()
        puts_before = len(fake_storage.calls_to('put_object'))

        result = UploadPipeline(fake_storage, str(backup_dir), 'backup').run()

        assert result.counters.uploaded == 0
        assert result.counters.skipped == 3
        assert len(fake_storage.calls_to('put_object')) == puts_before

    def test_multipart_files_in_directory(self, tmp_path, make_file, fake_storage):
        """Test large files are uploaded in parts alongside small ones."""
        make_file(tmp_path / 'big.bin', b'x' * 35)
        make_file(tmp_path / 'small.bin', b'y' * 5)

        result = UploadPipeline(fake_storage, str(tmp_path), 'backup', part_size=10, part_concurrency=2).run()

        assert result.counters.uploaded == 2
        assert fake_storage.objects['backup/big.bin'] == b'x' * 35
        assert len(fake_storage.calls_to('upload_part')) == 4

    def test_empty_directory(self, tmp_path, fake_storage):
        """Test an empty directory is a successful no-op."""
        result = UploadPipeline(fake_storage, str(tmp_path), 'backup').run()

        assert result.ok
        assert result.counters.as_dict() == {'uploaded': 0, 'skipped': 0, 'deleted': 0}
        assert fake_storage.calls == []

    def test_missing_directory_raises(self, tmp_path, fake_storage):
        """Test a scan failure aborts before any upload."""
        with pytest.raises(ScanError):
            UploadPipeline(fake_storage, str(tmp_path / 'missing'), 'backup').run()

        assert fake_storage.calls == []

    def test_first_failure_abandons_remaining_files(self, tmp_path, make_file, fake_storage):
        """Test a failed file stops the run before later files reach the bucket."""
        for n in range(4):
            make_file(tmp_path / f'f{n}.bin')
        fake_storage.fail_on['put_object'] = lambda key: True

        result = UploadPipeline(fake_storage, str(tmp_path), 'backup', max_concurrency=1).run()

        assert not result.ok
        assert isinstance(result.error, TransferError)
        assert result.aggregate.failed == 1
        assert result.aggregate.abandoned == 3
        assert len(fake_storage.calls_to('put_object')) == 1
        assert len(fake_storage.calls_to('exists')) == 1
        assert result.counters.uploaded == 0

    def test_cancelled_run_uploads_nothing(self, backup_dir, fake_storage):
        """Test a cancelled token stops the run."""
        token = CancellationToken()
        token.cancel('interrupted')

        result = UploadPipeline(fake_storage, str(backup_dir), 'backup').run(token=token)

        assert not result.ok
        assert fake_storage.calls == []


class TestRunUpload:
    """Test run_upload."""

    def test_returns_counters(self, backup_dir, fake_storage):
        """Test counters of a successful run."""
        counters = run_upload(fake_storage, str(backup_dir), 'backup')

        assert counters.uploaded == 2
        assert counters.skipped == 1

    def test_failure_raises_with_counters(self, tmp_path, make_file, fake_storage):
        """Test one failing file fails the run and reports progress so far."""
        make_file(tmp_path / 'bad.bin')
        fake_storage.fail_on['put_object'] = lambda key: key == 'backup/bad.bin'

        with pytest.raises(UploadError) as exc_info:
            run_upload(fake_storage, str(tmp_path), 'backup', max_concurrency=1)

        assert isinstance(exc_info.value.error, TransferError)
        assert isinstance(exc_info.value.counters, RunCounters)
        assert exc_info.value.counters.uploaded == 0

    def test_uses_given_counters(self, backup_dir, fake_storage):
        """Test counters are accumulated into the caller's instance."""
        counters = RunCounters()
        counters.increment('deleted', 2)

        result = run_upload(fake_storage, str(backup_dir), 'backup', counters=counters)

        assert result is counters
        assert counters.as_dict() == {'uploaded': 2, 'skipped': 1, 'deleted': 2}


class TestRunRetention:
    """Test run_retention."""

    def test_rotates_only_matching_files(self, tmp_path, make_file, fake_storage):
        """Test retention ignores files outside the backup pattern."""
        for day in (1, 2, 3):
            make_file(tmp_path / f'shop_2024-01-0{day}_02-00-00.sql.gz',
                      modified_at=datetime(2024, 1, day, 2, 0, 0))
        make_file(tmp_path / 'notes.txt', modified_at=datetime(2023, 1, 1))

        report = run_retention(fake_storage, str(tmp_path), 'backup', KeepCountPolicy(1))

        assert report.scanned == 3
        assert report.deleted_local == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            'notes.txt',
            'shop_2024-01-03_02-00-00.sql.gz',
        ]
        assert sorted(c[1] for c in fake_storage.calls_to('delete')) == [
            'backup/shop_2024-01-01_02-00-00.sql.gz',
            'backup/shop_2024-01-02_02-00-00.sql.gz',
        ]


class TestBackupExecutor:
    """Test BackupExecutor workflow."""

    @patch('s3backup.backup.executor.dump_all')
    def test_dump_then_upload(self, mock_dump_all, tmp_path, make_file, fake_storage, shop_database):
        """Test a successful run dumps and uploads the new dump."""
        def fake_dump(databases, output_dir, token):
            path = make_file(tmp_path / 'shop_2024-01-10_02-00-00.sql.gz', b'dump')
            return [str(path)]
        mock_dump_all.side_effect = fake_dump

        executor = BackupExecutor(_settings(tmp_path, [shop_database]), fake_storage)
        summary = executor.execute()

        assert summary.status == 'success'
        assert summary.dumped == [str(tmp_path / 'shop_2024-01-10_02-00-00.sql.gz')]
        assert summary.counters.uploaded == 1
        assert summary.completed_at >= summary.started_at
        assert any('Backup completed successfully' in line for line in summary.logs)
        mock_dump_all.assert_called_once()

    @patch('s3backup.backup.executor.dump_all')
    def test_no_databases_skips_dump(self, mock_dump_all, tmp_path, fake_storage):
        """Test dump is skipped when nothing is configured."""
        summary = BackupExecutor(_settings(tmp_path), fake_storage).execute()

        assert summary.status == 'success'
        mock_dump_all.assert_not_called()

    @patch('s3backup.backup.executor.dump_all')
    def test_dump_failure_fails_run(self, mock_dump_all, tmp_path, make_file, fake_storage, shop_database):
        """Test a failed dump stops the run before upload."""
        make_file(tmp_path / 'old.sql.gz')
        mock_dump_all.side_effect = DumpError('mysqldump exited 2')

        summary = BackupExecutor(_settings(tmp_path, [shop_database]), fake_storage).execute()

        assert summary.status == 'failed'
        assert 'mysqldump exited 2' in summary.error_message
        assert fake_storage.calls == []

    def test_retention_runs_before_upload(self, tmp_path, make_file, fake_storage):
        """Test rotated files are not uploaded."""
        for day in (1, 2, 3):
            make_file(tmp_path / f'shop_2024-01-0{day}_02-00-00.sql.gz',
                      modified_at=datetime(2024, 1, day, 2, 0, 0))

        summary = BackupExecutor(_settings(tmp_path), fake_storage).execute(
            dump=False, policy=KeepCountPolicy(1), grouping=Grouping.BY_DERIVED_NAME
        )

        assert summary.status == 'success'
        assert summary.counters.deleted == 2
        assert summary.counters.uploaded == 1
        assert list(fake_storage.objects) == ['backup/shop_2024-01-03_02-00-00.sql.gz']
        assert summary.retention.deleted_local == 2

    def test_cancelled_run_skips_retention(self, tmp_path, make_file, fake_storage):
        """Test a signal or deadline before retention deletes nothing."""
        for day in (1, 2, 3):
            make_file(tmp_path / f'shop_2024-01-0{day}_02-00-00.sql.gz',
                      modified_at=datetime(2024, 1, day, 2, 0, 0))
        token = CancellationToken()
        token.cancel('deadline exceeded')

        summary = BackupExecutor(_settings(tmp_path), fake_storage, token).execute(
            dump=False, policy=KeepCountPolicy(1)
        )

        assert summary.status == 'failed'
        assert 'deadline exceeded' in summary.error_message
        assert len(list(tmp_path.iterdir())) == 3
        assert fake_storage.calls == []

    @patch('s3backup.backup.executor.LocalStorage')
    def test_retention_error_fails_run(self, mock_local_storage, tmp_path, make_file, fake_storage):
        """Test a local deletion failure fails the run and skips upload."""
        for day in (1, 2):
            make_file(tmp_path / f'shop_2024-01-0{day}_02-00-00.sql.gz',
                      modified_at=datetime(2024, 1, day, 2, 0, 0))
        local_storage = MagicMock()
        local_storage.delete.side_effect = LocalIOError('Permission denied')
        mock_local_storage.return_value = local_storage

        summary = BackupExecutor(_settings(tmp_path), fake_storage).execute(
            dump=False, policy=KeepCountPolicy(1)
        )

        assert summary.status == 'failed'
        assert 'Permission denied' in summary.error_message
        assert fake_storage.calls_to('put_object') == []

    def test_upload_failure_fails_run(self, tmp_path, make_file, fake_storage):
        """Test upload errors are reported in the summary."""
        make_file(tmp_path / 'shop.sql.gz')
        fake_storage.fail_on['put_object'] = lambda key: True

        summary = BackupExecutor(_settings(tmp_path), fake_storage).execute(dump=False)

        assert summary.status == 'failed'
        assert 'Upload failed' in summary.error_message

    def test_upload_disabled(self, tmp_path, make_file, fake_storage):
        """Test --no-upload leaves the bucket untouched."""
        make_file(tmp_path / 'shop.sql.gz')

        summary = BackupExecutor(_settings(tmp_path), fake_storage).execute(dump=False, upload=False)

        assert summary.status == 'success'
        assert fake_storage.calls == []
