"""
Unit tests for the WAL archive pipeline (backrest/backup/archive.py).
"""

import gzip
import hashlib
import math
import os
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from backrest.backup.archive import (
    ARCHIVE_GET_FOUND,
    ARCHIVE_GET_MISSING,
    ArchivePipeline,
    ArchiveSpool,
    is_segment,
    segment_range,
    spawn_drain,
    spool_lock_path,
    stop_file_path,
    wait_for_segments,
)
from backrest.backup.storage import FileService
from backrest.errors import MissingArgument, TransferFailure
from backrest.lock import Lock


SEGMENT = '000000010000000000000001'


@pytest.fixture
def wal_file(tmp_path):
    path = tmp_path / 'pg_wal' / SEGMENT
    path.parent.mkdir()
    path.write_bytes(b'wal segment content')
    return path


class TestSegmentHelpers:

    def test_is_segment(self):
        assert is_segment(SEGMENT) is True
        assert is_segment('00000002.history') is False
        assert is_segment('000000010000000000000001.00000028.backup') is False

    def test_segment_range_crosses_log_boundary(self):
        assert segment_range('0000000100000001000000FE', '000000010000000200000001') == [
            '0000000100000001000000FE',
            '0000000100000001000000FF',
            '000000010000000200000000',
            '000000010000000200000001',
        ]

    def test_segment_range_single(self):
        assert segment_range(SEGMENT, SEGMENT) == [SEGMENT]

    def test_segment_range_invalid(self):
        with pytest.raises(ValueError):
            segment_range('000000010000000000000005', SEGMENT)

        with pytest.raises(ValueError, match='different timelines'):
            segment_range(SEGMENT, '000000020000000000000002')

    def test_marker_paths(self):
        assert stop_file_path('/spool', 'main') == '/spool/lock/main-archive.stop'
        assert spool_lock_path('/spool', 'main') == '/spool/lock/main-archive.lock'


class TestArchivePush:
    """Test pushing segments into the archive."""

    def test_push_compressed_with_checksum(self, file_service, repo_path, wal_file):
        pipeline = ArchivePipeline(file_service, compress=True, checksum=True)

        archived = pipeline.push(str(wal_file))

        checksum = hashlib.sha1(b'wal segment content').hexdigest()
        assert archived == f'{SEGMENT}-{checksum}.gz'

        stored = repo_path / 'archive' / 'main' / '0000000100000000' / archived
        assert gzip.decompress(stored.read_bytes()) == b'wal segment content'

    def test_push_without_compress_or_checksum(self, file_service, repo_path, wal_file):
        pipeline = ArchivePipeline(file_service, compress=False, checksum=False)

        assert pipeline.push(str(wal_file)) == SEGMENT
        assert (repo_path / 'archive' / 'main' / '0000000100000000' / SEGMENT).read_bytes() == b'wal segment content'

    def test_history_file_has_no_checksum(self, file_service, tmp_path):
        history = tmp_path / '00000002.history'
        history.write_text('1\t0/3000000\tno recovery target specified\n')

        pipeline = ArchivePipeline(file_service, compress=False, checksum=True)

        assert pipeline.push(str(history)) == '00000002.history'

    def test_stop_file_discards_without_transfer(self, tmp_path, wal_file):
        """Test the stop marker discards the segment without touching the file service."""
        stop_file = tmp_path / 'lock' / 'main-archive.stop'
        stop_file.parent.mkdir()
        stop_file.touch()

        file_service = MagicMock()
        pipeline = ArchivePipeline(file_service)

        assert pipeline.push(str(wal_file), str(stop_file)) is None
        assert file_service.mock_calls == []

    def test_push_duplicate_same_checksum(self, file_service, wal_file, caplog):
        pipeline = ArchivePipeline(file_service, compress=True, checksum=True)
        first = pipeline.push(str(wal_file))

        with patch.object(file_service, 'copy') as mock_copy:
            second = pipeline.push(str(wal_file))

        assert second == first
        mock_copy.assert_not_called()
        assert 'already exists in the archive with the same checksum' in caplog.text

    def test_push_duplicate_different_checksum(self, file_service, wal_file):
        pipeline = ArchivePipeline(file_service, compress=True, checksum=True)
        pipeline.push(str(wal_file))

        wal_file.write_bytes(b'different content')

        with pytest.raises(TransferFailure, match='different checksum'):
            pipeline.push(str(wal_file))


class TestArchiveGet:
    """Test fetching segments back."""

    def test_get_found(self, file_service, wal_file, tmp_path):
        pipeline = ArchivePipeline(file_service, compress=True, checksum=True)
        pipeline.push(str(wal_file))

        destination = tmp_path / 'RECOVERYXLOG'
        assert pipeline.get(SEGMENT, str(destination)) == ARCHIVE_GET_FOUND
        assert destination.read_bytes() == b'wal segment content'

    def test_get_missing(self, file_service, tmp_path):
        pipeline = ArchivePipeline(file_service)

        assert pipeline.get(SEGMENT, str(tmp_path / 'RECOVERYXLOG')) == ARCHIVE_GET_MISSING
        assert not (tmp_path / 'RECOVERYXLOG').exists()

    def test_get_requires_arguments(self, file_service):
        pipeline = ArchivePipeline(file_service)

        with pytest.raises(MissingArgument, match='archive file not provided'):
            pipeline.get(None, '/tmp/x')

        with pytest.raises(MissingArgument, match='destination file not provided'):
            pipeline.get(SEGMENT, None)


class TestArchiveSpool:
    """Test the size-bounded drain loop."""

    @pytest.fixture
    def spool_dir(self, tmp_path):
        path = tmp_path / 'spool' / 'archive' / 'main'
        path.mkdir(parents=True)
        return path

    def _spool(self, spool_dir, count, size):
        directory = spool_dir / '0000000100000000'
        directory.mkdir(exist_ok=True)
        for index in range(count):
            (directory / f'0000000100000000000000{index + 1:02X}').write_bytes(b'x' * size)

    @pytest.mark.parametrize('count,per_batch', [(5, 2), (4, 2), (1, 3), (3, 1)])
    def test_drain_batch_count(self, spool_dir, tmp_path, count, per_batch):
        """Test N segments with K per batch take ceil(N/K) batches plus a final empty one."""
        self._spool(spool_dir, count, 1024 * 1024 // per_batch)

        pipeline = MagicMock()
        spool = ArchiveSpool(str(spool_dir), pipeline, archive_max_mb=1)
        lock = Lock(spool_lock_path(str(tmp_path / 'spool'), 'main'))

        results = []
        original = spool.transfer_batch

        def recording_batch():
            transferred = original()
            results.append(transferred)
            return transferred

        spool.transfer_batch = recording_batch

        assert spool.drain(lock) == count
        assert len(results) == math.ceil(count / per_batch) + 1
        assert results[-1] == 0
        assert pipeline.push.call_count == count
        assert spool.pending() == []
        assert lock.held is False

    def test_oversized_segment_still_transferred(self, spool_dir):
        self._spool(spool_dir, 1, 2 * 1024 * 1024)

        spool = ArchiveSpool(str(spool_dir), MagicMock(), archive_max_mb=1)

        assert spool.transfer_batch() == 1

    def test_failed_push_keeps_spooled_file(self, spool_dir):
        self._spool(spool_dir, 2, 10)
        pipeline = MagicMock()
        pipeline.push.side_effect = TransferFailure('network down')

        spool = ArchiveSpool(str(spool_dir), pipeline, archive_max_mb=1)

        with pytest.raises(TransferFailure):
            spool.transfer_batch()

        assert len(spool.pending()) == 2

    def test_unreadable_spool_is_transfer_failure(self, spool_dir):
        self._spool(spool_dir, 1, 10)
        spool = ArchiveSpool(str(spool_dir), MagicMock(), archive_max_mb=1)

        with patch('backrest.backup.archive.os.listdir', side_effect=PermissionError('denied')):
            with pytest.raises(TransferFailure, match='unable to read archive spool'):
                spool.pending()

    def test_spooled_file_remove_failure_is_transfer_failure(self, spool_dir):
        self._spool(spool_dir, 1, 10)
        pipeline = MagicMock()
        spool = ArchiveSpool(str(spool_dir), pipeline, archive_max_mb=1)

        with patch('backrest.backup.archive.os.remove', side_effect=OSError('read-only file system')):
            with pytest.raises(TransferFailure, match='unable to remove spooled file'):
                spool.transfer_batch()

        pipeline.push.assert_called_once()

    def test_drain_skips_when_locked(self, spool_dir, tmp_path):
        self._spool(spool_dir, 2, 10)
        path = spool_lock_path(str(tmp_path / 'spool'), 'main')
        holder = Lock(path)
        holder.acquire()

        pipeline = MagicMock()
        spool = ArchiveSpool(str(spool_dir), pipeline, archive_max_mb=1)

        assert spool.drain(Lock(path)) == 0
        pipeline.push.assert_not_called()

        holder.release()

    def test_drain_into_repository(self, spool_dir, tmp_path, repo_path):
        """Test spooled checksum-named files land in the repository compressed."""
        checksum = hashlib.sha1(b'wal').hexdigest()
        directory = spool_dir / '0000000100000000'
        directory.mkdir()
        (directory / f'{SEGMENT}-{checksum}').write_bytes(b'wal')

        repository = FileService('main', str(repo_path))
        spool = ArchiveSpool(str(spool_dir), ArchivePipeline(repository, compress=True), archive_max_mb=1)

        assert spool.drain(Lock(spool_lock_path(str(tmp_path / 'spool'), 'main'))) == 1

        stored = repo_path / 'archive' / 'main' / '0000000100000000' / f'{SEGMENT}-{checksum}.gz'
        assert gzip.decompress(stored.read_bytes()) == b'wal'
        assert not (directory / f'{SEGMENT}-{checksum}').exists()


class TestSpawnDrain:

    def test_spawn_drain_detaches(self):
        popen = MagicMock()

        spawn_drain('main', '/etc/pg_backrest.conf', popen=popen)

        args, kwargs = popen.call_args
        assert args[0] == [
            sys.executable, '-m', 'backrest', '--stanza=main', '--config=/etc/pg_backrest.conf', 'archive-push'
        ]
        assert kwargs['start_new_session'] is True
        assert kwargs['stdin'] == subprocess.DEVNULL


class TestWaitForSegments:

    def test_all_present(self, file_service, make_segment):
        make_segment('000000010000000000000002', '.gz')
        make_segment('000000010000000000000003', '.gz')

        found = wait_for_segments(
            ArchivePipeline(file_service),
            '000000010000000000000002',
            '000000010000000000000003',
            timeout=1,
            sleep=lambda seconds: None
        )

        assert found == ['000000010000000000000002.gz', '000000010000000000000003.gz']

    def test_timeout(self, file_service, make_segment):
        make_segment('000000010000000000000002')

        with pytest.raises(TransferFailure, match='000000010000000000000003'):
            wait_for_segments(
                ArchivePipeline(file_service),
                '000000010000000000000002',
                '000000010000000000000003',
                timeout=0,
                sleep=lambda seconds: None
            )

    def test_timeline_switch_is_transfer_failure(self, file_service):
        with pytest.raises(TransferFailure, match='different timelines'):
            wait_for_segments(
                ArchivePipeline(file_service),
                '000000010000000000000002',
                '000000020000000000000003',
                timeout=0,
                sleep=lambda seconds: None
            )
