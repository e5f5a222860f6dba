"""
Unit tests for database control (backrest/db.py).
"""

from unittest.mock import MagicMock, patch

import pytest

from backrest.db import Db
from backrest.errors import DbError, RemoteError


def completed(stdout='', returncode=0, stderr=''):
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


class TestDbLocal:
    """Test Db running psql through subprocess."""

    @patch('backrest.db.subprocess.run')
    def test_execute_builds_psql_command(self, mock_run):
        mock_run.return_value = completed('\n42\n')

        assert Db('/usr/bin/psql -X').execute('select 42') == '42'

        args, kwargs = mock_run.call_args
        assert args[0] == ['/usr/bin/psql', '-X', '-A', '-t', '-c', 'select 42', 'postgres']
        assert kwargs['capture_output'] is True

    @patch('backrest.db.subprocess.run')
    def test_execute_failure(self, mock_run):
        mock_run.return_value = completed(returncode=2, stderr='could not connect to server\n')

        with pytest.raises(DbError, match='could not connect to server'):
            Db('psql').execute('select 1')

    @patch('backrest.db.subprocess.run')
    def test_psql_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError('psql')

        with pytest.raises(DbError, match='unable to run psql'):
            Db('psql').execute('select 1')

    @patch('backrest.db.subprocess.run')
    def test_backup_start_modern_version(self, mock_run):
        mock_run.side_effect = [completed('120005\n'), completed('000000010000000000000002\n')]

        db = Db('psql')
        assert db.backup_start('20240115-120000F', start_fast=True) == '000000010000000000000002'

        sql = mock_run.call_args_list[1][0][0][5]
        assert 'pg_walfile_name' in sql
        assert "pg_start_backup('20240115-120000F', true)" in sql

    @patch('backrest.db.subprocess.run')
    def test_backup_stop_legacy_version(self, mock_run):
        mock_run.side_effect = [completed('90324\n'), completed('000000010000000000000003\n')]

        db = Db('psql')
        assert db.backup_stop() == '000000010000000000000003'

        sql = mock_run.call_args_list[1][0][0][5]
        assert 'pg_xlogfile_name' in sql
        assert 'pg_stop_backup()' in sql

    @patch('backrest.db.subprocess.run')
    def test_version_is_cached(self, mock_run):
        mock_run.return_value = completed('150002\n')

        db = Db('psql')
        db.version_num()
        db.version_num()

        mock_run.assert_called_once()

    @patch('backrest.db.subprocess.run')
    def test_empty_start_result(self, mock_run):
        mock_run.side_effect = [completed('120005\n'), completed('\n')]

        with pytest.raises(DbError, match='did not return a WAL segment'):
            Db('psql').backup_start('label')


class TestDbRemote:
    """Test Db running psql over the remote session."""

    def test_execute_over_session(self):
        session = MagicMock()
        session.execute.return_value = (0, '120005\n', '')

        db = Db('psql -X', host='db.example.com', session=session)

        assert db.version_num() == 120005
        command = session.execute.call_args[0][0]
        assert command.startswith('psql -X -A -t -c ')
        assert command.endswith(' postgres')

    def test_remote_error_becomes_db_error(self):
        session = MagicMock()
        session.execute.side_effect = RemoteError('channel closed')

        with pytest.raises(DbError, match='db.example.com'):
            Db('psql', host='db.example.com', session=session).execute('select 1')
