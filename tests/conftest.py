"""
Shared pytest fixtures for pg_backrest tests.

This module provides fixtures for:
- Configuration files and parsed Config objects
- A local repository and a fake database cluster directory
- Local file services
- Backups written straight into the repository
- Mock fixtures for external services (SSH)
"""

import configparser
import logging
import os
from unittest.mock import MagicMock, patch

import pytest

from backrest.backup.manifest import MANIFEST_FILE, BackupManifest
from backrest.backup.storage import FileService
from backrest.config import parse_config


STANZA = 'main'


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo handlers and propagation changes made by configure_logging()/set_log_file()."""
    yield

    logger = logging.getLogger('backrest')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def repo_path(tmp_path):
    path = tmp_path / 'repo'
    path.mkdir()
    return path


@pytest.fixture
def db_path(tmp_path):
    """
    Create a small fake cluster.

    Creates:
    - PG_VERSION, postmaster.opts
    - base/1/1000 (3000 bytes), base/1/1001 (100 bytes)
    - global/pg_control
    - pg_wal/000000010000000000000001 (excluded from backups)
    """
    path = tmp_path / 'db'
    (path / 'base' / '1').mkdir(parents=True)
    (path / 'global').mkdir()
    (path / 'pg_wal').mkdir()

    (path / 'PG_VERSION').write_text('12\n')
    (path / 'postmaster.opts').write_text('postgres -D /db\n')
    (path / 'base' / '1' / '1000').write_bytes(b'a' * 3000)
    (path / 'base' / '1' / '1001').write_bytes(b'b' * 100)
    (path / 'global' / 'pg_control').write_bytes(b'c' * 512)
    (path / 'pg_wal' / '000000010000000000000001').write_bytes(b'w' * 64)

    return path


@pytest.fixture
def make_config(repo_path, db_path):
    """
    Build a Config from INI sections.

    Usage:
        config = make_config({'global:backup': {'host': 'backup.example.com'}})
    """
    def _make_config(sections=None, stanza=STANZA):
        parser = configparser.ConfigParser(interpolation=None)
        parser.read_dict({
            stanza: {'path': str(db_path)},
            'global:backup': {'path': str(repo_path)},
        })
        for section, values in (sections or {}).items():
            if not parser.has_section(section):
                parser.add_section(section)
            for key, value in values.items():
                parser.set(section, key, value)
        return parse_config(parser, stanza, config_path='/etc/pg_backrest.conf')

    return _make_config


@pytest.fixture
def config_file(tmp_path, repo_path, db_path):
    """Write a minimal pg_backrest.conf and return its path."""
    path = tmp_path / 'pg_backrest.conf'
    path.write_text(
        f"[global:backup]\n"
        f"path={repo_path}\n"
        f"\n"
        f"[{STANZA}]\n"
        f"path={db_path}\n"
    )
    return path


@pytest.fixture
def file_service(repo_path, db_path):
    """Local file service for the test stanza."""
    return FileService(STANZA, str(repo_path), db_path=str(db_path))


@pytest.fixture
def make_backup(repo_path):
    """
    Write a backup directory with a manifest into the repository.

    Usage:
        make_backup('20240101-000000F', archive_start='000000010000000000000002')
    """
    def _make_backup(label, backup_type='full', prior=None, archive_start=None, archive_stop=None, files=None):
        backup_dir = repo_path / 'backup' / STANZA / label
        (backup_dir / 'base').mkdir(parents=True)

        manifest = BackupManifest(
            label=label,
            type=backup_type,
            prior=prior,
            archive_start=archive_start,
            archive_stop=archive_stop or archive_start,
            files=files or {}
        )
        manifest.save(str(backup_dir / MANIFEST_FILE))
        return manifest

    return _make_backup


@pytest.fixture
def make_segment(repo_path):
    """Write an archived segment into the repository archive."""
    def _make_segment(name, suffix=''):
        directory = repo_path / 'archive' / STANZA / name[:16]
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f'{name}{suffix}'
        path.write_bytes(b'wal')
        return path

    return _make_segment


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for remote session testing.

    Returns a MagicMock that simulates SSH connections whose commands exit 0.
    """
    with patch('backrest.remote.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        mock_ssh.return_value.connect.return_value = None

        stdout = MagicMock()
        stdout.channel.recv_exit_status.return_value = 0
        stdout.read.return_value = b'pg_backrest 0.30\n'
        stderr = MagicMock()
        stderr.read.return_value = b''
        mock_ssh.return_value.exec_command.return_value = (MagicMock(), stdout, stderr)

        yield mock_ssh
