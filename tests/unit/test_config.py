"""
Unit tests for configuration loading (backrest/config.py).
"""

import pytest

from backrest.config import CONFIG_DEFAULT_PATH, load_config
from backrest.errors import ConfigurationConflict


class TestLoadConfig:
    """Test load_config() against files on disk."""

    def test_load_minimal_config(self, config_file, repo_path, db_path):
        """Test defaults are applied for everything not in the file."""
        config = load_config(str(config_file), 'main')

        assert config.stanza == 'main'
        assert config.db.path == str(db_path)
        assert config.db.host is None
        assert config.backup.path == str(repo_path)
        assert config.backup.compress is True
        assert config.backup.checksum is True
        assert config.backup.hardlink is True
        assert config.backup.thread_max == 1
        assert config.backup.thread_timeout is None
        assert config.backup.archive_required is True
        assert config.archive.async_enabled is False
        assert config.archive.archive_max_mb == 1024
        assert config.command.psql == 'psql -X'
        assert config.log.level_console == 'warn'
        assert config.log.level_file == 'info'
        assert config.config_path == str(config_file)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationConflict, match='does not exist'):
            load_config(str(tmp_path / 'missing.conf'), 'main')

    def test_unknown_stanza(self, config_file):
        with pytest.raises(ConfigurationConflict, match=r'stanza \[other\]'):
            load_config(str(config_file), 'other')

    def test_default_path(self):
        assert CONFIG_DEFAULT_PATH == '/etc/pg_backrest.conf'


class TestParseConfig:
    """Test key resolution and validation."""

    def test_stanza_section_overrides_global(self, make_config):
        """Test [<stanza>:backup] wins over [global:backup]."""
        config = make_config({
            'global:backup': {'thread-max': '2', 'compress': 'y'},
            'main:backup': {'thread-max': '4'},
        })

        assert config.backup.thread_max == 4
        assert config.backup.compress is True

    def test_boolean_values(self, make_config):
        config = make_config({'global:backup': {'compress': 'n', 'hardlink': 'no', 'start-fast': 'y'}})

        assert config.backup.compress is False
        assert config.backup.hardlink is False
        assert config.backup.start_fast is True

    def test_invalid_boolean(self, make_config):
        with pytest.raises(ConfigurationConflict, match='not a valid boolean'):
            make_config({'global:backup': {'compress': 'maybe'}})

    def test_invalid_integer(self, make_config):
        with pytest.raises(ConfigurationConflict, match='not a valid integer'):
            make_config({'global:backup': {'thread-max': 'many'}})

    def test_integer_must_be_positive(self, make_config):
        with pytest.raises(ConfigurationConflict, match='at least 1'):
            make_config({'global:retention': {'full-retention': '0'}})

    def test_retention_settings(self, make_config):
        config = make_config({'global:retention': {
            'full-retention': '2',
            'differential-retention': '3',
            'archive-retention-type': 'diff',
            'archive-retention': '4',
        }})

        assert config.retention.full_retention == 2
        assert config.retention.differential_retention == 3
        assert config.retention.archive_retention_type == 'diff'
        assert config.retention.archive_retention == 4

    def test_invalid_retention_type(self, make_config):
        with pytest.raises(ConfigurationConflict, match='archive-retention-type'):
            make_config({'global:retention': {'archive-retention-type': 'weekly'}})

    def test_invalid_log_level(self, make_config):
        with pytest.raises(ConfigurationConflict, match='level-console'):
            make_config({'global:log': {'level-console': 'verbose'}})

    def test_db_host_from_stanza_section(self, make_config):
        config = make_config({'main': {'host': 'db.example.com', 'user': 'postgres'}})

        assert config.db.host == 'db.example.com'
        assert config.db.user == 'postgres'

    def test_archive_path_enables_async(self, make_config, tmp_path):
        config = make_config({'global:archive': {'path': str(tmp_path / 'spool'), 'archive-max-mb': '16'}})

        assert config.archive.async_enabled is True
        assert config.archive.archive_max_mb == 16

    def test_require_backup_path(self, make_config):
        config = make_config({'global:backup': {'path': ''}})

        with pytest.raises(ConfigurationConflict, match='backup path must be set'):
            config.require_backup_path()
