"""
Typed configuration for pg_backrest.

The configuration file is INI formatted. A key for section ``backup`` is
looked up in ``[<stanza>:backup]`` first and ``[global:backup]`` second; the
database settings live in the ``[<stanza>]`` section itself:

    [global:command]
    psql=/usr/bin/psql -X

    [global:backup]
    path=/var/lib/backup
    thread-max=2

    [global:retention]
    full-retention=2

    [main]
    path=/var/lib/postgresql/9.3/main

Everything is parsed and validated once, up front, into frozen dataclasses.
"""

import configparser
import os
from dataclasses import dataclass, field
from typing import Optional

from backrest.errors import ConfigurationConflict


CONFIG_DEFAULT_PATH = '/etc/pg_backrest.conf'

SECTION_COMMAND = 'command'
SECTION_BACKUP = 'backup'
SECTION_ARCHIVE = 'archive'
SECTION_RETENTION = 'retention'
SECTION_LOG = 'log'

BACKUP_TYPE_FULL = 'full'
BACKUP_TYPE_DIFF = 'diff'
BACKUP_TYPE_INCR = 'incr'
BACKUP_TYPES = (BACKUP_TYPE_FULL, BACKUP_TYPE_DIFF, BACKUP_TYPE_INCR)

LOG_LEVELS = ('off', 'error', 'warn', 'info', 'debug', 'trace')


@dataclass(frozen=True)
class CommandConfig:
    """External commands used to reach the database and the remote peer."""
    psql: str = 'psql -X'
    remote: Optional[str] = None


@dataclass(frozen=True)
class DbConfig:
    """Database side of the stanza."""
    path: str
    host: Optional[str] = None
    user: Optional[str] = None


@dataclass(frozen=True)
class BackupConfig:
    """Backup repository side of the stanza."""
    path: Optional[str] = None
    host: Optional[str] = None
    user: Optional[str] = None
    compress: bool = True
    checksum: bool = True
    hardlink: bool = True
    thread_max: int = 1
    thread_timeout: Optional[int] = None
    archive_required: bool = True
    start_fast: bool = False
    archive_timeout: int = 60


@dataclass(frozen=True)
class ArchiveConfig:
    """Local archive spool (async archiving) settings."""
    path: Optional[str] = None
    archive_max_mb: int = 1024

    @property
    def async_enabled(self) -> bool:
        return self.path is not None


@dataclass(frozen=True)
class RetentionConfig:
    full_retention: Optional[int] = None
    differential_retention: Optional[int] = None
    archive_retention_type: Optional[str] = None
    archive_retention: Optional[int] = None


@dataclass(frozen=True)
class LogConfig:
    level_console: str = 'warn'
    level_file: str = 'info'


@dataclass(frozen=True)
class Config:
    """Complete, validated configuration for one stanza."""
    stanza: str
    db: DbConfig
    backup: BackupConfig = field(default_factory=BackupConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    command: CommandConfig = field(default_factory=CommandConfig)
    log: LogConfig = field(default_factory=LogConfig)
    config_path: Optional[str] = None

    def require_backup_path(self) -> str:
        """
        Return the backup repository path.

        Raises:
            ConfigurationConflict: If the backup path is not configured
        """
        if not self.backup.path:
            raise ConfigurationConflict(
                f"backup path must be set in [{self.stanza}:{SECTION_BACKUP}] "
                f"or [global:{SECTION_BACKUP}]"
            )
        return self.backup.path


class _ConfigReader:
    """Resolves keys across the stanza and global sections."""

    def __init__(self, parser: configparser.ConfigParser, stanza: str):
        self.parser = parser
        self.stanza = stanza

    def get(self, section: Optional[str], key: str) -> Optional[str]:
        if section is None:
            candidates = [self.stanza]
        else:
            candidates = [f'{self.stanza}:{section}', f'global:{section}']

        for candidate in candidates:
            if self.parser.has_option(candidate, key):
                value = self.parser.get(candidate, key).strip()
                return value if value != '' else None
        return None

    def get_bool(self, section: str, key: str, default: bool) -> bool:
        value = self.get(section, key)
        if value is None:
            return default
        if value.lower() in ('y', 'yes', 'true', '1'):
            return True
        if value.lower() in ('n', 'no', 'false', '0'):
            return False
        raise ConfigurationConflict(f"'{value}' is not a valid boolean for {section}::{key} (use y or n)")

    def get_int(self, section: str, key: str, default: Optional[int]) -> Optional[int]:
        value = self.get(section, key)
        if value is None:
            return default
        try:
            number = int(value)
        except ValueError:
            raise ConfigurationConflict(f"'{value}' is not a valid integer for {section}::{key}")
        if number < 1:
            raise ConfigurationConflict(f"{section}::{key} must be at least 1 (got {number})")
        return number

    def get_choice(self, section: str, key: str, choices, default: Optional[str]) -> Optional[str]:
        value = self.get(section, key)
        if value is None:
            return default
        value = value.lower()
        if value not in choices:
            raise ConfigurationConflict(
                f"'{value}' is not valid for {section}::{key}. Valid options: {list(choices)}"
            )
        return value


def load_config(config_path: str, stanza: str) -> Config:
    """
    Load and validate the configuration for a stanza.

    Args:
        config_path: Path to the INI configuration file
        stanza: Stanza (cluster) name

    Returns:
        Validated Config instance

    Raises:
        ConfigurationConflict: If the file is missing, unreadable or invalid
    """
    if not os.path.isfile(config_path):
        raise ConfigurationConflict(f"config file {config_path} does not exist")

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(config_path)
    except configparser.Error as e:
        raise ConfigurationConflict(f"unable to parse config file {config_path}: {e}")

    return parse_config(parser, stanza, config_path)


def parse_config(parser: configparser.ConfigParser, stanza: str, config_path: Optional[str] = None) -> Config:
    """Build a Config from an already populated parser."""
    if not parser.has_section(stanza):
        raise ConfigurationConflict(f"stanza [{stanza}] is not defined in the config file")

    reader = _ConfigReader(parser, stanza)

    db_path = reader.get(None, 'path')
    if db_path is None:
        raise ConfigurationConflict(f"db path must be set in [{stanza}]")

    db = DbConfig(path=db_path, host=reader.get(None, 'host'), user=reader.get(None, 'user'))

    command = CommandConfig(
        psql=reader.get(SECTION_COMMAND, 'psql') or CommandConfig.psql,
        remote=reader.get(SECTION_COMMAND, 'remote')
    )

    backup = BackupConfig(
        path=reader.get(SECTION_BACKUP, 'path'),
        host=reader.get(SECTION_BACKUP, 'host'),
        user=reader.get(SECTION_BACKUP, 'user'),
        compress=reader.get_bool(SECTION_BACKUP, 'compress', True),
        checksum=reader.get_bool(SECTION_BACKUP, 'checksum', True),
        hardlink=reader.get_bool(SECTION_BACKUP, 'hardlink', True),
        thread_max=reader.get_int(SECTION_BACKUP, 'thread-max', 1),
        thread_timeout=reader.get_int(SECTION_BACKUP, 'thread-timeout', None),
        archive_required=reader.get_bool(SECTION_BACKUP, 'archive-required', True),
        start_fast=reader.get_bool(SECTION_BACKUP, 'start-fast', False),
        archive_timeout=reader.get_int(SECTION_BACKUP, 'archive-timeout', 60)
    )

    archive = ArchiveConfig(
        path=reader.get(SECTION_ARCHIVE, 'path'),
        archive_max_mb=reader.get_int(SECTION_ARCHIVE, 'archive-max-mb', 1024)
    )

    retention = RetentionConfig(
        full_retention=reader.get_int(SECTION_RETENTION, 'full-retention', None),
        differential_retention=reader.get_int(SECTION_RETENTION, 'differential-retention', None),
        archive_retention_type=reader.get_choice(SECTION_RETENTION, 'archive-retention-type', BACKUP_TYPES, None),
        archive_retention=reader.get_int(SECTION_RETENTION, 'archive-retention', None)
    )

    log = LogConfig(
        level_console=reader.get_choice(SECTION_LOG, 'level-console', LOG_LEVELS, 'warn'),
        level_file=reader.get_choice(SECTION_LOG, 'level-file', LOG_LEVELS, 'info')
    )

    return Config(
        stanza=stanza,
        db=db,
        backup=backup,
        archive=archive,
        retention=retention,
        command=command,
        log=log,
        config_path=config_path
    )
