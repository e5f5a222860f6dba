"""
Top-level driver for one pg_backrest invocation.

Resolves topology, takes locks, builds the remote session on demand, runs
the requested operation and tears everything down exactly once:

- archive-push: sync push, spool push + detached drain, or drain only
- archive-get: fetch a segment, exit code is the result
- backup: copy the cluster, then expire
- expire: enforce retention
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from backrest import set_log_file
from backrest.backup.archive import (
    ArchivePipeline,
    ArchiveSpool,
    spawn_drain,
    spool_lock_path,
    stop_file_path,
)
from backrest.backup.executor import BackupExecutor, SHUTDOWN_TIMEOUT
from backrest.backup.retention import expire
from backrest.backup.storage import FileService
from backrest.config import BACKUP_TYPE_INCR, Config
from backrest.db import Db
from backrest.errors import BackrestError, ConfigurationConflict, MissingArgument, SignalTermination
from backrest.lock import Lock, lock_path_get
from backrest.remote import (
    REMOTE_BACKUP,
    REMOTE_DB,
    REMOTE_NONE,
    RemoteSession,
    SessionHandle,
    endpoint_get,
    resolve_remote,
)


logger = logging.getLogger(__name__)

OP_ARCHIVE_GET = 'archive-get'
OP_ARCHIVE_PUSH = 'archive-push'
OP_BACKUP = 'backup'
OP_EXPIRE = 'expire'
OPERATIONS = (OP_ARCHIVE_GET, OP_ARCHIVE_PUSH, OP_BACKUP, OP_EXPIRE)

EXIT_UNEXPECTED_ERROR = 1

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


@dataclass
class OperationResult:
    exit_code: int = 0
    message: Optional[str] = None


@dataclass
class RunOptions:
    """Command line flags that are not part of the configuration file."""
    backup_type: str = BACKUP_TYPE_INCR
    no_start_stop: bool = False
    force: bool = False
    test_no_fork: bool = False


@dataclass
class OrchestrationContext:
    """Per-process state shared by the operation and the signal handler."""
    config: Config
    remote: str
    session: SessionHandle
    locks: List[Lock] = field(default_factory=list)
    executor: Optional[BackupExecutor] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)


class Orchestrator:
    """
    Runs one operation against a stanza.

    Args:
        config: Validated configuration
        options: Command line flags
        session_factory: Builds the remote session (RemoteSession by default)
        spawn: Starts the detached archive drain
    """

    def __init__(
        self,
        config: Config,
        options: Optional[RunOptions] = None,
        session_factory=RemoteSession,
        spawn: Callable = spawn_drain
    ):
        self.config = config
        self.options = options or RunOptions()
        self.session_factory = session_factory
        self.spawn = spawn
        self.context: Optional[OrchestrationContext] = None

    def run(self, operation: str, args: Optional[List[str]] = None) -> int:
        """
        Execute an operation and return the process exit code.

        Args:
            operation: One of OPERATIONS
            args: Positional arguments following the operation

        Returns:
            Exit code (0 on success or intentionally skipped work)
        """
        args = list(args or [])
        previous_handlers = self._install_signal_handlers()
        release_locks = True

        try:
            remote = resolve_remote(self.config)
            self.context = OrchestrationContext(
                config=self.config,
                remote=remote,
                session=SessionHandle(remote, endpoint_get(self.config, remote), self.session_factory)
            )

            result = self._dispatch(operation, args)

        except SignalTermination as e:
            # The kernel drops the flocks when this process exits
            release_locks = False
            logger.error(str(e))
            result = OperationResult(e.exit_code, str(e))

        except BackrestError as e:
            logger.error(str(e))
            result = OperationResult(e.exit_code, str(e))

        except Exception as e:
            logger.exception(f"unexpected error during {operation}: {e}")
            result = OperationResult(EXIT_UNEXPECTED_ERROR, str(e))

        finally:
            self._teardown(release_locks)
            self._restore_signal_handlers(previous_handlers)

        if result.message and result.exit_code == 0:
            logger.info(result.message)

        return result.exit_code

    def _dispatch(self, operation: str, args: List[str]) -> OperationResult:
        if operation not in OPERATIONS:
            raise ConfigurationConflict(f"invalid operation {operation}")

        if operation == OP_ARCHIVE_PUSH:
            return self.archive_push(args[0] if args else None)

        if operation == OP_ARCHIVE_GET:
            return self.archive_get(
                args[0] if len(args) > 0 else None,
                args[1] if len(args) > 1 else None
            )

        return self.backup_expire(operation)

    # ------------------------------------------------------------------
    # Signals and teardown
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}

        return {signum: signal.signal(signum, self._signal_handler) for signum in HANDLED_SIGNALS}

    @staticmethod
    def _restore_signal_handlers(previous: dict):
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _signal_handler(self, signum, frame):
        """Cancel work, close the session, stop the copy workers and unwind."""
        threads_stopped = 0

        if self.context is not None:
            self.context.cancel_event.set()
            self.context.session.exit()

            if self.context.executor is not None:
                threads_stopped = self.context.executor.stop_workers(SHUTDOWN_TIMEOUT)

        raise SignalTermination(signum, threads_stopped)

    def _teardown(self, release_locks: bool = True):
        if self.context is None:
            return

        if release_locks:
            for lock in reversed(self.context.locks):
                lock.release()

        if self.context.session.active:
            logger.debug('closing remote session')
        self.context.session.exit()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def archive_push(self, segment: Optional[str]) -> OperationResult:
        """
        Push a segment, and drain the spool when archiving asynchronously.

        Raises:
            ConfigurationConflict: If the database side is remote
            MissingArgument: If no segment is given and there is no backup host
        """
        config = self.config
        context = self.context

        if context.remote == REMOTE_DB:
            raise ConfigurationConflict('archive-push operation must run on the db host')

        archive_local = config.archive.async_enabled

        if segment:
            if archive_local:
                file_service = FileService(config.stanza, config.archive.path, REMOTE_NONE, db_path=config.db.path)
                pipeline = ArchivePipeline(file_service, compress=False, checksum=config.backup.checksum)
                stop_file = stop_file_path(config.archive.path, config.stanza)
            else:
                file_service = FileService(
                    config.stanza,
                    config.require_backup_path(),
                    context.remote,
                    context.session.get(),
                    db_path=config.db.path
                )
                pipeline = ArchivePipeline(file_service, compress=config.backup.compress,
                                           checksum=config.backup.checksum)
                stop_file = None

            logger.info(f"pushing archive log {segment}" + (' asynchronously' if archive_local else ''))

            if pipeline.push(segment, stop_file) is None:
                return OperationResult(0, f"archive log {os.path.basename(segment)} discarded")

            if not (archive_local and config.backup.host):
                return OperationResult()

            if not self.options.test_no_fork:
                self.spawn(config.stanza, config.config_path)
                return OperationResult()

            logger.info('no fork on archive local for testing')

        return self.archive_drain()

    def archive_drain(self) -> OperationResult:
        """Forward everything in the local spool to the backup host."""
        config = self.config
        context = self.context

        if not config.backup.host:
            raise MissingArgument('archive-push called without an archive file or backup host')

        if not config.archive.async_enabled:
            raise ConfigurationConflict(
                f"archive path must be set in [{config.stanza}:archive] or [global:archive] "
                f"to drain the archive spool"
            )

        set_log_file(
            os.path.join(config.archive.path, 'log', f'{config.stanza}-archive'),
            config.log.level_file
        )
        logger.info('starting async archive-push')

        lock = Lock(spool_lock_path(config.archive.path, config.stanza))
        if not lock.acquire():
            logger.debug('archive-push process is already running - exiting')
            return OperationResult()
        context.locks.append(lock)

        file_service = FileService(
            config.stanza,
            config.require_backup_path(),
            context.remote,
            context.session.get(),
            db_path=config.db.path
        )
        pipeline = ArchivePipeline(file_service, compress=config.backup.compress, checksum=config.backup.checksum)
        spool = ArchiveSpool(
            os.path.join(config.archive.path, 'archive', config.stanza),
            pipeline,
            config.archive.archive_max_mb
        )

        total = spool.drain(lock)
        return OperationResult(0, f"{total} archive logs transferred")

    def archive_get(self, segment: Optional[str], destination: Optional[str]) -> OperationResult:
        """Fetch a segment; the exit code is 0 when found and 1 when missing."""
        config = self.config
        context = self.context

        if not segment:
            raise MissingArgument('archive file not provided')
        if not destination:
            raise MissingArgument('destination file not provided')

        file_service = FileService(
            config.stanza,
            config.require_backup_path(),
            context.remote,
            context.session.get(),
            db_path=config.db.path
        )

        logger.info(f"getting archive log {segment}")
        return OperationResult(ArchivePipeline(file_service).get(segment, destination))

    def backup_expire(self, operation: str) -> OperationResult:
        """
        Run a backup followed by expiration, or expiration alone.

        Raises:
            ConfigurationConflict: If the backup repository is remote
        """
        config = self.config
        context = self.context
        options = self.options

        if context.remote == REMOTE_BACKUP:
            raise ConfigurationConflict('backup and expire operations must run on the backup host')

        repository = config.require_backup_path()
        set_log_file(os.path.join(repository, 'log', config.stanza), config.log.level_file)

        lock = Lock(lock_path_get(repository, config.stanza, operation))
        if not lock.acquire():
            logger.debug(f"{operation} process is already running for stanza {config.stanza} - exiting")
            return OperationResult()
        context.locks.append(lock)

        session = context.session.get()
        file_service = FileService(config.stanza, repository, context.remote, session, db_path=config.db.path)

        if operation == OP_BACKUP:
            db = None
            if not options.no_start_stop:
                db = Db(config.command.psql, config.db.host, session)

            context.executor = BackupExecutor(
                db,
                file_service,
                backup_type=options.backup_type,
                compress=config.backup.compress,
                hardlink=config.backup.hardlink,
                no_checksum=not config.backup.checksum,
                thread_max=config.backup.thread_max,
                archive_required=config.backup.archive_required,
                thread_timeout=config.backup.thread_timeout,
                no_start_stop=options.no_start_stop,
                force=options.force,
                archive_timeout=config.backup.archive_timeout,
                cancel_event=context.cancel_event
            )
            manifest = context.executor.execute(start_fast=config.backup.start_fast)
            context.executor = None

            logger.info(f"backup {manifest.label} finished, starting expire")

        result = expire(
            file_service,
            full_retention=config.retention.full_retention,
            differential_retention=config.retention.differential_retention,
            archive_retention_type=config.retention.archive_retention_type,
            archive_retention=config.retention.archive_retention
        )

        return OperationResult(
            0,
            f"expire removed {len(result.backups_removed)} backups and {result.segments_removed} archive logs"
        )
