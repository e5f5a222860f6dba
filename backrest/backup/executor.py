"""
Backup copy engine - copies the cluster into a new backup.

Workflow:
1. Pick the prior backup (diff/incr) or promote to full
2. Call pg_start_backup() (unless --no-start-stop)
3. Build the file list and split it across worker threads
4. Copy (or hardlink/reference unchanged files) through the file service
5. Call pg_stop_backup() once every worker has finished or been abandoned
6. Wait for the WAL range of the backup to be archived (archive-required)
7. Write the manifest and rename backup.tmp to the backup label
"""

import heapq
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from backrest.config import BACKUP_TYPE_DIFF, BACKUP_TYPE_FULL, BACKUP_TYPE_INCR
from backrest.db import Db
from backrest.errors import DbError, OperationCancelled, TransferFailure, UnsafeBackupState
from .archive import ArchivePipeline, wait_for_segments
from .compression import add_compress_extension
from .manifest import (
    MANIFEST_FILE,
    BackupManifest,
    backup_list,
    label_create,
    manifest_load,
)
from .storage import (
    FileService,
    PATH_BACKUP_CLUSTER,
    PATH_BACKUP_TMP,
    PATH_DB_ABSOLUTE,
)


logger = logging.getLogger(__name__)

EXCLUDED_FILES = ('postmaster.pid', 'postmaster.opts')
EXCLUDED_CONTENT_DIRS = ('pg_xlog', 'pg_wal')

SHUTDOWN_TIMEOUT = 10


@dataclass
class CopyTask:
    path: str
    size: int
    mtime: int
    mode: int


class BackupExecutor:
    """
    Copies one backup of the cluster into the repository.

    Args:
        db: Database control, or None with no_start_stop
        file_service: File service with db_path set to the cluster directory
        backup_type: full, diff or incr
        compress: Gzip copied files
        hardlink: Hardlink unchanged files from the prior backup
        no_checksum: Do not record file checksums
        thread_max: Number of copy workers
        archive_required: Wait for the backup's WAL range to be archived
        thread_timeout: Seconds to wait for the copy workers (None = no limit)
        no_start_stop: Do not call pg_start/stop_backup()
        force: Proceed with no_start_stop even if postmaster.pid exists
        archive_timeout: Seconds to wait for WAL segments when archive_required
        cancel_event: Shared cancellation flag set on signals

    Raises:
        UnsafeBackupState: If no_start_stop is set, the postmaster looks
            alive and force is not set
    """

    def __init__(
        self,
        db: Optional[Db],
        file_service: FileService,
        backup_type: str = BACKUP_TYPE_INCR,
        compress: bool = True,
        hardlink: bool = False,
        no_checksum: bool = False,
        thread_max: int = 1,
        archive_required: bool = True,
        thread_timeout: Optional[int] = None,
        no_start_stop: bool = False,
        force: bool = False,
        archive_timeout: int = 60,
        cancel_event: Optional[threading.Event] = None
    ):
        if db is None and not no_start_stop:
            raise ValueError('a database connection is required unless no_start_stop is set')

        self.db = db
        self.file = file_service
        self.backup_type = backup_type
        self.compress = compress
        self.hardlink = hardlink and not file_service.is_remote(PATH_BACKUP_CLUSTER)
        self.no_checksum = no_checksum
        self.thread_max = thread_max
        self.archive_required = archive_required
        self.thread_timeout = thread_timeout
        self.no_start_stop = no_start_stop
        self.archive_timeout = archive_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.forced = False

        self.threads: List[threading.Thread] = []
        self.results: Dict[str, dict] = {}
        self.errors: List[Exception] = []
        self._results_lock = threading.Lock()
        self._abort = threading.Event()

        if no_start_stop and self.file.exists(PATH_DB_ABSOLUTE, 'postmaster.pid'):
            if not force:
                raise UnsafeBackupState(
                    '--no-start-stop passed but postmaster.pid exists - looks like the postmaster is running. '
                    'Shutdown the postmaster and try again, or use --force.'
                )

            logger.warning(
                '--no-start-stop passed and postmaster.pid exists but --force was passed so backup will continue, '
                'though it looks like the postmaster is running and the backup will probably not be consistent'
            )
            self.forced = True

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def execute(self, start_fast: bool = False) -> BackupManifest:
        """
        Run the backup.

        Args:
            start_fast: Ask pg_start_backup() for an immediate checkpoint

        Returns:
            The manifest of the finished backup

        Raises:
            TransferFailure: If files could not be copied, workers timed out or
                the WAL range of the backup was not archived in time
        """
        prior = self._prior_get()
        prior_manifest = manifest_load(self.file, prior) if prior else None

        started_at = datetime.now()
        label = label_create(self.backup_type, prior, started_at)
        logger.info(f"new {self.backup_type} backup label: {label}")

        # A leftover tmp directory belongs to an aborted run
        if self.file.exists(PATH_BACKUP_TMP):
            logger.warning('aborted backup found in backup.tmp, removing it')
            self.file.remove_tree(PATH_BACKUP_TMP)
        self.file.path_create(PATH_BACKUP_TMP)

        manifest = BackupManifest(
            label=label,
            type=self.backup_type,
            prior=prior,
            timestamp_start=started_at.isoformat(timespec='seconds'),
            consistent=not self.forced,
            forced=self.forced,
            compress=self.compress,
            hardlink=self.hardlink,
            checksum=not self.no_checksum
        )

        if not self.no_start_stop:
            manifest.archive_start = self.db.backup_start(label, start_fast)
            logger.info(f"archive start: {manifest.archive_start}")

        # pg_stop_backup() runs only once every worker is done or abandoned
        try:
            tasks = self._plan(manifest, prior_manifest)
            self._copy(tasks)
            self._collect(manifest)
        except BaseException:
            if not self.no_start_stop:
                self._stop_after_failure()
            raise

        if not self.no_start_stop:
            manifest.archive_stop = self.db.backup_stop()
            logger.info(f"archive stop: {manifest.archive_stop}")

            if self.archive_required:
                wait_for_segments(
                    ArchivePipeline(self.file),
                    manifest.archive_start,
                    manifest.archive_stop,
                    self.archive_timeout
                )

        manifest.timestamp_stop = datetime.now().isoformat(timespec='seconds')
        manifest.save(self.file.path_get(PATH_BACKUP_TMP, MANIFEST_FILE))
        self.file.move(PATH_BACKUP_CLUSTER, 'backup.tmp', label)

        logger.info(f"backup {label} complete")
        return manifest

    def _stop_after_failure(self):
        """Take the database out of backup mode; the original error is what gets reported."""
        try:
            self.db.backup_stop()
        except DbError as e:
            logger.error(f"pg_stop_backup() failed after an aborted backup: {e}")

    def _prior_get(self) -> Optional[str]:
        """Return the prior backup label, promoting the type to full if none exists."""
        if self.backup_type == BACKUP_TYPE_FULL:
            return None

        if self.backup_type == BACKUP_TYPE_DIFF:
            labels = backup_list(self.file, full=True, reverse=True)
        else:
            labels = backup_list(self.file, full=True, diff=True, incr=True, reverse=True)

        if not labels:
            logger.warning(f"no prior backup exists, {self.backup_type} backup has been changed to full")
            self.backup_type = BACKUP_TYPE_FULL
            return None

        logger.info(f"last backup label: {labels[0]}")
        return labels[0]

    def _plan(self, manifest: BackupManifest, prior_manifest: Optional[BackupManifest]) -> List[CopyTask]:
        """Record directories, links and unchanged files; return the files to copy."""
        entries = self.file.manifest(PATH_DB_ABSOLUTE, self.file.db_path)
        tasks = []

        for path in sorted(entries):
            entry = entries[path]
            top = path.split(os.sep)[0]

            # WAL directories are kept but their content comes from the archive
            if path in EXCLUDED_FILES or (top in EXCLUDED_CONTENT_DIRS and path != top):
                continue

            if entry['type'] == 'd':
                self.file.path_create(PATH_BACKUP_TMP, os.path.join('base', path))
                manifest.files[path] = entry
                continue

            if entry['type'] == 'l':
                manifest.files[path] = entry
                continue

            prior_entry = prior_manifest.files.get(path) if prior_manifest else None
            if (prior_entry and prior_entry.get('type') == 'f' and
                    prior_entry.get('size') == entry['size'] and prior_entry.get('mtime') == entry['mtime']):
                manifest.files[path] = self._unchanged(path, prior_entry, prior_manifest.label)
                continue

            tasks.append(CopyTask(path=path, size=entry['size'], mtime=entry['mtime'], mode=entry['mode']))
            logger.debug(f"{path} will be copied")

        return tasks

    def _unchanged(self, path: str, prior_entry: dict, prior_label: str) -> dict:
        """Hardlink or reference a file that did not change since the prior backup."""
        reference = prior_entry.get('reference') or prior_label
        entry = dict(prior_entry)

        if self.hardlink:
            stored = os.path.join('base', path)
            if prior_entry.get('compressed'):
                stored = add_compress_extension(stored)

            self.file.link_create(
                PATH_BACKUP_CLUSTER, os.path.join(reference, stored),
                PATH_BACKUP_TMP, stored
            )
            entry['reference'] = None
        else:
            entry['reference'] = reference

        return entry

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def _distribute(self, tasks: List[CopyTask]) -> List[List[CopyTask]]:
        """Split tasks into per-thread queues, largest file first onto the least loaded queue."""
        thread_total = max(1, min(self.thread_max, len(tasks)))
        queues: List[List[CopyTask]] = [[] for _ in range(thread_total)]
        heap = [(0, index) for index in range(thread_total)]

        for task in sorted(tasks, key=lambda task: (-task.size, task.path)):
            load, index = heapq.heappop(heap)
            queues[index].append(task)
            heapq.heappush(heap, (load + task.size, index))

        return queues

    def _copy(self, tasks: List[CopyTask]):
        if not tasks:
            return

        queues = self._distribute(tasks)
        logger.info(f"copying {len(tasks)} files with {len(queues)} threads")

        self.threads = [
            threading.Thread(target=self._worker, args=(queue,), name=f'backup-copy-{index}', daemon=True)
            for index, queue in enumerate(queues)
        ]
        for thread in self.threads:
            thread.start()

        deadline = time.monotonic() + self.thread_timeout if self.thread_timeout else None
        for thread in self.threads:
            thread.join(None if deadline is None else max(0, deadline - time.monotonic()))

        alive = [thread for thread in self.threads if thread.is_alive()]
        if alive:
            stopped = self.stop_workers(SHUTDOWN_TIMEOUT)
            raise TransferFailure(
                f"{stopped} threads did not finish within thread-timeout ({self.thread_timeout}s)"
            )

        if self.cancel_event.is_set():
            raise OperationCancelled('backup was cancelled')

        if self.errors:
            raise TransferFailure(f"{len(self.errors)} files failed to copy, first error: {self.errors[0]}")

    def stop_workers(self, timeout: float = SHUTDOWN_TIMEOUT) -> int:
        """
        Ask every running worker to stop and wait up to timeout seconds.

        Returns:
            Number of workers that were still running when asked to stop
        """
        alive = [thread for thread in self.threads if thread.is_alive()]

        self._abort.set()
        self.cancel_event.set()

        deadline = time.monotonic() + timeout
        for thread in alive:
            thread.join(max(0, deadline - time.monotonic()))

        still_running = [thread.name for thread in alive if thread.is_alive()]
        if still_running:
            logger.warning(f"threads still running after {timeout}s: {', '.join(still_running)}")

        return len(alive)

    def _check_cancel(self):
        if self._abort.is_set() or self.cancel_event.is_set():
            raise OperationCancelled('copy cancelled')

    def _worker(self, queue: List[CopyTask]):
        for task in queue:
            if self._abort.is_set() or self.cancel_event.is_set():
                return

            try:
                result = self._copy_file(task)
            except OperationCancelled:
                return
            except Exception as e:
                logger.error(f"failed to copy {task.path}: {e}")
                with self._results_lock:
                    self.errors.append(e)
                self._abort.set()
                return

            if result is not None:
                with self._results_lock:
                    self.results[task.path] = result

    def _copy_file(self, task: CopyTask) -> Optional[dict]:
        source = os.path.join(self.file.db_path, task.path)
        destination = os.path.join('base', task.path)
        if self.compress:
            destination = add_compress_extension(destination)

        try:
            transfer = self.file.copy(
                PATH_DB_ABSOLUTE,
                source,
                PATH_BACKUP_TMP,
                destination,
                compress=self.compress,
                decompress=False,
                modification_time=task.mtime,
                cancellation_check=self._check_cancel
            )
        except TransferFailure:
            # The database may remove files (dropped relations) while the backup runs
            if not self.file.exists(PATH_DB_ABSOLUTE, source):
                logger.info(f"{task.path} was removed during the backup, skipping")
                return None
            raise

        entry = {
            'type': 'f',
            'size': transfer.size,
            'mtime': task.mtime,
            'mode': task.mode,
            'compressed': self.compress,
            'reference': None,
        }
        if not self.no_checksum:
            entry['checksum'] = transfer.checksum

        return entry

    def _collect(self, manifest: BackupManifest):
        with self._results_lock:
            manifest.files.update(self.results)
