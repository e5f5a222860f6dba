"""
WAL archive pipeline.

- push: store one segment in the archive (repository or local spool)
- get: fetch one segment back for recovery
- drain: forward spooled segments to the backup host in size-bounded batches

Archive layout:
    <archive dir>/<first 16 chars of segment>/<segment>[-<sha1>][.gz]
"""

import logging
import os
import re
import subprocess
import sys
import time
from typing import Callable, List, Optional

from backrest.errors import MissingArgument, TransferFailure
from backrest.lock import Lock
from .compression import add_compress_extension, is_compressed
from .storage import (
    FileService,
    PATH_BACKUP_ARCHIVE,
    PATH_DB_ABSOLUTE,
)


logger = logging.getLogger(__name__)

SEGMENT_REGEX = re.compile(r'^[0-9A-F]{24}$')
ARCHIVE_FILE_REGEX = re.compile(r'^[0-9A-F]{24}(\.partial|\.backup|\.[0-9A-F]{8}\.backup)?(-[0-9a-f]{40})?(\.gz)?$|^[0-9A-F]{8}\.history(\.gz)?$')
SEGMENTS_PER_LOG = 256

ARCHIVE_GET_FOUND = 0
ARCHIVE_GET_MISSING = 1


def is_segment(name: str) -> bool:
    """True for a regular 24 hex digit WAL segment name."""
    return bool(SEGMENT_REGEX.match(name))


def segment_range(start: str, stop: str) -> List[str]:
    """
    Enumerate the segments from start to stop, inclusive.

    Args:
        start: First segment name
        stop: Last segment name, on the same timeline

    Returns:
        List of segment names

    Raises:
        ValueError: If the names are invalid, on different timelines or reversed
    """
    if not is_segment(start) or not is_segment(stop):
        raise ValueError(f"invalid segment range {start} - {stop}")

    if start[:8] != stop[:8]:
        raise ValueError(f"segments {start} and {stop} are on different timelines")

    timeline = start[:8]
    position = int(start[8:16], 16) * SEGMENTS_PER_LOG + int(start[16:], 16)
    last = int(stop[8:16], 16) * SEGMENTS_PER_LOG + int(stop[16:], 16)

    if position > last:
        raise ValueError(f"segment {start} is after {stop}")

    segments = []
    while position <= last:
        log_id, segment = divmod(position, SEGMENTS_PER_LOG)
        segments.append(f'{timeline}{log_id:08X}{segment:08X}')
        position += 1

    return segments


def archive_directory(name: str) -> str:
    """Directory holding a segment: its first 16 characters (timeline + log id)."""
    return name[:16]


def stop_file_path(archive_path: str, stanza: str) -> str:
    return os.path.join(archive_path, 'lock', f'{stanza}-archive.stop')


def spool_lock_path(archive_path: str, stanza: str) -> str:
    return os.path.join(archive_path, 'lock', f'{stanza}-archive.lock')


class ArchivePipeline:
    """
    Moves WAL segments between the database host and the archive.

    Args:
        file_service: File service whose backup:archive path is the target
            archive (repository or local spool)
        compress: Gzip segments on push
        checksum: Append the SHA-1 to regular segment names on push
    """

    def __init__(self, file_service: FileService, compress: bool = True, checksum: bool = True):
        self.file = file_service
        self.compress = compress
        self.checksum = checksum

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(self, source: str, stop_file: Optional[str] = None) -> Optional[str]:
        """
        Push one segment into the archive.

        Args:
            source: Segment path, absolute or relative to the db path
            stop_file: Stop marker path; when it exists the segment is discarded

        Returns:
            Name of the archived file, or None when the segment was discarded

        Raises:
            TransferFailure: If the copy fails or a different segment with the
                same name is already archived
        """
        name = os.path.basename(source)

        if stop_file is not None and os.path.exists(stop_file):
            logger.error(f"archive stop file ({stop_file}) exists, discarding {name}")
            return None

        destination = name

        if self.checksum and is_segment(name):
            checksum = self.file.hash(PATH_DB_ABSOLUTE, source)
            destination = f'{name}-{checksum}'

            existing = self.find(name)
            if existing is not None:
                if self._archived_checksum(name, existing) == checksum:
                    logger.warning(f"segment {name} already exists in the archive with the same checksum")
                    return existing
                raise TransferFailure(
                    f"segment {name} already exists in the archive with a different checksum"
                )

        if self.compress:
            destination = add_compress_extension(destination)

        self.file.copy(
            PATH_DB_ABSOLUTE,
            source,
            PATH_BACKUP_ARCHIVE,
            os.path.join(archive_directory(name), destination),
            compress=self.compress,
            decompress=False
        )

        logger.debug(f"segment {name} archived as {destination}")
        return destination

    def _archived_checksum(self, name: str, archived: str) -> str:
        match = re.match(r'^[0-9A-F]{24}-([0-9a-f]{40})', archived)
        if match:
            return match.group(1)
        return self.file.hash(PATH_BACKUP_ARCHIVE, os.path.join(archive_directory(name), archived))

    # ------------------------------------------------------------------
    # Get
    # ------------------------------------------------------------------

    def find(self, name: str) -> Optional[str]:
        """Return the archived file name for a segment, or None if missing."""
        candidates = self.file.list(
            PATH_BACKUP_ARCHIVE,
            archive_directory(name),
            expression=f'^{re.escape(name)}(-[0-9a-f]{{40}})?(\\.gz)?$',
            ignore_missing=True
        )
        return candidates[0] if candidates else None

    def get(self, name: Optional[str], destination: Optional[str]) -> int:
        """
        Fetch a segment from the archive.

        Args:
            name: Segment name requested by the database
            destination: Destination path, absolute or relative to the db path

        Returns:
            ARCHIVE_GET_FOUND (0) when the segment was copied,
            ARCHIVE_GET_MISSING (1) when it is not in the archive

        Raises:
            MissingArgument: If the segment name or destination is missing
        """
        if not name:
            raise MissingArgument('archive file not provided')
        if not destination:
            raise MissingArgument('destination file not provided')

        archived = self.find(name)
        if archived is None:
            logger.info(f"segment {name} not found in the archive")
            return ARCHIVE_GET_MISSING

        self.file.copy(
            PATH_BACKUP_ARCHIVE,
            os.path.join(archive_directory(name), archived),
            PATH_DB_ABSOLUTE,
            destination,
            compress=False,
            decompress=is_compressed(archived)
        )

        return ARCHIVE_GET_FOUND


class ArchiveSpool:
    """
    Forwards segments from the local spool to the backup repository.

    Args:
        spool_dir: Local spool directory (<archive path>/archive/<stanza>)
        pipeline: Pipeline targeting the backup repository; its file service
            reads the spool through db:absolute paths
        archive_max_mb: Upper bound for the bytes sent in one batch
    """

    def __init__(self, spool_dir: str, pipeline: ArchivePipeline, archive_max_mb: int):
        self.spool_dir = spool_dir
        self.pipeline = pipeline
        self.archive_max_bytes = archive_max_mb * 1024 * 1024

    def pending(self) -> List[str]:
        """
        Spooled files relative to the spool dir, oldest first.

        Raises:
            TransferFailure: If the spool cannot be read
        """
        if not os.path.isdir(self.spool_dir):
            return []

        files = []
        try:
            for directory in sorted(os.listdir(self.spool_dir)):
                directory_path = os.path.join(self.spool_dir, directory)
                if not os.path.isdir(directory_path):
                    continue
                for name in sorted(os.listdir(directory_path)):
                    if ARCHIVE_FILE_REGEX.match(name):
                        files.append(os.path.join(directory, name))
        except OSError as e:
            raise TransferFailure(f"unable to read archive spool {self.spool_dir}: {e}")

        return files

    def transfer_batch(self) -> int:
        """
        Transfer one size-bounded batch of spooled segments.

        At least one segment is sent even if it alone exceeds the bound, so
        the drain always makes progress.

        Returns:
            Number of segments transferred

        Raises:
            TransferFailure: If a push fails or a spooled file cannot be
                sized or removed
        """
        batch = []
        batch_bytes = 0

        for relative in self.pending():
            source = os.path.join(self.spool_dir, relative)
            try:
                size = os.path.getsize(source)
            except OSError as e:
                raise TransferFailure(f"unable to stat spooled file {source}: {e}")

            if batch and batch_bytes + size > self.archive_max_bytes:
                break
            batch.append(relative)
            batch_bytes += size

        for relative in batch:
            source = os.path.join(self.spool_dir, relative)
            self.pipeline.push(source)
            try:
                os.remove(source)
            except OSError as e:
                raise TransferFailure(f"unable to remove spooled file {source}: {e}")

        if batch:
            logger.info(f"{len(batch)} archive logs transferred ({batch_bytes} bytes)")

        return len(batch)

    def drain(self, lock: Lock) -> int:
        """
        Transfer batches until the spool is empty.

        Args:
            lock: The archive spool lock

        Returns:
            Total segments transferred, or 0 if another drain holds the lock
        """
        if not lock.acquire():
            logger.debug('archive-push process is already running - exiting')
            return 0

        total = 0
        try:
            transferred = None
            while transferred is None or transferred > 0:
                transferred = self.transfer_batch()
                total += transferred

                if transferred > 0:
                    logger.debug(f"{transferred} archive logs were transferred, calling transfer_batch() again")
                else:
                    logger.debug('no more logs to transfer - exiting')
        finally:
            lock.release()

        return total


def spawn_drain(stanza: str, config_path: Optional[str],
                popen: Callable[..., subprocess.Popen] = subprocess.Popen) -> subprocess.Popen:
    """
    Start the spool drain as a detached background process.

    The child runs ``archive-push`` without a segment in its own session so
    the caller (the database's archive_command) returns immediately.
    """
    command = [sys.executable, '-m', 'backrest', f'--stanza={stanza}']
    if config_path:
        command.append(f'--config={config_path}')
    command.append('archive-push')

    logger.debug(f"spawning async archive drain: {' '.join(command)}")

    return popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True
    )


def wait_for_segments(pipeline: ArchivePipeline, start: str, stop: str, timeout: int,
                      sleep: Callable[[float], None] = time.sleep) -> List[str]:
    """
    Wait until every segment from start to stop is in the archive.

    Returns:
        The archived file names in order

    Raises:
        TransferFailure: If the range is invalid (e.g. it spans a timeline
            switch) or some segments are still missing after timeout seconds
    """
    try:
        segments = segment_range(start, stop)
    except ValueError as e:
        raise TransferFailure(f"unable to check WAL for the backup: {e}")

    deadline = time.monotonic() + timeout

    while True:
        found = [pipeline.find(segment) for segment in segments]
        missing = [segment for segment, archived in zip(segments, found) if archived is None]

        if not missing:
            return found

        if time.monotonic() >= deadline:
            raise TransferFailure(
                f"could not find WAL segment(s) {', '.join(missing)} after {timeout} second(s)"
            )

        logger.debug(f"waiting for {len(missing)} WAL segment(s) to be archived")
        sleep(1)
