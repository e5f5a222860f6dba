"""
File transfer service.

Resolves logical path categories to absolute paths and performs file
operations on either side of the stanza. Paths on the remote side go
through SFTP channels of the shared remote session; everything else uses
the local filesystem.

Path categories:
- db:absolute      any path on the database host (relative paths resolve
                   against the db path)
- backup:cluster   <repo>/backup/<stanza>
- backup:tmp       <repo>/backup/<stanza>/backup.tmp
- backup:archive   <repo>/archive/<stanza>
- backup:absolute  any absolute path on the backup host
"""

import logging
import os
import re
import shutil
import stat
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import paramiko

from backrest.errors import RemoteError, TransferFailure
from backrest.remote import REMOTE_BACKUP, REMOTE_DB, REMOTE_NONE
from .compression import copy_stream, is_compressed, stream_hash


logger = logging.getLogger(__name__)

PATH_DB_ABSOLUTE = 'db:absolute'
PATH_BACKUP_CLUSTER = 'backup:cluster'
PATH_BACKUP_TMP = 'backup:tmp'
PATH_BACKUP_ARCHIVE = 'backup:archive'
PATH_BACKUP_ABSOLUTE = 'backup:absolute'

TMP_SUFFIX = '.backrest.tmp'


@dataclass
class TransferResult:
    destination: str
    size: int
    checksum: str


@contextmanager
def _io_errors(action: str, path: str):
    """Translate I/O and SSH errors into TransferFailure."""
    try:
        yield
    except TransferFailure:
        raise
    except PermissionError as e:
        raise TransferFailure(f"Permission denied while trying to {action} {path}: {e}")
    except (OSError, paramiko.SSHException) as e:
        raise TransferFailure(f"Failed to {action} {path}: {e}")


class FileService:
    """
    File operations for one stanza.

    Args:
        stanza: Stanza name
        backup_path: Repository (or archive spool) base path
        remote: Which side is remote (REMOTE_NONE, REMOTE_DB, REMOTE_BACKUP)
        session: Remote session, required unless remote is REMOTE_NONE
        db_path: Database data directory, base for relative db paths
    """

    def __init__(self, stanza: str, backup_path: str, remote: str = REMOTE_NONE,
                 session=None, db_path: Optional[str] = None):
        if remote != REMOTE_NONE and session is None:
            raise ValueError(f"a remote session is required when remote is '{remote}'")

        self.stanza = stanza
        self.backup_path = backup_path
        self.remote = remote
        self.session = session
        self.db_path = db_path

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    def path_get(self, path_type: str, path: Optional[str] = None) -> str:
        """
        Resolve a path category (and optional relative path) to an absolute path.

        Raises:
            ValueError: If the path type is unknown or an absolute path is missing
        """
        if path_type == PATH_DB_ABSOLUTE:
            if path is None:
                raise ValueError('db:absolute requires a path')
            if not os.path.isabs(path):
                if self.db_path is None:
                    raise ValueError(f"relative db path {path} without a db base path")
                return os.path.join(self.db_path, path)
            return path

        if path_type == PATH_BACKUP_ABSOLUTE:
            if path is None or not os.path.isabs(path):
                raise ValueError(f"backup:absolute requires an absolute path (got {path})")
            return path

        if path_type == PATH_BACKUP_CLUSTER:
            base = os.path.join(self.backup_path, 'backup', self.stanza)
        elif path_type == PATH_BACKUP_TMP:
            base = os.path.join(self.backup_path, 'backup', self.stanza, 'backup.tmp')
        elif path_type == PATH_BACKUP_ARCHIVE:
            base = os.path.join(self.backup_path, 'archive', self.stanza)
        else:
            raise ValueError(f"Invalid path type: {path_type}")

        return os.path.join(base, path) if path else base

    def is_remote(self, path_type: str) -> bool:
        if self.remote == REMOTE_DB:
            return path_type.startswith('db:')
        if self.remote == REMOTE_BACKUP:
            return path_type.startswith('backup:')
        return False

    def _sftp(self) -> paramiko.SFTPClient:
        return self.session.sftp()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, path_type: str, path: Optional[str] = None) -> bool:
        full_path = self.path_get(path_type, path)

        with _io_errors('check', full_path):
            if not self.is_remote(path_type):
                return os.path.exists(full_path)

            try:
                self._sftp().stat(full_path)
                return True
            except FileNotFoundError:
                return False

    def list(self, path_type: str, path: Optional[str] = None, expression: Optional[str] = None,
             reverse: bool = False, ignore_missing: bool = False) -> List[str]:
        """
        List the names in a directory, sorted.

        Args:
            path_type: Path category
            path: Optional path relative to the category
            expression: Optional regex names must match
            reverse: Sort descending
            ignore_missing: Return an empty list when the directory is missing

        Returns:
            Sorted list of entry names
        """
        full_path = self.path_get(path_type, path)

        with _io_errors('list', full_path):
            try:
                if self.is_remote(path_type):
                    names = self._sftp().listdir(full_path)
                else:
                    names = os.listdir(full_path)
            except FileNotFoundError:
                if ignore_missing:
                    return []
                raise

        if expression:
            regex = re.compile(expression)
            names = [name for name in names if regex.search(name)]

        return sorted(names, reverse=reverse)

    def manifest(self, path_type: str, path: Optional[str] = None) -> Dict[str, dict]:
        """
        Walk a directory tree.

        Returns:
            Dict keyed by path relative to the root with 'type' ('f', 'd' or
            'l'), 'size', 'mtime', 'mode' and, for links, 'link_destination'
        """
        root = self.path_get(path_type, path)
        entries: Dict[str, dict] = {}

        with _io_errors('build manifest for', root):
            if self.is_remote(path_type):
                self._remote_walk(self._sftp(), root, '', entries)
            else:
                self._local_walk(root, '', entries)

        return entries

    def _local_walk(self, root: str, relative: str, entries: Dict[str, dict]):
        with os.scandir(os.path.join(root, relative) if relative else root) as items:
            for item in items:
                item_relative = os.path.join(relative, item.name) if relative else item.name
                item_stat = item.stat(follow_symlinks=False)
                entries[item_relative] = self._entry(item_stat, os.path.join(root, item_relative), None)

                if item.is_dir(follow_symlinks=False):
                    self._local_walk(root, item_relative, entries)

    def _remote_walk(self, sftp, root: str, relative: str, entries: Dict[str, dict]):
        directory = os.path.join(root, relative) if relative else root
        for item in sftp.listdir_attr(directory):
            item_relative = os.path.join(relative, item.filename) if relative else item.filename
            entries[item_relative] = self._entry(item, os.path.join(root, item_relative), sftp)

            if stat.S_ISDIR(item.st_mode):
                self._remote_walk(sftp, root, item_relative, entries)

    @staticmethod
    def _entry(item_stat, full_path: str, sftp) -> dict:
        mode = item_stat.st_mode
        entry = {
            'mode': stat.S_IMODE(mode),
            'mtime': int(item_stat.st_mtime),
        }

        if stat.S_ISDIR(mode):
            entry['type'] = 'd'
        elif stat.S_ISLNK(mode):
            entry['type'] = 'l'
            entry['link_destination'] = sftp.readlink(full_path) if sftp else os.readlink(full_path)
        else:
            entry['type'] = 'f'
            entry['size'] = item_stat.st_size

        return entry

    def hash(self, path_type: str, path: Optional[str] = None) -> str:
        """Return the SHA-1 of a file's content (decompressed if gzipped)."""
        full_path = self.path_get(path_type, path)

        with _io_errors('hash', full_path):
            with self._open(path_type, full_path, 'rb') as source:
                return stream_hash(source, decompress=is_compressed(full_path))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def path_create(self, path_type: str, path: Optional[str] = None):
        full_path = self.path_get(path_type, path)

        with _io_errors('create path', full_path):
            if self.is_remote(path_type):
                self._remote_makedirs(self._sftp(), full_path)
            else:
                os.makedirs(full_path, exist_ok=True)

    @staticmethod
    def _remote_makedirs(sftp, full_path: str):
        missing = []
        current = full_path

        while current and current != '/':
            try:
                sftp.stat(current)
                break
            except FileNotFoundError:
                missing.append(current)
                current = os.path.dirname(current)

        for directory in reversed(missing):
            sftp.mkdir(directory)

    def remove(self, path_type: str, path: Optional[str] = None, ignore_missing: bool = True):
        full_path = self.path_get(path_type, path)

        with _io_errors('remove', full_path):
            try:
                if self.is_remote(path_type):
                    self._sftp().remove(full_path)
                else:
                    os.remove(full_path)
            except FileNotFoundError:
                if not ignore_missing:
                    raise

    def remove_tree(self, path_type: str, path: Optional[str] = None):
        """Remove a directory and everything under it. Missing paths are ignored."""
        full_path = self.path_get(path_type, path)

        with _io_errors('remove', full_path):
            if not self.is_remote(path_type):
                if os.path.exists(full_path):
                    shutil.rmtree(full_path)
                return

            sftp = self._sftp()
            try:
                sftp.stat(full_path)
            except FileNotFoundError:
                return
            self._remote_rmtree(sftp, full_path)

    def _remote_rmtree(self, sftp, directory: str):
        for item in sftp.listdir_attr(directory):
            item_path = os.path.join(directory, item.filename)
            if stat.S_ISDIR(item.st_mode):
                self._remote_rmtree(sftp, item_path)
            else:
                sftp.remove(item_path)
        sftp.rmdir(directory)

    def move(self, path_type: str, source: str, destination: str):
        """Atomically rename within one side, creating the destination parent."""
        source_path = self.path_get(path_type, source)
        destination_path = self.path_get(path_type, destination)

        with _io_errors('move', source_path):
            if self.is_remote(path_type):
                sftp = self._sftp()
                self._remote_makedirs(sftp, os.path.dirname(destination_path))
                sftp.posix_rename(source_path, destination_path)
            else:
                os.makedirs(os.path.dirname(destination_path), exist_ok=True)
                os.rename(source_path, destination_path)

    def link_create(self, source_type: str, source: str, destination_type: str, destination: str):
        """
        Create a hardlink. Both paths must be local.

        Raises:
            TransferFailure: If either side is remote or the link fails
        """
        if self.is_remote(source_type) or self.is_remote(destination_type):
            raise TransferFailure('hardlinks can only be created on the local host')

        source_path = self.path_get(source_type, source)
        destination_path = self.path_get(destination_type, destination)

        with _io_errors('link', source_path):
            os.makedirs(os.path.dirname(destination_path), exist_ok=True)
            os.link(source_path, destination_path)

    @contextmanager
    def _open(self, path_type: str, full_path: str, mode: str):
        if self.is_remote(path_type):
            handle = self._sftp().open(full_path, mode)
            if 'r' in mode:
                handle.prefetch()
        else:
            handle = open(full_path, mode)

        try:
            yield handle
        finally:
            handle.close()

    def copy(
        self,
        source_type: str,
        source: str,
        destination_type: str,
        destination: str,
        compress: bool = False,
        decompress: Optional[bool] = None,
        modification_time: Optional[int] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> TransferResult:
        """
        Copy one file, possibly across hosts.

        The destination is written under a temporary name and renamed into
        place only once the copy is complete.

        Args:
            source_type: Path category of the source
            source: Source path
            destination_type: Path category of the destination
            destination: Destination path
            compress: Gzip the destination
            decompress: Gunzip the source (default: if the source ends in .gz)
            modification_time: Optional mtime to set on the destination
            cancellation_check: Called between chunks; raises to abort

        Returns:
            TransferResult with destination path, uncompressed size and SHA-1

        Raises:
            TransferFailure: If the copy fails for any reason
        """
        source_path = self.path_get(source_type, source)
        destination_path = self.path_get(destination_type, destination)
        tmp_path = destination_path + TMP_SUFFIX

        if decompress is None:
            decompress = is_compressed(source_path)

        destination_remote = self.is_remote(destination_type)

        try:
            with _io_errors('copy', source_path):
                if destination_remote:
                    self._remote_makedirs(self._sftp(), os.path.dirname(destination_path))
                else:
                    os.makedirs(os.path.dirname(destination_path), exist_ok=True)

                with self._open(source_type, source_path, 'rb') as source_file:
                    with self._open(destination_type, tmp_path, 'wb') as destination_file:
                        size, checksum = copy_stream(
                            source_file,
                            destination_file,
                            compress=compress,
                            decompress=decompress,
                            cancellation_check=cancellation_check
                        )

                if destination_remote:
                    sftp = self._sftp()
                    if modification_time is not None:
                        sftp.utime(tmp_path, (modification_time, modification_time))
                    sftp.posix_rename(tmp_path, destination_path)
                else:
                    if modification_time is not None:
                        os.utime(tmp_path, (modification_time, modification_time))
                    os.rename(tmp_path, destination_path)

        except BaseException:
            self._discard(destination_type, tmp_path)
            raise

        logger.debug(f"copied {source_path} to {destination_path} ({size} bytes)")
        return TransferResult(destination=destination_path, size=size, checksum=checksum)

    def _discard(self, path_type: str, full_path: str):
        try:
            if self.is_remote(path_type):
                self._sftp().remove(full_path)
            else:
                os.remove(full_path)
        except (OSError, paramiko.SSHException, RemoteError):
            pass
