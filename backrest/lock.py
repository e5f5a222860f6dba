"""
Single-instance locking.

A lock is a file holding an exclusive ``flock``. The kernel drops the flock
when the holding process dies, so a lock file left behind by a crashed run
is simply re-acquired by the next one. The PID written into the file is for
operators only and is never used to decide liveness.
"""

import errno
import fcntl
import logging
import os
from typing import Optional


logger = logging.getLogger(__name__)


def lock_path_get(base_path: str, stanza: str, name: str) -> str:
    """Return ``<base_path>/lock/<stanza>-<name>.lock``."""
    return os.path.join(base_path, 'lock', f'{stanza}-{name}.lock')


class Lock:
    """
    Non-blocking exclusive lock keyed by its path.

    Usage:
        lock = Lock(lock_path_get(repo, 'main', 'backup'))
        if not lock.acquire():
            return  # another process is running
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """
        Try to take the lock without blocking.

        Returns:
            True if this object now holds the lock, False if another
            holder is alive
        """
        if self._fd is not None:
            return True

        os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)

        while True:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o640)

            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                os.close(fd)
                if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                    logger.debug(f"lock {self.lock_path} is held by another process")
                    return False
                raise

            # The previous holder may have unlinked the file between our open
            # and flock; in that case we locked an orphaned inode and must retry
            try:
                current = os.stat(self.lock_path)
            except FileNotFoundError:
                os.close(fd)
                continue

            if current.st_ino != os.fstat(fd).st_ino:
                os.close(fd)
                continue

            break

        os.ftruncate(fd, 0)
        os.write(fd, f'{os.getpid()}\n'.encode())
        self._fd = fd

        logger.debug(f"lock {self.lock_path} acquired")
        return True

    def release(self):
        """Remove the lock file and drop the flock. No-op when not held."""
        if self._fd is None:
            return

        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass

        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

        logger.debug(f"lock {self.lock_path} released")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False
