"""
Database control through psql.

psql runs locally, or on the database host over the remote session when the
database side is remote.
"""

import logging
import shlex
import subprocess
from typing import Optional

from backrest.errors import DbError, RemoteError


logger = logging.getLogger(__name__)


class Db:
    """
    Start/stop backup calls against the cluster.

    Args:
        psql: psql command line (from the [command] section)
        host: Database host, only used for messages
        session: Remote session when the database host is remote
    """

    def __init__(self, psql: str, host: Optional[str] = None, session=None):
        self.psql = psql
        self.host = host
        self.session = session
        self._version_num: Optional[int] = None

    def execute(self, sql: str) -> str:
        """
        Run SQL and return the last line of unaligned, tuples-only output.

        Raises:
            DbError: If psql cannot be run or exits non-zero
        """
        command = shlex.split(self.psql) + ['-A', '-t', '-c', sql, 'postgres']

        if self.session is not None:
            try:
                status, stdout, stderr = self.session.execute(shlex.join(command))
            except RemoteError as e:
                raise DbError(f"unable to run psql on {self.host}: {e}")
        else:
            try:
                completed = subprocess.run(command, capture_output=True, text=True)
            except OSError as e:
                raise DbError(f"unable to run psql: {e}")
            status, stdout, stderr = completed.returncode, completed.stdout, completed.stderr

        if status != 0:
            raise DbError(f"psql exited with {status}: {stderr.strip()}")

        lines = [line for line in stdout.splitlines() if line.strip()]
        return lines[-1].strip() if lines else ''

    def version_num(self) -> int:
        if self._version_num is None:
            output = self.execute("select current_setting('server_version_num')")
            try:
                self._version_num = int(output)
            except ValueError:
                raise DbError(f"unexpected server version '{output}'")
            logger.debug(f"database version {self._version_num}")
        return self._version_num

    def _walfile_function(self) -> str:
        return 'pg_walfile_name' if self.version_num() >= 100000 else 'pg_xlogfile_name'

    def backup_start(self, label: str, start_fast: bool = False) -> str:
        """
        Call pg_start_backup().

        Args:
            label: Backup label passed to the database
            start_fast: Request an immediate checkpoint

        Returns:
            Name of the WAL segment where the backup starts
        """
        logger.info(f"executing pg_start_backup() with label \"{label}\"" + (' (start fast)' if start_fast else ''))

        segment = self.execute(
            f"set client_min_messages = 'warning'; "
            f"select {self._walfile_function()}(lsn) from pg_start_backup('{label}', "
            f"{'true' if start_fast else 'false'}) as lsn"
        )
        if not segment:
            raise DbError('pg_start_backup() did not return a WAL segment')
        return segment

    def backup_stop(self) -> str:
        """
        Call pg_stop_backup().

        Returns:
            Name of the WAL segment where the backup stops
        """
        logger.info('executing pg_stop_backup()')

        segment = self.execute(
            f"set client_min_messages = 'warning'; "
            f"select {self._walfile_function()}(lsn) from pg_stop_backup() as lsn"
        )
        if not segment:
            raise DbError('pg_stop_backup() did not return a WAL segment')
        return segment
