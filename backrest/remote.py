"""
Remote topology and the SSH session to the remote peer.

At most one side of a stanza (database or backup repository) is remote.
The session to it is built lazily on first use, shared by every component
that needs it, and torn down exactly once when the process exits.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from backrest.config import Config
from backrest.errors import ConfigurationConflict, RemoteError


logger = logging.getLogger(__name__)

REMOTE_NONE = 'none'
REMOTE_DB = 'db'
REMOTE_BACKUP = 'backup'


@dataclass(frozen=True)
class RemoteEndpoint:
    host: str
    user: Optional[str] = None
    command: Optional[str] = None


def resolve_remote(config: Config) -> str:
    """
    Decide which side of the stanza is remote.

    Args:
        config: Loaded configuration

    Returns:
        REMOTE_BACKUP, REMOTE_DB or REMOTE_NONE

    Raises:
        ConfigurationConflict: If both sides have a host configured
    """
    if config.backup.host and config.db.host:
        raise ConfigurationConflict('db and backup cannot both be configured as remote')

    if config.backup.host:
        return REMOTE_BACKUP
    if config.db.host:
        return REMOTE_DB
    return REMOTE_NONE


def endpoint_get(config: Config, remote: str) -> Optional[RemoteEndpoint]:
    """Build the endpoint descriptor for the remote side, or None."""
    if remote == REMOTE_BACKUP:
        return RemoteEndpoint(config.backup.host, config.backup.user, config.command.remote)
    if remote == REMOTE_DB:
        return RemoteEndpoint(config.db.host, config.db.user, config.command.remote)
    return None


class RemoteSession:
    """
    SSH session to the remote host.

    One SSH transport is opened; each thread that needs file access gets its
    own SFTP channel multiplexed over it.
    """

    def __init__(self, host: str, user: Optional[str] = None, command: Optional[str] = None,
                 port: int = 22, connect_timeout: int = 30):
        self.host = host
        self.user = user
        self.command = command
        self.port = port
        self.connect_timeout = connect_timeout

        self.ssh_client = None
        self._local = threading.local()
        self._channels: List[paramiko.SFTPClient] = []
        self._channels_lock = threading.Lock()

    def connect(self):
        """
        Establish the SSH connection and run the version handshake.

        Raises:
            RemoteError: If the connection or the handshake fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.load_system_host_keys()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            self.ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                timeout=self.connect_timeout
            )
        except paramiko.AuthenticationException as e:
            raise RemoteError(f"SSH authentication failed for {self.host}: {e}")
        except paramiko.SSHException as e:
            raise RemoteError(f"SSH connection to {self.host} failed: {e}")
        except OSError as e:
            raise RemoteError(f"Failed to connect to {self.host}: {e}")

        logger.debug(f"connected to {self.user or ''}@{self.host}:{self.port}")

        if self.command:
            status, stdout, stderr = self.execute(f'{self.command} --version')
            if status != 0:
                raise RemoteError(
                    f"remote command '{self.command}' failed on {self.host} "
                    f"(exit {status}): {stderr.strip()}"
                )
            logger.debug(f"remote greeting: {stdout.strip()}")

    def execute(self, command: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        """
        Run a command on the remote host.

        Args:
            command: Shell command line
            timeout: Optional channel timeout in seconds

        Returns:
            Tuple of (exit status, stdout, stderr)
        """
        if self.ssh_client is None:
            raise RemoteError(f"session to {self.host} is not connected")

        try:
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=timeout)
            status = stdout.channel.recv_exit_status()
            return status, stdout.read().decode(), stderr.read().decode()
        except paramiko.SSHException as e:
            raise RemoteError(f"remote command failed on {self.host}: {e}")

    def sftp(self) -> paramiko.SFTPClient:
        """Return the SFTP channel owned by the calling thread."""
        if self.ssh_client is None:
            raise RemoteError(f"session to {self.host} is not connected")

        channel = getattr(self._local, 'sftp', None)
        if channel is None:
            try:
                channel = self.ssh_client.open_sftp()
            except paramiko.SSHException as e:
                raise RemoteError(f"unable to open SFTP channel to {self.host}: {e}")
            self._local.sftp = channel
            with self._channels_lock:
                self._channels.append(channel)

        return channel

    def close(self):
        """Close every SFTP channel and the SSH connection."""
        with self._channels_lock:
            channels, self._channels = self._channels, []

        for channel in channels:
            try:
                channel.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"error closing SFTP channel: {e}")

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

        logger.debug(f"session to {self.host} closed")


class SessionHandle:
    """
    Lazily constructed, process-wide remote session.

    ``get()`` builds the session on first use and returns the same instance
    afterwards. ``exit()`` closes it; calling it again, or without a session
    ever having been built, does nothing.
    """

    def __init__(self, remote: str, endpoint: Optional[RemoteEndpoint], session_factory=RemoteSession):
        self.remote = remote
        self.endpoint = endpoint
        self.session_factory = session_factory
        self._session: Optional[RemoteSession] = None
        self._exited = False

    @property
    def active(self) -> bool:
        return self._session is not None

    def get(self) -> Optional[RemoteSession]:
        if self.remote == REMOTE_NONE:
            return None

        if self._exited:
            raise RemoteError('remote session has already been closed')

        if self._session is None:
            session = self.session_factory(
                self.endpoint.host,
                self.endpoint.user,
                self.endpoint.command
            )
            try:
                session.connect()
            except RemoteError:
                session.close()
                raise
            self._session = session

        return self._session

    def exit(self):
        self._exited = True

        session, self._session = self._session, None
        if session is not None:
            session.close()
