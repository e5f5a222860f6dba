"""
Error taxonomy for pg_backrest.

Every fatal condition maps to an exit code so the driver can report it
without inspecting messages. Lock contention and stop-marker discards are
not errors and never show up here.
"""


class BackrestError(Exception):
    """Base class for fatal pg_backrest errors."""

    exit_code = 1


class ConfigurationConflict(BackrestError):
    """Raised when settings are contradictory, missing or malformed."""

    exit_code = 10


class MissingArgument(BackrestError):
    """Raised when a required positional argument was not provided."""

    exit_code = 11


class TransferFailure(BackrestError):
    """Raised when a file could not be copied, listed or removed."""

    exit_code = 12


class UnsafeBackupState(BackrestError):
    """Raised when --no-start-stop is requested while the database is running."""

    exit_code = 13


class RemoteError(BackrestError):
    """Raised when the remote session cannot be established or a command fails."""

    exit_code = 14


class DbError(BackrestError):
    """Raised when a database control command fails."""

    exit_code = 15


class OperationCancelled(BackrestError):
    """Raised inside workers when cancellation has been requested."""

    exit_code = 16


class SignalTermination(BackrestError):
    """
    Raised from the signal handler once teardown has completed.

    Carries the signal number and how many copy workers were stopped.
    """

    def __init__(self, signum: int, threads_stopped: int):
        self.signum = signum
        self.threads_stopped = threads_stopped
        super().__init__(
            f"process was terminated on signal, {threads_stopped} threads stopped"
        )

    @property
    def exit_code(self) -> int:
        return 128 + self.signum
