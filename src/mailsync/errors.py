"""Error taxonomy for mailbox synchronization.

Errors are split by how the scheduler reacts to them:

* ``NetworkError`` - transient; the pass is abandoned and the next
  scheduled tick retries. No in-pass retry loop.
* ``AuthError`` - credentials rejected; the account is marked ``error``
  until the credentials are corrected externally.
* ``ProtocolError`` - the server answered with something we cannot parse;
  the current folder is abandoned and the pass moves on.
* ``ConsistencyError`` - a reconciliation repair failed; recorded per
  folder in the fix summary.
"""

from __future__ import annotations


class MailSyncError(Exception):
    """Base class for all synchronization errors."""

    retryable: bool = False


class ConnectionFailedError(MailSyncError):
    """Raised when a mailbox session cannot be established."""


class NetworkError(ConnectionFailedError):
    """Host unreachable, connection dropped or timed out.

    Retryable on the next scheduled tick.
    """

    retryable = True


class AuthError(ConnectionFailedError):
    """Credentials were rejected by the server.

    Not retryable without operator intervention.
    """


class ProtocolError(MailSyncError):
    """Malformed or unexpected server response."""


class ConsistencyError(MailSyncError):
    """A consistency repair could not be applied."""

    def __init__(self, folder_path: str, message: str, *, resynced: int = 0) -> None:
        super().__init__(f"{folder_path}: {message}")
        self.folder_path = folder_path
        # messages restored before the repair gave up
        self.resynced = resynced


class SchedulerError(RuntimeError):
    """Base class for scheduler control errors."""


class GlobalSyncDisabledError(SchedulerError):
    """Raised when a job start is requested while global sync is disabled."""


class AccountNotFoundError(KeyError):
    """Raised when an account id is unknown to the account repository."""

    def __str__(self) -> str:
        return f"Account not found: {self.args[0]}" if self.args else "Account not found"


class FolderNotFoundError(KeyError):
    """Raised when a folder path is unknown for an account."""


class FolderDeletionError(ValueError):
    """Raised when a folder deletion request violates the deletion rules.

    System folders can never be deleted and user folders only when empty.
    """


class InvalidStateTransitionError(ValueError):
    """Raised when a job state transition is not permitted.

    Example:
        Moving a job from STOPPED straight to SYNCING without passing
        through STARTING raises this exception.
    """


__all__ = [
    "AccountNotFoundError",
    "AuthError",
    "ConnectionFailedError",
    "ConsistencyError",
    "FolderDeletionError",
    "FolderNotFoundError",
    "GlobalSyncDisabledError",
    "InvalidStateTransitionError",
    "MailSyncError",
    "NetworkError",
    "ProtocolError",
    "SchedulerError",
]
