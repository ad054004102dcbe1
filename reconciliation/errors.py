"""
Reconciliation - Errors.

Run-level failures. Unit-level provider errors (one category,
one page) never reach this layer; they are recorded on the
SyncResult and the run continues.
"""


class SyncError(Exception):
    """Base class for run-level sync failures."""

    retryable: bool = True

    def __init__(self, message: str, user_id: int = None, exchange: str = None):
        self.user_id = user_id
        self.exchange = exchange
        super().__init__(message)


class CredentialError(SyncError):
    """Credentials missing or unusable; the run aborts before any request."""

    retryable = False


class ConnectionInactiveError(SyncError):
    """The connection is deactivated or does not exist."""

    retryable = False


class InvalidSettingsError(SyncError):
    """The stored sync settings failed validation."""

    retryable = False


class SyncAuthError(SyncError):
    """The exchange rejected the credentials; the connection was deactivated."""

    retryable = False
