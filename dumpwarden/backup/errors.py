"""
Error taxonomy for backup operations.

Only ConfigurationError aborts a job before any database is attempted; every
other kind is captured into the per-database BackupResult.
"""


class BackupError(Exception):
    """Base class for all backup errors."""
    kind = 'BackupError'


class ConfigurationError(BackupError):
    """Missing or invalid machine/schedule; the job is not attempted."""
    kind = 'ConfigurationError'


class NotFoundError(ConfigurationError):
    """No machine or schedule exists with the requested id."""


class ConnectivityError(BackupError):
    """Tunnel, dial, or authentication failure."""
    kind = 'ConnectivityError'


class TunnelAuthenticationError(ConnectivityError):
    """No usable SSH credential was supplied, or it was rejected."""


class DialError(ConnectivityError):
    """The SSH host could not be reached within the timeout."""


class ForwardUnreachableError(ConnectivityError):
    """The SSH session is up but the forward target refused the probe dial."""


class ConnError(ConnectivityError):
    """The database service refused or timed out the probe connection."""


class ServiceUnavailableError(ConnectivityError):
    """No inspection command on the remote host reported a running database."""


class ExecutionError(BackupError):
    """External tool missing or exited with an error."""
    kind = 'ExecutionError'


class ToolNotFoundError(ExecutionError):
    """The external dump utility is not on PATH."""


class ToolExecutionError(ExecutionError):
    """The external dump utility exited non-zero."""

    def __init__(self, message, returncode=None, stderr=''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class EmptyOutputError(ExecutionError):
    """The dump utility exited zero but wrote nothing."""


class StorageError(BackupError):
    """Compression or upload failure."""
    kind = 'StorageError'


class CompressionError(StorageError):
    """Raised when compressing an artifact fails."""


class UploadError(StorageError):
    """Raised when shipping an artifact to remote storage fails."""


class CredentialExpiredError(UploadError):
    """The bearer credential is expired and could not be refreshed."""


class TransportError(UploadError):
    """Network or remote-service failure during upload."""


class AuditError(BackupError):
    """Appending to the remote audit log failed; never fails a job."""
    kind = 'AuditError'


class JobCancelledError(BackupError):
    """The job deadline passed or cancellation was requested."""
    kind = 'JobCancelledError'


class SchedulerError(Exception):
    """Raised on invalid scheduler state transitions."""


class NoActiveSchedulesError(SchedulerError):
    """No enabled schedule yields at least one trigger."""
