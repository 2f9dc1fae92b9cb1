class BackupError(Exception):
    """Base class for errors raised when an operation cannot be started or completed."""


class InvalidIdentifier(BackupError):
    """A database name or path failed sanitization."""


class PermissionDenied(BackupError):
    """The calling tenant does not own the target database."""


class SubprocessFailure(BackupError):
    """The engine command exited non-zero, timed out or could not be spawned."""


class NotFound(BackupError):
    """Unknown run, operation, artifact, configuration or tenant."""


class FileSystemError(BackupError):
    """An artifact folder or file is missing or inaccessible."""


class QuotaExceeded(BackupError):
    """A tenant create/grow request exceeds the configured quota."""


class RunInProgress(BackupError):
    """A run for the same backup configuration has not finished yet."""
