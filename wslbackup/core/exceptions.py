"""
Exception taxonomy for backup, restore and deployment operations.
"""
from typing import List, Optional, Sequence


class BackupSystemError(Exception):
    """Base exception for all backup system operations."""
    pass


class ValidationError(BackupSystemError):
    """Malformed or missing input, bad artifact format, implausible file size."""
    pass


class IntegrityError(BackupSystemError):
    """Exception raised when an artifact digest does not match its checksum."""

    def __init__(self, message: str, path: Optional[str] = None,
                 expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.actual = actual


class ChainError(BackupSystemError):
    """Broken or cyclic parent linkage between backup records."""
    pass


class ChainReplayError(BackupSystemError):
    """
    Exception raised when a chain restore stops partway.

    The target is left in the state of the last applied step; there is no
    rollback.
    """

    def __init__(self, message: str, target_name: str,
                 applied_backup_ids: Sequence[str], failed_backup_id: str):
        super().__init__(message)
        self.target_name = target_name
        self.applied_backup_ids = list(applied_backup_ids)
        self.failed_backup_id = failed_backup_id

    @property
    def last_applied_backup_id(self) -> Optional[str]:
        return self.applied_backup_ids[-1] if self.applied_backup_ids else None


class ExternalToolError(BackupSystemError):
    """Exception raised when an export/import/archive primitive reports failure."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: Optional[str] = None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class OperationTimeoutError(BackupSystemError, TimeoutError):
    """Exception raised when a bounded operation exceeds its allotted time."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class DependencyError(BackupSystemError):
    """Exception raised when deletion is blocked by dependent backups."""

    def __init__(self, message: str, dependent_ids: Sequence[str]):
        super().__init__(message)
        self.dependent_ids = list(dependent_ids)


class ConfigurationWarning(BackupSystemError):
    """
    Non-fatal failure of a post-restore configuration step.

    Logged and reported in result warnings; never flips ``success``.
    """
    pass
