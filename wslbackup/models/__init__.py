"""
Typed models for backup records, restores and migration packages.
"""
from wslbackup.models.backup import (
    SCHEMA_VERSION,
    BackupType,
    Checksum,
    EnvironmentInfo,
    EnvironmentSnapshot,
    BackupRecord,
    BackupResult,
    DeleteResult,
)
from wslbackup.models.restore import RestoreOptions, RestoreResult, ChainRestoreResult
from wslbackup.models.migration import (
    MigrationManifest,
    UserAccount,
    InstalledPackage,
    PackOptions,
    DeployOptions,
    PackResult,
    DeployResult,
    DeploymentTarget,
    DeploymentJob,
    JobStatus,
    BatchDeploymentResult,
)

__all__ = [
    "SCHEMA_VERSION",
    "BackupType",
    "Checksum",
    "EnvironmentInfo",
    "EnvironmentSnapshot",
    "BackupRecord",
    "BackupResult",
    "DeleteResult",
    "RestoreOptions",
    "RestoreResult",
    "ChainRestoreResult",
    "MigrationManifest",
    "UserAccount",
    "InstalledPackage",
    "PackOptions",
    "DeployOptions",
    "PackResult",
    "DeployResult",
    "DeploymentTarget",
    "DeploymentJob",
    "JobStatus",
    "BatchDeploymentResult",
]
