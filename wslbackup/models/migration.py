"""
Migration package, deployment target and deployment job models.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
import enum

from pydantic import BaseModel, Field, computed_field

from wslbackup.models.backup import Checksum, EnvironmentInfo, utcnow

MANIFEST_VERSION = 1
MANIFEST_FILENAME = "manifest.json"
PACKAGE_SUFFIX = ".wslpkg.tar.gz"


class UserAccount(BaseModel):
    """Regular user account captured from the source distribution."""
    name: str
    uid: int
    gid: int
    home: str
    shell: str
    groups: List[str] = Field(default_factory=list)


class InstalledPackage(BaseModel):
    name: str
    version: Optional[str] = None


class MigrationManifest(BaseModel):
    """Captured configuration embedded in a migration package."""
    manifest_version: int = MANIFEST_VERSION
    source_machine: str
    source_distribution: str
    captured_at: datetime = Field(default_factory=utcnow)
    runtime_version: Optional[str] = None
    environment: Optional[EnvironmentInfo] = None
    snapshot_file: str
    snapshot_checksum: Checksum
    snapshot_size_bytes: int
    packages: Optional[List[InstalledPackage]] = None
    users: Optional[List[UserAccount]] = None
    config_files: Optional[Dict[str, str]] = None


class PackOptions(BaseModel):
    include_config: bool = True
    include_packages: bool = False
    include_users: bool = True
    terminate_before_export: bool = False


class DeployOptions(BaseModel):
    force: bool = False
    verify_integrity: bool = True
    timeout: Optional[float] = Field(None, gt=0)
    install_dir: Optional[str] = None
    version: Optional[int] = Field(None, ge=1, le=2)
    apply_config: bool = True
    run_init_script: bool = True


class PackResult(BaseModel):
    success: bool
    distribution_name: str
    package_path: Optional[str] = None
    checksum: Optional[str] = None
    size_bytes: Optional[int] = None
    manifest: Optional[MigrationManifest] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class DeployResult(BaseModel):
    success: bool
    package_path: str
    target_name: str
    host: Optional[str] = None
    source_distribution: Optional[str] = None
    config_applied: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class DeploymentTarget(BaseModel):
    """Destination distribution; ``host`` of None means the local machine."""
    name: str
    host: Optional[str] = None
    install_dir: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.host or 'localhost'}/{self.name}"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
}


class DeploymentJob(BaseModel):
    """One (package, target) deployment. Terminal states are never re-queued."""
    target: DeploymentTarget
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[DeployResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def transition(self, new_status: JobStatus):
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Invalid job transition {self.status.value} -> {new_status.value} "
                f"for target {self.target.key}"
            )
        self.status = new_status
        if new_status == JobStatus.RUNNING:
            self.started_at = utcnow()
        elif new_status in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            self.finished_at = utcnow()

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class BatchDeploymentResult(BaseModel):
    success: bool
    package_path: str
    total: int
    succeeded: int
    failed: int
    jobs: List[DeploymentJob] = Field(default_factory=list)

    @computed_field
    @property
    def failures(self) -> List[Dict[str, Any]]:
        return [
            {"target": job.target.key, "error": job.error, "error_type": job.error_type}
            for job in self.jobs if job.status == JobStatus.FAILED
        ]
