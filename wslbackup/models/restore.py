"""
Restore request options and outcomes.
"""
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from wslbackup.models.backup import Checksum


class RestoreOptions(BaseModel):
    """Options shared by full and chain restores."""
    force: bool = Field(False, description="Replace an existing distribution with the same name")
    verify_integrity: bool = Field(True, description="Verify artifact checksums before importing")
    checksum: Optional[Checksum] = Field(None, description="Expected checksum of the artifact")
    timeout: Optional[float] = Field(None, gt=0, description="Import timeout in seconds")
    install_dir: Optional[str] = Field(None, description="Install location for the imported distribution")
    version: Optional[int] = Field(None, ge=1, le=2, description="WSL version for the import")


class RestoreResult(BaseModel):
    """Outcome of a full restore."""
    success: bool
    target_name: str
    artifact_path: str
    install_dir: Optional[str] = None
    replaced_existing: bool = False
    integrity_verified: bool = False
    smoke_check_passed: Optional[bool] = None
    duration_seconds: float = 0.0
    progress: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ChainRestoreResult(BaseModel):
    """Outcome of restoring a backup chain."""
    success: bool
    target_name: str
    backup_id: str
    chain: List[str] = Field(default_factory=list)
    applied_backup_ids: List[str] = Field(default_factory=list)
    overlays_applied: int = 0
    last_applied_backup_id: Optional[str] = None
    failed_backup_id: Optional[str] = None
    base_restore: Optional[RestoreResult] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
