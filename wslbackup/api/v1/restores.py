"""
Restore API endpoints.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from wslbackup.api.deps import get_services
from wslbackup.models.restore import RestoreOptions, RestoreResult, ChainRestoreResult
from wslbackup.services import Services

router = APIRouter()


class RestoreBackupRequest(BaseModel):
    """Request model for restoring a recorded backup."""
    target_name: str = Field(..., description="Distribution name to create")
    options: RestoreOptions = Field(default_factory=RestoreOptions)


class RestoreArtifactRequest(BaseModel):
    """Request model for importing an artifact file directly."""
    artifact_path: str = Field(..., description="Path to a .tar, .tar.gz, .tgz or .vhdx export")
    target_name: str = Field(..., description="Distribution name to create")
    options: RestoreOptions = Field(default_factory=RestoreOptions)


@router.post("/backup/{backup_id}", response_model=ChainRestoreResult)
async def restore_backup(
    backup_id: str,
    request: RestoreBackupRequest,
    services: Services = Depends(get_services)
):
    """
    Restore a recorded backup.

    Incremental backups are restored by importing the chain root and
    replaying every incremental up to ``backup_id``.
    """
    return await services.restorer.restore_backup(backup_id, request.target_name, request.options)


@router.post("/artifact", response_model=RestoreResult)
async def restore_artifact(
    request: RestoreArtifactRequest,
    services: Services = Depends(get_services)
):
    return await services.restorer.restore_full(request.artifact_path, request.target_name, request.options)
