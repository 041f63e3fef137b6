"""
Backup API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any

from wslbackup.api.deps import get_services
from wslbackup.models.backup import BackupRecord, BackupResult, BackupType, DeleteResult
from wslbackup.services import Services

router = APIRouter()


class CreateBackupRequest(BaseModel):
    """Request model for creating a backup."""
    distribution: str = Field(..., description="Name of the distribution to back up")
    backup_type: BackupType = Field(BackupType.FULL, description="Backup type: full or incremental")
    parent_backup_id: Optional[str] = Field(None, description="Parent for an incremental (latest backup when omitted)")
    terminate_before_export: bool = Field(False, description="Stop the distribution before a full export")


@router.get("", response_model=List[BackupRecord])
async def list_backups(
    distribution: Optional[str] = Query(None, description="Only backups of this distribution"),
    services: Services = Depends(get_services)
):
    """List recorded backups in creation order."""
    return await services.backups.list_backups(distribution)


@router.post("", response_model=BackupResult, status_code=status.HTTP_201_CREATED)
async def create_backup(
    request: CreateBackupRequest,
    services: Services = Depends(get_services)
):
    """
    Create a full or incremental backup.

    An incremental with no changes since its parent returns
    ``backup_needed: false`` and records nothing.
    """
    return await services.backups.create_backup(
        request.distribution,
        request.backup_type,
        parent_backup_id=request.parent_backup_id,
        terminate_before_export=request.terminate_before_export
    )


@router.get("/orphans", response_model=List[BackupRecord])
async def list_orphaned_backups(services: Services = Depends(get_services)):
    """Backups whose parent record no longer exists."""
    return await services.resolver.find_orphaned_backups()


@router.get("/{backup_id}", response_model=BackupRecord)
async def get_backup(backup_id: str, services: Services = Depends(get_services)):
    record = await services.store.find(backup_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Backup {backup_id} not found"
        )
    return record


@router.delete("/{backup_id}", response_model=DeleteResult)
async def delete_backup(
    backup_id: str,
    cascade: bool = Query(False, description="Also delete every dependent backup"),
    services: Services = Depends(get_services)
):
    """
    Delete a backup and its artifact.

    Fails with 409 when incremental backups depend on it and ``cascade`` is false.
    """
    return await services.backups.delete_backup(backup_id, cascade=cascade)


@router.get("/{backup_id}/chain", response_model=List[BackupRecord])
async def get_backup_chain(backup_id: str, services: Services = Depends(get_services)):
    """Backups needed to restore this one, full root first."""
    return await services.resolver.resolve_chain(backup_id)


@router.get("/{backup_id}/plan")
async def get_restoration_plan(backup_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.resolver.get_restoration_plan(backup_id)


@router.get("/{backup_id}/verify")
async def verify_backup_chain(backup_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Check links, artifacts and checksums of the chain ending at this backup."""
    return await services.resolver.verify_chain_integrity(backup_id)


@router.get("/{backup_id}/statistics")
async def get_chain_statistics(backup_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.resolver.get_chain_statistics(backup_id)
