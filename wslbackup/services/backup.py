"""
Backup creation and lifecycle.

Ties the snapshot engine to the metadata store: chooses the parent for
incremental backups, lays out artifact paths and records every completed
snapshot.
"""
from pathlib import Path
from typing import Optional, List
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ValidationError
from wslbackup.core.logging_handler import log_success
from wslbackup.models.backup import (
    BackupRecord,
    BackupResult,
    BackupType,
    DeleteResult,
    EnvironmentSnapshot,
    new_backup_id,
    utcnow,
)
from wslbackup.services.metadata_store import MetadataStore
from wslbackup.services.snapshot import SnapshotEngine

logger = logging.getLogger(__name__)


class BackupService:
    """Creates, lists and deletes recorded backups."""

    def __init__(self, store: MetadataStore, engine: SnapshotEngine, settings: Settings):
        self.store = store
        self.engine = engine
        self.settings = settings

    def artifact_path(self, distribution: str, backup_id: str, backup_type: BackupType) -> Path:
        suffix = ".tar.gz" if backup_type == BackupType.INCREMENTAL else ".tar"
        return Path(self.settings.BACKUP_BASE_PATH) / distribution / f"{backup_id}{suffix}"

    async def _select_parent(self, distribution: str, parent_backup_id: Optional[str]) -> Optional[BackupRecord]:
        if parent_backup_id is None:
            return await self.store.latest_for(distribution)

        parent = await self.store.find(parent_backup_id)
        if parent is None:
            raise ValidationError(f"Parent backup {parent_backup_id} not found")
        if parent.distribution_name.lower() != distribution.lower():
            raise ValidationError(
                f"Parent backup {parent_backup_id} belongs to {parent.distribution_name}, not {distribution}"
            )
        return parent

    async def create_backup(
        self,
        distribution: str,
        backup_type: BackupType = BackupType.FULL,
        parent_backup_id: Optional[str] = None,
        terminate_before_export: bool = False
    ) -> BackupResult:
        """
        Create and record a backup.

        An incremental request with no earlier backup of the distribution
        produces a full backup. An incremental with no changed files records
        nothing and reports ``backup_needed=False``.

        Raises:
            ValidationError: Unknown distribution or parent
            ExternalToolError: Snapshot primitive failure
        """
        if parent_backup_id is not None and backup_type != BackupType.INCREMENTAL:
            raise ValidationError("parent_backup_id is only valid for incremental backups")

        info = await self.engine.describe_environment(distribution)
        distribution = info.name

        parent = None
        effective_type = backup_type
        if backup_type == BackupType.INCREMENTAL:
            parent = await self._select_parent(distribution, parent_backup_id)
            if parent is None:
                logger.info(f"No earlier backup of {distribution}, creating a full backup instead")
                effective_type = BackupType.FULL

        backup_id = new_backup_id()
        # Files changed during the export are picked up by the next incremental
        created_at = utcnow()
        destination = self.artifact_path(distribution, backup_id, effective_type)

        if effective_type == BackupType.INCREMENTAL:
            artifact = await self.engine.create_incremental(distribution, parent.created_at, destination)
            if artifact is None:
                return BackupResult(
                    success=True,
                    distribution_name=distribution,
                    backup_needed=False,
                    requested_type=backup_type,
                    parent_backup_id=parent.id,
                    message=f"No changes in {distribution} since backup {parent.id}",
                )
        else:
            artifact = await self.engine.create_full(
                distribution, destination,
                terminate_before_export=terminate_before_export
            )

        is_incremental = artifact.backup_type == BackupType.INCREMENTAL
        extra = {"notes": artifact.notes} if artifact.notes else {}
        if artifact.capped:
            extra["changed_files_capped"] = True

        record = BackupRecord(
            id=backup_id,
            distribution_name=distribution,
            backup_type=artifact.backup_type,
            artifact_path=str(artifact.path),
            created_at=created_at,
            size_bytes=artifact.size_bytes,
            checksum=artifact.checksum,
            parent_backup_id=parent.id if is_incremental else None,
            changed_file_count=artifact.changed_file_count if is_incremental else None,
            changed_files=artifact.changed_files if is_incremental else None,
            source_environment=EnvironmentSnapshot.from_info(info),
            extra_metadata=extra,
        )

        try:
            await self.store.append(record)
        except Exception:
            logger.error(f"Failed to record backup {backup_id}, removing artifact {artifact.path}")
            artifact.path.unlink(missing_ok=True)
            raise

        fell_back = backup_type == BackupType.INCREMENTAL and not is_incremental
        log_success(
            logger,
            f"{record.backup_type.value.capitalize()} backup {backup_id} of {distribution} completed "
            f"({record.size_bytes} bytes)"
        )
        return BackupResult(
            success=True,
            distribution_name=distribution,
            backup_id=backup_id,
            backup_type=record.backup_type,
            requested_type=backup_type,
            fell_back_to_full=fell_back,
            parent_backup_id=record.parent_backup_id,
            artifact_path=record.artifact_path,
            size_bytes=record.size_bytes,
            checksum=str(record.checksum),
            changed_file_count=record.changed_file_count,
            message="; ".join(artifact.notes) or None,
        )

    async def list_backups(self, distribution: Optional[str] = None) -> List[BackupRecord]:
        if distribution:
            return await self.store.for_distribution(distribution)
        return await self.store.all()

    async def get_backup(self, backup_id: str) -> BackupRecord:
        record = await self.store.find(backup_id)
        if record is None:
            raise ValidationError(f"Backup {backup_id} not found")
        return record

    async def delete_backup(self, backup_id: str, cascade: bool = False) -> DeleteResult:
        removed = await self.store.delete(backup_id, cascade=cascade)
        return DeleteResult(success=True, backup_id=backup_id, removed_ids=removed)
