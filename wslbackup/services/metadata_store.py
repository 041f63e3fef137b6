"""
Backup metadata store.

A single JSON document holding every backup record in creation order. The
document is read fully, modified and written back (temp file + rename) on
every change. One writer process is assumed; writers inside this process
are serialized by a lock.
"""
import asyncio
import json
import os
from pathlib import Path
from typing import Optional, List, Dict, Set
import logging

import aiofiles
import aiofiles.os
from pydantic import ValidationError as PydanticValidationError

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ValidationError, DependencyError
from wslbackup.models.backup import BackupRecord, SCHEMA_VERSION

logger = logging.getLogger(__name__)


class MetadataStore:
    """Durable record of every backup and its lineage."""

    def __init__(self, settings: Settings):
        self.path = Path(settings.METADATA_FILE)
        self._lock = asyncio.Lock()

    async def _load(self) -> List[BackupRecord]:
        if not await aiofiles.os.path.exists(self.path):
            return []

        async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
            content = await f.read()

        if not content.strip():
            return []

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Metadata document {self.path} is not valid JSON: {e}")

        # Legacy documents are a bare list of records
        if isinstance(document, list):
            raw_records = document
        elif isinstance(document, dict):
            version = document.get("schema_version", SCHEMA_VERSION)
            if version > SCHEMA_VERSION:
                logger.warning(
                    f"Metadata document {self.path} has schema version {version}, "
                    f"newer than supported {SCHEMA_VERSION}"
                )
            raw_records = document.get("backups", [])
        else:
            raise ValidationError(f"Unexpected metadata document layout in {self.path}")

        records = []
        for raw in raw_records:
            try:
                records.append(BackupRecord.model_validate(raw))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid backup record in {self.path}: {e}")
        return records

    async def _save(self, records: List[BackupRecord]):
        if not records:
            if await aiofiles.os.path.exists(self.path):
                await aiofiles.os.remove(self.path)
                logger.info(f"Metadata store is empty, removed {self.path}")
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "schema_version": SCHEMA_VERSION,
            "backups": [record.model_dump(mode="json") for record in records],
        }
        temp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(document, indent=2))
        await aiofiles.os.replace(temp_path, self.path)

    async def all(self) -> List[BackupRecord]:
        """All records in creation order."""
        return await self._load()

    async def find(self, backup_id: str) -> Optional[BackupRecord]:
        for record in await self._load():
            if record.id == backup_id:
                return record
        return None

    async def find_by_artifact(self, artifact_path: str) -> Optional[BackupRecord]:
        wanted = os.path.realpath(artifact_path)
        for record in await self._load():
            if os.path.realpath(record.artifact_path) == wanted:
                return record
        return None

    async def for_distribution(self, distribution_name: str) -> List[BackupRecord]:
        return [
            r for r in await self._load()
            if r.distribution_name.lower() == distribution_name.lower()
        ]

    async def latest_for(self, distribution_name: str) -> Optional[BackupRecord]:
        """Most recent backup (full or incremental) for a distribution."""
        records = await self.for_distribution(distribution_name)
        if not records:
            return None
        return max(records, key=lambda r: r.created_at)

    async def dependents(self, backup_id: str) -> List[BackupRecord]:
        """Records whose parent is ``backup_id``."""
        return [r for r in await self._load() if r.parent_backup_id == backup_id]

    async def append(self, record: BackupRecord) -> str:
        """
        Append a record. The artifact must already exist.

        Returns:
            The record id
        """
        async with self._lock:
            records = await self._load()
            if any(r.id == record.id for r in records):
                raise ValidationError(f"Backup id {record.id} already exists")
            if record.parent_backup_id == record.id:
                raise ValidationError(f"Backup {record.id} cannot be its own parent")
            if not Path(record.artifact_path).is_file():
                raise ValidationError(f"Artifact does not exist: {record.artifact_path}")
            records.append(record)
            await self._save(records)

        logger.info(
            f"Recorded {record.backup_type.value} backup {record.id} "
            f"of {record.distribution_name}"
        )
        return record.id

    async def delete(self, backup_id: str, cascade: bool = False) -> List[str]:
        """
        Delete a record and its artifact.

        Args:
            backup_id: Record to delete
            cascade: Also delete every record that transitively depends on it

        Returns:
            Ids of removed records, target first

        Raises:
            ValidationError: If the id is unknown
            DependencyError: If dependents exist and cascade is False
        """
        async with self._lock:
            records = await self._load()
            by_id: Dict[str, BackupRecord] = {r.id: r for r in records}

            if backup_id not in by_id:
                raise ValidationError(f"Backup {backup_id} not found")

            children: Dict[str, List[str]] = {}
            for record in records:
                if record.parent_backup_id:
                    children.setdefault(record.parent_backup_id, []).append(record.id)

            direct = children.get(backup_id, [])
            if direct and not cascade:
                raise DependencyError(
                    f"Cannot delete backup {backup_id}: "
                    f"has {len(direct)} dependent backup(s): {', '.join(direct)}",
                    dependent_ids=direct
                )

            removed: List[str] = []
            seen: Set[str] = set()
            queue = [backup_id]
            while queue:
                current = queue.pop(0)
                if current in seen:
                    continue
                seen.add(current)
                removed.append(current)
                queue.extend(children.get(current, []))

            remaining = [r for r in records if r.id not in seen]
            await self._save(remaining)

        for removed_id in removed:
            await self._delete_artifact(by_id[removed_id])

        logger.info(f"Deleted backup(s) {', '.join(removed)}")
        return removed

    async def _delete_artifact(self, record: BackupRecord):
        try:
            if await aiofiles.os.path.exists(record.artifact_path):
                await aiofiles.os.remove(record.artifact_path)
        except OSError as e:
            logger.warning(f"Failed to delete artifact {record.artifact_path} of backup {record.id}: {e}")
