"""
Backup chain resolution.

Follows parent links from an incremental backup back to its full root and
reports on chain health and size.
"""

import logging
from pathlib import Path
from typing import Optional, List, Dict, Any

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ChainError, ValidationError
from wslbackup.models.backup import BackupRecord, BackupType
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class ChainResolver:
    """Service for resolving backup chains and checking their integrity."""

    def __init__(self, store: MetadataStore, settings: Settings, verifier: Optional[IntegrityVerifier] = None):
        """
        Initialize the chain resolver.

        Args:
            store: Metadata store holding every backup record
            settings: Application settings (MAX_CHAIN_DEPTH)
            verifier: Digest checker used by verify_chain_integrity
        """
        self.store = store
        self.max_depth = settings.MAX_CHAIN_DEPTH
        self.verifier = verifier or IntegrityVerifier()

    @staticmethod
    def _walk(records: Dict[str, BackupRecord], backup_id: str, max_depth: int) -> List[BackupRecord]:
        if backup_id not in records:
            raise ChainError(f"Backup {backup_id} not found")

        chain: List[BackupRecord] = []
        seen = set()
        current: Optional[BackupRecord] = records[backup_id]

        while current is not None:
            if current.id in seen:
                raise ChainError(f"Cycle detected in chain of backup {backup_id} at {current.id}")
            if len(chain) >= max_depth:
                raise ChainError(f"Chain of backup {backup_id} exceeds maximum depth {max_depth}")
            seen.add(current.id)
            chain.append(current)

            parent_id = current.parent_backup_id
            if parent_id is None:
                break
            if parent_id not in records:
                raise ChainError(
                    f"Broken chain: backup {current.id} references missing parent {parent_id}"
                )
            current = records[parent_id]

        chain.reverse()
        return chain

    async def resolve_chain(self, backup_id: str) -> List[BackupRecord]:
        """
        Get the backups needed to restore ``backup_id``.

        For full backups: Returns just that backup
        For incremental backups: Returns the full root followed by each
                                 incremental up to and including the target

        Raises:
            ChainError: Unknown id, broken parent link, cycle, or excessive depth
        """
        records = {r.id: r for r in await self.store.all()}
        chain = self._walk(records, backup_id, self.max_depth)

        if chain[0].backup_type != BackupType.FULL:
            raise ChainError(f"Chain of backup {backup_id} does not start with a full backup")
        return chain

    async def get_children(self, backup_id: str) -> List[BackupRecord]:
        """Incremental backups that directly depend on this backup."""
        return await self.store.dependents(backup_id)

    async def find_orphaned_backups(self) -> List[BackupRecord]:
        """
        Find backups whose parent no longer exists.

        Returns:
            List of orphaned backups (parent_backup_id points to an unknown record)
        """
        records = await self.store.all()
        known = {r.id for r in records}
        orphaned = [r for r in records if r.parent_backup_id and r.parent_backup_id not in known]

        if orphaned:
            logger.warning(f"Found {len(orphaned)} orphaned backups")

        return orphaned

    async def get_restoration_plan(self, backup_id: str) -> Dict[str, Any]:
        """
        Describe the steps a restore of ``backup_id`` would take.

        Returns:
            Dictionary with ordered steps and total bytes to process
        """
        chain = await self.resolve_chain(backup_id)
        steps = []
        for index, record in enumerate(chain, start=1):
            steps.append({
                "step": index,
                "backup_id": record.id,
                "backup_type": record.backup_type.value,
                "action": "import" if record.backup_type == BackupType.FULL else "overlay",
                "artifact_path": record.artifact_path,
                "size_bytes": record.size_bytes,
                "changed_file_count": record.changed_file_count,
                "created_at": record.created_at.isoformat(),
            })

        return {
            "backup_id": backup_id,
            "distribution_name": chain[-1].distribution_name,
            "steps": steps,
            "step_count": len(steps),
            "overlay_count": len(steps) - 1,
            "total_size_bytes": sum(r.size_bytes for r in chain),
        }

    async def verify_chain_integrity(self, backup_id: str) -> Dict[str, Any]:
        """
        Check every link of a chain.

        Verifies that the chain resolves, that the root is a full backup, and
        that each artifact exists and matches its recorded checksum.

        Returns:
            Dictionary with ``valid`` and a list of ``issues``
        """
        try:
            chain = await self.resolve_chain(backup_id)
        except ChainError as e:
            return {"backup_id": backup_id, "valid": False, "chain": [], "issues": [str(e)]}

        issues = []
        for record in chain:
            if not Path(record.artifact_path).is_file():
                issues.append(f"Artifact missing for backup {record.id}: {record.artifact_path}")
                continue
            try:
                if not await self.verifier.verify(record.artifact_path, record.checksum):
                    issues.append(f"Checksum mismatch for backup {record.id}")
            except ValidationError as e:
                issues.append(f"Cannot verify backup {record.id}: {e}")

        if issues:
            logger.warning(f"Chain of backup {backup_id} has {len(issues)} issue(s)")

        return {
            "backup_id": backup_id,
            "valid": not issues,
            "chain": [r.id for r in chain],
            "issues": issues,
        }

    async def get_chain_statistics(self, backup_id: str) -> Dict[str, Any]:
        """
        Get statistics for the chain ending at ``backup_id``.

        Returns:
            Dictionary with chain statistics
        """
        chain = await self.resolve_chain(backup_id)
        root = chain[0]
        incrementals = chain[1:]
        incremental_bytes = sum(r.size_bytes for r in incrementals)

        return {
            "backup_id": backup_id,
            "root_backup_id": root.id,
            "distribution_name": root.distribution_name,
            "backup_count": len(chain),
            "incremental_count": len(incrementals),
            "first_backup": root.created_at.isoformat(),
            "last_backup": chain[-1].created_at.isoformat(),
            "full_size_bytes": root.size_bytes,
            "incremental_size_bytes": incremental_bytes,
            "total_size_bytes": root.size_bytes + incremental_bytes,
            "total_changed_files": sum(r.changed_file_count or 0 for r in incrementals),
            "backups": [
                {
                    "id": r.id,
                    "type": r.backup_type.value,
                    "created_at": r.created_at.isoformat(),
                    "size": r.size_bytes,
                    "changed_files": r.changed_file_count,
                }
                for r in chain
            ]
        }
