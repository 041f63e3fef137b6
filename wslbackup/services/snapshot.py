"""
Snapshot engine.

Produces full exports and change-only archives of a distribution through
the environment runtime. Each artifact is hashed as soon as it is written;
a partially written artifact never survives a failed call.
"""
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Iterator
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ExternalToolError, OperationTimeoutError, ValidationError
from wslbackup.models.backup import BackupType, Checksum, EnvironmentInfo
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.wsl.base import EnvironmentRuntime

# Failures of change detection or archiving that trigger a full export
FALLBACK_ERRORS = (ExternalToolError, OperationTimeoutError, OSError)

logger = logging.getLogger(__name__)


@dataclass
class SnapshotArtifact:
    """A written, hashed snapshot file."""
    path: Path
    checksum: Checksum
    size_bytes: int
    backup_type: BackupType
    changed_files: Optional[List[str]] = None
    fell_back: bool = False
    capped: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def changed_file_count(self) -> Optional[int]:
        return len(self.changed_files) if self.changed_files is not None else None


@contextlib.contextmanager
def partial_artifact(path: Path) -> Iterator[Path]:
    """Delete ``path`` if the enclosed block raises."""
    try:
        yield path
    except BaseException:
        if path.exists():
            try:
                path.unlink()
                logger.info(f"Removed partial artifact {path}")
            except OSError as e:
                logger.warning(f"Failed to remove partial artifact {path}: {e}")
        raise


def full_export_path(destination: Path) -> Path:
    """Plain tar path to use when a compressed destination falls back to an export."""
    name = destination.name
    for suffix in (".tar.gz", ".tgz"):
        if name.endswith(suffix):
            return destination.with_name(name[:-len(suffix)] + ".tar")
    return destination


class SnapshotEngine:
    """Service for creating full and incremental snapshots of a distribution."""

    def __init__(
        self,
        runtime: EnvironmentRuntime,
        verifier: IntegrityVerifier,
        settings: Settings,
        log_callback=None
    ):
        """
        Initialize the snapshot engine.

        Args:
            runtime: Runtime used for export and change detection
            verifier: Digest calculator for written artifacts
            settings: Application settings
            log_callback: Optional callback function for verbose logging.
                          Signature: callback(level: str, message: str, details: dict = None)
        """
        self.runtime = runtime
        self.verifier = verifier
        self.settings = settings
        self.log_callback = log_callback

    def _log(self, level: str, message: str, details: dict = None):
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    async def describe_environment(self, name: str) -> EnvironmentInfo:
        """
        Look up a distribution.

        Raises:
            ValidationError: If no distribution with that name is registered
        """
        info = await self.runtime.get_environment(name)
        if info is None:
            raise ValidationError(f"Distribution not found: {name}")
        return info

    async def _finalize(self, path: Path, backup_type: BackupType, **kwargs) -> SnapshotArtifact:
        if not path.is_file():
            raise ExternalToolError(f"Snapshot primitive produced no artifact at {path}")
        size = path.stat().st_size
        if size == 0:
            raise ExternalToolError(f"Snapshot primitive produced an empty artifact at {path}")
        checksum = await self.verifier.digest(path)
        return SnapshotArtifact(
            path=path,
            checksum=checksum,
            size_bytes=size,
            backup_type=backup_type,
            **kwargs
        )

    async def create_full(
        self,
        environment: str,
        destination: Path,
        terminate_before_export: bool = False
    ) -> SnapshotArtifact:
        """
        Export the whole distribution to ``destination``.

        Args:
            environment: Distribution name
            destination: Artifact path (``.tar`` or ``.vhdx``)
            terminate_before_export: Stop the distribution first for a quiescent export

        Raises:
            ExternalToolError: If the export fails or writes nothing
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists():
            raise ValidationError(f"Snapshot destination already exists: {destination}")

        if terminate_before_export:
            self._log("INFO", f"Terminating {environment} before export")
            await self.runtime.terminate_environment(environment)

        self._log("INFO", f"Exporting {environment} to {destination}")
        with partial_artifact(destination):
            await self.runtime.export_environment(environment, destination)
            artifact = await self._finalize(destination, BackupType.FULL)

        self._log("INFO", f"Full snapshot of {environment} written ({artifact.size_bytes} bytes)", {
            "path": str(destination),
            "checksum": str(artifact.checksum),
        })
        return artifact

    async def create_incremental(
        self,
        environment: str,
        since: datetime,
        destination: Path
    ) -> Optional[SnapshotArtifact]:
        """
        Archive files changed after ``since``.

        Change detection or archive failure falls back to a full export
        written next to ``destination``.

        Returns:
            The artifact, or None when nothing changed
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        limit = self.settings.MAX_CHANGED_FILES

        try:
            changed = await self.runtime.list_changed_files(
                environment, since, limit + 1,
                exclude=self.settings.INCREMENTAL_EXCLUDE_PATHS
            )
        except FALLBACK_ERRORS as e:
            self._log("WARNING", f"Change detection failed for {environment}, falling back to full export: {e}")
            return await self._fall_back(environment, destination, str(e))

        if not changed:
            self._log("INFO", f"No files changed in {environment} since {since.isoformat()}, no backup needed")
            return None

        # Listing asked for limit + 1 entries
        capped = len(changed) > limit
        changed = changed[:limit]
        if capped:
            self._log("WARNING", f"Changed file list for {environment} reached the cap of {limit} entries; "
                                 f"later changes are not captured")

        self._log("INFO", f"Archiving {len(changed)} changed file(s) of {environment}")
        try:
            with partial_artifact(destination):
                await self.runtime.archive_files(environment, changed, destination)
                artifact = await self._finalize(
                    destination, BackupType.INCREMENTAL,
                    changed_files=changed, capped=capped
                )
        except FALLBACK_ERRORS as e:
            self._log("WARNING", f"Archiving changes of {environment} failed, falling back to full export: {e}")
            return await self._fall_back(environment, destination, str(e))

        if capped:
            artifact.notes.append(f"Changed file list capped at {limit} entries")
        self._log("INFO", f"Incremental snapshot of {environment} written ({artifact.size_bytes} bytes)", {
            "path": str(destination),
            "changed_files": len(changed),
        })
        return artifact

    async def _fall_back(self, environment: str, destination: Path, reason: str) -> SnapshotArtifact:
        artifact = await self.create_full(environment, full_export_path(destination))
        artifact.fell_back = True
        artifact.notes.append(f"Fell back to full export: {reason}")
        return artifact
