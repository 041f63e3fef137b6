"""
Restore orchestration.

Imports a full artifact as a new distribution and replays incremental
overlays on top of it. Target state is never touched before the artifact
has passed format, size and checksum validation.
"""
import asyncio
import contextlib
import tempfile
import time
from pathlib import Path
from typing import Optional, List, AsyncIterator
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import (
    BackupSystemError,
    ChainReplayError,
    ExternalToolError,
    OperationTimeoutError,
    ValidationError,
)
from wslbackup.core.logging_handler import log_success
from wslbackup.models.backup import BackupType, Checksum
from wslbackup.models.restore import RestoreOptions, RestoreResult, ChainRestoreResult
from wslbackup.services.archive import detect_format, extract_archive, ownership_map
from wslbackup.services.backup_chain import ChainResolver
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.metadata_store import MetadataStore
from wslbackup.services.progress import ProgressTracker, ProgressCallback
from wslbackup.services.wsl.base import EnvironmentRuntime

logger = logging.getLogger(__name__)

# Artifact extension -> signature reported by detect_format
ARTIFACT_FORMATS = {
    ".tar.gz": "gzip",
    ".tgz": "gzip",
    ".tar": "tar",
    ".vhdx": "vhdx",
}

SMOKE_CHECK_COMMAND = ["echo", "ok"]


def expected_format(path: Path) -> Optional[str]:
    name = path.name.lower()
    for suffix, fmt in ARTIFACT_FORMATS.items():
        if name.endswith(suffix):
            return fmt
    return None


class RestoreOrchestrator:
    """Service for restoring distributions from full artifacts and backup chains."""

    def __init__(
        self,
        runtime: EnvironmentRuntime,
        store: MetadataStore,
        verifier: IntegrityVerifier,
        resolver: ChainResolver,
        settings: Settings,
        log_callback=None
    ):
        self.runtime = runtime
        self.store = store
        self.verifier = verifier
        self.resolver = resolver
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

    def validate_artifact(self, artifact: Path) -> str:
        """
        Check extension, file signature and size of an artifact.

        Returns:
            The detected format

        Raises:
            ValidationError: If the artifact is missing, unrecognised or implausibly small
        """
        if not artifact.is_file():
            raise ValidationError(f"Artifact not found: {artifact}")

        wanted = expected_format(artifact)
        if wanted is None:
            raise ValidationError(
                f"Unrecognised artifact extension: {artifact.name} "
                f"(expected one of {', '.join(ARTIFACT_FORMATS)})"
            )

        size = artifact.stat().st_size
        if size < self.settings.MIN_ARTIFACT_SIZE_BYTES:
            raise ValidationError(
                f"Artifact {artifact} is only {size} bytes "
                f"(minimum {self.settings.MIN_ARTIFACT_SIZE_BYTES})"
            )

        actual = detect_format(artifact)
        if actual != wanted:
            raise ValidationError(
                f"Artifact {artifact} does not look like a {wanted} file "
                f"(detected: {actual or 'unknown'})"
            )
        return actual

    async def _expected_checksum(self, artifact: Path, options: RestoreOptions) -> Optional[Checksum]:
        if options.checksum is not None:
            return options.checksum
        if not options.verify_integrity:
            return None

        record = await self.store.find_by_artifact(str(artifact))
        if record is None:
            raise ValidationError(
                f"No checksum supplied and no backup record owns {artifact}; "
                f"pass a checksum or disable integrity verification"
            )
        return record.checksum

    @contextlib.asynccontextmanager
    async def registered_target(self, target_name: str) -> AsyncIterator[str]:
        """Unregister ``target_name`` if the enclosed block fails."""
        try:
            yield target_name
        except BaseException as error:
            self._log("WARNING", f"Restore of {target_name} failed ({type(error).__name__}), "
                                 f"removing partially created target")
            try:
                if await self.runtime.environment_exists(target_name):
                    await self.runtime.unregister_environment(target_name)
            except BackupSystemError as cleanup_error:
                self._log("ERROR", f"Failed to unregister partial target {target_name}: {cleanup_error}")
            raise

    async def _await_import(
        self,
        target_name: str,
        install_dir: str,
        artifact: Path,
        version: Optional[int],
        timeout: float,
        tracker: ProgressTracker
    ):
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(
            self.runtime.import_environment(target_name, install_dir, artifact, version=version),
            name=f"import-{target_name}"
        )
        deadline = loop.time() + timeout

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise OperationTimeoutError(
                        f"Import of {target_name} did not finish within {timeout}s",
                        timeout=timeout
                    )
                done, _ = await asyncio.wait(
                    {task}, timeout=min(self.settings.PROGRESS_POLL_INTERVAL, remaining)
                )
                if done:
                    task.result()
                    return
                written = await loop.run_in_executor(None, self.runtime.install_dir_size, install_dir)
                tracker.poll(written)
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _smoke_check(self, target_name: str) -> Optional[str]:
        """Returns a warning message, or None when the target answers."""
        try:
            result = await self.runtime.exec_in_environment(
                target_name, SMOKE_CHECK_COMMAND, timeout=self.settings.COMMAND_TIMEOUT
            )
        except (ExternalToolError, OperationTimeoutError) as e:
            return f"Smoke check of {target_name} could not run: {e}"
        if not result.ok or "ok" not in result.stdout:
            return f"Smoke check of {target_name} failed (exit {result.returncode}): {result.stderr.strip()}"
        return None

    async def restore_full(
        self,
        artifact,
        target_name: str,
        options: Optional[RestoreOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RestoreResult:
        """
        Import a full artifact as distribution ``target_name``.

        Args:
            artifact: Path to a ``.tar``, ``.tar.gz``, ``.tgz`` or ``.vhdx`` export
            target_name: Distribution name to create
            options: Restore options
            progress_callback: Receives progress snapshots while importing

        Raises:
            ValidationError: Bad artifact, missing checksum source, or existing target without force
            IntegrityError: Artifact digest does not match
            OperationTimeoutError: Import exceeded the timeout (target is removed)
            ExternalToolError: Import primitive failed (target is removed)
        """
        options = options or RestoreOptions()
        artifact = Path(artifact)
        started = time.monotonic()
        tracker = ProgressTracker("restore", target_name, callback=progress_callback)
        tracker.start(bytes_expected=artifact.stat().st_size if artifact.is_file() else 0)
        warnings: List[str] = []

        tracker.set_phase("validating")
        self.validate_artifact(artifact)

        expected = await self._expected_checksum(artifact, options)
        integrity_verified = False
        if expected is not None:
            await self.verifier.require(artifact, expected)
            integrity_verified = True
            self._log("INFO", f"Artifact {artifact.name} matches {expected}")

        replaced = False
        if await self.runtime.environment_exists(target_name):
            if not options.force:
                raise ValidationError(
                    f"Distribution {target_name} already exists; use force to replace it"
                )
            self._log("WARNING", f"Replacing existing distribution {target_name}")
            await self.runtime.unregister_environment(target_name)
            replaced = True

        install_dir = options.install_dir or self.runtime.default_install_dir(target_name)
        version = options.version or self.settings.WSL_DEFAULT_VERSION
        timeout = options.timeout or self.settings.IMPORT_TIMEOUT

        self._log("INFO", f"Importing {artifact} as {target_name} into {install_dir}", {
            "version": version,
            "timeout": timeout,
        })
        async with self.registered_target(target_name):
            tracker.set_phase("importing")
            await self._await_import(target_name, install_dir, artifact, version, timeout, tracker)

            tracker.set_phase("verifying")
            warning = await self._smoke_check(target_name)

        if warning:
            self._log("WARNING", warning)
            warnings.append(warning)

        tracker.finish()
        duration = time.monotonic() - started
        log_success(logger, f"Restored {target_name} from {artifact.name} in {duration:.1f}s")
        return RestoreResult(
            success=True,
            target_name=target_name,
            artifact_path=str(artifact),
            install_dir=install_dir,
            replaced_existing=replaced,
            integrity_verified=integrity_verified,
            smoke_check_passed=warning is None,
            duration_seconds=round(duration, 2),
            progress=tracker.get_progress(),
            warnings=warnings,
        )

    async def restore_chain(
        self,
        backup_id: str,
        target_name: str,
        options: Optional[RestoreOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ChainRestoreResult:
        """
        Restore the full root of a chain and replay each incremental on top.

        A failed overlay stops the replay; the target keeps the state of the
        last applied step.

        Raises:
            ChainError: The chain cannot be resolved
            IntegrityError: An artifact in the chain fails verification
            ChainReplayError: An overlay failed after the base import
        """
        options = options or RestoreOptions()
        chain = await self.resolver.resolve_chain(backup_id)
        chain_ids = [r.id for r in chain]
        self._log("INFO", f"Restoring backup {backup_id} to {target_name} through {len(chain)} step(s)", {
            "chain": chain_ids,
        })

        if options.verify_integrity:
            for record in chain:
                await self.verifier.require(record.artifact_path, record.checksum)
            self._log("INFO", f"All {len(chain)} artifact(s) in chain verified")

        root = chain[0]
        base_options = options.model_copy(update={"checksum": None, "verify_integrity": False})
        base = await self.restore_full(
            root.artifact_path, target_name, base_options, progress_callback=progress_callback
        )
        base.integrity_verified = options.verify_integrity
        applied = [root.id]

        overlay_tracker = ProgressTracker("overlay", target_name, callback=progress_callback)
        overlay_tracker.start(steps_total=len(chain) - 1)
        overlay_tracker.set_phase("overlaying")

        for record in chain[1:]:
            try:
                with tempfile.TemporaryDirectory(prefix="wsl-chain-", dir=self.settings.STAGING_PATH) as scratch:
                    scratch_dir = Path(scratch)
                    members = await extract_archive(Path(record.artifact_path), scratch_dir)
                    await self.runtime.overlay_directory(
                        target_name, scratch_dir, ownership=ownership_map(members)
                    )
            except (BackupSystemError, OSError) as e:
                self._log("ERROR", f"Overlay of backup {record.id} onto {target_name} failed: {e}", {
                    "applied": applied,
                })
                raise ChainReplayError(
                    f"Chain replay stopped at backup {record.id}: {e}",
                    target_name=target_name,
                    applied_backup_ids=applied,
                    failed_backup_id=record.id
                ) from e

            applied.append(record.id)
            overlay_tracker.step_completed()
            self._log("INFO", f"Applied incremental {record.id} ({record.changed_file_count} file(s))")

        overlay_tracker.finish()
        log_success(logger, f"Restored {target_name} to backup {backup_id} ({len(applied) - 1} overlay(s))")
        return ChainRestoreResult(
            success=True,
            target_name=target_name,
            backup_id=backup_id,
            chain=chain_ids,
            applied_backup_ids=applied,
            overlays_applied=len(applied) - 1,
            last_applied_backup_id=applied[-1],
            base_restore=base,
            warnings=list(base.warnings),
        )

    async def restore_backup(
        self,
        backup_id: str,
        target_name: str,
        options: Optional[RestoreOptions] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ChainRestoreResult:
        """Restore a recorded backup, full or incremental."""
        options = options or RestoreOptions()
        record = await self.store.find(backup_id)
        if record is None:
            raise ValidationError(f"Backup {backup_id} not found")

        if record.backup_type == BackupType.INCREMENTAL:
            return await self.restore_chain(backup_id, target_name, options, progress_callback)

        full_options = options
        if options.verify_integrity and options.checksum is None:
            full_options = options.model_copy(update={"checksum": record.checksum})
        base = await self.restore_full(record.artifact_path, target_name, full_options, progress_callback)
        return ChainRestoreResult(
            success=True,
            target_name=target_name,
            backup_id=backup_id,
            chain=[record.id],
            applied_backup_ids=[record.id],
            last_applied_backup_id=record.id,
            base_restore=base,
            warnings=list(base.warnings),
        )
