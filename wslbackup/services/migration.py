"""
Migration packages.

A package is one ``.wslpkg.tar.gz`` bundle holding a full snapshot of a
distribution and a ``manifest.json`` describing what was captured alongside
it (configuration files, installed packages, user accounts). A
``<package>.sha256`` sidecar is written next to every bundle.
"""
import re
import socket
import tempfile
from pathlib import Path
from typing import Optional, List, Dict, Tuple, Any, Awaitable
import logging

from pydantic import ValidationError as PydanticValidationError

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import (
    BackupSystemError,
    ConfigurationWarning,
    ExternalToolError,
    ValidationError,
)
from wslbackup.core.logging_handler import log_success
from wslbackup.models.backup import utcnow
from wslbackup.models.migration import (
    MANIFEST_FILENAME,
    PACKAGE_SUFFIX,
    DeployOptions,
    DeployResult,
    InstalledPackage,
    MigrationManifest,
    PackOptions,
    PackResult,
    UserAccount,
)
from wslbackup.models.restore import RestoreOptions
from wslbackup.services.archive import create_archive, extract_archive
from wslbackup.services.backup_chain import ChainResolver
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.metadata_store import MetadataStore
from wslbackup.services.restore import RestoreOrchestrator
from wslbackup.services.snapshot import SnapshotEngine, partial_artifact
from wslbackup.services.wsl.base import EnvironmentRuntime

logger = logging.getLogger(__name__)

SNAPSHOT_FILENAME = "snapshot.tar"
INIT_SCRIPT = "/etc/init.wsl"
MIN_REGULAR_UID = 1000
NOBODY_UID = 65534

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def parse_passwd(content: str, min_uid: int = MIN_REGULAR_UID) -> List[UserAccount]:
    """Regular accounts from ``getent passwd`` output."""
    users = []
    for line in content.splitlines():
        fields = line.strip().split(":")
        if len(fields) < 7:
            continue
        try:
            uid, gid = int(fields[2]), int(fields[3])
        except ValueError:
            continue
        if uid < min_uid or uid == NOBODY_UID:
            continue
        users.append(UserAccount(name=fields[0], uid=uid, gid=gid, home=fields[5], shell=fields[6]))
    return users


def parse_dpkg_query(content: str) -> List[InstalledPackage]:
    """Packages from ``dpkg-query -W -f '${Package}\\t${Version}\\n'`` output."""
    packages = []
    for line in content.splitlines():
        if not line.strip():
            continue
        name, _, version = line.partition("\t")
        packages.append(InstalledPackage(name=name.strip(), version=version.strip() or None))
    return packages


class MigrationPackager:
    """Service for packing distributions and deploying packages onto a runtime."""

    def __init__(
        self,
        runtime: EnvironmentRuntime,
        settings: Settings,
        verifier: Optional[IntegrityVerifier] = None,
        restorer: Optional[RestoreOrchestrator] = None,
        log_callback=None
    ):
        """
        Initialize the migration packager.

        Args:
            runtime: Runtime the source or target distributions live on
            settings: Application settings
            verifier: Digest calculator for snapshots and packages
            restorer: Restore orchestrator bound to the same runtime
            log_callback: Optional callback function for verbose logging.
                          Signature: callback(level: str, message: str, details: dict = None)
        """
        self.runtime = runtime
        self.settings = settings
        self.verifier = verifier or IntegrityVerifier()
        self.log_callback = log_callback
        self.engine = SnapshotEngine(runtime, self.verifier, settings, log_callback=log_callback)
        if restorer is None:
            store = MetadataStore(settings)
            restorer = RestoreOrchestrator(
                runtime, store, self.verifier,
                ChainResolver(store, settings, self.verifier),
                settings, log_callback=log_callback
            )
        self.restorer = restorer

    def _log(self, level: str, message: str, details: dict = None):
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    # ------------------------------------------------------------------
    # Manifest capture
    # ------------------------------------------------------------------

    async def _exec_checked(self, name: str, command: List[str], input_data: Optional[bytes] = None) -> str:
        result = await self.runtime.exec_in_environment(
            name, command, input_data=input_data, timeout=self.settings.COMMAND_TIMEOUT
        )
        if not result.ok:
            raise ExternalToolError(
                f"{' '.join(command)} failed in {name} (exit {result.returncode}): {result.stderr.strip()}",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr
            )
        return result.stdout

    async def _capture_config_files(self, name: str, warnings: List[str]) -> Dict[str, str]:
        captured = {}
        for path in self.settings.MIGRATION_CONFIG_FILES:
            result = await self.runtime.exec_in_environment(
                name, ["cat", path], timeout=self.settings.COMMAND_TIMEOUT
            )
            if result.ok:
                captured[path] = result.stdout
            elif "No such file" in result.stderr:
                logger.debug(f"{path} not present in {name}")
            else:
                message = f"Could not capture {path} from {name}: {result.stderr.strip()}"
                self._log("WARNING", message)
                warnings.append(message)
        return captured

    async def _capture_packages(self, name: str) -> List[InstalledPackage]:
        output = await self._exec_checked(name, ["dpkg-query", "-W", "-f", "${Package}\t${Version}\n"])
        return parse_dpkg_query(output)

    async def _capture_users(self, name: str) -> List[UserAccount]:
        users = parse_passwd(await self._exec_checked(name, ["getent", "passwd"]))
        for user in users:
            groups = await self._exec_checked(name, ["id", "-nG", user.name])
            user.groups = groups.split()
        return users

    async def _best_effort_capture(self, label: str, name: str, coro: Awaitable, warnings: List[str]):
        try:
            return await coro
        except BackupSystemError as e:
            message = f"Could not capture {label} from {name}: {e}"
            self._log("WARNING", message)
            warnings.append(message)
            return None

    async def capture_manifest(
        self,
        environment: str,
        options: PackOptions,
        warnings: List[str]
    ) -> Dict[str, Any]:
        """Manifest fields other than the snapshot ones, which are known only after export."""
        info = await self.engine.describe_environment(environment)
        fields: Dict[str, Any] = {
            "source_machine": socket.gethostname(),
            "source_distribution": info.name,
            "captured_at": utcnow(),
            "runtime_version": await self.runtime.get_runtime_version(),
            "environment": info,
        }
        if options.include_config:
            fields["config_files"] = await self._capture_config_files(info.name, warnings)
        if options.include_packages:
            fields["packages"] = await self._best_effort_capture(
                "installed packages", info.name, self._capture_packages(info.name), warnings
            )
        if options.include_users:
            fields["users"] = await self._best_effort_capture(
                "user accounts", info.name, self._capture_users(info.name), warnings
            )
        return fields

    def package_path(self, output_dir: Path, environment: str) -> Path:
        stamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
        safe_name = _SAFE_NAME.sub("_", environment)
        return output_dir / f"{safe_name}-{stamp}{PACKAGE_SUFFIX}"

    async def pack(
        self,
        environment: str,
        output_dir,
        options: Optional[PackOptions] = None
    ) -> PackResult:
        """
        Build a migration package for ``environment`` in ``output_dir``.

        Raises:
            ValidationError: Unknown distribution or existing package path
            ExternalToolError: Export or bundling failed (no partial package remains)
        """
        options = options or PackOptions()
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        warnings: List[str] = []

        self._log("INFO", f"Packing {environment} into {output_dir}")
        draft = await self.capture_manifest(environment, options, warnings)
        package = self.package_path(output_dir, draft["source_distribution"])
        if package.exists():
            raise ValidationError(f"Package already exists: {package}")

        with tempfile.TemporaryDirectory(prefix="wsl-pack-", dir=self.settings.STAGING_PATH) as staging:
            staging_dir = Path(staging)
            snapshot = await self.engine.create_full(
                draft["source_distribution"],
                staging_dir / SNAPSHOT_FILENAME,
                terminate_before_export=options.terminate_before_export
            )

            try:
                manifest = MigrationManifest.model_validate({
                    **draft,
                    "snapshot_file": SNAPSHOT_FILENAME,
                    "snapshot_checksum": snapshot.checksum,
                    "snapshot_size_bytes": snapshot.size_bytes,
                })
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid migration manifest for {environment}: {e}")
            (staging_dir / MANIFEST_FILENAME).write_text(manifest.model_dump_json(indent=2), encoding="utf-8")

            with partial_artifact(package):
                await create_archive(staging_dir, package, compression="gzip")
                checksum = await self.verifier.write_sidecar(package)

        size = package.stat().st_size
        log_success(logger, f"Packed {manifest.source_distribution} into {package.name} ({size} bytes)")
        return PackResult(
            success=True,
            distribution_name=manifest.source_distribution,
            package_path=str(package),
            checksum=str(checksum),
            size_bytes=size,
            manifest=manifest,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    @staticmethod
    def _read_manifest(scratch_dir: Path) -> Tuple[MigrationManifest, Path]:
        manifest_path = scratch_dir / MANIFEST_FILENAME
        if not manifest_path.is_file():
            raise ValidationError(f"Package has no {MANIFEST_FILENAME}")
        try:
            manifest = MigrationManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid migration manifest: {e}")

        snapshot = (scratch_dir / manifest.snapshot_file).resolve()
        if not snapshot.is_relative_to(scratch_dir.resolve()) or not snapshot.is_file():
            raise ValidationError(f"Snapshot {manifest.snapshot_file} missing from package")
        return manifest, snapshot

    async def _apply_config_files(self, target: str, manifest: MigrationManifest, applied: List[str]):
        for path, content in (manifest.config_files or {}).items():
            await self.runtime.write_file(target, path, content)
            applied.append(path)

    async def _ensure_users(self, target: str, manifest: MigrationManifest, applied: List[str]):
        existing = {u.name for u in parse_passwd(await self._exec_checked(target, ["getent", "passwd"]), 0)}
        for user in manifest.users or []:
            if user.name in existing:
                continue
            await self._exec_checked(target, [
                "useradd", "-m", "-u", str(user.uid), "-d", user.home, "-s", user.shell, user.name
            ])
            extra_groups = [g for g in user.groups if g != user.name]
            if extra_groups:
                await self._exec_checked(target, ["usermod", "-aG", ",".join(extra_groups), user.name])
            applied.append(f"user:{user.name}")

    async def _install_packages(self, target: str, manifest: MigrationManifest, applied: List[str]):
        installed = {p.name for p in parse_dpkg_query(
            await self._exec_checked(target, ["dpkg-query", "-W", "-f", "${Package}\t${Version}\n"])
        )}
        missing = [p.name for p in manifest.packages or [] if p.name not in installed]
        if not missing:
            return
        await self._exec_checked(target, ["apt-get", "install", "-y", "--no-install-recommends", *missing])
        applied.append(f"packages:{len(missing)}")

    async def _run_init_script(self, target: str, manifest: MigrationManifest, applied: List[str]):
        check = await self.runtime.exec_in_environment(
            target, ["test", "-x", INIT_SCRIPT], timeout=self.settings.COMMAND_TIMEOUT
        )
        if not check.ok:
            logger.debug(f"{INIT_SCRIPT} not present in {target}")
            return
        await self._exec_checked(target, [INIT_SCRIPT, "start"])
        applied.append(INIT_SCRIPT)

    async def unpack_and_deploy(
        self,
        package,
        target_name: str,
        options: Optional[DeployOptions] = None
    ) -> DeployResult:
        """
        Deploy a migration package as distribution ``target_name``.

        Configuration reapplication is best-effort: each failed step is
        reported in ``warnings`` and never fails the deployment.

        Raises:
            ValidationError: Missing package, malformed manifest or snapshot
            IntegrityError: Package or snapshot checksum mismatch
        """
        options = options or DeployOptions()
        package = Path(package)
        if not package.is_file():
            raise ValidationError(f"Package not found: {package}")

        warnings: List[str] = []
        if self.verifier.sidecar_path(package).is_file():
            await self.verifier.require(package, await self.verifier.read_sidecar(package))
            self._log("INFO", f"Package {package.name} matches its sidecar checksum")
        elif options.verify_integrity:
            message = f"No checksum sidecar for {package.name}; package checksum not verified"
            self._log("WARNING", message)
            warnings.append(message)

        applied: List[str] = []
        with tempfile.TemporaryDirectory(prefix="wsl-deploy-", dir=self.settings.STAGING_PATH) as scratch:
            scratch_dir = Path(scratch)
            await extract_archive(package, scratch_dir)
            manifest, snapshot = self._read_manifest(scratch_dir)

            restore_options = RestoreOptions(
                force=options.force,
                verify_integrity=options.verify_integrity,
                checksum=manifest.snapshot_checksum if options.verify_integrity else None,
                timeout=options.timeout,
                install_dir=options.install_dir,
                version=options.version,
            )
            restored = await self.restorer.restore_full(snapshot, target_name, restore_options)
            warnings.extend(restored.warnings)

        steps = []
        if options.apply_config:
            steps.extend([
                ("configuration files", self._apply_config_files),
                ("user accounts", self._ensure_users),
                ("packages", self._install_packages),
            ])
        if options.run_init_script:
            steps.append(("init script", self._run_init_script))

        for label, step in steps:
            try:
                await step(target_name, manifest, applied)
            except BackupSystemError as e:
                warning = ConfigurationWarning(f"Reapplying {label} on {target_name} failed: {e}")
                self._log("WARNING", str(warning))
                warnings.append(str(warning))

        log_success(
            logger,
            f"Deployed {manifest.source_distribution} from {package.name} as {target_name}"
            + (f" on {self.runtime.host}" if self.runtime.host else "")
        )
        return DeployResult(
            success=True,
            package_path=str(package),
            target_name=target_name,
            host=self.runtime.host,
            source_distribution=manifest.source_distribution,
            config_applied=applied,
            warnings=warnings,
        )
