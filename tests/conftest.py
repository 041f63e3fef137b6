"""Shared fixtures and a filesystem-backed runtime for tests."""

import asyncio
import hashlib
import os
import shutil
import tarfile
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ExternalToolError
from wslbackup.models.backup import BackupRecord, BackupType, Checksum, EnvironmentInfo, new_backup_id
from wslbackup.services import build_services
from wslbackup.services.integrity import IntegrityVerifier
from wslbackup.services.metadata_store import MetadataStore
from wslbackup.services.wsl.base import EnvironmentRuntime, ExecResult


class FakeRuntime(EnvironmentRuntime):
    """
    Runtime whose distributions are plain directories.

    Exports are tar files of the directory, imports extract into a new one.
    Failure flags and counters let tests steer and observe the orchestration.
    """

    def __init__(self, settings: Settings, root: Path):
        super().__init__(settings)
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.environments: Dict[str, Dict] = {}
        self.commands: List[Tuple[str, List[str]]] = []
        self.overlays: List[Tuple[str, List[str]]] = []
        self.import_delay = 0.0
        self.import_fails: Set[str] = set()
        self.export_fails = False
        self.export_empty = False
        self.change_detection_fails = False
        self.archive_fails = False
        self.overlay_fails = False
        self.smoke_fails = False
        self.failing_programs: Set[str] = set()
        self.active_imports = 0
        self.max_active_imports = 0
        self.imports_started = 0
        self.unregistered: List[str] = []

    # Test helpers

    def rootfs(self, name: str) -> Path:
        return self.environments[name]["root"]

    def add_environment(self, name: str, files: Optional[Dict[str, str]] = None, status: str = "Stopped"):
        root = self.root / name
        root.mkdir(parents=True, exist_ok=True)
        self.environments[name] = {"root": root, "status": status, "version": "2"}
        old = time.time() - 3600
        for path, content in (files or {}).items():
            self.write(name, path, content, mtime=old)

    def write(self, name: str, path: str, content: str, mtime: Optional[float] = None):
        target = self.rootfs(name) / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        stamp = time.time() if mtime is None else mtime
        os.utime(target, (stamp, stamp))

    def read(self, name: str, path: str) -> str:
        return (self.rootfs(name) / path.lstrip("/")).read_text()

    def _require(self, name: str) -> Path:
        if name not in self.environments:
            raise ExternalToolError(f"There is no distribution with the supplied name: {name}", returncode=1)
        return self.rootfs(name)

    # Runtime interface

    async def list_environments(self) -> List[EnvironmentInfo]:
        return [
            EnvironmentInfo(name=name, status=env["status"], version=env["version"])
            for name, env in self.environments.items()
        ]

    async def export_environment(self, name: str, destination: Path) -> None:
        root = self._require(name)
        if self.export_fails:
            destination.write_bytes(b"partial")
            raise ExternalToolError(f"Export of {name} failed", returncode=1)
        if self.export_empty:
            destination.touch()
            return
        with tarfile.open(destination, "w") as tar:
            for child in sorted(root.iterdir()):
                tar.add(child, arcname=child.name)

    async def import_environment(self, name: str, install_dir: str, archive: Path, version: Optional[int] = None) -> None:
        if name in self.environments:
            raise ExternalToolError(f"A distribution with the supplied name already exists: {name}", returncode=1)
        root = self.root / name
        root.mkdir(parents=True, exist_ok=True)
        self.environments[name] = {"root": root, "status": "Installing", "version": str(version or 2)}
        self.imports_started += 1
        self.active_imports += 1
        self.max_active_imports = max(self.max_active_imports, self.active_imports)
        try:
            Path(install_dir).mkdir(parents=True, exist_ok=True)
            (Path(install_dir) / "ext4.vhdx").write_bytes(b"\0" * 4096)
            if self.import_delay:
                await asyncio.sleep(self.import_delay)
            if name in self.import_fails:
                raise ExternalToolError(f"Import of {name} failed", returncode=1)
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(root, filter="data")
            self.environments[name]["status"] = "Stopped"
        finally:
            self.active_imports -= 1

    async def exec_in_environment(
        self,
        name: str,
        command: Sequence[str],
        input_data: Optional[bytes] = None,
        timeout: Optional[float] = None
    ) -> ExecResult:
        root = self._require(name)
        command = list(command)
        self.commands.append((name, command))
        program = command[0]

        if program in self.failing_programs:
            return ExecResult(1, "", f"{program}: simulated failure")
        if program == "echo":
            if self.smoke_fails:
                return ExecResult(1, "", "exec format error")
            return ExecResult(0, " ".join(command[1:]) + "\n")
        if program == "cat":
            path = root / command[1].lstrip("/")
            if not path.is_file():
                return ExecResult(1, "", f"cat: {command[1]}: No such file or directory")
            return ExecResult(0, path.read_text())
        if program == "sh" and len(command) == 5:
            path = root / command[4].lstrip("/")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(input_data or b"")
            return ExecResult(0)
        if program == "test":
            return ExecResult(0 if (root / command[2].lstrip("/")).is_file() else 1)
        if program == "getent":
            passwd = root / "etc/passwd"
            return ExecResult(0, passwd.read_text() if passwd.is_file() else "")
        if program == "id":
            return ExecResult(0, f"{command[2]} sudo\n")
        if program == "dpkg-query":
            status = root / "var/lib/dpkg/fake-status"
            return ExecResult(0, status.read_text() if status.is_file() else "")
        if program == "useradd":
            name_arg = command[-1]
            uid = command[command.index("-u") + 1]
            home = command[command.index("-d") + 1]
            shell = command[command.index("-s") + 1]
            passwd = root / "etc/passwd"
            passwd.parent.mkdir(parents=True, exist_ok=True)
            with open(passwd, "a") as f:
                f.write(f"{name_arg}:x:{uid}:{uid}::{home}:{shell}\n")
            return ExecResult(0)
        if program in ("usermod", "df"):
            return ExecResult(0, "Used\n1000\n" if program == "df" else "")
        if program == "apt-get":
            return ExecResult(100, "", "E: Unable to locate package")
        if program == "/etc/init.wsl":
            return ExecResult(0, "started\n")
        return ExecResult(127, "", f"{program}: command not found")

    async def unregister_environment(self, name: str) -> None:
        self._require(name)
        env = self.environments.pop(name)
        shutil.rmtree(env["root"], ignore_errors=True)
        self.unregistered.append(name)

    async def terminate_environment(self, name: str) -> None:
        self._require(name)
        self.environments[name]["status"] = "Stopped"

    async def get_runtime_version(self) -> Optional[str]:
        return "WSL version: 2.0.0.0"

    async def list_changed_files(self, name: str, since: datetime, limit: int, exclude: Sequence[str] = ()) -> List[str]:
        root = self._require(name)
        if self.change_detection_fails:
            raise ExternalToolError("find failed", returncode=2)
        cutoff = since.timestamp()
        changed = []
        for path in sorted(root.rglob("*")):
            if path.is_file() and path.stat().st_mtime > cutoff:
                changed.append("/" + path.relative_to(root).as_posix())
        return changed[:limit]

    async def archive_files(self, name: str, paths: Sequence[str], destination: Path) -> None:
        root = self._require(name)
        if self.archive_fails:
            destination.write_bytes(b"partial")
            raise ExternalToolError("tar failed", returncode=2)
        with tarfile.open(destination, "w:gz") as tar:
            for path in paths:
                tar.add(root / path.lstrip("/"), arcname=path.lstrip("/"), recursive=False)

    async def overlay_directory(self, name: str, source_dir: Path, ownership=None) -> None:
        root = self._require(name)
        if self.overlay_fails:
            raise ExternalToolError(f"Overlay onto {name} failed", returncode=2)
        files = sorted(p.relative_to(source_dir).as_posix() for p in source_dir.rglob("*") if p.is_file())
        shutil.copytree(source_dir, root, dirs_exist_ok=True)
        self.overlays.append((name, files))


@pytest.fixture
def settings(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    return Settings(
        _env_file=None,
        BACKUP_BASE_PATH=str(tmp_path / "backups"),
        METADATA_FILE=str(tmp_path / "backups" / "metadata.json"),
        INSTALL_BASE_PATH=str(tmp_path / "installs"),
        STAGING_PATH=str(staging),
        PROGRESS_POLL_INTERVAL=0.01,
        IMPORT_TIMEOUT=30,
        LOG_FILE_ENABLED=False,
    )


@pytest.fixture
def runtime(settings, tmp_path):
    fake = FakeRuntime(settings, tmp_path / "distros")
    fake.add_environment("Ubuntu", {
        "/etc/hostname": "ubuntu\n",
        "/etc/wsl.conf": "[boot]\nsystemd=true\n",
        "/etc/passwd": "root:x:0:0:root:/root:/bin/bash\ndev:x:1000:1000::/home/dev:/bin/bash\n",
        "/home/dev/notes.txt": "first\n",
    })
    return fake


@pytest.fixture
def store(settings):
    return MetadataStore(settings)


@pytest.fixture
def verifier():
    return IntegrityVerifier()


@pytest.fixture
def services(settings, runtime):
    return build_services(settings, runtime=runtime)


@pytest.fixture
def record_factory(settings):
    """Build backup records backed by small artifact files (not yet stored)."""

    def _make(
        backup_type: BackupType = BackupType.FULL,
        parent_backup_id: Optional[str] = None,
        distribution: str = "Ubuntu",
        content: bytes = b"x" * 2048,
    ) -> BackupRecord:
        backup_id = new_backup_id()
        suffix = ".tar.gz" if backup_type == BackupType.INCREMENTAL else ".tar"
        path = Path(settings.BACKUP_BASE_PATH) / distribution / f"{backup_id}{suffix}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        incremental = backup_type == BackupType.INCREMENTAL
        return BackupRecord(
            id=backup_id,
            distribution_name=distribution,
            backup_type=backup_type,
            artifact_path=str(path),
            size_bytes=len(content),
            checksum=Checksum(value=hashlib.sha256(content).hexdigest()),
            parent_backup_id=parent_backup_id,
            changed_file_count=1 if incremental else None,
            changed_files=["/etc/hostname"] if incremental else None,
        )

    return _make
