"""
Base environment runtime interface.

A runtime wraps the export/import/list/exec/unregister primitives of the
virtualization host. Implementations exist for the local ``wsl.exe`` and for
a remote Windows host reached over SSH.
"""
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Sequence, Dict, Tuple
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ExternalToolError, ValidationError
from wslbackup.models.backup import EnvironmentInfo

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Result of a command executed inside a distribution."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class EnvironmentRuntime(ABC):
    """Abstract base class for environment runtimes."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def host(self) -> Optional[str]:
        """Remote host name, or None for the local machine."""
        return None

    @abstractmethod
    async def list_environments(self) -> List[EnvironmentInfo]:
        """List registered distributions with status and WSL version."""
        pass

    @abstractmethod
    async def export_environment(self, name: str, destination: Path) -> None:
        """
        Export a distribution to an archive file.

        Raises:
            ExternalToolError: If the export primitive fails
        """
        pass

    @abstractmethod
    async def import_environment(
        self,
        name: str,
        install_dir: str,
        archive: Path,
        version: Optional[int] = None
    ) -> None:
        """
        Import an archive as a new distribution.

        Cancelling the awaiting task terminates the import.

        Raises:
            ExternalToolError: If the import primitive fails
        """
        pass

    @abstractmethod
    async def exec_in_environment(
        self,
        name: str,
        command: Sequence[str],
        input_data: Optional[bytes] = None,
        timeout: Optional[float] = None
    ) -> ExecResult:
        """Run a command inside a distribution as root."""
        pass

    @abstractmethod
    async def unregister_environment(self, name: str) -> None:
        """Unregister a distribution and delete its disk."""
        pass

    @abstractmethod
    async def terminate_environment(self, name: str) -> None:
        """Stop a running distribution."""
        pass

    @abstractmethod
    async def get_runtime_version(self) -> Optional[str]:
        """Version string of the runtime itself."""
        pass

    @abstractmethod
    async def list_changed_files(
        self,
        name: str,
        since: datetime,
        limit: int,
        exclude: Sequence[str] = ()
    ) -> List[str]:
        """
        List regular files modified after ``since``.

        At most ``limit`` absolute paths are returned.

        Raises:
            ExternalToolError: If change detection fails
        """
        pass

    @abstractmethod
    async def archive_files(self, name: str, paths: Sequence[str], destination: Path) -> None:
        """
        Write a gzip-compressed tar of ``paths`` (taken from inside the
        distribution) to ``destination``.

        Raises:
            ExternalToolError: If the archive step fails
        """
        pass

    @abstractmethod
    async def overlay_directory(
        self,
        name: str,
        source_dir: Path,
        ownership: Optional[Dict[str, Tuple[int, int, int]]] = None
    ) -> None:
        """
        Copy the tree under ``source_dir`` onto the distribution root.

        Args:
            name: Distribution name
            source_dir: Extracted files, laid out relative to "/"
            ownership: Original (uid, gid, mode) per relative path
        """
        pass

    def default_install_dir(self, name: str) -> str:
        return str(Path(self.settings.INSTALL_BASE_PATH) / name)

    def install_dir_size(self, install_dir: str) -> Optional[int]:
        """Bytes currently written under a local install dir (import progress)."""
        path = Path(install_dir)
        if not path.is_dir():
            return None
        total = 0
        for root, _, files in os.walk(path):
            for filename in files:
                try:
                    total += (Path(root) / filename).stat().st_size
                except OSError:
                    continue
        return total

    async def get_environment(self, name: str) -> Optional[EnvironmentInfo]:
        """
        Look up one distribution, including used space when it is running.
        """
        for info in await self.list_environments():
            if info.name.lower() == name.lower():
                if info.status.lower() == "running" and info.used_space_bytes is None:
                    info.used_space_bytes = await self._query_used_space(info.name)
                return info
        return None

    async def environment_exists(self, name: str) -> bool:
        return any(info.name.lower() == name.lower() for info in await self.list_environments())

    async def _query_used_space(self, name: str) -> Optional[int]:
        result = await self.exec_in_environment(
            name, ["df", "-B1", "--output=used", "/"],
            timeout=self.settings.COMMAND_TIMEOUT
        )
        if not result.ok:
            logger.debug(f"df failed in {name}: {result.stderr.strip()}")
            return None
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if len(lines) < 2 or not lines[-1].isdigit():
            return None
        return int(lines[-1])

    async def read_file(self, name: str, path: str) -> str:
        result = await self.exec_in_environment(
            name, ["cat", path], timeout=self.settings.COMMAND_TIMEOUT
        )
        if not result.ok:
            raise ExternalToolError(
                f"Failed to read {path} in {name}: {result.stderr.strip()}",
                command=["cat", path],
                returncode=result.returncode,
                stderr=result.stderr
            )
        return result.stdout

    async def write_file(self, name: str, path: str, content: str) -> None:
        if not path.startswith("/"):
            raise ValidationError(f"Path inside distribution must be absolute: {path}")
        command = ["sh", "-c", 'mkdir -p "$(dirname "$1")" && cat > "$1"', "sh", path]
        result = await self.exec_in_environment(
            name, command,
            input_data=content.encode("utf-8"),
            timeout=self.settings.COMMAND_TIMEOUT
        )
        if not result.ok:
            raise ExternalToolError(
                f"Failed to write {path} in {name}: {result.stderr.strip()}",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr
            )
