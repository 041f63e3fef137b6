"""
WSL runtime on a remote Windows host reached over SSH.

Management commands are sent as ``ssh <host> wsl.exe ...``; archives are
moved with ``scp`` through a staging directory on the remote host.
"""
import asyncio
import uuid
from pathlib import Path
from typing import Optional, List, Sequence
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import BackupSystemError, ExternalToolError, OperationTimeoutError
from wslbackup.services.wsl.runtime import WSLRuntime, decode_wsl_output

logger = logging.getLogger(__name__)


def quote_remote_arg(arg: str) -> str:
    """Quote one argument for the remote Windows command line."""
    if arg and not any(ch in arg for ch in ' \t"&|<>^()'):
        return arg
    return '"' + arg.replace('"', '\\"') + '"'


class RemoteWSLRuntime(WSLRuntime):
    """Runtime for distributions on another machine."""

    def __init__(self, settings: Settings, host: str):
        super().__init__(settings)
        self._host = host
        self.staging_dir = settings.REMOTE_STAGING_DIR.rstrip("/\\")

    @property
    def host(self) -> Optional[str]:
        return self._host

    def _command(self, args: Sequence[str]) -> List[str]:
        return [
            "ssh", *self.settings.SSH_OPTIONS, self._host,
            self.executable, *(quote_remote_arg(a) for a in args)
        ]

    def default_install_dir(self, name: str) -> str:
        return f"{self.settings.REMOTE_INSTALL_BASE_PATH.rstrip('/')}/{name}"

    def install_dir_size(self, install_dir: str) -> Optional[int]:
        return None

    def _staging_path(self, suffix: str) -> str:
        return f"{self.staging_dir}/{uuid.uuid4().hex}{suffix}"

    async def _ssh(self, remote_command: List[str], action: str, timeout: Optional[float] = None):
        command = ["ssh", *self.settings.SSH_OPTIONS, self._host, *remote_command]
        await self._exec_local(command, action, timeout)

    async def _scp(self, source: str, destination: str, action: str):
        command = ["scp", "-q", *self.settings.SSH_OPTIONS, source, destination]
        await self._exec_local(command, action, self.settings.EXPORT_TIMEOUT)

    async def _exec_local(self, command: List[str], action: str, timeout: Optional[float]):
        logger.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            raise ExternalToolError(f"{command[0]} not found", command=command) from e

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise OperationTimeoutError(
                f"{action} on {self._host} timed out after {timeout}s",
                timeout=timeout
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            stderr = decode_wsl_output(err) or decode_wsl_output(out)
            raise ExternalToolError(
                f"{action} on {self._host} failed (exit {process.returncode}): {stderr.strip()}",
                command=command,
                returncode=process.returncode,
                stderr=stderr
            )

    async def _remove_remote(self, remote_path: str):
        try:
            await self._ssh(
                ["cmd", "/c", "del", "/q", quote_remote_arg(remote_path.replace("/", "\\"))],
                "Staging cleanup",
                timeout=self.settings.COMMAND_TIMEOUT
            )
        except BackupSystemError as e:
            logger.warning(f"Failed to remove staging file {remote_path} on {self._host}: {e}")

    async def export_environment(self, name: str, destination: Path) -> None:
        remote_path = self._staging_path("".join(destination.suffixes) or ".tar")
        try:
            await super().export_environment(name, Path(remote_path))
            await self._scp(f"{self._host}:{remote_path}", str(destination), f"Download of {name} export")
        finally:
            await self._remove_remote(remote_path)

    async def import_environment(
        self,
        name: str,
        install_dir: str,
        archive: Path,
        version: Optional[int] = None
    ) -> None:
        remote_path = self._staging_path("".join(archive.suffixes) or ".tar")
        try:
            await self._scp(str(archive), f"{self._host}:{remote_path}", f"Upload of {archive.name}")
            args = ["--import", name, install_dir, remote_path]
            if archive.suffix == ".vhdx":
                args.append("--vhd")
            elif version is not None:
                args.extend(["--version", str(version)])
            await self._run_checked(args, f"Import of {name} on {self._host}")
        finally:
            await self._remove_remote(remote_path)
