"""
Local WSL runtime driving ``wsl.exe``.
"""
import asyncio
import shlex
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Sequence, Union, IO, Dict, Tuple
import logging

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import ExternalToolError, OperationTimeoutError
from wslbackup.models.backup import EnvironmentInfo
from wslbackup.services.wsl.base import EnvironmentRuntime, ExecResult

logger = logging.getLogger(__name__)

_NO_DISTRIBUTIONS_MARKERS = (
    "no installed distributions",
    "has no installed distributions",
)


def decode_wsl_output(data: bytes) -> str:
    """
    Decode output of wsl.exe management commands.

    wsl.exe writes UTF-16LE on most Windows builds; output produced by Linux
    commands inside a distribution is UTF-8.
    """
    if not data:
        return ""
    if data.startswith(b"\xff\xfe"):
        data = data[2:]
        return data.decode("utf-16-le", errors="replace")
    if b"\x00" in data:
        return data.decode("utf-16-le", errors="replace")
    return data.decode("utf-8", errors="replace")


def parse_list_verbose(output: str) -> List[EnvironmentInfo]:
    """
    Parse ``wsl --list --verbose`` output.

    Example::

          NAME            STATE           VERSION
        * Ubuntu-24.04    Running         2
          Debian          Stopped         1
    """
    environments = []
    for raw_line in output.replace("\r", "").splitlines():
        line = raw_line.strip()
        if not line:
            continue

        is_default = line.startswith("*")
        if is_default:
            line = line[1:].strip()

        parts = line.split()
        if len(parts) < 3 or parts[0].upper() == "NAME":
            continue

        # Names cannot contain spaces; state may ("Converting", "Installing")
        name, version = parts[0], parts[-1]
        status = " ".join(parts[1:-1])
        environments.append(EnvironmentInfo(
            name=name,
            status=status,
            version=version,
            is_default=is_default,
        ))

    return environments


class WSLRuntime(EnvironmentRuntime):
    """Runtime for distributions registered on this machine."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.executable = settings.WSL_EXECUTABLE

    def _command(self, args: Sequence[str]) -> List[str]:
        return [self.executable, *args]

    async def _run(
        self,
        args: Sequence[str],
        input_data: Optional[bytes] = None,
        stdin_path: Optional[Path] = None,
        stdout_path: Optional[Path] = None,
        timeout: Optional[float] = None
    ) -> tuple:
        """
        Run the runtime executable and return (returncode, stdout, stderr).

        The child process is killed when ``timeout`` elapses or when the
        awaiting task is cancelled.
        """
        command = self._command(args)
        logger.debug(f"Running: {' '.join(command)}")

        stdin_file: Optional[IO[bytes]] = None
        stdout_file: Optional[IO[bytes]] = None
        stdin: Union[int, IO[bytes], None] = asyncio.subprocess.DEVNULL
        stdout: Union[int, IO[bytes]] = asyncio.subprocess.PIPE

        try:
            if stdin_path is not None:
                stdin_file = open(stdin_path, "rb")
                stdin = stdin_file
            elif input_data is not None:
                stdin = asyncio.subprocess.PIPE
            if stdout_path is not None:
                stdout_file = open(stdout_path, "wb")
                stdout = stdout_file

            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=asyncio.subprocess.PIPE
                )
            except FileNotFoundError as e:
                raise ExternalToolError(
                    f"Runtime executable not found: {command[0]}",
                    command=command
                ) from e

            try:
                out, err = await asyncio.wait_for(
                    process.communicate(input=input_data if stdin_path is None else None),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                await self._kill(process)
                raise OperationTimeoutError(
                    f"Command timed out after {timeout}s: {' '.join(command)}",
                    timeout=timeout
                )
            except asyncio.CancelledError:
                await self._kill(process)
                raise

            return process.returncode, out or b"", err or b""

        finally:
            if stdin_file is not None:
                stdin_file.close()
            if stdout_file is not None:
                stdout_file.close()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _run_checked(self, args: Sequence[str], action: str, **kwargs) -> str:
        returncode, out, err = await self._run(args, **kwargs)
        if returncode != 0:
            stderr = decode_wsl_output(err) or decode_wsl_output(out)
            raise ExternalToolError(
                f"{action} failed (exit {returncode}): {stderr.strip()}",
                command=self._command(args),
                returncode=returncode,
                stderr=stderr
            )
        return decode_wsl_output(out)

    async def list_environments(self) -> List[EnvironmentInfo]:
        returncode, out, err = await self._run(
            ["--list", "--verbose"], timeout=self.settings.COMMAND_TIMEOUT
        )
        text = decode_wsl_output(out)
        if returncode != 0:
            message = (text + decode_wsl_output(err)).lower()
            if any(marker in message for marker in _NO_DISTRIBUTIONS_MARKERS):
                return []
            raise ExternalToolError(
                f"Listing distributions failed (exit {returncode})",
                command=self._command(["--list", "--verbose"]),
                returncode=returncode,
                stderr=decode_wsl_output(err)
            )
        return parse_list_verbose(text)

    async def export_environment(self, name: str, destination: Path) -> None:
        args = ["--export", name, str(destination)]
        if destination.suffix == ".vhdx":
            args.append("--vhd")
        await self._run_checked(args, f"Export of {name}", timeout=self.settings.EXPORT_TIMEOUT)

    async def import_environment(
        self,
        name: str,
        install_dir: str,
        archive: Path,
        version: Optional[int] = None
    ) -> None:
        Path(install_dir).mkdir(parents=True, exist_ok=True)
        args = ["--import", name, install_dir, str(archive)]
        if archive.suffix == ".vhdx":
            args.append("--vhd")
        elif version is not None:
            args.extend(["--version", str(version)])
        await self._run_checked(args, f"Import of {name}")

    async def exec_in_environment(
        self,
        name: str,
        command: Sequence[str],
        input_data: Optional[bytes] = None,
        timeout: Optional[float] = None
    ) -> ExecResult:
        returncode, out, err = await self._run(
            ["-d", name, "-u", "root", "--", *command],
            input_data=input_data,
            timeout=timeout
        )
        return ExecResult(
            returncode=returncode,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=decode_wsl_output(err)
        )

    async def unregister_environment(self, name: str) -> None:
        await self._run_checked(
            ["--unregister", name], f"Unregister of {name}",
            timeout=self.settings.COMMAND_TIMEOUT
        )

    async def terminate_environment(self, name: str) -> None:
        await self._run_checked(
            ["--terminate", name], f"Terminate of {name}",
            timeout=self.settings.COMMAND_TIMEOUT
        )

    async def get_runtime_version(self) -> Optional[str]:
        try:
            text = await self._run_checked(
                ["--version"], "Version query", timeout=self.settings.COMMAND_TIMEOUT
            )
        except ExternalToolError as e:
            logger.warning(f"Could not determine WSL version: {e}")
            return None
        for line in text.splitlines():
            if line.strip():
                return line.strip()
        return None

    async def list_changed_files(
        self,
        name: str,
        since: datetime,
        limit: int,
        exclude: Sequence[str] = ()
    ) -> List[str]:
        prune = " -o ".join(f"-path {shlex.quote(path)}" for path in exclude)
        prune_clause = f"\\( {prune} \\) -prune -o " if prune else ""
        script = (
            f"find / -xdev {prune_clause}-type f "
            f"-newermt @{int(since.timestamp())} -print 2>/dev/null "
            f"| head -n {int(limit)}"
        )
        result = await self.exec_in_environment(
            name, ["sh", "-c", script], timeout=self.settings.EXPORT_TIMEOUT
        )
        if not result.ok:
            raise ExternalToolError(
                f"Change detection in {name} failed (exit {result.returncode}): {result.stderr.strip()}",
                command=["sh", "-c", script],
                returncode=result.returncode,
                stderr=result.stderr
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def archive_files(self, name: str, paths: Sequence[str], destination: Path) -> None:
        args = ["-d", name, "-u", "root", "--",
                "tar", "-czf", "-", "--no-recursion", "--ignore-failed-read", "--files-from=-"]
        returncode, _, err = await self._run(
            args,
            input_data="\n".join(paths).encode("utf-8"),
            stdout_path=destination,
            timeout=self.settings.EXPORT_TIMEOUT
        )
        # GNU tar exits 1 when a file changed while being read
        if returncode > 1:
            raise ExternalToolError(
                f"Archiving changed files of {name} failed (exit {returncode})",
                command=self._command(args),
                returncode=returncode,
                stderr=decode_wsl_output(err)
            )

    async def overlay_directory(
        self,
        name: str,
        source_dir: Path,
        ownership: Optional[Dict[str, Tuple[int, int, int]]] = None
    ) -> None:
        ownership = ownership or {}

        def _restore_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
            original = ownership.get(info.name.rstrip("/"))
            if original is not None:
                info.uid, info.gid, info.mode = original
            else:
                info.uid = info.gid = 0
            info.uname = info.gname = ""
            return info

        with tempfile.TemporaryDirectory(prefix="wsl-overlay-", dir=self.settings.STAGING_PATH) as temp_dir:
            bundle = Path(temp_dir) / "overlay.tar"

            def _pack():
                with tarfile.open(bundle, "w") as tar:
                    for child in sorted(source_dir.iterdir()):
                        tar.add(child, arcname=child.name, filter=_restore_owner)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _pack)

            await self._run_checked(
                ["-d", name, "-u", "root", "--", "tar", "-xpf", "-", "-C", "/"],
                f"Overlay onto {name}",
                stdin_path=bundle,
                timeout=self.settings.IMPORT_TIMEOUT
            )
