"""Tests for the wsl.exe runtime adapters."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from wslbackup.core.exceptions import ExternalToolError, OperationTimeoutError
from wslbackup.services.wsl import RemoteWSLRuntime, WSLRuntime, create_runtime
from wslbackup.services.wsl.remote import quote_remote_arg
from wslbackup.services.wsl.runtime import decode_wsl_output, parse_list_verbose

LIST_OUTPUT = (
    "  NAME            STATE           VERSION\r\n"
    "* Ubuntu-24.04    Running         2\r\n"
    "  Debian          Stopped         1\r\n"
)


def test_decode_utf16_with_bom():
    assert decode_wsl_output(b"\xff\xfe" + "hello".encode("utf-16-le")) == "hello"


def test_decode_utf16_without_bom():
    assert decode_wsl_output("Ubuntu".encode("utf-16-le")) == "Ubuntu"


def test_decode_utf8():
    assert decode_wsl_output("ok\n".encode("utf-8")) == "ok\n"
    assert decode_wsl_output(b"") == ""


def test_parse_list_verbose():
    environments = parse_list_verbose(LIST_OUTPUT)

    assert [(e.name, e.status, e.version, e.is_default) for e in environments] == [
        ("Ubuntu-24.04", "Running", "2", True),
        ("Debian", "Stopped", "1", False),
    ]


def test_parse_multiword_state():
    environments = parse_list_verbose("  NAME STATE VERSION\n  Alpine Converting In Progress 2\n")

    assert environments[0].status == "Converting In Progress"


@pytest.fixture
def wsl(settings):
    runtime = WSLRuntime(settings)
    runtime._run = AsyncMock(return_value=(0, b"", b""))
    return runtime


@pytest.mark.asyncio
async def test_list_environments_decodes_utf16(wsl):
    wsl._run.return_value = (0, LIST_OUTPUT.encode("utf-16-le"), b"")

    environments = await wsl.list_environments()

    assert [e.name for e in environments] == ["Ubuntu-24.04", "Debian"]
    assert wsl._run.call_args.args[0] == ["--list", "--verbose"]


@pytest.mark.asyncio
async def test_no_installed_distributions(wsl):
    message = "Windows Subsystem for Linux has no installed distributions.".encode("utf-16-le")
    wsl._run.return_value = (1, message, b"")

    assert await wsl.list_environments() == []


@pytest.mark.asyncio
async def test_export_and_vhd_export_arguments(wsl, tmp_path):
    await wsl.export_environment("Ubuntu", tmp_path / "a.tar")
    assert wsl._run.call_args.args[0] == ["--export", "Ubuntu", str(tmp_path / "a.tar")]

    await wsl.export_environment("Ubuntu", tmp_path / "a.vhdx")
    assert wsl._run.call_args.args[0][-1] == "--vhd"


@pytest.mark.asyncio
async def test_import_passes_version(wsl, tmp_path):
    install_dir = tmp_path / "install"

    await wsl.import_environment("Copy", str(install_dir), tmp_path / "a.tar", version=1)

    assert wsl._run.call_args.args[0] == [
        "--import", "Copy", str(install_dir), str(tmp_path / "a.tar"), "--version", "1"
    ]
    assert install_dir.is_dir()


@pytest.mark.asyncio
async def test_failed_command_raises(wsl, tmp_path):
    wsl._run.return_value = (1, b"", "Access denied".encode("utf-16-le"))

    with pytest.raises(ExternalToolError) as exc_info:
        await wsl.unregister_environment("Ubuntu")

    assert exc_info.value.returncode == 1
    assert "Access denied" in exc_info.value.stderr


@pytest.mark.asyncio
async def test_exec_runs_as_root(wsl):
    wsl._run.return_value = (0, b"ok\n", b"")

    result = await wsl.exec_in_environment("Ubuntu", ["echo", "ok"])

    assert result.ok and result.stdout == "ok\n"
    assert wsl._run.call_args.args[0] == ["-d", "Ubuntu", "-u", "root", "--", "echo", "ok"]


@pytest.mark.asyncio
async def test_list_changed_files_builds_find(wsl):
    wsl._run.return_value = (0, b"/etc/hostname\n/home/dev/a\n", b"")
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    changed = await wsl.list_changed_files("Ubuntu", since, 50, exclude=["/proc", "/tmp"])

    assert changed == ["/etc/hostname", "/home/dev/a"]
    script = wsl._run.call_args.args[0][-1]
    assert f"-newermt @{int(since.timestamp())}" in script
    assert "-path /proc -o -path /tmp" in script
    assert script.endswith("head -n 50")


@pytest.mark.asyncio
async def test_archive_tolerates_changed_file_warning(wsl, tmp_path):
    wsl._run.return_value = (1, b"", b"file changed as we read it")

    await wsl.archive_files("Ubuntu", ["/etc/hostname"], tmp_path / "inc.tar.gz")

    wsl._run.return_value = (2, b"", b"fatal")
    with pytest.raises(ExternalToolError):
        await wsl.archive_files("Ubuntu", ["/etc/hostname"], tmp_path / "inc.tar.gz")


@pytest.mark.asyncio
async def test_runtime_version_failure_is_none(wsl):
    wsl._run.return_value = (1, b"", b"unknown option")

    assert await wsl.get_runtime_version() is None


def test_create_runtime_factory(settings):
    assert type(create_runtime(settings)) is WSLRuntime
    assert type(create_runtime(settings, "localhost")) is WSLRuntime

    remote = create_runtime(settings, "admin@win-box")
    assert isinstance(remote, RemoteWSLRuntime)
    assert remote.host == "admin@win-box"
    assert remote.install_dir_size("C:/anything") is None


def test_remote_command_is_wrapped_in_ssh(settings):
    remote = RemoteWSLRuntime(settings, "admin@win-box")

    command = remote._command(["-d", "Ubuntu", "--", "sh", "-c", "echo a b"])

    assert command[0] == "ssh"
    assert command[-8:] == ["admin@win-box", "wsl.exe", "-d", "Ubuntu", "--", "sh", "-c", '"echo a b"']


def test_quote_remote_arg():
    assert quote_remote_arg("plain") == "plain"
    assert quote_remote_arg("two words") == '"two words"'
    assert quote_remote_arg('say "hi"') == '"say \\"hi\\""'


@pytest.mark.asyncio
async def test_install_dir_size(settings, tmp_path):
    runtime = WSLRuntime(settings)
    (tmp_path / "disk").mkdir()
    (tmp_path / "disk" / "ext4.vhdx").write_bytes(b"\0" * 300)

    assert runtime.install_dir_size(str(tmp_path / "disk")) == 300
    assert runtime.install_dir_size(str(tmp_path / "missing")) is None
    assert runtime.default_install_dir("Copy") == str(Path(settings.INSTALL_BASE_PATH) / "Copy")


class HangingProcess:
    """Subprocess stand-in that never finishes on its own."""

    def __init__(self):
        self.returncode = None
        self.killed = False

    async def communicate(self, input=None):
        await asyncio.sleep(60)

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


@pytest.fixture
def hanging_processes(monkeypatch):
    processes = []

    async def fake_exec(*command, **kwargs):
        process = HangingProcess()
        processes.append((list(command), process))
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return processes


@pytest.mark.asyncio
async def test_remote_copy_timeout_is_operation_timeout(settings, hanging_processes):
    remote = RemoteWSLRuntime(settings, "admin@win-box")

    with pytest.raises(OperationTimeoutError) as exc_info:
        await remote._exec_local(["scp", "a.tar", "admin@win-box:C:/a.tar"], "Upload of a.tar", 0.01)

    assert exc_info.value.timeout == 0.01
    assert hanging_processes[0][1].killed


@pytest.mark.asyncio
async def test_remote_import_timeout_survives_cleanup_timeout(settings, hanging_processes, tmp_path):
    settings.EXPORT_TIMEOUT = 0.01
    settings.COMMAND_TIMEOUT = 0.01
    remote = RemoteWSLRuntime(settings, "admin@win-box")

    with pytest.raises(OperationTimeoutError, match="Upload"):
        await remote.import_environment("Copy", "C:/distros/Copy", tmp_path / "a.tar")

    assert [command[0] for command, _ in hanging_processes] == ["scp", "ssh"]
    assert all(process.killed for _, process in hanging_processes)
