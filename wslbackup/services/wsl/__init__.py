"""
Environment runtime factory and exports.
"""
from typing import Optional

from wslbackup.core.config import Settings
from wslbackup.services.wsl.base import EnvironmentRuntime, ExecResult
from wslbackup.services.wsl.runtime import WSLRuntime, parse_list_verbose, decode_wsl_output
from wslbackup.services.wsl.remote import RemoteWSLRuntime


def create_runtime(settings: Settings, host: Optional[str] = None) -> EnvironmentRuntime:
    """
    Factory function to create runtime instances.

    Args:
        settings: Application settings
        host: Remote host (``user@host``) or None for the local machine

    Returns:
        Runtime bound to that host
    """
    if host is None or host in ("localhost", "127.0.0.1"):
        return WSLRuntime(settings)
    return RemoteWSLRuntime(settings, host)


__all__ = [
    "EnvironmentRuntime",
    "ExecResult",
    "WSLRuntime",
    "RemoteWSLRuntime",
    "parse_list_verbose",
    "decode_wsl_output",
    "create_runtime",
]
