"""
Tar archive helpers shared by chain replay and migration packages.
"""
import asyncio
import tarfile
from pathlib import Path, PurePosixPath
from typing import Dict, Any, List, Optional, Tuple
import logging

from wslbackup.core.exceptions import ValidationError, ExternalToolError

logger = logging.getLogger(__name__)

_WRITE_MODES = {
    "gzip": "w:gz",
    "bz2": "w:bz2",
    "xz": "w:xz",
    "none": "w"
}

TAR_MAGIC_OFFSET = 257
GZIP_MAGIC = b"\x1f\x8b"
VHDX_MAGIC = b"vhdxfile"


def detect_format(path: Path) -> Optional[str]:
    """Return "tar", "gzip" or "vhdx" from the file signature, or None."""
    with open(path, "rb") as f:
        header = f.read(TAR_MAGIC_OFFSET + 8)
    if header.startswith(GZIP_MAGIC):
        return "gzip"
    if header.startswith(VHDX_MAGIC):
        return "vhdx"
    if header[TAR_MAGIC_OFFSET:TAR_MAGIC_OFFSET + 5] == b"ustar":
        return "tar"
    return None


def _safe_members(tar: tarfile.TarFile, destination: Path) -> List[tarfile.TarInfo]:
    root = destination.resolve()
    members = []
    for member in tar.getmembers():
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts:
            raise ValidationError(f"Unsafe path in archive: {member.name}")
        if not (root / member.name).resolve().is_relative_to(root):
            raise ValidationError(f"Archive member escapes destination: {member.name}")
        if member.isdev():
            logger.debug(f"Skipping device entry {member.name}")
            continue
        members.append(member)
    return members


def create_archive_sync(source_dir: Path, output_file: Path, compression: str = "gzip") -> Dict[str, Any]:
    mode = _WRITE_MODES.get(compression, "w:gz")

    with tarfile.open(output_file, mode) as tar:
        for child in sorted(source_dir.iterdir()):
            tar.add(child, arcname=child.name)

    archive_size = output_file.stat().st_size
    original_size = sum(
        f.stat().st_size
        for f in source_dir.rglob("*")
        if f.is_file()
    )

    return {
        "archive_path": str(output_file),
        "original_size": original_size,
        "compressed_size": archive_size,
        "compression_ratio": original_size / archive_size if archive_size > 0 else 0
    }


Ownership = Dict[str, Tuple[int, int, int]]


def extract_archive_sync(archive: Path, destination: Path) -> List[tarfile.TarInfo]:
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            members = _safe_members(tar, destination)
            tar.extractall(destination, members=members, filter="data")
    except tarfile.TarError as e:
        raise ExternalToolError(f"Failed to extract {archive}: {e}")
    return members


def ownership_map(members: List[tarfile.TarInfo]) -> Ownership:
    """Original (uid, gid, mode) per member name, for re-packing extracted files."""
    return {m.name.rstrip("/"): (m.uid, m.gid, m.mode) for m in members}


async def create_archive(source_dir: Path, output_file: Path, compression: str = "gzip") -> Dict[str, Any]:
    """
    Create a compressed archive of a directory's contents.

    Args:
        source_dir: Directory whose children become archive roots
        output_file: Output archive file path
        compression: Compression type (gzip, bz2, xz, none)

    Returns:
        Dictionary with archive information
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, create_archive_sync, source_dir, output_file, compression)
    except (OSError, tarfile.TarError) as e:
        logger.error(f"Failed to create archive {output_file}: {e}")
        raise ExternalToolError(f"Failed to create archive {output_file}: {e}")


async def extract_archive(archive: Path, destination: Path) -> List[tarfile.TarInfo]:
    """
    Extract an archive, rejecting members that would land outside
    ``destination``.

    Returns:
        Headers of the extracted members
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, extract_archive_sync, archive, destination)
