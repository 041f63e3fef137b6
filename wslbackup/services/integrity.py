"""
Content digests for backup artifacts and migration packages.
"""
import hashlib
from pathlib import Path
from typing import Union
import logging

import aiofiles
import aiofiles.os

from wslbackup.core.exceptions import ValidationError, IntegrityError
from wslbackup.models.backup import Checksum

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 1024
SIDECAR_SUFFIX = ".sha256"


class IntegrityVerifier:
    """Computes and checks artifact checksums. Reads files, never writes them."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM, chunk_size: int = CHUNK_SIZE):
        if algorithm not in hashlib.algorithms_available:
            raise ValidationError(f"Unsupported digest algorithm: {algorithm}")
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    async def digest(self, path: Union[str, Path], algorithm: str = None) -> Checksum:
        """
        Compute the digest of a file.

        Args:
            path: File to hash
            algorithm: Override the configured algorithm

        Returns:
            Checksum tagged with the algorithm used
        """
        algorithm = (algorithm or self.algorithm).lower()
        try:
            hasher = hashlib.new(algorithm)
        except ValueError:
            raise ValidationError(f"Unsupported digest algorithm: {algorithm}")

        if not await aiofiles.os.path.isfile(path):
            raise ValidationError(f"Artifact not found: {path}")

        async with aiofiles.open(path, 'rb') as f:
            while chunk := await f.read(self.chunk_size):
                hasher.update(chunk)

        return Checksum(algorithm=algorithm, value=hasher.hexdigest())

    async def verify(self, path: Union[str, Path], expected: Checksum) -> bool:
        """Check a file against an expected checksum using its recorded algorithm."""
        actual = await self.digest(path, algorithm=expected.algorithm)
        matches = actual.value == expected.value
        if not matches:
            logger.warning(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        return matches

    async def require(self, path: Union[str, Path], expected: Checksum) -> Checksum:
        """
        Verify a file, raising instead of returning False.

        Raises:
            IntegrityError: If the digest does not match
        """
        actual = await self.digest(path, algorithm=expected.algorithm)
        if actual.value != expected.value:
            raise IntegrityError(
                f"Checksum mismatch for {path}",
                path=str(path),
                expected=str(expected),
                actual=str(actual)
            )
        return actual

    @staticmethod
    def sidecar_path(path: Union[str, Path]) -> Path:
        path = Path(path)
        return path.with_name(path.name + SIDECAR_SUFFIX)

    async def write_sidecar(self, path: Union[str, Path]) -> Checksum:
        """Hash ``path`` and write ``<path>.sha256`` in ``<algorithm>:<hex>  <name>`` form."""
        checksum = await self.digest(path)
        sidecar = self.sidecar_path(path)
        async with aiofiles.open(sidecar, 'w') as f:
            await f.write(f"{checksum.algorithm}:{checksum.value}  {Path(path).name}\n")
        return checksum

    async def read_sidecar(self, path: Union[str, Path]) -> Checksum:
        """
        Read the checksum stored next to ``path``.

        Accepts both ``<algorithm>:<hex>`` and plain sha256sum output.
        """
        sidecar = self.sidecar_path(path)
        if not await aiofiles.os.path.isfile(sidecar):
            raise ValidationError(f"Checksum file not found: {sidecar}")

        async with aiofiles.open(sidecar, 'r') as f:
            content = (await f.read()).strip()

        token = content.split()[0] if content else ""
        if not token:
            raise ValidationError(f"Empty checksum file: {sidecar}")
        if ":" not in token:
            token = f"{DEFAULT_ALGORITHM}:{token}"
        try:
            return Checksum.model_validate(token)
        except ValueError as e:
            raise ValidationError(f"Malformed checksum file {sidecar}: {e}")
