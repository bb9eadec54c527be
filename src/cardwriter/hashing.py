"""
Content fingerprints for source and destination files.

Fingerprints are used for equality checks only (skip-if-identical and
post-copy validation), so the default is the fast non-cryptographic xxh64.
"""

import hashlib
import uuid
from pathlib import Path

import aiofiles
import aiofiles.os
import xxhash

from .models import BUFFER_SIZE, HASH_ALGORITHMS


class HashCalculator:
    """
    Incremental hash calculator supporting multiple algorithms.

    Parameters
    ----------
    algorithm : str, default="xxh64be"
        Hash algorithm to use. Supported: xxh64be, md5, sha1, sha256
    """

    def __init__(self, algorithm: str = "xxh64be"):
        self.algorithm = algorithm.lower()
        if self.algorithm == "xxh64be":
            self._hasher = xxhash.xxh64()
        elif self.algorithm in HASH_ALGORITHMS:
            self._hasher = hashlib.new(self.algorithm)
        else:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    def update(self, data: bytes) -> None:
        self._hasher.update(data)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


def missing_fingerprint() -> str:
    """
    Fingerprint for a path that does not exist.

    Returns
    -------
    str
        A fresh value that never equals a hex digest or another sentinel
    """
    return f"missing-{uuid.uuid4()}"


async def fingerprint(
    path: Path,
    algorithm: str = "xxh64be",
    buffer_size: int = BUFFER_SIZE,
) -> str:
    """
    Hash a file's content with a bounded read buffer.

    Parameters
    ----------
    path : Path
        File to hash
    algorithm : str, default="xxh64be"
        Hash algorithm to use
    buffer_size : int, default=BUFFER_SIZE
        Bytes read per chunk

    Returns
    -------
    str
        Hex digest, or ``missing_fingerprint()`` if the path does not exist

    Raises
    ------
    OSError
        If the file exists but cannot be read
    """
    if not await aiofiles.os.path.exists(path):
        return missing_fingerprint()

    hasher = HashCalculator(algorithm)
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(buffer_size):
            hasher.update(chunk)

    return hasher.hexdigest()
