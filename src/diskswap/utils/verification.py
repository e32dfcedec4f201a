"""SHA256 utilities for OS image integrity checking."""

import hashlib
import logging
from pathlib import Path


def compute_sha256(file_path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute SHA256 hash of a file.

    Args:
        file_path: Path to file to hash
        chunk_size: Read buffer size (default 1MB, images are large)

    Returns:
        64-character hex SHA256 hash string

    Raises:
        FileNotFoundError: If file doesn't exist
        IOError: If file read fails
    """
    logger = logging.getLogger("diskswap.verification")
    sha256_hash = hashlib.sha256()

    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256_hash.update(chunk)

    result = sha256_hash.hexdigest()
    logger.debug(f"Computed SHA256 for {file_path.name}: {result}")
    return result


def parse_checksum_file(text: str) -> str:
    """Extract the hash from ``sha256sum``-style output (``<hash>  <name>``).

    Raises:
        ValueError: If the text does not start with a 64-char hex digest
    """
    fields = text.strip().split()
    if not fields:
        raise ValueError("Empty checksum file")
    digest = fields[0].lower()
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ValueError(f"Invalid SHA256 format: {fields[0]}")
    return digest
