"""Lazy line iteration over staged log files and client id hashing."""

import gzip
import hashlib
from pathlib import Path
from typing import Iterator


def iter_log_lines(path: Path) -> Iterator[str]:
    """
    Yield non-blank lines of a log file, one at a time.

    Files ending in .gz are decompressed on the fly. Calling again restarts
    from the beginning of the file.
    """
    path = Path(path)
    if path.name.endswith(".gz"):
        handle = gzip.open(path, "rt", encoding="utf-8", errors="replace")
    else:
        handle = open(path, "r", encoding="utf-8", errors="replace")

    with handle:
        for line in handle:
            line = line.strip()
            if line:
                yield line


def hash_client_id(raw: str) -> str:
    """One-way md5 hex digest of a client identifier (IP address)."""
    return hashlib.md5(raw.encode("utf-8")).hexdigest()
