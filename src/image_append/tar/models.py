"""Data models for layer archives."""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ArchiveEntry:
    """One filesystem node written into a layer archive."""

    name: str  # Path within the archive, forward slashes
    source: Path  # Path on the host
    is_dir: bool
    mode: int
    size: int
    mtime: int
