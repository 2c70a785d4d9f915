"""Layer archive construction."""

from .archive import build_archive, collect_entries, write_archive
from .models import ArchiveEntry

__all__ = ["ArchiveEntry", "build_archive", "collect_entries", "write_archive"]
