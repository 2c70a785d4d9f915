"""Deterministic tar archiving of local files into a layer."""

import io
import logging
import os
import stat
import tarfile
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Union

from ..exceptions import ArchiveError
from .models import ArchiveEntry

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def _base_name(source: Path) -> str:
    name = os.path.basename(os.path.normpath(source))
    if name in ("", ".", ".."):
        name = source.resolve().name
    return name


def _entry_for(source: Path, name: str, st: os.stat_result) -> ArchiveEntry:
    is_dir = stat.S_ISDIR(st.st_mode)
    return ArchiveEntry(
        name=name,
        source=source,
        is_dir=is_dir,
        mode=stat.S_IMODE(st.st_mode),
        size=0 if is_dir else st.st_size,
        mtime=int(st.st_mtime),
    )


def _is_archivable(st: os.stat_result) -> bool:
    return stat.S_ISREG(st.st_mode) or stat.S_ISDIR(st.st_mode)


def _walk(directory: Path, prefix: str) -> Iterator[ArchiveEntry]:
    """Yield entries below ``directory`` depth-first in sorted name order."""
    with os.scandir(directory) as it:
        children = sorted(it, key=lambda child: child.name)

    for child in children:
        st = child.stat(follow_symlinks=False)
        if not _is_archivable(st):
            logger.debug("Skipping special file %s", child.path)
            continue
        name = f"{prefix}/{child.name}"
        entry = _entry_for(Path(child.path), name, st)
        yield entry
        if entry.is_dir:
            yield from _walk(entry.source, name)


def collect_entries(paths: Iterable[PathLike]) -> List[ArchiveEntry]:
    """List the archive entries for ``paths`` in archive order.

    Directory sources contribute their base name as a prefix to every entry
    below them; file sources land at the archive root under their own name.
    Symlinks, sockets, FIFOs and devices are skipped.

    Raises:
        ArchiveError: If any path cannot be read
    """
    entries: List[ArchiveEntry] = []
    for raw in paths:
        source = Path(raw)
        try:
            st = source.lstat()
            if not _is_archivable(st):
                logger.debug("Skipping special file %s", source)
                continue
            base = _base_name(source)
            entry = _entry_for(source, base, st)
            entries.append(entry)
            if entry.is_dir:
                entries.extend(_walk(source, base))
        except OSError as e:
            raise ArchiveError(f"Failed to read {raw}: {e}") from e
    return entries


def _tarinfo(entry: ArchiveEntry) -> tarfile.TarInfo:
    info = tarfile.TarInfo(entry.name)
    info.type = tarfile.DIRTYPE if entry.is_dir else tarfile.REGTYPE
    info.mode = entry.mode
    info.size = entry.size
    info.mtime = entry.mtime
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def write_archive(paths: Iterable[PathLike], fileobj: BinaryIO) -> List[ArchiveEntry]:
    """Write a tar stream of ``paths`` into ``fileobj``.

    Returns:
        The entries written, in order

    Raises:
        ArchiveError: If any path cannot be read
    """
    entries = collect_entries(paths)
    with tarfile.open(fileobj=fileobj, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        for entry in entries:
            info = _tarinfo(entry)
            if entry.is_dir:
                tar.addfile(info)
                continue
            try:
                with open(entry.source, "rb") as f:
                    size = os.fstat(f.fileno()).st_size
                    if size != entry.size:
                        raise ArchiveError(
                            f"{entry.source} changed size while archiving "
                            f"({entry.size} -> {size} bytes)"
                        )
                    tar.addfile(info, f)
            except OSError as e:
                raise ArchiveError(f"Failed to archive {entry.source}: {e}") from e
    return entries


def build_archive(paths: Iterable[PathLike]) -> bytes:
    """Archive ``paths`` into an in-memory tar and return its bytes."""
    buffer = io.BytesIO()
    entries = write_archive(paths, buffer)
    logger.debug("Archived %d entries (%d bytes)", len(entries), buffer.tell())
    return buffer.getvalue()
