from __future__ import annotations

import logging
import os
import tarfile
from pathlib import Path
from typing import Iterator, Literal, Protocol, Sequence

from buildrelay.pipeline.errors import ArchiveError

logger = logging.getLogger(__name__)

Compression = Literal["gz", "xz", "none"]


class ArchiveCodec(Protocol):
    def create(
        self,
        source_root: Path,
        entries: Sequence[str],
        archive_path: Path,
        compression: Compression,
    ) -> Path:
        ...

    def extract(self, archive_path: Path, dest_root: Path) -> None:
        ...


def _iter_tree(root: Path, entry: str) -> Iterator[Path]:
    """Yield ``entry`` and everything beneath it in a stable order.

    Symlinks are yielded but never followed.
    """
    top = root / entry
    yield top
    if top.is_symlink() or not top.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(top, followlinks=False):
        dirnames.sort()
        base = Path(dirpath)
        for name in dirnames:
            yield base / name
        for name in sorted(filenames):
            yield base / name


def _open_for_write(archive_path: Path, compression: Compression) -> tarfile.TarFile:
    if compression == "gz":
        return tarfile.open(archive_path, "w:gz", compresslevel=1, format=tarfile.PAX_FORMAT)
    if compression == "xz":
        return tarfile.open(archive_path, "w:xz", preset=6, format=tarfile.PAX_FORMAT)
    return tarfile.open(archive_path, "w", format=tarfile.PAX_FORMAT)


class TarArchiveCodec:
    """Tar archives with POSIX (pax) headers that keep build timestamps intact.

    Sub-second mtimes and atimes are recorded in pax headers and re-applied on
    extraction. Source atimes are restored after each file is read, so
    archiving does not disturb the tree that is being archived.
    """

    def create(
        self,
        source_root: Path,
        entries: Sequence[str],
        archive_path: Path,
        compression: Compression = "gz",
    ) -> Path:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        missing = [e for e in entries if not os.path.lexists(source_root / e)]
        if missing:
            raise ArchiveError(f"Cannot archive missing entries under {source_root}: {missing}")

        logger.info("Archiving %s from %s into %s", ", ".join(entries), source_root, archive_path)
        count = 0
        try:
            with _open_for_write(archive_path, compression) as tar:
                for entry in entries:
                    for path in _iter_tree(source_root, entry):
                        if self._add(tar, path, path.relative_to(source_root).as_posix()):
                            count += 1
        except (OSError, tarfile.TarError) as exc:
            raise ArchiveError(f"Failed to create {archive_path}: {exc}") from exc
        logger.info("Archived %d entries (%d bytes)", count, archive_path.stat().st_size)
        return archive_path

    @staticmethod
    def _add(tar: tarfile.TarFile, path: Path, arcname: str) -> bool:
        st = os.lstat(path)
        info = tar.gettarinfo(str(path), arcname=arcname)
        if info is None:
            # Sockets and doors have no tar representation.
            logger.warning("Skipping %s: file type cannot be archived", path)
            return False
        info.pax_headers["atime"] = repr(st.st_atime)
        info.pax_headers["mtime"] = repr(st.st_mtime)
        if info.isreg():
            with open(path, "rb") as fh:
                tar.addfile(info, fh)
            os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))
        else:
            tar.addfile(info)
        return True

    def extract(self, archive_path: Path, dest_root: Path) -> None:
        dest_root.mkdir(parents=True, exist_ok=True)
        logger.info("Extracting %s into %s", archive_path, dest_root)
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                members = tar.getmembers()
                tar.extractall(dest_root, members=members, filter="tar")
        except (OSError, tarfile.TarError) as exc:
            raise ArchiveError(f"Failed to extract {archive_path}: {exc}") from exc

        for member in members:
            if member.issym() or member.islnk():
                continue
            atime = member.pax_headers.get("atime")
            if atime is None:
                continue
            target = dest_root / member.name
            try:
                os.utime(target, (float(atime), float(member.mtime)))
            except OSError:
                logger.debug("Could not restore times for %s", target)
