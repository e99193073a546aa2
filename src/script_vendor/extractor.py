"""Archive extraction into the vendor tree.

Extraction is a replace operation: the archive is unpacked into a sibling
staging directory and swapped into place, so the destination ends up holding
exactly the archive's files. Every entry is validated before anything is
written; a rejected archive writes nothing.
"""

import io
import logging
import re
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from collections.abc import Callable
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from pathlib import PurePosixPath
from typing import IO

from .exceptions import ExtractionError
from .schema import Archive
from .schema import ArchiveFormat

logger = logging.getLogger(__name__)

_DRIVE = re.compile(r"^[A-Za-z]:")


@dataclass
class _Entry:
    path: PurePosixPath
    is_dir: bool
    mode: int | None
    open: Callable[[], IO[bytes]]


def _safe_parts(name: str) -> list[str]:
    """Split an archive entry name, rejecting anything that leaves the archive root."""
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE.match(normalized):
        raise ExtractionError(f"Illegal absolute path in archive: {name}", context={"entry": name})

    parts: list[str] = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise ExtractionError(f"Illegal file path in archive: {name}", context={"entry": name})
            parts.pop()
            continue
        parts.append(part)
    return parts


def _zip_entries(archive: zipfile.ZipFile) -> Iterator[tuple[str, bool, int | None, Callable[[], IO[bytes]]]]:
    for info in archive.infolist():
        mode = (info.external_attr >> 16) & 0o777 or None
        yield info.filename, info.is_dir(), mode, lambda info=info: archive.open(info)


def _tar_entries(archive: tarfile.TarFile) -> Iterator[tuple[str, bool, int | None, Callable[[], IO[bytes]]]]:
    for member in archive.getmembers():
        if member.issym() or member.islnk():
            raise ExtractionError(f"Links are not allowed in archives: {member.name}", context={"entry": member.name})
        if not (member.isfile() or member.isdir()):
            raise ExtractionError(f"Unsupported archive entry type: {member.name}", context={"entry": member.name})

        def opener(member=member) -> IO[bytes]:
            stream = archive.extractfile(member)
            if stream is None:
                raise ExtractionError(f"Could not read archive entry: {member.name}", context={"entry": member.name})
            return stream

        yield member.name, member.isdir(), member.mode & 0o777 or None, opener


def _plan(raw_entries: Iterator[tuple[str, bool, int | None, Callable[[], IO[bytes]]]]) -> list[_Entry]:
    """Validate all entries and strip a single wrapping top-level directory."""
    collected: list[tuple[list[str], bool, int | None, Callable[[], IO[bytes]]]] = []
    for name, is_dir, mode, opener in raw_entries:
        parts = _safe_parts(name)
        if parts:
            collected.append((parts, is_dir, mode, opener))

    # Hosting platforms wrap the tree in "<repo>-<ref>/"
    tops = {parts[0] for parts, _, _, _ in collected}
    wrapped = len(tops) == 1 and any(len(parts) > 1 for parts, _, _, _ in collected)

    entries: list[_Entry] = []
    for parts, is_dir, mode, opener in collected:
        if wrapped:
            parts = parts[1:]
            if not parts:
                continue
        entries.append(_Entry(path=PurePosixPath(*parts), is_dir=is_dir, mode=mode, open=opener))
    return entries


def _write(entries: list[_Entry], root: Path) -> int:
    resolved_root = root.resolve()
    written = 0
    for entry in entries:
        target = root.joinpath(*entry.path.parts)
        if not target.resolve().is_relative_to(resolved_root):
            raise ExtractionError(f"Illegal file path in archive: {entry.path}", context={"entry": str(entry.path)})

        if entry.is_dir:
            target.mkdir(parents=True, exist_ok=True)
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        with entry.open() as src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
        if entry.mode:
            target.chmod(entry.mode)
        written += 1
    return written


def _replace(staging: Path, destination: Path) -> None:
    """Swap staging into destination, discarding previous contents."""
    if not destination.exists() and not destination.is_symlink():
        staging.rename(destination)
        return

    if destination.is_dir() and not destination.is_symlink():
        backup = Path(tempfile.mkdtemp(prefix=f".{destination.name}-old-", dir=destination.parent))
        backup.rmdir()
        destination.rename(backup)
        staging.rename(destination)
        shutil.rmtree(backup, ignore_errors=True)
    else:
        destination.unlink()
        staging.rename(destination)


def extract(archive: Archive, destination: Path) -> Path:
    """
    Unpack archive into destination, replacing whatever was there.

    Args:
        archive: Fetched archive (zip or gzipped tar)
        destination: Target directory (created with parents if absent)

    Returns:
        The destination path

    Raises:
        ExtractionError: If the archive is malformed, has an entry escaping
            destination, or cannot be written
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{destination.name}-", dir=destination.parent))
    logger.debug(f"Extracting {archive.format.value} archive into staging dir {staging}")

    try:
        if archive.format == ArchiveFormat.ZIP:
            with zipfile.ZipFile(io.BytesIO(archive.data)) as zf:
                written = _write(_plan(_zip_entries(zf)), staging)
        elif archive.format == ArchiveFormat.TAR_GZ:
            with tarfile.open(fileobj=io.BytesIO(archive.data), mode="r:gz") as tf:
                written = _write(_plan(_tar_entries(tf)), staging)
        else:
            raise ExtractionError(f"Unsupported archive format: {archive.format}")

        _replace(staging, destination)
    except ExtractionError:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, tarfile.TarError, zlib.error, EOFError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise ExtractionError(f"Malformed archive: {e}", context={"url": archive.url}) from e
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise ExtractionError(f"Could not write archive contents to {destination}: {e}") from e

    logger.info(f"Unpacked {written} files into {destination}")
    return destination
