"""Manifest file management.

The manifest maps short aliases to vendor paths:

    {
        "widget": "vendor/github.com/acme/widget",
        "bar": "./local/bar"
    }

It is a user-owned file. Entries the installer did not create are carried
through every update untouched, in their original order, whatever their
value. Writes go to a temporary file in the same directory which is then
renamed over the manifest, so a failed write never leaves a truncated file.
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .exceptions import AliasTakenError
from .exceptions import ManifestCorruptError
from .exceptions import ManifestWriteError
from .utils import same_install_path

logger = logging.getLogger(__name__)


class Manifest(Mapping[str, Any]):
    """Immutable alias to path mapping."""

    def __init__(self, entries: Mapping[str, Any] | None = None):
        self._entries: dict[str, Any] = dict(entries or {})

    def __getitem__(self, alias: str) -> Any:
        return self._entries[alias]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Manifest):
            return self._entries == other._entries
        if isinstance(other, Mapping):
            return self._entries == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Manifest({self._entries!r})"

    def with_entry(self, alias: str, path: str) -> "Manifest":
        return Manifest({**self._entries, alias: path})

    def without(self, aliases: set[str]) -> "Manifest":
        return Manifest({alias: path for alias, path in self._entries.items() if alias not in aliases})

    def to_dict(self) -> dict[str, Any]:
        return dict(self._entries)


def merge(manifest: Manifest, alias: str, path: str) -> Manifest:
    """
    Add alias -> path without touching any other entry.

    Args:
        manifest: Current manifest (not modified)
        alias: Alias to add
        path: Path it should resolve to

    Returns:
        New manifest with the entry, or ``manifest`` itself if the identical
        entry is already present

    Raises:
        AliasTakenError: If alias already maps to a different path
    """
    if alias in manifest:
        existing = manifest[alias]
        if isinstance(existing, str) and same_install_path(existing, path):
            return manifest
        raise AliasTakenError(alias, str(existing), path)
    return manifest.with_entry(alias, path)


class ManifestStore:
    """
    Manifest file loader/writer (with injected path).

    Holds no state between calls; every load reads the file afresh.
    """

    INDENT = 4

    def __init__(self, manifest_path: Path):
        """Initialize store with caller-provided manifest path.

        Args:
            manifest_path: Path to the manifest file (need not exist yet)
        """
        self.manifest_path = manifest_path

    def load(self) -> Manifest:
        """
        Read the manifest.

        A missing or empty file yields an empty manifest.

        Raises:
            ManifestCorruptError: If the file is not a JSON object
        """
        try:
            text = self.manifest_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No manifest at {self.manifest_path}, starting empty")
            return Manifest()
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestCorruptError(
                f"Could not read manifest {self.manifest_path}: {e}",
                context={"manifest_path": str(self.manifest_path)},
            ) from e

        if not text.strip():
            return Manifest()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestCorruptError(
                f"Manifest {self.manifest_path} is not valid JSON ({e}). Fix or remove it manually.",
                context={"manifest_path": str(self.manifest_path)},
            ) from e

        if not isinstance(data, dict):
            raise ManifestCorruptError(
                f"Manifest {self.manifest_path} must contain a JSON object, got {type(data).__name__}",
                context={"manifest_path": str(self.manifest_path)},
            )

        logger.debug(f"Loaded {len(data)} aliases from {self.manifest_path}")
        return Manifest(data)

    def persist(self, manifest: Manifest) -> None:
        """
        Write the full manifest to disk.

        Raises:
            ManifestWriteError: If writing fails; the previous file is left as it was
        """
        content = json.dumps(manifest.to_dict(), indent=self.INDENT, ensure_ascii=False) + "\n"
        directory = self.manifest_path.parent
        tmp_name = None

        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.manifest_path.name}-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if self.manifest_path.exists():
                os.chmod(tmp_name, self.manifest_path.stat().st_mode & 0o777)
            os.replace(tmp_name, self.manifest_path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise ManifestWriteError(
                f"Failed to write manifest {self.manifest_path}: {e}",
                context={"manifest_path": str(self.manifest_path)},
            ) from e

        logger.debug(f"Saved manifest with {len(manifest)} aliases")
