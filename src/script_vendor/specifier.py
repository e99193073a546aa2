"""Module specifier parsing.

A specifier names a module on a hosting platform:

    github.com/owner/repo[/sub/path][@ref]

Parsing validates the platform against the registered fetchers, so an
unsupported platform fails here, before any network or filesystem I/O.
"""

import logging
import re
from collections.abc import Iterable
from posixpath import join as posix_join

from pydantic import BaseModel
from pydantic import ConfigDict

from .exceptions import InvalidSpecifierError
from .exceptions import UnsupportedPlatformError

logger = logging.getLogger(__name__)

_SEGMENT = re.compile(r"^[A-Za-z0-9_.\-]+$")
_SCHEMES = ("https://", "http://")


class ModuleSpecifier(BaseModel):
    """Parsed remote module identifier (immutable)."""

    model_config = ConfigDict(frozen=True)

    platform: str
    owner: str
    repo: str
    subpath: str | None = None
    ref: str

    @property
    def canonical(self) -> str:
        """Specifier without ref; two installs of the same canonical name share a vendor tree."""
        base = f"{self.platform}/{self.owner}/{self.repo}"
        return f"{base}/{self.subpath}" if self.subpath else base

    @property
    def default_alias(self) -> str:
        """Alias candidate: final segment of the install path."""
        if self.subpath:
            return self.subpath.rsplit("/", 1)[-1]
        return self.repo

    def vendor_path(self, vendor_dir: str = "vendor") -> str:
        """Directory the archive is extracted into, relative to the project root."""
        return posix_join(vendor_dir, self.platform, self.owner, self.repo)

    def install_path(self, vendor_dir: str = "vendor") -> str:
        """Path recorded in the manifest for this module."""
        path = self.vendor_path(vendor_dir)
        return posix_join(path, self.subpath) if self.subpath else path

    def __str__(self) -> str:
        return f"{self.canonical}@{self.ref}"


def parse_specifier(text: str, platforms: Iterable[str], default_ref: str = "master") -> ModuleSpecifier:
    """
    Parse specifier text into a ModuleSpecifier.

    Tolerates a leading URL scheme, a trailing slash and a ``.git`` suffix on
    the repository name. Platform names match case-insensitively and take the
    spelling they were registered with.

    Args:
        text: Raw specifier, e.g. "github.com/acme/widget@v1.2"
        platforms: Registered platform names
        default_ref: Ref used when the specifier carries none

    Returns:
        Parsed specifier

    Raises:
        InvalidSpecifierError: If text is not platform/owner/repo shaped
        UnsupportedPlatformError: If no fetcher is registered for the platform
    """
    raw = text.strip()
    for scheme in _SCHEMES:
        if raw.lower().startswith(scheme):
            raw = raw[len(scheme) :]
            break

    ref = default_ref
    if "@" in raw:
        raw, ref = raw.rsplit("@", 1)
        if ref in (".", "..") or not _SEGMENT.match(ref):
            raise InvalidSpecifierError(f"Invalid ref in specifier '{text}'", context={"specifier": text})

    parts = raw.strip("/").split("/")
    if len(parts) < 3:
        raise InvalidSpecifierError(
            f"Specifier '{text}' must look like platform/owner/repo (e.g. github.com/user/repo)",
            context={"specifier": text},
        )
    for part in parts:
        if part in (".", "..") or not _SEGMENT.match(part):
            raise InvalidSpecifierError(
                f"Invalid path segment '{part}' in specifier '{text}'",
                context={"specifier": text, "segment": part},
            )

    known = {name.lower(): name for name in platforms}
    platform = known.get(parts[0].lower())
    if platform is None:
        raise UnsupportedPlatformError(
            f"Unsupported platform '{parts[0]}'. Supported: {', '.join(sorted(known.values())) or 'none'}",
            context={"specifier": text, "platform": parts[0]},
        )

    repo = parts[2].removesuffix(".git")
    if not repo:
        raise InvalidSpecifierError(f"Empty repository name in '{text}'", context={"specifier": text})

    specifier = ModuleSpecifier(
        platform=platform,
        owner=parts[1],
        repo=repo,
        subpath="/".join(parts[3:]) or None,
        ref=ref,
    )
    logger.debug(f"Parsed specifier '{text}' as {specifier}")
    return specifier
