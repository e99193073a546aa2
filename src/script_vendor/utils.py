"""Path helpers shared by the manifest and its consumers."""

import posixpath
from collections.abc import Mapping
from typing import Any

INDEX_FILE = "index.abs"


def normalize_install_path(path: str) -> str:
    """Normalize a manifest path for comparison.

    Examples:
        >>> normalize_install_path("./vendor/github.com/acme/widget/")
        'vendor/github.com/acme/widget'
    """
    return posixpath.normpath(path.replace("\\", "/"))


def same_install_path(a: str, b: str) -> bool:
    """True if two manifest paths name the same location.

    Manifests written by older installers used "./vendor/..." while current
    ones write "vendor/...", so both spellings must compare equal.
    """
    return normalize_install_path(a) == normalize_install_path(b)


def unalias_path(path: str, aliases: Mapping[str, Any]) -> str:
    """
    Resolve a require() reference against the manifest.

    If the first segment of ``path`` is an alias it is replaced by the
    alias's path. Paths written with an explicit "./" are never unaliased.
    A reference without a file extension points at the module directory and
    resolves to its index file.

    Examples:
        >>> unalias_path("widget", {"widget": "vendor/github.com/acme/widget"})
        'vendor/github.com/acme/widget/index.abs'
        >>> unalias_path("widget/util.abs", {"widget": "vendor/github.com/acme/widget"})
        'vendor/github.com/acme/widget/util.abs'
        >>> unalias_path("./widget", {"widget": "vendor/github.com/acme/widget"})
        'widget/index.abs'
    """
    explicit = path.startswith("./") or path.startswith(".\\")
    parts = normalize_install_path(path).split("/")

    if not explicit:
        target = aliases.get(parts[0])
        if isinstance(target, str):
            parts = normalize_install_path(target).split("/") + parts[1:]

    resolved = "/".join(parts)
    if not posixpath.splitext(parts[-1])[1]:
        resolved = posixpath.join(resolved, INDEX_FILE)
    return resolved
