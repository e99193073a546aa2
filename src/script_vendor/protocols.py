"""Protocols for archive fetchers.

The installer only depends on this interface; each hosting platform is one
implementation.
"""

from typing import Protocol
from typing import runtime_checkable

from .schema import Archive
from .specifier import ModuleSpecifier


@runtime_checkable
class ArchiveFetcherProtocol(Protocol):
    """Protocol for hosting-platform archive fetchers.

    Example implementations:
    - GitHubFetcher: github.com archive downloads
    - GitLabFetcher: gitlab.com archive downloads
    - Test doubles serving in-memory archives
    """

    platform: str

    async def fetch(self, specifier: ModuleSpecifier) -> Archive:
        """Download the module's source tree archive.

        Args:
            specifier: Parsed specifier whose platform matches this fetcher

        Returns:
            Archive bytes plus their format

        Raises:
            FetchError: On timeout, connection failure or non-2xx response
        """
        ...
