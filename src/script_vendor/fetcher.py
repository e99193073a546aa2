"""Archive fetchers for hosting platforms.

Each supported platform is one HttpArchiveFetcher subclass that knows its
archive-download URL convention. Fetchers never retry; retry is a policy of
the installer.
"""

import asyncio
import logging

import httpx

from .exceptions import FetchError
from .protocols import ArchiveFetcherProtocol
from .schema import Archive
from .schema import ArchiveFormat
from .specifier import ModuleSpecifier

logger = logging.getLogger(__name__)


class HttpArchiveFetcher:
    """Download an archive over HTTPS with httpx.

    Subclasses set ``platform`` and implement ``archive_url``.
    """

    platform: str = ""
    archive_format: ArchiveFormat = ArchiveFormat.ZIP

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize fetcher.

        Args:
            timeout: Deadline in seconds for the whole download, redirects included
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.timeout = timeout
        self.transport = transport

    def archive_url(self, specifier: ModuleSpecifier) -> str:
        raise NotImplementedError

    async def fetch(self, specifier: ModuleSpecifier) -> Archive:
        url = self.archive_url(specifier)
        logger.info(f"Downloading archive {url}")

        try:
            # httpx timeouts bound each network operation; the deadline bounds the total
            async with asyncio.timeout(self.timeout):
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self.transport,
                ) as client:
                    response = await client.get(url)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Bad response code {e.response.status_code} from {url}",
                context={"url": url},
                cause=e,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                f"Could not download {url}: {e}",
                context={"url": url},
                cause=e,
            ) from e
        except TimeoutError as e:
            raise FetchError(
                f"Download of {url} exceeded {self.timeout}s",
                context={"url": url},
                cause=e,
            ) from e

        logger.debug(f"Downloaded {len(response.content)} bytes from {url}")
        return Archive(data=response.content, format=self.archive_format, url=url)


class GitHubFetcher(HttpArchiveFetcher):
    platform = "github.com"

    def archive_url(self, specifier: ModuleSpecifier) -> str:
        return f"https://github.com/{specifier.owner}/{specifier.repo}/archive/{specifier.ref}.zip"


class GitLabFetcher(HttpArchiveFetcher):
    platform = "gitlab.com"

    def archive_url(self, specifier: ModuleSpecifier) -> str:
        return (
            f"https://gitlab.com/{specifier.owner}/{specifier.repo}"
            f"/-/archive/{specifier.ref}/{specifier.repo}-{specifier.ref}.zip"
        )


class BitbucketFetcher(HttpArchiveFetcher):
    platform = "bitbucket.org"

    def archive_url(self, specifier: ModuleSpecifier) -> str:
        return f"https://bitbucket.org/{specifier.owner}/{specifier.repo}/get/{specifier.ref}.zip"


class FetcherRegistry:
    """Platform name to fetcher mapping (case-insensitive)."""

    def __init__(self, fetchers: list[ArchiveFetcherProtocol] | None = None):
        self._fetchers: dict[str, ArchiveFetcherProtocol] = {}
        for fetcher in fetchers or []:
            self.register(fetcher)

    def register(self, fetcher: ArchiveFetcherProtocol) -> None:
        """Add or replace the fetcher for ``fetcher.platform``."""
        if not fetcher.platform:
            raise ValueError(f"Fetcher {fetcher!r} has no platform name")
        self._fetchers[fetcher.platform.lower()] = fetcher
        logger.debug(f"Registered fetcher for {fetcher.platform}")

    def get(self, platform: str) -> ArchiveFetcherProtocol | None:
        return self._fetchers.get(platform.lower())

    def platforms(self) -> list[str]:
        return [fetcher.platform for fetcher in self._fetchers.values()]

    def __contains__(self, platform: str) -> bool:
        return platform.lower() in self._fetchers


def default_registry(timeout: float = 10.0) -> FetcherRegistry:
    """Registry with the built-in hosting platforms."""
    return FetcherRegistry(
        [
            GitHubFetcher(timeout=timeout),
            GitLabFetcher(timeout=timeout),
            BitbucketFetcher(timeout=timeout),
        ]
    )
