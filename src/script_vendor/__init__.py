"""script-vendor - Install remote script modules into a local vendor tree.

Fetches a module's source archive, unpacks it under vendor/<platform>/<owner>/<repo>
and records a short alias for it in the project's manifest file.

Apps inject policy (project root, fetchers); the library supplies the mechanism.
"""

from .config import InstallerConfig
from .exceptions import AliasTakenError
from .exceptions import ExtractionError
from .exceptions import FetchError
from .exceptions import InstallError
from .exceptions import InvalidSpecifierError
from .exceptions import ManifestCorruptError
from .exceptions import ManifestError
from .exceptions import ManifestWriteError
from .exceptions import NotInstalledError
from .exceptions import UnsupportedPlatformError
from .extractor import extract
from .fetcher import BitbucketFetcher
from .fetcher import FetcherRegistry
from .fetcher import GitHubFetcher
from .fetcher import GitLabFetcher
from .fetcher import HttpArchiveFetcher
from .fetcher import default_registry
from .installer import InstallOutcome
from .installer import Installer
from .installer import InstallStage
from .manifest import Manifest
from .manifest import ManifestStore
from .manifest import merge
from .protocols import ArchiveFetcherProtocol
from .resolver import resolve_alias
from .schema import AliasDecision
from .schema import AliasStatus
from .schema import Archive
from .schema import ArchiveFormat
from .schema import InstalledModule
from .specifier import ModuleSpecifier
from .specifier import parse_specifier
from .utils import unalias_path

__all__ = [
    # Configuration
    "InstallerConfig",
    # Orchestration
    "Installer",
    "InstallOutcome",
    "InstallStage",
    "InstalledModule",
    # Specifiers
    "ModuleSpecifier",
    "parse_specifier",
    # Fetching
    "ArchiveFetcherProtocol",
    "FetcherRegistry",
    "HttpArchiveFetcher",
    "GitHubFetcher",
    "GitLabFetcher",
    "BitbucketFetcher",
    "default_registry",
    "Archive",
    "ArchiveFormat",
    # Extraction
    "extract",
    # Manifest
    "Manifest",
    "ManifestStore",
    "merge",
    # Aliasing
    "AliasDecision",
    "AliasStatus",
    "resolve_alias",
    "unalias_path",
    # Exceptions
    "InstallError",
    "InvalidSpecifierError",
    "UnsupportedPlatformError",
    "FetchError",
    "ExtractionError",
    "ManifestError",
    "ManifestCorruptError",
    "ManifestWriteError",
    "AliasTakenError",
    "NotInstalledError",
]

__version__ = "0.1.0"
