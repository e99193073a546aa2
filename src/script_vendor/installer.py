"""Module installation pipeline.

One install call runs strictly in sequence:

    START -> FETCHING -> EXTRACTING -> ALIASING -> PERSISTING -> DONE

and any stage may end in FAILED. The manifest is only written after aliasing
succeeded, inside a critical section that covers the whole read-merge-write,
so concurrent installs in one batch cannot lose each other's aliases. A
failure after extraction leaves the vendor directory in place; the next
install replaces it wholesale.
"""

import asyncio
import logging
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from .config import InstallerConfig
from .exceptions import AliasTakenError
from .exceptions import ExtractionError
from .exceptions import FetchError
from .exceptions import InstallError
from .exceptions import ManifestCorruptError
from .exceptions import ManifestWriteError
from .exceptions import NotInstalledError
from .exceptions import UnsupportedPlatformError
from .extractor import extract
from .fetcher import FetcherRegistry
from .fetcher import default_registry
from .manifest import ManifestStore
from .manifest import merge
from .resolver import resolve_alias
from .schema import AliasStatus
from .schema import InstalledModule
from .specifier import ModuleSpecifier
from .specifier import parse_specifier
from .utils import normalize_install_path
from .utils import same_install_path

logger = logging.getLogger(__name__)


class InstallStage(str, Enum):
    START = "start"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    ALIASING = "aliasing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


# Error type used when a stage fails with something other than an InstallError
_STAGE_ERRORS: dict[InstallStage, type[InstallError]] = {
    InstallStage.START: ManifestCorruptError,
    InstallStage.FETCHING: FetchError,
    InstallStage.EXTRACTING: ExtractionError,
    InstallStage.ALIASING: ManifestWriteError,
    InstallStage.PERSISTING: ManifestWriteError,
}


@dataclass
class InstallOutcome:
    """Per-specifier result of a batch install."""

    specifier: str
    module: InstalledModule | None = None
    error: InstallError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Installer:
    """
    Install modules into one project's vendor tree and manifest.

    Share one Installer across a batch: the manifest critical section and the
    per-vendor-tree single-flight locks live on the instance.

    Example:
        >>> installer = Installer(InstallerConfig(project_root=Path("/work/app")))
        >>> module = await installer.install("github.com/acme/widget")
        >>> module.reference
        'widget'
    """

    def __init__(self, config: InstallerConfig, fetchers: FetcherRegistry | None = None):
        """Initialize installer.

        Args:
            config: Project paths and install policy
            fetchers: Platform fetchers (defaults to github.com, gitlab.com, bitbucket.org)
        """
        self.config = config
        self.fetchers = fetchers if fetchers is not None else default_registry(timeout=config.fetch_timeout)
        self.store = ManifestStore(config.manifest_path)
        self._manifest_lock = asyncio.Lock()
        self._vendor_locks: dict[str, asyncio.Lock] = {}
        self._vendor_lock_users: dict[str, int] = {}

    def parse(self, specifier: str) -> ModuleSpecifier:
        """Parse specifier against the registered platforms (no I/O)."""
        try:
            return parse_specifier(specifier, self.fetchers.platforms(), default_ref=self.config.default_ref)
        except InstallError as e:
            e.specifier = e.specifier or specifier
            e.stage = e.stage or InstallStage.START.value
            raise

    @asynccontextmanager
    async def _vendor_lock(self, spec: ModuleSpecifier) -> AsyncIterator[None]:
        """Serialize work on one vendor tree.

        Every sub-path of a repo shares the repo's vendor directory, so the
        key is the vendor path rather than the full specifier. Entries are
        dropped once nobody holds or waits for them.
        """
        key = spec.vendor_path(self.config.vendor_dir)
        lock = self._vendor_locks.setdefault(key, asyncio.Lock())
        self._vendor_lock_users[key] = self._vendor_lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._vendor_lock_users[key] -= 1
            if not self._vendor_lock_users[key]:
                del self._vendor_lock_users[key]
                del self._vendor_locks[key]

    async def install(self, specifier: str) -> InstalledModule:
        """
        Install one module.

        A FetchError restarts the whole call up to ``config.fetch_retries``
        times. Alias conflicts are reported through the result status, not
        raised, unless ``config.strict_aliases`` is set.

        Args:
            specifier: Module specifier, e.g. "github.com/acme/widget"

        Returns:
            InstalledModule describing the install path and reference form

        Raises:
            InvalidSpecifierError: Specifier is malformed
            UnsupportedPlatformError: No fetcher for the specifier's platform
            FetchError: Download failed (after retries)
            ExtractionError: Archive malformed or unsafe
            ManifestCorruptError: Manifest cannot be parsed
            ManifestWriteError: Manifest could not be written
            AliasTakenError: Alias conflict with ``strict_aliases`` enabled
        """
        spec = self.parse(specifier)

        async with self._vendor_lock(spec):
            attempt = 0
            while True:
                try:
                    return await self._install_once(spec)
                except FetchError as e:
                    if attempt >= self.config.fetch_retries:
                        raise
                    delay = self.config.retry_backoff * (2**attempt)
                    attempt += 1
                    logger.warning(
                        f"Fetching {spec} failed ({e.message}); retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1} of {self.config.fetch_retries + 1})"
                    )
                    await asyncio.sleep(delay)

    async def _install_once(self, spec: ModuleSpecifier) -> InstalledModule:
        stage = InstallStage.START
        try:
            logger.info(f"Installing {spec}")
            # Refuse to touch the network when the manifest is already broken.
            # Manifest reads and writes stay on the event loop, never in a
            # worker thread, so a cancelled install cannot leave one running.
            self.store.load()

            stage = InstallStage.FETCHING
            fetcher = self.fetchers.get(spec.platform)
            if fetcher is None:
                raise UnsupportedPlatformError(f"No fetcher registered for '{spec.platform}'")
            archive = await fetcher.fetch(spec)

            stage = InstallStage.EXTRACTING
            vendor_dir = self.config.project_root / spec.vendor_path(self.config.vendor_dir)
            await asyncio.to_thread(extract, archive, vendor_dir)
            del archive

            install_path = spec.install_path(self.config.vendor_dir)
            if spec.subpath and not (vendor_dir / spec.subpath).exists():
                raise ExtractionError(
                    f"Sub-path '{spec.subpath}' not found in archive",
                    context={"vendor_dir": str(vendor_dir)},
                )

            stage = InstallStage.ALIASING
            # Nothing awaits inside the lock, so a cancel cannot interrupt persistence
            async with self._manifest_lock:
                manifest = self.store.load()
                decision = resolve_alias(spec.default_alias, install_path, manifest)

                if decision.status == AliasStatus.ALIASED:
                    stage = InstallStage.PERSISTING
                    self.store.persist(merge(manifest, spec.default_alias, install_path))
                elif decision.status == AliasStatus.ALIAS_CONFLICT and self.config.strict_aliases:
                    raise AliasTakenError(spec.default_alias, str(manifest[spec.default_alias]), install_path)

            module = InstalledModule(
                specifier=spec.canonical,
                install_path=install_path,
                vendor_dir=vendor_dir,
                candidate_alias=spec.default_alias,
                alias=decision.alias,
                status=decision.status,
            )
            stage = InstallStage.DONE
            logger.info(f"Installed {spec} as '{module.reference}' ({module.status.value})")
            return module

        except Exception as e:
            if isinstance(e, InstallError):
                error = e
            else:
                error = _STAGE_ERRORS[stage](f"Unexpected failure: {e}")
                if isinstance(error, FetchError):
                    error.cause = e
            error.specifier = error.specifier or str(spec)
            error.stage = error.stage or stage.value
            logger.error(f"Install of {spec} failed at stage {stage.value}: {error.message}")
            if error is e:
                raise
            raise error from e

    async def install_many(self, specifiers: list[str]) -> list[InstallOutcome]:
        """
        Install several modules concurrently, at most ``config.concurrency`` at a time.

        A failing module does not affect its siblings.

        Returns:
            One outcome per input specifier, in input order
        """
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def run(specifier: str) -> InstallOutcome:
            async with semaphore:
                try:
                    module = await self.install(specifier)
                except InstallError as e:
                    return InstallOutcome(specifier=specifier, error=e)
                return InstallOutcome(specifier=specifier, module=module)

        outcomes = await asyncio.gather(*(run(specifier) for specifier in specifiers))
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(f"Batch finished: {len(outcomes) - failed} installed, {failed} failed")
        return list(outcomes)

    async def uninstall(self, specifier: str) -> list[str]:
        """
        Remove a module's aliases and, when nothing else uses it, its vendor tree.

        Only aliases pointing at this module's install path are removed;
        every other manifest entry is preserved.

        Returns:
            Aliases removed from the manifest

        Raises:
            NotInstalledError: Module has neither aliases nor a vendor directory
            ManifestCorruptError: Manifest cannot be parsed
            ManifestWriteError: Manifest could not be written
        """
        spec = self.parse(specifier)
        install_path = spec.install_path(self.config.vendor_dir)
        vendor_path = spec.vendor_path(self.config.vendor_dir)
        vendor_dir = self.config.project_root / vendor_path
        async with self._vendor_lock(spec):
            async with self._manifest_lock:
                manifest = self.store.load()
                removed = [
                    alias
                    for alias, path in manifest.items()
                    if isinstance(path, str) and same_install_path(path, install_path)
                ]
                if not removed and not vendor_dir.exists():
                    raise NotInstalledError(
                        f"Module {spec.canonical} is not installed",
                        context={"vendor_dir": str(vendor_dir)},
                        specifier=spec.canonical,
                    )
                remaining = manifest.without(set(removed))
                if removed:
                    self.store.persist(remaining)
                    logger.debug(f"Removed aliases {removed} from manifest")

            prefix = normalize_install_path(vendor_path) + "/"
            still_used = any(
                isinstance(path, str)
                and (normalize_install_path(path) + "/").startswith(prefix)
                for path in remaining.values()
            )
            if vendor_dir.exists() and not still_used:
                logger.info(f"Removing {vendor_dir}")
                await asyncio.to_thread(shutil.rmtree, vendor_dir)

        logger.info(f"Uninstalled {spec.canonical}")
        return removed
