"""Installer exceptions.

Every error carries the specifier being installed and the pipeline stage it
failed in (stamped by the orchestrator), so batch installs can be diagnosed
per module.
"""


class InstallError(Exception):
    """Base exception for install operations."""

    def __init__(
        self,
        message: str,
        context: dict | None = None,
        *,
        specifier: str | None = None,
        stage: str | None = None,
    ):
        """Initialize with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dict with additional context (file paths, URLs, etc.)
            specifier: Module specifier being installed, if known
            stage: Pipeline stage the failure occurred in, if known
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.specifier = specifier
        self.stage = stage

    def __str__(self) -> str:
        prefix = []
        if self.specifier:
            prefix.append(self.specifier)
        if self.stage:
            prefix.append(f"stage {self.stage}")
        if not prefix:
            return self.message
        return f"[{', '.join(prefix)}] {self.message}"


class InvalidSpecifierError(InstallError):
    """Specifier text is not of the form platform/owner/repo."""


class UnsupportedPlatformError(InstallError):
    """No fetcher is registered for the specifier's hosting platform."""


class FetchError(InstallError):
    """Archive download failed (timeout, connection error, non-2xx response)."""

    def __init__(
        self,
        message: str,
        context: dict | None = None,
        *,
        cause: BaseException | None = None,
        status_code: int | None = None,
        **kwargs,
    ):
        super().__init__(message, context, **kwargs)
        self.cause = cause
        self.status_code = status_code


class ExtractionError(InstallError):
    """Archive is malformed or contains an entry escaping the destination."""


class ManifestError(InstallError):
    """Base exception for manifest file problems."""


class ManifestCorruptError(ManifestError):
    """Manifest file exists but does not hold a JSON object."""


class ManifestWriteError(ManifestError):
    """Manifest could not be written; the previous file is left intact."""


class AliasTakenError(InstallError):
    """Alias is already mapped to a different path in the manifest."""

    def __init__(self, alias: str, existing_path: str, requested_path: str, **kwargs):
        super().__init__(
            f"Alias '{alias}' already points to {existing_path}",
            context={"alias": alias, "existing_path": existing_path, "requested_path": requested_path},
            **kwargs,
        )
        self.alias = alias
        self.existing_path = existing_path
        self.requested_path = requested_path


class NotInstalledError(InstallError):
    """Module has no vendor directory and no manifest alias."""
