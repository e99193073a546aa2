"""Value types passed between installer stages."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict


class ArchiveFormat(str, Enum):
    """Wire formats the extractor understands."""

    ZIP = "zip"
    TAR_GZ = "tar.gz"


class Archive(BaseModel):
    """Fetched archive bytes; lives only until extraction finishes."""

    model_config = ConfigDict(frozen=True)

    data: bytes
    format: ArchiveFormat = ArchiveFormat.ZIP
    url: str | None = None


class AliasStatus(str, Enum):
    """Outcome of the aliasing decision. None of these is a failure."""

    ALIASED = "aliased"
    ALIAS_CONFLICT = "alias-conflict"
    ALREADY_INSTALLED = "already-installed"


class AliasDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    alias: str | None
    status: AliasStatus


class InstalledModule(BaseModel):
    """
    Result of one install call.

    ``reference`` is what source files should pass to ``require()``: the
    alias when one was granted, otherwise the full install path.
    """

    model_config = ConfigDict(frozen=True)

    specifier: str
    install_path: str
    vendor_dir: Path
    candidate_alias: str
    alias: str | None
    status: AliasStatus

    @property
    def reference(self) -> str:
        return self.alias if self.alias is not None else self.install_path

    def summary(self) -> str:
        """One-line user-facing description of the outcome."""
        if self.status == AliasStatus.ALIAS_CONFLICT:
            return (
                f"Installed {self.specifier}, but alias '{self.candidate_alias}' is taken by another module. "
                f'Use require("{self.reference}")'
            )
        if self.status == AliasStatus.ALREADY_INSTALLED:
            return f'{self.specifier} is already installed. Use require("{self.reference}")'
        return f'Installed {self.specifier}. Use require("{self.reference}")'
