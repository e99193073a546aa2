"""Installer configuration.

The project root is injected by the caller; the installer never consults the
process working directory.
"""

from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

DEFAULT_MANIFEST_NAME = "packages.abs.json"
DEFAULT_VENDOR_DIR = "vendor"


class InstallerConfig(BaseModel):
    """Paths and policies for one project's installs (immutable)."""

    model_config = ConfigDict(frozen=True)

    project_root: Path
    manifest_name: str = DEFAULT_MANIFEST_NAME
    vendor_dir: str = DEFAULT_VENDOR_DIR

    # Batch policy
    concurrency: int = Field(default=4, ge=1)

    # Network policy
    fetch_timeout: float = Field(default=10.0, gt=0)
    fetch_retries: int = Field(default=0, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)
    default_ref: str = "master"

    # Fail the install instead of reporting alias-conflict
    strict_aliases: bool = False

    @property
    def manifest_path(self) -> Path:
        return self.project_root / self.manifest_name

    @property
    def vendor_root(self) -> Path:
        return self.project_root / self.vendor_dir
