"""Alias resolver - decide the short name for a newly installed module.

The candidate alias is granted only when it is free. A taken alias is never
renamed or suffixed; the module stays usable through its full vendor path.
"""

import logging
from collections.abc import Mapping
from typing import Any

from .schema import AliasDecision
from .schema import AliasStatus
from .utils import same_install_path

logger = logging.getLogger(__name__)


def resolve_alias(candidate_alias: str, install_path: str, manifest: Mapping[str, Any]) -> AliasDecision:
    """
    Decide which alias (if any) to grant.

    Args:
        candidate_alias: Alias derived from the specifier (usually the repo name)
        install_path: Path the alias would resolve to
        manifest: Current manifest contents

    Returns:
        AliasDecision:
        - ``aliased`` with the candidate when it is free
        - ``already-installed`` with the candidate when it already maps to install_path
        - ``alias-conflict`` with no alias when it maps somewhere else
    """
    if candidate_alias not in manifest:
        return AliasDecision(alias=candidate_alias, status=AliasStatus.ALIASED)

    existing = manifest[candidate_alias]
    if isinstance(existing, str) and same_install_path(existing, install_path):
        return AliasDecision(alias=candidate_alias, status=AliasStatus.ALREADY_INSTALLED)

    logger.warning(
        f"Alias '{candidate_alias}' already points to {existing}; "
        f"{install_path} must be referenced by its full path"
    )
    return AliasDecision(alias=None, status=AliasStatus.ALIAS_CONFLICT)
