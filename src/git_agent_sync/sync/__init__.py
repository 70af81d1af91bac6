"""Working directory synchronization pipeline and its update variants."""

from .models import AuthSettings, CheckoutRules, IncludeRule, RepositorySpec, SiblingRoot
from .updater import GitUpdater, UpdateResult
from .variants import (
    DIRECT,
    DIRECT_SHALLOW,
    MIRROR,
    MIRROR_WITH_ALTERNATES,
    SHALLOW_MIRROR,
    VARIANTS,
    UpdateVariant,
    select_variant,
)

__all__ = [
    "AuthSettings",
    "CheckoutRules",
    "IncludeRule",
    "RepositorySpec",
    "SiblingRoot",
    "GitUpdater",
    "UpdateResult",
    "UpdateVariant",
    "DIRECT",
    "DIRECT_SHALLOW",
    "MIRROR",
    "MIRROR_WITH_ALTERNATES",
    "SHALLOW_MIRROR",
    "VARIANTS",
    "select_variant",
]
