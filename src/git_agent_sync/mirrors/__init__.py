"""Shared local mirrors: url mapping, submodule url cache, compaction and cleanup."""

from .gc_scheduler import IdleGcScheduler
from .mirror_cleaner import MirrorCleaner
from .mirror_manager import MirrorManager, calculate_dir_name
from .submodule_cache import SubmoduleUrlCache

__all__ = [
    "IdleGcScheduler",
    "MirrorCleaner",
    "MirrorManager",
    "SubmoduleUrlCache",
    "calculate_dir_name",
]
