"""
Removal of stale mirror directories.

Deletes invalidated and unmapped directories from the mirrors base
directory, then mirrors which were not used for mirror_expiration_days.
Mirrors of the given used urls, and the submodule mirrors recorded for
them, are kept regardless of age.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Set

from ..fs import robust_delete
from .mirror_manager import MirrorManager, mirror_key
from .submodule_cache import SubmoduleUrlCache


logger = logging.getLogger(__name__)


class MirrorCleaner:
    """Deletes mirrors nobody needs anymore."""

    def __init__(
        self,
        mirror_manager: MirrorManager,
        submodule_cache: SubmoduleUrlCache,
        expiration_days: int,
        clock: Callable[[], float] = time.time,
    ):
        self.mirror_manager = mirror_manager
        self.submodule_cache = submodule_cache
        self.expiration_days = expiration_days
        self._clock = clock

    def clean(self, used_urls: Iterable[str] = ()) -> List[Path]:
        """
        Delete invalid, unmapped and expired mirror directories.

        Args:
            used_urls: Urls whose mirrors must be kept

        Returns:
            The deleted directories
        """
        base_dir = self.mirror_manager.base_mirrors_dir
        if not base_dir.is_dir():
            return []

        deleted: List[Path] = []
        invalid = self.mirror_manager.get_invalid_dir_names()
        mappings = self.mirror_manager.get_mappings()
        mapped_names = set(mappings.values())

        for entry in sorted(base_dir.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name in invalid:
                reason = "invalidated"
            elif entry.name not in mapped_names:
                reason = "not mapped to any url"
            else:
                continue
            if self._delete(entry, reason):
                deleted.append(entry)

        keep = self._urls_to_keep(used_urls)
        expiration_seconds = self.expiration_days * 24 * 3600
        now = self._clock()
        for url, dir_name in sorted(mappings.items()):
            if url in keep:
                continue
            mirror_dir = base_dir / dir_name
            if not mirror_dir.exists():
                continue
            if now - self.mirror_manager.last_used_time(mirror_dir) < expiration_seconds:
                continue
            if self._delete(mirror_dir, f"not used for {self.expiration_days} days ({url})"):
                deleted.append(mirror_dir)

        dropped = self.mirror_manager.forget_missing_dirs()
        if dropped:
            logger.info(f"Forgot mappings of removed mirrors: {dropped}")
        return deleted

    def _urls_to_keep(self, used_urls: Iterable[str]) -> Set[str]:
        keep = {mirror_key(url) for url in used_urls}
        for url in list(keep):
            keep.update(mirror_key(submodule_url) for submodule_url in self.submodule_cache.get(url))
        return keep

    def _delete(self, mirror_dir: Path, reason: str) -> bool:
        try:
            robust_delete(mirror_dir)
        except OSError as e:
            logger.error(f"Failed to delete mirror {mirror_dir}: {e}", exc_info=True)
            return False
        logger.info(f"Deleted mirror {mirror_dir}: {reason}")
        return True
