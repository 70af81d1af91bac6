"""Per-mirror cache of submodule URLs used by a parent repository."""

import logging
import threading
from typing import Iterable, Set

from .mirror_manager import MirrorManager


logger = logging.getLogger(__name__)

SUBMODULES_FILE_NAME = "git-agent-sync.submodules"


class SubmoduleUrlCache:
    """
    Remembers which submodule URLs a parent repository uses.

    The file lives inside the parent's mirror directory, one URL per line.
    The mirror cleaner reads it to keep submodule mirrors of repositories
    still in use.

    Only mapped repositories have a cache file: persisting the submodules of
    a repository without a mirror allocates its mirror directory, reading
    never does.
    """

    def __init__(self, mirror_manager: MirrorManager):
        self._mirror_manager = mirror_manager
        self._lock = threading.Lock()

    def persist(self, repository_url: str, submodule_urls: Iterable[str]) -> None:
        """Store the submodule URLs of repository_url, logging write failures."""
        submodule_file = self._mirror_manager.get_mirror_dir(repository_url) / SUBMODULES_FILE_NAME
        with self._lock:
            try:
                submodule_file.parent.mkdir(parents=True, exist_ok=True)
                submodule_file.write_text("\n".join(sorted(set(submodule_urls))), encoding="utf-8")
            except OSError as e:
                logger.warning(f"Failed to persist {repository_url} submodules to {submodule_file}: {e}")

    def get(self, repository_url: str) -> Set[str]:
        """Return the cached submodule URLs of repository_url (empty when unknown)."""
        mirror_dir = self._mirror_manager.find_mirror_dir(repository_url)
        if mirror_dir is None:
            return set()
        submodule_file = mirror_dir / SUBMODULES_FILE_NAME
        with self._lock:
            if not submodule_file.is_file():
                return set()
            try:
                lines = submodule_file.read_text(encoding="utf-8").splitlines()
            except OSError as e:
                logger.warning(f"Failed to read {repository_url} submodules from {submodule_file}: {e}")
                return set()
        return {line.strip() for line in lines if line.strip()}
