"""
Mirror Manager for shared local repository mirrors.

Maps repository URLs to directories under the mirrors base directory. Every
URL gets its own directory whose name is derived from a hash of the URL, so
the same URL resolves to the same directory across agent restarts.

Persistence is two flat text files in the base directory:
- map:     one "url = dirname" pair per line
- invalid: one directory name per line; these names are never handed out again

URLs are keyed by mirror_key(), which drops the user info of http(s) URLs.
Remote URLs read back from mirrors have no username either, so a restored
map matches the fetch URLs builds ask for.

Both files are caches. A missing map file is rebuilt from the remote URLs
configured in the existing mirror directories, and write failures are only
logged.
"""

import logging
import os
import threading
import time
import zlib
from pathlib import Path
from typing import Dict, List, Optional, Set
from urllib.parse import urlsplit, urlunsplit

from ..fs import robust_delete
from ..git.command import GitCommandRunner
from ..git.errors import GitCommandError


logger = logging.getLogger(__name__)

MAP_FILE_NAME = "map"
INVALID_FILE_NAME = "invalid"
TIMESTAMP_FILE_NAME = "timestamp"
_SEPARATOR = " = "


def mirror_key(url: str) -> str:
    """Return url without http(s) user info and with a lower-case host."""
    if "://" not in url:
        return url
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https"):
        return url
    host = parts.netloc.rpartition("@")[2].lower()
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def calculate_dir_name(url: str) -> str:
    """Return the content-derived directory name for a URL."""
    return "git-%08X.git" % (zlib.crc32(url.encode("utf-8")) & 0xFFFFFFFF)


class MirrorManager:
    """
    Resolves repository URLs to mirror directories.

    All mutations happen under one lock, so concurrent callers asking for the
    same URL converge on a single directory name.
    """

    def __init__(self, base_mirrors_dir: Path, runner: Optional[GitCommandRunner] = None):
        """
        Initialize the mirror manager and load persisted mappings.

        Args:
            base_mirrors_dir: Directory holding all mirrors and the mapping files
            runner: Git runner used to read remote urls when restoring the map
        """
        self.base_mirrors_dir = Path(base_mirrors_dir)
        self.map_file = self.base_mirrors_dir / MAP_FILE_NAME
        self.invalid_file = self.base_mirrors_dir / INVALID_FILE_NAME
        self._runner = runner or GitCommandRunner()
        self._mirror_map: Dict[str, str] = {}
        self._invalid_dir_names: Set[str] = set()
        self._lock = threading.RLock()
        self._load_invalid_dir_names()
        self._load_mappings()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_mirror_dir(self, repository_url: str) -> Path:
        """
        Return the mirror directory for a repository URL.

        Allocates and persists a new directory name on first use. URLs
        differing only in the http(s) username share a directory.

        Args:
            repository_url: Fetch URL of the repository

        Returns:
            Absolute path of the mirror directory (it may not exist yet)
        """
        return self.base_mirrors_dir / self._get_dir_name_for_url(mirror_key(repository_url))

    def find_mirror_dir(self, repository_url: str) -> Optional[Path]:
        """Return the mirror directory mapped to a repository URL, None if unmapped. Never allocates."""
        with self._lock:
            dir_name = self._mirror_map.get(mirror_key(repository_url))
        return self.base_mirrors_dir / dir_name if dir_name is not None else None

    def get_mappings(self) -> Dict[str, str]:
        """Return a copy of the url -> directory name mapping."""
        with self._lock:
            return dict(self._mirror_map)

    def get_url(self, dir_name: str) -> Optional[str]:
        """Return the URL mapped to a directory name, None if unmapped."""
        with self._lock:
            for url, name in self._mirror_map.items():
                if name == dir_name:
                    return url
        return None

    def is_invalid_dir_name(self, dir_name: str) -> bool:
        with self._lock:
            return dir_name in self._invalid_dir_names

    def get_invalid_dir_names(self) -> Set[str]:
        with self._lock:
            return set(self._invalid_dir_names)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def invalidate(self, mirror_dir: Path) -> None:
        """
        Forget all URLs mapped to mirror_dir and never reuse its name.

        A following get_mirror_dir() for the same URL allocates a fresh
        directory, so a broken mirror is not resurrected.

        Args:
            mirror_dir: Mirror directory which could not be repaired
        """
        dir_name = Path(mirror_dir).name
        with self._lock:
            urls = [url for url, name in self._mirror_map.items() if name == dir_name]
            for url in urls:
                del self._mirror_map[url]
            self._invalid_dir_names.add(dir_name)
            logger.info(f"Invalidated mirror directory {dir_name} (urls: {urls})")
            self._save_invalid_dir_names()
            self._save_mappings()

    def remove_mirror_dir(self, mirror_dir: Path) -> None:
        """
        Delete a mirror directory and forget its mappings.

        Raises:
            OSError: If the directory cannot be deleted
        """
        dir_name = Path(mirror_dir).name
        with self._lock:
            if Path(mirror_dir).exists():
                robust_delete(Path(mirror_dir))
            urls = [url for url, name in self._mirror_map.items() if name == dir_name]
            for url in urls:
                del self._mirror_map[url]
            if urls:
                self._save_mappings()
        logger.info(f"Removed mirror directory {mirror_dir}")

    def forget_missing_dirs(self) -> List[str]:
        """Drop mappings whose directory no longer exists. Returns the dropped URLs."""
        with self._lock:
            dropped = [
                url for url, name in self._mirror_map.items() if not (self.base_mirrors_dir / name).exists()
            ]
            for url in dropped:
                del self._mirror_map[url]
            if dropped:
                self._save_mappings()
        return dropped

    def mark_used(self, mirror_dir: Path) -> None:
        """Record that the mirror was just updated (best effort)."""
        try:
            (Path(mirror_dir) / TIMESTAMP_FILE_NAME).write_text(str(int(time.time() * 1000)))
        except OSError as e:
            logger.warning(f"Cannot update timestamp of mirror {mirror_dir}: {e}")

    def last_used_time(self, mirror_dir: Path) -> float:
        """Return the last update time (epoch seconds), 0.0 when unknown."""
        timestamp_file = Path(mirror_dir) / TIMESTAMP_FILE_NAME
        try:
            return int(timestamp_file.read_text().strip()) / 1000.0
        except (OSError, ValueError):
            try:
                return Path(mirror_dir).stat().st_mtime
            except OSError:
                return 0.0

    # ------------------------------------------------------------------
    # Name allocation
    # ------------------------------------------------------------------

    def _get_dir_name_for_url(self, url: str) -> str:
        with self._lock:
            existing = self._mirror_map.get(url)
            if existing is not None:
                return existing
            dir_name = self._get_unique_dir_name_for_url(url)
            self._mirror_map[url] = dir_name
            self._save_mappings()
            return dir_name

    def _get_unique_dir_name_for_url(self, url: str) -> str:
        dir_name = calculate_dir_name(url)
        salt = 0
        while self._is_occupied_dir_name(dir_name):
            dir_name = calculate_dir_name(f"{url}{salt}")
            salt += 1
        return dir_name

    def _is_occupied_dir_name(self, dir_name: str) -> bool:
        return (
            dir_name in self._invalid_dir_names
            or dir_name in self._mirror_map.values()
            or (self.base_mirrors_dir / dir_name).exists()
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save_mappings(self) -> None:
        content = "".join(f"{url}{_SEPARATOR}{name}\n" for url, name in self._mirror_map.items())
        logger.debug(f"Save mapping to {self.map_file}")
        self._write_best_effort(self.map_file, content)

    def _save_invalid_dir_names(self) -> None:
        content = "".join(f"{name}\n" for name in sorted(self._invalid_dir_names))
        self._write_best_effort(self.invalid_file, content)

    def _write_best_effort(self, path: Path, content: str) -> None:
        try:
            self.base_mirrors_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            logger.warning(f"Cannot write {path}, continue with in-memory state: {e}")

    def _load_invalid_dir_names(self) -> None:
        if not self.invalid_file.exists():
            return
        try:
            lines = self.invalid_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.error(f"Error while reading {self.invalid_file}, start with no invalid dirs: {e}")
            return
        self._invalid_dir_names.update(line.strip() for line in lines if line.strip())

    def _load_mappings(self) -> None:
        with self._lock:
            logger.debug(f"Parse mapping file {self.map_file}")
            if self.map_file.exists():
                self._read_mappings()
            else:
                self._create_map_file()

    def _read_mappings(self) -> None:
        try:
            lines = self.map_file.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.error(f"Error while reading a mapping file at {self.map_file}, starting with empty mapping: {e}")
            return

        for line in lines:
            separator_index = line.rfind(_SEPARATOR)
            if separator_index == -1:
                if line.strip():
                    logger.warning(f"Cannot parse mapping '{line}', skip it.")
                continue
            url = mirror_key(line[:separator_index])
            dir_name = line[separator_index + len(_SEPARATOR):]
            if dir_name in self._mirror_map.values():
                logger.error(f"Skip mapping {line}: {dir_name} is used for url other than {url}")
            elif dir_name in self._invalid_dir_names:
                logger.warning(f"Skip mapping {line}: {dir_name} is invalidated")
            elif url in self._mirror_map:
                logger.warning(f"Skip mapping {line}: {url} is already mapped to {self._mirror_map[url]}")
            else:
                self._mirror_map[url] = dir_name

    def _create_map_file(self) -> None:
        logger.info(f"No mapping file found at {self.map_file}, create a new one")
        try:
            self.base_mirrors_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create base mirrors dir at {self.base_mirrors_dir}, start with empty mapping: {e}")
            return
        self._mirror_map.update(self._restore_mappings())
        self._save_mappings()

    def _restore_mappings(self) -> Dict[str, str]:
        result: Dict[str, str] = {}
        repository_dirs = sorted(
            d for d in self.base_mirrors_dir.iterdir() if d.is_dir() and (d / "config").exists()
        )
        if not repository_dirs:
            logger.info("No existing repositories found")
            return result

        logger.info(f"Restore mapping from {len(repository_dirs)} existing repositories")
        for repository_dir in repository_dirs:
            if repository_dir.name in self._invalid_dir_names:
                continue
            url = self._read_remote_url(repository_dir)
            if url is None:
                logger.warning(f"Cannot retrieve remote repository url for {repository_dir.name}, skip it")
            elif url in result:
                logger.warning(f"Url {url} is configured in both {result[url]} and {repository_dir.name}")
            else:
                result[url] = repository_dir.name
        return result

    def _read_remote_url(self, repository_dir: Path) -> Optional[str]:
        try:
            result = self._runner.run(
                ["config", "--get", "remote.origin.url"], cwd=repository_dir, timeout=60, tolerate_failure=True
            )
        except GitCommandError as e:
            logger.warning(f"Error while trying to get remote repository url at {repository_dir}: {e}")
            return None
        url = result.stdout.strip()
        return mirror_key(url) if result.ok and url else None
