"""
Submodule checkout.

`git submodule init/sync/update` does the work. With mirrors enabled every
submodule URL gets its own bare mirror: submodules are grouped by URL, each
mirror is updated once, and `git submodule update` clones from the mirror
instead of the network.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..config import SUBMODULES_CHECKOUT, SUBMODULES_IGNORE
from ..git.command import GIT_WITH_FORCE_SUBMODULE_UPDATE, GitCommandRunner
from ..git.errors import GitSyncError
from ..logging.build_logger import BuildProgressLogger
from ..mirrors.submodule_cache import SubmoduleUrlCache
from .remote_config import file_uri, inject_username


logger = logging.getLogger(__name__)

GITMODULES_FILE = ".gitmodules"

_SECTION_RE = re.compile(r'^\s*\[\s*submodule\s+"(?P<name>(?:[^"\\]|\\.)*)"\s*\]\s*$')
_OTHER_SECTION_RE = re.compile(r"^\s*\[.*\]\s*$")
_KEY_VALUE_RE = re.compile(r"^\s*(?P<key>[A-Za-z][A-Za-z0-9-]*)\s*=\s*(?P<value>.*?)\s*$")

# (commit sha, full branch name or None)
Revision = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class SubmoduleRecord:
    """One [submodule] section, with the commit the parent pins it to once known."""

    name: str
    path: str
    url: str
    revision: Optional[str] = None
    branch: Optional[str] = None


@dataclass
class AggregatedSubmodule:
    """All submodules of a repository sharing one URL."""

    url: str
    submodules: List[SubmoduleRecord] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.submodules]

    @property
    def revisions(self) -> List[Revision]:
        return [(s.revision, s.branch) for s in self.submodules if s.revision]


def parse_gitmodules(text: str) -> List[SubmoduleRecord]:
    """Parse .gitmodules content; sections without a path are skipped."""
    sections: Dict[str, Dict[str, str]] = {}
    current: Optional[Dict[str, str]] = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        section = _SECTION_RE.match(line)
        if section:
            current = sections.setdefault(section.group("name").replace('\\"', '"'), {})
            continue
        if _OTHER_SECTION_RE.match(line):
            current = None
            continue
        key_value = _KEY_VALUE_RE.match(line)
        if key_value and current is not None:
            value = key_value.group("value")
            if len(value) >= 2 and value[0] == value[-1] == '"':
                value = value[1:-1]
            current[key_value.group("key").lower()] = value

    records = []
    for name, values in sections.items():
        path = values.get("path")
        if not path:
            logger.warning(f"No path found in {GITMODULES_FILE} for submodule {name}")
            continue
        records.append(SubmoduleRecord(name=name, path=path, url=values.get("url", ""), branch=values.get("branch")))
    return records


def read_gitmodules(repo_dir: Path) -> List[SubmoduleRecord]:
    gitmodules = Path(repo_dir) / GITMODULES_FILE
    if not gitmodules.is_file():
        return []
    try:
        return parse_gitmodules(gitmodules.read_text(encoding="utf-8"))
    except OSError as e:
        logger.warning(f"Cannot read {gitmodules}: {e}")
        return []


class SubmoduleCheckout:
    """
    Checks out the submodules of a working directory.

    The variant-specific step (plain `submodule update`, or update through
    mirrors) is passed to checkout_submodules() by the updater.
    """

    def __init__(
        self,
        runner: GitCommandRunner,
        build_logger: BuildProgressLogger,
        fetch_timeout: float = 1800,
        main_repo_username: Optional[str] = None,
    ):
        """
        Initialize the submodule checkout.

        Args:
            runner: Git runner
            build_logger: Build progress logger
            fetch_timeout: Idle timeout of `submodule update`
            main_repo_username: Username of the parent root, injected into http(s) submodule urls
        """
        self._runner = runner
        self._build_logger = build_logger
        self._fetch_timeout = fetch_timeout
        self._main_repo_username = main_repo_username

    def checkout_submodules(
        self, repo_dir: Path, submodule_policy: str, update_step: Callable[[Path], None]
    ) -> None:
        """
        Init, sync and update the submodules of repo_dir, recursing if the policy asks for it.

        Raises:
            GitSyncError: If the submodule checkout failed
        """
        if submodule_policy == SUBMODULES_IGNORE:
            return
        repo_dir = Path(repo_dir)
        records = read_gitmodules(repo_dir)
        if not records:
            return

        self._build_logger.message(f"Checkout submodules in {repo_dir}")
        try:
            self._runner.run(["submodule", "init"], cwd=repo_dir)
            self._runner.run(["submodule", "sync"], cwd=repo_dir)
            self.add_submodule_usernames(repo_dir, records)
            update_step(repo_dir)
        except GitSyncError as e:
            logger.error(f"Submodules checkout failed in {repo_dir}: {e}")
            raise

        if submodule_policy == SUBMODULES_CHECKOUT:
            for record in records:
                self.checkout_submodules(repo_dir / record.path, submodule_policy, update_step)

    def update_submodules(self, repo_dir: Path, depth: Optional[int] = None) -> None:
        """
        Run `git submodule update`, allowing clones from local file:// mirrors.

        Args:
            repo_dir: Working directory of the parent repository
            depth: Clone and fetch submodules with --depth when set
        """
        args = ["-c", "protocol.file.allow=always", "submodule", "update"]
        if not self._runner.version() < GIT_WITH_FORCE_SUBMODULE_UPDATE:
            args.append("--force")
        if depth is not None:
            args += ["--depth", str(depth)]
        self._runner.run(args, cwd=repo_dir, timeout=self._fetch_timeout)

    def update_submodules_with_mirrors(
        self,
        repo_dir: Path,
        parent_branch: str,
        update_mirror: Callable[[str, List[Revision]], Path],
        submodule_cache: Optional[SubmoduleUrlCache] = None,
    ) -> None:
        """
        Update every submodule mirror once per URL, then check out from the mirrors.

        Args:
            repo_dir: Working directory of the parent repository
            parent_branch: Branch of the parent, used for `branch = .` submodules
            update_mirror: Updates the mirror of a URL with the given revisions, returns its directory
            submodule_cache: Receives the submodule URLs of the parent's remote URL
        """
        repo_dir = Path(repo_dir)
        aggregated = self.get_submodules(repo_dir, parent_branch)
        if submodule_cache is not None:
            parent_url = self._read_config(repo_dir, "remote.origin.url")
            if parent_url:
                submodule_cache.persist(parent_url, aggregated.keys())

        for submodule in aggregated.values():
            self._build_logger.progress(f"Update git mirror for {', '.join(submodule.names)}")
            mirror_url = file_uri(update_mirror(submodule.url, submodule.revisions))
            for name in submodule.names:
                self._runner.run(["config", f"submodule.{name}.url", mirror_url], cwd=repo_dir)

        self.update_submodules(repo_dir)

        for submodule in aggregated.values():
            for record in submodule.submodules:
                submodule_dir = repo_dir / record.path
                if (submodule_dir / ".git").exists():
                    # cloned from the mirror; relative nested submodule urls resolve against origin
                    self._runner.run(["config", "remote.origin.url", submodule.url], cwd=submodule_dir)

    def get_submodules(self, repo_dir: Path, parent_branch: str) -> Dict[str, AggregatedSubmodule]:
        """Group the submodules of repo_dir by URL, resolving the commit each one is pinned to."""
        head = self._runner.run(["rev-parse", "HEAD"], cwd=repo_dir, tolerate_failure=True)
        if not head.ok or not head.stdout.strip():
            return {}
        revision = head.stdout.strip()

        aggregated: Dict[str, AggregatedSubmodule] = {}
        for record in read_gitmodules(repo_dir):
            url = self._read_config(repo_dir, f"submodule.{record.name}.url")
            if not url:
                logger.info(f".git/config doesn't contain an url for submodule '{record.name}', use url from .gitmodules")
                url = record.url
            if not url:
                logger.warning(f"No url found for submodule {record.name}, skip it")
                continue
            pinned = self._get_submodule_revision(repo_dir, revision, record.path)
            branch = record.branch
            if branch == ".":
                branch = parent_branch
            elif branch and not branch.startswith("refs/"):
                branch = f"refs/heads/{branch}"
            resolved = SubmoduleRecord(record.name, record.path, url, pinned, branch)
            aggregated.setdefault(url, AggregatedSubmodule(url)).submodules.append(resolved)
        return aggregated

    def add_submodule_usernames(self, repo_dir: Path, records: List[SubmoduleRecord]) -> None:
        """Put the parent root's username into http(s) submodule urls without one."""
        if not self._main_repo_username:
            return
        for record in records:
            # submodule sync already resolved relative urls in .git/config
            url = self._read_config(repo_dir, f"submodule.{record.name}.url") or record.url
            updated = inject_username(url, self._main_repo_username)
            if updated == url:
                continue
            self._runner.run(["config", f"submodule.{record.name}.url", updated], cwd=repo_dir)
            submodule_dir = Path(repo_dir) / record.path
            if (submodule_dir / ".git").exists():
                self._runner.run(["config", "remote.origin.url", updated], cwd=submodule_dir)
            logger.debug(f"Submodule url {url} changed to {updated}")

    def _get_submodule_revision(self, repo_dir: Path, revision: str, path: str) -> Optional[str]:
        result = self._runner.run(["ls-tree", revision, path], cwd=repo_dir, tolerate_failure=True)
        for line in result.lines():
            # <mode> SP <type> SP <object> TAB <path>
            meta, _, entry_path = line.partition("\t")
            parts = meta.split()
            if len(parts) == 3 and parts[1] == "commit" and entry_path == path:
                return parts[2]
        return None

    def _read_config(self, repo_dir: Path, key: str) -> Optional[str]:
        result = self._runner.run(["config", "--get", key], cwd=repo_dir, tolerate_failure=True)
        value = result.stdout.strip()
        return value if result.ok and value else None
