"""
Ref-set model and outdated ref pruning.

Local refs are compared with the refs advertised by the remote. Two kinds of
stale refs are detected independently and removed by one pruning function:

- InvalidRef: names git itself reports as broken (show-ref errors)
- OutdatedRef: refs absent on the remote or pointing at a different tip,
  e.g. a renamed or force-pushed branch
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..git.command import GIT_WITH_UPDATE_REF_STDIN, GitCommandRunner
from ..git.errors import CheckoutCanceledError, GitCommandError
from ..logging.build_logger import BuildProgressLogger
from .retry import RetryPolicy, retry_network_operation


logger = logging.getLogger(__name__)

HEADS_PREFIX = "refs/heads/"
TAGS_PREFIX = "refs/tags/"
REMOTE_TRACKING_PREFIX = "refs/remotes/origin/"

INVALID_REF_PREFIX = "error: "
INVALID_REF_SUFFIX = " does not point to a valid object!"

# update-ref --stdin batch size
REMOVE_REFS_BATCH_SIZE = 1000


def expand_ref(ref: str) -> str:
    """Turn a short branch name into a full ref name."""
    return ref if ref.startswith("refs/") else HEADS_PREFIX + ref


def create_remote_ref(ref: str) -> str:
    """Return the remote-tracking ref a fetch of `ref` from origin is stored in."""
    if ref.startswith("refs/"):
        if ref.startswith(HEADS_PREFIX):
            return REMOTE_TRACKING_PREFIX + ref[len(HEADS_PREFIX):]
        return ref
    return REMOTE_TRACKING_PREFIX + ref


def is_regular_branch(full_ref: str) -> bool:
    return full_ref.startswith(HEADS_PREFIX)


def is_tag(full_ref: str) -> bool:
    return full_ref.startswith(TAGS_PREFIX)


def short_name(full_ref: str) -> str:
    for prefix in (HEADS_PREFIX, TAGS_PREFIX):
        if full_ref.startswith(prefix):
            return full_ref[len(prefix):]
    return full_ref


class RefSnapshot:
    """Immutable set of (ref name, object id) pairs."""

    def __init__(self, refs: Optional[Dict[str, str]] = None):
        self._refs: Dict[str, str] = dict(refs or {})

    @classmethod
    def from_show_ref(cls, output: str) -> "RefSnapshot":
        refs = {}
        for line in output.splitlines():
            # 40 hex digits, a space, the ref name
            if len(line) < 41:
                continue
            refs[line[41:].strip()] = line[:40]
        return cls(refs)

    @classmethod
    def from_ls_remote(cls, output: str) -> "RefSnapshot":
        refs = {}
        for line in output.splitlines():
            parts = line.split("\t", 1)
            if len(parts) != 2:
                continue
            sha, name = parts[0].strip(), parts[1].strip()
            if name.endswith("^{}"):
                continue
            refs[name] = sha
        return cls(refs)

    def get(self, name: str) -> Optional[str]:
        return self._refs.get(name)

    def names(self) -> List[str]:
        return sorted(self._refs)

    def items(self):
        return sorted(self._refs.items())

    def __contains__(self, name: object) -> bool:
        return name in self._refs

    def __len__(self) -> int:
        return len(self._refs)

    def is_empty(self) -> bool:
        return not self._refs


@dataclass(frozen=True)
class InvalidRef:
    """A ref git reports as not pointing to a valid object."""

    name: str


@dataclass(frozen=True)
class OutdatedRef:
    """A local ref whose remote counterpart is gone or points elsewhere."""

    local_name: str
    local_sha: str
    remote_sha: Optional[str]


StaleRef = Union[InvalidRef, OutdatedRef]


def parse_invalid_refs(stderr: str) -> List[InvalidRef]:
    """Extract refs from `error: <ref> does not point to a valid object!` lines."""
    result = []
    for line in stderr.splitlines():
        line = line.strip()
        if line.startswith(INVALID_REF_PREFIX) and line.endswith(INVALID_REF_SUFFIX):
            result.append(InvalidRef(line[len(INVALID_REF_PREFIX): -len(INVALID_REF_SUFFIX)]))
    return result


def corresponding_remote_name(local_name: str) -> str:
    """Map refs/remotes/origin/x to the name the remote advertises (refs/heads/x)."""
    if local_name.startswith(REMOTE_TRACKING_PREFIX):
        return HEADS_PREFIX + local_name[len(REMOTE_TRACKING_PREFIX):]
    return local_name


def find_outdated_refs(local: RefSnapshot, remote: RefSnapshot) -> List[OutdatedRef]:
    """Return local refs absent on the remote or pointing at another commit."""
    outdated = []
    for name, sha in local.items():
        remote_sha = remote.get(corresponding_remote_name(name))
        if remote_sha is None or remote_sha != sha:
            outdated.append(OutdatedRef(name, sha, remote_sha))
    return outdated


def _batches(items: List[str], size: int) -> List[List[str]]:
    return [items[i: i + size] for i in range(0, len(items), size)]


class RefPruner:
    """
    Removes stale refs from a repository before fetching into it.

    Works for both bare mirrors and working directories; `git_dir` is the
    directory holding refs/ and packed-refs.
    """

    def __init__(
        self,
        runner: GitCommandRunner,
        build_logger: BuildProgressLogger,
        ls_remote_timeout: float = 300,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._runner = runner
        self._build_logger = build_logger
        self._ls_remote_timeout = ls_remote_timeout
        self._retry_policy = retry_policy or RetryPolicy()

    def remove_outdated_refs(self, work_dir: Path, git_dir: Path) -> bool:
        """
        Delete invalid and outdated refs.

        Args:
            work_dir: Directory git commands run in
            git_dir: Directory holding refs/ (work_dir/.git or a bare mirror)

        Returns:
            True if any ref was removed, meaning a fetch is required
        """
        show_ref = self._runner.run(["show-ref"], cwd=work_dir, tolerate_failure=True)
        invalid = parse_invalid_refs(show_ref.stderr)

        # exit code 1 with empty output just means there are no refs
        failed = not show_ref.ok and bool(show_ref.stderr.strip())
        if failed and not invalid:
            # show-ref failed without naming the culprits, start from an empty refs namespace
            self._build_logger.warning(f"Failed to list refs in {work_dir}, removing all local refs")
            self._recreate_refs(git_dir)
            return True

        local = RefSnapshot.from_show_ref(show_ref.stdout)
        if local.is_empty() and not invalid:
            return False

        stale: List[StaleRef] = list(invalid)
        if not local.is_empty():
            remote = self._list_remote_refs(work_dir)
            if remote is not None:
                stale.extend(find_outdated_refs(local, remote))

        return self.prune(work_dir, stale)

    def prune(self, work_dir: Path, stale: Iterable[StaleRef]) -> bool:
        """Delete the given refs. Returns True if anything was deleted."""
        names = []
        for ref in stale:
            if isinstance(ref, InvalidRef):
                logger.info(f"Removing invalid ref {ref.name} in {work_dir}")
                names.append(ref.name)
            else:
                logger.info(
                    f"Removing outdated ref {ref.local_name} in {work_dir} "
                    f"(local {ref.local_sha}, remote {ref.remote_sha or 'absent'})"
                )
                names.append(ref.local_name)
        names = list(dict.fromkeys(names))
        if not names:
            return False
        self._remove_refs(work_dir, names)
        return True

    def _list_remote_refs(self, work_dir: Path) -> Optional[RefSnapshot]:
        try:
            result = retry_network_operation(
                lambda: self._runner.run(["ls-remote", "origin"], cwd=work_dir, timeout=self._ls_remote_timeout),
                self._retry_policy,
                description="ls-remote",
            )
        except CheckoutCanceledError:
            raise
        except GitCommandError as e:
            message = "Failed to list remote repository refs, outdated local refs will not be cleaned"
            logger.warning(f"{message}: {e}")
            self._build_logger.warning(message)
            return None
        return RefSnapshot.from_ls_remote(result.stdout)

    def _remove_refs(self, work_dir: Path, names: List[str]) -> None:
        if len(names) == 1 or self._runner.version() < GIT_WITH_UPDATE_REF_STDIN:
            if len(names) > 100:
                self._build_logger.warning(
                    f"Removing a lot of refs ({len(names)}) may be inefficient using git "
                    f"{self._runner.version()}, consider updating git"
                )
            for name in names:
                self._runner.run(["update-ref", "-d", name], cwd=work_dir)
            return

        for batch in _batches(names, REMOVE_REFS_BATCH_SIZE):
            self._build_logger.progress(f"Removing refs: {', '.join(batch)}")
            self._runner.run(
                ["update-ref", "--stdin"],
                cwd=work_dir,
                stdin="".join(f"delete {name}\n" for name in batch),
            )

    def _recreate_refs(self, git_dir: Path) -> None:
        for name in ("FETCH_HEAD", "packed-refs"):
            try:
                (git_dir / name).unlink()
            except FileNotFoundError:
                pass
        refs_dir = git_dir / "refs"
        shutil.rmtree(str(refs_dir), ignore_errors=True)
        try:
            # a valid repository must have a refs directory
            (refs_dir / "heads").mkdir(parents=True, exist_ok=True)
            (refs_dir / "tags").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._build_logger.warning(f"Failed to re-create refs folder: {e}")
