"""
Commit loader: decides which refspecs to fetch to make a commit reachable.

The fetch breadth mode controls the order of fetches:

- after-branch:  fetch the build branch; fetch all heads only if still missing
- before-branch: fetch all heads first, then the build ref if it is not a
                 regular branch and the commit is still missing
- always:        like before-branch, but fetch all heads on every call

Nothing is fetched when the remote-tracking ref already points at the
target commit and that commit is present in the object store.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from ..config import FETCH_AFTER_BRANCH, FETCH_ALWAYS, FETCH_BEFORE_BRANCH
from ..git.command import GitCommandRunner, GitResult
from ..git.error_classifier import is_unadvertised_object_error
from ..git.errors import GitCommandError, GitIndexCorruptedError, GitTimeoutError, RevisionNotFoundError
from ..logging.build_logger import BuildProgressLogger
from .refs import RefSnapshot, create_remote_ref, expand_ref, is_tag
from .retry import RetryPolicy, remove_ref_locks, retry_network_operation


logger = logging.getLogger(__name__)

WORKING_DIR_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"
MIRROR_REFSPEC = "+refs/heads/*:refs/heads/*"
SUBMODULE_MIRROR_REFSPEC = "+refs/*:refs/*"

TMP_BRANCH_NAME = "tmp_branch_for_build"


class CommitLoader:
    """
    Fetches commits into one repository (working directory or bare mirror).

    Instances are created with the factory class methods, which fix the
    fetch-all refspec and the naming of remote-tracking refs.
    """

    def __init__(
        self,
        runner: GitCommandRunner,
        repo_dir: Path,
        git_dir: Path,
        fetch_all_refspec: str,
        remote_ref_name: Callable[[str], str],
        build_logger: BuildProgressLogger,
        fetch_heads_mode: str = FETCH_AFTER_BRANCH,
        fetch_tags: bool = False,
        shallow_depth: int = 1,
        fetch_timeout: float = 1800,
        ls_remote_timeout: float = 300,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the commit loader.

        Args:
            runner: Git runner
            repo_dir: Directory git commands run in
            git_dir: Directory holding refs/ (cleared of stale locks before each fetch)
            fetch_all_refspec: Refspec fetching every branch head
            remote_ref_name: Maps a full ref name to the local ref a fetch stores it in
            build_logger: Build progress logger
            fetch_heads_mode: after-branch | before-branch | always
            fetch_tags: Fetch tags with regular fetches
            shallow_depth: Depth of shallow fetches
            fetch_timeout: Idle timeout of fetches in seconds
            ls_remote_timeout: Idle timeout of ls-remote in seconds
            retry_policy: Retry schedule for fetches
        """
        self.runner = runner
        self.repo_dir = Path(repo_dir)
        self.git_dir = Path(git_dir)
        self.fetch_all_refspec = fetch_all_refspec
        self.remote_ref_name = remote_ref_name
        self.build_logger = build_logger
        self.fetch_heads_mode = fetch_heads_mode
        self.fetch_tags = fetch_tags
        self.shallow_depth = shallow_depth
        self.fetch_timeout = fetch_timeout
        self.ls_remote_timeout = ls_remote_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.fetched_refspecs: List[str] = []

    @classmethod
    def for_working_dir(cls, runner: GitCommandRunner, target_dir: Path, **kwargs) -> "CommitLoader":
        return cls(runner, target_dir, Path(target_dir) / ".git", WORKING_DIR_REFSPEC, create_remote_ref, **kwargs)

    @classmethod
    def for_mirror(cls, runner: GitCommandRunner, mirror_dir: Path, **kwargs) -> "CommitLoader":
        return cls(runner, mirror_dir, mirror_dir, MIRROR_REFSPEC, expand_ref, **kwargs)

    @classmethod
    def for_submodule_mirror(cls, runner: GitCommandRunner, mirror_dir: Path, **kwargs) -> "CommitLoader":
        return cls(runner, mirror_dir, mirror_dir, SUBMODULE_MIRROR_REFSPEC, expand_ref, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ensure_commit_loaded(self, sha: str, branch: str, enforce_fetch: bool = False, shallow: bool = False) -> None:
        """
        Make sha reachable or raise RevisionNotFoundError.

        Args:
            sha: Target commit
            branch: Full name of the ref the commit is expected in
            enforce_fetch: Fetch even if the local state looks up to date
            shallow: Prefer a shallow fetch of the commit
        """
        if shallow:
            found = self.load_commit_prefer_shallow(sha, branch)
        else:
            found = self.load_commit_in_branch(sha, branch, enforce_fetch)
        if not found:
            raise RevisionNotFoundError(sha, branch, tried=self.fetched_refspecs)

    def load_commit(self, sha: str) -> bool:
        """Load a commit not tied to a branch."""
        if self.has_revision(sha):
            return True
        self._fetch_all_branches()
        return self.has_revision(sha)

    def load_commit_in_branch(self, sha: str, branch: str, enforce_fetch: bool = False) -> bool:
        """
        Fetch according to the fetch heads mode until sha is reachable.

        Returns:
            True if sha is present locally afterwards
        """
        branch = expand_ref(branch)
        mode = self.fetch_heads_mode
        if mode == FETCH_ALWAYS:
            self.build_logger.message(f"Forced fetch (fetch heads mode={mode}) with {self.fetch_all_refspec} refspec")
            self._fetch_all_branches()
            if self._is_single_branch_fetch_required(branch) and self._is_fetch_required(sha, branch):
                self._fetch_branch(branch)
        elif mode == FETCH_BEFORE_BRANCH:
            if not self._is_fetch_required(sha, branch, enforce_fetch):
                return True
            self._fetch_all_branches()
            if self._is_single_branch_fetch_required(branch) and self._is_fetch_required(sha, branch):
                self._fetch_branch(branch)
        elif mode == FETCH_AFTER_BRANCH:
            if not self._is_fetch_required(sha, branch, enforce_fetch):
                return True
            self._fetch_branch(branch)
            if self.has_revision(sha):
                return True
            self._fetch_all_branches()
        else:
            raise ValueError(f"Unknown fetch heads mode: {mode}")
        return self.has_revision(sha)

    def load_commit_prefer_shallow(self, sha: str, branch: str) -> bool:
        """
        Try a shallow fetch of the commit, falling back to regular loading.

        Only the after-branch mode supports shallow fetches.
        """
        branch = expand_ref(branch)
        if self.fetch_heads_mode != FETCH_AFTER_BRANCH:
            self.build_logger.warning(
                f"Shallow fetch won't be performed because fetch heads mode is set to "
                f"{self.fetch_heads_mode}, which is incompatible with shallow clone."
            )
            return self.load_commit_in_branch(sha, branch)

        if self.has_revision(sha) and self.has_branch(branch):
            logger.debug(f"Branch '{branch}' and revision '{sha}' are present in the local repository, skip fetch")
            return True

        branch_points_to_revision = self._remote_branch_points_to(branch, sha)
        if is_tag(branch) and branch_points_to_revision:
            self._fetch_branch(branch, shallow=True)
        else:
            try:
                self._fetch(self._refspec_for_revision(sha, branch), shallow=True)
            except GitIndexCorruptedError:
                raise
            except GitCommandError as e:
                if not is_unadvertised_object_error(e):
                    raise
                self.build_logger.warning(
                    "Server does not allow request for unadvertised object: to speed-up the checkout configure "
                    "your remote repository to allow directly fetching commits (set "
                    "uploadpack.allowReachableSHA1InWant or uploadpack.allowAnySHA1InWant to true)"
                )
                if branch_points_to_revision:
                    self._fetch_branch(branch, shallow=True)

        if self.has_revision(sha):
            return True
        logger.debug(f"Failed to get the revision '{sha}' using shallow fetch, will try regular fetch")
        return self.load_commit_in_branch(sha, branch)

    def load_shallow_branch(self, sha: str, branch: str, mirror_dir: Path) -> None:
        """
        Fetch sha from a local mirror with a shallow fetch.

        A temporary branch pointing at sha is created in the mirror because
        git only fetches refs, not arbitrary commits, from it. Tags are
        fetched by their own name instead: fetching a temporary branch which
        points where a tag points makes git fetch both and fail.
        """
        branch = expand_ref(branch)
        if is_tag(branch):
            self._fetch(f"+{branch}:{branch}", shallow=True)
            return

        tmp_branch = self._create_tmp_branch(mirror_dir, sha)
        try:
            self._fetch(f"+refs/heads/{tmp_branch}:{create_remote_ref(branch)}", shallow=True)
        finally:
            self.runner.run(["branch", "-D", tmp_branch], cwd=mirror_dir, tolerate_failure=True)

    # ------------------------------------------------------------------
    # Local state queries
    # ------------------------------------------------------------------

    def has_revision(self, sha: str) -> bool:
        result = self.runner.run(
            ["log", "-n1", "--pretty=format:%H%x20%s", sha, "--"], cwd=self.repo_dir, tolerate_failure=True
        )
        return result.ok and bool(result.stdout.strip())

    def has_branch(self, branch: str) -> bool:
        return self.get_ref(self.remote_ref_name(branch)) is not None

    def get_ref(self, ref_name: str) -> Optional[str]:
        result = self.runner.run(["show-ref", "--verify", ref_name], cwd=self.repo_dir, tolerate_failure=True)
        if not result.ok:
            return None
        return RefSnapshot.from_show_ref(result.stdout).get(ref_name)

    def _is_fetch_required(self, sha: str, branch: str, enforce_fetch: bool = False) -> bool:
        if enforce_fetch:
            self.build_logger.message("Local clone state requires 'git fetch'.")
            return True
        remote_ref_name = self.remote_ref_name(branch)
        remote_ref_sha = self.get_ref(remote_ref_name)
        if remote_ref_sha is None:
            self.build_logger.message(
                f"'git fetch' required: '{remote_ref_name}' is not found in the local repository clone."
            )
            return True
        if not self.has_revision(sha):
            self.build_logger.message(f"'git fetch' required: commit '{sha}' is not found in the local repository clone.")
            return True
        if remote_ref_sha == sha:
            self.build_logger.message(
                f"No 'git fetch' required: commit '{sha}' is in the local repository clone pointed by '{remote_ref_name}'."
            )
            return False
        self.build_logger.message(
            f"'git fetch' required: commit '{sha}' is in the local repository clone, but '{remote_ref_name}' "
            f"points to another commit '{remote_ref_sha}'."
        )
        return True

    @staticmethod
    def _is_single_branch_fetch_required(branch: str) -> bool:
        return not branch.startswith("refs/heads")

    def _remote_branch_points_to(self, branch: str, sha: str) -> bool:
        result = retry_network_operation(
            lambda: self.runner.run(["ls-remote", "origin", branch], cwd=self.repo_dir, timeout=self.ls_remote_timeout),
            self.retry_policy,
            description="ls-remote",
            build_logger=self.build_logger,
        )
        return RefSnapshot.from_ls_remote(result.stdout).get(branch) == sha

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _refspec_for_revision(self, sha: str, branch: str) -> str:
        if is_tag(branch):
            return sha
        return f"+{sha}:{self.remote_ref_name(branch)}"

    def _fetch_branch(self, branch: str, shallow: bool = False) -> None:
        self._fetch(f"+{branch}:{self.remote_ref_name(branch)}", shallow=shallow)

    def _fetch_all_branches(self) -> None:
        self._fetch(self.fetch_all_refspec)

    def _fetch(self, refspec: str, shallow: bool = False) -> None:
        self.fetched_refspecs.append(refspec)
        try:
            self._fetch_with_retry(refspec, shallow)
        except GitIndexCorruptedError as e:
            self.build_logger.message(f"Git index '{e.index_path}' is corrupted, remove it and repeat git fetch")
            try:
                Path(e.index_path).unlink()
            except FileNotFoundError:
                pass
            self._fetch_with_retry(refspec, shallow)
        except GitTimeoutError:
            self.build_logger.error(
                f"No output from git during {self.fetch_timeout:g} seconds. "
                "Try increasing the fetch idle timeout (timeouts.git_fetch_timeout)."
            )
            raise

    def _fetch_with_retry(self, refspec: str, shallow: bool) -> GitResult:
        args = ["fetch", "--progress"]
        if shallow:
            args += ["--no-tags", f"--depth={self.shallow_depth}"]
        else:
            args.append("--tags" if self.fetch_tags else "--no-tags")
        args += ["origin", refspec]

        def attempt() -> GitResult:
            remove_ref_locks(self.git_dir)
            return self.runner.run(args, cwd=self.repo_dir, timeout=self.fetch_timeout)

        self.build_logger.progress(f"Fetching {refspec} into {self.repo_dir}")
        return retry_network_operation(attempt, self.retry_policy, description="git fetch", build_logger=self.build_logger)

    def _create_tmp_branch(self, mirror_dir: Path, sha: str) -> str:
        result = self.runner.run(["show-ref"], cwd=mirror_dir, tolerate_failure=True)
        existing = RefSnapshot.from_show_ref(result.stdout)
        name = TMP_BRANCH_NAME
        index = 0
        while f"refs/heads/{name}" in existing:
            name = f"{TMP_BRANCH_NAME}{index}"
            index += 1
        self.runner.run(["branch", name, sha], cwd=mirror_dir)
        return name
