"""
Shared bare mirror update.

A mirror is validated (or re-initialized), its remote is reconfigured, its
outdated refs are pruned, and the requested commits are fetched into it.
Failed fetches are retried once after pruning when git reports ref lock
problems; reclone-safe failures wipe the mirror and clone it again; when
even wiping fails the directory is invalidated and a fresh one is used.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from ..config import AgentSyncConfig
from ..fs import delete_dir_content
from ..git.command import GitCommandRunner
from ..git.error_classifier import is_reclone_safe, is_ref_lock_error
from ..git.errors import GitSyncError, UnrecoverableMirrorError
from ..logging.build_logger import BuildProgressLogger
from ..mirrors.mirror_manager import MirrorManager
from .commit_loader import CommitLoader
from .refs import RefPruner
from .remote_config import RemoteConfigurator
from .repository import is_valid_git_repo, remove_orphaned_idx_files
from .retry import RetryPolicy


logger = logging.getLogger(__name__)

# (commit sha, full branch name or None for a commit outside any known branch)
Revision = Tuple[str, Optional[str]]


class MirrorUpdater:
    """Fetches commits into the mirrors handed out by a MirrorManager."""

    def __init__(
        self,
        runner: GitCommandRunner,
        build_logger: BuildProgressLogger,
        config: AgentSyncConfig,
        mirror_manager: MirrorManager,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        assert config.fetch is not None
        assert config.mirrors is not None
        assert config.timeouts is not None
        self._runner = runner
        self._build_logger = build_logger
        self._config = config
        self._mirror_manager = mirror_manager
        self._retry_policy = retry_policy or RetryPolicy()
        self._remote = RemoteConfigurator(runner, config.fetch.exclude_username_from_http_urls)
        self._pruner = RefPruner(runner, build_logger, config.timeouts.git_ls_remote_timeout, self._retry_policy)

    def update_mirror(self, url: str, revisions: List[Revision], is_submodule: bool = False) -> Path:
        """
        Make the revisions present in the mirror of url.

        Returns:
            The mirror directory; it differs from the one initially mapped
            to url when that one had to be invalidated.

        Raises:
            UnrecoverableMirrorError: If the mirror could not be updated even from scratch
            GitSyncError: If fetching failed and recloning would not help
        """
        mirror_dir = self._mirror_manager.get_mirror_dir(url)
        self._build_logger.progress(f"Update git mirror ({mirror_dir})")
        mirror_dir = self._update_local_mirror(mirror_dir, url, revisions, is_submodule)
        # packed refs can be copied into working directories
        self._runner.run(["pack-refs", "--all"], cwd=mirror_dir, timeout=self._config.timeouts.git_local_timeout)
        self._mirror_manager.mark_used(mirror_dir)
        return mirror_dir

    def _update_local_mirror(self, mirror_dir: Path, url: str, revisions: List[Revision], is_submodule: bool) -> Path:
        description = f"{'submodule ' if is_submodule else ''}local mirror of {url} at {mirror_dir}"
        logger.info(f"Update {description}")

        if is_valid_git_repo(self._runner, mirror_dir):
            remove_orphaned_idx_files(mirror_dir)
            self._remote.configure(mirror_dir, url)
            fetch_required = self._pruner.remove_outdated_refs(mirror_dir, mirror_dir)
        else:
            logger.info(f"Init {description}")
            delete_dir_content(mirror_dir)
            self._init_mirror(mirror_dir, url)
            fetch_required = True

        loader = self._create_loader(mirror_dir, is_submodule)
        try:
            self._load_commits(loader, fetch_required, revisions)
            return mirror_dir
        except GitSyncError as e:
            error = e

        if is_ref_lock_error(error):
            logger.warning(f"Fetch failed. Removing outdated refs and retrying fetch: {error}")
            self._build_logger.warning("Fetch failed. Removing outdated refs and retrying fetch")
            try:
                fetch_required = self._pruner.remove_outdated_refs(mirror_dir, mirror_dir) or fetch_required
                self._load_commits(loader, fetch_required, revisions)
                return mirror_dir
            except GitSyncError as retry_error:
                error = retry_error

        if self._config.mirrors.fail_on_clean_checkout or not is_reclone_safe(error):
            raise error

        logger.warning(f"Failed to fetch mirror, will try removing it and cloning from scratch: {error}")
        self._build_logger.warning(f"Failed to fetch {description}, will try removing it and cloning from scratch")
        if delete_dir_content(mirror_dir):
            self._init_mirror(mirror_dir, url)
            try:
                self._load_commits(loader, True, revisions)
            except GitSyncError as e:
                raise UnrecoverableMirrorError(
                    f"Failed to update {description} even after cloning it from scratch: {e}", mirror_dir
                ) from e
            return mirror_dir

        logger.info(f"Failed to delete repository {mirror_dir} after failed checkout, clone repository in another directory")
        self._mirror_manager.invalidate(mirror_dir)
        return self._update_local_mirror(self._mirror_manager.get_mirror_dir(url), url, revisions, is_submodule)

    def _init_mirror(self, mirror_dir: Path, url: str) -> None:
        mirror_dir.mkdir(parents=True, exist_ok=True)
        self._runner.run(["init", "--bare"], cwd=mirror_dir, timeout=self._config.timeouts.git_local_timeout)
        self._remote.configure(mirror_dir, url)

    def _create_loader(self, mirror_dir: Path, is_submodule: bool) -> CommitLoader:
        assert self._config.fetch is not None
        assert self._config.timeouts is not None
        kwargs = dict(
            build_logger=self._build_logger,
            fetch_heads_mode=self._config.fetch.fetch_heads_mode,
            fetch_tags=self._config.fetch.fetch_tags,
            fetch_timeout=self._config.timeouts.git_fetch_timeout,
            ls_remote_timeout=self._config.timeouts.git_ls_remote_timeout,
            retry_policy=self._retry_policy,
        )
        if is_submodule:
            return CommitLoader.for_submodule_mirror(self._runner, mirror_dir, **kwargs)
        return CommitLoader.for_mirror(self._runner, mirror_dir, **kwargs)

    def _load_commits(self, loader: CommitLoader, fetch_required: bool, revisions: List[Revision]) -> None:
        for sha, branch in revisions:
            if branch is None:
                found = loader.load_commit(sha)
            else:
                found = loader.load_commit_in_branch(sha, branch, fetch_required)
            if not found:
                # the working directory reports the missing commit
                logger.warning(f"Commit {sha} is not found in mirror {loader.repo_dir} after fetch")
