"""Checks and small repairs of on-disk repositories."""

import logging
from pathlib import Path

from ..git.command import GIT_WITH_IS_SHALLOW_REPOSITORY, GitCommandRunner
from ..git.errors import GitCommandError


logger = logging.getLogger(__name__)


def is_valid_git_repo(runner: GitCommandRunner, git_dir: Path) -> bool:
    """True if git_dir (a bare repository or a .git directory) can be opened by git."""
    git_dir = Path(git_dir)
    if not (git_dir / "HEAD").is_file() or not (git_dir / "objects").is_dir():
        return False
    # GIT_DIR stops git from discovering a repository in a parent directory
    result = runner.run(
        ["rev-parse", "--git-dir"], cwd=git_dir, env={"GIT_DIR": str(git_dir)}, tolerate_failure=True
    )
    return result.ok


def is_shallow_repository(runner: GitCommandRunner, work_dir: Path, git_dir: Path) -> bool:
    if not runner.version() < GIT_WITH_IS_SHALLOW_REPOSITORY:
        try:
            result = runner.run(["rev-parse", "--is-shallow-repository"], cwd=work_dir)
            return result.stdout.strip() == "true"
        except GitCommandError as e:
            logger.warning(f"Exception while running git rev-parse --is-shallow-repository: {e}")
    return (Path(git_dir) / "shallow").exists()


def remove_orphaned_idx_files(git_dir: Path) -> None:
    """Delete pack indexes whose pack file is gone; git refuses to work with them."""
    pack_dir = Path(git_dir) / "objects" / "pack"
    if not pack_dir.is_dir():
        return
    for idx in pack_dir.glob("*.idx"):
        if idx.with_suffix(".pack").exists():
            continue
        try:
            idx.unlink()
            logger.info(f"Removed orphaned pack index {idx}")
        except OSError as e:
            logger.warning(f"Cannot remove orphaned pack index {idx}: {e}")
