"""
Working tree checkout.

Moves the working directory to the build revision. Regular branches are
checked out as local branches tracking origin; tags and other refs end in a
detached HEAD.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..git.command import GitCommandRunner
from ..logging.build_logger import BuildProgressLogger
from .refs import RefSnapshot, create_remote_ref, expand_ref, is_regular_branch, is_tag, short_name
from .retry import remove_index_lock, run_with_local_repair


logger = logging.getLogger(__name__)


@dataclass
class Branches:
    """Local branches parsed from `git branch` output."""

    names: List[str] = field(default_factory=list)
    current: Optional[str] = None

    @classmethod
    def parse(cls, output: str) -> "Branches":
        branches = cls()
        for line in output.splitlines():
            if not line.strip():
                continue
            is_current = line.startswith("*")
            name = line[1:].strip() if is_current else line.strip()
            if name.startswith("("):
                # detached HEAD or rebase in progress
                continue
            branches.names.append(name)
            if is_current:
                branches.current = name
        return branches

    def is_current(self, name: str) -> bool:
        return self.current == name

    def __contains__(self, name: object) -> bool:
        return name in self.names


class WorkingTreeCheckout:
    """Checks out a revision into a non-bare repository."""

    def __init__(self, runner: GitCommandRunner, build_logger: BuildProgressLogger, local_timeout: float = 300):
        self._runner = runner
        self._build_logger = build_logger
        self._timeout = local_timeout

    def update_sources(self, target_dir: Path, branch: str, revision: str) -> bool:
        """
        Check out revision of branch in target_dir.

        Returns:
            True if HEAD names another branch than before (always for a detached HEAD)
        """
        target_dir = Path(target_dir)
        full_branch = expand_ref(branch)
        remove_index_lock(target_dir / ".git")

        if is_regular_branch(full_branch):
            return self._update_branch(target_dir, full_branch, revision)

        if is_tag(full_branch):
            tag_sha = self._get_ref(target_dir, full_branch)
            what = short_name(full_branch) if tag_sha == revision else revision
        else:
            what = revision
        self._repaired(target_dir, ["checkout", "-q", "-f", what])
        return True

    def _update_branch(self, target_dir: Path, full_branch: str, revision: str) -> bool:
        branch_name = short_name(full_branch)
        remote_ref = create_remote_ref(full_branch)
        branches = self.list_branches(target_dir)

        if branches.is_current(branch_name):
            remove_index_lock(target_dir / ".git")
            self._repaired(target_dir, ["reset", "--hard", revision])
            self._set_upstream(target_dir, branch_name, remote_ref)
            return False

        # HEAD still names a branch deleted by ref pruning
        previous = self.head_branch(target_dir)
        if branch_name not in branches:
            if self._get_ref(target_dir, remote_ref) is not None:
                self._run(target_dir, ["branch", "--track", branch_name, remote_ref])
            else:
                self._run(target_dir, ["branch", branch_name, revision])
        self._run(target_dir, ["update-ref", full_branch, revision])
        self._repaired(target_dir, ["checkout", "-q", "-f", branch_name])
        if branch_name in branches:
            self._set_upstream(target_dir, branch_name, remote_ref)
        return previous != full_branch

    def list_branches(self, target_dir: Path) -> Branches:
        result = self._runner.run(["branch"], cwd=target_dir, timeout=self._timeout)
        return Branches.parse(result.stdout)

    def head_branch(self, target_dir: Path) -> Optional[str]:
        """Full name of the branch HEAD points to (it may be unborn), None when detached."""
        result = self._runner.run(["symbolic-ref", "-q", "HEAD"], cwd=target_dir, tolerate_failure=True)
        return (result.stdout.strip() or None) if result.ok else None

    def _set_upstream(self, target_dir: Path, branch_name: str, remote_ref: str) -> None:
        result = self._runner.run(
            ["branch", f"--set-upstream-to={remote_ref}", branch_name],
            cwd=target_dir,
            timeout=self._timeout,
            tolerate_failure=True,
        )
        if not result.ok:
            logger.debug(f"Cannot set upstream of {branch_name} to {remote_ref}: {result.stderr.strip()}")

    def _get_ref(self, target_dir: Path, ref_name: str) -> Optional[str]:
        result = self._runner.run(["show-ref", "--verify", ref_name], cwd=target_dir, tolerate_failure=True)
        return RefSnapshot.from_show_ref(result.stdout).get(ref_name) if result.ok else None

    def _run(self, target_dir: Path, args: List[str]) -> None:
        self._runner.run(args, cwd=target_dir, timeout=self._timeout)

    def _repaired(self, target_dir: Path, args: List[str]) -> None:
        run_with_local_repair(
            self._runner, target_dir, lambda: self._run(target_dir, args), self._build_logger
        )
