"""
Working directory cleaning.

Runs `git clean` according to the root's clean policy and scope. Paths of
other roots of the build checked out below this root's directory are
excluded so cleaning one root never removes files of another.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List

from ..config import (
    CLEAN_ALL_UNTRACKED,
    CLEAN_ALWAYS,
    CLEAN_IGNORED_ONLY,
    CLEAN_NON_IGNORED_ONLY,
    CLEAN_ON_BRANCH_CHANGE,
)
from ..git.command import GIT_WITH_CLEAN_EXCLUDE, GitCommandRunner
from ..logging.build_logger import BuildProgressLogger
from .models import IncludeRule, RepositorySpec, SiblingRoot
from .submodules import read_gitmodules


logger = logging.getLogger(__name__)

_SCOPE_FLAGS = {
    CLEAN_ALL_UNTRACKED: ["-x"],
    CLEAN_NON_IGNORED_ONLY: [],
    CLEAN_IGNORED_ONLY: ["-X"],
}


def should_clean(clean_policy: str, branch_changed: bool) -> bool:
    return clean_policy == CLEAN_ALWAYS or (branch_changed and clean_policy == CLEAN_ON_BRANCH_CHANGE)


def relative_target_path(target_dir: Path, checkout_dir: Path) -> str:
    """Path of target_dir inside the build checkout directory, "" for the directory itself."""
    try:
        path = os.path.relpath(Path(target_dir).resolve(), Path(checkout_dir).resolve())
    except ValueError:
        return str(Path(target_dir).resolve()).replace("\\", "/")
    if path.startswith(".."):
        return str(Path(target_dir).resolve()).replace("\\", "/")
    return "" if path == "." else path.replace("\\", "/")


def _starts_with_path(path: str, prefix: str) -> bool:
    return prefix == "" or path == prefix or path.startswith(prefix + "/")


def can_checkout_into_same_dir(target_path: str, include: IncludeRule, excludes: Iterable[str]) -> bool:
    """
    True if the other root excludes exactly the directory this root is checked out into.

    A root kept in a directory the other root's rules exclude can be cleaned
    without touching files of the other root.
    """
    for exclude in excludes:
        if include.from_path and not _starts_with_path(exclude, include.from_path):
            continue
        remainder = exclude[len(include.from_path):].lstrip("/")
        excluded_target = "/".join(p for p in (include.to_path, remainder) if p)
        if _starts_with_path(target_path, excluded_target):
            return True
    return False


class WorkingDirCleaner:
    """Runs git clean in a working directory and its submodules."""

    def __init__(
        self,
        runner: GitCommandRunner,
        build_logger: BuildProgressLogger,
        respect_other_roots: bool = True,
        local_timeout: float = 300,
    ):
        self._runner = runner
        self._build_logger = build_logger
        self._respect_other_roots = respect_other_roots
        self._timeout = local_timeout

    def clean(
        self,
        spec: RepositorySpec,
        target_dir: Path,
        checkout_dir: Path,
        branch_changed: bool,
        with_submodules: bool,
    ) -> bool:
        """
        Clean target_dir if the clean policy asks for it.

        Returns:
            True if git clean was run
        """
        if not should_clean(spec.clean_policy, branch_changed):
            return False

        self._build_logger.message(
            f"Cleaning {spec.name} in {target_dir} the file set {spec.clean_files_policy}"
        )
        excludes: List[str] = []
        if self._respect_other_roots:
            target_path = relative_target_path(target_dir, checkout_dir)
            for other in spec.sibling_roots:
                excludes.extend(self.get_paths_to_exclude(spec, other, target_path))
        self._run_clean(Path(target_dir), spec.clean_files_policy, excludes)

        if with_submodules:
            self._clean_submodules(Path(target_dir), spec.clean_files_policy)
        return True

    def get_paths_to_exclude(self, spec: RepositorySpec, other: SiblingRoot, target_path: str) -> List[str]:
        """Return first-level paths under target_path that belong to another root."""
        clashing = set()
        for rule in other.rules.includes:
            to_path = rule.to_path
            if target_path == to_path:
                self._build_logger.warning(
                    f"Two VCS roots shouldn't be checked out into the same folder: performing git clean for "
                    f"{spec.name} will remove files checked out for {other.name} and vice versa. "
                    "Please configure checkout to separate folders using checkout rules."
                )
                return []
            if target_path == "":
                clashing.add(to_path)
            elif _starts_with_path(target_path, to_path):
                if not can_checkout_into_same_dir(target_path, rule, other.rules.excludes):
                    self._build_logger.warning(
                        f"Two VCS roots shouldn't be checked out into the same folder: performing git clean for "
                        f"{spec.name} may remove files checked out for {other.name}. "
                        "Please configure checkout to separate folders using checkout rules."
                    )
            elif to_path.startswith(target_path + "/"):
                clashing.add(to_path[len(target_path) + 1:])

        result: List[str] = []
        for path in sorted(clashing):
            # keep the most common paths only
            if not result or not path.startswith(result[-1] + "/"):
                result.append(path)

        if result and self._runner.version() < GIT_WITH_CLEAN_EXCLUDE:
            self._build_logger.warning(
                f"git version {self._runner.version()} doesn't support --exclude option for clean command: "
                f"performing git clean for {spec.name} will remove files checked out for {other.name}"
            )
            return []
        return result

    def _run_clean(self, repo_dir: Path, clean_files_policy: str, excludes: Iterable[str]) -> None:
        args = ["clean", "-f", "-d", *_SCOPE_FLAGS[clean_files_policy]]
        for path in excludes:
            # a leading slash anchors the pattern at the first level
            args.extend(["-e", f"/{path}"])
        self._runner.run(args, cwd=repo_dir, timeout=self._timeout)

    def _clean_submodules(self, repo_dir: Path, clean_files_policy: str) -> None:
        for record in read_gitmodules(repo_dir):
            submodule_dir = repo_dir / record.path
            if not (submodule_dir / ".git").exists():
                continue
            self._build_logger.message(f"Cleaning files in {submodule_dir} the file set {clean_files_policy}")
            self._run_clean(submodule_dir, clean_files_policy, [])
            self._clean_submodules(submodule_dir, clean_files_policy)
