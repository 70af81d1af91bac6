"""
Exception hierarchy for the git synchronization engine.

Every error raised by the engine derives from GitSyncError. The class of an
error decides how the engine reacts to it:

- TransientExecutionError: retried with backoff, then surfaced
- RepairableLocalStateError: repaired in place, operation retried once
- UnrecoverableMirrorError: mirror wiped and recreated once if reclone-safe
- PolicyViolationError: never retried, fails the build immediately
- RevisionNotFoundError: raised after all fetch strategies are exhausted
- CheckoutCanceledError: build interruption, never retried
"""

from pathlib import Path
from typing import List, Optional


PROBLEM = "problem"
FAILURE = "failure"


class GitSyncError(Exception):
    """
    Base class for all synchronization errors.

    Attributes:
        severity: "problem" for recoverable build problems, "failure" for
                  hard VCS failures aborting the checkout step.
    """

    severity = FAILURE


class GitCommandError(GitSyncError):
    """
    Raised when a git subprocess exits with a non-zero code.

    Attributes:
        command: The masked command line that failed.
        exit_code: Process exit code (None when the process was killed).
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class TransientExecutionError(GitSyncError):
    """Timeout, network or lock contention failure which may go away on retry."""


class GitTimeoutError(GitCommandError, TransientExecutionError):
    """Raised when git produced no output within the idle timeout."""

    def __init__(self, message: str, command: str = "", timeout: float = 0):
        super().__init__(message, command=command)
        self.timeout = timeout


class RepairableLocalStateError(GitSyncError):
    """Local repository state which can be fixed in place (index, lock files)."""


class GitIndexCorruptedError(GitCommandError, RepairableLocalStateError):
    """
    Raised when git reports a corrupted index file.

    Attributes:
        index_path: Path of the corrupted index, deleted before the retry.
    """

    def __init__(self, message: str, index_path: Path, command: str = "", stderr: str = ""):
        super().__init__(message, command=command, stderr=stderr)
        self.index_path = index_path


class UnrecoverableMirrorError(GitSyncError):
    """Raised when a mirror could not be updated even after recloning it."""

    def __init__(self, message: str, mirror_dir: Optional[Path] = None):
        super().__init__(message)
        self.mirror_dir = mirror_dir


class PolicyViolationError(GitSyncError):
    """Unsupported auth for transport, incompatible checkout rules and the like."""


class RevisionNotFoundError(GitSyncError):
    """
    Raised when the target revision is still missing after every permitted fetch.

    Attributes:
        revision: The commit sha that could not be loaded.
        branch: The ref it was expected in.
    """

    severity = PROBLEM

    def __init__(self, revision: str, branch: str, tried: Optional[List[str]] = None):
        super().__init__(
            f"Cannot find revision {revision} in branch {branch}"
            + (f" (tried: {', '.join(tried)})" if tried else "")
        )
        self.revision = revision
        self.branch = branch
        self.tried = list(tried or [])


class CheckoutCanceledError(GitSyncError):
    """Raised when the build was interrupted while the engine was working."""
