"""
Retry and self-healing helpers.

Two kinds of recovery live here:

- network operations (fetch, ls-remote) are retried following a fixed,
  increasing list of delays while the error classifier deems them recoverable;
- local operations (checkout, reset) are repaired in place once: a corrupted
  index is deleted, an outdated index is refreshed, stale lock files left by
  a killed git process are removed.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from ..git.command import GitCommandRunner
from ..git.error_classifier import (
    classify_fetch_error,
    find_stale_lock_file,
    is_outdated_index_error,
    is_recoverable,
)
from ..git.errors import GitCommandError, GitIndexCorruptedError, GitSyncError
from ..logging.build_logger import BuildProgressLogger


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lock files git leaves behind when killed during a fetch
REF_LOCK_FILES = ("packed-refs.lock", "shallow.lock", "HEAD.lock", "FETCH_HEAD.lock")


@dataclass
class RetryPolicy:
    """
    Bounded retry schedule for network operations.

    Attributes:
        attempts: Total number of attempts (the first one included)
        delays: Wait in seconds before attempt N+1 is delays[min(N-1, len-1)]
        sleep: Sleep function, replaceable in tests
    """

    attempts: int = 3
    delays: List[float] = field(default_factory=lambda: [5.0, 10.0, 20.0])
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]


def retry_network_operation(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    build_logger: Optional[BuildProgressLogger] = None,
    is_retryable: Callable[[BaseException, int, int], bool] = is_recoverable,
) -> T:
    """
    Run operation, retrying recoverable failures according to policy.

    Args:
        operation: Callable performing one attempt
        policy: Attempt count and delays
        description: Human-readable name used in log messages
        build_logger: Receives a progress message for every retry
        is_retryable: Decides from (error, attempt, max_attempts) whether to retry

    Returns:
        Result of the first successful attempt

    Raises:
        GitSyncError: The error of the last attempt, or the first non-retryable one
    """
    attempts = max(1, policy.attempts)
    attempt = 1
    while True:
        try:
            return operation()
        except GitSyncError as e:
            if not is_retryable(e, attempt, attempts):
                if attempt > 1:
                    logger.warning(f"Failed to run {description} within {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt)
            message = (
                f"{description} failed ({classify_fetch_error(e)}), "
                f"will repeat attempt {attempt + 1} of {attempts} in {delay:g}s"
            )
            logger.info(f"{message}: {e}")
            if build_logger is not None:
                build_logger.progress(message)
            if delay > 0:
                policy.sleep(delay)
            attempt += 1


def remove_index_lock(git_dir: Path) -> bool:
    """Remove a stale index.lock. Returns True if one was removed."""
    lock = Path(git_dir) / "index.lock"
    if not lock.exists():
        return False
    try:
        lock.unlink()
    except FileNotFoundError:
        return False
    logger.info(f"Removed stale lock {lock}")
    return True


def remove_ref_locks(git_dir: Path) -> List[Path]:
    """Remove lock files under refs/ and next to packed-refs. Returns removed paths."""
    git_dir = Path(git_dir)
    candidates = [git_dir / name for name in REF_LOCK_FILES]
    refs_dir = git_dir / "refs"
    if refs_dir.is_dir():
        candidates.extend(refs_dir.rglob("*.lock"))
    removed = []
    for lock in candidates:
        if not lock.is_file():
            continue
        try:
            lock.unlink()
        except FileNotFoundError:
            continue
        removed.append(lock)
    if removed:
        logger.info(f"Removed stale ref locks: {', '.join(str(p) for p in removed)}")
    return removed


def run_with_local_repair(
    runner: GitCommandRunner,
    work_dir: Path,
    operation: Callable[[], T],
    build_logger: BuildProgressLogger,
) -> T:
    """
    Run a local git operation, repairing index or lock problems once.

    Args:
        runner: Runner used for the repair commands
        work_dir: Working directory of the repository
        operation: The operation to run (and repeat once after repair)
        build_logger: Receives a message describing the repair

    Returns:
        Result of the operation

    Raises:
        GitCommandError: If the operation fails for another reason or fails again
    """
    try:
        return operation()
    except GitIndexCorruptedError as e:
        build_logger.message(f"Git index '{e.index_path}' is corrupted, remove it and repeat the command")
        try:
            Path(e.index_path).unlink()
        except FileNotFoundError:
            pass
        return operation()
    except GitCommandError as e:
        if is_outdated_index_error(e):
            build_logger.message("Refresh outdated git index and repeat the command")
            runner.run(["update-index", "--really-refresh", "-q"], cwd=work_dir, tolerate_failure=True)
            return operation()
        lock_file = find_stale_lock_file(e)
        if lock_file:
            build_logger.message(f"Remove stale lock file '{lock_file}' and repeat the command")
            try:
                Path(lock_file).unlink()
            except FileNotFoundError:
                pass
            return operation()
        raise
