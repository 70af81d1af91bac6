"""Unit tests for the git error classifier."""

from pathlib import Path

import pytest

from git_agent_sync.git.error_classifier import (
    classify_fetch_error,
    find_stale_lock_file,
    is_corrupted_index_error,
    is_outdated_index_error,
    is_reclone_safe,
    is_recoverable,
    is_ref_lock_error,
)
from git_agent_sync.git.errors import (
    CheckoutCanceledError,
    GitCommandError,
    GitIndexCorruptedError,
    GitTimeoutError,
    PolicyViolationError,
    RevisionNotFoundError,
)


def _error(stderr: str) -> GitCommandError:
    return GitCommandError("'git fetch' command failed.", stderr=stderr)


class TestPatternDetection:
    """Test recognition of git failure messages."""

    def test_corrupted_index(self):
        assert is_corrupted_index_error(_error("fatal: index file smaller than expected"))
        assert is_corrupted_index_error(GitIndexCorruptedError("x", index_path=Path("/r/.git/index")))
        assert not is_corrupted_index_error(_error("fatal: not a git repository"))

    def test_outdated_index(self):
        assert is_outdated_index_error(_error("error: Entry 'src/a.py' not uptodate. Cannot merge."))

    def test_ref_lock(self):
        assert is_ref_lock_error(_error("error: cannot lock ref 'refs/remotes/origin/main'"))
        assert is_ref_lock_error(_error(" ! [new branch] x -> x  (unable to update local ref)"))

    def test_stale_lock_file_path(self):
        error = _error("fatal: Unable to create '/work/repo/.git/index.lock': File exists.")

        assert is_ref_lock_error(error)
        assert find_stale_lock_file(error) == "/work/repo/.git/index.lock"
        assert find_stale_lock_file(_error("fatal: boom")) == ""


class TestIsRecoverable:
    """Test retry decisions for network operations."""

    def test_timeout_retried_while_attempts_left(self):
        error = GitTimeoutError("No output", command="git fetch", timeout=10)

        assert is_recoverable(error, attempt=1, max_attempts=3)
        assert not is_recoverable(error, attempt=3, max_attempts=3)

    def test_remote_ref_not_found_is_retried(self):
        """The ref may appear after a replication delay."""
        error = _error("fatal: couldn't find remote ref refs/heads/feature")

        assert is_recoverable(error, attempt=1, max_attempts=3)

    @pytest.mark.parametrize(
        "error",
        [
            CheckoutCanceledError("interrupted"),
            PolicyViolationError("bad auth"),
            RevisionNotFoundError("a" * 40, "refs/heads/main"),
            _error("SSL certificate problem: unable to get local issuer certificate"),
            _error("fatal: index file corrupt"),
            _error("fatal: Could not read from remote repository."),
        ],
    )
    def test_terminal_errors_are_not_retried(self, error):
        assert not is_recoverable(error, attempt=1, max_attempts=3)

    def test_non_sync_errors_are_not_retried(self):
        assert not is_recoverable(ValueError("boom"), attempt=1, max_attempts=3)


class TestIsRecloneSafe:
    """Test which failures justify wiping a mirror."""

    def test_timeout_is_not_reclone_safe(self):
        assert not is_reclone_safe(GitTimeoutError("No output", timeout=5))

    def test_remote_ref_not_found_is_not_reclone_safe(self):
        assert not is_reclone_safe(_error("fatal: couldn't find remote ref refs/heads/gone"))

    def test_cancel_is_not_reclone_safe(self):
        assert not is_reclone_safe(CheckoutCanceledError("interrupted"))

    def test_local_corruption_is_reclone_safe(self):
        assert is_reclone_safe(_error("error: object file .git/objects/ab/cdef is empty\nfatal: loose object is corrupt"))


class TestClassifyFetchError:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (CheckoutCanceledError("x"), "canceled"),
            (_error("fatal: index file corrupt"), "corruption"),
            (_error("error: cannot lock ref 'refs/heads/x'"), "lock"),
            (GitTimeoutError("No output", timeout=1), "timeout"),
            (_error("remote: Access denied"), "remote"),
            (_error("fatal: unable to access: Connection refused"), "transient"),
            (_error("fatal: something new"), "unknown"),
        ],
    )
    def test_categories(self, error, expected):
        assert classify_fetch_error(error) == expected
