"""
Git error classifier for retry and recovery decisions.

All message sniffing of git output lives here. The rest of the engine asks
questions ("is this a corrupted index?", "may recloning help?") and never
looks at raw stderr itself, so the fragile part stays in one place.
"""

import re
from typing import List

from .errors import (
    CheckoutCanceledError,
    GitIndexCorruptedError,
    GitSyncError,
    GitTimeoutError,
    PolicyViolationError,
    RevisionNotFoundError,
)


# Patterns indicating a corrupted index file; the index is deleted before retry.
CORRUPTED_INDEX_PATTERNS: List[str] = [
    "fatal: index file smaller than expected",
    "fatal: index file corrupt",
]

# Index entries with stale stat info; `update-index --really-refresh` fixes them.
OUTDATED_INDEX_PATTERN = re.compile(r".*Entry '.+' not uptodate\. Cannot merge\..*", re.DOTALL)

# Leftovers of a killed git process.
REF_LOCK_PATTERNS: List[str] = [
    "cannot lock ref",
    "some local refs could not be updated",
    "unable to update local ref",
]

STALE_LOCK_PATTERN = re.compile(r"Unable to create '(?P<path>[^']+\.lock)': File exists")

TIMEOUT_PATTERNS: List[str] = [
    "Connection timed out",
    "Operation timed out",
]

CONNECTION_PATTERNS: List[str] = [
    "Connection refused",
    "Connection reset",
]

SSL_PATTERNS: List[str] = [
    "SSL certificate problem",
    "error setting certificate verify locations",
    "server certificate verification failed",
]

# Failures recloning would not fix: the remote itself refuses or lacks the ref.
REMOTE_ACCESS_PATTERNS: List[str] = [
    "couldn't find remote ref",
    "no remote repository specified",
    "no such remote",
    "access denied",
    "permission denied",
    "could not read from remote repository",
    "server does not allow request for unadvertised object",
]

UNADVERTISED_OBJECT_PATTERN = "server does not allow request for unadvertised object"
REMOTE_REF_NOT_FOUND_PATTERN = "couldn't find remote ref"


def _message(error: BaseException) -> str:
    parts = [str(error)]
    stderr = getattr(error, "stderr", "")
    if stderr and stderr not in parts[0]:
        parts.append(stderr)
    return "\n".join(parts)


def _contains(error: BaseException, patterns: List[str]) -> bool:
    text = _message(error).lower()
    return any(p.lower() in text for p in patterns)


def is_corrupted_index_error(error: BaseException) -> bool:
    if isinstance(error, GitIndexCorruptedError):
        return True
    text = _message(error)
    return any(p in text for p in CORRUPTED_INDEX_PATTERNS)


def is_outdated_index_error(error: BaseException) -> bool:
    return OUTDATED_INDEX_PATTERN.match(_message(error)) is not None


def is_ref_lock_error(error: BaseException) -> bool:
    return _contains(error, REF_LOCK_PATTERNS) or STALE_LOCK_PATTERN.search(_message(error)) is not None


def find_stale_lock_file(error: BaseException) -> str:
    """Return the lock file path git complained about, or an empty string."""
    match = STALE_LOCK_PATTERN.search(_message(error))
    return match.group("path") if match else ""


def is_timeout_error(error: BaseException) -> bool:
    return isinstance(error, GitTimeoutError) or _contains(error, TIMEOUT_PATTERNS)


def is_connection_error(error: BaseException) -> bool:
    return _contains(error, CONNECTION_PATTERNS)


def is_ssl_error(error: BaseException) -> bool:
    return _contains(error, SSL_PATTERNS)


def is_canceled_error(error: BaseException) -> bool:
    return isinstance(error, CheckoutCanceledError)


def is_remote_access_error(error: BaseException) -> bool:
    return _contains(error, REMOTE_ACCESS_PATTERNS)


def is_remote_ref_not_found_error(error: BaseException) -> bool:
    return _contains(error, [REMOTE_REF_NOT_FOUND_PATTERN])


def is_unadvertised_object_error(error: BaseException) -> bool:
    return _contains(error, [UNADVERTISED_OBJECT_PATTERN])


def is_authentication_error(error: BaseException) -> bool:
    return _contains(error, ["authentication failed"])


def is_recoverable(error: BaseException, attempt: int, max_attempts: int) -> bool:
    """
    Decide whether a failed network operation should be attempted again.

    Args:
        error: The failure of the current attempt.
        attempt: 1-based number of the attempt which just failed.
        max_attempts: Total number of attempts allowed.

    Returns:
        True if another attempt should be made.
    """
    attempts_left = attempt < max_attempts

    if not isinstance(error, GitSyncError):
        return False
    if isinstance(error, (CheckoutCanceledError, PolicyViolationError, RevisionNotFoundError)):
        return False
    if is_timeout_error(error) or is_connection_error(error):
        return attempts_left
    if is_ssl_error(error):
        return False
    if is_corrupted_index_error(error):
        return False
    if is_remote_ref_not_found_error(error):
        # the ref may show up on the remote after a replication delay
        return attempts_left
    return attempts_left and not is_remote_access_error(error)


def is_reclone_safe(error: BaseException) -> bool:
    """
    Return True if wiping and recloning a mirror may fix the failure.

    Timeouts, cancellations and errors reported by the remote itself
    ("ref not found", access denied) survive a reclone, so they are excluded.
    """
    if isinstance(error, (CheckoutCanceledError, PolicyViolationError)):
        return False
    if is_timeout_error(error):
        return False
    return not is_remote_access_error(error)


def classify_fetch_error(error: BaseException) -> str:
    """
    Classify a fetch failure into a coarse category for logging.

    Returns:
        "canceled", "corruption", "lock", "timeout", "remote" or "transient";
        "unknown" when no known pattern matches.
    """
    if is_canceled_error(error):
        return "canceled"
    if is_corrupted_index_error(error):
        return "corruption"
    if is_ref_lock_error(error):
        return "lock"
    if is_timeout_error(error):
        return "timeout"
    if is_remote_access_error(error) or is_authentication_error(error):
        return "remote"
    if is_connection_error(error) or is_ssl_error(error):
        return "transient"
    return "unknown"
