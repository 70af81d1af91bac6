"""Git process execution, typed errors and failure classification."""

from .command import GitCommandRunner, GitResult, GitVersion
from .errors import (
    CheckoutCanceledError,
    GitCommandError,
    GitIndexCorruptedError,
    GitSyncError,
    GitTimeoutError,
    PolicyViolationError,
    RepairableLocalStateError,
    RevisionNotFoundError,
    TransientExecutionError,
    UnrecoverableMirrorError,
)

__all__ = [
    "GitCommandRunner",
    "GitResult",
    "GitVersion",
    "CheckoutCanceledError",
    "GitCommandError",
    "GitIndexCorruptedError",
    "GitSyncError",
    "GitTimeoutError",
    "PolicyViolationError",
    "RepairableLocalStateError",
    "RevisionNotFoundError",
    "TransientExecutionError",
    "UnrecoverableMirrorError",
]
