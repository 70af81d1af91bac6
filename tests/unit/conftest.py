"""
Shared fixtures for git-agent-sync unit tests.

Unit tests never start git. They use a MagicMock runner whose run() is
answered by a ScriptedGit: responses are registered per argument prefix,
and every call is recorded for assertions.
"""

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union
from unittest.mock import MagicMock

import pytest

from git_agent_sync.config import AgentSyncConfig
from git_agent_sync.git.command import GitCommandRunner, GitResult, GitVersion
from git_agent_sync.git.errors import GitCommandError
from git_agent_sync.logging.build_logger import BuildProgressLogger
from git_agent_sync.sync.retry import RetryPolicy


Response = Union[GitResult, BaseException, Callable[..., GitResult]]


class ScriptedGit:
    """Answers GitCommandRunner.run() calls from registered responses."""

    def __init__(self):
        self._responses: List[tuple] = []
        self.calls: List[List[str]] = []
        self.cwds: List[Optional[Path]] = []

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        error: Optional[BaseException] = None,
        handler: Optional[Callable[..., GitResult]] = None,
    ) -> "ScriptedGit":
        """Register a response for calls starting with prefix; the latest registration wins."""
        response: Response
        if error is not None:
            response = error
        elif handler is not None:
            response = handler
        else:
            response = GitResult(exit_code, stdout, stderr)
        self._responses.append((tuple(prefix), response))
        return self

    def __call__(
        self,
        args: Sequence[str],
        cwd=None,
        timeout=None,
        env=None,
        tolerate_failure: bool = False,
        stdin=None,
    ) -> GitResult:
        args = list(args)
        self.calls.append(args)
        self.cwds.append(Path(cwd) if cwd is not None else None)
        for prefix, response in reversed(self._responses):
            if tuple(args[: len(prefix)]) != prefix:
                continue
            if isinstance(response, BaseException):
                raise response
            result = response(args) if callable(response) else response
            if not result.ok and not tolerate_failure:
                raise GitCommandError(
                    f"'git {' '.join(args)}' command failed.\nexit code: {result.exit_code}\nstderr: {result.stderr}",
                    command=" ".join(args),
                    exit_code=result.exit_code,
                    stderr=result.stderr,
                )
            return result
        return GitResult(0, "", "")

    def commands(self, *prefix: str) -> List[List[str]]:
        """Recorded calls starting with prefix."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def scripted_git() -> ScriptedGit:
    return ScriptedGit()


@pytest.fixture
def runner(scripted_git: ScriptedGit) -> MagicMock:
    """A GitCommandRunner mock reporting git 2.40.0 and answering from scripted_git."""
    mock_runner = MagicMock(spec=GitCommandRunner)
    mock_runner.version.return_value = GitVersion(2, 40, 0)
    mock_runner.run.side_effect = scripted_git
    mock_runner.with_interrupt_check.return_value = mock_runner
    return mock_runner


@pytest.fixture
def build_logger() -> BuildProgressLogger:
    """A CLI-mode logger whose console output is discarded."""
    from io import StringIO

    from rich.console import Console

    return BuildProgressLogger(context="cli", console=Console(file=StringIO()))


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    """Three attempts without sleeping."""
    return RetryPolicy(attempts=3, delays=[0.0], sleep=lambda _: None)


@pytest.fixture
def config(tmp_path: Path) -> AgentSyncConfig:
    cfg = AgentSyncConfig()
    assert cfg.mirrors is not None
    assert cfg.retry is not None
    cfg.mirrors.mirrors_dir = str(tmp_path / "mirrors")
    cfg.retry.retry_delays_seconds = [0.0]
    return cfg


SHA_A = "a" * 40
SHA_B = "b" * 40
SHA_C = "c" * 40


@pytest.fixture
def shas():
    return SHA_A, SHA_B, SHA_C
