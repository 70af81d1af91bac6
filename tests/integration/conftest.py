"""Fixtures driving a real git binary against local file:// repositories."""

import subprocess
from pathlib import Path
from typing import List

import pytest

from git_agent_sync.config import AgentSyncConfig
from git_agent_sync.git.command import GitCommandRunner
from git_agent_sync.logging.build_logger import BuildProgressLogger

# file:// submodules are refused by default since git 2.38.1
FILE_PROTOCOL_ENV = {
    "GIT_CONFIG_COUNT": "1",
    "GIT_CONFIG_KEY_0": "protocol.file.allow",
    "GIT_CONFIG_VALUE_0": "always",
}


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=CI", "-c", "user.email=ci@example.com", "-c", "protocol.file.allow=always", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


class RemoteRepository:
    """A bare repository plus a work tree used to push commits into it."""

    def __init__(self, base_dir: Path, name: str):
        self.bare_dir = base_dir / f"{name}.git"
        self.work_dir = base_dir / f"{name}-work"
        self.bare_dir.mkdir(parents=True)
        git(self.bare_dir, "init", "--bare", "-q")
        git(self.bare_dir, "symbolic-ref", "HEAD", "refs/heads/main")
        self.work_dir.mkdir()
        git(self.work_dir, "init", "-q")
        git(self.work_dir, "symbolic-ref", "HEAD", "refs/heads/main")
        git(self.work_dir, "remote", "add", "origin", self.url)

    @property
    def url(self) -> str:
        return self.bare_dir.resolve().as_uri()

    def commit(self, files: dict, message: str = "change", branch: str = "main") -> str:
        for relative_path, content in files.items():
            path = self.work_dir / relative_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        git(self.work_dir, "add", "-A")
        git(self.work_dir, "commit", "-q", "-m", message)
        git(self.work_dir, "push", "-q", "origin", f"HEAD:refs/heads/{branch}")
        return git(self.work_dir, "rev-parse", "HEAD")


class RecordingRunner(GitCommandRunner):
    """GitCommandRunner keeping the arguments of every command."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: List[List[str]] = []

    def run(self, args, cwd, *rest, **kwargs):
        self.calls.append(list(args))
        return super().run(args, cwd, *rest, **kwargs)

    def commands(self, name: str) -> List[List[str]]:
        return [call for call in self.calls if call and call[0] == name]


@pytest.fixture
def remote(tmp_path: Path) -> RemoteRepository:
    return RemoteRepository(tmp_path / "remotes", "repo")


@pytest.fixture
def git_runner() -> RecordingRunner:
    return RecordingRunner(env=FILE_PROTOCOL_ENV)


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentSyncConfig:
    cfg = AgentSyncConfig()
    assert cfg.mirrors is not None
    assert cfg.retry is not None
    cfg.mirrors.mirrors_dir = str(tmp_path / "mirrors")
    cfg.retry.remote_operation_attempts = 1
    cfg.retry.retry_delays_seconds = [0.0]
    return cfg


@pytest.fixture
def quiet_logger() -> BuildProgressLogger:
    return BuildProgressLogger(context="service")


@pytest.fixture
def make_remote(tmp_path: Path):
    def factory(name: str) -> RemoteRepository:
        return RemoteRepository(tmp_path / "remotes", name)

    return factory


@pytest.fixture
def run_git():
    return git
