"""
Git subprocess runner.

Runs the external git executable and converts its outcome into GitResult or
one of the typed errors from .errors. The timeout is an idle-output timeout:
a fetch printing progress for an hour is fine, a fetch silent for the
configured number of seconds is killed.
"""

import functools
import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import CheckoutCanceledError, GitCommandError, GitIndexCorruptedError, GitTimeoutError
from .error_classifier import is_corrupted_index_error


logger = logging.getLogger(__name__)

# How often the wait loop polls for exit, interruption and idleness
POLL_INTERVAL_SECONDS = 0.1

_CREDENTIALS_IN_URL = re.compile(r"(://[^/@:\s]+):([^/@\s]+)@")


def mask_secrets(text: str) -> str:
    """Replace passwords embedded in URLs with asterisks."""
    return _CREDENTIALS_IN_URL.sub(r"\1:*****@", text)


@functools.total_ordering
class GitVersion:
    """Comparable git version parsed from `git --version` output."""

    _VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")

    def __init__(self, major: int, minor: int, patch: int = 0):
        self.parts = (major, minor, patch)

    @classmethod
    def parse(cls, text: str) -> "GitVersion":
        match = cls._VERSION_RE.search(text)
        if not match:
            raise ValueError(f"Cannot parse git version from '{text.strip()}'")
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))

    def is_less_than(self, other: "GitVersion") -> bool:
        return self < other

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GitVersion):
            return NotImplemented
        return self.parts == other.parts

    def __lt__(self, other: "GitVersion") -> bool:
        return self.parts < other.parts

    def __hash__(self) -> int:
        return hash(self.parts)

    def __repr__(self) -> str:
        return "GitVersion({}.{}.{})".format(*self.parts)

    def __str__(self) -> str:
        return "{}.{}.{}".format(*self.parts)


# Versions gating individual features
GIT_WITH_CLEAN_EXCLUDE = GitVersion(1, 7, 3)
GIT_WITH_HTTP_PASSWORD_AUTH = GitVersion(1, 7, 3)
GIT_WITH_SPARSE_CHECKOUT = GitVersion(1, 7, 4)
GIT_WITH_BROKEN_SPARSE_CHECKOUT = GitVersion(2, 7, 0)
GIT_WITH_FORCE_SUBMODULE_UPDATE = GitVersion(1, 7, 6)
GIT_WITH_UPDATE_REF_STDIN = GitVersion(1, 8, 5)
GIT_WITH_CREDENTIALS_SECTION = GitVersion(1, 7, 10)
GIT_WITH_IS_SHALLOW_REPOSITORY = GitVersion(2, 15, 0)


@dataclass
class GitResult:
    """Outcome of a git invocation."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def lines(self) -> List[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]


class _OutputPump(threading.Thread):
    """Drains one pipe and records when the process last produced output."""

    def __init__(self, stream, on_output: Callable[[], None]):
        super().__init__(daemon=True)
        self._stream = stream
        self._on_output = on_output
        self.chunks: List[bytes] = []

    def run(self) -> None:
        fd = self._stream.fileno()
        while True:
            try:
                chunk = os.read(fd, 65536)
            except OSError:
                break
            if not chunk:
                break
            self.chunks.append(chunk)
            self._on_output()

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


class GitCommandRunner:
    """
    Executes git commands on behalf of the engine.

    Every call polls the interruption callback before starting and while
    waiting, so a stopped build terminates the running git process and
    raises CheckoutCanceledError.
    """

    def __init__(
        self,
        git_path: str = "git",
        default_timeout: float = 600,
        interrupt_check: Optional[Callable[[], bool]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the runner.

        Args:
            git_path: Path of the git executable
            default_timeout: Idle timeout in seconds when a call passes none
            interrupt_check: Returns True when the build has been interrupted
            env: Extra environment variables passed to every git process
        """
        self.git_path = git_path
        self.default_timeout = default_timeout
        self.interrupt_check = interrupt_check
        self.env = dict(env or {})
        self._version: Optional[GitVersion] = None

    def with_interrupt_check(self, interrupt_check: Optional[Callable[[], bool]]) -> "GitCommandRunner":
        """Return a runner sharing this configuration with another interruption source."""
        runner = GitCommandRunner(self.git_path, self.default_timeout, interrupt_check, self.env)
        runner._version = self._version
        return runner

    def version(self) -> GitVersion:
        """Return the (cached) version of the git executable."""
        if self._version is None:
            result = self.run(["--version"], cwd=None, timeout=60)
            self._version = GitVersion.parse(result.stdout)
            logger.debug(f"Detected git version {self._version}")
        return self._version

    def _check_interrupted(self, command: str) -> None:
        if self.interrupt_check is not None and self.interrupt_check():
            raise CheckoutCanceledError(f"Build was interrupted, '{command}' was not completed")

    def _build_env(self, env: Optional[Dict[str, str]]) -> Dict[str, str]:
        result = dict(os.environ)
        result["GIT_TERMINAL_PROMPT"] = "0"
        result["LC_ALL"] = "C"
        result.update(self.env)
        if env:
            result.update(env)
        return result

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        tolerate_failure: bool = False,
        stdin: Optional[str] = None,
    ) -> GitResult:
        """
        Run `git <args>` in cwd.

        Args:
            args: Git arguments (without the executable)
            cwd: Working directory, None for the current one
            timeout: Idle-output timeout in seconds
            env: Environment variables for this call only
            tolerate_failure: Return the result instead of raising on non-zero exit
            stdin: Text written to the process standard input

        Returns:
            GitResult of the finished process

        Raises:
            CheckoutCanceledError: If the build was interrupted
            GitTimeoutError: If git produced no output for `timeout` seconds
            GitIndexCorruptedError: If git reported a corrupted index
            GitCommandError: If git exited with a non-zero code
        """
        command = mask_secrets(" ".join(["git", *args]))
        self._check_interrupted(command)
        idle_timeout = timeout if timeout is not None else self.default_timeout
        location = f"[{cwd}] " if cwd else ""
        logger.debug(f"{location}{command}")

        try:
            process = subprocess.Popen(
                [self.git_path, *args],
                cwd=str(cwd) if cwd is not None else None,
                env=self._build_env(env),
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise GitCommandError(f"Cannot run '{command}': {e}", command=command) from e

        exit_code, stdout, stderr = self._communicate(process, command, idle_timeout, stdin)
        result = GitResult(exit_code, stdout, stderr)
        if result.ok or tolerate_failure:
            return result

        message = mask_secrets(
            f"'{command}' command failed.\nexit code: {exit_code}\n"
            + (f"stderr: {stderr.strip()}" if stderr.strip() else f"stdout: {stdout.strip()}")
        )
        if is_corrupted_index_error(GitCommandError(message, stderr=stderr)):
            raise GitIndexCorruptedError(
                message, index_path=self._index_path(cwd), command=command, stderr=stderr
            )
        raise GitCommandError(message, command=command, exit_code=exit_code, stdout=stdout, stderr=stderr)

    def _communicate(
        self, process: subprocess.Popen, command: str, idle_timeout: float, stdin: Optional[str]
    ) -> Tuple[int, str, str]:
        last_output = [time.monotonic()]
        lock = threading.Lock()

        def on_output() -> None:
            with lock:
                last_output[0] = time.monotonic()

        out_pump = _OutputPump(process.stdout, on_output)
        err_pump = _OutputPump(process.stderr, on_output)
        out_pump.start()
        err_pump.start()

        if stdin is not None and process.stdin is not None:
            try:
                process.stdin.write(stdin.encode("utf-8"))
                process.stdin.close()
            except BrokenPipeError:
                logger.debug(f"'{command}' closed its standard input early")

        try:
            while True:
                try:
                    process.wait(timeout=POLL_INTERVAL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if self.interrupt_check is not None and self.interrupt_check():
                    self._kill(process)
                    raise CheckoutCanceledError(f"Build was interrupted, '{command}' was terminated")
                with lock:
                    idle = time.monotonic() - last_output[0]
                if idle > idle_timeout:
                    self._kill(process)
                    raise GitTimeoutError(
                        f"No output from '{command}' during {idle_timeout:g} seconds",
                        command=command,
                        timeout=idle_timeout,
                    )
        finally:
            out_pump.join(timeout=5.0)
            err_pump.join(timeout=5.0)
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()

        return process.returncode, out_pump.text(), err_pump.text()

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        process.kill()
        try:
            process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            logger.warning(f"git process {process.pid} did not exit after kill")

    @staticmethod
    def _index_path(cwd: Optional[Union[str, Path]]) -> Path:
        base = Path(cwd) if cwd is not None else Path.cwd()
        if (base / ".git").is_dir():
            return base / ".git" / "index"
        return base / "index"
