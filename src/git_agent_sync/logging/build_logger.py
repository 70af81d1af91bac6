"""Build progress logging for checkout runs.

Provides context-aware logging that adapts output format based on execution environment:
- CLI mode: Human-readable messages through a rich console (stderr)
- Service mode: Structured JSON logging via Python logging module

Every repaired or retried condition is reported at progress level; only
terminal failures are reported as errors. Build problems are collected so
the caller can attach them to the build.
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

from rich.console import Console


@dataclass
class BuildProblem:
    """A recoverable problem reported against the build."""

    identity: str
    description: str


class BuildProgressLogger:
    """Logger that adapts output based on execution context."""

    def __init__(self, context: Optional[str] = None, console: Optional[Console] = None):
        """Initialize build logger and detect context.

        Args:
            context: "cli" or "service"; detected from the environment when None
            console: Console used in CLI mode, stderr console by default
        """
        self._context = context or self._detect_context()
        self._console = console or Console(stderr=True, highlight=False)
        self._py_logger = logging.getLogger("git_agent_sync.build")
        self._problems: List[BuildProblem] = []
        self._lock = threading.Lock()

    def _detect_context(self) -> str:
        """Detect if running from the CLI or embedded in an agent service.

        Returns:
            "cli" or "service"

        Detection logic:
        1. GIT_AGENT_SYNC_CONTEXT environment variable when set
        2. "service" when stderr is not a terminal and GIT_AGENT_SYNC_JSON_LOG is set
        3. Default to "cli"
        """
        context = os.environ.get("GIT_AGENT_SYNC_CONTEXT", "").lower()
        if context in ("cli", "service"):
            return context

        if os.environ.get("GIT_AGENT_SYNC_JSON_LOG") == "true" and not sys.stderr.isatty():
            return "service"

        return "cli"

    @property
    def context(self) -> str:
        return self._context

    @property
    def problems(self) -> List[BuildProblem]:
        with self._lock:
            return list(self._problems)

    def message(self, text: str) -> None:
        self._emit("info", "message", text, style="")

    def progress(self, text: str) -> None:
        self._emit("info", "progress", text, style="dim")

    def warning(self, text: str) -> None:
        self._emit("warning", "warning", text, style="yellow")

    def error(self, text: str) -> None:
        self._emit("error", "error", text, style="red")

    def build_problem(self, identity: str, description: str) -> None:
        """Record a build problem and log it as an error."""
        with self._lock:
            if any(p.identity == identity for p in self._problems):
                return
            self._problems.append(BuildProblem(identity, description))
        self._emit("error", "build_problem", description, style="bold red", identity=identity)

    def _emit(self, level: str, event: str, text: str, style: str, **extra: str) -> None:
        if self._context == "cli":
            self._log_to_console(text, style)
        else:
            self._log_to_central(level, event, text, extra)

    def _log_to_console(self, text: str, style: str) -> None:
        """Log to console in human-readable format (CLI mode)."""
        if style:
            self._console.print(text, style=style, markup=False)
        else:
            self._console.print(text, markup=False)

    def _log_to_central(self, level: str, event: str, text: str, extra: dict) -> None:
        """Log to central logging system in JSON format (service mode)."""
        log_data = {"level": level, "event": event, "message": text, **extra}
        getattr(self._py_logger, level)(json.dumps(log_data))
