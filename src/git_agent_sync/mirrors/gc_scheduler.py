"""
Idle GC Scheduler for shared mirrors.

Compacts mirrors with `git gc` while the agent is idle. A compaction pass
starts only once no build is running and the cool-down since the last
build has passed; mirrors compacted within gc_rate_hours are skipped.

A build start interrupts the pass: the cancellation event is set, the
running `git gc` process is terminated by the runner and the remaining
mirrors of the batch are abandoned.
"""

import logging
import random
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config import AgentSyncConfig
from ..git.command import GitCommandRunner
from ..git.errors import CheckoutCanceledError, GitSyncError
from .mirror_manager import MirrorManager


logger = logging.getLogger(__name__)


class IdleGcScheduler:
    """
    Background compaction of mirrors between builds.

    All state (running builds, last build time, last gc time per mirror and
    the cancellation event of the current pass) is guarded by one lock.
    """

    def __init__(
        self,
        mirror_manager: MirrorManager,
        config: AgentSyncConfig,
        runner: Optional[GitCommandRunner] = None,
        clock: Callable[[], float] = time.time,
        shuffle: Callable[[List[Path]], None] = random.shuffle,
    ):
        """
        Initialize the scheduler.

        Args:
            mirror_manager: Source of mirror directories and invalidated names
            config: Engine configuration (idle_gc and timeouts sections are used)
            runner: Git runner, created from config when None
            clock: Time source in epoch seconds
            shuffle: Orders the mirrors of a pass in place
        """
        assert config.idle_gc is not None
        assert config.timeouts is not None
        self.mirror_manager = mirror_manager
        self.gc_config = config.idle_gc
        self.gc_timeout = config.timeouts.git_gc_timeout
        self.runner = runner or GitCommandRunner(config.git_path)
        self._clock = clock
        self._shuffle = shuffle

        self._lock = threading.Lock()
        self._running_builds = 0
        # agent start counts as the last build
        self._last_build_time = clock()
        self._last_gc_times: Dict[str, float] = {}
        self._cancel_event = threading.Event()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Build notifications
    # ------------------------------------------------------------------

    def on_build_started(self) -> None:
        """Stop any compaction in progress and postpone the next one."""
        with self._lock:
            self._running_builds += 1
            self._last_build_time = self._clock()
            self._cancel_event.set()

    def on_build_finished(self) -> None:
        with self._lock:
            self._running_builds = max(0, self._running_builds - 1)
            self._last_build_time = self._clock()

    def is_idle(self) -> bool:
        """True when no build runs and the cool-down since the last one has passed."""
        with self._lock:
            if self._running_builds > 0:
                return False
            return self._clock() - self._last_build_time >= self.gc_config.cool_down_minutes * 60

    def last_gc_time(self, mirror_dir: Path) -> Optional[float]:
        with self._lock:
            return self._last_gc_times.get(Path(mirror_dir).name)

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def run_once(self, force: bool = False) -> List[Path]:
        """
        Run one compaction pass.

        Args:
            force: Ignore the idle cool-down and the per-mirror gc rate

        Returns:
            Mirrors compacted successfully during this pass
        """
        with self._lock:
            if not force and (
                self._running_builds > 0
                or self._clock() - self._last_build_time < self.gc_config.cool_down_minutes * 60
            ):
                logger.debug("Agent is not idle, skip mirror compaction")
                return []
            cancel_event = threading.Event()
            self._cancel_event = cancel_event

        mirrors = self._list_mirrors()
        self._shuffle(mirrors)
        runner = self.runner.with_interrupt_check(cancel_event.is_set)
        compacted: List[Path] = []
        for mirror_dir in mirrors:
            if cancel_event.is_set():
                logger.info("Build started, abandon mirror compaction")
                break
            if not force and not self._is_gc_due(mirror_dir):
                continue
            try:
                self._gc(runner, mirror_dir)
                compacted.append(mirror_dir)
            except CheckoutCanceledError:
                logger.info(f"Compaction of {mirror_dir} interrupted by a build")
                break
            except GitSyncError as e:
                logger.warning(f"Failed to compact mirror {mirror_dir}: {e}")
        return compacted

    def _list_mirrors(self) -> List[Path]:
        base_dir = self.mirror_manager.base_mirrors_dir
        if not base_dir.is_dir():
            return []
        invalid = self.mirror_manager.get_invalid_dir_names()
        return sorted(
            d for d in base_dir.iterdir() if d.is_dir() and d.name not in invalid and (d / "HEAD").is_file()
        )

    def _is_gc_due(self, mirror_dir: Path) -> bool:
        with self._lock:
            last_gc = self._last_gc_times.get(mirror_dir.name)
        return last_gc is None or self._clock() - last_gc >= self.gc_config.gc_rate_hours * 3600

    def _gc(self, runner: GitCommandRunner, mirror_dir: Path) -> None:
        started = time.monotonic()
        runner.run(["gc", "--quiet"], cwd=mirror_dir, timeout=self.gc_timeout)
        with self._lock:
            self._last_gc_times[mirror_dir.name] = self._clock()
        logger.info(f"Compacted mirror {mirror_dir} in {time.monotonic() - started:.1f}s")

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Start the background thread.

        Idempotent: Safe to call multiple times
        """
        if not self.gc_config.enabled:
            logger.info("Idle mirror compaction is disabled")
            return
        if self._running:
            logger.debug("Idle GC scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._scheduler_loop, daemon=True)
        self._thread.start()
        logger.info("Idle GC scheduler started")

    def stop(self) -> None:
        """
        Stop the background thread, interrupting a compaction in progress.

        Idempotent: Safe to call multiple times
        """
        if not self._running:
            logger.debug("Idle GC scheduler already stopped")
            return

        self._running = False
        self._stop_event.set()
        with self._lock:
            self._cancel_event.set()

        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

        logger.info("Idle GC scheduler stopped")

    def _scheduler_loop(self) -> None:
        logger.debug("Idle GC scheduler loop started")

        while self._running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in idle GC loop: {type(e).__name__}: {e}", exc_info=True)

            self._stop_event.wait(timeout=self.gc_config.check_interval_seconds)

        logger.debug("Idle GC scheduler loop exited")
