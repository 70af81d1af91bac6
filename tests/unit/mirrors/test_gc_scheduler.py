"""Unit tests for IdleGcScheduler."""

import threading

import pytest

from git_agent_sync.git.command import GitResult
from git_agent_sync.git.errors import CheckoutCanceledError, GitCommandError
from git_agent_sync.mirrors.gc_scheduler import IdleGcScheduler
from git_agent_sync.mirrors.mirror_manager import MirrorManager


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_mirror(manager: MirrorManager, url: str):
    mirror_dir = manager.get_mirror_dir(url)
    (mirror_dir / "objects").mkdir(parents=True)
    (mirror_dir / "HEAD").write_text("ref: refs/heads/main\n")
    return mirror_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(tmp_path, runner):
    return MirrorManager(tmp_path / "mirrors", runner)


@pytest.fixture
def scheduler(manager, config, runner, clock):
    return IdleGcScheduler(manager, config, runner=runner, clock=clock, shuffle=lambda items: None)


def _idle(clock: FakeClock) -> None:
    clock.now += 31 * 60


class TestIdleGcSchedulerIdleness:
    """Test the cool-down since the last build."""

    def test_not_idle_right_after_start(self, scheduler, manager, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")

        assert scheduler.run_once() == []
        assert scripted_git.commands("gc") == []

    def test_idle_after_cool_down(self, scheduler, manager, clock, scripted_git):
        mirror_dir = _make_mirror(manager, "https://example.com/a.git")
        _idle(clock)

        assert scheduler.is_idle()
        assert scheduler.run_once() == [mirror_dir]
        assert scripted_git.commands("gc") == [["gc", "--quiet"]]
        assert scheduler.last_gc_time(mirror_dir) == clock.now

    def test_running_build_blocks_compaction(self, scheduler, manager, clock, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")
        scheduler.on_build_started()
        _idle(clock)

        assert not scheduler.is_idle()
        assert scheduler.run_once() == []

    def test_cool_down_restarts_after_build_finished(self, scheduler, manager, clock):
        _make_mirror(manager, "https://example.com/a.git")
        scheduler.on_build_started()
        _idle(clock)
        scheduler.on_build_finished()

        assert not scheduler.is_idle()
        _idle(clock)
        assert scheduler.is_idle()


class TestIdleGcSchedulerSelection:
    """Test which mirrors are compacted."""

    def test_recently_compacted_mirror_is_skipped(self, scheduler, manager, clock, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")
        _idle(clock)
        scheduler.run_once()

        clock.now += 3600
        assert scheduler.run_once() == []

        clock.now += 12 * 3600
        assert len(scheduler.run_once()) == 1
        assert len(scripted_git.commands("gc")) == 2

    def test_invalid_and_non_repository_dirs_are_skipped(self, scheduler, manager, clock, scripted_git):
        invalid = _make_mirror(manager, "https://example.com/broken.git")
        manager.invalidate(invalid)
        (manager.base_mirrors_dir / "not-a-repo").mkdir()
        valid = _make_mirror(manager, "https://example.com/a.git")
        _idle(clock)

        assert scheduler.run_once() == [valid]

    def test_force_ignores_idleness_and_rate(self, scheduler, manager, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")

        assert len(scheduler.run_once(force=True)) == 1
        assert len(scheduler.run_once(force=True)) == 1

    def test_failure_is_logged_and_other_mirrors_continue(self, scheduler, manager, clock, scripted_git):
        first = _make_mirror(manager, "https://example.com/a.git")
        second = _make_mirror(manager, "https://example.com/b.git")
        failing = min(first, second)

        def gc_fails_for_first(args):
            if scripted_git.cwds[-1] == failing:
                raise GitCommandError("'git gc --quiet' command failed.", stderr="fatal: bad object")
            return GitResult(0, "", "")

        scripted_git.on("gc", handler=gc_fails_for_first)
        _idle(clock)

        assert scheduler.run_once() == [max(first, second)]


class TestIdleGcSchedulerCancellation:
    """Test that a build start interrupts compaction."""

    def test_build_start_abandons_remaining_mirrors(self, scheduler, manager, clock, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")
        _make_mirror(manager, "https://example.com/b.git")
        _make_mirror(manager, "https://example.com/c.git")

        def gc_then_build_starts(args):
            scheduler.on_build_started()
            return GitResult(0, "", "")

        scripted_git.on("gc", handler=gc_then_build_starts)
        _idle(clock)

        assert len(scheduler.run_once()) == 1
        assert len(scripted_git.commands("gc")) == 1

    def test_interrupted_gc_stops_the_pass(self, scheduler, manager, clock, scripted_git):
        _make_mirror(manager, "https://example.com/a.git")
        _make_mirror(manager, "https://example.com/b.git")
        scripted_git.on("gc", error=CheckoutCanceledError("Build was interrupted"))
        _idle(clock)

        assert scheduler.run_once() == []
        assert len(scripted_git.commands("gc")) == 1

    def test_runner_is_bound_to_cancel_event(self, scheduler, manager, clock, runner):
        _make_mirror(manager, "https://example.com/a.git")
        _idle(clock)

        scheduler.run_once()

        check = runner.with_interrupt_check.call_args[0][0]
        assert check() is False
        scheduler.on_build_started()
        assert check() is True


class TestIdleGcSchedulerThread:
    """Test start/stop of the background thread."""

    def test_start_and_stop_are_idempotent(self, scheduler):
        scheduler.start()
        scheduler.start()
        assert scheduler.is_running()

        scheduler.stop()
        scheduler.stop()
        assert not scheduler.is_running()

    def test_disabled_scheduler_does_not_start(self, manager, config, runner):
        config.idle_gc.enabled = False
        scheduler = IdleGcScheduler(manager, config, runner=runner)

        scheduler.start()

        assert not scheduler.is_running()

    def test_loop_runs_pass(self, manager, config, runner, clock):
        ran = threading.Event()
        scheduler = IdleGcScheduler(manager, config, runner=runner, clock=clock)
        scheduler.run_once = lambda force=False: ran.set() or []

        scheduler.start()
        try:
            assert ran.wait(timeout=5)
        finally:
            scheduler.stop()
