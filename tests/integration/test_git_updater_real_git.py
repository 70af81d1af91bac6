"""End-to-end checkout tests running the updater against real git repositories."""

import shutil
import threading

import pytest

from git_agent_sync.git.errors import CheckoutCanceledError, RevisionNotFoundError
from git_agent_sync.sync.models import CheckoutRules, RepositorySpec
from git_agent_sync.sync.updater import GitUpdater
from git_agent_sync.sync.variants import VARIANTS

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _update(remote_url, revision, checkout_dir, config, runner, logger, variant="direct", branch="main", **kwargs):
    spec = RepositorySpec(fetch_url=remote_url, revision=revision, branch=branch, **kwargs)
    updater = GitUpdater(spec, checkout_dir, config, runner=runner, build_logger=logger, variant=VARIANTS[variant])
    return updater.update()


class TestDirectCheckout:
    """Test the direct variant against a local bare repository."""

    def test_fresh_checkout(self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git):
        sha = remote.commit({"README.md": "hello\n", "src/app.py": "print(1)\n"})
        checkout_dir = tmp_path / "checkout"

        result = _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert result.branch == "refs/heads/main"
        assert result.branch_changed is True
        assert (checkout_dir / "README.md").read_text() == "hello\n"
        assert run_git(checkout_dir, "rev-parse", "HEAD") == sha
        assert run_git(checkout_dir, "symbolic-ref", "HEAD") == "refs/heads/main"
        assert run_git(checkout_dir, "config", "remote.origin.url") == remote.url

    def test_second_update_does_not_fetch(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)
        git_runner.calls.clear()

        result = _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert git_runner.commands("fetch") == []
        assert git_runner.commands("init") == []
        assert result.branch_changed is False

    def test_new_commit_is_fetched(self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git):
        first = remote.commit({"README.md": "one\n"})
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, first, checkout_dir, agent_config, git_runner, quiet_logger)
        second = remote.commit({"README.md": "two\n"})

        _update(remote.url, second, checkout_dir, agent_config, git_runner, quiet_logger)

        assert (checkout_dir / "README.md").read_text() == "two\n"
        assert run_git(checkout_dir, "rev-parse", "HEAD") == second

    def test_local_modifications_are_discarded(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)
        (checkout_dir / "README.md").write_text("local edit\n")

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert (checkout_dir / "README.md").read_text() == "hello\n"

    def test_untracked_files_are_cleaned_on_branch_change(
        self, tmp_path, remote, git_runner, agent_config, quiet_logger
    ):
        main_sha = remote.commit({"README.md": "main\n"})
        feature_sha = remote.commit({"feature.txt": "feature\n"}, branch="feature")
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, main_sha, checkout_dir, agent_config, git_runner, quiet_logger)
        (checkout_dir / "build.log").write_text("output")

        same_branch = _update(remote.url, main_sha, checkout_dir, agent_config, git_runner, quiet_logger)
        assert same_branch.cleaned is False
        assert (checkout_dir / "build.log").exists()

        switched = _update(
            remote.url, feature_sha, checkout_dir, agent_config, git_runner, quiet_logger, branch="feature"
        )

        assert switched.branch_changed is True
        assert switched.cleaned is True
        assert not (checkout_dir / "build.log").exists()
        assert (checkout_dir / "feature.txt").exists()

    def test_tag_checkout(self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git):
        sha = remote.commit({"README.md": "release\n"})
        run_git(remote.work_dir, "tag", "v1.0")
        run_git(remote.work_dir, "push", "-q", "origin", "v1.0")
        checkout_dir = tmp_path / "checkout"

        result = _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, branch="refs/tags/v1.0")

        assert result.branch == "refs/tags/v1.0"
        assert run_git(checkout_dir, "rev-parse", "HEAD") == sha

    def test_missing_revision(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        remote.commit({"README.md": "hello\n"})

        with pytest.raises(RevisionNotFoundError):
            _update(remote.url, "0" * 40, tmp_path / "checkout", agent_config, git_runner, quiet_logger)

    def test_canceled_build(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        cancel_event = threading.Event()
        cancel_event.set()
        updater = GitUpdater(
            RepositorySpec(fetch_url=remote.url, revision=sha, branch="main"),
            tmp_path / "checkout",
            agent_config,
            runner=git_runner,
            build_logger=quiet_logger,
            variant=VARIANTS["direct"],
            cancel_event=cancel_event,
        )

        with pytest.raises(CheckoutCanceledError):
            updater.update()


class TestShallowCheckout:
    def test_shallow_clone(self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git):
        remote.commit({"README.md": "one\n"})
        sha = remote.commit({"README.md": "two\n"})
        checkout_dir = tmp_path / "checkout"

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, variant="direct-shallow")

        assert run_git(checkout_dir, "rev-parse", "--is-shallow-repository") == "true"
        assert (checkout_dir / "README.md").read_text() == "two\n"

    def test_switching_to_full_clone_recreates_repository(
        self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git
    ):
        sha = remote.commit({"README.md": "one\n"})
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, variant="direct-shallow")
        git_runner.calls.clear()

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert git_runner.commands("init") == [["init"]]
        assert run_git(checkout_dir, "rev-parse", "--is-shallow-repository") == "false"


class TestMirrorCheckout:
    """Test the mirror variants with a mirrors directory under tmp_path."""

    def test_mirror_variant(self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"

        result = _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, variant="mirror")

        assert result.mirror_dir is not None
        assert result.mirror_dir.parent == tmp_path / "mirrors"
        assert run_git(result.mirror_dir, "rev-parse", "--is-bare-repository") == "true"
        assert run_git(result.mirror_dir, "cat-file", "-t", sha) == "commit"
        assert (checkout_dir / "README.md").read_text() == "hello\n"
        assert (tmp_path / "mirrors" / "map").read_text().startswith(remote.url)

    def test_mirror_with_alternates(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"

        result = _update(
            remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, variant="mirror-with-alternates"
        )

        alternates = (checkout_dir / ".git" / "objects" / "info" / "alternates").read_text().strip()
        assert alternates == str((result.mirror_dir / "objects").resolve())
        assert (checkout_dir / "README.md").read_text() == "hello\n"

    def test_switching_back_to_direct_unlinks_mirror(
        self, tmp_path, remote, git_runner, agent_config, quiet_logger, run_git
    ):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"
        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, variant="mirror-with-alternates")

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert not (checkout_dir / ".git" / "objects" / "info" / "alternates").exists()
        assert "insteadof" not in run_git(checkout_dir, "config", "--list").lower()
        assert (checkout_dir / "README.md").read_text() == "hello\n"

    def test_mirror_is_reused_between_checkouts(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        first = _update(remote.url, sha, tmp_path / "a", agent_config, git_runner, quiet_logger, variant="mirror")
        git_runner.calls.clear()

        second = _update(remote.url, sha, tmp_path / "b", agent_config, git_runner, quiet_logger, variant="mirror")

        assert second.mirror_dir == first.mirror_dir
        assert ["init", "--bare"] not in git_runner.calls


class TestCheckoutRules:
    def test_repository_mapped_into_subdirectory(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        sha = remote.commit({"README.md": "hello\n"})
        checkout_dir = tmp_path / "checkout"

        result = _update(
            remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger,
            checkout_rules=CheckoutRules.parse("+:. => sub"),
        )

        assert result.target_dir == checkout_dir / "sub"
        assert (checkout_dir / "sub" / "README.md").exists()

    def test_sparse_checkout(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        agent_config.checkout.use_sparse_checkout = True
        sha = remote.commit({"src/app.py": "print(1)\n", "docs/guide.md": "docs\n"})
        checkout_dir = tmp_path / "checkout"

        _update(
            remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger,
            checkout_rules=CheckoutRules.parse("+:src"),
        )

        assert (checkout_dir / "src" / "app.py").exists()
        assert not (checkout_dir / "docs").exists()


class TestUpperLimitRevision:
    def test_changes_after_build_revision_are_reported(self, tmp_path, remote, git_runner, agent_config, quiet_logger):
        build_sha = remote.commit({"src/app.py": "print(1)\n"})
        upper_sha = remote.commit({"src/app.py": "print(2)\n"})

        _update(
            remote.url, build_sha, tmp_path / "checkout", agent_config, git_runner, quiet_logger,
            upper_limit_revision=upper_sha,
        )

        problems = quiet_logger.problems
        assert len(problems) == 1
        assert "src/app.py" in problems[0].description


class TestSubmodules:
    def test_submodules_are_checked_out(
        self, tmp_path, remote, make_remote, git_runner, agent_config, quiet_logger, run_git
    ):
        lib = make_remote("lib")
        lib.commit({"lib.txt": "library\n"})
        run_git(remote.work_dir, "submodule", "add", "-q", lib.url, "lib")
        sha = remote.commit({"README.md": "with lib\n"})
        checkout_dir = tmp_path / "checkout"

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger)

        assert (checkout_dir / "lib" / "lib.txt").read_text() == "library\n"

    def test_ignored_submodules_are_left_empty(
        self, tmp_path, remote, make_remote, git_runner, agent_config, quiet_logger, run_git
    ):
        lib = make_remote("lib")
        lib.commit({"lib.txt": "library\n"})
        run_git(remote.work_dir, "submodule", "add", "-q", lib.url, "lib")
        sha = remote.commit({"README.md": "with lib\n"})
        checkout_dir = tmp_path / "checkout"

        _update(remote.url, sha, checkout_dir, agent_config, git_runner, quiet_logger, submodule_policy="ignore")

        assert not (checkout_dir / "lib" / "lib.txt").exists()
