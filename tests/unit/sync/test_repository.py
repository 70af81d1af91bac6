"""Unit tests for repository checks and repairs."""

from git_agent_sync.git.command import GitVersion
from git_agent_sync.git.errors import GitCommandError
from git_agent_sync.sync.repository import is_shallow_repository, is_valid_git_repo, remove_orphaned_idx_files


def _bare_layout(git_dir):
    (git_dir / "objects").mkdir(parents=True)
    (git_dir / "HEAD").write_text("ref: refs/heads/main\n")
    return git_dir


class TestIsValidGitRepo:
    def test_missing_layout(self, runner, scripted_git, tmp_path):
        assert is_valid_git_repo(runner, tmp_path) is False
        assert scripted_git.calls == []

    def test_git_accepts_directory(self, runner, scripted_git, tmp_path):
        git_dir = _bare_layout(tmp_path / "repo.git")

        assert is_valid_git_repo(runner, git_dir) is True
        assert runner.run.call_args.kwargs["env"] == {"GIT_DIR": str(git_dir)}

    def test_git_rejects_directory(self, runner, scripted_git, tmp_path):
        git_dir = _bare_layout(tmp_path / "repo.git")
        scripted_git.on("rev-parse", exit_code=128, stderr="fatal: not a git repository")

        assert is_valid_git_repo(runner, git_dir) is False


class TestIsShallowRepository:
    def test_asks_git(self, runner, scripted_git, tmp_path):
        scripted_git.on("rev-parse", "--is-shallow-repository", stdout="true\n")

        assert is_shallow_repository(runner, tmp_path, tmp_path / ".git") is True

    def test_old_git_checks_shallow_file(self, runner, scripted_git, tmp_path):
        runner.version.return_value = GitVersion(2, 10, 0)
        git_dir = tmp_path / ".git"
        git_dir.mkdir()
        assert is_shallow_repository(runner, tmp_path, git_dir) is False

        (git_dir / "shallow").write_text("a" * 40)
        assert is_shallow_repository(runner, tmp_path, git_dir) is True
        assert scripted_git.calls == []

    def test_failure_falls_back_to_shallow_file(self, runner, scripted_git, tmp_path):
        scripted_git.on("rev-parse", error=GitCommandError("failed"))
        git_dir = tmp_path / ".git"
        git_dir.mkdir()
        (git_dir / "shallow").write_text("a" * 40)

        assert is_shallow_repository(runner, tmp_path, git_dir) is True


def test_remove_orphaned_idx_files(tmp_path):
    pack_dir = tmp_path / "objects" / "pack"
    pack_dir.mkdir(parents=True)
    (pack_dir / "pack-1.idx").write_text("")
    (pack_dir / "pack-1.pack").write_text("")
    (pack_dir / "pack-2.idx").write_text("")

    remove_orphaned_idx_files(tmp_path)

    assert sorted(p.name for p in pack_dir.iterdir()) == ["pack-1.idx", "pack-1.pack"]
