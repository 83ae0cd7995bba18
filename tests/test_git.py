"""Tests for storyflow.git module."""

import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from storyflow.git.runner import GitError, GitResult, run_git, run_git_checked
from storyflow.git.worktree import GitWorktreeSandbox, SandboxError, SandboxRef

OK = GitResult(returncode=0, stdout="", stderr="")
MISSING = GitResult(returncode=1, stdout="", stderr="")


class TestGitResult:
    """Test GitResult dataclass."""

    def test_success_when_returncode_zero(self):
        assert GitResult(returncode=0, stdout="ok", stderr="").success is True

    def test_failure_when_returncode_nonzero(self):
        assert GitResult(returncode=1, stdout="", stderr="error").success is False

    def test_failure_when_timed_out(self):
        assert GitResult(returncode=0, stdout="ok", stderr="", timed_out=True).success is False


class TestRunGit:
    """Test run_git function."""

    @patch("storyflow.git.runner.subprocess.run")
    def test_returns_result_on_success(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="output", stderr="")
        result = run_git(["status"], Path("/tmp"))
        assert result.success
        assert result.stdout == "output"

    @patch("storyflow.git.runner.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=30)
        result = run_git(["status"], Path("/tmp"))
        assert result.timed_out
        assert "timed out" in result.stderr

    @patch("storyflow.git.runner.subprocess.run")
    def test_passes_cwd_with_C_flag(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        run_git(["worktree", "prune"], Path("/my/repo"))
        assert mock_run.call_args[0][0] == ["git", "-C", "/my/repo", "worktree", "prune"]

    @patch("storyflow.git.runner.subprocess.run")
    def test_checked_raises_with_stderr(self, mock_run):
        mock_run.return_value = MagicMock(returncode=128, stdout="", stderr="fatal: not a git repository\n")
        with pytest.raises(GitError, match="git status failed: fatal: not a git repository"):
            run_git_checked(["status"], Path("/tmp"))


def fake_git(branch_exists=False, worktrees=()):
    """run_git stand-in answering the queries the sandbox makes."""
    def _run(args, cwd, timeout=30):
        if args[0] == "rev-parse":
            return OK if branch_exists else MISSING
        if args[:2] == ["worktree", "list"]:
            listing = "".join(f"worktree {p}\nHEAD abc\n\n" for p in worktrees)
            return GitResult(returncode=0, stdout=listing, stderr="")
        return OK
    return _run


@pytest.fixture
def git_sandbox(root, save_story):
    save_story("S-1", status="ready")
    (root / "storyflow.env").write_text("MAX_CONCURRENT=2\n")
    return GitWorktreeSandbox(root)


class TestWorktreeCreate:

    def test_creates_branch_and_seeds_state(self, git_sandbox, root):
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git()), \
                patch("storyflow.git.worktree.run_git_checked") as checked:
            ref = git_sandbox.create("S-1")

        path = root.parent / ".storyflow-worktrees" / "S-1"
        checked.assert_called_once()
        assert checked.call_args[0][0] == ["worktree", "add", "-b", "storyflow/S-1", str(path), "HEAD"]
        assert ref.branch == "storyflow/S-1"
        assert ref.resumed is False
        assert (ref.root / "stories" / "S-1.json").exists()
        assert (ref.root / "storyflow.env").read_text() == "MAX_CONCURRENT=2\n"

    def test_existing_branch_is_checked_out(self, git_sandbox):
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git(branch_exists=True)), \
                patch("storyflow.git.worktree.run_git_checked") as checked:
            git_sandbox.create("S-1")
        assert checked.call_args[0][0][:2] == ["worktree", "add"]
        assert "-b" not in checked.call_args[0][0]

    def test_resumes_registered_worktree(self, git_sandbox):
        path = git_sandbox.worktree_path("S-1")
        story_file = path / ".storyflow" / "stories" / "S-1.json"
        story_file.parent.mkdir(parents=True)
        story_file.write_text("sandbox progress")

        with patch("storyflow.git.worktree.run_git", side_effect=fake_git(worktrees=[path])), \
                patch("storyflow.git.worktree.run_git_checked") as checked:
            ref = git_sandbox.create("S-1")

        checked.assert_not_called()
        assert ref.resumed is True
        assert story_file.read_text() == "sandbox progress"

    def test_unregistered_directory_rejected(self, git_sandbox):
        git_sandbox.worktree_path("S-1").mkdir(parents=True)
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git()):
            with pytest.raises(SandboxError, match="not a reusable worktree"):
                git_sandbox.create("S-1")

    def test_invalid_story_id_rejected(self, git_sandbox):
        with pytest.raises(SandboxError, match="invalid story id"):
            git_sandbox.create("../escape")

    def test_git_failure_becomes_sandbox_error(self, git_sandbox):
        failure = GitError(["worktree", "add"], GitResult(returncode=128, stdout="", stderr="locked"))
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git()), \
                patch("storyflow.git.worktree.run_git_checked", side_effect=failure):
            with pytest.raises(SandboxError, match="locked"):
                git_sandbox.create("S-1")


class TestWorktreeRemove:

    def ref(self, sandbox):
        return SandboxRef(story_id="S-1", path=sandbox.worktree_path("S-1"), branch="storyflow/S-1")

    def test_remove(self, git_sandbox):
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git()) as git:
            git_sandbox.remove(self.ref(git_sandbox))
        calls = [c[0][0] for c in git.call_args_list]
        assert calls[0] == ["worktree", "remove", str(git_sandbox.worktree_path("S-1"))]
        assert ["worktree", "prune"] in calls

    def test_forced_remove_deletes_branch(self, git_sandbox):
        with patch("storyflow.git.worktree.run_git", side_effect=fake_git(branch_exists=True)) as git:
            git_sandbox.remove(self.ref(git_sandbox), force=True)
        calls = [c[0][0] for c in git.call_args_list]
        assert calls[0][-1] == "--force"
        assert ["branch", "-D", "storyflow/S-1"] in calls

    def test_remove_failure_raises(self, git_sandbox):
        failed = GitResult(returncode=1, stdout="", stderr="contains modified files")
        with patch("storyflow.git.worktree.run_git", return_value=failed):
            with pytest.raises(SandboxError, match="contains modified files"):
                git_sandbox.remove(self.ref(git_sandbox))


class TestRunIsolated:

    @pytest.fixture
    def ref(self, tmp_path):
        path = tmp_path / "wt"
        path.mkdir()
        return SandboxRef(story_id="S-1", path=path, branch="storyflow/S-1")

    def test_captures_output_and_sets_root(self, git_sandbox, ref):
        result = git_sandbox.run_isolated(ref, ["sh", "-c", 'echo "$STORYFLOW_ROOT"; echo oops >&2; exit 3'])
        assert result.exit_code == 3
        assert result.stdout.strip() == str(ref.root)
        assert result.stderr.strip() == "oops"
        assert not result.success

    def test_timeout(self, git_sandbox, ref):
        result = git_sandbox.run_isolated(ref, ["sleep", "5"], timeout=0.2)
        assert result.exit_code == -1
        assert "Timed out" in result.stderr

    def test_missing_command(self, git_sandbox, ref):
        result = git_sandbox.run_isolated(ref, ["storyflow-no-such-binary"])
        assert result.exit_code == -1
