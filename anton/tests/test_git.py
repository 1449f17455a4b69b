"""Tests for the git safety net, using real repositories in tmp_path."""

import shutil
import subprocess
from pathlib import Path

import pytest

from anton.errors import DirtyWorkingTreeError, GitError
from anton.git import GitWorkspace

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A repository with one commit containing README.md."""
    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "config", "user.email", "anton@example.com")
    git(path, "config", "user.name", "Anton Test")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("hello\n")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


class TestStatus:
    """Tests for dirty-tree detection."""

    def test_clean_repo(self, repo: Path) -> None:
        """A freshly committed repository is clean."""
        workspace = GitWorkspace(repo)

        assert workspace.is_repo()
        assert not workspace.is_dirty()
        workspace.ensure_clean()

    def test_modified_file_is_dirty(self, repo: Path) -> None:
        """Tracked modifications make the tree dirty."""
        (repo / "README.md").write_text("changed\n")

        with pytest.raises(DirtyWorkingTreeError, match="README.md"):
            GitWorkspace(repo).ensure_clean()

    def test_untracked_file_is_dirty(self, repo: Path) -> None:
        """Untracked files make the tree dirty."""
        (repo / "new.txt").write_text("x")

        assert GitWorkspace(repo).is_dirty()
        assert GitWorkspace(repo).changed_files() == ["new.txt"]

    def test_ignored_paths_do_not_count(self, repo: Path) -> None:
        """Changes under an ignored directory are tolerated."""
        plans = repo / ".agents" / "tasks"
        plans.mkdir(parents=True)
        (plans / "plan.md").write_text("# plan")

        GitWorkspace(repo).ensure_clean(ignore=[plans])

    def test_not_a_repo(self, tmp_path: Path) -> None:
        """is_repo is False outside a repository."""
        plain = tmp_path / "plain"
        plain.mkdir()

        assert not GitWorkspace(plain).is_repo()

    def test_git_failure_raises(self, tmp_path: Path) -> None:
        """Failing commands raise GitError."""
        plain = tmp_path / "plain"
        plain.mkdir()

        with pytest.raises(GitError):
            GitWorkspace(plain).current_branch()


class TestCommit:
    """Tests for commit_all() and amend()."""

    def test_commit_all_returns_short_hash(self, repo: Path) -> None:
        """Committing changes returns the new short hash."""
        (repo / "a.py").write_text("print(1)\n")
        workspace = GitWorkspace(repo)

        short = workspace.commit_all("anton: add a.py")

        assert short
        assert git(repo, "rev-parse", "--short", "HEAD") == short
        assert git(repo, "log", "-1", "--format=%s") == "anton: add a.py"
        assert not workspace.is_dirty()

    def test_nothing_to_commit_returns_empty(self, repo: Path) -> None:
        """Nothing to commit is not an error."""
        assert GitWorkspace(repo).commit_all("anton: nothing") == ""

    def test_amend_folds_into_last_commit(self, repo: Path) -> None:
        """amend() rewrites the last commit instead of adding one."""
        workspace = GitWorkspace(repo)
        (repo / "a.py").write_text("1\n")
        workspace.commit_all("anton: a")
        count_before = git(repo, "rev-list", "--count", "HEAD")

        (repo / "a.py").write_text("2\n")
        assert workspace.amend()

        assert git(repo, "rev-list", "--count", "HEAD") == count_before
        assert git(repo, "show", "HEAD:a.py") == "2"

    def test_amend_without_changes(self, repo: Path) -> None:
        """amend() with a clean tree returns empty."""
        assert GitWorkspace(repo).amend() == ""


class TestDiff:
    """Tests for diff() and show_head()."""

    def test_diff_includes_changes_and_untracked(self, repo: Path) -> None:
        """Tracked changes appear as a patch and new files are listed."""
        (repo / "README.md").write_text("changed\n")
        (repo / "new.txt").write_text("x")

        text = GitWorkspace(repo).diff()

        assert "+changed" in text
        assert "# Untracked files:" in text
        assert "new.txt" in text

    def test_diff_against_base_includes_commits(self, repo: Path) -> None:
        """Diffing against an older commit includes committed work."""
        workspace = GitWorkspace(repo)
        base = workspace.head()
        (repo / "a.py").write_text("value = 1\n")
        workspace.commit_all("anton: a")

        assert "+value = 1" in workspace.diff(base)

    def test_show_head(self, repo: Path) -> None:
        """show_head() contains the last commit's patch."""
        assert "+hello" in GitWorkspace(repo).show_head()


class TestRollback:
    """Tests for rollback()."""

    def test_restores_tracked_and_removes_new_files(self, repo: Path) -> None:
        """Tracked edits are reverted and files created since are removed."""
        workspace = GitWorkspace(repo)
        (repo / "README.md").write_text("broken\n")
        (repo / "junk.txt").write_text("junk")

        workspace.rollback(workspace.head())

        assert (repo / "README.md").read_text() == "hello\n"
        assert not (repo / "junk.txt").exists()

    def test_discards_commits_since_base(self, repo: Path) -> None:
        """Resetting to the base drops commits made during the attempt."""
        workspace = GitWorkspace(repo)
        base = workspace.head()
        (repo / "a.py").write_text("1\n")
        workspace.commit_all("anton: a")

        workspace.rollback(base)

        assert workspace.head() == base
        assert not (repo / "a.py").exists()

    def test_keeps_listed_untracked_files(self, repo: Path) -> None:
        """Untracked files listed in keep_untracked survive."""
        workspace = GitWorkspace(repo)
        (repo / "notes.txt").write_text("keep me")
        (repo / "junk.txt").write_text("junk")

        workspace.rollback(workspace.head(), keep_untracked=["notes.txt"])

        assert (repo / "notes.txt").exists()
        assert not (repo / "junk.txt").exists()

    def test_head_none_without_commits(self, tmp_path: Path) -> None:
        """A repository without commits has no HEAD."""
        path = tmp_path / "empty"
        path.mkdir()
        git(path, "init", "-q")

        assert GitWorkspace(path).head() is None
