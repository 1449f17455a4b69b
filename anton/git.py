"""Version-control safety net.

Drives git through a narrow, fixed set of commands so the working tree can
be committed after each successful task and restored after a failed one.
Every call is synchronous with an explicit timeout.
"""

import logging
import subprocess
from pathlib import Path

from anton.errors import DirtyWorkingTreeError, GitError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60
# Diffs handed to reviewers are truncated beyond this many characters
MAX_DIFF_CHARS = 200_000


class GitWorkspace:
    """Git operations on a project directory.

    Attributes:
        project_dir: Root of the working tree
        timeout: Per-command timeout in seconds
    """

    def __init__(self, project_dir: Path, timeout: int = GIT_TIMEOUT_SECONDS) -> None:
        self.project_dir = Path(project_dir)
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command in the project directory.

        Raises:
            GitError: If the command fails (when check is set) or times out
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e

        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise GitError(f"git {' '.join(args[:2])} failed: {detail}")
        return result

    def is_repo(self) -> bool:
        result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def is_dirty(self) -> bool:
        """True when tracked changes or untracked files exist."""
        return bool(self._run("status", "--porcelain").stdout.strip())

    def ensure_clean(self, ignore: list[Path] | None = None) -> None:
        """Require a clean working tree.

        Args:
            ignore: Paths whose changes do not count (e.g. the plan directory)

        Raises:
            DirtyWorkingTreeError: If there are uncommitted changes
        """
        dirty = self.changed_files()
        if ignore:
            prefixes = [self._relative(p) for p in ignore]
            dirty = [f for f in dirty if not any(_under(f, p) for p in prefixes if p)]
        if dirty:
            shown = ", ".join(dirty[:5])
            more = f" (+{len(dirty) - 5} more)" if len(dirty) > 5 else ""
            raise DirtyWorkingTreeError(
                f"Working tree has uncommitted changes: {shown}{more}. "
                "Commit or stash them before starting a run."
            )

    def head(self) -> str | None:
        """Full hash of HEAD, or None in a repository without commits."""
        result = self._run("rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def changed_files(self) -> list[str]:
        """Paths with tracked or untracked changes relative to HEAD."""
        files = []
        for line in self._run("status", "--porcelain", "-uall").stdout.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files

    def untracked_files(self) -> list[str]:
        output = self._run("ls-files", "--others", "--exclude-standard").stdout
        return [line for line in output.splitlines() if line]

    def diff(self, base: str | None = None) -> str:
        """Working tree diff against base (default HEAD), listing untracked files."""
        ref = base or "HEAD"
        if self.head() is None:
            text = ""
        else:
            text = self._run("diff", ref).stdout
        untracked = self.untracked_files()
        if untracked:
            text += "\n# Untracked files:\n" + "\n".join(f"#   {f}" for f in untracked)
        if len(text) > MAX_DIFF_CHARS:
            text = text[:MAX_DIFF_CHARS] + "\n... [diff truncated]"
        return text

    def show_head(self) -> str:
        """Patch of the most recent commit."""
        return self._run("show", "--stat", "--patch", "HEAD").stdout

    def commit_all(self, message: str) -> str:
        """Stage everything and commit.

        Returns:
            Short hash of the new commit, or "" when there was nothing to commit
        """
        self._run("add", "-A")
        if not self._run("status", "--porcelain").stdout.strip():
            return ""
        self._run("commit", "-m", message)
        short = self._run("rev-parse", "--short", "HEAD").stdout.strip()
        logger.info(f"Committed {short}: {message}")
        return short

    def amend(self) -> str:
        """Fold current changes into the last commit.

        Returns:
            Short hash of the amended commit, or "" when there was nothing to fold in
        """
        self._run("add", "-A")
        if not self._run("status", "--porcelain").stdout.strip():
            return ""
        self._run("commit", "--amend", "--no-edit")
        return self._run("rev-parse", "--short", "HEAD").stdout.strip()

    def rollback(self, base: str | None = None, keep_untracked: list[str] | None = None) -> None:
        """Restore the working tree after a failed attempt.

        Tracked files are reset to base (default HEAD), which also discards
        commits made since base. Untracked files are removed unless they
        appear in keep_untracked, i.e. existed before the attempt.

        Args:
            base: Commit the attempt started from
            keep_untracked: Untracked paths to preserve
        """
        if base is not None:
            self._run("reset", "--hard", base)
        elif self.head() is not None:
            self._run("checkout", "--", ".")

        keep = set(keep_untracked or [])
        created = [f for f in self.untracked_files() if f not in keep]
        if created:
            self._run("clean", "-f", "--", *created)
        logger.info(
            f"Rolled back to {base[:8] if base else 'HEAD'}; removed {len(created)} new file(s)"
        )

    def _relative(self, path: Path) -> str:
        try:
            return Path(path).resolve().relative_to(self.project_dir.resolve()).as_posix()
        except ValueError:
            return ""


def _under(file_path: str, prefix: str) -> bool:
    return file_path == prefix or file_path.startswith(prefix.rstrip("/") + "/")
