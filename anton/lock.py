"""Lock manager for Anton runs.

Provides a PID-based, create-exclusive lock file that prevents two Anton
runs from driving the same state directory concurrently. The lock is the
only state shared across processes.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from anton.errors import LockContentionError

logger = logging.getLogger(__name__)

LOCK_FILENAME = "anton.lock"

# Locks older than this are considered abandoned even if the pid is alive.
STALE_AFTER_SECONDS = 60 * 60

# An unreadable lock file younger than this is assumed to be mid-write by
# the process that just created it.
PARTIAL_LOCK_GRACE_SECONDS = 10


@dataclass
class LockRecord:
    """Contents of the lock file.

    Attributes:
        pid: Process ID of the holder (0 when unreadable)
        started_at: ISO-8601 timestamp of acquisition or last refresh
        cwd: Working directory of the holder
        task_file: Task document the holder is running
    """

    pid: int
    started_at: str
    cwd: str
    task_file: str

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "startedAt": self.started_at,
            "cwd": self.cwd,
            "taskFile": self.task_file,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        """Build a record, treating fields of unexpected type as absent."""
        pid = data.get("pid")
        started_at = data.get("startedAt")
        cwd = data.get("cwd")
        task_file = data.get("taskFile")
        return cls(
            pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else 0,
            started_at=started_at if isinstance(started_at, str) else "",
            cwd=cwd if isinstance(cwd, str) else "",
            task_file=task_file if isinstance(task_file, str) else "",
        )

    def age_seconds(self, now: float | None = None) -> float | None:
        """Seconds since started_at, or None when the timestamp is unparseable."""
        if not self.started_at:
            return None
        try:
            started = datetime.fromisoformat(self.started_at.replace("Z", "+00:00"))
        except ValueError:
            return None
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        current = now if now is not None else time.time()
        return current - started.timestamp()


@dataclass
class LockHandle:
    """Proof of lock ownership returned by LockManager.acquire()."""

    path: Path
    pid: int
    task_file: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running.

    Args:
        pid: Process ID to check

    Returns:
        True if process exists, False otherwise
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we don't have permission to signal it
        return True
    except OSError:
        return False


class LockManager:
    """Create-exclusive lock file for a state directory.

    Usage:
        locks = LockManager(state_dir)
        handle = locks.acquire("tasks.md", os.getcwd())
        try:
            ...
        finally:
            locks.release(handle)

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path) -> None:
        """Initialize lock manager.

        Args:
            state_dir: Directory holding the lock file (created on acquire)
        """
        self.state_dir = Path(state_dir)
        self.lock_path = self.state_dir / LOCK_FILENAME

    def read(self) -> LockRecord | None:
        """Read the current lock record.

        Returns:
            LockRecord if a lock file exists and holds a JSON object, else None
        """
        try:
            raw = self.lock_path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read lock file {self.lock_path}: {e}")
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return LockRecord(pid=0, started_at="", cwd="", task_file="")
        if not isinstance(data, dict):
            return LockRecord(pid=0, started_at="", cwd="", task_file="")
        return LockRecord.from_dict(data)

    def is_stale(self, record: LockRecord, now: float | None = None) -> bool:
        """A lock is stale when it is older than an hour or its pid is dead."""
        age = record.age_seconds(now)
        if age is None or age > STALE_AFTER_SECONDS:
            return True
        return not is_process_running(record.pid)

    def is_held(self) -> bool:
        """Return True if a valid (non-stale) lock exists. Never modifies state."""
        record = self.read()
        if record is None:
            return False
        if record.pid == 0 and self._is_recent():
            return True
        return not self.is_stale(record)

    def acquire(self, task_file: str, cwd: str) -> LockHandle:
        """Acquire the lock for this process.

        Stale locks are removed with a warning. A lock already held by this
        process is reclaimed silently.
        An unreadable lock file counts as held until it is
        PARTIAL_LOCK_GRACE_SECONDS old, since its creator may still be writing it.

        Args:
            task_file: Task document being run (recorded in the lock)
            cwd: Working directory (recorded in the lock)

        Returns:
            LockHandle for release() and touch()

        Raises:
            LockContentionError: If another live process holds a fresh lock
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        pid = os.getpid()
        record = LockRecord(pid=pid, started_at=_now_iso(), cwd=cwd, task_file=task_file)

        # One bounded retry covers the race between clearing a stale lock
        # and another process creating its own.
        for attempt in range(2):
            existing = self.read()
            if existing is not None:
                if existing.pid == pid:
                    logger.debug("Reclaiming lock already held by this process")
                    self.lock_path.write_text(json.dumps(record.to_dict(), indent=2))
                    return LockHandle(path=self.lock_path, pid=pid, task_file=task_file)
                if existing.pid == 0 and self._is_recent():
                    logger.warning(f"Lock file {self.lock_path} is unreadable but fresh; treating as held")
                    raise LockContentionError(0)
                if not self.is_stale(existing):
                    raise LockContentionError(existing.pid)
                logger.warning(
                    f"Removing stale lock (PID {existing.pid}, started {existing.started_at or 'unknown'})"
                )
                self._remove()

            if self._create_exclusive(record):
                logger.info(f"Lock acquired: {self.lock_path} (PID {pid})")
                return LockHandle(path=self.lock_path, pid=pid, task_file=task_file)
            logger.debug(f"Lock creation raced with another process (attempt {attempt + 1})")

        holder = self.read()
        raise LockContentionError(holder.pid if holder else 0)

    def release(self, handle: LockHandle) -> None:
        """Release the lock. Best-effort; never raises.

        Only removes the file when it still belongs to the handle's pid.
        """
        try:
            record = self.read()
            if record is not None and record.pid != handle.pid:
                logger.warning(
                    f"Lock now held by PID {record.pid}; not removing it"
                )
                return
            self._remove()
        except Exception as e:
            logger.warning(f"Failed to release lock: {e}")

    def touch(self, handle: LockHandle) -> None:
        """Refresh started_at so a long-running holder is not considered stale."""
        try:
            record = self.read()
            if record is None or record.pid != handle.pid:
                return
            record.started_at = _now_iso()
            self.lock_path.write_text(json.dumps(record.to_dict(), indent=2))
        except OSError as e:
            logger.warning(f"Failed to refresh lock: {e}")

    def _create_exclusive(self, record: LockRecord) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(record.to_dict(), indent=2))
        return True

    def _is_recent(self) -> bool:
        try:
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return time.time() - mtime < PARTIAL_LOCK_GRACE_SECONDS

    def _remove(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
