"""Shared error types for the anton package."""


class AntonError(Exception):
    """Base exception for anton errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class LockContentionError(AntonError):
    """Another live process holds the run lock."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(
            f"Anton: run already in progress (PID {pid}). Stop it first with 'anton stop'."
        )


class TaskFileError(AntonError):
    """The task document is missing or unreadable."""

    pass


class DirtyWorkingTreeError(AntonError):
    """The working tree has uncommitted changes at run start."""

    pass


class GitError(AntonError):
    """A git command failed for a reason other than 'nothing to commit'."""

    pass


class SessionError(AntonError):
    """The agent session failed to produce a usable reply."""

    pass


class MaxIterationsError(SessionError):
    """The agent session hit its iteration cap before answering."""

    pass


class PreflightError(AntonError):
    """Discovery or requirements review returned an unusable answer."""

    pass


class ToolLoopError(SessionError):
    """The agent session aborted a turn after a repetitive tool-call loop.

    Attributes:
        tool_name: Tool that was being called repeatedly
        count: Number of identical calls observed
    """

    def __init__(self, message: str, tool_name: str = "", count: int = 0) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.count = count
