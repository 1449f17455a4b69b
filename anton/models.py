"""Data models for Anton.

Defines dataclasses for parsed tasks, agent replies and structured results,
loop events, progress snapshots, per-attempt records and run results.
"""

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


def normalize_whitespace(text: str) -> str:
    """Collapse all whitespace runs to a single space and trim."""
    return re.sub(r"\s+", " ", text).strip()


def make_task_key(line: int, text: str) -> str:
    """Stable identity for a task derived from its (line, text) pair."""
    raw = f"{line}|{normalize_whitespace(text)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass
class Task:
    """A single checklist item parsed from the task document.

    The checked flag mirrors the document and is informational only; the
    controller keeps its own ledger of what was actually done.
    """

    text: str
    line: int
    phase_path: list[str] = field(default_factory=list)
    depth: int = 0
    checked: bool = False
    parent_key: str | None = None
    children: list["Task"] = field(default_factory=list)
    # Decomposed subtasks carry an explicit key; parsed tasks derive theirs.
    explicit_key: str | None = None

    @property
    def key(self) -> str:
        if self.explicit_key is not None:
            return self.explicit_key
        return make_task_key(self.line, self.text)


@dataclass
class TaskFile:
    """Parsed task document.

    pending and completed are flat, depth-first lists; subtasks count
    independently of their parents.
    """

    file_path: str
    all_tasks: list[Task]
    roots: list[Task]
    pending: list[Task]
    completed: list[Task]
    total_count: int
    content_hash: str

    def find(self, key: str) -> Task | None:
        for task in self.all_tasks:
            if task.key == key:
                return task
        return None


AgentStatus = Literal["done", "blocked", "decompose"]


@dataclass
class AgentResult:
    """Structured outcome parsed from one agent turn."""

    status: AgentStatus
    reason: str | None = None
    subtasks: list[str] = field(default_factory=list)


@dataclass
class LoopSignal:
    """A repetitive tool-call condition reported by the agent session."""

    tool_name: str
    count: int
    message: str


@dataclass
class AgentReply:
    """Reply from AgentSession.ask().

    loop_signals lists tool-call loops the session detected and recovered
    from on its own during the turn.
    """

    text: str
    turns: int = 0
    tool_calls: int = 0
    loop_signals: list[LoopSignal] = field(default_factory=list)
    session_id: str = ""
    cost_usd: float = 0.0


LoopEventKind = Literal["auto-recovered", "final-failure"]


@dataclass
class LoopEvent:
    """Classification of a tool-call loop attached to a task attempt."""

    kind: LoopEventKind
    task_text: str
    tool_name: str
    count: int
    message: str
    at: float


@dataclass
class ProgressSnapshot:
    """Transient progress view, recomputed on every heartbeat."""

    total_pending: int
    completed_so_far: int = 0
    skipped_so_far: int = 0
    iterations_used: int = 0
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: float | None = None
    current_task: str | None = None
    current_attempt: int | None = None
    stage: str | None = None


AttemptStatus = Literal[
    "passed", "failed", "blocked", "decomposed", "skipped", "timeout", "error", "loop"
]


@dataclass
class VerificationResult:
    """Outcome of verifying a diff after the agent reported done."""

    passed: bool
    summary: str
    scope_ok: bool = True
    checks_ok: bool | None = None
    ai_ok: bool | None = None
    ai_reason: str | None = None
    command_output: str | None = None


@dataclass
class Attempt:
    """Record of one task attempt."""

    task_key: str
    task_text: str
    attempt: int
    status: AttemptStatus
    duration_seconds: float = 0.0
    reason: str | None = None
    commit_hash: str | None = None
    verification: VerificationResult | None = None
    loop_event: LoopEvent | None = None
    # Set when status is "decomposed"
    subtasks: list[str] = field(default_factory=list)


@dataclass
class PreflightRecord:
    """Record of one discovery or requirements-review stage."""

    task_key: str
    stage: Literal["discovery", "requirements-review"]
    duration_seconds: float
    status: Literal["complete", "incomplete", "ready", "error", "timeout"]
    filename: str | None = None
    error: str | None = None


class RunState(str, Enum):
    """Run controller lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


StopReason = Literal[
    "all_done",
    "abort",
    "total_timeout",
    "fatal_error",
    "identical_failures",
    "max_tasks_exceeded",
]


@dataclass
class SkippedTask:
    """A task the run gave up on, with the recorded reason."""

    task_key: str
    task_text: str
    reason: str


@dataclass
class RunResult:
    """Final result of an Anton run."""

    total_tasks: int
    pre_completed: int
    completed: int
    auto_completed: int
    skipped: list[SkippedTask]
    failed: int
    remaining: int
    attempts: list[Attempt]
    preflight_records: list[PreflightRecord]
    duration_seconds: float
    total_commits: int
    stop_reason: StopReason
    final_state: RunState
    error: str | None = None

    @property
    def completed_all(self) -> bool:
        return self.remaining == 0 and not self.skipped and self.failed == 0
