"""Progress reporting for Anton runs.

Formatting helpers turn run state into human-readable lines; the run
controller never builds display strings itself. Delivery goes through a
bounded queue drained by a dispatcher task so a slow or failing consumer
can never stall the run, and a heartbeat timer periodically reports the
current snapshot.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from anton.models import (
    Attempt,
    LoopEvent,
    ProgressSnapshot,
    RunResult,
    RunState,
    Task,
    TaskFile,
)

logger = logging.getLogger(__name__)

BAR_WIDTH = 20

# Internal stage ids mapped to the labels users see
STAGE_LABELS = {
    "parse": "Planning",
    "plan": "Planning",
    "preflight": "Pre-flight",
    "discovery": "Pre-flight",
    "requirements-review": "Pre-flight",
    "implementation": "Executing",
    "verify": "Executing",
    "commit": "Executing",
}

EventKind = Literal[
    "run_started",
    "stage",
    "task_started",
    "task_finished",
    "task_skipped",
    "loop",
    "heartbeat",
    "run_finished",
]


@dataclass
class ProgressEvent:
    """A progress notification delivered to callbacks.

    Attributes:
        kind: Event type
        message: Pre-formatted, human-readable line
        snapshot: Progress snapshot at the time of the event
        data: Structured details (task text, status, result, loop event)
    """

    kind: EventKind
    message: str
    snapshot: ProgressSnapshot | None = None
    data: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], Awaitable[None] | None]


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "45s", "2m 30s" or "1h 5m"
    """
    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def estimate_remaining(
    elapsed_seconds: float, done: int, total: int
) -> float | None:
    """Linear ETA from the average time per resolved task; None before the first."""
    if done <= 0 or total <= done:
        return None
    return elapsed_seconds / done * (total - done)


def format_progress_bar(snapshot: ProgressSnapshot) -> str:
    """[████████░░░░░░░░░░░░] 5/20 (25%)"""
    done = snapshot.completed_so_far + snapshot.skipped_so_far
    total = snapshot.total_pending
    ratio = done / total if total > 0 else 0.0
    filled = min(BAR_WIDTH, round(ratio * BAR_WIDTH))
    bar = "█" * filled + "░" * (BAR_WIDTH - filled)
    return f"[{bar}] {done}/{total} ({round(ratio * 100)}%)"


def format_heartbeat(snapshot: ProgressSnapshot) -> str:
    """Periodic status line: counts, current task and attempt, elapsed, ETA."""
    done = snapshot.completed_so_far + snapshot.skipped_so_far
    parts = [f"⏳ [{done}/{snapshot.total_pending}]"]
    if snapshot.current_task:
        current = f"Working on: {snapshot.current_task}"
        if snapshot.current_attempt:
            current += f" (attempt {snapshot.current_attempt})"
        parts.append(current)
    if snapshot.stage:
        parts.append(STAGE_LABELS.get(snapshot.stage, snapshot.stage))
    parts.append(f"elapsed {format_duration(snapshot.elapsed_seconds)}")
    if snapshot.estimated_remaining_seconds is not None:
        parts.append(f"ETA {format_duration(snapshot.estimated_remaining_seconds)}")
    return " · ".join(parts)


def format_loop_event(event: LoopEvent) -> str:
    """Distinguish a loop the session recovered from and one that ended the attempt."""
    if event.kind == "auto-recovered":
        return (
            f"🔁 Loop auto-recovered: {event.tool_name} x{event.count} "
            f"during '{event.task_text}'"
        )
    return (
        f"🛑 Final loop failure: {event.tool_name or 'tool'} x{event.count} "
        f"during '{event.task_text}': {event.message}"
    )


def format_stage(stage_id: str, detail: str = "") -> str:
    label = STAGE_LABELS.get(stage_id, stage_id)
    return f"[{label}] {detail}" if detail else f"[{label}]"


def format_task_start(task: Task, attempt: int, snapshot: ProgressSnapshot) -> str:
    index = snapshot.completed_so_far + snapshot.skipped_so_far + 1
    return f"🔧 [{index}/{snapshot.total_pending}] {task.text} (attempt {attempt})"


def format_task_end(attempt: Attempt) -> str:
    emoji = "✅" if attempt.status == "passed" else "❌"
    line = f"{emoji} {attempt.task_text} — {attempt.status} ({format_duration(attempt.duration_seconds)})"
    if attempt.status != "passed" and attempt.reason:
        line += f": {attempt.reason}"
    return line


def format_task_skip(task_text: str, reason: str) -> str:
    return f"⏭️  {task_text} — skipped: {reason}"


def format_run_summary(result: RunResult) -> str:
    """Final summary; an intentional stop reads differently from a failure."""
    if result.final_state == RunState.FAILED:
        title = f"💥 Anton Failed: {result.error or result.stop_reason}"
    elif result.stop_reason == "abort":
        title = "⏹️  Anton Stopped"
    else:
        title = "🤖 Anton Complete"
    lines = [
        title,
        f"  ✅ {result.completed} tasks completed",
    ]
    if result.auto_completed:
        lines.append(f"  🔎 {result.auto_completed} already done (discovery)")
    lines.extend(
        [
            f"  ⏭️  {len(result.skipped)} tasks skipped",
            f"  ❌ {result.failed} tasks failed",
            f"  📋 {result.remaining} remaining",
            f"  ⏱️  {format_duration(result.duration_seconds)}",
            f"  💾 {result.total_commits} commits",
            f"  Stop: {result.stop_reason}",
        ]
    )
    for skipped in result.skipped:
        lines.append(f"    ⏭️  {skipped.task_text}: {skipped.reason}")
    return "\n".join(lines)


def format_dry_run_plan(task_file: TaskFile, commands: tuple[str, ...] = ()) -> str:
    """Summary of what a run would do, without running anything."""
    lines = [
        "🧪 Dry Run Plan",
        f"  📋 {task_file.total_count} total tasks",
        f"  ⏳ {len(task_file.pending)} pending tasks",
        f"  ✅ {len(task_file.completed)} already completed",
    ]
    for command in commands:
        lines.append(f"  🧪 Check: {command}")

    lines.append("")
    lines.append("Pending tasks:")
    for task in task_file.pending[:10]:
        indent = "  " * (task.depth + 1)
        lines.append(f"{indent}• {task.text}")
    if len(task_file.pending) > 10:
        lines.append(f"  ... and {len(task_file.pending) - 10} more tasks")
    return "\n".join(lines)


class ProgressReporter:
    """Bounded, non-blocking delivery of progress events.

    publish() enqueues without waiting; when the queue is full the event is
    dropped and logged. A dispatcher task delivers events to each callback
    in order. Callback exceptions are logged and swallowed.
    """

    def __init__(self, callbacks: list[ProgressCallback] | None = None, maxsize: int = 100) -> None:
        self.callbacks = list(callbacks or [])
        self.dropped = 0
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    def add_callback(self, callback: ProgressCallback) -> None:
        self.callbacks.append(callback)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._dispatch())

    def publish(self, event: ProgressEvent) -> None:
        """Queue an event for delivery. Never blocks."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Progress queue full; dropped {event.kind} event")

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver queued events, then stop the dispatcher."""
        if self._task is None:
            return
        try:
            self._queue.put_nowait(None)
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self._task.cancel()
        self._task = None

    async def _dispatch(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            for callback in self.callbacks:
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")


class Heartbeat:
    """Independent timer that reports the current snapshot.

    Reads the snapshot only. on_tick runs every interval regardless of
    whether progress events are enabled (used to refresh the run lock).
    """

    def __init__(
        self,
        interval_sec: float,
        snapshot: Callable[[], ProgressSnapshot],
        reporter: ProgressReporter,
        enabled: bool = True,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self.interval_sec = interval_sec
        self.snapshot = snapshot
        self.reporter = reporter
        self.enabled = enabled
        self.on_tick = on_tick
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None and self.interval_sec > 0:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            if self.on_tick is not None:
                try:
                    self.on_tick()
                except Exception as e:
                    logger.warning(f"Heartbeat tick failed: {e}")
            if self.enabled:
                snap = self.snapshot()
                self.reporter.publish(
                    ProgressEvent(kind="heartbeat", message=format_heartbeat(snap), snapshot=snap)
                )


def console_callback(printer: Callable[[str], None]) -> ProgressCallback:
    """Callback printing each event's message with the given printer."""

    def _print(event: ProgressEvent) -> None:
        printer(event.message)

    return _print
