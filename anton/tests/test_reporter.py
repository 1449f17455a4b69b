"""Tests for progress formatting and delivery."""

import asyncio
from unittest.mock import MagicMock

import pytest

from anton.models import Attempt, LoopEvent, ProgressSnapshot, RunResult, RunState, SkippedTask
from anton.reporter import (
    Heartbeat,
    ProgressEvent,
    ProgressReporter,
    console_callback,
    estimate_remaining,
    format_duration,
    format_dry_run_plan,
    format_heartbeat,
    format_loop_event,
    format_progress_bar,
    format_run_summary,
    format_stage,
    format_task_end,
)
from anton.task_parser import parse_task_string


def make_result(**overrides) -> RunResult:
    values = dict(
        total_tasks=5,
        pre_completed=1,
        completed=3,
        auto_completed=0,
        skipped=[],
        failed=0,
        remaining=1,
        attempts=[],
        preflight_records=[],
        duration_seconds=125.0,
        total_commits=3,
        stop_reason="all_done",
        final_state=RunState.COMPLETED,
    )
    values.update(overrides)
    return RunResult(**values)


class TestFormatting:
    """Tests for the pure formatting helpers."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(0, "0s"), (45, "45s"), (60, "1m"), (150, "2m 30s"), (3600, "1h"), (3900, "1h 5m")],
    )
    def test_format_duration(self, seconds: float, expected: str) -> None:
        assert format_duration(seconds) == expected

    def test_estimate_remaining(self) -> None:
        """ETA is the average time per resolved task times what is left."""
        assert estimate_remaining(100.0, 2, 6) == pytest.approx(200.0)
        assert estimate_remaining(100.0, 0, 6) is None
        assert estimate_remaining(100.0, 6, 6) is None

    def test_progress_bar(self) -> None:
        snapshot = ProgressSnapshot(total_pending=20, completed_so_far=4, skipped_so_far=1)

        assert format_progress_bar(snapshot) == "[█████░░░░░░░░░░░░░░░] 5/20 (25%)"

    def test_progress_bar_empty_run(self) -> None:
        assert format_progress_bar(ProgressSnapshot(total_pending=0)).endswith("0/0 (0%)")

    def test_heartbeat_line(self) -> None:
        snapshot = ProgressSnapshot(
            total_pending=10,
            completed_so_far=2,
            elapsed_seconds=90,
            estimated_remaining_seconds=360,
            current_task="Add cache",
            current_attempt=2,
            stage="verify",
        )

        line = format_heartbeat(snapshot)

        assert line == "⏳ [2/10] · Working on: Add cache (attempt 2) · Executing · elapsed 1m 30s · ETA 6m"

    def test_stage_labels(self) -> None:
        assert format_stage("discovery", "Checking") == "[Pre-flight] Checking"
        assert format_stage("parse") == "[Planning]"
        assert format_stage("custom", "x") == "[custom] x"

    def test_loop_events_read_differently(self) -> None:
        """An auto-recovered loop is distinguishable from a final failure."""
        recovered = LoopEvent("auto-recovered", "Add cache", "Bash", 3, "", 0.0)
        final = LoopEvent("final-failure", "Add cache", "Bash", 6, "gave up", 0.0)

        assert format_loop_event(recovered).startswith("🔁 Loop auto-recovered")
        assert format_loop_event(final).startswith("🛑 Final loop failure")

    def test_task_end(self) -> None:
        passed = Attempt(task_key="k", task_text="Add cache", attempt=1, status="passed", duration_seconds=5)
        failed = Attempt(
            task_key="k", task_text="Add cache", attempt=1, status="failed", duration_seconds=5, reason="tests"
        )

        assert format_task_end(passed).startswith("✅ Add cache")
        assert format_task_end(failed).endswith(": tests")

    def test_summary_titles(self) -> None:
        """Stopped, failed and completed runs get different titles."""
        assert format_run_summary(make_result()).startswith("🤖 Anton Complete")
        assert format_run_summary(make_result(stop_reason="abort", final_state=RunState.IDLE)).startswith(
            "⏹️  Anton Stopped"
        )
        failed = make_result(stop_reason="fatal_error", final_state=RunState.FAILED, error="git broke")
        assert format_run_summary(failed).startswith("💥 Anton Failed: git broke")

    def test_summary_lists_skips(self) -> None:
        result = make_result(skipped=[SkippedTask("k", "Add cache", "Blocked: no creds")])

        summary = format_run_summary(result)

        assert "1 tasks skipped" in summary
        assert "Add cache: Blocked: no creds" in summary
        assert "💾 3 commits" in summary

    def test_dry_run_plan(self) -> None:
        task_file = parse_task_string("- [x] Done\n- [ ] One\n  - [ ] Two\n")

        plan = format_dry_run_plan(task_file, ("pytest -q",))

        assert "3 total tasks" in plan
        assert "2 pending tasks" in plan
        assert "Check: pytest -q" in plan
        assert "  • One" in plan
        assert "    • Two" in plan


class TestProgressReporter:
    """Tests for ProgressReporter delivery."""

    @pytest.mark.asyncio
    async def test_delivers_in_order_to_sync_and_async_callbacks(self) -> None:
        received: list[str] = []
        received_async: list[str] = []

        async def async_callback(event: ProgressEvent) -> None:
            received_async.append(event.message)

        reporter = ProgressReporter([lambda e: received.append(e.message), async_callback])
        reporter.start()
        for i in range(3):
            reporter.publish(ProgressEvent(kind="stage", message=f"m{i}"))
        await reporter.stop()

        assert received == ["m0", "m1", "m2"]
        assert received_async == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self) -> None:
        """A raising callback does not stop delivery to others."""
        received: list[str] = []

        def broken(event: ProgressEvent) -> None:
            raise RuntimeError("consumer crashed")

        reporter = ProgressReporter([broken, lambda e: received.append(e.message)])
        reporter.start()
        reporter.publish(ProgressEvent(kind="stage", message="hello"))
        await reporter.stop()

        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self) -> None:
        reporter = ProgressReporter([], maxsize=2)

        for i in range(5):
            reporter.publish(ProgressEvent(kind="stage", message=str(i)))

        assert reporter.dropped == 3

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        await ProgressReporter().stop()

    def test_console_callback(self) -> None:
        printer = MagicMock()

        console_callback(printer)(ProgressEvent(kind="stage", message="hi"))

        printer.assert_called_once_with("hi")


class TestHeartbeat:
    """Tests for Heartbeat."""

    @pytest.mark.asyncio
    async def test_publishes_snapshot_and_ticks(self) -> None:
        received: list[ProgressEvent] = []
        reporter = ProgressReporter([received.append])
        reporter.start()
        on_tick = MagicMock()
        heartbeat = Heartbeat(
            0.01, lambda: ProgressSnapshot(total_pending=3, completed_so_far=1), reporter, on_tick=on_tick
        )

        heartbeat.start()
        await asyncio.sleep(0.05)
        await heartbeat.stop()
        await reporter.stop()

        assert on_tick.called
        assert received
        assert all(e.kind == "heartbeat" for e in received)
        assert received[0].message.startswith("⏳ [1/3]")

    @pytest.mark.asyncio
    async def test_disabled_events_still_tick(self) -> None:
        received: list[ProgressEvent] = []
        reporter = ProgressReporter([received.append])
        reporter.start()
        on_tick = MagicMock()
        heartbeat = Heartbeat(
            0.01, lambda: ProgressSnapshot(total_pending=1), reporter, enabled=False, on_tick=on_tick
        )

        heartbeat.start()
        await asyncio.sleep(0.05)
        await heartbeat.stop()
        await reporter.stop()

        assert on_tick.called
        assert received == []
