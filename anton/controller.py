"""Run controller: drives an agent through a task document.

One run walks the pending tasks of a checklist in document order. For each
task it optionally runs discovery, builds a prompt, dispatches it to a fresh
agent session with a timeout, parses the structured result and applies the
retry, decompose, skip and rollback policy. The git workspace is committed
after each accepted task and restored after each failed attempt.

The controller owns the run ledger and progress snapshot; the lock file is
the only state shared with other processes.
"""

import asyncio
import dataclasses
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from opentelemetry import trace

from anton import telemetry
from anton.config import RunConfig
from anton.errors import (
    AntonError,
    MaxIterationsError,
    SessionError,
    TaskFileError,
    ToolLoopError,
)
from anton.git import GitWorkspace
from anton.lock import LockManager
from anton.models import (
    AgentReply,
    AgentResult,
    Attempt,
    LoopEvent,
    ProgressSnapshot,
    RunResult,
    RunState,
    SkippedTask,
    StopReason,
    Task,
    TaskFile,
    VerificationResult,
)
from anton.preflight import Preflight
from anton.prompt import KnowledgeStore, PromptContext, build_prompt
from anton.reporter import (
    Heartbeat,
    ProgressEvent,
    ProgressReporter,
    estimate_remaining,
    format_loop_event,
    format_run_summary,
    format_stage,
    format_task_end,
    format_task_skip,
    format_task_start,
)
from anton.result_parser import FORMAT_RECOVERY_PROMPT, is_protocol_failure, parse_result
from anton.session import (
    AgentSession,
    SessionFactory,
    ask_with_timeout,
    base_session_config,
    build_session_config,
    build_verify_config,
)
from anton.task_parser import parse_task_file
from anton.verifier import check_scope_guard, review_diff, run_check_commands, summarize

logger = logging.getLogger(__name__)

FIX_PROMPT = """An automated review rejected your change:
{reason}

Fix the issues in place. Do not start over. When finished, emit the <anton-result> block again."""


def normalize_reason(reason: str | None) -> str:
    """Failure reason reduced for streak comparison: case, digits and spacing ignored."""
    text = (reason or "unknown").lower()
    text = re.sub(r"\d+", "#", text)
    return re.sub(r"\s+", " ", text).strip()


def commit_message(task: Task) -> str:
    text = task.text if len(task.text) <= 72 else task.text[:69] + "..."
    return f"anton: {text}"


@dataclass
class RunStatus:
    """Read-only view of the controller for status queries."""

    state: RunState
    snapshot: ProgressSnapshot | None
    last_loop_event: LoopEvent | None
    task_file: str | None = None


class AntonController:
    """Runs one task document at a time.

    Usage:
        controller = AntonController(config, create_claude_session)
        result = await controller.start()

    stop() may be called from another task (e.g. a signal handler); the run
    finishes its current version-control work and returns with stop reason
    "abort".
    """

    def __init__(
        self,
        config: RunConfig,
        session_factory: SessionFactory,
        knowledge_store: KnowledgeStore | None = None,
        git: GitWorkspace | None = None,
        lock_manager: LockManager | None = None,
        reporter: ProgressReporter | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            config: Run configuration
            session_factory: Creates an AgentSession from a SessionConfig
            knowledge_store: Optional store searched for prompt context
            git: Git workspace (defaults to config.project_dir)
            lock_manager: Lock manager (defaults to config.state_dir)
            reporter: Progress reporter (defaults to one without callbacks)
            tracer: OpenTelemetry tracer (uses the global provider if None)
        """
        self.config = config
        self.session_factory = session_factory
        self.knowledge_store = knowledge_store
        self.git = git or GitWorkspace(config.project_dir)
        self.locks = lock_manager or LockManager(config.state_dir)
        self.reporter = reporter or ProgressReporter()
        self.tracer = tracer or trace.get_tracer("anton")
        self.state = RunState.IDLE

        self._abort = False
        self._active_session: AgentSession | None = None
        self._preflight: Preflight | None = None
        self._snapshot: ProgressSnapshot | None = None
        self._last_loop_event: LoopEvent | None = None
        self._task_file_path: Path | None = None
        self._reset_ledger()

    # ------------------------------------------------------------------
    # Control surface

    def status(self) -> RunStatus:
        snapshot = self._current_snapshot() if self._snapshot is not None else None
        return RunStatus(
            state=self.state,
            snapshot=snapshot,
            last_loop_event=self._last_loop_event,
            task_file=str(self._task_file_path) if self._task_file_path else None,
        )

    def stop(self) -> None:
        """Request a cooperative stop. No-op unless a run is active."""
        if self.state != RunState.RUNNING:
            return
        logger.info("Stop requested; finishing current work")
        self.state = RunState.STOPPING
        self._abort = True
        if self._active_session is not None:
            self._active_session.cancel()
        if self._preflight is not None:
            self._preflight.cancel()

    async def start(self, task_file: str | Path | None = None) -> RunResult:
        """Run every pending task in the document.

        Args:
            task_file: Task document (defaults to config.task_file)

        Returns:
            RunResult describing what happened

        Raises:
            DirtyWorkingTreeError: If the working tree has uncommitted changes
            LockContentionError: If another run holds the lock
            TaskFileError: If the task document cannot be read
            AntonError: If this controller is already running
        """
        if self.state in (RunState.RUNNING, RunState.STOPPING):
            raise AntonError("A run is already active in this controller")

        cfg = self.config
        path = Path(task_file).resolve() if task_file else cfg.task_file
        self._task_file_path = path

        # Clean-tree check happens before the lock so a dirty tree costs nothing
        self.git.ensure_clean(ignore=[cfg.plan_root])
        handle = self.locks.acquire(str(path), str(cfg.project_dir))
        try:
            initial = parse_task_file(path)
        except TaskFileError:
            self.locks.release(handle)
            raise

        self._reset_ledger()
        self._abort = False
        self.state = RunState.RUNNING
        started = time.monotonic()
        self._started = started
        self._initial_tasks = list(initial.pending)
        self._initial_keys = [t.key for t in self._initial_tasks]
        self._pre_completed = len(initial.completed)
        self._snapshot = ProgressSnapshot(total_pending=len(self._initial_keys))
        self._preflight = Preflight(
            cfg, self.session_factory, base_session_config(cfg), on_stage=self._on_preflight_stage
        )

        self.reporter.start()
        heartbeat = Heartbeat(
            cfg.heartbeat_interval_sec,
            self._current_snapshot,
            self.reporter,
            enabled=cfg.progress_events,
            on_tick=lambda: self.locks.touch(handle),
        )
        heartbeat.start()

        stop_reason: StopReason = "fatal_error"
        error: str | None = None
        with self.tracer.start_as_current_span("anton.run") as run_span:
            run_span.set_attribute("anton.task_file", str(path))
            run_span.set_attribute("anton.pending", len(self._initial_keys))
            self._publish(
                "run_started",
                f"🤖 Anton started: {len(self._initial_keys)} pending of {initial.total_count} tasks",
            )
            try:
                stop_reason = await self._run(path, initial)
                error = self._error
            except AntonError as e:
                logger.error(f"Run halted: {e}")
                stop_reason = "fatal_error"
                error = str(e)
            except BaseException:
                self.state = RunState.FAILED
                await self.reporter.stop()
                raise
            finally:
                await heartbeat.stop()
                self.locks.release(handle)

            if stop_reason == "abort":
                final_state = RunState.IDLE
            elif stop_reason in ("fatal_error", "identical_failures"):
                final_state = RunState.FAILED
            else:
                final_state = RunState.COMPLETED
            run_span.set_attribute("anton.stop_reason", stop_reason)

            result = self._build_result(initial, stop_reason, final_state, error, started)
            self._publish("run_finished", format_run_summary(result), data={"result": result})
            await self.reporter.stop()

        self.state = final_state
        self._preflight = None
        return result

    # ------------------------------------------------------------------
    # Main loop

    async def _run(self, path: Path, initial: TaskFile) -> StopReason:
        cfg = self.config
        if initial.total_count > cfg.max_total_tasks:
            logger.warning(
                f"Task document has {initial.total_count} tasks (limit {cfg.max_total_tasks})"
            )
            return "max_tasks_exceeded"

        while True:
            if self._abort:
                return "abort"
            if time.monotonic() - self._started >= cfg.total_timeout_sec:
                logger.warning("Total run timeout reached; not starting another task")
                return "total_timeout"

            self._set_stage("parse")
            try:
                task_file = parse_task_file(path)
            except TaskFileError as e:
                logger.warning(f"Task document unreadable mid-run ({e}); using the copy read at start")
                task_file = initial
            task = self._select()
            if task is None:
                return "all_done"

            attempt_no = self._attempt_counts.get(task.key, 0) + 1
            self._attempt_counts[task.key] = attempt_no
            assert self._snapshot is not None
            self._snapshot.current_task = task.text
            self._snapshot.current_attempt = attempt_no
            self._publish("task_started", format_task_start(task, attempt_no, self._current_snapshot()))

            with self.tracer.start_as_current_span("anton.task") as task_span:
                task_span.set_attribute("task.key", task.key)
                task_span.set_attribute("task.text", task.text)
                task_span.set_attribute("task.attempt", attempt_no)
                attempt = await self._attempt(task, task_file, attempt_no)
                task_span.set_attribute("task.status", attempt.status)

            self._attempts.append(attempt)
            self._record_metrics(attempt)
            self._publish(
                "task_finished",
                format_task_end(attempt),
                data={"task": task.text, "status": attempt.status, "reason": attempt.reason},
            )

            stop = self._apply_policy(task, attempt)
            self._snapshot.current_task = None
            self._snapshot.current_attempt = None
            self._snapshot.stage = None
            if stop is not None:
                return stop

    def _select(self) -> Task | None:
        """Next task: document pre-order, decomposed subtasks first.

        Candidates are the pending tasks read at start; edits to the document
        during the run neither add nor drop tasks.
        """
        for task in self._initial_tasks:
            if task.key in self._resolved:
                continue
            leaf = self._first_open(task)
            if leaf is not None:
                return leaf
        return None

    def _first_open(self, task: Task) -> Task | None:
        subtasks = self._subtasks.get(task.key)
        if not subtasks:
            return task
        for sub in subtasks:
            if sub.key in self._resolved:
                continue
            leaf = self._first_open(sub)
            if leaf is not None:
                return leaf
        return None

    # ------------------------------------------------------------------
    # One attempt

    async def _attempt(self, task: Task, task_file: TaskFile, attempt_no: int) -> Attempt:
        cfg = self.config
        started = time.monotonic()
        base = self.git.head()
        untracked_before = self.git.untracked_files()

        def finish(status: str, reason: str | None = None, **kwargs) -> Attempt:
            if status not in ("passed", "decomposed") and cfg.rollback_on_fail:
                self._rollback(base, untracked_before)
            return Attempt(
                task_key=task.key,
                task_text=task.text,
                attempt=attempt_no,
                status=status,  # type: ignore[arg-type]
                duration_seconds=time.monotonic() - started,
                reason=reason,
                **kwargs,
            )

        if cfg.preflight_enabled and task.key not in self._plans:
            assert self._preflight is not None
            self._set_stage("discovery")
            with self.tracer.start_as_current_span("anton.preflight") as span:
                span.set_attribute("task.key", task.key)
                outcome = await self._preflight.run(task, task_file.file_path)
                span.set_attribute("preflight.status", outcome.status)
            if outcome.status == "complete":
                self._auto_completed.add(task.key)
                return finish("passed", "Already complete (discovery)")
            if outcome.status == "failed":
                return finish("timeout" if outcome.timed_out else "error", outcome.reason)
            self._plans[task.key] = outcome.plan_file

        self._set_stage("implementation")
        prompt = await build_prompt(
            PromptContext(
                task=task,
                task_file=task_file,
                config=cfg,
                retry_reason=self._last_reason.get(task.key),
                knowledge_store=self.knowledge_store,
                plan_file=self._plans.get(task.key),
                completed_count=self._pre_completed + self._initial_done(),
            )
        )
        session = await self.session_factory(
            build_session_config(base_session_config(cfg), cfg)
        )
        self._active_session = session
        loop_event: LoopEvent | None = None
        try:
            try:
                reply = await ask_with_timeout(session, prompt, cfg.task_timeout_sec)
            except asyncio.TimeoutError:
                return finish("timeout", f"Task timed out after {cfg.task_timeout_sec}s")
            except ToolLoopError as e:
                loop_event = self._loop_event("final-failure", task, e.tool_name, e.count, str(e))
                return finish("loop", str(e), loop_event=loop_event)
            except MaxIterationsError as e:
                return finish("error", str(e))
            except SessionError as e:
                return finish("error", f"Session error: {e}")

            self._account(reply)
            if reply.loop_signals:
                last = reply.loop_signals[-1]
                loop_event = self._loop_event(
                    "auto-recovered", task, last.tool_name, last.count, last.message
                )

            result = parse_result(reply.text)
            if result.status == "blocked" and is_protocol_failure(result.reason) and not self._abort:
                result = await self._recover_format(session, result)
            if result.status == "blocked" and is_protocol_failure(result.reason):
                # Unreadable output is retried, never skipped as blocked
                return finish(
                    "failed",
                    f"structured-result-parse-failure: {result.reason}",
                    loop_event=loop_event,
                )

            if result.status == "decompose":
                if cfg.decompose and task.depth < cfg.max_decompose_depth and result.subtasks:
                    return finish(
                        "decomposed",
                        f"Decomposed into {len(result.subtasks)} subtasks",
                        subtasks=list(result.subtasks),
                        loop_event=loop_event,
                    )
                if not cfg.decompose:
                    why = "decomposition is disabled"
                elif not result.subtasks:
                    why = "no subtasks given"
                else:
                    why = f"maximum decomposition depth {cfg.max_decompose_depth} reached"
                result = AgentResult(status="blocked", reason=f"Cannot decompose: {why}")

            if result.status == "blocked":
                return finish(
                    "blocked", result.reason or "Agent reported blocked", loop_event=loop_event
                )

            verification, commit_hash = await self._accept(task, session, base, untracked_before)
            if not verification.passed:
                return finish(
                    "failed",
                    verification.summary,
                    verification=verification,
                    loop_event=loop_event,
                )
            return finish(
                "passed",
                None,
                verification=verification,
                commit_hash=commit_hash or None,
                loop_event=loop_event,
            )
        finally:
            self._active_session = None
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Failed to close session: {e}")

    async def _recover_format(self, session: AgentSession, result: AgentResult) -> AgentResult:
        """Ask once, without tools, for a well-formed result block."""
        self._set_stage("implementation", "Agent omitted structured result; requesting format-only recovery")
        try:
            reply = await ask_with_timeout(session, FORMAT_RECOVERY_PROMPT, self.config.task_timeout_sec)
        except (asyncio.TimeoutError, SessionError) as e:
            logger.warning(f"Format recovery failed: {e}")
            return result
        self._account(reply)
        return parse_result(reply.text)

    async def _accept(
        self,
        task: Task,
        session: AgentSession,
        base: str | None,
        untracked_before: list[str],
    ) -> tuple[VerificationResult, str]:
        """Verify and commit a done task.

        Returns:
            (verification, commit short hash or "")
        """
        cfg = self.config
        self._set_stage("verify")
        verification = VerificationResult(passed=True, summary="")

        changed = self._changed_files()
        scope_ok, scope_reason = check_scope_guard(task.text, changed, cfg.scope_guard)
        verification.scope_ok = scope_ok
        if not scope_ok:
            verification.passed = False
            verification.summary = summarize(verification, scope_reason)
            return verification, ""

        if cfg.verify_commands:
            checks_ok, output = await asyncio.to_thread(
                run_check_commands,
                cfg.verify_commands,
                cfg.project_dir,
                cfg.verify_command_timeout_sec,
            )
            verification.checks_ok = checks_ok
            verification.command_output = output or None
            if not checks_ok:
                verification.passed = False
                verification.summary = summarize(verification, None)
                return verification, ""

        commit_hash = ""
        if cfg.auto_commit:
            self._set_stage("commit")
            commit_hash = self.git.commit_all(commit_message(task))
            if commit_hash:
                self._commits += 1

        if cfg.verify_ai:
            self._set_stage("verify", "AI review")
            ai_ok, reason = await self._review(task, base, bool(commit_hash))
            fix_turns = 0
            while not ai_ok and fix_turns < cfg.verify_fix_turns and not self._abort:
                fix_turns += 1
                self._set_stage("verify", f"Review rejected; fix-up turn {fix_turns}")
                try:
                    reply = await ask_with_timeout(
                        session, FIX_PROMPT.format(reason=reason), cfg.task_timeout_sec
                    )
                except (asyncio.TimeoutError, SessionError) as e:
                    reason = f"{reason} (fix-up failed: {e})"
                    break
                self._account(reply)
                if parse_result(reply.text).status != "done":
                    break
                if cfg.auto_commit:
                    if commit_hash:
                        commit_hash = self.git.amend() or commit_hash
                    else:
                        commit_hash = self.git.commit_all(commit_message(task))
                        if commit_hash:
                            self._commits += 1
                ai_ok, reason = await self._review(task, base, bool(commit_hash))

            verification.ai_ok = ai_ok
            verification.ai_reason = reason
            if not ai_ok:
                # The rollback that follows discards the commit as well
                if commit_hash and cfg.rollback_on_fail:
                    self._commits -= 1
                verification.passed = False
                verification.summary = summarize(verification, None)
                return verification, ""

        verification.summary = summarize(verification, None)
        return verification, commit_hash

    async def _review(self, task: Task, base: str | None, committed: bool) -> tuple[bool, str]:
        cfg = self.config
        if base is not None:
            diff = self.git.diff(base)
        elif committed:
            # First commit of the repository: nothing to diff against
            diff = self.git.show_head()
        else:
            diff = self.git.diff()
        if not diff.strip():
            return True, "No changes to review"
        verifier = await self.session_factory(build_verify_config(base_session_config(cfg), cfg))
        previous = self._active_session
        self._active_session = verifier
        try:
            return await asyncio.wait_for(
                review_diff(verifier, task.text, diff), timeout=cfg.task_timeout_sec
            )
        except asyncio.TimeoutError:
            verifier.cancel()
            return False, "Verifier timed out"
        finally:
            self._active_session = previous
            try:
                await verifier.close()
            except Exception as e:
                logger.warning(f"Failed to close verify session: {e}")

    def _changed_files(self) -> list[str]:
        plan_prefix = self._plan_prefix()
        files = self.git.changed_files()
        if plan_prefix:
            files = [f for f in files if not f.startswith(plan_prefix)]
        return files

    def _plan_prefix(self) -> str:
        try:
            rel = self.config.plan_root.relative_to(self.config.project_dir)
        except ValueError:
            return ""
        return rel.as_posix().rstrip("/") + "/"

    def _rollback(self, base: str | None, untracked_before: list[str]) -> None:
        """Restore the tree to the attempt's start; plan files survive."""
        plan_prefix = self._plan_prefix()
        keep = list(untracked_before)
        if plan_prefix:
            keep.extend(f for f in self.git.untracked_files() if f.startswith(plan_prefix))
        self.git.rollback(base, keep_untracked=keep)

    # ------------------------------------------------------------------
    # Policy and ledger

    def _apply_policy(self, task: Task, attempt: Attempt) -> StopReason | None:
        """Update the ledger after an attempt; return a stop reason to end the run."""
        cfg = self.config

        if attempt.status == "passed":
            self._identical_streak = 0
            self._last_failure = None
            self._last_reason.pop(task.key, None)
            self._resolve(task, "auto" if task.key in self._auto_completed else "done")
            return None

        if attempt.status == "decomposed":
            return self._decompose(task, attempt.subtasks)

        if self._abort:
            return "abort"

        reason = attempt.reason or attempt.status
        self._last_reason[task.key] = reason
        normalized = normalize_reason(reason)
        if normalized == self._last_failure:
            self._identical_streak += 1
        else:
            self._last_failure = normalized
            self._identical_streak = 1
        if self._identical_streak > cfg.max_identical_failures:
            self._error = (
                f"{self._identical_streak} consecutive failures with the same reason: {reason}"
            )
            return "identical_failures"

        if attempt.status == "blocked":
            if cfg.skip_on_blocked:
                self._skip(task, f"Blocked: {reason}")
                return None
            self._failed += 1
            self._error = f"Task blocked: {reason}"
            return "fatal_error"

        if attempt.attempt >= max(1, cfg.max_retries):
            if cfg.skip_on_fail:
                self._skip(task, f"Failed after {attempt.attempt} attempts: {reason}")
                return None
            self._failed += 1
            self._error = f"Task failed after {attempt.attempt} attempts: {reason}"
            return "fatal_error"
        return None

    def _decompose(self, task: Task, items: list[str]) -> StopReason | None:
        total = len(self._initial_keys) + self._synthetic_count + len(items)
        if total > self.config.max_total_tasks:
            logger.warning(
                f"Decomposition would raise the task count to {total} "
                f"(limit {self.config.max_total_tasks})"
            )
            return "max_tasks_exceeded"

        subtasks = []
        for index, text in enumerate(items):
            digest = hashlib.sha256(f"{task.key}/{index}/{text}".encode()).hexdigest()[:16]
            sub = Task(
                text=text,
                line=task.line,
                phase_path=list(task.phase_path),
                depth=task.depth + 1,
                parent_key=task.key,
                explicit_key=digest,
            )
            subtasks.append(sub)
            self._subtask_parent[sub.key] = task
        self._subtasks[task.key] = subtasks
        self._synthetic_count += len(subtasks)
        assert self._snapshot is not None
        self._snapshot.total_pending += len(subtasks)
        logger.info(f"Decomposed '{task.text}' into {len(subtasks)} subtasks")
        return None

    def _resolve(self, task: Task, outcome: str) -> None:
        self._resolved[task.key] = outcome
        parent = self._subtask_parent.get(task.key)
        if parent is None or parent.key in self._resolved:
            return
        siblings = self._subtasks.get(parent.key, [])
        if not all(s.key in self._resolved for s in siblings):
            return
        if all(self._resolved[s.key] in ("done", "auto") for s in siblings):
            self._resolve(parent, "done")
        else:
            self._skip(parent, "One or more subtasks were skipped")

    def _skip(self, task: Task, reason: str) -> None:
        self._skipped.append(SkippedTask(task_key=task.key, task_text=task.text, reason=reason))
        self._publish("task_skipped", format_task_skip(task.text, reason), data={"task": task.text})
        self._resolve(task, "skipped")

    def _reset_ledger(self) -> None:
        self._resolved: dict[str, str] = {}
        self._attempt_counts: dict[str, int] = {}
        self._last_reason: dict[str, str] = {}
        self._plans: dict[str, str | None] = {}
        self._auto_completed: set[str] = set()
        self._subtasks: dict[str, list[Task]] = {}
        self._subtask_parent: dict[str, Task] = {}
        self._synthetic_count = 0
        self._skipped: list[SkippedTask] = []
        self._attempts: list[Attempt] = []
        self._initial_tasks: list[Task] = []
        self._initial_keys: list[str] = []
        self._pre_completed = 0
        self._identical_streak = 0
        self._last_failure: str | None = None
        self._iterations_used = 0
        self._commits = 0
        self._failed = 0
        self._error: str | None = None
        self._started = time.monotonic()

    # ------------------------------------------------------------------
    # Reporting

    def _current_snapshot(self) -> ProgressSnapshot:
        assert self._snapshot is not None
        completed = sum(1 for v in self._resolved.values() if v in ("done", "auto"))
        skipped = sum(1 for v in self._resolved.values() if v == "skipped")
        elapsed = time.monotonic() - self._started
        return dataclasses.replace(
            self._snapshot,
            completed_so_far=completed,
            skipped_so_far=skipped,
            iterations_used=self._iterations_used,
            elapsed_seconds=elapsed,
            estimated_remaining_seconds=estimate_remaining(
                elapsed, completed + skipped, self._snapshot.total_pending
            ),
        )

    def _initial_done(self) -> int:
        return sum(1 for k in self._initial_keys if self._resolved.get(k) in ("done", "auto"))

    def _publish(self, kind: str, message: str, data: dict | None = None) -> None:
        if kind != "run_finished":
            logger.info(message)
        snapshot = self._current_snapshot() if self._snapshot is not None else None
        self.reporter.publish(
            ProgressEvent(kind=kind, message=message, snapshot=snapshot, data=data or {})  # type: ignore[arg-type]
        )

    def _set_stage(self, stage_id: str, detail: str = "") -> None:
        if self._snapshot is not None:
            self._snapshot.stage = stage_id
        if detail:
            self._publish("stage", format_stage(stage_id, detail))
        else:
            logger.debug(format_stage(stage_id))

    def _on_preflight_stage(self, stage_id: str, detail: str) -> None:
        self._set_stage(stage_id, detail)

    def _loop_event(
        self, kind: str, task: Task, tool_name: str, count: int, message: str
    ) -> LoopEvent:
        event = LoopEvent(
            kind=kind,  # type: ignore[arg-type]
            task_text=task.text,
            tool_name=tool_name,
            count=count,
            message=message,
            at=time.time(),
        )
        self._last_loop_event = event
        self._publish("loop", format_loop_event(event), data={"loop_event": event})
        try:
            telemetry.loops_counter.add(1, {"kind": kind})
        except (AttributeError, NameError):
            # Counters not initialized - telemetry disabled
            pass
        return event

    def _account(self, reply: AgentReply) -> None:
        self._iterations_used += reply.turns
        if not reply.cost_usd:
            return
        try:
            telemetry.cost_counter.add(reply.cost_usd)
        except (AttributeError, NameError):
            pass

    def _record_metrics(self, attempt: Attempt) -> None:
        """Record metrics if counters are initialized."""
        try:
            telemetry.tasks_counter.add(1, {"status": attempt.status})
            telemetry.task_duration.record(attempt.duration_seconds, {"status": attempt.status})
            if attempt.commit_hash:
                telemetry.commits_counter.add(1)
        except (AttributeError, NameError):
            # Counters not initialized - telemetry disabled
            pass

    def _build_result(
        self,
        initial: TaskFile,
        stop_reason: StopReason,
        final_state: RunState,
        error: str | None,
        started: float,
    ) -> RunResult:
        completed = sum(1 for v in self._resolved.values() if v == "done")
        auto = sum(1 for v in self._resolved.values() if v == "auto")
        remaining = sum(1 for k in self._initial_keys if k not in self._resolved)
        return RunResult(
            total_tasks=initial.total_count,
            pre_completed=len(initial.completed),
            completed=completed,
            auto_completed=auto,
            skipped=list(self._skipped),
            failed=self._failed,
            remaining=remaining,
            attempts=list(self._attempts),
            preflight_records=list(self._preflight.records) if self._preflight else [],
            duration_seconds=time.monotonic() - started,
            total_commits=self._commits,
            stop_reason=stop_reason,
            final_state=final_state,
            error=error,
        )
