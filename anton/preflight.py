"""Two-phase mode: discovery and requirements review.

Before a task is implemented, a restricted discovery session checks whether
the task is already done and, if not, writes an implementation plan into
the plan directory. An optional requirements review then tightens that plan
in place. Both stages answer with a small JSON object:

    {"status": "complete", "filename": ""}
    {"status": "incomplete", "filename": "/abs/path/to/plan.md"}
    {"status": "ready", "filename": "/abs/path/to/plan.md"}
"""

import asyncio
import hashlib
import json
import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from anton.config import RunConfig
from anton.errors import MaxIterationsError, PreflightError, SessionError
from anton.models import PreflightRecord, Task
from anton.session import (
    DEFAULT_PREFLIGHT_MAX_ITERATIONS,
    AgentSession,
    SessionConfig,
    SessionFactory,
    ask_with_timeout,
    build_preflight_config,
    iteration_cap,
)

logger = logging.getLogger(__name__)

# Upper bound when the iteration cap is raised after hitting it
MAX_PREFLIGHT_ITERATIONS = 1000

FORCE_DISCOVERY_DECISION_PROMPT = """STOP. You must return your discovery result NOW.

Return ONLY this JSON (no markdown, no explanation, no tool calls):
{"status":"complete","filename":""}
OR
{"status":"incomplete","filename":"<absolute-path-to-plan-file-you-created>"}

If you wrote a plan file, use that path. If task is already done, use "complete" with empty filename.
JSON only. Nothing else."""

FORCE_REVIEW_DECISION_PROMPT = """STOP. You must return your review result NOW.

Return ONLY this JSON (no markdown, no explanation, no tool calls):
{"status":"ready","filename":"<absolute-path-to-plan-file>"}

Use the plan file path you were reviewing.
JSON only. Nothing else."""


@dataclass
class DiscoveryResult:
    status: Literal["complete", "incomplete"]
    filename: str


@dataclass
class PreflightOutcome:
    """Result of running the preflight stages for one task.

    Attributes:
        status: complete (task already done), planned (plan file ready) or failed
        plan_file: Absolute path of the vetted plan file when planned
        reason: Failure reason when failed
        timed_out: Whether the final failure was a timeout
    """

    status: Literal["complete", "planned", "failed"]
    plan_file: str | None = None
    reason: str | None = None
    timed_out: bool = False


def make_plan_filename(plan_dir: Path) -> Path:
    """Unique plan file path: <epoch-ms>-<sha1 prefix>.md inside plan_dir."""
    now_ms = int(time.time() * 1000)
    digest = hashlib.sha1(f"{now_ms}-{uuid.uuid4()}".encode()).hexdigest()[:12]
    return plan_dir / f"{now_ms}-{digest}.md"


def is_within_plan_dir(candidate: str | Path, plan_dir: Path) -> bool:
    target = Path(candidate).resolve()
    root = plan_dir.resolve()
    return target != root and root in target.parents


def extract_json_object(raw: str) -> str:
    """Locate a JSON object in a reply: bare, fenced, or first-to-last brace.

    Raises:
        PreflightError: If no object-like span is present
    """
    text = raw.strip()
    if text.startswith("{") and text.endswith("}"):
        return text

    fence = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL | re.IGNORECASE)
    if fence:
        body = fence.group(1).strip()
        if body.startswith("{") and body.endswith("}"):
            return body

    first = text.find("{")
    last = text.rfind("}")
    if first >= 0 and last > first:
        return text[first : last + 1]
    raise PreflightError("preflight reply contains no JSON object")


def _load_object(raw: str) -> dict:
    try:
        parsed = json.loads(extract_json_object(raw))
    except json.JSONDecodeError as e:
        raise PreflightError(f"preflight reply is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise PreflightError("preflight reply is not a JSON object")
    return parsed


def _checked_plan_path(filename: object, plan_dir: Path, stage: str) -> str:
    if not isinstance(filename, str) or not filename:
        raise PreflightError(f"{stage} returned an invalid filename")
    path = Path(filename)
    if not path.is_absolute():
        raise PreflightError(f"{stage} filename is not absolute: {filename}")
    if not is_within_plan_dir(path, plan_dir):
        raise PreflightError(f"{stage} filename is outside the plan directory: {filename}")
    return str(path.resolve())


def parse_discovery_result(raw: str, plan_dir: Path) -> DiscoveryResult:
    """Parse and validate a discovery reply.

    Raises:
        PreflightError: If the reply is malformed or names a file outside plan_dir
    """
    parsed = _load_object(raw)
    status = parsed.get("status")
    if status not in ("complete", "incomplete"):
        raise PreflightError(f"discovery returned invalid status: {status!r}")
    if not isinstance(parsed.get("filename"), str):
        raise PreflightError("discovery returned an invalid filename")
    if status == "complete":
        return DiscoveryResult(status="complete", filename="")
    return DiscoveryResult(
        status="incomplete",
        filename=_checked_plan_path(parsed["filename"], plan_dir, "discovery"),
    )


def parse_review_result(raw: str, plan_dir: Path) -> str:
    """Parse a requirements-review reply.

    Returns:
        Absolute path of the reviewed plan file

    Raises:
        PreflightError: If the reply is malformed or names a file outside plan_dir
    """
    parsed = _load_object(raw)
    if parsed.get("status") != "ready":
        raise PreflightError(f"review returned invalid status: {parsed.get('status')!r}")
    return _checked_plan_path(parsed.get("filename"), plan_dir, "review")


def plan_file_problem(path: str | Path) -> str | None:
    """Describe what is wrong with a plan file, or None when it is usable."""
    path = Path(path)
    if not path.exists():
        return "missing file"
    if not path.is_file():
        return "not a regular file"
    if not path.read_text(encoding="utf-8", errors="replace").strip():
        return "empty file"
    return None


def ensure_plan_file(path: str | Path, task: Task, source: str) -> bool:
    """Write a fallback plan when the stage named a file but never wrote it.

    Returns:
        True if a fallback plan was written, False if a usable file existed
    """
    path = Path(path)
    if plan_file_problem(path) is None:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "\n".join(
        [
            "# Anton preflight plan (auto-generated fallback)",
            "",
            f"> Generated because {source} did not write a valid plan file.",
            "",
            "## Task (verbatim)",
            task.text,
            "",
            "## Missing",
            "- Discovery/review did not persist structured details to disk.",
            "",
            "## Recommendation",
            "- Keep implementation scoped to this task only.",
            "",
            "## Likely files",
            "- TBD",
            "",
        ]
    )
    path.write_text(body, encoding="utf-8")
    return True


def build_discovery_prompt(
    task: Task,
    task_file_path: str,
    project_dir: Path,
    plan_dir: Path,
    plan_path: Path,
    retry_hint: str | None = None,
) -> str:
    """Prompt for the discovery stage."""
    phase = " > ".join(task.phase_path) or "N/A"
    retry = ""
    if retry_hint:
        retry = (
            f"\nRETRY CONTEXT: {retry_hint}\n"
            "If prior attempts failed, keep output minimal, write/update only the plan file above, "
            "and return valid JSON.\n"
        )
    return f"""You are running PRE-FLIGHT DISCOVERY for an autonomous coding orchestrator.

CRITICAL: DO NOT COMPLETE THE TASK. DO NOT IMPLEMENT ANY CODE CHANGES.
Your only goals are:
1) Verify whether the task is already fully complete in the current codebase.
2) If incomplete, determine what likely needs to change and which files are likely involved.

Task metadata:
- Task file: {task_file_path}
- Task line: {task.line}
- Phase: {phase}
- Project dir: {project_dir}

FULL TASK (VERBATIM):
{task.text}

If task is already complete:
- Return EXACT JSON only:
{{"status":"complete","filename":""}}

If task is incomplete:
- Create/update this markdown file path exactly: {plan_path}
- You MUST NOT modify any files outside: {plan_dir}
- The markdown MUST include:
  - The FULL TASK (VERBATIM)
  - What is missing
  - Concrete implementation recommendation
  - Likely files to modify/create (or explicitly state none)
- Then return EXACT JSON only:
{{"status":"incomplete","filename":"{plan_path}"}}
{retry}
Return JSON only. No markdown fences. No commentary."""


def build_review_prompt(plan_path: str) -> str:
    """Prompt for the requirements-review stage."""
    return f"""Please review this plan file and perform a strict peer review:
{plan_path}

Treat it as written by an entry-level developer who may miss edge cases and fail to reuse existing code.
Be thorough and precise. Update the SAME file in-place to improve correctness, reuse, and clarity.
Remove ambiguity and tighten implementation steps.

After review, return EXACT JSON only:
{{"status":"ready","filename":"{plan_path}"}}

Return JSON only. No markdown fences. No commentary."""


def build_rewrite_prompt(plan_path: str, problem: str) -> str:
    """Ask the stage to actually write the plan file it named."""
    return f"""The plan file you reported is not usable ({problem}):
{plan_path}

Write the complete plan to that exact path now, then return EXACT JSON only:
{{"status":"incomplete","filename":"{plan_path}"}}"""


StageCallback = Callable[[str, str], None]


class Preflight:
    """Runs discovery and the optional requirements review for tasks.

    Attributes:
        records: One PreflightRecord per stage attempt, in order
    """

    def __init__(
        self,
        config: RunConfig,
        session_factory: SessionFactory,
        base_session: SessionConfig,
        on_stage: StageCallback | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.base_session = base_session
        self.on_stage = on_stage
        self.records: list[PreflightRecord] = []
        self._active: AgentSession | None = None
        self.cancelled = False

    def cancel(self) -> None:
        """Cancel the in-flight stage turn and start no further stage sessions."""
        self.cancelled = True
        if self._active is not None:
            self._active.cancel()

    async def run(self, task: Task, task_file_path: str) -> PreflightOutcome:
        """Run discovery, then review when enabled.

        Args:
            task: Task about to be implemented
            task_file_path: Path of the task document (for the prompt)

        Returns:
            PreflightOutcome describing whether and how to continue
        """
        plan_dir = self.config.plan_root
        plan_dir.mkdir(parents=True, exist_ok=True)
        plan_path = make_plan_filename(plan_dir)

        outcome = await self._discover(task, task_file_path, plan_path)
        if outcome.status != "planned" or not self.config.preflight_requirements_review:
            return outcome
        assert outcome.plan_file is not None
        return await self._review(task, outcome.plan_file)

    def _stage(self, detail: str) -> None:
        logger.info(detail)
        if self.on_stage is not None:
            self.on_stage("preflight", detail)

    def _record(
        self, task: Task, stage: str, started: float, status: str, **kwargs
    ) -> None:
        self.records.append(
            PreflightRecord(
                task_key=task.key,
                stage=stage,  # type: ignore[arg-type]
                duration_seconds=time.monotonic() - started,
                status=status,  # type: ignore[arg-type]
                **kwargs,
            )
        )

    async def _open(self, timeout_sec: int, cap: int) -> AgentSession:
        session = await self.session_factory(
            build_preflight_config(self.base_session, self.config, timeout_sec, cap)
        )
        self._active = session
        return session

    async def _close(self, session: AgentSession) -> None:
        self._active = None
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Failed to close preflight session: {e}")

    def _initial_cap(self) -> int:
        return iteration_cap(self.config.preflight_max_iterations, DEFAULT_PREFLIGHT_MAX_ITERATIONS)

    async def _discover(self, task: Task, task_file_path: str, plan_path: Path) -> PreflightOutcome:
        cfg = self.config
        timeout = cfg.discovery_timeout_sec
        cap = self._initial_cap()
        tries = max(0, cfg.preflight_max_retries) + 1
        retry_hint: str | None = None
        last_error = "discovery failed"
        timed_out = False

        for attempt in range(tries):
            if self.cancelled:
                return PreflightOutcome(status="failed", reason="stopped")
            self._stage(f"Discovery ({attempt + 1}/{tries}): {task.text}")
            started = time.monotonic()
            session = await self._open(timeout, cap)
            try:
                prompt = build_discovery_prompt(
                    task, task_file_path, cfg.project_dir, cfg.plan_root, plan_path, retry_hint
                )
                reply = await ask_with_timeout(session, prompt, timeout)
                try:
                    result = parse_discovery_result(reply.text, cfg.plan_root)
                except PreflightError as e:
                    self._stage(f"Discovery reply malformed ({e}); forcing a decision")
                    reply = await ask_with_timeout(session, FORCE_DISCOVERY_DECISION_PROMPT, timeout)
                    result = parse_discovery_result(reply.text, cfg.plan_root)

                if result.status == "complete":
                    self._record(task, "discovery", started, "complete")
                    self._stage(f"Discovery confirmed already complete: {task.text}")
                    return PreflightOutcome(status="complete")

                plan_file = result.filename
                problem = plan_file_problem(plan_file)
                if problem is not None:
                    self._stage(f"Plan file unusable ({problem}); asking for a rewrite")
                    reply = await ask_with_timeout(
                        session, build_rewrite_prompt(plan_file, problem), timeout
                    )
                    try:
                        plan_file = parse_discovery_result(reply.text, cfg.plan_root).filename or plan_file
                    except PreflightError:
                        pass
                    if ensure_plan_file(plan_file, task, "discovery"):
                        self._stage(f"Created fallback plan file: {plan_file}")

                self._record(task, "discovery", started, "incomplete", filename=plan_file)
                self._stage(f"Discovery plan file: {plan_file}")
                return PreflightOutcome(status="planned", plan_file=plan_file)

            except PreflightError as e:
                # Still no usable answer after the forced decision: continue on a fallback plan
                self._record(task, "discovery", started, "error", error=str(e))
                ensure_plan_file(plan_path, task, "discovery")
                self._stage(f"Discovery returned invalid output ({e}); continuing with {plan_path}")
                return PreflightOutcome(status="planned", plan_file=str(plan_path))
            except asyncio.TimeoutError:
                last_error = f"Discovery timed out after {timeout}s"
                timed_out = True
                self._record(task, "discovery", started, "timeout", error=last_error)
            except MaxIterationsError as e:
                last_error = str(e)
                timed_out = False
                self._record(task, "discovery", started, "error", error=last_error)
                cap = min(max(cap * 2, cap + 2), MAX_PREFLIGHT_ITERATIONS)
            except SessionError as e:
                last_error = str(e)
                timed_out = False
                self._record(task, "discovery", started, "error", error=last_error)
            finally:
                await self._close(session)

            retry_hint = (
                f"Previous discovery attempt failed: {last_error[:180]}. "
                f"Do not edit source files. Only update {plan_path} and return strict JSON."
            )
            self._stage(f"Discovery failed ({attempt + 1}/{tries}): {last_error}")

        return PreflightOutcome(status="failed", reason=last_error, timed_out=timed_out)

    async def _review(self, task: Task, plan_file: str) -> PreflightOutcome:
        cfg = self.config
        timeout = cfg.review_timeout_sec
        cap = self._initial_cap()
        tries = max(0, cfg.preflight_max_retries) + 1
        last_error = "requirements review failed"
        timed_out = False

        for attempt in range(tries):
            if self.cancelled:
                return PreflightOutcome(status="failed", reason="stopped")
            self._stage(f"Requirements review ({attempt + 1}/{tries}): {plan_file}")
            started = time.monotonic()
            session = await self._open(timeout, cap)
            try:
                reply = await ask_with_timeout(session, build_review_prompt(plan_file), timeout)
                try:
                    reviewed = parse_review_result(reply.text, cfg.plan_root)
                except PreflightError as e:
                    self._stage(f"Review reply malformed ({e}); forcing a decision")
                    reply = await ask_with_timeout(session, FORCE_REVIEW_DECISION_PROMPT, timeout)
                    reviewed = parse_review_result(reply.text, cfg.plan_root)

                ensure_plan_file(reviewed, task, "requirements-review")
                self._record(task, "requirements-review", started, "ready", filename=reviewed)
                self._stage(f"Requirements review ready: {reviewed}")
                return PreflightOutcome(status="planned", plan_file=reviewed)

            except PreflightError as e:
                # The discovery plan is still usable
                self._record(task, "requirements-review", started, "error", error=str(e))
                self._stage(f"Review returned invalid output ({e}); keeping {plan_file}")
                return PreflightOutcome(status="planned", plan_file=plan_file)
            except asyncio.TimeoutError:
                last_error = f"Requirements review timed out after {timeout}s"
                timed_out = True
                self._record(task, "requirements-review", started, "timeout", error=last_error)
            except MaxIterationsError as e:
                last_error = str(e)
                timed_out = False
                self._record(task, "requirements-review", started, "error", error=last_error)
                cap = min(max(cap * 2, cap + 2), MAX_PREFLIGHT_ITERATIONS)
            except SessionError as e:
                last_error = str(e)
                timed_out = False
                self._record(task, "requirements-review", started, "error", error=last_error)
            finally:
                await self._close(session)

            self._stage(f"Requirements review failed ({attempt + 1}/{tries}): {last_error}")

        return PreflightOutcome(status="failed", reason=last_error, timed_out=timed_out)
