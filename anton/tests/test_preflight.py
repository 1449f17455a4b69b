"""Tests for discovery and requirements review."""

import asyncio
import dataclasses
import json
import re
from pathlib import Path

import pytest

from anton.config import RunConfig
from anton.errors import MaxIterationsError, PreflightError, SessionError
from anton.models import AgentReply, Task
from anton.preflight import (
    FORCE_DISCOVERY_DECISION_PROMPT,
    Preflight,
    ensure_plan_file,
    extract_json_object,
    is_within_plan_dir,
    make_plan_filename,
    parse_discovery_result,
    parse_review_result,
    plan_file_problem,
)
from anton.session import SessionConfig, base_session_config

PLAN_PATH_PATTERN = re.compile(r"Create/update this markdown file path exactly: (\S+)")


class ScriptedSession:
    """AgentSession fake answering from a list of replies.

    Items may be reply text, an exception to raise, or a callable taking
    the prompt and returning reply text.
    """

    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.cancelled = False
        self.closed = False

    async def ask(self, prompt: str) -> AgentReply:
        self.prompts.append(prompt)
        item = self.replies.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(prompt)
        return AgentReply(text=item)

    def cancel(self) -> None:
        self.cancelled = True

    async def close(self) -> None:
        self.closed = True


class ScriptedFactory:
    """SessionFactory handing out scripted sessions in order."""

    def __init__(self, *sessions: ScriptedSession) -> None:
        self.sessions = list(sessions)
        self.configs: list[SessionConfig] = []

    async def __call__(self, config: SessionConfig) -> ScriptedSession:
        self.configs.append(config)
        return self.sessions.pop(0)


def write_plan(prompt: str) -> str:
    """Discovery reply that writes the requested plan file."""
    path = PLAN_PATH_PATTERN.search(prompt).group(1)
    Path(path).write_text("# Plan\n\nDo the thing.\n")
    return json.dumps({"status": "incomplete", "filename": path})


def name_plan_without_writing(prompt: str) -> str:
    path = PLAN_PATH_PATTERN.search(prompt).group(1)
    return json.dumps({"status": "incomplete", "filename": path})


@pytest.fixture
def config(tmp_path: Path) -> RunConfig:
    return RunConfig(
        task_file=tmp_path / "tasks.md",
        project_dir=tmp_path,
        state_dir=tmp_path / "state",
        preflight_enabled=True,
        preflight_max_retries=2,
    )


@pytest.fixture
def task() -> Task:
    return Task(text="Add retry logic to fetcher.py", line=4, phase_path=["Phase 1"])


def make_preflight(config: RunConfig, factory: ScriptedFactory) -> Preflight:
    return Preflight(config, factory, base_session_config(config))


class TestParsing:
    """Tests for the JSON reply parsers."""

    def test_extract_bare_fenced_and_embedded(self) -> None:
        assert extract_json_object('{"a": 1}') == '{"a": 1}'
        assert extract_json_object('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert extract_json_object('Result: {"a": 1} done') == '{"a": 1}'

    def test_extract_without_object_raises(self) -> None:
        with pytest.raises(PreflightError):
            extract_json_object("no json here")

    def test_discovery_complete(self, tmp_path: Path) -> None:
        result = parse_discovery_result('{"status":"complete","filename":""}', tmp_path)

        assert result.status == "complete"

    def test_discovery_incomplete_inside_plan_dir(self, tmp_path: Path) -> None:
        plan = tmp_path / "plans" / "1-abc.md"
        raw = json.dumps({"status": "incomplete", "filename": str(plan)})

        result = parse_discovery_result(raw, tmp_path / "plans")

        assert result.filename == str(plan.resolve())

    @pytest.mark.parametrize(
        "payload",
        [
            {"status": "done", "filename": ""},
            {"status": "incomplete"},
            {"status": "incomplete", "filename": "relative/plan.md"},
            {"status": "incomplete", "filename": "/etc/passwd"},
            ["not", "an", "object"],
        ],
    )
    def test_discovery_rejects_bad_replies(self, tmp_path: Path, payload: object) -> None:
        with pytest.raises(PreflightError):
            parse_discovery_result(json.dumps(payload), tmp_path / "plans")

    def test_review_requires_ready(self, tmp_path: Path) -> None:
        plan = tmp_path / "plan.md"

        assert parse_review_result(json.dumps({"status": "ready", "filename": str(plan)}), tmp_path)
        with pytest.raises(PreflightError):
            parse_review_result(json.dumps({"status": "incomplete", "filename": str(plan)}), tmp_path)

    def test_plan_dir_itself_is_not_inside(self, tmp_path: Path) -> None:
        assert not is_within_plan_dir(tmp_path, tmp_path)
        assert is_within_plan_dir(tmp_path / "a" / "b.md", tmp_path)

    def test_plan_filename_shape(self, tmp_path: Path) -> None:
        name = make_plan_filename(tmp_path).name

        assert re.fullmatch(r"\d+-[0-9a-f]{12}\.md", name)
        assert make_plan_filename(tmp_path) != make_plan_filename(tmp_path)


class TestPlanFiles:
    """Tests for plan file validation and fallback."""

    def test_problems(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty.md"
        empty.write_text("  \n")

        assert plan_file_problem(tmp_path / "missing.md") == "missing file"
        assert plan_file_problem(tmp_path) == "not a regular file"
        assert plan_file_problem(empty) == "empty file"

    def test_fallback_written_once(self, tmp_path: Path, task: Task) -> None:
        path = tmp_path / "plans" / "p.md"

        assert ensure_plan_file(path, task, "discovery") is True
        assert task.text in path.read_text()
        assert ensure_plan_file(path, task, "discovery") is False


class TestDiscovery:
    """Tests for Preflight.run() discovery stage."""

    @pytest.mark.asyncio
    async def test_already_complete(self, config: RunConfig, task: Task) -> None:
        session = ScriptedSession(['{"status":"complete","filename":""}'])
        preflight = make_preflight(config, ScriptedFactory(session))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "complete"
        assert [r.status for r in preflight.records] == ["complete"]
        assert session.closed

    @pytest.mark.asyncio
    async def test_plan_written(self, config: RunConfig, task: Task) -> None:
        factory = ScriptedFactory(ScriptedSession([write_plan]))
        preflight = make_preflight(config, factory)

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "planned"
        assert Path(outcome.plan_file).read_text().startswith("# Plan")
        assert Path(outcome.plan_file).parent == config.plan_root.resolve()
        assert preflight.records[0].status == "incomplete"
        assert preflight.records[0].filename == outcome.plan_file

    @pytest.mark.asyncio
    async def test_session_restricted_to_plan_dir(self, config: RunConfig, task: Task) -> None:
        factory = ScriptedFactory(ScriptedSession([write_plan]))

        await make_preflight(config, factory).run(task, "tasks.md")

        session_config = factory.configs[0]
        assert session_config.write_roots == (config.plan_root,)
        assert session_config.tools_enabled is True
        assert session_config.max_iterations == 500

    @pytest.mark.asyncio
    async def test_malformed_reply_forces_decision(self, config: RunConfig, task: Task) -> None:
        session = ScriptedSession(["I looked around and it seems fine", '{"status":"complete","filename":""}'])
        preflight = make_preflight(config, ScriptedFactory(session))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "complete"
        assert session.prompts[1] == FORCE_DISCOVERY_DECISION_PROMPT

    @pytest.mark.asyncio
    async def test_still_malformed_uses_fallback_plan(self, config: RunConfig, task: Task) -> None:
        session = ScriptedSession(["nope", "still nope"])
        preflight = make_preflight(config, ScriptedFactory(session))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "planned"
        assert "auto-generated fallback" in Path(outcome.plan_file).read_text()
        assert preflight.records[0].status == "error"

    @pytest.mark.asyncio
    async def test_named_but_unwritten_plan_gets_rewrite_then_fallback(
        self, config: RunConfig, task: Task
    ) -> None:
        session = ScriptedSession([name_plan_without_writing, "ok, written"])
        preflight = make_preflight(config, ScriptedFactory(session))

        outcome = await preflight.run(task, "tasks.md")

        assert "not usable (missing file)" in session.prompts[1]
        assert outcome.status == "planned"
        assert "auto-generated fallback" in Path(outcome.plan_file).read_text()

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retries(self, config: RunConfig, task: Task) -> None:
        sessions = [ScriptedSession([asyncio.TimeoutError()]) for _ in range(3)]
        preflight = make_preflight(config, ScriptedFactory(*sessions))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "failed"
        assert outcome.timed_out is True
        assert [r.status for r in preflight.records] == ["timeout"] * 3
        assert all(s.cancelled for s in sessions)

    @pytest.mark.asyncio
    async def test_retry_hint_after_failure(self, config: RunConfig, task: Task) -> None:
        first = ScriptedSession([SessionError("connection reset")])
        second = ScriptedSession([write_plan])
        preflight = make_preflight(config, ScriptedFactory(first, second))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "planned"
        assert "RETRY CONTEXT: Previous discovery attempt failed: connection reset" in second.prompts[0]

    @pytest.mark.asyncio
    async def test_iteration_cap_doubles(self, config: RunConfig, task: Task) -> None:
        factory = ScriptedFactory(
            ScriptedSession([MaxIterationsError("cap")]),
            ScriptedSession([MaxIterationsError("cap")]),
            ScriptedSession([write_plan]),
        )

        await make_preflight(config, factory).run(task, "tasks.md")

        assert [c.max_iterations for c in factory.configs] == [500, 1000, 1000]

    @pytest.mark.asyncio
    async def test_session_errors_fail_without_timeout_flag(self, config: RunConfig, task: Task) -> None:
        run = dataclasses.replace(config, preflight_max_retries=0)
        preflight = make_preflight(run, ScriptedFactory(ScriptedSession([SessionError("boom")])))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "failed"
        assert outcome.timed_out is False
        assert outcome.reason == "boom"

    @pytest.mark.asyncio
    async def test_cancel_stops_retries(self, config: RunConfig, task: Task) -> None:
        """Cancelling mid-turn ends discovery without opening another session."""
        preflight: Preflight | None = None

        def cancelled_turn(prompt: str) -> str:
            assert preflight is not None
            preflight.cancel()
            raise SessionError("Session cancelled")

        factory = ScriptedFactory(
            ScriptedSession([cancelled_turn]),
            ScriptedSession([write_plan]),
        )
        preflight = make_preflight(config, factory)

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "failed"
        assert outcome.reason == "stopped"
        assert len(factory.configs) == 1

    def test_unbounded_iteration_setting_uses_default(self, config: RunConfig) -> None:
        """A non-finite iteration setting falls back to the default cap."""
        unbounded = dataclasses.replace(config, preflight_max_iterations=float("inf"))

        assert make_preflight(unbounded, ScriptedFactory())._initial_cap() == 500


class TestRequirementsReview:
    """Tests for the optional requirements review stage."""

    @pytest.fixture
    def review_config(self, config: RunConfig) -> RunConfig:
        return dataclasses.replace(config, preflight_requirements_review=True)

    @pytest.mark.asyncio
    async def test_review_ready(self, review_config: RunConfig, task: Task) -> None:
        def ready(prompt: str) -> str:
            path = prompt.splitlines()[1]
            return json.dumps({"status": "ready", "filename": path})

        review = ScriptedSession([ready])
        preflight = make_preflight(review_config, ScriptedFactory(ScriptedSession([write_plan]), review))

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "planned"
        assert [r.stage for r in preflight.records] == ["discovery", "requirements-review"]
        assert preflight.records[1].status == "ready"
        assert "strict peer review" in review.prompts[0]

    @pytest.mark.asyncio
    async def test_malformed_review_keeps_discovery_plan(self, review_config: RunConfig, task: Task) -> None:
        preflight = make_preflight(
            review_config,
            ScriptedFactory(ScriptedSession([write_plan]), ScriptedSession(["looks good", "LGTM"])),
        )

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "planned"
        assert outcome.plan_file == preflight.records[0].filename
        assert preflight.records[1].status == "error"

    @pytest.mark.asyncio
    async def test_review_timeouts_fail(self, review_config: RunConfig, task: Task) -> None:
        run = dataclasses.replace(review_config, preflight_max_retries=0)
        preflight = make_preflight(
            run,
            ScriptedFactory(ScriptedSession([write_plan]), ScriptedSession([asyncio.TimeoutError()])),
        )

        outcome = await preflight.run(task, "tasks.md")

        assert outcome.status == "failed"
        assert outcome.timed_out is True
