"""Configuration for Anton runs.

Provides an immutable, run-scoped bundle of policy knobs with sensible
defaults and environment variable overrides for timeouts, retry policy,
version-control behaviour and telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ScopeGuardMode = Literal["off", "lax", "strict"]
ApprovalMode = Literal["plan", "default", "auto-edit", "yolo"]


def _default_state_dir() -> Path:
    return Path(os.getenv("ANTON_STATE_DIR", "~/.local/state/anton")).expanduser()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RunConfig:
    """Configuration for one Anton run.

    All settings have defaults; use from_env() to apply ANTON_* environment
    overrides and dataclasses.replace() for per-invocation overrides.
    """

    task_file: Path
    project_dir: Path
    # Discovery/review sessions may only write here. Defaults to
    # <project_dir>/.agents/tasks.
    plan_dir: Path | None = None
    state_dir: Path = field(default_factory=_default_state_dir)

    # Per-task budgets
    task_timeout_sec: int = 600
    task_max_iterations: float = 50
    max_retries: int = 3
    max_identical_failures: int = 3

    # Whole-run budget
    total_timeout_sec: int = 4 * 60 * 60
    max_total_tasks: int = 500

    # Decomposition
    decompose: bool = True
    max_decompose_depth: int = 2

    # Outcome policy
    auto_commit: bool = True
    verify_ai: bool = False
    verify_commands: tuple[str, ...] = ()
    verify_fix_turns: int = 1
    verify_command_timeout_sec: int = 600
    skip_on_blocked: bool = True
    skip_on_fail: bool = True
    rollback_on_fail: bool = True
    scope_guard: ScopeGuardMode = "lax"
    approval_mode: ApprovalMode = "yolo"

    # Two-phase (preflight) mode
    preflight_enabled: bool = False
    preflight_requirements_review: bool = False
    preflight_max_retries: int = 2
    preflight_discovery_timeout_sec: int | None = None
    preflight_review_timeout_sec: int | None = None
    preflight_max_iterations: float | None = None

    # Prompt context
    max_context_tokens: int = 2000

    # Progress
    heartbeat_interval_sec: float = 30.0
    progress_events: bool = True

    # Agent
    model: str | None = None

    # Telemetry
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "anton"

    def __post_init__(self) -> None:
        object.__setattr__(self, "task_file", Path(self.task_file).resolve())
        object.__setattr__(self, "project_dir", Path(self.project_dir).resolve())
        if self.plan_dir is None:
            object.__setattr__(
                self, "plan_dir", self.project_dir / ".agents" / "tasks"
            )
        else:
            object.__setattr__(self, "plan_dir", Path(self.plan_dir).resolve())

    @property
    def plan_root(self) -> Path:
        """Resolved plan directory (never None after construction)."""
        assert self.plan_dir is not None
        return self.plan_dir

    @property
    def discovery_timeout_sec(self) -> int:
        return self.preflight_discovery_timeout_sec or self.task_timeout_sec

    @property
    def review_timeout_sec(self) -> int:
        return self.preflight_review_timeout_sec or self.task_timeout_sec

    @classmethod
    def from_env(cls, task_file: str | Path, project_dir: str | Path) -> "RunConfig":
        """Load config with environment variable overrides.

        Environment variables:
            ANTON_TASK_TIMEOUT: Per-task timeout in seconds (default: 600)
            ANTON_TASK_MAX_ITERATIONS: Iteration cap per attempt (default: 50)
            ANTON_TOTAL_TIMEOUT: Whole-run budget in seconds (default: 14400)
            ANTON_MAX_RETRIES: Attempts allowed per task (default: 3)
            ANTON_MAX_IDENTICAL_FAILURES: Identical-failure streak limit (default: 3)
            ANTON_DECOMPOSE: Allow task decomposition (default: true)
            ANTON_MAX_DECOMPOSE_DEPTH: Max decomposition depth (default: 2)
            ANTON_AUTO_COMMIT: Commit after each task (default: true)
            ANTON_VERIFY_AI: AI review of each diff (default: false)
            ANTON_SCOPE_GUARD: off | lax | strict (default: lax)
            ANTON_PREFLIGHT: Enable discovery before implementation (default: false)
            ANTON_HEARTBEAT_INTERVAL: Heartbeat seconds (default: 30)
            ANTON_MODEL: Model override for agent sessions
            OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
        """
        scope_guard = os.getenv("ANTON_SCOPE_GUARD", "lax")
        if scope_guard not in ("off", "lax", "strict"):
            scope_guard = "lax"
        return cls(
            task_file=Path(task_file),
            project_dir=Path(project_dir),
            task_timeout_sec=int(os.getenv("ANTON_TASK_TIMEOUT", "600")),
            task_max_iterations=float(os.getenv("ANTON_TASK_MAX_ITERATIONS", "50")),
            total_timeout_sec=int(os.getenv("ANTON_TOTAL_TIMEOUT", str(4 * 60 * 60))),
            max_retries=int(os.getenv("ANTON_MAX_RETRIES", "3")),
            max_identical_failures=int(os.getenv("ANTON_MAX_IDENTICAL_FAILURES", "3")),
            decompose=_env_bool("ANTON_DECOMPOSE", True),
            max_decompose_depth=int(os.getenv("ANTON_MAX_DECOMPOSE_DEPTH", "2")),
            auto_commit=_env_bool("ANTON_AUTO_COMMIT", True),
            verify_ai=_env_bool("ANTON_VERIFY_AI", False),
            scope_guard=scope_guard,  # type: ignore[arg-type]
            preflight_enabled=_env_bool("ANTON_PREFLIGHT", False),
            heartbeat_interval_sec=float(os.getenv("ANTON_HEARTBEAT_INTERVAL", "30")),
            model=os.getenv("ANTON_MODEL") or None,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
