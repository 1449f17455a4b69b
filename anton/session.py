"""Agent session configuration and protocol.

Derives restricted session configurations for implementation, discovery
and verification sessions from a base configuration, and defines the
AgentSession protocol the run controller drives.
"""

import asyncio
import dataclasses
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from anton.config import ApprovalMode, RunConfig
from anton.models import AgentReply

DEFAULT_TASK_MAX_ITERATIONS = 50
DEFAULT_PREFLIGHT_MAX_ITERATIONS = 500


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for one agent session.

    Attributes:
        project_dir: Directory the agent works in
        approval_mode: How tool calls are approved (plan, default, auto-edit, yolo)
        max_iterations: Tool-call iteration cap per turn
        timeout_sec: Wall-clock budget per turn
        tools_enabled: Whether the agent may call tools at all
        write_roots: Directories the agent may write to (empty = unrestricted)
        allowed_tools: Tool names the agent may call
        sub_agents_enabled: Whether the agent may spawn sub-agents
        mcp_enabled: Whether MCP servers are available
        dir_pinned: Whether the agent is prevented from changing directory
        model: Model override, None for the agent's default
        quiet: Suppress the agent's own progress output
    """

    project_dir: Path
    approval_mode: ApprovalMode = "yolo"
    max_iterations: int = DEFAULT_TASK_MAX_ITERATIONS
    timeout_sec: int = 600
    tools_enabled: bool = True
    write_roots: tuple[Path, ...] = ()
    allowed_tools: tuple[str, ...] = ("Bash", "Read", "Write", "Edit", "Glob", "Grep")
    sub_agents_enabled: bool = True
    mcp_enabled: bool = True
    dir_pinned: bool = False
    model: str | None = None
    quiet: bool = True


class AgentSession(Protocol):
    """A conversational, tool-calling agent session.

    ask() may raise ToolLoopError when the session aborts a turn because of
    a repetitive tool-call loop, MaxIterationsError when the iteration cap is
    hit, or SessionError for any other failure. cancel() must be safe to call
    from another task while ask() is in flight.
    """

    async def ask(self, prompt: str) -> AgentReply: ...

    def cancel(self) -> None: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[SessionConfig], Awaitable[AgentSession]]


async def ask_with_timeout(session: AgentSession, prompt: str, timeout_sec: float) -> AgentReply:
    """Ask with a wall-clock bound.

    On expiry the session's own cancel() stops the in-flight turn.

    Raises:
        asyncio.TimeoutError: If the turn did not finish within timeout_sec
    """
    try:
        return await asyncio.wait_for(session.ask(prompt), timeout=timeout_sec)
    except asyncio.TimeoutError:
        session.cancel()
        raise


def iteration_cap(value: float | None, default: int) -> int:
    """Floor of a positive, finite value; the default otherwise."""
    if value is None or not math.isfinite(value) or value <= 0:
        return default
    return max(1, math.floor(value))


def base_session_config(run: RunConfig) -> SessionConfig:
    """Base configuration shared by all sessions of a run."""
    return SessionConfig(
        project_dir=run.project_dir,
        approval_mode=run.approval_mode,
        timeout_sec=run.task_timeout_sec,
        model=run.model,
    )


def build_session_config(base: SessionConfig, run: RunConfig) -> SessionConfig:
    """Configuration for an implementation session.

    Full tool access; the iteration cap is the floor of task_max_iterations
    when positive, else 50.
    """
    return dataclasses.replace(
        base,
        project_dir=run.project_dir,
        approval_mode=run.approval_mode,
        max_iterations=iteration_cap(run.task_max_iterations, DEFAULT_TASK_MAX_ITERATIONS),
        timeout_sec=run.task_timeout_sec,
        tools_enabled=True,
        quiet=True,
    )


def build_preflight_config(
    base: SessionConfig,
    run: RunConfig,
    timeout_sec: int,
    max_iterations: float | None = None,
) -> SessionConfig:
    """Configuration for a discovery or requirements-review session.

    Tools are always on, writes are confined to the plan directory, the
    working directory is pinned and sub-agents and MCP are disabled.

    Args:
        base: Base session configuration
        run: Run configuration
        timeout_sec: Wall-clock budget for the stage
        max_iterations: Explicit iteration cap; falls back to
            run.preflight_max_iterations, then 500

    Returns:
        Restricted SessionConfig
    """
    cap = max_iterations if max_iterations is not None else run.preflight_max_iterations
    return dataclasses.replace(
        base,
        project_dir=run.project_dir,
        approval_mode=run.approval_mode,
        max_iterations=iteration_cap(cap, DEFAULT_PREFLIGHT_MAX_ITERATIONS),
        timeout_sec=timeout_sec,
        tools_enabled=True,
        write_roots=(run.plan_root,),
        sub_agents_enabled=False,
        mcp_enabled=False,
        dir_pinned=True,
        quiet=True,
    )


def build_verify_config(base: SessionConfig, run: RunConfig) -> SessionConfig:
    """Configuration for an AI verification session: one turn, no tools."""
    return dataclasses.replace(
        base,
        project_dir=run.project_dir,
        max_iterations=1,
        timeout_sec=run.task_timeout_sec,
        tools_enabled=False,
        allowed_tools=(),
        sub_agents_enabled=False,
        mcp_enabled=False,
        quiet=True,
    )
