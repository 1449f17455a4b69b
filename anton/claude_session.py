"""Claude Code CLI implementation of AgentSession.

Runs ``claude -p`` as an asyncio subprocess in the project directory and
streams its JSON events. Tool-use events feed a repeated-call detector so a
session stuck calling the same tool with the same input is reported, and
aborted when it keeps going.
"""

import asyncio
import json
import logging

from anton.errors import MaxIterationsError, SessionError, ToolLoopError
from anton.models import AgentReply, LoopSignal
from anton.session import SessionConfig

logger = logging.getLogger(__name__)

# Identical consecutive tool calls before a loop is reported / the turn aborted
LOOP_WARN_THRESHOLD = 3
LOOP_ABORT_THRESHOLD = 6

# stream-json lines carry whole tool results
STREAM_LIMIT = 16 * 1024 * 1024

PERMISSION_MODES = {
    "plan": "plan",
    "default": "default",
    "auto-edit": "acceptEdits",
    "yolo": "bypassPermissions",
}


class ToolCallTracker:
    """Counts identical consecutive tool calls within one turn."""

    def __init__(
        self,
        warn_threshold: int = LOOP_WARN_THRESHOLD,
        abort_threshold: int = LOOP_ABORT_THRESHOLD,
    ) -> None:
        self.warn_threshold = warn_threshold
        self.abort_threshold = abort_threshold
        self.signals: list[LoopSignal] = []
        self.total_calls = 0
        self._last: tuple[str, str] | None = None
        self._streak = 0

    def record(self, name: str, tool_input: dict) -> None:
        """Record a tool call.

        Raises:
            ToolLoopError: When the same call repeats abort_threshold times
        """
        self.total_calls += 1
        signature = (name, json.dumps(tool_input, sort_keys=True, default=str))
        if signature == self._last:
            self._streak += 1
        else:
            self._last = signature
            self._streak = 1

        if self._streak == self.warn_threshold:
            self.signals.append(
                LoopSignal(
                    tool_name=name,
                    count=self._streak,
                    message=f"{name} called {self._streak} times with identical input",
                )
            )
        if self._streak >= self.abort_threshold:
            raise ToolLoopError(
                f"Final loop failure: {name} called {self._streak} times with identical input",
                tool_name=name,
                count=self._streak,
            )


class ClaudeCodeSession:
    """AgentSession backed by the Claude Code CLI.

    Successive ask() calls resume the same Claude session so follow-up
    prompts (format recovery, verification fix-ups) keep their context.
    """

    def __init__(self, config: SessionConfig, binary: str = "claude") -> None:
        """Initialize session.

        Args:
            config: Session configuration
            binary: Claude Code executable name or path
        """
        self.config = config
        self.binary = binary
        self.session_id: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._cancelled = False

    def build_command(self, prompt: str) -> list[str]:
        """Build the claude command line for one turn."""
        cfg = self.config
        cmd = [self.binary]
        if self.session_id:
            cmd.extend(["--resume", self.session_id])
        cmd.extend(
            [
                "-p",
                prompt,
                "--output-format",
                "stream-json",
                "--verbose",  # Required for stream-json with -p
                "--max-turns",
                str(cfg.max_iterations),
            ]
        )

        if not cfg.tools_enabled:
            cmd.extend(["--permission-mode", "plan"])
            cmd.extend(["--disallowedTools", "Bash,Read,Write,Edit,Glob,Grep,Task,WebFetch"])
        elif cfg.write_roots:
            # Only the listed rules are approved; anything else is denied in -p mode
            tools = [t for t in cfg.allowed_tools if t not in ("Bash", "Write", "Edit")]
            for root in cfg.write_roots:
                tools.append(f"Edit({root}/**)")
                tools.append(f"Write({root}/**)")
            cmd.extend(["--permission-mode", "default"])
            cmd.extend(["--allowedTools", ",".join(tools)])
        else:
            cmd.extend(["--permission-mode", PERMISSION_MODES[cfg.approval_mode]])
            cmd.extend(["--allowedTools", ",".join(cfg.allowed_tools)])

        if cfg.tools_enabled and not cfg.sub_agents_enabled:
            cmd.extend(["--disallowedTools", "Task"])
        if not cfg.mcp_enabled:
            cmd.append("--strict-mcp-config")
        if cfg.model:
            cmd.extend(["--model", cfg.model])
        return cmd

    async def ask(self, prompt: str) -> AgentReply:
        """Run one turn and return the agent's final reply.

        Raises:
            ToolLoopError: If the agent repeats an identical tool call too often
            MaxIterationsError: If the turn hit the iteration cap
            SessionError: If the CLI fails, is cancelled or emits no result
        """
        if self._cancelled:
            raise SessionError("Session cancelled")

        tracker = ToolCallTracker()
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                cwd=str(self.config.project_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise SessionError(f"Claude Code executable not found: {self.binary}") from e

        process = self._process
        assert process.stdout is not None and process.stderr is not None
        # Drain stderr concurrently so a chatty CLI cannot block on a full pipe
        stderr_task = asyncio.create_task(process.stderr.read())
        result_data: dict | None = None
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue

                event_type = event.get("type")
                if event_type == "assistant":
                    # Tool uses are nested in assistant message content
                    for item in event.get("message", {}).get("content", []):
                        if item.get("type") == "tool_use":
                            tracker.record(item.get("name", ""), item.get("input", {}))
                elif event_type == "result":
                    result_data = event
            stderr = await stderr_task
            await process.wait()
        except ToolLoopError:
            self._terminate()
            await process.wait()
            raise
        except asyncio.CancelledError:
            self._terminate()
            raise
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            self._process = None

        if self._cancelled:
            raise SessionError("Session cancelled")
        if result_data is None:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise SessionError(
                f"No result event received (exit code {process.returncode}): {detail}"
            )

        self.session_id = result_data.get("session_id") or self.session_id
        if result_data.get("subtype") == "error_max_turns":
            raise MaxIterationsError(
                f"Iteration cap reached ({self.config.max_iterations} turns)"
            )
        if result_data.get("is_error"):
            raise SessionError(f"Claude Code error: {result_data.get('result', '')}")

        for signal in tracker.signals:
            logger.info(f"Loop recovered: {signal.message}")

        return AgentReply(
            text=result_data.get("result", ""),
            turns=result_data.get("num_turns", 0),
            tool_calls=tracker.total_calls,
            loop_signals=tracker.signals,
            session_id=self.session_id or "",
            cost_usd=result_data.get("total_cost_usd", 0.0),
        )

    def cancel(self) -> None:
        """Cancel the in-flight turn, if any. Safe to call repeatedly."""
        self._cancelled = True
        self._terminate()

    async def close(self) -> None:
        process = self._process
        self.cancel()
        if process is not None:
            await process.wait()

    def _terminate(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass


async def create_claude_session(config: SessionConfig) -> ClaudeCodeSession:
    """SessionFactory producing ClaudeCodeSession instances."""
    return ClaudeCodeSession(config)
