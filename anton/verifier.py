"""Verification of a task's changes after the agent reports done.

Three checks run in order and each can reject the attempt:

- Scope guard: when the task text names files, changes must stay in scope.
- Check commands: configured shell commands (tests, lint) must exit zero.
- AI review: a single-turn verify session judges the diff against the task.
"""

import json
import logging
import re
import subprocess
from pathlib import Path, PurePosixPath

from anton.config import ScopeGuardMode
from anton.errors import AntonError, PreflightError
from anton.models import VerificationResult
from anton.preflight import extract_json_object
from anton.session import AgentSession

logger = logging.getLogger(__name__)

# Characters of command output kept for the failure reason
OUTPUT_TAIL_CHARS = 2000

PATH_PATTERN = re.compile(r"\b([A-Za-z0-9._-]+(?:/[A-Za-z0-9._-]+)+\.[A-Za-z0-9]{1,8})\b")
BARE_FILE_PATTERN = re.compile(r"\b([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*\.[A-Za-z0-9]{1,8})\b")

TEST_DIRS = {"tests", "test", "__tests__", "spec", "specs", "unit", "integration"}

# Bare "names" that are not files (versions, abbreviations)
_NOT_FILES = re.compile(r"^(?:\d+(?:\.\d+)+|e\.g|i\.e|etc)$", re.IGNORECASE)


def extract_task_files(task_text: str) -> list[str]:
    """File paths a task names explicitly, in order of appearance."""
    files: list[str] = []
    for match in PATH_PATTERN.finditer(task_text):
        path = match.group(1).removeprefix("./")
        if path not in files:
            files.append(path)
    for match in BARE_FILE_PATTERN.finditer(task_text):
        name = match.group(1)
        if _NOT_FILES.match(name) or any(f.endswith("/" + name) for f in files):
            continue
        if name not in files:
            files.append(name)
    return files


def is_related_file(changed: str, expected: str) -> bool:
    """Whether a changed file plausibly belongs to an expected one.

    Related means: same stem (or one a prefix of the other), a test, spec,
    fixture or mock named after it, or a file in the same directory.
    """
    changed_path = PurePosixPath(changed)
    expected_path = PurePosixPath(expected)
    changed_stem = changed_path.stem.lower()
    expected_stem = expected_path.stem.lower()

    if changed_stem.startswith(expected_stem) or expected_stem.startswith(changed_stem):
        return True

    stem = re.escape(expected_stem)
    related = [
        rf"^{stem}[._-]?(test|spec|factory|fixture|mock|stub)",
        rf"^(test|mock)[._-]?{stem}",
        rf"{stem}[._-](test|spec)$",
    ]
    if any(re.search(p, changed_stem) for p in related):
        return True

    parts = {p.lower() for p in changed_path.parent.parts}
    if parts & TEST_DIRS and expected_stem in changed_stem:
        return True

    changed_dir = str(changed_path.parent)
    return changed_dir not in ("", ".") and changed_dir == str(expected_path.parent)


def check_scope_guard(
    task_text: str, changed_files: list[str], mode: ScopeGuardMode
) -> tuple[bool, str | None]:
    """Check changed files against the files a task names.

    Args:
        task_text: Task text, scanned for explicit file names
        changed_files: Paths changed relative to the project root
        mode: off (disabled), lax (related files allowed) or strict (exact match)

    Returns:
        (ok, reason) where reason explains an out-of-scope change
    """
    if mode == "off":
        return True, None
    expected = extract_task_files(task_text)
    if not expected or not changed_files:
        return True, None

    def in_scope(changed: str) -> bool:
        for exp in expected:
            if changed == exp or ("/" not in exp and PurePosixPath(changed).name == exp):
                return True
            if mode == "lax" and is_related_file(changed, exp):
                return True
        return False

    out_of_scope = [f for f in changed_files if not in_scope(f)]
    if not out_of_scope:
        return True, None
    return False, (
        f"Scope guard failed: task explicitly targets {', '.join(expected)} "
        f"but modified out-of-scope files: {', '.join(out_of_scope)} (mode: {mode})"
    )


def run_check_commands(
    commands: tuple[str, ...] | list[str], cwd: Path, timeout: int
) -> tuple[bool, str]:
    """Run each check command; all must exit zero.

    Args:
        commands: Shell commands, run in order, stopping at the first failure
        cwd: Directory to run them in
        timeout: Per-command timeout in seconds

    Returns:
        (passed, output) where output is the tail of the failing command's output
    """
    for command in commands:
        logger.info(f"Running check: {command}")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return False, f"`{command}` timed out after {timeout}s"

        if result.returncode != 0:
            output = (result.stdout + result.stderr).strip()
            return False, (
                f"`{command}` exited with {result.returncode}:\n{output[-OUTPUT_TAIL_CHARS:]}"
            )
    return True, ""


def build_review_prompt(task_text: str, diff: str) -> str:
    return f"""You are a code review verifier. Task: "{task_text}"

Diff:
```diff
{diff}
```

Reply with exactly one JSON object:
{{"pass": true, "reason": "..."}}
or
{{"pass": false, "reason": "..."}}"""


def parse_review_verdict(text: str) -> tuple[bool, str]:
    """Read a reviewer's verdict. Anything unparseable is a rejection."""
    try:
        parsed = json.loads(extract_json_object(text))
    except (PreflightError, json.JSONDecodeError):
        return False, "Invalid verifier response: not valid JSON"
    if not isinstance(parsed, dict) or not isinstance(parsed.get("pass"), bool):
        return False, "Invalid verifier response: missing pass field"
    return parsed["pass"], str(parsed.get("reason") or "No reason provided")


async def review_diff(session: AgentSession, task_text: str, diff: str) -> tuple[bool, str]:
    """Ask a verify session to judge a diff.

    Returns:
        (passed, reason)
    """
    try:
        reply = await session.ask(build_review_prompt(task_text, diff))
    except AntonError as e:
        return False, f"Verifier session error: {e}"
    return parse_review_verdict(reply.text)


def summarize(result: VerificationResult, scope_reason: str | None) -> str:
    """One-line summary of what failed, or 'All checks passed'."""
    if result.passed:
        return "All checks passed"
    failures = []
    if not result.scope_ok and scope_reason:
        failures.append(scope_reason)
    if result.checks_ok is False:
        failures.append(f"Checks failed: {result.command_output or ''}".strip())
    if result.ai_ok is False:
        failures.append(f"AI review rejected: {result.ai_reason}")
    return "; ".join(failures) or "Verification failed"
