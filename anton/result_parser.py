"""Structured result parsing for agent replies.

Agents finish a turn with an ``<anton-result>`` block:

    <anton-result>
    status: done|blocked|decompose
    reason: <optional text>
    subtasks:
    - <subtask 1>
    - <subtask 2>
    </anton-result>

Parsing is permissive and line-oriented. Anything that cannot be read as a
valid block resolves to ``blocked`` with a diagnostic reason, so a model
that forgets the protocol can never be mistaken for one that finished.
"""

import re

from anton.models import AgentResult

RESULT_BLOCK_PATTERN = re.compile(r"<anton-result>(.*?)</anton-result>", re.DOTALL)
STATUS_PATTERN = re.compile(r"^\s*status:\s*(.*?)\s*$", re.IGNORECASE)
REASON_PATTERN = re.compile(r"^\s*reason:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
SUBTASK_PATTERN = re.compile(r"^\s*-\s*(.+?)\s*$", re.MULTILINE)

NO_RESULT_REASON = "Agent did not emit structured result"
NO_STATUS_REASON = "No status line found in result block"
UNKNOWN_STATUS_PREFIX = "Unknown status:"

VALID_STATUSES = ("done", "blocked", "decompose")

# Sent once when a reply carries no usable block; the agent answers without tools.
FORMAT_RECOVERY_PROMPT = """Your previous reply did not include a valid <anton-result> block.
Do NOT call tools.
Return ONLY this block shape and nothing else:
<anton-result>
status: done|blocked|decompose
reason: <optional>
subtasks:
- <only when status=decompose>
</anton-result>"""


def parse_result(output: str) -> AgentResult:
    """Parse the authoritative result block from agent output.

    The last block in the output wins. Inside it, the first non-empty line
    must be the status line.

    Args:
        output: Full text of the agent's reply

    Returns:
        AgentResult; malformed or missing blocks yield status "blocked"
    """
    blocks = RESULT_BLOCK_PATTERN.findall(output or "")
    if not blocks:
        return AgentResult(status="blocked", reason=NO_RESULT_REASON)

    body = blocks[-1].strip()
    lines = [line for line in body.splitlines() if line.strip()]
    status_match = STATUS_PATTERN.match(lines[0]) if lines else None
    if status_match is None:
        return AgentResult(status="blocked", reason=NO_STATUS_REASON)

    status = status_match.group(1).strip().lower()
    if status not in VALID_STATUSES:
        return AgentResult(
            status="blocked",
            reason=f"{UNKNOWN_STATUS_PREFIX} {status_match.group(1).strip()}",
        )

    reason_match = REASON_PATTERN.search(body)
    subtasks = [m.group(1) for m in SUBTASK_PATTERN.finditer(body)]

    return AgentResult(
        status=status,  # type: ignore[arg-type]
        reason=reason_match.group(1) if reason_match else None,
        subtasks=subtasks,
    )


def is_protocol_failure(reason: str | None) -> bool:
    """True when a blocked reason came from the parser rather than the agent."""
    if not reason:
        return False
    return (
        reason == NO_RESULT_REASON
        or reason == NO_STATUS_REASON
        or reason.startswith(UNKNOWN_STATUS_PREFIX)
    )
