"""Task document parser.

Parses a markdown checklist into Task objects. Headings set the phase
breadcrumb, checklist items become tasks, and indentation nests items
under the enclosing task. Parsing is lenient: anything that is not a
heading, a checklist item or a continuation line is ignored.
"""

import hashlib
import logging
import re
from collections.abc import Iterable
from pathlib import Path

from anton.errors import TaskFileError
from anton.models import Task, TaskFile

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
TASK_PATTERN = re.compile(r"^(\s*)(?:[-*]|●) \[([ xX])\](?:\s+(.*))?$")
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")


def _indent_depth(indent: str) -> int:
    """Nesting level of an item: two spaces or one tab per level."""
    return len(indent.replace("\t", "  ")) // 2


def parse_task_string(content: str, file_path: str | Path = "") -> TaskFile:
    """Parse task document content.

    Args:
        content: Markdown text of the task document
        file_path: Path recorded on the result (used in prompts)

    Returns:
        TaskFile with all tasks in document order
    """
    lines = content.split("\n")
    all_tasks: list[Task] = []
    phase_path: list[str] = []
    stack: list[Task] = []
    current: Task | None = None
    in_fence = False

    for index, line in enumerate(lines):
        line_num = index + 1

        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            current = None
            continue
        if in_fence:
            continue

        heading = HEADING_PATTERN.match(line)
        if heading:
            level = len(heading.group(1))
            # Replace this level and drop anything deeper
            del phase_path[level - 1 :]
            while len(phase_path) < level - 1:
                phase_path.append("")
            phase_path.append(heading.group(2).strip())
            current = None
            continue

        item = TASK_PATTERN.match(line)
        if item:
            text = (item.group(3) or "").strip()
            if not text:
                logger.warning(f"Skipping empty task at line {line_num}")
                current = None
                continue

            depth = _indent_depth(item.group(1))
            while stack and stack[-1].depth >= depth:
                stack.pop()
            parent = stack[-1] if stack else None

            task = Task(
                text=text,
                line=line_num,
                phase_path=[p for p in phase_path if p],
                depth=depth,
                checked=item.group(2) != " ",
                parent_key=parent.key if parent else None,
            )
            if parent is not None:
                parent.children.append(task)
            all_tasks.append(task)
            stack.append(task)
            current = task
            continue

        stripped = line.strip()
        if (
            current is not None
            and stripped
            and line[:1].isspace()
            and not stripped.startswith(("-", "*", "●"))
        ):
            # Continuation line; the current task has no children yet
            current.text = f"{current.text} {stripped}"
            continue

        current = None

    return TaskFile(
        file_path=str(file_path),
        all_tasks=all_tasks,
        roots=[t for t in all_tasks if t.parent_key is None],
        pending=[t for t in all_tasks if not t.checked],
        completed=[t for t in all_tasks if t.checked],
        total_count=len(all_tasks),
        content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
    )


def parse_task_file(path: str | Path) -> TaskFile:
    """Read and parse a task document from disk.

    Args:
        path: Path to the markdown task document

    Returns:
        Parsed TaskFile

    Raises:
        TaskFileError: If the file is missing or unreadable
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise TaskFileError(f"Task file not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise TaskFileError(f"Task file unreadable: {path}: {e}") from e
    return parse_task_string(content, path)


def next_pending(task_file: TaskFile, resolved_keys: Iterable[str]) -> Task | None:
    """Select the next task to run.

    Traversal is depth-first in document order, so phases are visited in
    order and a parent comes before its subtasks.

    Args:
        task_file: Parsed task document
        resolved_keys: Keys the run has already finished with (done or skipped)

    Returns:
        First pending task not yet resolved, or None when nothing is left
    """
    resolved = set(resolved_keys)
    for task in task_file.pending:
        if task.key not in resolved:
            return task
    return None
