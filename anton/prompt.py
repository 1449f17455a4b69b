"""Prompt construction for implementation turns.

Builds the single prompt sent to an agent for one task attempt. The prompt
is a sequence of independently omittable markdown sections joined by blank
lines: preamble, current task, progress summary, retrieved context, retry
context and result-format instructions.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Protocol

from anton.config import RunConfig
from anton.models import Task, TaskFile

logger = logging.getLogger(__name__)

# Entries requested from the knowledge store per prompt
SEARCH_LIMIT = 10
MAX_KEYWORDS = 10

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
        "to", "was", "were", "will", "with", "this", "these", "they",
        "should", "would", "could", "can", "may", "might", "must",
    }
)


@dataclass
class SearchHit:
    """One entry returned by a knowledge store search.

    Attributes:
        key: Identifier shown as the entry heading (usually a file path)
        content: Entry body; snippet is used when content is empty
        snippet: Shorter excerpt of the entry
    """

    key: str
    content: str = ""
    snippet: str = ""


class KnowledgeStore(Protocol):
    """Searchable store of project knowledge used to enrich prompts."""

    async def search(self, query: str, limit: int) -> list[SearchHit]: ...


@dataclass
class PromptContext:
    """Everything build_prompt() needs for one attempt.

    Attributes:
        task: Task being attempted
        task_file: Parsed task document (for the progress summary)
        config: Run configuration (decomposition, context budget)
        retry_reason: Prior failure reason when this is a retry
        knowledge_store: Optional store searched for relevant context
        plan_file: Vetted plan file produced by discovery, if any
        completed_count: Tasks done so far in this run, including those
            already checked in the document; None counts checkboxes only
    """

    task: Task
    task_file: TaskFile
    config: RunConfig
    retry_reason: str | None = None
    knowledge_store: KnowledgeStore | None = None
    plan_file: str | None = None
    completed_count: int | None = None


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token, never zero."""
    return max(1, math.ceil(len(text) / 4))


def extract_keywords(text: str) -> list[str]:
    """Pick search keywords from task text.

    Lowercases, keeps purely alphabetic words longer than two characters,
    drops stop-words and returns at most ten in order of appearance.
    """
    keywords = []
    for word in text.lower().split():
        if len(word) <= 2 or word in STOP_WORDS:
            continue
        if not re.fullmatch(r"[a-z]+", word):
            continue
        keywords.append(word)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords


async def build_prompt(ctx: PromptContext) -> str:
    """Build the complete prompt for one task attempt.

    Args:
        ctx: Prompt inputs for this attempt

    Returns:
        Prompt text with sections separated by blank lines
    """
    sections = [
        _preamble(ctx.config),
        _current_task(ctx.task, ctx.task_file.file_path, ctx.plan_file),
        _progress_summary(ctx.task_file, ctx.task, ctx.completed_count),
    ]

    if ctx.knowledge_store is not None:
        context = await _relevant_context(
            ctx.task, ctx.knowledge_store, ctx.config.max_context_tokens
        )
        if context:
            sections.append(context)

    if ctx.retry_reason:
        sections.append(_retry_context(ctx.retry_reason))

    sections.append(_result_instructions(ctx.config))
    return "\n\n".join(sections)


def _preamble(config: RunConfig) -> str:
    preamble = (
        "You are an autonomous coding agent working on ONE task.\n"
        "Complete the task, then emit exactly one `<anton-result>` block.\n"
        "Do NOT edit the task file checkboxes.\n"
        "Keep changes minimal and focused."
    )
    if config.decompose:
        preamble += (
            "\n\nIf a task is too large or complex, you can decompose it into smaller subtasks.\n"
            f"Maximum decomposition depth: {config.max_decompose_depth}\n"
            "Only decompose when truly necessary - prefer completing tasks directly when possible."
        )
    return preamble


def _current_task(task: Task, file_path: str, plan_file: str | None) -> str:
    lines = [
        "## Current Task",
        "",
        f"**File:** {file_path}",
        f"**Line:** {task.line}",
        f"**Phase:** {' → '.join(task.phase_path)}",
        f"**Task:** {task.text}",
    ]
    if plan_file:
        lines.append(f"**Plan:** {plan_file} (read it before making changes)")
    if task.children:
        lines.append("")
        lines.append("**Children:**")
        for child in task.children:
            mark = "[x]" if child.checked else "[ ]"
            lines.append(f"- {mark} {child.text}")
    return "\n".join(lines)


def _progress_summary(task_file: TaskFile, task: Task, completed: int | None = None) -> str:
    phase = task.phase_path[0] if task.phase_path else "Unknown"
    if completed is None:
        completed = len(task_file.completed)
    return f"## Progress Summary\n\n{completed}/{task_file.total_count} complete. Phase: {phase}."


async def _relevant_context(
    task: Task, store: KnowledgeStore, max_tokens: int
) -> str | None:
    """Retrieved context section, or None when nothing fits."""
    keywords = extract_keywords(task.text)
    if not keywords:
        return None

    try:
        hits = await store.search(" ".join(keywords), SEARCH_LIMIT)
    except Exception as e:
        logger.warning(f"Knowledge store search failed: {e}")
        return None
    if not hits:
        return None

    header = "## Relevant Files\n\n"
    used = estimate_tokens(header)
    entries = []
    for hit in hits:
        body = hit.content or hit.snippet
        if not body:
            continue
        entry = f"**{hit.key}**\n{body}\n\n"
        cost = estimate_tokens(entry)
        if used + cost > max_tokens:
            break
        entries.append(entry)
        used += cost

    if not entries:
        return None
    return (header + "".join(entries)).strip()


def _retry_context(reason: str) -> str:
    return f"## Previous Attempt Failed\n\n{reason}\n\nDo not repeat the same mistake."


def _result_instructions(config: RunConfig) -> str:
    instructions = (
        "## Instructions\n"
        "\n"
        "When finished, emit exactly this block at the end of your response:\n"
        "\n"
        "```\n"
        "<anton-result>\n"
        "status: done\n"
        "</anton-result>\n"
        "```\n"
        "\n"
        "If blocked:\n"
        "\n"
        "```\n"
        "<anton-result>\n"
        "status: blocked\n"
        "reason: <why>\n"
        "</anton-result>\n"
        "```"
    )
    if config.decompose:
        instructions += (
            "\n\nIf task is too large:\n"
            "\n"
            "```\n"
            "<anton-result>\n"
            "status: decompose\n"
            "subtasks:\n"
            "- <sub-task 1>\n"
            "- <sub-task 2>\n"
            "</anton-result>\n"
            "```"
        )
    return instructions
