"""Discord webhook notifier for Anton progress events.

Turns selected run events (start, task outcomes, skips, loops and the final
summary) into embed messages posted to a Discord webhook. Delivery is
best-effort: failures are logged and never reach the run.
"""

import logging
from dataclasses import dataclass

import httpx

from anton.models import RunResult, RunState
from anton.reporter import ProgressEvent, format_duration

logger = logging.getLogger(__name__)

COLORS = {
    "started": 0x3498DB,
    "completed": 0x2ECC71,
    "failed": 0xE74C3C,
    "skipped": 0x95A5A6,
    "loop": 0xF39C12,
    "run_completed": 0x9B59B6,
}

# Discord rejects embeds with longer descriptions
MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"
WEBHOOK_TIMEOUT_SECONDS = 5.0


@dataclass
class DiscordEmbed:
    """One embed in a webhook payload.

    Attributes:
        title: Bold heading line
        description: Body text, truncated to MAX_DESCRIPTION_LENGTH on send
        color: Sidebar color as an integer
        fields: Optional name/value/inline dicts shown as a grid
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None

    def to_dict(self) -> dict:
        body = {
            "title": self.title,
            "description": _truncate_text(self.description, MAX_DESCRIPTION_LENGTH),
            "color": self.color,
        }
        if self.fields is not None:
            body["fields"] = self.fields
        return body


def _truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


async def send_discord_message(webhook_url: str, embed: DiscordEmbed) -> None:
    """Post one embed to the webhook. Never raises.

    Args:
        webhook_url: Discord webhook URL
        embed: Embed to post
    """
    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
            response = await client.post(webhook_url, json={"embeds": [embed.to_dict()]})
            if response.status_code >= 400:
                logger.warning(
                    f"Discord webhook rejected '{embed.title}' with {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning(f"Discord webhook timed out posting '{embed.title}'")
    except httpx.ConnectError:
        logger.warning("Could not connect to Discord webhook")
    except Exception as e:
        logger.warning(f"Discord notification failed: {e}")


def format_run_finished(result: RunResult) -> DiscordEmbed:
    """Summary embed for the end of a run."""
    if result.final_state == RunState.FAILED:
        title, color = "💥 Anton Failed", COLORS["failed"]
    elif result.stop_reason == "abort":
        title, color = "⏹️ Anton Stopped", COLORS["skipped"]
    else:
        title, color = "🎉 Anton Complete", COLORS["run_completed"]
    description = f"Stop reason: {result.stop_reason}"
    if result.error:
        description += f"\n\n**Error:**\n{result.error}"
    return DiscordEmbed(
        title=title,
        description=description,
        color=color,
        fields=[
            {"name": "Completed", "value": str(result.completed), "inline": True},
            {"name": "Skipped", "value": str(len(result.skipped)), "inline": True},
            {"name": "Remaining", "value": str(result.remaining), "inline": True},
            {"name": "Commits", "value": str(result.total_commits), "inline": True},
            {"name": "Duration", "value": format_duration(result.duration_seconds), "inline": True},
        ],
    )


def format_event(event: ProgressEvent) -> DiscordEmbed | None:
    """Map a progress event to an embed; None for events not worth a message."""
    if event.kind == "run_started":
        return DiscordEmbed(title="🚀 Anton Started", description=event.message, color=COLORS["started"])
    if event.kind == "task_finished":
        passed = event.data.get("status") == "passed"
        return DiscordEmbed(
            title=f"{'✅' if passed else '❌'} {event.data.get('task', 'Task')}",
            description=event.message,
            color=COLORS["completed"] if passed else COLORS["failed"],
        )
    if event.kind == "task_skipped":
        return DiscordEmbed(title="⏭️ Task Skipped", description=event.message, color=COLORS["skipped"])
    if event.kind == "loop":
        return DiscordEmbed(title="🔁 Tool Loop", description=event.message, color=COLORS["loop"])
    if event.kind == "run_finished" and isinstance(event.data.get("result"), RunResult):
        return format_run_finished(event.data["result"])
    return None


class DiscordNotifier:
    """Progress callback posting selected events to a Discord webhook.

    Heartbeat and stage events are not forwarded.
    """

    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    async def __call__(self, event: ProgressEvent) -> None:
        embed = format_event(event)
        if embed is not None:
            await send_discord_message(self.webhook_url, embed)
