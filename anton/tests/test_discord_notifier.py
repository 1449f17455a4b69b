"""Tests for the Discord webhook notifier.

These tests verify embed formatting and that webhook failures never raise.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from anton.discord_notifier import (
    COLORS,
    MAX_DESCRIPTION_LENGTH,
    DiscordEmbed,
    DiscordNotifier,
    format_event,
    format_run_finished,
    send_discord_message,
)
from anton.models import RunResult, RunState
from anton.reporter import ProgressEvent

WEBHOOK = "https://discord.com/api/webhooks/test"


def mock_client_for(mock_client_class: MagicMock) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    mock_client.post.return_value = MagicMock(status_code=204)
    mock_client_class.return_value = mock_client
    return mock_client


def make_result(**overrides) -> RunResult:
    values = dict(
        total_tasks=4,
        pre_completed=0,
        completed=4,
        auto_completed=0,
        skipped=[],
        failed=0,
        remaining=0,
        attempts=[],
        preflight_records=[],
        duration_seconds=65.0,
        total_commits=4,
        stop_reason="all_done",
        final_state=RunState.COMPLETED,
    )
    values.update(overrides)
    return RunResult(**values)


class TestDiscordEmbed:
    """Test the DiscordEmbed dataclass."""

    def test_to_dict_omits_unset_fields(self):
        """Optional fields are only included when set."""
        embed = DiscordEmbed(title="T", description="D", color=0x00FF00)

        assert embed.to_dict() == {"title": "T", "description": "D", "color": 0x00FF00}

    def test_long_description_truncated(self):
        """Descriptions are truncated to Discord's limit."""
        embed = DiscordEmbed(title="T", description="x" * 5000, color=0)

        description = embed.to_dict()["description"]

        assert len(description) == MAX_DESCRIPTION_LENGTH
        assert description.endswith("... [truncated]")


class TestSendDiscordMessage:
    """Test the send_discord_message async function."""

    @pytest.mark.asyncio
    async def test_posts_embed_to_webhook(self):
        """Should POST the embed to the webhook URL with a 5 second timeout."""
        embed = DiscordEmbed(title="My Title", description="My Description", color=0x2ECC71)

        with patch("anton.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_for(mock_client_class)

            await send_discord_message(WEBHOOK, embed)

            mock_client_class.assert_called_once_with(timeout=5.0)
            call_args = mock_client.post.call_args
            assert call_args[0][0] == WEBHOOK
            assert call_args[1]["json"]["embeds"][0]["title"] == "My Title"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.TimeoutException("Connection timed out"),
            httpx.ConnectError("Connection refused"),
            RuntimeError("unexpected"),
        ],
    )
    async def test_errors_logged_not_raised(self, error):
        """Network failures are logged as warnings, never raised."""
        embed = DiscordEmbed(title="Test", description="Test", color=0)

        with patch("anton.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_for(mock_client_class)
            mock_client.post.side_effect = error

            with patch("anton.discord_notifier.logger") as mock_logger:
                await send_discord_message(WEBHOOK, embed)

                mock_logger.warning.assert_called()

    @pytest.mark.asyncio
    async def test_http_error_response_logged(self):
        """4xx/5xx responses are logged."""
        embed = DiscordEmbed(title="Test", description="Test", color=0)

        with patch("anton.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_client_for(mock_client_class)
            mock_client.post.return_value = MagicMock(status_code=400, text="Bad Request")

            with patch("anton.discord_notifier.logger") as mock_logger:
                await send_discord_message(WEBHOOK, embed)

                mock_logger.warning.assert_called_once()
                assert "400" in mock_logger.warning.call_args[0][0]


class TestFormatEvent:
    """Test mapping progress events to embeds."""

    def test_run_started(self):
        embed = format_event(ProgressEvent(kind="run_started", message="3 pending"))

        assert embed.color == COLORS["started"]
        assert embed.description == "3 pending"

    def test_task_finished_passed_and_failed(self):
        passed = format_event(
            ProgressEvent(kind="task_finished", message="ok", data={"task": "Add cache", "status": "passed"})
        )
        failed = format_event(
            ProgressEvent(kind="task_finished", message="bad", data={"task": "Add cache", "status": "failed"})
        )

        assert passed.title == "✅ Add cache"
        assert passed.color == COLORS["completed"]
        assert failed.title == "❌ Add cache"
        assert failed.color == COLORS["failed"]

    def test_heartbeat_not_forwarded(self):
        assert format_event(ProgressEvent(kind="heartbeat", message="⏳")) is None
        assert format_event(ProgressEvent(kind="stage", message="[Executing]")) is None

    def test_run_finished_uses_result(self):
        result = make_result()

        embed = format_event(ProgressEvent(kind="run_finished", message="", data={"result": result}))

        assert embed.title == "🎉 Anton Complete"
        fields = {f["name"]: f["value"] for f in embed.fields}
        assert fields["Completed"] == "4"
        assert fields["Duration"] == "1m 5s"

    def test_failed_and_stopped_runs(self):
        failed = format_run_finished(
            make_result(stop_reason="fatal_error", final_state=RunState.FAILED, error="git broke")
        )
        stopped = format_run_finished(make_result(stop_reason="abort", final_state=RunState.IDLE))

        assert failed.title == "💥 Anton Failed"
        assert "git broke" in failed.description
        assert stopped.title == "⏹️ Anton Stopped"


class TestDiscordNotifier:
    """Test the progress callback."""

    @pytest.mark.asyncio
    async def test_sends_embed_for_forwarded_events(self):
        notifier = DiscordNotifier(WEBHOOK)

        with patch("anton.discord_notifier.send_discord_message", new_callable=AsyncMock) as mock_send:
            await notifier(ProgressEvent(kind="task_skipped", message="skipped X"))
            await notifier(ProgressEvent(kind="heartbeat", message="tick"))

        mock_send.assert_called_once()
        assert mock_send.call_args[0][0] == WEBHOOK
        assert mock_send.call_args[0][1].description == "skipped X"
