"""
Notification sinks for quiz lifecycle events.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
import discord

from .models import NotificationKind


APP_NAME = "QuizMe"


def format_notification(kind: NotificationKind, payload: Dict[str, Any]) -> str:
    """Human-readable message for a notification event."""
    if kind is NotificationKind.READY:
        return f"Your quiz is ready! {payload.get('question_count', 0)} questions generated."
    return f"Quiz generation failed: {payload.get('message', 'unknown error')}"


class Notifier(ABC):
    """Receives "ready"/"error" events; delivery is best effort."""

    @abstractmethod
    async def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Deliver one notification. Implementations must not raise."""


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        level = logging.INFO if kind is NotificationKind.READY else logging.WARNING
        self.logger.log(
            level,
            f"{APP_NAME}: {format_notification(kind, payload)}",
            extra={
                'event_type': f"notification_{kind.value}",
                'session_id': payload.get('session_id'),
                'timestamp': time.time()
            }
        )


class DiscordWebhookNotifier(Notifier):
    """Posts notifications as embeds to a Discord channel webhook."""

    READY_COLOR = 0x00ff00
    ERROR_COLOR = 0xff0000

    def __init__(self, webhook_url: str, http_session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize the notifier.

        Args:
            webhook_url: Discord webhook URL
            http_session: Optional shared aiohttp session; one is opened per message otherwise
        """
        self.webhook_url = webhook_url
        self.http_session = http_session
        self.logger = logging.getLogger(__name__)

    def build_embed(self, kind: NotificationKind, payload: Dict[str, Any]) -> discord.Embed:
        is_ready = kind is NotificationKind.READY
        embed = discord.Embed(
            title=f"✅ {APP_NAME}" if is_ready else f"❌ {APP_NAME}",
            description=format_notification(kind, payload),
            color=self.READY_COLOR if is_ready else self.ERROR_COLOR
        )
        if payload.get('source_title'):
            embed.add_field(name="Source", value=str(payload['source_title'])[:1024], inline=False)
        return embed

    async def _send(self, session: aiohttp.ClientSession, embed: discord.Embed) -> None:
        webhook = discord.Webhook.from_url(self.webhook_url, session=session)
        await webhook.send(embed=embed, username=APP_NAME)

    async def notify(self, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        embed = self.build_embed(kind, payload)
        try:
            if self.http_session is not None:
                await self._send(self.http_session, embed)
            else:
                async with aiohttp.ClientSession() as session:
                    await self._send(session, embed)
            self.logger.debug(f"Sent {kind.value} notification to Discord")
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.warning(f"Failed to deliver {kind.value} notification to Discord: {e}")
