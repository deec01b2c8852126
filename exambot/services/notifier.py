"""Notifiers render reminder text and deliver it to a guild channel.

``LogNotifier`` only logs (and keeps an outbox), which is what local runs and
tests use. ``DiscordNotifier`` posts to a channel through the Discord REST API
and is selected when a bot token is configured.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from exambot.domain.errors import DeliveryError
from exambot.domain.models import Exam
from exambot.services.formatter import format_exam

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"


class Notifier(Protocol):
    def render(self, template: str, exam: Exam) -> str: ...

    async def deliver(self, channel_id: int, user_id: int, text: str) -> None: ...


def mention(user_id: int) -> str:
    return f"<@{user_id}>"


class LogNotifier:
    def __init__(self) -> None:
        self.outbox: list[tuple[int, int, str]] = []

    def render(self, template: str, exam: Exam) -> str:
        return format_exam(template, exam)

    async def deliver(self, channel_id: int, user_id: int, text: str) -> None:
        logger.info("Reminder for %s in channel %s: %s", mention(user_id), channel_id, text)
        self.outbox.append((channel_id, user_id, text))


class DiscordNotifier:
    """Posts reminders as bot messages, mentioning only the exam's user."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DISCORD_API_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={"Authorization": f"Bot {token}"},
            timeout=timeout,
            transport=transport,
        )

    def render(self, template: str, exam: Exam) -> str:
        return format_exam(template, exam)

    async def deliver(self, channel_id: int, user_id: int, text: str) -> None:
        payload = {
            "content": f"{mention(user_id)}\n{text}",
            "allowed_mentions": {"parse": [], "users": [str(user_id)]},
        }
        try:
            response = await self._client.post(
                f"/channels/{channel_id}/messages", json=payload
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Discord request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryError(
                f"Discord rejected message for channel {channel_id} "
                f"({response.status_code}): {_error_message(response)}"
            )

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return response.text[:200] or "no response body"
