"""Domain events emitted by the command layer and the scheduler."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ExamCreated(BaseModel):
    """Fired after a new Exam is stored."""

    exam_id: int


class ExamDeleted(BaseModel):
    """Fired after an Exam is removed from the store."""

    exam_id: int
    guild_id: int


class GuildSettingsChanged(BaseModel):
    """Fired after a guild's settings are upserted.

    ``reschedule`` is set when the time or timezone changed, which moves the
    fire time of every exam in the guild.
    """

    guild_id: int
    reschedule: bool = False


class ReminderSent(BaseModel):
    """Fired when a reminder message was delivered."""

    exam_id: int
    guild_id: int
    channel_id: int
    user_id: int
    text: str
    sent_at: datetime


class ReminderFailed(BaseModel):
    """Fired when rendering or delivering a reminder raised."""

    exam_id: int
    guild_id: int
    channel_id: int
    user_id: int
    error: str
    failed_at: datetime
