"""Domain models for the exam reminder service."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from exambot.services.formatter import DEFAULT_FORMAT

DEFAULT_MESSAGE_TIME = time(21, 0)
DEFAULT_TIMEZONE = "UTC"


class IssueSeverity(StrEnum):
    WARNING = "warning"
    ERROR = "error"


class DeliveryOutcome(StrEnum):
    SENT = "sent"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {value!r}") from exc
    return value


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Exam(BaseModel):
    id: int = 0
    guild_id: int
    user_id: int
    day: date
    name: str = ""

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class GuildSettings(BaseModel):
    guild_id: int
    channel_id: int
    message_time: time = DEFAULT_MESSAGE_TIME
    timezone: str = DEFAULT_TIMEZONE
    format: str = DEFAULT_FORMAT

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        return _check_timezone(value)


class ScheduledExam(BaseModel):
    """An exam paired with the settings it was scheduled under."""

    fire_at: datetime
    exam: Exam
    guild: GuildSettings

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.fire_at, self.exam.id)


class ParsedExam(BaseModel):
    day: date
    name: str

    def __str__(self) -> str:
        return f"{self.day.isoformat()} - {self.name}"


class ParseIssue(BaseModel):
    severity: IssueSeverity = IssueSeverity.ERROR
    line: int
    column: int
    message: str
    part: str = ""
    mark_start: int | None = None
    mark_end: int | None = None

    def describe(self) -> str:
        """Render the issue as a diagnostic with the offending text underlined."""
        header = (
            f"**{self.severity} while parsing: {self.message}**\n"
            f" -> line {self.line + 1}, column {self.column + 1}\n"
        )
        body = self.part
        if (
            self.mark_start is not None
            and self.mark_end is not None
            and self.mark_end > self.mark_start
        ):
            body += "\n" + " " * self.mark_start + "^" * (self.mark_end - self.mark_start)
        if body:
            header += f"```\n{body}\n```"
        return header


class ParseSession(BaseModel):
    guild_id: int
    author_id: int
    user_id: int
    exams: list[ParsedExam] = Field(default_factory=list)
    issues: list[ParseIssue] = Field(default_factory=list)


class DeliveryRecord(BaseModel):
    exam_id: int
    guild_id: int
    channel_id: int
    user_id: int
    outcome: DeliveryOutcome
    timestamp: datetime = Field(default_factory=_utcnow)
    detail: str = ""


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class GuildSettingsUpdate(BaseModel):
    channel_id: int | None = None
    message_time: time | None = None
    timezone: str | None = None
    format: str | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_timezone(value)


class SettingsPreview(BaseModel):
    format: str
    unnamed: str
    named: str


class CreateExamRequest(BaseModel):
    user_id: int
    day: date
    name: str = ""


class ParseRequest(BaseModel):
    author_id: int
    user_id: int | None = None
    text: str


class ChangeParseUserRequest(BaseModel):
    user_id: int


class AcceptParseResponse(BaseModel):
    inserted: int
    duplicates: int
    exam_ids: list[int] = Field(default_factory=list)
