"""FastAPI application, the entry point for the exam reminder service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException

from exambot.core.config import Settings, get_settings
from exambot.domain.bus import EventBus
from exambot.domain.errors import DuplicateExamError
from exambot.domain.events import ExamCreated, ExamDeleted, GuildSettingsChanged
from exambot.domain.handlers import HandlerRegistry
from exambot.domain.models import (
    AcceptParseResponse,
    ChangeParseUserRequest,
    CreateExamRequest,
    DeliveryRecord,
    Exam,
    GuildSettings,
    GuildSettingsUpdate,
    ParseRequest,
    ParseSession,
    ScheduledExam,
    SettingsPreview,
)
from exambot.repos.memory import (
    DeliveryLogRepository,
    ExamRepository,
    GuildSettingsRepository,
    ParseSessionRepository,
)
from exambot.services.notifier import DiscordNotifier, LogNotifier, Notifier
from exambot.services.parser import parse_schedule
from exambot.services.scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

SAMPLE_EXAM_NAME = "Algorithms and Datastructures"


def build_notifier(settings: Settings) -> Notifier:
    if settings.discord_token:
        return DiscordNotifier(
            settings.discord_token,
            api_base=settings.discord_api_base,
            timeout=settings.http_timeout_seconds,
        )
    logger.info("No Discord token configured, reminders will only be logged")
    return LogNotifier()


settings = get_settings()
logging.basicConfig(level=settings.log_level, format=settings.log_format)

# ── Singletons (created at import time for simplicity) ────────────────
event_bus = EventBus()
exam_repo = ExamRepository()
guild_repo = GuildSettingsRepository()
parse_session_repo = ParseSessionRepository()
delivery_log_repo = DeliveryLogRepository(maxlen=settings.delivery_log_size)
notifier = build_notifier(settings)

scheduler = ReminderScheduler(
    exam_repo,
    guild_repo,
    notifier,
    bus=event_bus,
    tick_seconds=settings.tick_seconds,
)

handler_registry = HandlerRegistry(
    bus=event_bus,
    scheduler=scheduler,
    delivery_log=delivery_log_repo,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.scheduler_enabled:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        if isinstance(notifier, DiscordNotifier):
            await notifier.aclose()


app = FastAPI(title="Exam Reminder Service", lifespan=lifespan)


def _require_session(guild_id: int, author_id: int) -> ParseSession:
    session = parse_session_repo.get(guild_id, author_id)
    if session is None:
        raise HTTPException(
            status_code=404,
            detail="No ongoing parse interaction; submit a schedule to /parse first",
        )
    return session


# ── Guild settings ────────────────────────────────────────────────────


@app.get("/guilds/{guild_id}/settings", response_model=GuildSettings)
def get_guild_settings(guild_id: int) -> GuildSettings:
    stored = guild_repo.get(guild_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="No settings saved for this guild")
    return stored


@app.put("/guilds/{guild_id}/settings", response_model=GuildSettings)
def update_guild_settings(guild_id: int, body: GuildSettingsUpdate) -> GuildSettings:
    """Create or partially update a guild's settings.

    A change of time or timezone moves every reminder in the guild, so it
    triggers a full reschedule.
    """
    current = guild_repo.get(guild_id)
    changes = body.model_dump(exclude_none=True)

    if current is None:
        if body.channel_id is None:
            raise HTTPException(
                status_code=400, detail="channel_id is required for a new guild"
            )
        updated = GuildSettings(guild_id=guild_id, **changes)
        reschedule = True
    else:
        updated = current.model_copy(update=changes)
        reschedule = (updated.message_time, updated.timezone) != (
            current.message_time,
            current.timezone,
        )

    guild_repo.upsert(updated)
    event_bus.publish(GuildSettingsChanged(guild_id=guild_id, reschedule=reschedule))
    return updated


@app.get("/guilds/{guild_id}/settings/preview", response_model=SettingsPreview)
def preview_guild_message(guild_id: int) -> SettingsPreview:
    """Render the guild's template for a nameless and a named sample exam."""
    stored = get_guild_settings(guild_id)
    today = datetime.now(timezone.utc).date()
    unnamed = Exam(guild_id=guild_id, user_id=0, day=today)
    named = Exam(guild_id=guild_id, user_id=0, day=today, name=SAMPLE_EXAM_NAME)
    return SettingsPreview(
        format=stored.format,
        unnamed=notifier.render(stored.format, unnamed),
        named=notifier.render(stored.format, named),
    )


# ── Exams ─────────────────────────────────────────────────────────────


@app.post("/guilds/{guild_id}/exams", response_model=Exam, status_code=201)
def create_exam(guild_id: int, body: CreateExamRequest) -> Exam:
    exam = Exam(guild_id=guild_id, user_id=body.user_id, day=body.day, name=body.name)
    try:
        exam_id = exam_repo.insert(exam)
    except DuplicateExamError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    # Publish to the event bus, which adds the exam to the schedule.
    event_bus.publish(ExamCreated(exam_id=exam_id))
    return exam_repo.get(exam_id)


@app.get("/guilds/{guild_id}/exams", response_model=list[Exam])
def list_exams(guild_id: int, user_id: int | None = None) -> list[Exam]:
    if user_id is not None:
        return exam_repo.list_for_user(guild_id, user_id)
    return exam_repo.list_for_guild(guild_id)


@app.get("/exams/{exam_id}", response_model=Exam)
def get_exam(exam_id: int) -> Exam:
    exam = exam_repo.get(exam_id)
    if exam is None:
        raise HTTPException(status_code=404, detail=f"No exam with id {exam_id} exists")
    return exam


@app.delete("/exams/{exam_id}")
def delete_exam(exam_id: int) -> dict:
    exam = get_exam(exam_id)
    exam_repo.delete(exam_id)
    event_bus.publish(ExamDeleted(exam_id=exam_id, guild_id=exam.guild_id))
    return {"status": "deleted", "exam_id": exam_id}


# ── Schedule parsing ──────────────────────────────────────────────────


@app.post("/guilds/{guild_id}/parse", response_model=ParseSession)
def start_parse(guild_id: int, payload: ParseRequest) -> ParseSession:
    """Parse a pasted schedule and keep the result for review.

    Only a parse that found at least one exam replaces the author's pending
    session.
    """
    today = datetime.now(timezone.utc).date()
    exams, issues = parse_schedule(payload.text, today)
    session = ParseSession(
        guild_id=guild_id,
        author_id=payload.author_id,
        user_id=payload.user_id if payload.user_id is not None else payload.author_id,
        exams=exams,
        issues=issues,
    )
    if exams:
        parse_session_repo.put(session)
    return session


@app.get("/guilds/{guild_id}/parse/{author_id}", response_model=ParseSession)
def get_parse(guild_id: int, author_id: int) -> ParseSession:
    return _require_session(guild_id, author_id)


@app.post("/guilds/{guild_id}/parse/{author_id}/accept", response_model=AcceptParseResponse)
def accept_parse(guild_id: int, author_id: int) -> AcceptParseResponse:
    session = _require_session(guild_id, author_id)
    parse_session_repo.pop(guild_id, author_id)

    exam_ids: list[int] = []
    duplicates = 0
    for parsed in session.exams:
        exam = Exam(
            guild_id=guild_id,
            user_id=session.user_id,
            day=parsed.day,
            name=parsed.name,
        )
        try:
            exam_id = exam_repo.insert(exam)
        except DuplicateExamError:
            duplicates += 1
            continue
        event_bus.publish(ExamCreated(exam_id=exam_id))
        exam_ids.append(exam_id)

    return AcceptParseResponse(
        inserted=len(exam_ids), duplicates=duplicates, exam_ids=exam_ids
    )


@app.post("/guilds/{guild_id}/parse/{author_id}/reject")
def reject_parse(guild_id: int, author_id: int) -> dict:
    _require_session(guild_id, author_id)
    parse_session_repo.pop(guild_id, author_id)
    return {"status": "rejected"}


@app.delete("/guilds/{guild_id}/parse/{author_id}/exams/{index}", response_model=ParseSession)
def remove_parsed_exam(guild_id: int, author_id: int, index: int) -> ParseSession:
    """Drop one parsed exam; *index* is 1-based as shown to the user."""
    session = _require_session(guild_id, author_id)
    if not 1 <= index <= len(session.exams):
        raise HTTPException(status_code=400, detail="Invalid index")
    del session.exams[index - 1]
    return session


@app.put("/guilds/{guild_id}/parse/{author_id}/user", response_model=ParseSession)
def change_parse_user(
    guild_id: int, author_id: int, body: ChangeParseUserRequest
) -> ParseSession:
    session = _require_session(guild_id, author_id)
    session.user_id = body.user_id
    return session


# ── Scheduler ─────────────────────────────────────────────────────────


@app.get("/scheduler/pending", response_model=list[ScheduledExam])
def list_pending() -> list[ScheduledExam]:
    return scheduler.index.pending()


@app.post("/tick")
async def tick(now: datetime | None = None) -> dict:
    """Fire every reminder due at *now* and wait for the deliveries.

    Defaults to ``datetime.now(timezone.utc)`` when omitted; a naive value is
    read as UTC.
    """
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    started = scheduler.run_cycle(current_time)
    # A crashed dispatch counts as undelivered; the others still report.
    results = await asyncio.gather(
        *(task for _, task in started), return_exceptions=True
    )

    return {
        "time": current_time.isoformat(),
        "reminders_fired": [item.exam.id for item, _ in started],
        "delivered": [
            item.exam.id for (item, _), ok in zip(started, results) if ok is True
        ],
    }


@app.get("/deliveries", response_model=list[DeliveryRecord])
def list_deliveries(exam_id: int | None = None) -> list[DeliveryRecord]:
    if exam_id is not None:
        return delivery_log_repo.list_for_exam(exam_id)
    return delivery_log_repo.list_all()
