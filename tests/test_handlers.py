"""Tests for the event bus wiring between commands, scheduler and delivery log."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from exambot.domain.bus import EventBus
from exambot.domain.events import (
    ExamCreated,
    ExamDeleted,
    GuildSettingsChanged,
    ReminderFailed,
    ReminderSent,
)
from exambot.domain.handlers import HandlerRegistry
from exambot.domain.models import DeliveryOutcome, Exam, GuildSettings
from exambot.repos.memory import (
    DeliveryLogRepository,
    ExamRepository,
    GuildSettingsRepository,
)
from exambot.services.notifier import LogNotifier
from exambot.services.scheduler import ReminderScheduler

_NOW = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def env():
    """Fresh bus + repos + registry for each test."""
    bus = EventBus()
    exam_repo = ExamRepository()
    guild_repo = GuildSettingsRepository()
    delivery_log = DeliveryLogRepository()
    scheduler = ReminderScheduler(exam_repo, guild_repo, LogNotifier(), bus=bus)

    registry = HandlerRegistry(bus=bus, scheduler=scheduler, delivery_log=delivery_log)

    class Env:
        pass

    e = Env()
    e.bus = bus
    e.exam_repo = exam_repo
    e.guild_repo = guild_repo
    e.delivery_log = delivery_log
    e.scheduler = scheduler
    e.registry = registry
    return e


def _store_exam(env, **overrides) -> int:
    defaults = dict(guild_id=1, user_id=7, day=date(2030, 6, 10), name="Calculus")
    defaults.update(overrides)
    return env.exam_repo.insert(Exam(**defaults))


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


def test_exam_created_adds_to_schedule(env):
    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10))
    exam_id = _store_exam(env)

    env.bus.publish(ExamCreated(exam_id=exam_id))

    pending = env.scheduler.index.pending()
    assert [i.exam.id for i in pending] == [exam_id]
    assert pending[0].fire_at == datetime(2030, 6, 9, 21, 0, tzinfo=timezone.utc)


def test_exam_deleted_reloads_schedule(env):
    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10))
    keep = _store_exam(env, name="Keep")
    gone = _store_exam(env, name="Gone")
    env.bus.publish(ExamCreated(exam_id=keep))
    env.bus.publish(ExamCreated(exam_id=gone))

    env.exam_repo.delete(gone)
    env.bus.publish(ExamDeleted(exam_id=gone, guild_id=1))

    assert [i.exam.id for i in env.scheduler.index.pending()] == [keep]


def test_time_change_reschedules(env):
    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10))
    exam_id = _store_exam(env)
    env.bus.publish(ExamCreated(exam_id=exam_id))

    env.guild_repo.upsert(
        GuildSettings(guild_id=1, channel_id=10, message_time=time(8, 0), timezone="Europe/Brussels")
    )
    env.bus.publish(GuildSettingsChanged(guild_id=1, reschedule=True))

    pending = env.scheduler.index.pending()
    assert pending[0].fire_at == datetime(2030, 6, 9, 6, 0, tzinfo=timezone.utc)


def test_template_change_does_not_reload(env):
    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10))
    exam_id = _store_exam(env)
    env.bus.publish(ExamCreated(exam_id=exam_id))
    before = env.scheduler.index.pending()

    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10, format="Hi"))
    env.bus.publish(GuildSettingsChanged(guild_id=1, reschedule=False))

    after = env.scheduler.index.pending()
    assert [i.guild.format for i in after] == [i.guild.format for i in before]


def test_settings_for_new_guild_pick_up_existing_exams(env):
    exam_id = _store_exam(env)
    env.bus.publish(ExamCreated(exam_id=exam_id))
    assert len(env.scheduler.index) == 0

    env.guild_repo.upsert(GuildSettings(guild_id=1, channel_id=10))
    env.bus.publish(GuildSettingsChanged(guild_id=1, reschedule=True))

    assert [i.exam.id for i in env.scheduler.index.pending()] == [exam_id]


# ---------------------------------------------------------------------------
# Delivery log
# ---------------------------------------------------------------------------


def test_reminder_sent_is_logged(env):
    env.bus.publish(
        ReminderSent(
            exam_id=3, guild_id=1, channel_id=10, user_id=7,
            text="Good luck with Calculus!", sent_at=_NOW,
        )
    )

    records = env.delivery_log.list_for_exam(3)
    assert len(records) == 1
    assert records[0].outcome == DeliveryOutcome.SENT
    assert records[0].timestamp == _NOW
    assert records[0].detail == "Good luck with Calculus!"


def test_reminder_failed_is_logged(env):
    env.bus.publish(
        ReminderFailed(
            exam_id=3, guild_id=1, channel_id=10, user_id=7,
            error="Missing Permissions", failed_at=_NOW,
        )
    )

    records = env.delivery_log.list_all()
    assert [r.outcome for r in records] == [DeliveryOutcome.FAILED]
    assert records[0].detail == "Missing Permissions"


def test_delivery_log_drops_oldest_entries_when_full():
    bus = EventBus()
    delivery_log = DeliveryLogRepository(maxlen=2)
    scheduler = ReminderScheduler(
        ExamRepository(), GuildSettingsRepository(), LogNotifier(), bus=bus
    )
    HandlerRegistry(bus=bus, scheduler=scheduler, delivery_log=delivery_log)

    for exam_id in (1, 2, 3):
        bus.publish(
            ReminderSent(
                exam_id=exam_id, guild_id=1, channel_id=10, user_id=7,
                text="Good luck!", sent_at=_NOW + timedelta(minutes=exam_id),
            )
        )

    assert [r.exam_id for r in delivery_log.list_all()] == [2, 3]
    assert delivery_log.list_for_exam(1) == []
