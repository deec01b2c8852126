"""Turns an exam date and guild settings into the UTC instant its reminder fires."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import tz

from exambot.domain.errors import InvalidScheduleConfigError
from exambot.domain.models import Exam, GuildSettings, ScheduledExam

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(days=1)


def load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleConfigError(f"Unknown timezone: {name!r}") from exc


def resolve_fire_time(day: date, message_time: time, timezone_name: str) -> datetime:
    """Return the UTC instant one day before *day* at *message_time* local time.

    Local times that don't exist (spring-forward gap) are read as if they were
    UTC and shifted by the zone's offset at that instant. Local times that
    occur twice (fall-back fold) resolve to the first occurrence.
    """
    zone = load_zone(timezone_name)
    naive = datetime.combine(day - REMINDER_LEAD, message_time)

    if not tz.datetime_exists(naive, zone):
        offset = naive.replace(tzinfo=timezone.utc).astimezone(zone).utcoffset()
        logger.debug(
            "%s does not exist in %s, using offset %s", naive, timezone_name, offset
        )
        return (naive - offset).replace(tzinfo=timezone.utc)

    if tz.datetime_ambiguous(naive, zone):
        logger.debug("%s is ambiguous in %s, using first occurrence", naive, timezone_name)

    return naive.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)


def schedule_exam(exam: Exam, guild: GuildSettings) -> ScheduledExam:
    """Pair *exam* with *guild* and the instant its reminder fires."""
    fire_at = resolve_fire_time(exam.day, guild.message_time, guild.timezone)
    return ScheduledExam(fire_at=fire_at, exam=exam, guild=guild)
