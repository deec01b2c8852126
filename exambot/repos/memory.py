"""In-memory repositories for exams, guild settings, parse sessions and the delivery log."""

from __future__ import annotations

import itertools
import threading
from collections import deque

from exambot.domain.errors import DuplicateExamError
from exambot.domain.models import (
    DeliveryRecord,
    Exam,
    GuildSettings,
    ParseSession,
)


class ExamRepository:
    """Dict-backed store for Exam instances, keyed by an assigned integer id.

    Reads return copies so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._store: dict[int, Exam] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def insert(self, exam: Exam) -> int:
        """Store *exam* under a fresh id and return that id.

        Raises ``DuplicateExamError`` if the same guild, user, day and name is
        already stored.
        """
        with self._lock:
            for stored in self._store.values():
                if (
                    stored.guild_id == exam.guild_id
                    and stored.user_id == exam.user_id
                    and stored.day == exam.day
                    and stored.name == exam.name
                ):
                    raise DuplicateExamError(
                        f"Exam already exists with id {stored.id}"
                    )
            exam_id = next(self._ids)
            self._store[exam_id] = exam.model_copy(update={"id": exam_id})
        return exam_id

    def get(self, exam_id: int) -> Exam | None:
        exam = self._store.get(exam_id)
        return exam.model_copy() if exam is not None else None

    def list_all(self) -> list[Exam]:
        return [e.model_copy() for e in list(self._store.values())]

    def list_for_guild(self, guild_id: int) -> list[Exam]:
        return sorted(
            (e.model_copy() for e in list(self._store.values()) if e.guild_id == guild_id),
            key=lambda e: (e.day, e.id),
        )

    def list_for_user(self, guild_id: int, user_id: int) -> list[Exam]:
        return [e for e in self.list_for_guild(guild_id) if e.user_id == user_id]

    def delete(self, exam_id: int) -> bool:
        with self._lock:
            return self._store.pop(exam_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._ids = itertools.count(1)


class GuildSettingsRepository:
    """Dict-backed store with one GuildSettings per guild."""

    def __init__(self) -> None:
        self._store: dict[int, GuildSettings] = {}

    def get(self, guild_id: int) -> GuildSettings | None:
        settings = self._store.get(guild_id)
        return settings.model_copy() if settings is not None else None

    def upsert(self, settings: GuildSettings) -> None:
        self._store[settings.guild_id] = settings.model_copy()


class ParseSessionRepository:
    """Pending parse sessions, at most one per (guild, author)."""

    def __init__(self) -> None:
        self._store: dict[tuple[int, int], ParseSession] = {}

    def get(self, guild_id: int, author_id: int) -> ParseSession | None:
        return self._store.get((guild_id, author_id))

    def put(self, session: ParseSession) -> None:
        self._store[(session.guild_id, session.author_id)] = session

    def pop(self, guild_id: int, author_id: int) -> ParseSession | None:
        return self._store.pop((guild_id, author_id), None)


DEFAULT_DELIVERY_LOG_SIZE = 1000


class DeliveryLogRepository:
    """Bounded log of reminder delivery outcomes; the oldest entries drop off first."""

    def __init__(self, maxlen: int = DEFAULT_DELIVERY_LOG_SIZE) -> None:
        self._entries: deque[DeliveryRecord] = deque(maxlen=maxlen)

    def add(self, record: DeliveryRecord) -> None:
        self._entries.append(record)

    def list_all(self) -> list[DeliveryRecord]:
        return sorted(self._entries, key=lambda r: r.timestamp)

    def list_for_exam(self, exam_id: int) -> list[DeliveryRecord]:
        return [r for r in self.list_all() if r.exam_id == exam_id]
