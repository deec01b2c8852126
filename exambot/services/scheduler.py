"""In-memory reminder schedule and the loop that dispatches due reminders.

The schedule is a projection of the store: it can be rebuilt at any time with
``load()`` and is never treated as the source of truth. Dispatch re-reads the
exam and its guild settings, so a reminder for an exam deleted after it was
queued is dropped and edits to the template or channel take effect.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from exambot.domain.bus import EventBus
from exambot.domain.errors import InvalidScheduleConfigError
from exambot.domain.events import ReminderFailed, ReminderSent
from exambot.domain.models import Exam, GuildSettings, ScheduledExam
from exambot.repos.memory import ExamRepository, GuildSettingsRepository
from exambot.services.notifier import Notifier
from exambot.services.reminders import schedule_exam

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 60.0

_HeapEntry = tuple[datetime, int, int, ScheduledExam]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleIndex:
    """Thread-safe min-heap of scheduled exams ordered by (fire_at, exam id).

    The lock only guards the heap itself; callers do their store reads before
    touching the index.
    """

    def __init__(self) -> None:
        self._heap: list[_HeapEntry] = []
        # Breaks ties between entries for the same exam so items never compare.
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def _entry(self, item: ScheduledExam) -> _HeapEntry:
        return (item.fire_at, item.exam.id, next(self._seq), item)

    def replace(self, items: list[ScheduledExam]) -> None:
        """Swap the whole contents for *items* in one step."""
        with self._lock:
            heap = [self._entry(item) for item in items]
            heapq.heapify(heap)
            self._heap = heap

    def push(self, item: ScheduledExam) -> None:
        with self._lock:
            heapq.heappush(self._heap, self._entry(item))

    def pop_due(self, now: datetime) -> list[ScheduledExam]:
        """Remove and return every item with ``fire_at <= now``, earliest first."""
        due: list[ScheduledExam] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[3])
        return due

    def pending(self) -> list[ScheduledExam]:
        with self._lock:
            entries = sorted(self._heap)
        return [entry[3] for entry in entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


class ReminderScheduler:
    """Keeps the schedule in sync with the store and fires due reminders."""

    def __init__(
        self,
        exam_repo: ExamRepository,
        guild_repo: GuildSettingsRepository,
        notifier: Notifier,
        *,
        bus: EventBus | None = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.exam_repo = exam_repo
        self.guild_repo = guild_repo
        self.notifier = notifier
        self.bus = bus
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.index = ScheduleIndex()
        self._task: asyncio.Task | None = None
        self._dispatches: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Schedule maintenance
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Rebuild the schedule from every exam in the store.

        Exams whose guild has no settings are left out. Store errors propagate
        and leave the current schedule untouched. Returns the number of
        scheduled exams.
        """
        exams = self.exam_repo.list_all()
        items: list[ScheduledExam] = []
        for exam in exams:
            guild = self.guild_repo.get(exam.guild_id)
            if guild is None:
                continue
            item = self._schedule(exam, guild)
            if item is not None:
                items.append(item)

        self.index.replace(items)
        logger.info("Loaded %d of %d exams into the schedule", len(items), len(exams))
        return len(items)

    def add(self, exam_id: int) -> ScheduledExam | None:
        """Schedule one newly stored exam without rebuilding the schedule."""
        exam = self.exam_repo.get(exam_id)
        if exam is None:
            return None
        guild = self.guild_repo.get(exam.guild_id)
        if guild is None:
            return None

        item = self._schedule(exam, guild)
        if item is not None:
            self.index.push(item)
            logger.debug("Scheduled exam %s at %s", exam_id, item.fire_at.isoformat())
        return item

    def pop_due(self, now: datetime | None = None) -> list[ScheduledExam]:
        return self.index.pop_due(now or self.clock())

    def _schedule(self, exam: Exam, guild: GuildSettings) -> ScheduledExam | None:
        try:
            return schedule_exam(exam, guild)
        except InvalidScheduleConfigError as exc:
            logger.warning("Skipping exam %s of guild %s: %s", exam.id, guild.guild_id, exc)
            return None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def run_cycle(
        self, now: datetime | None = None
    ) -> list[tuple[ScheduledExam, asyncio.Task]]:
        """Pop every due reminder and start a dispatch task for each.

        Must be called from a running event loop. Returns each popped item with
        its dispatch task; the tasks are not awaited here.
        """
        started = []
        for item in self.pop_due(now):
            task = asyncio.create_task(
                self.dispatch(item.exam.id), name=f"exam-reminder-{item.exam.id}"
            )
            self._dispatches.add(task)
            task.add_done_callback(self._dispatch_done)
            started.append((item, task))
        if started:
            logger.info("Dispatching %d reminder(s)", len(started))
        return started

    async def dispatch(self, exam_id: int) -> bool:
        """Send the reminder for *exam_id* using the store's current data.

        Returns False when the exam or its guild settings are gone, or when
        delivery failed. Failures are reported, never retried.
        """
        exam = self.exam_repo.get(exam_id)
        guild = self.guild_repo.get(exam.guild_id) if exam is not None else None
        if exam is None or guild is None:
            logger.debug("Exam %s vanished before its reminder was sent", exam_id)
            return False

        try:
            text = self.notifier.render(guild.format, exam)
            await self.notifier.deliver(guild.channel_id, exam.user_id, text)
        except Exception as exc:
            logger.exception(
                "Failed to deliver reminder for exam %s to channel %s",
                exam_id,
                guild.channel_id,
            )
            self._publish(
                ReminderFailed(
                    exam_id=exam.id,
                    guild_id=guild.guild_id,
                    channel_id=guild.channel_id,
                    user_id=exam.user_id,
                    error=str(exc) or type(exc).__name__,
                    failed_at=self.clock(),
                )
            )
            return False

        logger.info("Sent reminder for exam %s to channel %s", exam_id, guild.channel_id)
        self._publish(
            ReminderSent(
                exam_id=exam.id,
                guild_id=guild.guild_id,
                channel_id=guild.channel_id,
                user_id=exam.user_id,
                text=text,
                sent_at=self.clock(),
            )
        )
        return True

    def _publish(self, event: ReminderSent | ReminderFailed) -> None:
        if self.bus is not None:
            self.bus.publish(event)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reminder task %s crashed", task.get_name(), exc_info=exc)

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the dispatch loop on the running event loop and return its task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="exam-reminder-loop")
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and wait for reminders that are already being sent."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def _run(self) -> None:
        try:
            self.load()
        except Exception:
            logger.exception("Initial schedule load failed, starting with an empty schedule")

        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Scheduler cycle failed")

            next_tick += self.tick_seconds
            now = loop.time()
            if next_tick <= now:
                # Behind schedule: drop the missed ticks instead of bursting.
                missed = int((now - next_tick) // self.tick_seconds) + 1
                logger.warning("Scheduler fell behind, skipping %d tick(s)", missed)
                next_tick += missed * self.tick_seconds
            await asyncio.sleep(next_tick - now)
