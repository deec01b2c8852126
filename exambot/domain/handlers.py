"""Domain event handlers, wired up at application startup."""

from __future__ import annotations

import logging

from exambot.domain.bus import EventBus
from exambot.domain.events import (
    ExamCreated,
    ExamDeleted,
    GuildSettingsChanged,
    ReminderFailed,
    ReminderSent,
)
from exambot.domain.models import DeliveryOutcome, DeliveryRecord
from exambot.repos.memory import DeliveryLogRepository
from exambot.services.scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Wires domain-event handlers to the bus with access to the scheduler."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: ReminderScheduler,
        delivery_log: DeliveryLogRepository,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.delivery_log = delivery_log
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(ExamCreated, self.on_exam_created)
        self.bus.subscribe(ExamDeleted, self.on_exam_deleted)
        self.bus.subscribe(GuildSettingsChanged, self.on_guild_settings_changed)
        self.bus.subscribe(ReminderSent, self.on_reminder_sent)
        self.bus.subscribe(ReminderFailed, self.on_reminder_failed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_exam_created(self, event: ExamCreated) -> None:
        self.scheduler.add(event.exam_id)

    def on_exam_deleted(self, event: ExamDeleted) -> None:
        # There is no removal by id; rebuilding drops the deleted exam.
        self.scheduler.load()

    def on_guild_settings_changed(self, event: GuildSettingsChanged) -> None:
        # Channel and template edits are picked up at dispatch time.
        if event.reschedule:
            logger.info("Rescheduling after settings change in guild %s", event.guild_id)
            self.scheduler.load()

    def on_reminder_sent(self, event: ReminderSent) -> None:
        self.delivery_log.add(
            DeliveryRecord(
                exam_id=event.exam_id,
                guild_id=event.guild_id,
                channel_id=event.channel_id,
                user_id=event.user_id,
                outcome=DeliveryOutcome.SENT,
                timestamp=event.sent_at,
                detail=event.text,
            )
        )

    def on_reminder_failed(self, event: ReminderFailed) -> None:
        self.delivery_log.add(
            DeliveryRecord(
                exam_id=event.exam_id,
                guild_id=event.guild_id,
                channel_id=event.channel_id,
                user_id=event.user_id,
                outcome=DeliveryOutcome.FAILED,
                timestamp=event.failed_at,
                detail=event.error,
            )
        )
