"""Errors raised by the store, the scheduler and the notifiers."""

from __future__ import annotations


class StoreUnavailableError(RuntimeError):
    """The backing store could not be reached."""


class DuplicateExamError(ValueError):
    """An identical exam (guild, user, day, name) is already stored."""


class InvalidScheduleConfigError(ValueError):
    """Guild settings that cannot be turned into a fire time."""


class DeliveryError(RuntimeError):
    """A reminder message could not be delivered."""
