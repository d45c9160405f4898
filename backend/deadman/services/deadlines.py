"""
Deadline math for check-ins: next deadline and the reminder milestones leading up to it.

Days are fixed 24h units. Milestones are data: a percentage milestone fires a fraction
of the interval after the last check-in, an absolute one a fixed lead time before the
deadline. Nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from deadman.models.enums import ReminderType


@dataclass(frozen=True)
class Milestone:
    type: ReminderType
    fraction: float | None = None
    lead_time: timedelta | None = None


@dataclass(frozen=True)
class ScheduledReminder:
    type: ReminderType
    fires_at: datetime


MILESTONES: tuple[Milestone, ...] = (
    Milestone(ReminderType.PERCENT_25, fraction=0.25),
    Milestone(ReminderType.PERCENT_50, fraction=0.50),
    Milestone(ReminderType.DAYS_7, lead_time=timedelta(days=7)),
    Milestone(ReminderType.DAYS_3, lead_time=timedelta(days=3)),
    Milestone(ReminderType.HOURS_24, lead_time=timedelta(hours=24)),
    Milestone(ReminderType.HOURS_12, lead_time=timedelta(hours=12)),
    Milestone(ReminderType.HOURS_1, lead_time=timedelta(hours=1)),
)


def interval_delta(interval_days: int) -> timedelta:
    return timedelta(seconds=interval_days * 86400)


def compute_next_check_in(last_check_in: datetime, interval_days: int) -> datetime:
    if interval_days < 1:
        raise ValueError("interval_days must be positive")
    return last_check_in + interval_delta(interval_days)


def compute_reminder_schedule(
    deadline: datetime,
    interval_days: int,
    now: datetime,
    milestones: tuple[Milestone, ...] = MILESTONES,
) -> list[ScheduledReminder]:
    """
    Fire times for each milestone, in milestone order.
    Entries not strictly after `now` or not strictly before `deadline` are dropped.
    """
    last_check_in = deadline - interval_delta(interval_days)
    schedule: list[ScheduledReminder] = []
    for m in milestones:
        if m.fraction is not None:
            fires_at = last_check_in + interval_delta(interval_days) * m.fraction
        elif m.lead_time is not None:
            fires_at = deadline - m.lead_time
        else:
            continue
        if now < fires_at < deadline:
            schedule.append(ScheduledReminder(type=m.type, fires_at=fires_at))
    return schedule
