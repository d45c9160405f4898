"""Tests for deadline math and the reminder milestone schedule."""

import random
from datetime import timedelta

import pytest

from deadman.models.enums import ReminderType
from deadman.services.deadlines import (
    MILESTONES,
    Milestone,
    compute_next_check_in,
    compute_reminder_schedule,
)
from helpers import NOW


def test_next_check_in_is_fixed_24h_days():
    assert compute_next_check_in(NOW, 30) == NOW + timedelta(seconds=30 * 86400)


def test_next_check_in_across_leap_day():
    last = NOW.replace(month=2, day=28, year=2028)
    assert compute_next_check_in(last, 2) == last + timedelta(hours=48)
    assert compute_next_check_in(last, 2).day == 1


def test_next_check_in_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        compute_next_check_in(NOW, 0)


def test_thirty_day_schedule_has_every_milestone_in_order():
    deadline = NOW + timedelta(days=30)
    schedule = compute_reminder_schedule(deadline, 30, NOW)
    assert [s.type for s in schedule] == [m.type for m in MILESTONES]
    by_type = {s.type: s.fires_at for s in schedule}
    assert by_type[ReminderType.PERCENT_25] == NOW + timedelta(days=7.5)
    assert by_type[ReminderType.PERCENT_50] == NOW + timedelta(days=15)
    assert by_type[ReminderType.DAYS_7] == deadline - timedelta(days=7)
    assert by_type[ReminderType.HOURS_1] == deadline - timedelta(hours=1)


def test_short_interval_drops_lead_times_longer_than_interval():
    deadline = NOW + timedelta(days=2)
    types = [s.type for s in compute_reminder_schedule(deadline, 2, NOW)]
    assert ReminderType.DAYS_7 not in types
    assert ReminderType.DAYS_3 not in types
    assert types == [
        ReminderType.PERCENT_25,
        ReminderType.PERCENT_50,
        ReminderType.HOURS_24,
        ReminderType.HOURS_12,
        ReminderType.HOURS_1,
    ]


def test_schedule_drops_milestones_already_passed():
    deadline = NOW + timedelta(days=30)
    later = deadline - timedelta(hours=20)
    schedule = compute_reminder_schedule(deadline, 30, later)
    assert [s.type for s in schedule] == [ReminderType.HOURS_12, ReminderType.HOURS_1]


def test_schedule_after_deadline_is_empty():
    deadline = NOW + timedelta(days=10)
    assert compute_reminder_schedule(deadline, 10, deadline) == []
    assert compute_reminder_schedule(deadline, 10, deadline + timedelta(days=1)) == []


def test_milestones_are_data():
    custom = (Milestone(ReminderType.HOURS_1, lead_time=timedelta(minutes=30)),)
    deadline = NOW + timedelta(days=3)
    schedule = compute_reminder_schedule(deadline, 3, NOW, milestones=custom)
    assert len(schedule) == 1
    assert schedule[0].fires_at == deadline - timedelta(minutes=30)


@pytest.mark.parametrize("seed", range(20))
def test_schedule_is_deterministic_and_bounded(seed):
    rng = random.Random(seed)
    interval = rng.randint(2, 1095)
    last = NOW + timedelta(seconds=rng.randint(0, 10**8))
    deadline = compute_next_check_in(last, interval)
    now = last + timedelta(seconds=rng.randint(0, interval * 86400))
    first = compute_reminder_schedule(deadline, interval, now)
    second = compute_reminder_schedule(compute_next_check_in(last, interval), interval, now)
    assert first == second
    for item in first:
        assert now < item.fires_at < deadline
    assert len({s.type for s in first}) == len(first)
