"""
Unit tests for services/scheduler_service.py

Instants are given in UTC; June dates put London on BST (UTC+1) and
Toronto on EDT (UTC-4).
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from config.sync_config import SyncConfig
from services.scheduler_service import (
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    RefreshScheduler,
    seconds_until_next_check,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def scheduler():
    return RefreshScheduler(SyncConfig())


def test_interval_rule_fires_on_quarter_hour(scheduler):
    # 10:15 Toronto
    trigger = scheduler.check(utc(2024, 6, 3, 14, 15))

    assert trigger.should_refresh
    assert trigger.rules == ['api']


def test_interval_rule_ignores_off_boundary_minutes(scheduler):
    assert not scheduler.check(utc(2024, 6, 3, 14, 7)).should_refresh


def test_interval_rule_outside_business_hours(scheduler):
    # 21:00 and 05:45 Toronto
    assert not scheduler.check(utc(2024, 6, 4, 1, 0)).should_refresh
    assert not scheduler.check(utc(2024, 6, 3, 9, 45)).should_refresh


def test_cooldown_blocks_repeat_firing(scheduler):
    first = utc(2024, 6, 3, 14, 15)
    assert scheduler.check(first).should_refresh
    assert not scheduler.check(first + timedelta(seconds=30)).should_refresh
    # Next boundary is past the 12 minute cooldown
    assert scheduler.check(first + timedelta(minutes=15)).should_refresh


def test_fixed_hour_rule_fires_in_london(scheduler):
    # 10:00 London, 05:00 Toronto
    trigger = scheduler.check(utc(2024, 6, 3, 9, 0))

    assert trigger.should_refresh
    assert trigger.rules == ['shared_cache']


def test_fixed_hour_rule_respects_dst():
    scheduler = RefreshScheduler(SyncConfig())
    # In January London is on GMT, so 10:00 local is 10:00 UTC
    assert 'shared_cache' not in scheduler.check(utc(2024, 1, 15, 9, 0)).rules
    assert 'shared_cache' in scheduler.check(utc(2024, 1, 15, 10, 0)).rules


def test_both_rules_raise_one_trigger(scheduler):
    # 14:00 London is 09:00 Toronto
    trigger = scheduler.check(utc(2024, 6, 3, 13, 0))

    assert trigger.should_refresh
    assert sorted(trigger.rules) == ['api', 'shared_cache']


def test_next_refresh_inside_window(scheduler):
    # 10:07 Toronto -> 10:15 Toronto
    assert scheduler.next_refresh_time(utc(2024, 6, 3, 14, 7)) == utc(2024, 6, 3, 14, 15)


def test_next_refresh_after_hours(scheduler):
    # 22:00 Toronto; London 10:00 tomorrow (09:00 UTC) beats Toronto 06:00 (10:00 UTC)
    assert scheduler.next_refresh_time(utc(2024, 6, 4, 2, 0)) == utc(2024, 6, 4, 9, 0)


def test_next_refresh_is_aware_utc(scheduler):
    next_time = scheduler.next_refresh_time(utc(2024, 6, 3, 14, 7))
    assert next_time.tzinfo is not None
    assert next_time.utcoffset() == timedelta(0)


def test_schedule_status(scheduler):
    assert scheduler.schedule_status(utc(2024, 6, 3, 14, 7)) == STATUS_ACTIVE
    assert scheduler.schedule_status(utc(2024, 6, 4, 2, 0)) == STATUS_INACTIVE


def test_rule_status(scheduler):
    now = utc(2024, 6, 3, 14, 15)
    scheduler.check(now)
    statuses = {status.name: status for status in scheduler.get_rule_status(now)}

    assert statuses['api'].last_fired_at == now
    assert not statuses['api'].is_due
    assert statuses['shared_cache'].last_fired_at is None


@pytest.mark.asyncio
async def test_run_once_calls_refresh_and_marks_complete():
    callback = AsyncMock()
    scheduler = RefreshScheduler(SyncConfig(), refresh_callback=callback)

    assert await scheduler.run_once(utc(2024, 6, 3, 14, 15))
    callback.assert_awaited_once()
    assert scheduler.last_refresh_completed is not None
    assert not scheduler.is_refresh_running()

    assert not await scheduler.run_once(utc(2024, 6, 3, 14, 16))
    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_continuous_stops_after_max_iterations():
    scheduler = RefreshScheduler(SyncConfig(), refresh_callback=AsyncMock())
    await scheduler.run_continuous(check_interval_seconds=0.001, max_iterations=2)


@pytest.mark.asyncio
async def test_long_refresh_does_not_swallow_next_boundary():
    release = asyncio.Event()
    calls = []

    async def slow_refresh():
        calls.append(len(calls) + 1)
        if len(calls) == 1:
            await release.wait()

    scheduler = RefreshScheduler(SyncConfig(), refresh_callback=slow_refresh)

    # 08:45 Toronto: api fires and its refresh is still running at 09:00
    first = scheduler.dispatch(utc(2024, 6, 3, 12, 45))
    await asyncio.sleep(0)
    assert scheduler.is_refresh_running()

    # 09:00 Toronto is also 14:00 London
    second = scheduler.dispatch(utc(2024, 6, 3, 13, 0))
    assert second is not None
    # Both rules were recorded when the second trigger fired
    assert not scheduler.check(utc(2024, 6, 3, 13, 0)).should_refresh

    release.set()
    await asyncio.gather(first, second)

    assert calls == [1, 2]
    assert scheduler.last_completed('shared_cache') is not None
    assert not scheduler.is_refresh_running()


@pytest.mark.asyncio
async def test_failed_refresh_is_logged_and_marked_complete():
    scheduler = RefreshScheduler(SyncConfig(), refresh_callback=AsyncMock(side_effect=RuntimeError("boom")))

    assert await scheduler.run_once(utc(2024, 6, 3, 14, 15))
    assert scheduler.last_completed('api') is not None
    assert not scheduler.is_refresh_running()


def test_mark_complete_stamps_named_rules_only(scheduler):
    trigger = scheduler.check(utc(2024, 6, 3, 13, 0))
    assert sorted(trigger.rules) == ['api', 'shared_cache']

    trigger.mark_complete('shared_cache')

    assert scheduler.last_completed('shared_cache') is not None
    assert scheduler.last_completed('api') is None
    statuses = {status.name: status for status in scheduler.get_rule_status(utc(2024, 6, 3, 13, 1))}
    assert statuses['shared_cache'].last_completed_at == scheduler.last_completed('shared_cache')


def test_mark_complete_defaults_to_fired_rules(scheduler):
    trigger = scheduler.check(utc(2024, 6, 3, 14, 15))

    trigger.mark_complete()

    assert scheduler.last_completed('api') is not None
    assert scheduler.last_completed('shared_cache') is None


def test_mark_complete_rejects_unknown_rule(scheduler):
    with pytest.raises(ValueError):
        scheduler.mark_refresh_complete('nightly')


@pytest.mark.parametrize("now,interval,expected", [
    (120.0, 60, 60.0),
    (125.5, 60, 54.5),
    (179.0, 60, 1.0),
])
def test_checks_align_to_wall_clock(now, interval, expected):
    assert seconds_until_next_check(now, interval) == pytest.approx(expected)
