"""
Refresh Scheduler for the Listing Sync Pipeline

This service decides when a background refresh is due, from cron-like rules
anchored to a timezone, and drives the resolver's refresh entry point.

Default rules (config/sync_config.yaml):
- shared_cache: 10:00 and 14:00 Europe/London, 3 h cooldown
- api: every 15 minutes from 06:00 to 21:00 America/Toronto, 12 min cooldown

Each rule keeps its own last firing time; the cooldown is measured from it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from config.sync_config import ScheduleRule, SyncConfig, get_config

logger = logging.getLogger(__name__)

STATUS_ACTIVE = 'Active (API refresh every 15 min)'
STATUS_INACTIVE = 'Inactive (Outside business hours)'


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def seconds_until_next_check(now: float, interval: float) -> float:
    """Seconds until the next multiple of interval on the wall clock"""
    remaining = interval - (now % interval)
    return remaining if remaining > 0 else interval


@dataclass
class RefreshTrigger:
    """
    Raised when at least one rule fires.

    Call mark_complete once the refresh finished, optionally naming the rules
    it served; with no names every rule in `rules` is stamped.
    """
    should_refresh: bool
    mark_complete: Callable[..., None]
    rules: List[str] = field(default_factory=list)
    fired_at: Optional[datetime] = None


@dataclass
class RuleStatus:
    """Status of one schedule rule"""
    name: str
    timezone: str
    last_fired_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None
    is_due: bool = False


class RefreshScheduler:
    """
    Scheduler for background refreshes.

    Manages:
    - Evaluating every rule against the current instant
    - Per-rule cooldowns
    - Computing the next firing across all rules
    - Running the refresh callback without overlapping runs
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        refresh_callback: Optional[Callable[[], Awaitable]] = None
    ):
        self.config = config or get_config()
        self.rules: List[ScheduleRule] = list(self.config.schedule)
        self.refresh_callback = refresh_callback

        self._last_fired: Dict[str, datetime] = {}
        self._last_completed: Dict[str, datetime] = {}
        self.last_refresh_completed: Optional[datetime] = None
        self._running = False
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Rule evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def _in_window(rule: ScheduleRule, local: datetime) -> bool:
        return rule.window_start_hour <= local.hour < rule.window_end_hour

    def _matches(self, rule: ScheduleRule, now: datetime) -> bool:
        local = now.astimezone(ZoneInfo(rule.timezone))
        if rule.is_interval_rule:
            return self._in_window(rule, local) and local.minute % rule.interval_minutes == 0
        return local.hour in rule.hours and local.minute == 0

    def _cooled_down(self, rule: ScheduleRule, now: datetime) -> bool:
        last = self._last_fired.get(rule.name)
        if last is None:
            return True
        return now - last > timedelta(minutes=rule.cooldown_minutes)

    def is_due(self, rule: ScheduleRule, now: Optional[datetime] = None) -> bool:
        now = _utc(now)
        return self._matches(rule, now) and self._cooled_down(rule, now)

    def check(self, now: Optional[datetime] = None) -> RefreshTrigger:
        """
        Evaluate every rule once.

        Rules that fire record their firing time immediately so a second check
        inside the same minute does not fire again.

        Returns:
            RefreshTrigger; should_refresh is False when nothing fired
        """
        now = _utc(now)
        fired = [rule.name for rule in self.rules if self.is_due(rule, now)]

        if not fired:
            return RefreshTrigger(should_refresh=False, mark_complete=lambda *rules: None)

        for name in fired:
            self._last_fired[name] = now
        logger.info(f"Schedule trigger fired: {', '.join(fired)} at {now.isoformat()}")

        def mark_complete(*rules: str):
            self.mark_refresh_complete(*(rules or fired))

        return RefreshTrigger(
            should_refresh=True,
            mark_complete=mark_complete,
            rules=fired,
            fired_at=now,
        )

    def mark_refresh_complete(self, *rules: str):
        """Record that a refresh for the named rules finished"""
        completed = datetime.now(timezone.utc)
        unknown = [name for name in rules if name not in {rule.name for rule in self.rules}]
        if unknown:
            raise ValueError(f"Unknown schedule rule(s): {', '.join(unknown)}")

        for name in rules:
            self._last_completed[name] = completed
        self.last_refresh_completed = completed
        logger.info(f"Marked scheduled refresh complete ({', '.join(rules) or 'no rule'}) "
                    f"at {completed.isoformat()}")

    def last_completed(self, rule_name: str) -> Optional[datetime]:
        return self._last_completed.get(rule_name)

    # ------------------------------------------------------------------
    # Next firing
    # ------------------------------------------------------------------

    @staticmethod
    def _at(day, hour: int, minute: int, tz: ZoneInfo) -> datetime:
        return datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)

    def _next_for_rule(self, rule: ScheduleRule, now: datetime) -> datetime:
        tz = ZoneInfo(rule.timezone)
        local = now.astimezone(tz)
        today = local.date()
        tomorrow = today + timedelta(days=1)

        if not rule.is_interval_rule:
            for hour in sorted(rule.hours):
                candidate = self._at(today, hour, 0, tz)
                if candidate > local:
                    return candidate.astimezone(timezone.utc)
            return self._at(tomorrow, min(rule.hours), 0, tz).astimezone(timezone.utc)

        if local.hour < rule.window_start_hour:
            return self._at(today, rule.window_start_hour, 0, tz).astimezone(timezone.utc)

        if self._in_window(rule, local):
            boundary = (local.minute // rule.interval_minutes + 1) * rule.interval_minutes
            candidate = local.replace(minute=0, second=0, microsecond=0) + timedelta(minutes=boundary)
            if candidate.hour < rule.window_end_hour and candidate.date() == today:
                return candidate.astimezone(timezone.utc)

        return self._at(tomorrow, rule.window_start_hour, 0, tz).astimezone(timezone.utc)

    def next_refresh_time(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest upcoming firing across all rules, as an aware UTC datetime"""
        now = _utc(now)
        if not self.rules:
            return None
        return min(self._next_for_rule(rule, now) for rule in self.rules)

    def schedule_status(self, now: Optional[datetime] = None) -> str:
        """Display string for the interval rule's business-hours window"""
        now = _utc(now)
        for rule in self.rules:
            if rule.is_interval_rule:
                local = now.astimezone(ZoneInfo(rule.timezone))
                return STATUS_ACTIVE if self._in_window(rule, local) else STATUS_INACTIVE
        return STATUS_INACTIVE

    def get_rule_status(self, now: Optional[datetime] = None) -> List[RuleStatus]:
        now = _utc(now)
        return [
            RuleStatus(
                name=rule.name,
                timezone=rule.timezone,
                last_fired_at=self._last_fired.get(rule.name),
                last_completed_at=self._last_completed.get(rule.name),
                next_fire_at=self._next_for_rule(rule, now),
                is_due=self.is_due(rule, now),
            )
            for rule in self.rules
        ]

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def is_refresh_running(self) -> bool:
        return self._running

    async def _run_refresh(self, trigger: RefreshTrigger):
        # Refreshes queue on the lock, so a trigger raised mid-refresh still runs afterwards
        async with self._lock:
            self._running = True
            try:
                await self.refresh_callback()
            except Exception as e:
                logger.error(f"Scheduled refresh failed ({', '.join(trigger.rules)}): {e}", exc_info=True)
            finally:
                self._running = False
                trigger.mark_complete()

    def dispatch(self, now: Optional[datetime] = None) -> Optional[asyncio.Task]:
        """
        Check the rules and start the refresh callback as a task if one fired.

        Must be called from a running event loop; the check itself never waits
        on a refresh in progress.

        Returns:
            The refresh task, or None when nothing fired
        """
        trigger = self.check(now)
        if not trigger.should_refresh or self.refresh_callback is None:
            return None

        if self._running:
            logger.info(f"Refresh in progress - queueing trigger for {', '.join(trigger.rules)}")

        task = asyncio.get_running_loop().create_task(self._run_refresh(trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_once(self, now: Optional[datetime] = None) -> bool:
        """
        Check the rules and wait for the refresh callback if one fired.

        Returns:
            True if a refresh ran
        """
        task = self.dispatch(now)
        if task is None:
            return False
        await task
        return True

    async def run_continuous(
        self,
        check_interval_seconds: Optional[float] = None,
        max_iterations: Optional[int] = None
    ):
        """
        Run the scheduler continuously, checking the rules on wall-clock boundaries.

        Checks are aligned to multiples of the interval (whole minutes by
        default) and never block on a running refresh.

        Args:
            check_interval_seconds: Seconds between checks (defaults to config)
            max_iterations: Maximum number of checks (None = infinite)
        """
        interval = check_interval_seconds or self.config.schedule_check_interval
        next_time = self.next_refresh_time()
        logger.info(f"Starting refresh scheduler (check interval: {interval}s, "
                    f"next refresh: {next_time.isoformat() if next_time else 'never'})")

        iteration = 0
        cancelled = False
        while max_iterations is None or iteration < max_iterations:
            try:
                self.dispatch()
                await asyncio.sleep(seconds_until_next_check(time.time(), interval))

            except asyncio.CancelledError:
                logger.info("Scheduler cancelled, shutting down...")
                cancelled = True
                break
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                await asyncio.sleep(seconds_until_next_check(time.time(), interval))

            iteration += 1

        pending = list(self._tasks)
        if pending:
            if cancelled:
                for task in pending:
                    task.cancel()
            else:
                logger.info(f"Waiting for {len(pending)} scheduled refresh(es) to finish")
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Scheduler stopped")
