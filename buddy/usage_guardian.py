"""
Usage Guardian

Tracks daily speaking time, break intervals and bedtime windows for a child
and issues lock directives when a limit is reached. The check functions are
pure over ``DailyTelemetry`` + ``UsageRules``; ``UsageGuardian`` adds the
persistence and locking side effects on top of them.

Times are epoch milliseconds, dates are YYYY-MM-DD in the rules' timezone.
"""

import logging
import random
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .store import (
    KeyValueStore, TELEMETRY_KEY, USAGE_RULES_KEY,
    MIC_LOCK_KEY, BREAK_LOCK_KEY, LOCK_REASON_KEY
)

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class UsageRules:
    """Parent-configured limits"""
    timezone: str = "UTC"
    daily_limit_min: int = 60
    break_interval_min: int = 20
    bedtime_start: str = "20:30"
    bedtime_end: str = "07:00"
    break_duration_min: int = 5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRules":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DailyTelemetry:
    """Speaking time for one local calendar day"""
    date: str
    seconds_spoken: float = 0
    sessions_count: int = 0
    last_break_time: int = 0
    last_usage_check: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyTelemetry":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LockState:
    """An active guardian lock"""
    kind: str  # "mic" or "break"
    locked_until: int
    reason: str


@dataclass(frozen=True)
class GuardianDirective:
    """Result of a post-turn check that fired"""
    kind: str  # "bedtime", "daily_limit" or "break"
    message: str
    locked_until: int


# Time helpers

def _zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{timezone}', falling back to UTC")
        return ZoneInfo("UTC")


def local_datetime(timezone: str, at_ms: Optional[int] = None) -> datetime:
    """Wall-clock time in ``timezone`` for an epoch-ms instant (default now)"""
    at_ms = now_ms() if at_ms is None else at_ms
    return datetime.fromtimestamp(at_ms / 1000, tz=_zone(timezone))


def current_date_string(timezone: str, at_ms: Optional[int] = None) -> str:
    return local_datetime(timezone, at_ms).strftime("%Y-%m-%d")


def time_to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


# Pure checks

def initialize_daily_telemetry(timezone: str, at_ms: Optional[int] = None) -> DailyTelemetry:
    at_ms = now_ms() if at_ms is None else at_ms
    return DailyTelemetry(
        date=current_date_string(timezone, at_ms),
        last_usage_check=at_ms,
    )


def is_stale(telemetry: DailyTelemetry, timezone: str, at_ms: Optional[int] = None) -> bool:
    """True when the telemetry belongs to a different local day"""
    return telemetry.date != current_date_string(timezone, at_ms)


def mins_used_today(telemetry: DailyTelemetry, timezone: str, at_ms: Optional[int] = None) -> int:
    if is_stale(telemetry, timezone, at_ms):
        return 0
    # Half-up rounding so 90s counts as 2 minutes
    return int(telemetry.seconds_spoken / 60 + 0.5)


def should_break(telemetry: DailyTelemetry, rules: UsageRules, at_ms: Optional[int] = None) -> bool:
    at_ms = now_ms() if at_ms is None else at_ms
    if is_stale(telemetry, rules.timezone, at_ms):
        return False
    since_break = at_ms - telemetry.last_break_time
    return since_break >= rules.break_interval_min * 60 * 1000 and telemetry.seconds_spoken > 0


def is_bedtime(rules: UsageRules, at_ms: Optional[int] = None) -> bool:
    local = local_datetime(rules.timezone, at_ms)
    current = local.hour * 60 + local.minute
    start = time_to_minutes(rules.bedtime_start)
    end = time_to_minutes(rules.bedtime_end)

    # Window wraps midnight, e.g. 21:00 to 06:30
    if start > end:
        return current >= start or current <= end
    return start <= current <= end


def has_exceeded_daily_limit(telemetry: DailyTelemetry, rules: UsageRules,
                             at_ms: Optional[int] = None) -> bool:
    return mins_used_today(telemetry, rules.timezone, at_ms) >= rules.daily_limit_min


def update_telemetry(telemetry: DailyTelemetry, seconds: float, timezone: str,
                     at_ms: Optional[int] = None) -> DailyTelemetry:
    """Accumulate speaking time, starting a fresh record when the day rolled over"""
    at_ms = now_ms() if at_ms is None else at_ms
    if is_stale(telemetry, timezone, at_ms):
        fresh = initialize_daily_telemetry(timezone, at_ms)
        fresh.seconds_spoken = seconds
        return fresh

    return DailyTelemetry(
        date=telemetry.date,
        seconds_spoken=telemetry.seconds_spoken + seconds,
        sessions_count=telemetry.sessions_count,
        last_break_time=telemetry.last_break_time,
        last_usage_check=at_ms,
    )


def mark_break_time(telemetry: DailyTelemetry, at_ms: Optional[int] = None) -> DailyTelemetry:
    at_ms = now_ms() if at_ms is None else at_ms
    return DailyTelemetry(
        date=telemetry.date,
        seconds_spoken=telemetry.seconds_spoken,
        sessions_count=telemetry.sessions_count,
        last_break_time=at_ms,
        last_usage_check=telemetry.last_usage_check,
    )


def next_bedtime_end(rules: UsageRules, at_ms: Optional[int] = None) -> int:
    """Epoch-ms of the next occurrence of ``bedtime_end`` in local time"""
    local = local_datetime(rules.timezone, at_ms)
    hours, minutes = divmod(time_to_minutes(rules.bedtime_end), 60)
    candidate = local.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if candidate <= local:
        candidate = (candidate.replace(tzinfo=None) + timedelta(days=1)).replace(tzinfo=local.tzinfo)
    return _to_ms(candidate)


def next_local_midnight(timezone: str, at_ms: Optional[int] = None) -> int:
    local = local_datetime(timezone, at_ms)
    tomorrow = local.date() + timedelta(days=1)
    return _to_ms(datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=local.tzinfo))


def day_part(timezone: str, at_ms: Optional[int] = None) -> str:
    """Greeting for the current local hour"""
    hour = local_datetime(timezone, at_ms).hour
    if 5 <= hour < 12:
        return "Good morning"
    if 12 <= hour < 17:
        return "Good afternoon"
    if 17 <= hour < 21:
        return "Good evening"
    return "Good night"


# Notices

LOCK_REASONS = {
    "bedtime": "It's bedtime",
    "daily_limit": "Today's Buddy time is used up",
    "break": "Buddy is taking a break",
}


def describe_lock(lock: LockState, timezone: str) -> str:
    """Short explanation with the local unlock time, e.g. for the lock screen"""
    unlock = local_datetime(timezone, lock.locked_until).strftime("%H:%M")
    reason = LOCK_REASONS.get(lock.reason, "Buddy is resting")
    return f"{reason}. Let's talk again at {unlock}!"


def break_message(child_name: str) -> str:
    return random.choice([
        f"{child_name}, let's take a quick break! 🧘 Try some stretches or blink your eyes a few times!",
        f"Time for a little break, {child_name}! 🤸 Maybe walk around or get some water!",
        f"Break time, {child_name}! 💪 Let's do some jumping jacks or deep breathing together!",
    ])


def daily_limit_message(child_name: str) -> str:
    return (f"That's enough fun for today, {child_name}! 🌟 You've used up your daily time "
            f"with Buddy. Come back tomorrow for more adventures!")


def bedtime_message(child_name: str) -> str:
    return random.choice([
        f"It's bedtime, {child_name}! 🌙 Let me tell you a quick goodnight story... Once upon a "
        f"time, a little star went to sleep and had the most wonderful dreams. Sweet dreams! 💤",
        f"Time for sleep, {child_name}! 🌟 Close your eyes and imagine floating on a soft "
        f"cloud... Goodnight! 💤",
        f"Bedtime, {child_name}! 🌛 Dream of magical adventures and wake up ready for "
        f"tomorrow! Sweet dreams! 💤",
    ])


class UsageGuardian:
    """
    Persisted usage tracking and lock issuing

    Telemetry, rules and locks live in the injected ``KeyValueStore``. The
    clock is injectable (epoch-ms callable) so checks can be driven in tests.
    """

    def __init__(self, store: KeyValueStore, rules: Optional[UsageRules] = None,
                 child_name: str = "friend", clock: Callable[[], int] = now_ms):
        self.store = store
        self.child_name = child_name
        self.clock = clock

        if rules is not None:
            self.set_rules(rules)

    # Persistence

    @property
    def rules(self) -> UsageRules:
        data = self.store.get(USAGE_RULES_KEY)
        return UsageRules.from_dict(data) if data else UsageRules()

    def set_rules(self, rules: UsageRules) -> None:
        self.store.set(USAGE_RULES_KEY, rules.to_dict())

    @property
    def telemetry(self) -> DailyTelemetry:
        data = self.store.get(TELEMETRY_KEY)
        if data:
            return DailyTelemetry.from_dict(data)
        return initialize_daily_telemetry(self.rules.timezone, self.clock())

    def _save_telemetry(self, telemetry: DailyTelemetry) -> None:
        self.store.set(TELEMETRY_KEY, telemetry.to_dict())

    # Checks

    def mins_used_today(self) -> int:
        return mins_used_today(self.telemetry, self.rules.timezone, self.clock())

    def should_break(self) -> bool:
        return should_break(self.telemetry, self.rules, self.clock())

    def is_bedtime(self) -> bool:
        return is_bedtime(self.rules, self.clock())

    def has_exceeded_daily_limit(self) -> bool:
        return has_exceeded_daily_limit(self.telemetry, self.rules, self.clock())

    def day_part(self) -> str:
        return day_part(self.rules.timezone, self.clock())

    # Mutations

    def update_telemetry(self, seconds: float) -> DailyTelemetry:
        telemetry = update_telemetry(self.telemetry, seconds, self.rules.timezone, self.clock())
        self._save_telemetry(telemetry)
        logger.debug(f"Telemetry: {telemetry.seconds_spoken:.1f}s spoken on {telemetry.date}")
        return telemetry

    def record_session(self) -> DailyTelemetry:
        telemetry = self.telemetry
        if is_stale(telemetry, self.rules.timezone, self.clock()):
            telemetry = initialize_daily_telemetry(self.rules.timezone, self.clock())
        telemetry.sessions_count += 1
        # Break interval counts from the start of the first session of the day
        if telemetry.last_break_time == 0:
            telemetry.last_break_time = self.clock()
        self._save_telemetry(telemetry)
        return telemetry

    def mark_break_time(self) -> DailyTelemetry:
        telemetry = mark_break_time(self.telemetry, self.clock())
        self._save_telemetry(telemetry)
        return telemetry

    # Locks

    def lock_mic(self, until_ms: int, reason: str) -> None:
        self.store.set(MIC_LOCK_KEY, until_ms)
        self.store.set(LOCK_REASON_KEY, reason)
        logger.info(f"Microphone locked until {until_ms} ({reason})")

    def lock_break(self, until_ms: int, reason: str) -> None:
        self.store.set(BREAK_LOCK_KEY, until_ms)
        self.store.set(LOCK_REASON_KEY, reason)
        logger.info(f"Break lock until {until_ms} ({reason})")

    def current_lock(self) -> Optional[LockState]:
        """The active lock with the latest expiry, or None; expired locks are cleared"""
        now = self.clock()
        reason = self.store.get(LOCK_REASON_KEY, "")
        active = []
        for kind, key in (("mic", MIC_LOCK_KEY), ("break", BREAK_LOCK_KEY)):
            until = self.store.get(key)
            if until is None:
                continue
            if now < until:
                active.append(LockState(kind=kind, locked_until=until, reason=reason))
            else:
                self.store.delete(key)

        if not active:
            self.store.delete(LOCK_REASON_KEY)
            return None
        return max(active, key=lambda lock: lock.locked_until)

    # Post-turn governance

    def post_turn_check(self, is_health_message: bool = False) -> Optional[GuardianDirective]:
        """Run bedtime, daily-limit and break checks in that order; the first hit locks.

        Guardian notices themselves never trigger another check.
        """
        if is_health_message:
            return None

        now = self.clock()
        rules = self.rules

        if self.is_bedtime():
            until = next_bedtime_end(rules, now)
            self.lock_mic(until, "bedtime")
            return GuardianDirective("bedtime", bedtime_message(self.child_name), until)

        if self.has_exceeded_daily_limit():
            until = next_local_midnight(rules.timezone, now)
            self.lock_mic(until, "daily_limit")
            return GuardianDirective("daily_limit", daily_limit_message(self.child_name), until)

        if self.should_break():
            until = now + rules.break_duration_min * 60 * 1000
            self.lock_break(until, "break")
            self.mark_break_time()
            return GuardianDirective("break", break_message(self.child_name), until)

        return None
