"""
Dose Scheduling
Expands protocols into dated dose instances, reconciles them with logged
doses and builds the day-by-day schedule shown on the dashboard.

Everything here is a pure function of its inputs. The current instant is
always passed in by the caller; nothing reads the clock.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from models import DoseStatus, FrequencyType, ProtocolStatus, TimingPreference, WEEKDAYS
from timeutils import combine_local, date_range, local_date, reference_tz, to_aware


DEFAULT_DOSE_TIME = time(9, 0)

TIMING_DEFAULT_TIMES: Dict[TimingPreference, time] = {
    TimingPreference.MORNING_FASTED: time(7, 0),
    TimingPreference.MORNING_WITH_FOOD: time(8, 0),
    TimingPreference.AFTERNOON: time(13, 0),
    TimingPreference.EVENING: time(18, 0),
    TimingPreference.BEFORE_BED: time(21, 0),
    TimingPreference.ANY_TIME: DEFAULT_DOSE_TIME,
}

DEFAULT_CYCLE_ON_DAYS = 5
DEFAULT_CYCLE_OFF_DAYS = 2
OVERDUE_LOOKBACK_DAYS = 30


@dataclass(frozen=True)
class DoseInstance:
    """One expected dose of a protocol. `status` is None until reconciled."""
    protocol_id: str
    peptide_name: str
    dose: str
    scheduled_date: date
    scheduled_for: datetime
    dose_number: int
    doses_per_day: int
    timing_preference: Optional[str] = None
    status: Optional[str] = None
    dose_log_id: Optional[str] = None

    @property
    def sort_key(self):
        return (self.scheduled_date, self.scheduled_for, self.dose_number, self.protocol_id)

    def to_dict(self) -> dict:
        return {
            "protocolId": self.protocol_id,
            "peptideName": self.peptide_name,
            "dose": self.dose,
            "scheduledDate": self.scheduled_date.isoformat(),
            "scheduledFor": self.scheduled_for.isoformat(),
            "doseNumber": self.dose_number,
            "dosesPerDay": self.doses_per_day,
            "timingPreference": self.timing_preference,
            "status": self.status,
            "doseLogId": self.dose_log_id,
        }


@dataclass(frozen=True)
class DaySchedule:
    date: date
    day_of_week: str
    doses: Tuple[DoseInstance, ...]
    is_today: bool
    is_past: bool

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "dayOfWeek": self.day_of_week,
            "doses": [d.to_dict() for d in self.doses],
            "isToday": self.is_today,
            "isPast": self.is_past,
        }


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def _coerce_enum(enum_cls, value, default=None):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _parse_hhmm(raw: Optional[str]) -> Optional[time]:
    if not raw:
        return None
    try:
        hours, minutes = str(raw).split(":")[:2]
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        return None


def dose_time_for(protocol) -> time:
    """Explicit preferred_time wins, then the timing preference's default."""
    explicit = _parse_hhmm(getattr(protocol, "preferred_time", None))
    if explicit is not None:
        return explicit
    timing = _coerce_enum(TimingPreference, getattr(protocol, "timing_preference", None))
    return TIMING_DEFAULT_TIMES.get(timing, DEFAULT_DOSE_TIME)


def _weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def _specific_days(protocol) -> List[str]:
    days = getattr(protocol, "specific_days_list", None)
    if days is None:
        raw = getattr(protocol, "specific_days", None) or ""
        if isinstance(raw, str):
            days = [d.strip().lower() for d in raw.split(",") if d.strip()]
        else:
            days = [str(d).strip().lower() for d in raw]
    return days


def is_active(protocol) -> bool:
    return _coerce_enum(ProtocolStatus, getattr(protocol, "status", None)) == ProtocolStatus.ACTIVE


def cycle_phase_on(protocol, day: date) -> str:
    """'on' or 'off' for a cycling protocol on `day`; non-cycling is always 'on'."""
    if _coerce_enum(FrequencyType, protocol.frequency_type) != FrequencyType.CYCLING:
        return "on"
    cycle_start = getattr(protocol, "cycle_start_date", None) or protocol.start_date
    on_days = protocol.cycle_on_days or DEFAULT_CYCLE_ON_DAYS
    off_days = protocol.cycle_off_days or DEFAULT_CYCLE_OFF_DAYS
    elapsed = (day - cycle_start).days
    if elapsed < 0:
        return "on"
    return "on" if elapsed % (on_days + off_days) < on_days else "off"


def matches_frequency(protocol, day: date) -> bool:
    """True when the protocol's frequency rule schedules a dose on `day`."""
    frequency = _coerce_enum(FrequencyType, protocol.frequency_type, FrequencyType.DAILY)
    elapsed = (day - protocol.start_date).days
    if elapsed < 0:
        return False

    if frequency == FrequencyType.DAILY:
        return True
    if frequency == FrequencyType.WEEKLY:
        return elapsed % 7 == 0
    if frequency == FrequencyType.EVERY_X_DAYS:
        interval = protocol.interval_days or 1
        return elapsed % max(interval, 1) == 0
    if frequency == FrequencyType.SPECIFIC_DAYS:
        return _weekday_name(day) in _specific_days(protocol)
    if frequency == FrequencyType.CYCLING:
        cycle_start = getattr(protocol, "cycle_start_date", None) or protocol.start_date
        if (day - cycle_start).days < 0:
            return False
        return cycle_phase_on(protocol, day) == "on"
    return False


def _instances_for_day(protocol, day: date, tz: ZoneInfo) -> List[DoseInstance]:
    at = combine_local(day, dose_time_for(protocol), tz)
    per_day = max(protocol.doses_per_day or 1, 1)
    timing = _enum_value(getattr(protocol, "timing_preference", None))
    label = getattr(protocol, "dose_label", None) or str(getattr(protocol, "dose", ""))
    return [
        DoseInstance(
            protocol_id=protocol.id,
            peptide_name=protocol.peptide_name,
            dose=label,
            scheduled_date=day,
            scheduled_for=at,
            dose_number=number,
            doses_per_day=per_day,
            timing_preference=timing,
        )
        for number in range(1, per_day + 1)
    ]


def expand_protocols(
    protocols: Iterable,
    range_start: date,
    range_end: date,
    tz: Optional[ZoneInfo] = None,
) -> List[DoseInstance]:
    """Expected dose instances for active protocols within [range_start, range_end].

    Each protocol contributes dates in
    [max(start, range_start), min(end or range_end, range_end)] that satisfy
    its frequency rule, one instance per dose number 1..doses_per_day.
    """
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end")
    tz = tz or reference_tz()

    instances: List[DoseInstance] = []
    for protocol in protocols:
        if not is_active(protocol) or protocol.start_date is None:
            continue
        first = max(protocol.start_date, range_start)
        last = min(protocol.end_date or range_end, range_end)
        if first > last:
            continue
        for day in date_range(first, last):
            if matches_frequency(protocol, day):
                instances.extend(_instances_for_day(protocol, day, tz))

    instances.sort(key=lambda inst: inst.sort_key)
    return instances


# ----------------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------------

def _log_rank(log, position: int):
    # latest taken_at, then latest created_at, then later input position
    taken = getattr(log, "taken_at", None)
    created = getattr(log, "created_at", None)
    return (
        taken is not None,
        _comparable(taken),
        created is not None,
        _comparable(created),
        position,
    )


def _comparable(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        # stored values are naive UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def pick_winning_log(candidates: Sequence):
    """Deterministic choice among logs sharing a natural key.

    The most recently taken entry wins; entries never taken are ranked by
    creation time; a full tie goes to the entry that appears last.
    """
    best = None
    best_rank = None
    for position, log in enumerate(candidates):
        rank = _log_rank(log, position)
        if best_rank is None or rank > best_rank:
            best, best_rank = log, rank
    return best


def _log_day_key(log, tz: ZoneInfo) -> Tuple[str, date, int]:
    return (str(log.protocol_id), local_date(log.scheduled_for, tz), log.dose_number or 1)


def index_logs(logs: Iterable, tz: ZoneInfo) -> Dict[Tuple[str, date, int], object]:
    """Map (protocol id, local scheduled date, dose number) -> winning log."""
    grouped: Dict[Tuple[str, date, int], list] = {}
    for log in logs:
        grouped.setdefault(_log_day_key(log, tz), []).append(log)
    return {key: pick_winning_log(group) for key, group in grouped.items()}


def reconcile_statuses(
    instances: Iterable[DoseInstance],
    logs: Iterable,
    now: datetime,
    tz: Optional[ZoneInfo] = None,
) -> List[DoseInstance]:
    """Resolve each instance's status against the logged doses.

    A matching log's status is copied verbatim. Without a log the dose is
    overdue once its scheduled instant has passed and its local day has
    ended; until then it is pending.
    """
    tz = tz or reference_tz()
    now = to_aware(now, tz)
    today = local_date(now, tz)
    lookup = index_logs(logs, tz)

    resolved: List[DoseInstance] = []
    for instance in instances:
        log = lookup.get((str(instance.protocol_id), instance.scheduled_date, instance.dose_number))
        if log is not None:
            status = _enum_value(log.status)
            resolved.append(replace(instance, status=status, dose_log_id=log.id))
            continue
        elapsed = now > instance.scheduled_for and instance.scheduled_date < today
        status = DoseStatus.OVERDUE.value if elapsed else DoseStatus.PENDING.value
        resolved.append(replace(instance, status=status))
    return resolved


# ----------------------------------------------------------------------------
# Schedule views
# ----------------------------------------------------------------------------

def upcoming_doses(
    protocols: Iterable,
    logs: Iterable,
    now: datetime,
    days: int = 7,
    start_offset: int = 0,
    tz: Optional[ZoneInfo] = None,
) -> List[DoseInstance]:
    """Reconciled instances for `days` days starting `start_offset` days from today."""
    if days < 1:
        return []
    tz = tz or reference_tz()
    today = local_date(to_aware(now, tz), tz)
    start = today + timedelta(days=start_offset)
    end = start + timedelta(days=days - 1)
    instances = expand_protocols(protocols, start, end, tz)
    return reconcile_statuses(instances, logs, now, tz)


def build_schedule(
    protocols: Iterable,
    logs: Iterable,
    now: datetime,
    window_days: int = 7,
    tz: Optional[ZoneInfo] = None,
) -> List[DaySchedule]:
    """Day-by-day schedule for `window_days` days starting today (inclusive)."""
    if window_days < 1:
        raise ValueError("window_days must be at least 1")
    tz = tz or reference_tz()
    today = local_date(to_aware(now, tz), tz)
    doses = upcoming_doses(protocols, logs, now, days=window_days, tz=tz)

    by_date: Dict[date, List[DoseInstance]] = {}
    for dose in doses:
        by_date.setdefault(dose.scheduled_date, []).append(dose)

    schedule = []
    for offset in range(window_days):
        day = today + timedelta(days=offset)
        day_doses = sorted(by_date.get(day, []), key=lambda d: d.sort_key)
        schedule.append(DaySchedule(
            date=day,
            day_of_week=_weekday_name(day),
            doses=tuple(day_doses),
            is_today=offset == 0,
            is_past=day < today,
        ))
    return schedule


def doses_today(protocols, logs, now: datetime, tz: Optional[ZoneInfo] = None) -> List[DoseInstance]:
    return upcoming_doses(protocols, logs, now, days=1, tz=tz)


def overdue_doses(
    protocols,
    logs,
    now: datetime,
    lookback_days: int = OVERDUE_LOOKBACK_DAYS,
    tz: Optional[ZoneInfo] = None,
) -> List[DoseInstance]:
    """Past instances in the look-back window that were neither taken nor skipped."""
    doses = upcoming_doses(protocols, logs, now, days=lookback_days,
                           start_offset=-lookback_days, tz=tz)
    closed = {DoseStatus.TAKEN.value, DoseStatus.SKIPPED.value}
    return [d for d in doses if d.status not in closed]


def is_due_today(protocol, logs: Iterable, now: datetime, tz: Optional[ZoneInfo] = None) -> bool:
    """Active protocol scheduled today with fewer taken doses than doses_per_day."""
    if not is_active(protocol):
        return False
    tz = tz or reference_tz()
    today = local_date(to_aware(now, tz), tz)
    if protocol.end_date is not None and today > protocol.end_date:
        return False
    taken_today = [
        log for log in logs
        if str(log.protocol_id) == str(protocol.id)
        and _enum_value(log.status) == DoseStatus.TAKEN.value
        and local_date(log.scheduled_for, tz) == today
    ]
    if len(taken_today) >= max(protocol.doses_per_day or 1, 1):
        return False
    return matches_frequency(protocol, today)


def next_dose_date(
    protocol,
    now: datetime,
    last_dose_date: Optional[date] = None,
    tz: Optional[ZoneInfo] = None,
    horizon_days: int = 366,
) -> Optional[date]:
    """First scheduled date after the last dose (or from today, whichever is later).

    Returns None when the protocol has ended before any further dose.
    """
    tz = tz or reference_tz()
    today = local_date(to_aware(now, tz), tz)
    candidate = max(today, protocol.start_date)
    if last_dose_date is not None:
        candidate = max(candidate, last_dose_date + timedelta(days=1))
    for _ in range(horizon_days):
        if protocol.end_date is not None and candidate > protocol.end_date:
            return None
        if matches_frequency(protocol, candidate):
            return candidate
        candidate += timedelta(days=1)
    return None


def frequency_summary(protocol) -> str:
    frequency = _coerce_enum(FrequencyType, protocol.frequency_type)
    if frequency == FrequencyType.DAILY:
        return "Daily"
    if frequency == FrequencyType.WEEKLY:
        return "Weekly"
    if frequency == FrequencyType.SPECIFIC_DAYS:
        days = _specific_days(protocol)
        if not days:
            return "No days selected"
        if len(days) == 7:
            return "Daily"
        return ", ".join(d[:3].capitalize() for d in days)
    if frequency == FrequencyType.EVERY_X_DAYS:
        interval = protocol.interval_days or 1
        named = {1: "Daily", 2: "Every other day", 7: "Weekly", 14: "Bi-weekly"}
        return named.get(interval, f"Every {interval} days")
    if frequency == FrequencyType.CYCLING:
        on_days = protocol.cycle_on_days or DEFAULT_CYCLE_ON_DAYS
        off_days = protocol.cycle_off_days or DEFAULT_CYCLE_OFF_DAYS
        return f"{on_days} on / {off_days} off"
    return "Unknown"
