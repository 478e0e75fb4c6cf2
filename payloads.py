"""
Request payload parsing
Turns camelCase JSON bodies from the web/mobile client into validated,
typed inputs. Anything malformed raises PayloadError before work starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from models import (
    DoseStatus, FrequencyType, ProtocolStatus, TimingPreference, WEARABLE_METRICS, WEEKDAYS,
)
from timeutils import canonical_instant, parse_date, parse_instant, reference_tz

DEFAULT_DOSE_NUMBER = 1

# Older clients sent "interval" for every-x-days
_FREQUENCY_ALIASES = {"interval": FrequencyType.EVERY_X_DAYS.value}

_WEEKDAY_ALIASES = {name[:3]: name for name in WEEKDAYS}


class PayloadError(ValueError):
    """Request body is missing required fields or has the wrong shape."""


class AuthRequired(Exception):
    """No owner identity could be resolved for the request."""


@dataclass(frozen=True)
class DoseLogInput:
    protocol_id: str
    peptide_name: str
    dose: str
    dose_number: int
    scheduled_for: datetime          # aware
    status: DoseStatus
    taken_at: Optional[datetime] = None
    notes: Optional[str] = None
    client_id: Optional[str] = None

    @property
    def scheduled_key(self) -> str:
        return canonical_instant(self.scheduled_for)


@dataclass(frozen=True)
class ProtocolInput:
    id: Optional[str]
    peptide_name: str
    dose_amount: float
    dose_unit: str
    frequency_type: FrequencyType
    start_date: date
    status: ProtocolStatus = ProtocolStatus.ACTIVE
    interval_days: Optional[int] = None
    specific_days: Optional[List[str]] = None
    cycle_on_days: Optional[int] = None
    cycle_off_days: Optional[int] = None
    cycle_start_date: Optional[date] = None
    doses_per_day: int = 1
    timing_preference: TimingPreference = TimingPreference.ANY_TIME
    preferred_time: Optional[str] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None

    def column_values(self) -> Dict[str, Any]:
        values = {
            "peptide_name": self.peptide_name,
            "dose_amount": self.dose_amount,
            "dose_unit": self.dose_unit,
            "frequency_type": self.frequency_type,
            "interval_days": self.interval_days,
            "specific_days": ",".join(self.specific_days) if self.specific_days else None,
            "cycle_on_days": self.cycle_on_days,
            "cycle_off_days": self.cycle_off_days,
            "cycle_start_date": self.cycle_start_date,
            "doses_per_day": self.doses_per_day,
            "timing_preference": self.timing_preference,
            "preferred_time": self.preferred_time,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "status": self.status,
            "notes": self.notes,
        }
        return values


def _required_str(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PayloadError(f"Missing required field: {field}")
    return str(value).strip()


def _optional_int(data: Dict[str, Any], field: str, minimum: Optional[int] = None) -> Optional[int]:
    value = data.get(field)
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise PayloadError(f"{field} must be an integer") from None
    if minimum is not None and number < minimum:
        raise PayloadError(f"{field} must be at least {minimum}")
    return number


def _enum(enum_cls, value, field: str, aliases: Optional[Dict[str, str]] = None):
    raw = str(value).strip().lower()
    if aliases:
        raw = aliases.get(raw, raw)
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise PayloadError(f"{field} must be one of: {allowed}") from None


def _date_field(data: Dict[str, Any], field: str) -> Optional[date]:
    try:
        return parse_date(data.get(field))
    except ValueError as e:
        raise PayloadError(f"{field}: {e}") from None


def parse_dose_log(data: Any, tz: Optional[ZoneInfo] = None) -> DoseLogInput:
    if not isinstance(data, dict):
        raise PayloadError("Each dose log must be an object")
    tz = tz or reference_tz()

    for field in ("protocolId", "peptideName", "dose", "scheduledFor", "status"):
        _required_str(data, field)

    try:
        scheduled_for = parse_instant(data["scheduledFor"], tz)
        taken_at = parse_instant(data["takenAt"], tz) if data.get("takenAt") else None
    except ValueError as e:
        raise PayloadError(str(e)) from None

    dose_number = _optional_int(data, "doseNumber", minimum=1)

    return DoseLogInput(
        protocol_id=str(data["protocolId"]).strip(),
        peptide_name=str(data["peptideName"]).strip(),
        dose=str(data["dose"]).strip(),
        dose_number=dose_number or DEFAULT_DOSE_NUMBER,
        scheduled_for=scheduled_for,
        status=_enum(DoseStatus, data["status"], "status"),
        taken_at=taken_at,
        notes=data.get("notes") or None,
        client_id=data.get("id") or None,
    )


def parse_dose_log_batch(body: Any, tz: Optional[ZoneInfo] = None) -> List[DoseLogInput]:
    """Validate a `{"logs": [...]}` body; one bad entry rejects the whole batch."""
    if not isinstance(body, dict) or not isinstance(body.get("logs"), list):
        raise PayloadError("Invalid request body - expected { logs: DoseLog[] }")
    parsed = []
    for index, item in enumerate(body["logs"]):
        try:
            parsed.append(parse_dose_log(item, tz))
        except PayloadError as e:
            raise PayloadError(f"logs[{index}]: {e}") from None
    return parsed


def _parse_dose_amount(data: Dict[str, Any]):
    """Accept either doseAmount/doseUnit or a free-text dose like "250 mcg"."""
    if data.get("doseAmount") not in (None, ""):
        try:
            amount = float(data["doseAmount"])
        except (TypeError, ValueError):
            raise PayloadError("doseAmount must be a number") from None
        return amount, str(data.get("doseUnit") or "mcg").strip()

    raw = _required_str(data, "dose")
    parts = raw.replace(",", "").split()
    try:
        amount = float(parts[0])
    except (IndexError, ValueError):
        raise PayloadError("dose must start with a number, e.g. '250 mcg'") from None
    unit = parts[1] if len(parts) > 1 else "mcg"
    return amount, unit


def _parse_weekdays(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise PayloadError("specificDays must be a list of weekday names")
    days = []
    for item in raw:
        token = str(item).strip().lower()
        token = _WEEKDAY_ALIASES.get(token[:3], token) if token else token
        if token not in WEEKDAYS:
            raise PayloadError(f"Unknown weekday: {item!r}")
        if token not in days:
            days.append(token)
    return days


def _parse_preferred_time(raw: Any) -> Optional[str]:
    if raw in (None, ""):
        return None
    text = str(raw).strip()
    try:
        hours, minutes = (int(p) for p in text.split(":")[:2])
    except ValueError:
        raise PayloadError("preferredTime must be HH:MM") from None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise PayloadError("preferredTime must be HH:MM")
    return f"{hours:02d}:{minutes:02d}"


def parse_protocol(data: Any, tz: Optional[ZoneInfo] = None) -> ProtocolInput:
    """Validate a protocol body, including the frequency and date rules."""
    if not isinstance(data, dict):
        raise PayloadError("Protocol must be an object")
    tz = tz or reference_tz()

    peptide_name = (data.get("peptideName") or data.get("customPeptideName")
                    or data.get("peptideId") or "")
    if not str(peptide_name).strip():
        raise PayloadError("Missing required field: peptideName")

    dose_amount, dose_unit = _parse_dose_amount(data)
    frequency = _enum(FrequencyType, data.get("frequencyType") or "daily", "frequencyType",
                      aliases=_FREQUENCY_ALIASES)

    start_date = _date_field(data, "startDate")
    if start_date is None:
        raise PayloadError("Missing required field: startDate")
    end_date = _date_field(data, "endDate")
    if end_date is not None and end_date < start_date:
        raise PayloadError("endDate must be on or after startDate")

    interval_days = _optional_int(data, "intervalDays", minimum=1)
    specific_days = _parse_weekdays(data.get("specificDays"))
    cycle_on = _optional_int(data, "cycleOnDays", minimum=1)
    cycle_off = _optional_int(data, "cycleOffDays", minimum=1)

    if frequency == FrequencyType.SPECIFIC_DAYS and not specific_days:
        raise PayloadError("specific-days protocols need at least one weekday")
    if frequency == FrequencyType.EVERY_X_DAYS and interval_days is None:
        raise PayloadError("every-x-days protocols need intervalDays")

    updated_at = None
    if data.get("updatedAt"):
        try:
            updated_at = parse_instant(data["updatedAt"], tz)
        except ValueError as e:
            raise PayloadError(str(e)) from None

    return ProtocolInput(
        id=(data.get("odId") or data.get("id") or None),
        peptide_name=str(peptide_name).strip(),
        dose_amount=dose_amount,
        dose_unit=dose_unit,
        frequency_type=frequency,
        start_date=start_date,
        status=_enum(ProtocolStatus, data.get("status") or "active", "status"),
        interval_days=interval_days,
        specific_days=specific_days or None,
        cycle_on_days=cycle_on,
        cycle_off_days=cycle_off,
        cycle_start_date=_date_field(data, "cycleStartDate"),
        doses_per_day=_optional_int(data, "dosesPerDay", minimum=1) or 1,
        timing_preference=_enum(TimingPreference, data.get("timingPreference") or "any-time",
                                "timingPreference"),
        preferred_time=_parse_preferred_time(data.get("preferredTime")),
        end_date=end_date,
        notes=data.get("notes") or None,
        updated_at=updated_at,
    )


def parse_protocol_batch(body: Any, tz: Optional[ZoneInfo] = None) -> List[ProtocolInput]:
    if not isinstance(body, dict) or not isinstance(body.get("protocols"), list):
        raise PayloadError("Invalid request body - expected { protocols: Protocol[] }")
    parsed = []
    for index, item in enumerate(body["protocols"]):
        try:
            parsed.append(parse_protocol(item, tz))
        except PayloadError as e:
            raise PayloadError(f"protocols[{index}]: {e}") from None
    return parsed


def clamp_pagination(raw_limit: Any, raw_offset: Any, default_limit: int = 10,
                     max_limit: int = 100):
    """limit defaults to 10 and is clamped to [1, 100]; offset to >= 0."""
    try:
        limit = int(raw_limit)
    except (TypeError, ValueError):
        limit = 0
    try:
        offset = int(raw_offset)
    except (TypeError, ValueError):
        offset = 0
    limit = min(max(limit or default_limit, 1), max_limit)
    offset = max(offset, 0)
    return limit, offset


_CHAT_ROLES = ("user", "assistant")

# stored as Integer columns
_INTEGER_METRICS = {"steps", "active_minutes", "calories_total", "calories_active"}


def parse_chat_messages(body: Any) -> List[Dict[str, str]]:
    """`{"messages": [{"role", "content"}, ...]}` with at least one message."""
    messages = body.get("messages") if isinstance(body, dict) else None
    if not isinstance(messages, list) or not messages:
        raise PayloadError("Messages are required")
    parsed = []
    for index, item in enumerate(messages):
        if not isinstance(item, dict):
            raise PayloadError(f"messages[{index}] must be an object")
        role = str(item.get("role") or "").strip().lower()
        if role not in _CHAT_ROLES:
            raise PayloadError(f"messages[{index}].role must be user or assistant")
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            raise PayloadError(f"messages[{index}].content is required")
        parsed.append({"role": role, "content": content})
    return parsed


def _metric_value(raw: Any, field: str):
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise PayloadError(f"{field} must be a number")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise PayloadError(f"{field} must be a number") from None


def parse_wearable_days(body: Any) -> List[Dict[str, Any]]:
    """Already-parsed daily summaries: `{"source": "garmin", "days": [...]}`.

    Each day needs a `date`; known metric keys are kept, anything else is
    ignored. Later entries for the same date replace earlier ones.
    """
    if not isinstance(body, dict) or not isinstance(body.get("days"), list):
        raise PayloadError("Invalid request body - expected { days: DailySummary[] }")
    source = str(body.get("source") or "garmin").strip().lower()

    by_date: Dict[date, Dict[str, Any]] = {}
    for index, item in enumerate(body["days"]):
        if not isinstance(item, dict):
            raise PayloadError(f"days[{index}] must be an object")
        day = _date_field(item, "date")
        if day is None:
            raise PayloadError(f"days[{index}]: Missing required field: date")
        parsed = {"date": day, "source": source}
        for metric in WEARABLE_METRICS:
            value = _metric_value(item.get(metric), f"days[{index}].{metric}")
            if value is not None:
                parsed[metric] = int(round(value)) if metric in _INTEGER_METRICS else value
        by_date[day] = parsed
    return [by_date[d] for d in sorted(by_date)]
