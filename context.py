"""
Chat Context Aggregation
Collects what the AI chat needs to know about a user into one bounded,
read-only snapshot: active protocols, recent doses, recent wearable days and
the latest weekly insight.

Every section is fetched independently. A failing section is logged and left
empty so the chat still works with whatever data is available; only a
missing owner identity aborts the aggregation.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol as TypingProtocol, Sequence, Tuple
from zoneinfo import ZoneInfo

from payloads import AuthRequired
from scheduling import frequency_summary
from timeutils import local_date, reference_tz, to_aware

logger = logging.getLogger(__name__)

RECENT_DOSE_DAYS = 7
RECENT_DOSE_LIMIT = 100
WEARABLE_DAYS = 7


class WearableSummaryProvider(TypingProtocol):
    def daily_summaries(self, owner_id: int, start: date, end: date) -> Sequence[Dict[str, Any]]:
        ...


class StoreWearableProvider:
    """Reads wearable days from the tracker's own database"""

    def __init__(self, db):
        self.db = db

    def daily_summaries(self, owner_id, start, end):
        return [row.to_dict() for row in self.db.wearable_between(owner_id, start, end)]


@dataclass(frozen=True)
class ChatContext:
    """Frozen at the top level. The section dicts are shared, so to_dict()
    hands out copies and callers never edit the snapshot through it."""

    active_protocols: Tuple[Dict[str, Any], ...] = ()
    recent_doses: Tuple[Dict[str, Any], ...] = ()
    wearable_summary: Tuple[Dict[str, Any], ...] = ()
    latest_insights: Optional[Dict[str, Any]] = None
    failed_sections: Tuple[str, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeProtocols": copy.deepcopy(list(self.active_protocols)),
            "recentDoses": copy.deepcopy(list(self.recent_doses)),
            "garminSummary": copy.deepcopy(list(self.wearable_summary)),
            "latestInsights": copy.deepcopy(self.latest_insights),
        }


def protocol_summary(protocol, today: date) -> Dict[str, Any]:
    return {
        "id": protocol.id,
        "name": protocol.peptide_name,
        "dose": protocol.dose_label,
        "frequency": frequency_summary(protocol),
        "dosesPerDay": protocol.doses_per_day,
        "startDate": protocol.start_date.isoformat() if protocol.start_date else None,
        "daysActive": (today - protocol.start_date).days + 1 if protocol.start_date else None,
        "status": getattr(protocol.status, "value", protocol.status),
    }


def dose_entry(log, tz: ZoneInfo) -> Dict[str, Any]:
    entry = log.to_dict()
    entry["date"] = local_date(log.scheduled_for, tz).isoformat()
    return entry


def _section(name: str, fetch: Callable[[], Any], default, failures: list):
    try:
        return fetch()
    except Exception:
        logger.exception("Chat context: %s unavailable", name)
        failures.append(name)
        return default


def aggregate_chat_context(
    owner_id: Optional[int],
    store,
    now: datetime,
    wearables: Optional[WearableSummaryProvider] = None,
    tz: Optional[ZoneInfo] = None,
) -> ChatContext:
    """Build the chat context for `owner_id` as of `now`.

    Recent doses cover the last RECENT_DOSE_DAYS days, newest first, capped
    at RECENT_DOSE_LIMIT rows. Wearable data covers the last WEARABLE_DAYS
    days. Raises AuthRequired when there is no owner.
    """
    if owner_id is None:
        raise AuthRequired("No user for chat context")
    tz = tz or reference_tz()
    now = to_aware(now, tz)
    today = local_date(now, tz)
    wearables = wearables or StoreWearableProvider(store)
    failures: list = []

    protocols = _section(
        "active_protocols",
        lambda: tuple(protocol_summary(p, today) for p in store.list_active_protocols(owner_id)),
        (), failures,
    )
    doses = _section(
        "recent_doses",
        lambda: tuple(
            dose_entry(log, tz)
            for log in store.list_dose_logs(owner_id, start=now - timedelta(days=RECENT_DOSE_DAYS),
                                         end=now, limit=RECENT_DOSE_LIMIT)
        ),
        (), failures,
    )
    wearable = _section(
        "wearable_summary",
        lambda: tuple(wearables.daily_summaries(
            owner_id, today - timedelta(days=WEARABLE_DAYS), today)),
        (), failures,
    )

    def _latest():
        row = store.latest_insight(owner_id)
        return row.to_dict() if row is not None else None

    latest = _section("latest_insights", _latest, None, failures)

    return ChatContext(
        active_protocols=protocols,
        recent_doses=doses,
        wearable_summary=wearable,
        latest_insights=latest,
        failed_sections=tuple(failures),
    )
