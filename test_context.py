"""Chat context aggregation."""

import dataclasses
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from context import RECENT_DOSE_LIMIT, aggregate_chat_context
from models import DoseStatus
from payloads import AuthRequired, DoseLogInput, parse_protocol

UTC = ZoneInfo("UTC")
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def add_protocol(db, user_id, **overrides):
    body = {"peptideName": "BPC-157", "dose": "250 mcg", "startDate": "2026-03-01"}
    body.update(overrides)
    return db.create_protocol(user_id, parse_protocol(body, UTC))


def dose(scheduled_for, protocol_id="p1", dose_number=1):
    return DoseLogInput(protocol_id=protocol_id, peptide_name="BPC-157", dose="250 mcg",
                        dose_number=dose_number, scheduled_for=scheduled_for,
                        status=DoseStatus.TAKEN, taken_at=scheduled_for)


class FailingWearables:
    def daily_summaries(self, owner_id, start, end):
        raise ConnectionError("wearable service down")


class RecordingWearables:
    def __init__(self, days):
        self.days = days
        self.calls = []

    def daily_summaries(self, owner_id, start, end):
        self.calls.append((owner_id, start, end))
        return self.days


def test_new_user_gets_empty_context(db, user):
    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)

    assert context.active_protocols == ()
    assert context.recent_doses == ()
    assert context.wearable_summary == ()
    assert context.latest_insights is None
    assert context.failed_sections == ()
    assert context.to_dict() == {
        "activeProtocols": [], "recentDoses": [], "garminSummary": [], "latestInsights": None,
    }


def test_missing_owner_is_rejected(db):
    with pytest.raises(AuthRequired):
        aggregate_chat_context(None, db, NOW, tz=UTC)


def test_active_protocols_are_summarized(db, user):
    add_protocol(db, user.id, frequencyType="specific-days", specificDays=["monday", "friday"])
    add_protocol(db, user.id, peptideName="TB-500", status="paused")

    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    assert len(context.active_protocols) == 1
    summary = context.active_protocols[0]
    assert summary["name"] == "BPC-157"
    assert summary["dose"] == "250 mcg"
    assert summary["frequency"] == "Mon, Fri"
    assert summary["daysActive"] == 10


def test_recent_doses_cover_seven_days_newest_first(db, user):
    db.insert_dose_logs(user.id, [
        dose(NOW - timedelta(days=8)),
        dose(NOW - timedelta(days=3)),
        dose(NOW - timedelta(hours=2)),
        dose(NOW + timedelta(days=1)),
    ])
    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)

    assert [d["date"] for d in context.recent_doses] == ["2026-03-10", "2026-03-07"]
    assert context.recent_doses[0]["peptideName"] == "BPC-157"


def test_recent_doses_are_capped(db, user):
    logs = [dose(NOW - timedelta(minutes=30 * n)) for n in range(RECENT_DOSE_LIMIT + 20)]
    db.insert_dose_logs(user.id, logs)

    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    assert len(context.recent_doses) == RECENT_DOSE_LIMIT
    # the newest rows are the ones kept
    assert context.recent_doses[0]["scheduledFor"] == "2026-03-10T12:00:00Z"


def test_wearable_window_and_store_default(db, user):
    db.upsert_wearable_days(user.id, [
        {"date": date(2026, 3, 1), "hrv_avg": 40.0},
        {"date": date(2026, 3, 5), "hrv_avg": 55.0},
        {"date": date(2026, 3, 9), "hrv_avg": 60.0},
    ])
    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    assert [d["date"] for d in context.wearable_summary] == ["2026-03-05", "2026-03-09"]

    provider = RecordingWearables([{"date": "2026-03-09", "steps": 9000}])
    context = aggregate_chat_context(user.id, db, NOW, wearables=provider, tz=UTC)
    assert provider.calls == [(user.id, date(2026, 3, 3), date(2026, 3, 10))]
    assert context.wearable_summary == ({"date": "2026-03-09", "steps": 9000},)


def test_failing_wearables_only_empty_their_section(db, user, caplog):
    add_protocol(db, user.id)
    context = aggregate_chat_context(user.id, db, NOW, wearables=FailingWearables(), tz=UTC)

    assert context.wearable_summary == ()
    assert len(context.active_protocols) == 1
    assert context.failed_sections == ("wearable_summary",)
    assert "wearable_summary unavailable" in caplog.text


def test_failing_store_sections_degrade_independently(db, user, monkeypatch):
    add_protocol(db, user.id)

    def broken(*args, **kwargs):
        raise RuntimeError("query failed")

    monkeypatch.setattr(db, "list_dose_logs", broken)
    monkeypatch.setattr(db, "latest_insight", broken)

    context = aggregate_chat_context(user.id, db, NOW, wearables=RecordingWearables([]), tz=UTC)
    assert len(context.active_protocols) == 1
    assert context.recent_doses == ()
    assert context.latest_insights is None
    assert set(context.failed_sections) == {"recent_doses", "latest_insights"}


def test_latest_insight_is_the_newest_week(db, user):
    db.save_insight(user.id, date(2026, 2, 23), week_end=date(2026, 3, 1), weekly_summary="older")
    db.save_insight(user.id, date(2026, 3, 2), week_end=date(2026, 3, 8), weekly_summary="newer")

    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    assert context.latest_insights["weeklySummary"] == "newer"
    assert context.latest_insights["weekStart"] == "2026-03-02"


def test_context_is_read_only(db, user):
    db.save_insight(user.id, date(2026, 3, 2), week_end=date(2026, 3, 8), weekly_summary="steady")
    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    with pytest.raises(dataclasses.FrozenInstanceError):
        context.latest_insights = {}

    exported = context.to_dict()
    exported["latestInsights"]["weeklySummary"] = "edited"
    exported["recentDoses"].append({"peptideName": "TB-500"})
    assert context.latest_insights["weeklySummary"] == "steady"
    assert context.to_dict()["recentDoses"] == []


def test_other_users_data_is_invisible(db, user):
    other = db.create_user("bob", "bob@example.com", "pw")
    add_protocol(db, other.id)
    db.insert_dose_logs(other.id, [dose(NOW - timedelta(hours=1))])

    context = aggregate_chat_context(user.id, db, NOW, tz=UTC)
    assert context.active_protocols == ()
    assert context.recent_doses == ()
