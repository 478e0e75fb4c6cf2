"""Schedule expansion, status reconciliation and the day-by-day schedule."""

from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from models import DoseStatus, FrequencyType, ProtocolStatus, TimingPreference
from scheduling import (
    build_schedule, cycle_phase_on, doses_today, expand_protocols, frequency_summary,
    is_due_today, next_dose_date, overdue_doses, pick_winning_log, reconcile_statuses,
)

UTC = ZoneInfo("UTC")
NEW_YORK = ZoneInfo("America/New_York")
MONDAY = date(2026, 3, 2)


def make_log(protocol_id="p1", scheduled_for=datetime(2026, 3, 2, 9, 0), status=DoseStatus.TAKEN,
             dose_number=1, taken_at=None, created_at=None, log_id="log-1"):
    return SimpleNamespace(
        id=log_id,
        protocol_id=protocol_id,
        scheduled_for=scheduled_for,
        dose_number=dose_number,
        status=status,
        taken_at=taken_at,
        created_at=created_at,
    )


# ----------------------------------------------------------------------------
# Expansion
# ----------------------------------------------------------------------------

def test_daily_protocol_fills_a_week_with_first_doses(make_protocol):
    protocol = make_protocol(start_date=MONDAY)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=6), UTC)

    assert len(instances) == 7
    assert [i.scheduled_date for i in instances] == [MONDAY + timedelta(days=n) for n in range(7)]
    assert {i.dose_number for i in instances} == {1}


def test_instances_stay_inside_protocol_and_range_bounds(make_protocol):
    protocol = make_protocol(start_date=MONDAY + timedelta(days=2), end_date=MONDAY + timedelta(days=4))
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=6), UTC)

    assert [i.scheduled_date for i in instances] == [
        MONDAY + timedelta(days=2), MONDAY + timedelta(days=3), MONDAY + timedelta(days=4),
    ]


def test_range_before_protocol_start_is_empty(make_protocol):
    protocol = make_protocol(start_date=MONDAY + timedelta(days=10))
    assert expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=6), UTC) == []


def test_only_active_protocols_expand(make_protocol):
    paused = make_protocol(id="p1", status=ProtocolStatus.PAUSED)
    completed = make_protocol(id="p2", status=ProtocolStatus.COMPLETED)
    assert expand_protocols([paused, completed], MONDAY, MONDAY + timedelta(days=6), UTC) == []


def test_reversed_range_is_rejected(make_protocol):
    with pytest.raises(ValueError):
        expand_protocols([make_protocol()], MONDAY + timedelta(days=1), MONDAY, UTC)


def test_every_x_days_counts_from_start(make_protocol):
    protocol = make_protocol(frequency_type=FrequencyType.EVERY_X_DAYS, interval_days=3)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=9), UTC)
    assert [(i.scheduled_date - MONDAY).days for i in instances] == [0, 3, 6, 9]


def test_weekly_repeats_every_seven_days(make_protocol):
    protocol = make_protocol(frequency_type=FrequencyType.WEEKLY)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=13), UTC)
    assert [i.scheduled_date for i in instances] == [MONDAY, MONDAY + timedelta(days=7)]


def test_specific_days_match_weekday_names(make_protocol):
    protocol = make_protocol(frequency_type=FrequencyType.SPECIFIC_DAYS, specific_days="monday,thursday")
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=6), UTC)
    assert [i.scheduled_date for i in instances] == [MONDAY, date(2026, 3, 5)]


def test_cycling_skips_off_days(make_protocol):
    protocol = make_protocol(frequency_type=FrequencyType.CYCLING, cycle_on_days=5, cycle_off_days=2)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=13), UTC)

    offsets = [(i.scheduled_date - MONDAY).days for i in instances]
    assert offsets == [0, 1, 2, 3, 4, 7, 8, 9, 10, 11]
    assert cycle_phase_on(protocol, MONDAY + timedelta(days=5)) == "off"
    assert cycle_phase_on(protocol, MONDAY + timedelta(days=7)) == "on"


def test_multiple_doses_per_day_are_numbered(make_protocol):
    protocol = make_protocol(doses_per_day=2)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=1), UTC)
    assert [(i.scheduled_date, i.dose_number) for i in instances] == [
        (MONDAY, 1), (MONDAY, 2), (MONDAY + timedelta(days=1), 1), (MONDAY + timedelta(days=1), 2),
    ]


def test_dose_time_from_timing_preference_and_explicit_time(make_protocol):
    evening = make_protocol(id="p1", timing_preference=TimingPreference.EVENING)
    early = make_protocol(id="p2", timing_preference=TimingPreference.EVENING, preferred_time="06:30")
    instances = expand_protocols([evening, early], MONDAY, MONDAY, NEW_YORK)

    times = {i.protocol_id: i.scheduled_for for i in instances}
    assert times["p1"].timetz().replace(tzinfo=None) == time(18, 0)
    assert times["p2"].timetz().replace(tzinfo=None) == time(6, 30)
    assert times["p1"].tzinfo == NEW_YORK


def test_expansion_is_ordered_by_date_time_and_dose_number(make_protocol):
    night = make_protocol(id="night", timing_preference=TimingPreference.BEFORE_BED)
    morning = make_protocol(id="morning", timing_preference=TimingPreference.MORNING_FASTED)
    instances = expand_protocols([night, morning], MONDAY, MONDAY + timedelta(days=1), UTC)
    assert [i.protocol_id for i in instances] == ["morning", "night", "morning", "night"]


# ----------------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------------

def test_logged_status_is_copied_verbatim(make_protocol):
    instances = expand_protocols([make_protocol()], MONDAY, MONDAY + timedelta(days=2), UTC)
    logs = [
        make_log(scheduled_for=datetime(2026, 3, 2, 9, 0), status=DoseStatus.TAKEN, log_id="a"),
        make_log(scheduled_for=datetime(2026, 3, 3, 9, 0), status=DoseStatus.SKIPPED, log_id="b"),
        make_log(scheduled_for=datetime(2026, 3, 4, 9, 0), status=DoseStatus.PENDING, log_id="c"),
    ]
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    resolved = reconcile_statuses(instances, logs, now, UTC)
    assert [(r.status, r.dose_log_id) for r in resolved] == [
        ("taken", "a"), ("skipped", "b"), ("pending", "c"),
    ]


def test_unlogged_doses_are_pending_until_their_day_ends(make_protocol):
    protocol = make_protocol(start_date=MONDAY)
    instances = expand_protocols([protocol], MONDAY, MONDAY + timedelta(days=2), UTC)
    # Tuesday 15:00: Monday's dose has lapsed, Tuesday's 09:00 dose is late but not overdue
    now = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)

    statuses = [r.status for r in reconcile_statuses(instances, [], now, UTC)]
    assert statuses == ["overdue", "pending", "pending"]


def test_reconcile_does_not_touch_its_inputs(make_protocol):
    instances = expand_protocols([make_protocol()], MONDAY, MONDAY, UTC)
    logs = [make_log()]
    reconcile_statuses(instances, logs, datetime(2026, 3, 10, tzinfo=timezone.utc), UTC)

    assert instances[0].status is None
    assert instances[0].dose_log_id is None
    assert len(logs) == 1 and logs[0].status == DoseStatus.TAKEN


def test_logs_match_on_local_date_in_reference_zone(make_protocol):
    protocol = make_protocol(timing_preference=TimingPreference.BEFORE_BED)
    instances = expand_protocols([protocol], MONDAY, MONDAY, NEW_YORK)
    # 21:00 in New York on Monday is 02:00 UTC on Tuesday
    log = make_log(scheduled_for=datetime(2026, 3, 3, 2, 0))
    resolved = reconcile_statuses(instances, [log], datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc), NEW_YORK)
    assert resolved[0].status == "taken"


class TestDuplicateLogs:
    """Several logs for one (protocol, date, dose number) resolve deterministically."""

    def test_latest_taken_at_wins(self):
        early = make_log(log_id="early", taken_at=datetime(2026, 3, 2, 9, 0))
        late = make_log(log_id="late", taken_at=datetime(2026, 3, 2, 10, 0), status=DoseStatus.SKIPPED)
        assert pick_winning_log([late, early]).id == "late"
        assert pick_winning_log([early, late]).id == "late"

    def test_created_at_breaks_missing_taken_at(self):
        older = make_log(log_id="older", created_at=datetime(2026, 3, 2, 8, 0))
        newer = make_log(log_id="newer", created_at=datetime(2026, 3, 2, 11, 0))
        assert pick_winning_log([newer, older]).id == "newer"

    def test_full_tie_goes_to_last_entry(self):
        first = make_log(log_id="first")
        second = make_log(log_id="second")
        assert pick_winning_log([first, second]).id == "second"

    def test_reconciler_uses_the_winner(self, make_protocol):
        instances = expand_protocols([make_protocol()], MONDAY, MONDAY, UTC)
        logs = [
            make_log(log_id="skip", status=DoseStatus.SKIPPED, taken_at=None,
                     created_at=datetime(2026, 3, 2, 12, 0)),
            make_log(log_id="take", status=DoseStatus.TAKEN, taken_at=datetime(2026, 3, 2, 9, 5)),
        ]
        resolved = reconcile_statuses(instances, logs, datetime(2026, 3, 5, tzinfo=timezone.utc), UTC)
        assert resolved[0].status == "taken"
        assert resolved[0].dose_log_id == "take"


# ----------------------------------------------------------------------------
# Schedule views
# ----------------------------------------------------------------------------

def test_window_has_requested_days_and_one_today(make_protocol):
    now = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)
    schedule = build_schedule([make_protocol()], [], now, window_days=7, tz=UTC)

    assert len(schedule) == 7
    assert [d.is_today for d in schedule].count(True) == 1
    assert schedule[0].is_today and schedule[0].date == date(2026, 3, 4)
    assert not any(d.is_past for d in schedule)
    assert [d.date for d in schedule] == [date(2026, 3, 4) + timedelta(days=n) for n in range(7)]
    assert schedule[2].day_of_week == "friday"
    assert all(len(d.doses) == 1 for d in schedule)


def test_today_follows_the_reference_timezone(make_protocol):
    # 03:00 UTC on Tuesday is still Monday evening in New York
    now = datetime(2026, 3, 3, 3, 0, tzinfo=timezone.utc)
    schedule = build_schedule([make_protocol()], [], now, window_days=3, tz=NEW_YORK)
    assert schedule[0].date == MONDAY


def test_schedule_rejects_empty_window(make_protocol):
    with pytest.raises(ValueError):
        build_schedule([make_protocol()], [], datetime(2026, 3, 4, tzinfo=timezone.utc), window_days=0, tz=UTC)


def test_schedule_day_serializes(make_protocol):
    now = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)
    day = build_schedule([make_protocol()], [], now, window_days=1, tz=UTC)[0].to_dict()
    assert day["date"] == "2026-03-02"
    assert day["isToday"] is True
    assert day["doses"][0]["status"] == "pending"
    assert day["doses"][0]["dose"] == "250 mcg"


def test_doses_today_only_covers_today(make_protocol):
    now = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)
    doses = doses_today([make_protocol(doses_per_day=2)], [], now, UTC)
    assert {d.scheduled_date for d in doses} == {date(2026, 3, 4)}
    assert len(doses) == 2


def test_overdue_lists_unlogged_past_doses(make_protocol):
    protocol = make_protocol(start_date=MONDAY)
    logs = [make_log(scheduled_for=datetime(2026, 3, 3, 9, 0), status=DoseStatus.TAKEN),
            make_log(scheduled_for=datetime(2026, 3, 4, 9, 0), status=DoseStatus.SKIPPED, log_id="s")]
    now = datetime(2026, 3, 6, 12, 0, tzinfo=timezone.utc)

    overdue = overdue_doses([protocol], logs, now, tz=UTC)
    assert [d.scheduled_date for d in overdue] == [date(2026, 3, 2), date(2026, 3, 5)]
    assert {d.status for d in overdue} == {"overdue"}


def test_overdue_look_back_is_bounded(make_protocol):
    protocol = make_protocol(start_date=date(2026, 1, 1))
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    overdue = overdue_doses([protocol], [], now, lookback_days=30, tz=UTC)
    assert len(overdue) == 30
    assert overdue[0].scheduled_date == date(2026, 2, 8)


def test_is_due_today(make_protocol):
    now = datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)
    daily = make_protocol()
    assert is_due_today(daily, [], now, UTC)

    taken = make_log(scheduled_for=datetime(2026, 3, 4, 9, 0), status=DoseStatus.TAKEN)
    assert not is_due_today(daily, [taken], now, UTC)

    mondays = make_protocol(frequency_type=FrequencyType.SPECIFIC_DAYS, specific_days="monday")
    assert not is_due_today(mondays, [], now, UTC)

    paused = make_protocol(status=ProtocolStatus.PAUSED)
    assert not is_due_today(paused, [], now, UTC)


def test_next_dose_date(make_protocol):
    protocol = make_protocol(frequency_type=FrequencyType.EVERY_X_DAYS, interval_days=3)
    tuesday = datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)
    assert next_dose_date(protocol, tuesday, tz=UTC) == date(2026, 3, 5)

    thursday = datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)
    assert next_dose_date(protocol, thursday, last_dose_date=date(2026, 3, 5), tz=UTC) == date(2026, 3, 8)

    ended = make_protocol(frequency_type=FrequencyType.EVERY_X_DAYS, interval_days=3,
                          end_date=date(2026, 3, 4))
    assert next_dose_date(ended, tuesday, tz=UTC) is None


@pytest.mark.parametrize("overrides, expected", [
    ({}, "Daily"),
    ({"frequency_type": FrequencyType.WEEKLY}, "Weekly"),
    ({"frequency_type": FrequencyType.EVERY_X_DAYS, "interval_days": 2}, "Every other day"),
    ({"frequency_type": FrequencyType.EVERY_X_DAYS, "interval_days": 5}, "Every 5 days"),
    ({"frequency_type": FrequencyType.SPECIFIC_DAYS, "specific_days": "monday,friday"}, "Mon, Fri"),
    ({"frequency_type": FrequencyType.CYCLING}, "5 on / 2 off"),
])
def test_frequency_summary(make_protocol, overrides, expected):
    assert frequency_summary(make_protocol(**overrides)) == expected
