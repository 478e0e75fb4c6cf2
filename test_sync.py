"""Offline dose-log sync: natural keys, planning and best-effort batching."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from models import DoseStatus
from sync import (
    apply_sync_plan, natural_key, plan_dose_log_sync, sync_dose_logs,
)
from payloads import DoseLogInput

BASE = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def client_log(protocol_id="p1", scheduled_for=BASE, dose_number=1, status=DoseStatus.TAKEN,
               taken_at=None, notes=None):
    return DoseLogInput(
        protocol_id=protocol_id,
        peptide_name="BPC-157",
        dose="250 mcg",
        dose_number=dose_number,
        scheduled_for=scheduled_for,
        status=status,
        taken_at=taken_at,
        notes=notes,
    )


class TestNaturalKey:

    def test_equivalent_spellings_share_a_key(self):
        keys = {
            natural_key("p1", "2026-03-01T08:00:00.000Z", 1),
            natural_key("p1", "2026-03-01T08:00:00+00:00", 1),
            natural_key("p1", "2026-03-01T03:00:00-05:00", 1),
            natural_key("p1", datetime(2026, 3, 1, 8, 0), 1),
            natural_key("p1", BASE, 1),
        }
        assert keys == {"p1|2026-03-01T08:00:00Z|1"}

    def test_missing_dose_number_means_first_dose(self):
        assert natural_key("p1", BASE) == natural_key("p1", BASE, 1)

    def test_dose_number_and_protocol_distinguish_keys(self):
        assert natural_key("p1", BASE, 1) != natural_key("p1", BASE, 2)
        assert natural_key("p1", BASE, 1) != natural_key("p2", BASE, 1)


def test_plan_skips_logs_already_on_server():
    logs = [client_log(scheduled_for=BASE + timedelta(days=n)) for n in range(3)]
    server = {natural_key("p1", BASE), natural_key("p1", BASE + timedelta(days=1))}

    plan = plan_dose_log_sync(logs, server)
    assert plan.total == 3
    assert plan.skipped_count == 2
    assert [l.scheduled_for for l in plan.to_insert] == [BASE + timedelta(days=2)]


def test_plan_leaves_inputs_alone():
    logs = [client_log()]
    server = {natural_key("p2", BASE)}
    plan_dose_log_sync(logs, server)
    assert len(logs) == 1
    assert server == {natural_key("p2", BASE)}


def test_client_duplicates_collapse_to_latest_taken():
    early = client_log(taken_at=BASE, notes="first")
    late = client_log(scheduled_for="2026-03-01T08:00:00.000Z", taken_at=BASE + timedelta(minutes=10),
                      notes="second")
    plan = plan_dose_log_sync([late, early], set())

    assert plan.total == 2
    assert plan.skipped_count == 1
    assert [l.notes for l in plan.to_insert] == ["second"]


def test_sync_counts_and_message():
    inserted = []
    logs = [client_log(scheduled_for=BASE + timedelta(days=n)) for n in range(3)]
    result = sync_dose_logs(logs, {natural_key("p1", BASE), natural_key("p1", BASE + timedelta(days=1))},
                            inserted.extend)

    assert (result.synced, result.skipped, result.total) == (1, 2, 3)
    assert len(inserted) == 1
    assert result.to_dict() == {
        "success": True,
        "synced": 1,
        "skipped": 2,
        "total": 3,
        "failedBatches": 0,
        "message": "Synced 1 logs, skipped 2 duplicates",
    }


def test_empty_sync():
    result = sync_dose_logs([], set(), lambda batch: pytest.fail("nothing to insert"))
    assert (result.synced, result.skipped, result.total) == (0, 0, 0)
    assert result.message == "No logs to sync"


def test_inserts_run_in_batches_of_one_hundred():
    batches = []
    logs = [client_log(scheduled_for=BASE + timedelta(hours=n)) for n in range(250)]
    result = sync_dose_logs(logs, set(), batches.append)

    assert [len(b) for b in batches] == [100, 100, 50]
    assert result.synced == 250


def test_failed_batch_is_logged_and_the_rest_continue(caplog):
    calls = []

    def insert(batch):
        calls.append(len(batch))
        if len(calls) == 2:
            raise RuntimeError("database unavailable")

    logs = [client_log(scheduled_for=BASE + timedelta(hours=n)) for n in range(250)]
    with caplog.at_level(logging.WARNING, logger="sync"):
        result = sync_dose_logs(logs, set(), insert)

    assert calls == [100, 100, 50]
    assert result.synced == 150
    assert result.failed_batches == 1
    assert result.to_dict()["failedBatches"] == 1
    assert any("batch 100-199 failed" in r.getMessage() for r in caplog.records)


def test_batch_size_must_be_positive():
    plan = plan_dose_log_sync([client_log()], set())
    with pytest.raises(ValueError):
        apply_sync_plan(plan, lambda batch: None, batch_size=0)


class TestStoreSync:
    """Sync against the real store"""

    def test_second_sync_of_same_logs_is_a_no_op(self, db, user):
        logs = [client_log(scheduled_for=BASE + timedelta(days=n)) for n in range(5)]

        first = sync_dose_logs(logs, db.dose_log_keys(user.id),
                               lambda batch: db.insert_dose_logs(user.id, batch))
        assert first.synced == 5
        assert db.count_dose_logs(user.id) == 5

        second = sync_dose_logs(logs, db.dose_log_keys(user.id),
                                lambda batch: db.insert_dose_logs(user.id, batch))
        assert (second.synced, second.skipped, second.total) == (0, 5, 5)
        assert second.message == "All logs already synced"
        assert db.count_dose_logs(user.id) == 5

    def test_stored_keys_match_client_keys(self, db, user):
        eastern = datetime(2026, 3, 1, 3, 0, tzinfo=timezone(timedelta(hours=-5)))
        db.insert_dose_logs(user.id, [client_log(scheduled_for=eastern, dose_number=2)])
        assert db.dose_log_keys(user.id) == {"p1|2026-03-01T08:00:00Z|2"}

    def test_keys_are_per_owner(self, db, user):
        other = db.create_user("bob", "bob@example.com", "pw")
        db.insert_dose_logs(other.id, [client_log()])
        assert db.dose_log_keys(user.id) == set()
        result = sync_dose_logs([client_log()], db.dose_log_keys(user.id),
                                lambda batch: db.insert_dose_logs(user.id, batch))
        assert result.synced == 1
