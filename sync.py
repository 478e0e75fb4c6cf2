"""
Offline Sync
Merges dose logs held on a client (recorded while offline or before the
account existed) into the server store without creating duplicates.

The merge is split into a pure planning step and a best-effort apply step:

    plan = plan_dose_log_sync(client_logs, server_keys)
    result = apply_sync_plan(plan, db.insert_dose_logs)

Planning compares natural keys ``<protocolId>|<scheduledFor>|<doseNumber>``
where scheduledFor is the canonical UTC string, so the same instant written
two different ways by client and server still deduplicates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from payloads import DEFAULT_DOSE_NUMBER, DoseLogInput
from scheduling import pick_winning_log
from timeutils import canonical_instant

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


def natural_key(protocol_id, scheduled_for, dose_number=None) -> str:
    """``"<protocolId>|<canonical scheduledFor>|<doseNumber>"``"""
    number = dose_number or DEFAULT_DOSE_NUMBER
    return f"{protocol_id}|{canonical_instant(scheduled_for)}|{number}"


def key_for_log(log) -> str:
    return natural_key(log.protocol_id, log.scheduled_for, getattr(log, "dose_number", None))


@dataclass(frozen=True)
class SyncPlan:
    to_insert: Tuple[DoseLogInput, ...]
    skipped_count: int
    total: int


@dataclass(frozen=True)
class SyncResult:
    synced: int
    skipped: int
    total: int
    failed_batches: int = 0

    @property
    def message(self) -> str:
        if self.total == 0:
            return "No logs to sync"
        if self.synced == 0 and self.skipped == self.total:
            return "All logs already synced"
        return f"Synced {self.synced} logs, skipped {self.skipped} duplicates"

    def to_dict(self) -> dict:
        return {
            "success": True,
            "synced": self.synced,
            "skipped": self.skipped,
            "total": self.total,
            "failedBatches": self.failed_batches,
            "message": self.message,
        }


def plan_dose_log_sync(client_logs: Sequence[DoseLogInput], server_keys: Iterable[str]) -> SyncPlan:
    """Decide which client logs are new. Neither input is modified.

    Client logs whose natural key already exists on the server are skipped.
    When the client set itself repeats a key, the entry with the latest
    taken_at wins (then the later one in the list) and the rest are skipped.
    """
    existing = set(server_keys)

    grouped: Dict[str, List[DoseLogInput]] = {}
    order: List[str] = []
    for log in client_logs:
        key = key_for_log(log)
        if key not in grouped:
            grouped[key] = []
            order.append(key)
        grouped[key].append(log)

    to_insert = []
    for key in order:
        if key in existing:
            continue
        to_insert.append(pick_winning_log(grouped[key]))

    return SyncPlan(
        to_insert=tuple(to_insert),
        skipped_count=len(client_logs) - len(to_insert),
        total=len(client_logs),
    )


def apply_sync_plan(
    plan: SyncPlan,
    insert_batch: Callable[[Sequence[DoseLogInput]], None],
    batch_size: int = BATCH_SIZE,
) -> SyncResult:
    """Insert planned logs in sequential batches.

    A batch that raises is logged and counted; later batches still run, so
    `synced` can be lower than `total - skipped`.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    synced = 0
    failed = 0
    rows = plan.to_insert
    for start in range(0, len(rows), batch_size):
        batch = rows[start:start + batch_size]
        try:
            insert_batch(batch)
        except Exception:
            failed += 1
            logger.exception("Dose log sync: batch %d-%d failed", start, start + len(batch) - 1)
            continue
        synced += len(batch)

    if failed:
        logger.warning("Dose log sync finished with %d failed batch(es)", failed)
    return SyncResult(synced=synced, skipped=plan.skipped_count, total=plan.total,
                      failed_batches=failed)


def sync_dose_logs(client_logs: Sequence[DoseLogInput], server_keys: Iterable[str],
                   insert_batch, batch_size: int = BATCH_SIZE) -> SyncResult:
    plan = plan_dose_log_sync(client_logs, server_keys)
    if not plan.to_insert:
        return SyncResult(synced=0, skipped=plan.skipped_count, total=plan.total)
    return apply_sync_plan(plan, insert_batch, batch_size)
