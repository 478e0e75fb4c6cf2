"""
Database Operations
Owner-scoped CRUD for protocols, dose logs, wearable summaries and insights
"""

from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    AIInsight, DoseLog, Protocol, ProtocolStatus, User, WearableDaily, WEARABLE_METRICS,
)
from payloads import DoseLogInput, ProtocolInput
from sync import key_for_log
from timeutils import to_naive_utc


def scheduled_instant(value: datetime) -> datetime:
    """Stored form of a scheduled time: naive UTC, whole seconds like the sync key"""
    return to_naive_utc(value).replace(microsecond=0)


class PeptideDB:
    """Database operations, always filtered by owner"""

    def __init__(self, session: Session):
        self.session = session

    def _commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    # ==================== USERS ====================

    def create_user(self, username: str, email: str, password: str) -> User:
        user = User(username=username, email=email)
        user.set_password(password)
        self.session.add(user)
        self._commit()
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.query(User).filter(User.id == user_id).first()

    def get_user_by_login(self, login: str) -> Optional[User]:
        """Look a user up by username or email"""
        return self.session.query(User).filter(
            (User.username == login) | (User.email == login)
        ).first()

    # ==================== PROTOCOL OPERATIONS ====================

    def create_protocol(self, user_id: int, data: ProtocolInput) -> Protocol:
        """Create a new protocol"""
        protocol = Protocol(user_id=user_id, **data.column_values())
        if data.id:
            protocol.id = data.id
        self.session.add(protocol)
        self._commit()
        return protocol

    def get_protocol(self, user_id: int, protocol_id: str) -> Optional[Protocol]:
        return self.session.query(Protocol).filter(
            Protocol.user_id == user_id, Protocol.id == protocol_id
        ).first()

    def list_protocols(self, user_id: int, status: Optional[ProtocolStatus] = None) -> List[Protocol]:
        query = self.session.query(Protocol).filter(Protocol.user_id == user_id)
        if status is not None:
            query = query.filter(Protocol.status == status)
        return query.order_by(Protocol.start_date.desc()).all()

    def list_active_protocols(self, user_id: int) -> List[Protocol]:
        """List all active protocols"""
        return self.list_protocols(user_id, ProtocolStatus.ACTIVE)

    def set_protocol_status(self, user_id: int, protocol_id: str,
                            status: ProtocolStatus, today: Optional[date] = None) -> Optional[Protocol]:
        """Pause, resume or complete a protocol"""
        protocol = self.get_protocol(user_id, protocol_id)
        if protocol:
            protocol.status = status
            if status == ProtocolStatus.COMPLETED and protocol.end_date is None:
                protocol.end_date = today or date.today()
            self._commit()
        return protocol

    def upsert_protocols(self, user_id: int, items: Sequence[ProtocolInput]) -> int:
        """Insert or update protocols by id in one transaction"""
        for data in items:
            protocol = self.get_protocol(user_id, data.id) if data.id else None
            if protocol is None:
                protocol = Protocol(user_id=user_id)
                if data.id:
                    protocol.id = data.id
                self.session.add(protocol)
            for column, value in data.column_values().items():
                setattr(protocol, column, value)
            if data.updated_at is not None:
                protocol.updated_at = to_naive_utc(data.updated_at)
        self._commit()
        return len(items)

    def count_protocols(self, user_id: int) -> int:
        return self.session.query(func.count(Protocol.id)).filter(
            Protocol.user_id == user_id
        ).scalar() or 0

    def protocols_changed_since(self, user_id: int, since: datetime) -> List[Protocol]:
        return self.session.query(Protocol).filter(
            Protocol.user_id == user_id,
            Protocol.updated_at >= to_naive_utc(since),
        ).all()

    # ==================== DOSE LOGS ====================

    def list_dose_logs(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = 100,
        ascending: bool = False,
    ) -> List[DoseLog]:
        """Dose logs by scheduled time, newest first unless `ascending`"""
        query = self.session.query(DoseLog).filter(DoseLog.user_id == user_id)
        if start is not None:
            query = query.filter(DoseLog.scheduled_for >= to_naive_utc(start))
        if end is not None:
            query = query.filter(DoseLog.scheduled_for <= to_naive_utc(end))
        order = DoseLog.scheduled_for.asc() if ascending else DoseLog.scheduled_for.desc()
        query = query.order_by(order)
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_dose_log(self, user_id: int, protocol_id: str, scheduled_for: datetime,
                      dose_number: int) -> Optional[DoseLog]:
        return self.session.query(DoseLog).filter(
            DoseLog.user_id == user_id,
            DoseLog.protocol_id == protocol_id,
            DoseLog.scheduled_for == scheduled_instant(scheduled_for),
            DoseLog.dose_number == dose_number,
        ).first()

    def _apply_log_fields(self, row: DoseLog, data: DoseLogInput):
        row.protocol_id = data.protocol_id
        row.peptide_name = data.peptide_name
        row.dose = data.dose
        row.dose_number = data.dose_number
        row.scheduled_for = scheduled_instant(data.scheduled_for)
        row.taken_at = to_naive_utc(data.taken_at) if data.taken_at else None
        row.status = data.status
        row.notes = data.notes

    def upsert_dose_log(self, user_id: int, data: DoseLogInput) -> Tuple[DoseLog, bool]:
        """Create or update the log for this natural key. Returns (row, created)."""
        row = self.find_dose_log(user_id, data.protocol_id, data.scheduled_for, data.dose_number)
        created = row is None
        if created:
            row = DoseLog(user_id=user_id)
            self.session.add(row)
        self._apply_log_fields(row, data)
        self._commit()
        return row, created

    def insert_dose_logs(self, user_id: int, batch: Sequence[DoseLogInput]) -> None:
        """Insert one batch atomically; raises (after rollback) if any row fails"""
        rows = []
        for data in batch:
            row = DoseLog(user_id=user_id)
            self._apply_log_fields(row, data)
            rows.append(row)
        self.session.add_all(rows)
        self._commit()

    def dose_log_keys(self, user_id: int) -> Set[str]:
        """Natural keys of every stored log for the owner"""
        rows = self.session.query(
            DoseLog.protocol_id, DoseLog.scheduled_for, DoseLog.dose_number
        ).filter(DoseLog.user_id == user_id).all()
        return {key_for_log(row) for row in rows}

    def count_dose_logs(self, user_id: int) -> int:
        return self.session.query(func.count(DoseLog.id)).filter(
            DoseLog.user_id == user_id
        ).scalar() or 0

    # ==================== WEARABLE DATA ====================

    def upsert_wearable_days(self, user_id: int, days: Iterable[Dict]) -> Tuple[int, int]:
        """Upsert parsed daily summaries keyed by date. Returns (inserted, updated)."""
        inserted = updated = 0
        for day in days:
            data_date = day["date"]
            row = self.session.query(WearableDaily).filter(
                WearableDaily.user_id == user_id, WearableDaily.data_date == data_date
            ).first()
            if row is None:
                row = WearableDaily(user_id=user_id, data_date=data_date)
                self.session.add(row)
                inserted += 1
            else:
                updated += 1
            if day.get("source"):
                row.source = day["source"]
            for metric in WEARABLE_METRICS:
                if day.get(metric) is not None:
                    setattr(row, metric, day[metric])
        self._commit()
        return inserted, updated

    def wearable_between(self, user_id: int, start: date, end: date) -> List[WearableDaily]:
        return self.session.query(WearableDaily).filter(
            WearableDaily.user_id == user_id,
            WearableDaily.data_date >= start,
            WearableDaily.data_date <= end,
        ).order_by(WearableDaily.data_date.asc()).all()

    # ==================== AI INSIGHTS ====================

    def list_insights(self, user_id: int, limit: int = 10, offset: int = 0,
                      week_start: Optional[date] = None) -> Tuple[List[AIInsight], int]:
        query = self.session.query(AIInsight).filter(AIInsight.user_id == user_id)
        if week_start is not None:
            query = query.filter(AIInsight.week_start == week_start)
        total = query.count()
        rows = query.order_by(AIInsight.week_start.desc()).offset(offset).limit(limit).all()
        return rows, total

    def latest_insight(self, user_id: int) -> Optional[AIInsight]:
        return self.session.query(AIInsight).filter(
            AIInsight.user_id == user_id
        ).order_by(AIInsight.week_start.desc()).first()

    def get_insight_for_week(self, user_id: int, week_start: date) -> Optional[AIInsight]:
        return self.session.query(AIInsight).filter(
            AIInsight.user_id == user_id, AIInsight.week_start == week_start
        ).first()

    def save_insight(self, user_id: int, week_start: date, **fields) -> AIInsight:
        """Upsert the insight for (owner, week_start)"""
        row = self.get_insight_for_week(user_id, week_start)
        if row is None:
            row = AIInsight(user_id=user_id, week_start=week_start)
            self.session.add(row)
        for key, value in fields.items():
            setattr(row, key, value)
        self._commit()
        return row

    def delete_insight(self, user_id: int, insight_id: str) -> bool:
        row = self.session.query(AIInsight).filter(
            AIInsight.user_id == user_id, AIInsight.id == insight_id
        ).first()
        if row is None:
            return False
        self.session.delete(row)
        self._commit()
        return True
