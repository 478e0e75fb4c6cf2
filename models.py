"""
Peptide Dose Tracker Database Models
SQLAlchemy ORM models for protocols, dose logs, wearable data and AI insights
"""

from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import (
    create_engine, Column, Integer, String, Float, Text, Date,
    DateTime, Enum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, sessionmaker
from werkzeug.security import check_password_hash, generate_password_hash

from timeutils import iso_utc

Base = declarative_base()


def _utcnow():
    # Stored datetimes are naive UTC throughout
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id():
    return str(uuid.uuid4())


class FrequencyType(enum.Enum):
    """How often a protocol is dosed"""
    DAILY = "daily"
    WEEKLY = "weekly"
    EVERY_X_DAYS = "every-x-days"
    SPECIFIC_DAYS = "specific-days"
    CYCLING = "cycling"


class TimingPreference(enum.Enum):
    """Preferred time-of-day category"""
    MORNING_FASTED = "morning-fasted"
    MORNING_WITH_FOOD = "morning-with-food"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    BEFORE_BED = "before-bed"
    ANY_TIME = "any-time"


class ProtocolStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class DoseStatus(enum.Enum):
    PENDING = "pending"
    TAKEN = "taken"
    SKIPPED = "skipped"
    OVERDUE = "overdue"


WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

WEARABLE_METRICS = [
    "sleep_score", "sleep_duration_hours", "deep_sleep_hours", "light_sleep_hours",
    "rem_sleep_hours", "awake_hours", "hrv_avg", "resting_hr", "stress_avg",
    "body_battery_high", "body_battery_low", "steps", "active_minutes",
    "calories_total", "calories_active", "distance_meters",
]


def _value(member):
    return getattr(member, "value", member)


def _iso_date(value):
    return value.isoformat() if value is not None else None


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(80), unique=True, nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f"<User(username='{self.username}')>"


class Protocol(Base):
    """Recurring dosing regimen"""
    __tablename__ = 'protocols'

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(Integer, nullable=False, index=True)

    peptide_name = Column(String(200), nullable=False)  # e.g., "BPC-157"
    dose_amount = Column(Float, nullable=False)
    dose_unit = Column(String(20), nullable=False, default="mcg")

    # Schedule
    frequency_type = Column(Enum(FrequencyType), nullable=False, default=FrequencyType.DAILY)
    interval_days = Column(Integer)          # every-x-days
    specific_days = Column(String(100))      # comma-separated weekday names
    cycle_on_days = Column(Integer)          # cycling
    cycle_off_days = Column(Integer)
    cycle_start_date = Column(Date)
    doses_per_day = Column(Integer, nullable=False, default=1)

    # Timing
    timing_preference = Column(Enum(TimingPreference), default=TimingPreference.ANY_TIME)
    preferred_time = Column(String(5))       # "HH:MM", overrides timing_preference default

    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    status = Column(Enum(ProtocolStatus), nullable=False, default=ProtocolStatus.ACTIVE)

    notes = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    @property
    def specific_days_list(self):
        if not self.specific_days:
            return []
        return [d.strip().lower() for d in self.specific_days.split(",") if d.strip()]

    @property
    def dose_label(self):
        amount = f"{self.dose_amount:g}" if self.dose_amount is not None else "?"
        return f"{amount} {self.dose_unit or 'mcg'}"

    def to_dict(self):
        return {
            "id": self.id,
            "peptideName": self.peptide_name,
            "dose": self.dose_label,
            "doseAmount": self.dose_amount,
            "doseUnit": self.dose_unit,
            "frequencyType": _value(self.frequency_type),
            "intervalDays": self.interval_days,
            "specificDays": self.specific_days_list,
            "cycleOnDays": self.cycle_on_days,
            "cycleOffDays": self.cycle_off_days,
            "cycleStartDate": _iso_date(self.cycle_start_date),
            "dosesPerDay": self.doses_per_day,
            "timingPreference": _value(self.timing_preference),
            "preferredTime": self.preferred_time,
            "startDate": _iso_date(self.start_date),
            "endDate": _iso_date(self.end_date),
            "status": _value(self.status),
            "notes": self.notes,
            "createdAt": iso_utc(self.created_at),
            "updatedAt": iso_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Protocol(peptide='{self.peptide_name}', dose={self.dose_label})>"


class DoseLog(Base):
    """Administered / skipped / pending dose event"""
    __tablename__ = 'dose_logs'
    __table_args__ = (
        # natural key: one row per protocol, scheduled instant and dose number
        UniqueConstraint("user_id", "protocol_id", "scheduled_for", "dose_number",
                         name="uq_dose_logs_natural_key"),
        Index("ix_dose_logs_user_scheduled", "user_id", "scheduled_for"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(Integer, nullable=False)
    # no FK: logs outlive deleted protocols, peptide_name keeps them readable
    protocol_id = Column(String(64), nullable=False, index=True)
    peptide_name = Column(String(200), nullable=False)
    dose = Column(String(50), nullable=False)
    dose_number = Column(Integer, nullable=False, default=1)

    scheduled_for = Column(DateTime, nullable=False)
    taken_at = Column(DateTime)
    status = Column(Enum(DoseStatus), nullable=False, default=DoseStatus.PENDING)
    notes = Column(Text)

    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "odId": self.id,
            "protocolId": self.protocol_id,
            "peptideName": self.peptide_name,
            "dose": self.dose,
            "doseNumber": self.dose_number,
            "scheduledFor": iso_utc(self.scheduled_for),
            "takenAt": iso_utc(self.taken_at),
            "status": _value(self.status),
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<DoseLog(peptide='{self.peptide_name}', scheduled={self.scheduled_for}, status={self.status})>"


class WearableDaily(Base):
    """One day of wearable health metrics (already parsed from an export)"""
    __tablename__ = 'wearable_daily'
    __table_args__ = (
        UniqueConstraint("user_id", "data_date", name="uq_wearable_daily_user_date"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    data_date = Column(Date, nullable=False)
    source = Column(String(50), default="garmin")

    # Sleep
    sleep_score = Column(Float)
    sleep_duration_hours = Column(Float)
    deep_sleep_hours = Column(Float)
    light_sleep_hours = Column(Float)
    rem_sleep_hours = Column(Float)
    awake_hours = Column(Float)

    # Recovery / stress
    hrv_avg = Column(Float)
    resting_hr = Column(Float)
    stress_avg = Column(Float)
    body_battery_high = Column(Float)
    body_battery_low = Column(Float)

    # Activity
    steps = Column(Integer)
    active_minutes = Column(Integer)
    calories_total = Column(Integer)
    calories_active = Column(Integer)
    distance_meters = Column(Float)

    synced_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        """Daily summary with absent metrics left out."""
        summary = {"date": _iso_date(self.data_date)}
        for name in WEARABLE_METRICS:
            value = getattr(self, name)
            if value is not None:
                summary[name] = value
        return summary

    def __repr__(self):
        return f"<WearableDaily(date={self.data_date}, hrv={self.hrv_avg})>"


class AIInsight(Base):
    """Persisted weekly AI analysis"""
    __tablename__ = 'ai_insights'
    __table_args__ = (
        UniqueConstraint("user_id", "week_start", name="uq_ai_insights_user_week"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(Integer, nullable=False, index=True)
    week_start = Column(Date, nullable=False)
    week_end = Column(Date, nullable=False)

    metrics_summary = Column(JSON)
    protocol_summary = Column(JSON)
    correlation_data = Column(JSON)
    insights = Column(JSON)
    weekly_summary = Column(Text)
    recommendations = Column(JSON)

    generated_at = Column(DateTime, default=_utcnow)
    model_version = Column(String(100))
    input_tokens = Column(Integer)
    output_tokens = Column(Integer)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "weekStart": _iso_date(self.week_start),
            "weekEnd": _iso_date(self.week_end),
            "metricsSummary": self.metrics_summary or {},
            "protocolSummary": self.protocol_summary or {},
            "correlationData": self.correlation_data or [],
            "insights": self.insights or [],
            "weeklySummary": self.weekly_summary or "",
            "recommendations": self.recommendations or [],
            "generatedAt": iso_utc(self.generated_at),
            "modelVersion": self.model_version,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }

    def __repr__(self):
        return f"<AIInsight(week_start={self.week_start}, model='{self.model_version}')>"


# Database initialization functions
def create_database(db_url="sqlite:///peptide_tracker.db", echo=False):
    """Create all tables in the database"""
    engine = create_engine(db_url, echo=echo)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session(db_url="sqlite:///peptide_tracker.db"):
    """Get a database session"""
    engine = create_engine(db_url, echo=False)
    Session = make_session_factory(engine)
    return Session()


if __name__ == "__main__":
    # Create tables if running this file directly
    from config import Config
    print("Creating database tables...")
    create_database(Config.DATABASE_URL, echo=True)
    print("Database tables created successfully!")
