"""
Seed Database with Demo Data
Populate a demo user with protocols, a few weeks of dose logs and wearable
summaries so the schedule, sync status and weekly analysis have data.
"""

import random
from datetime import date, timedelta

from config import Config
from database import PeptideDB
from models import DoseStatus, create_database, get_session
from payloads import DoseLogInput, parse_protocol
from scheduling import expand_protocols
from sync import sync_dose_logs
from timeutils import reference_tz, utc_now

DEMO_USERNAME = "demo"
DEMO_EMAIL = "demo@example.com"
DEMO_PASSWORD = "demo-password"

DEMO_PROTOCOLS = [
    {
        "peptideName": "BPC-157",
        "dose": "250 mcg",
        "frequencyType": "daily",
        "dosesPerDay": 2,
        "timingPreference": "morning-fasted",
        "notes": "Injury recovery",
    },
    {
        "peptideName": "TB-500",
        "dose": "2.5 mg",
        "frequencyType": "specific-days",
        "specificDays": ["monday", "thursday"],
        "timingPreference": "evening",
    },
    {
        "peptideName": "Ipamorelin",
        "dose": "200 mcg",
        "frequencyType": "cycling",
        "cycleOnDays": 5,
        "cycleOffDays": 2,
        "timingPreference": "before-bed",
    },
]


def _wearable_day(rng, day):
    sleep = round(rng.uniform(6.0, 8.5), 2)
    return {
        "date": day,
        "source": "garmin",
        "sleep_score": rng.randint(60, 92),
        "sleep_duration_hours": sleep,
        "deep_sleep_hours": round(sleep * rng.uniform(0.15, 0.25), 2),
        "rem_sleep_hours": round(sleep * rng.uniform(0.18, 0.25), 2),
        "hrv_avg": rng.randint(35, 75),
        "resting_hr": rng.randint(48, 62),
        "stress_avg": rng.randint(20, 45),
        "body_battery_high": rng.randint(60, 100),
        "body_battery_low": rng.randint(5, 35),
        "steps": rng.randint(4000, 14000),
        "active_minutes": rng.randint(10, 90),
    }


def seed_demo_user(session, today: date = None, history_days: int = 14, seed: int = 42):
    """Create (or reuse) the demo user and fill in sample data"""
    db = PeptideDB(session)
    tz = reference_tz()
    now = utc_now()
    today = today or now.astimezone(tz).date()
    rng = random.Random(seed)

    print("\n" + "="*60)
    print("SEEDING DATABASE WITH DEMO DATA")
    print("="*60 + "\n")

    user = db.get_user_by_login(DEMO_USERNAME)
    if user is None:
        user = db.create_user(DEMO_USERNAME, DEMO_EMAIL, DEMO_PASSWORD)
        print(f"✓ Created user: {user.username} (password: {DEMO_PASSWORD})")
    else:
        print(f"• Reusing user: {user.username}")

    start = today - timedelta(days=history_days)
    items = [parse_protocol(dict(data, startDate=start.isoformat()), tz) for data in DEMO_PROTOCOLS]
    if not db.list_protocols(user.id):
        for item in items:
            protocol = db.create_protocol(user.id, item)
            print(f"✓ Added protocol: {protocol.peptide_name} ({protocol.dose_label})")

    # Past doses: mostly taken, some skipped, a few never logged (overdue)
    protocols = db.list_active_protocols(user.id)
    existing = db.dose_log_keys(user.id)
    logs = []
    for instance in expand_protocols(protocols, start, today - timedelta(days=1), tz):
        roll = rng.random()
        if roll < 0.08:
            continue
        skipped = roll < 0.15
        logs.append(DoseLogInput(
            protocol_id=instance.protocol_id,
            peptide_name=instance.peptide_name,
            dose=instance.dose,
            dose_number=instance.dose_number,
            scheduled_for=instance.scheduled_for,
            status=DoseStatus.SKIPPED if skipped else DoseStatus.TAKEN,
            taken_at=None if skipped else instance.scheduled_for + timedelta(minutes=rng.randint(0, 45)),
        ))
    result = sync_dose_logs(logs, existing, lambda batch: db.insert_dose_logs(user.id, batch))
    print(f"✓ Dose logs: {result.message}")

    # Wearable data covers the 4-week baseline plus the history window
    days = [_wearable_day(rng, today - timedelta(days=offset)) for offset in range(history_days + 28, 0, -1)]
    inserted, updated = db.upsert_wearable_days(user.id, days)
    print(f"✓ Wearable days: {inserted} added, {updated} updated")

    print(f"\n{'='*60}")
    print("Demo data seeded successfully!")
    print("="*60 + "\n")
    return user


def main():
    """Run seeding script"""
    # You can switch to SQLite for easier setup
    use_sqlite = True  # Change to False to use DATABASE_URL

    if use_sqlite:
        db_url = "sqlite:///peptide_tracker.db"
        print("Using SQLite database for easier setup...")
    else:
        db_url = Config.DATABASE_URL
        print(f"Using database: {db_url}")

    # Create tables if they don't exist
    create_database(db_url)

    session = get_session(db_url)
    try:
        seed_demo_user(session)
    finally:
        session.close()


if __name__ == "__main__":
    main()
