#!/usr/bin/env python3
"""
Peptide Dose Tracker CLI
Command-line interface for protocols, the dose schedule and dose logging
"""

import getpass
from datetime import time, timedelta

from analysis import aggregate_user_data, get_validation_messages, validate_data_sufficiency
from config import Config, configure_logging
from database import PeptideDB
from models import DoseStatus, ProtocolStatus, create_database, get_session
from payloads import DoseLogInput, PayloadError, parse_protocol
from scheduling import build_schedule, doses_today, frequency_summary, next_dose_date, overdue_doses
from sync import natural_key
from timeutils import combine_local, local_date, reference_tz, utc_now


class PeptideCLI:
    """Command-line interface for dose tracking"""

    def __init__(self, use_sqlite=True):
        """Initialize CLI with database session"""
        if use_sqlite:
            self.db_url = "sqlite:///peptide_tracker.db"
        else:
            self.db_url = Config.DATABASE_URL

        create_database(self.db_url)
        self.session = get_session(self.db_url)
        self.db = PeptideDB(self.session)
        self.tz = reference_tz()
        self.user = None

    def login(self):
        """Pick the local user to work as (created on first use)"""
        username = input("\nUsername: ").strip()
        user = self.db.get_user_by_login(username)
        if user:
            password = getpass.getpass("Password: ")
            if not user.check_password(password):
                print("\n⚠ Invalid credentials.")
                return False
        else:
            create = input(f"User '{username}' not found. Create it? (y/n): ").strip().lower()
            if create != "y":
                return False
            email = input("Email: ").strip()
            password = getpass.getpass("Password: ")
            if not username or not email or not password:
                print("\n⚠ All fields are required.")
                return False
            user = self.db.create_user(username, email, password)
            print(f"\n✓ User created (ID: {user.id})")
        self.user = user
        return True

    def run(self):
        """Main CLI loop"""
        print("\n" + "="*60)
        print("PEPTIDE DOSE TRACKER CLI")
        print("="*60)

        if not self.login():
            return

        while True:
            print("\nMAIN MENU:")
            print("1. View active protocols")
            print("2. Create protocol")
            print("3. Today's doses")
            print("4. Weekly schedule")
            print("5. Log dose")
            print("6. Overdue doses")
            print("7. Change protocol status")
            print("8. Sync status")
            print("9. Weekly analysis readiness")
            print("10. Exit")

            choice = input("\nSelect option (1-10): ").strip()

            if choice == "1":
                self.view_protocols()
            elif choice == "2":
                self.create_protocol()
            elif choice == "3":
                self.view_today()
            elif choice == "4":
                self.view_schedule()
            elif choice == "5":
                self.log_dose()
            elif choice == "6":
                self.view_overdue()
            elif choice == "7":
                self.change_status()
            elif choice == "8":
                self.sync_status()
            elif choice == "9":
                self.analysis_readiness()
            elif choice == "10":
                print("\nGoodbye!")
                break
            else:
                print("Invalid option. Please try again.")

    def _logs_around(self, first_day, last_day):
        # one day of slack either side: logs are matched on local date, stored in UTC
        start = combine_local(first_day - timedelta(days=1), time(0, 0), self.tz)
        end = combine_local(last_day + timedelta(days=1), time(23, 59, 59), self.tz)
        return self.db.list_dose_logs(self.user.id, start=start, end=end, limit=None, ascending=True)

    def view_protocols(self):
        """View active protocols"""
        protocols = self.db.list_active_protocols(self.user.id)

        if not protocols:
            print("\n⚠ No active protocols.")
            return

        print("\n" + "="*60)
        print("ACTIVE PROTOCOLS")
        print("="*60)

        now = utc_now()
        for p in protocols:
            upcoming = next_dose_date(p, now, tz=self.tz)
            print(f"\n{p.peptide_name}")
            print(f"  Dose: {p.dose_label}, {p.doses_per_day}x per dosing day")
            print(f"  Frequency: {frequency_summary(p)}")
            print(f"  Started: {p.start_date.isoformat()}")
            if p.end_date:
                print(f"  Ends: {p.end_date.isoformat()}")
            print(f"  Next dose: {upcoming.isoformat() if upcoming else 'none scheduled'}")
            if p.notes:
                print(f"  Notes: {p.notes}")

    def create_protocol(self):
        """Create a new protocol"""
        print("\n" + "="*60)
        print("CREATE NEW PROTOCOL")
        print("="*60)

        data = {
            "peptideName": input("\nPeptide name: ").strip(),
            "dose": input("Dose (e.g. 250 mcg): ").strip(),
            "frequencyType": input("Frequency (daily/weekly/every-x-days/specific-days/cycling): ").strip() or "daily",
            "startDate": input("Start date (YYYY-MM-DD, default today): ").strip()
            or local_date(utc_now(), self.tz).isoformat(),
            "timingPreference": input("Timing (morning-fasted/evening/any-time/...): ").strip() or "any-time",
        }
        if data["frequencyType"] in ("every-x-days", "interval"):
            data["intervalDays"] = input("Every how many days: ").strip()
        elif data["frequencyType"] == "specific-days":
            data["specificDays"] = input("Days (e.g. mon,wed,fri): ").strip()
        elif data["frequencyType"] == "cycling":
            data["cycleOnDays"] = input("Days on (default 5): ").strip()
            data["cycleOffDays"] = input("Days off (default 2): ").strip()
        data["dosesPerDay"] = input("Doses per day (default 1): ").strip()
        data["endDate"] = input("End date (optional, YYYY-MM-DD): ").strip()

        try:
            protocol = self.db.create_protocol(self.user.id, parse_protocol(data, self.tz))
        except PayloadError as e:
            print(f"\n⚠ Error: {e}")
            return

        print(f"\n✓ Protocol created successfully! (ID: {protocol.id})")
        print(f"  {protocol.peptide_name}: {protocol.dose_label}, {frequency_summary(protocol)}")

    def _print_dose(self, index, dose):
        at = dose.scheduled_for.astimezone(self.tz).strftime("%H:%M")
        number = f" #{dose.dose_number}" if dose.doses_per_day > 1 else ""
        print(f"{index}. {at}  {dose.peptide_name}{number} - {dose.dose}  [{dose.status}]")

    def view_today(self):
        """Reconciled doses for today"""
        today = local_date(utc_now(), self.tz)
        protocols = self.db.list_active_protocols(self.user.id)
        doses = doses_today(protocols, self._logs_around(today, today), utc_now(), self.tz)

        if not doses:
            print("\n⚠ Nothing scheduled today.")
            return

        print("\n" + "="*60)
        print(f"TODAY ({today.isoformat()})")
        print("="*60)
        for i, dose in enumerate(doses, 1):
            self._print_dose(i, dose)

    def view_schedule(self):
        """Seven-day schedule starting today"""
        try:
            days = int(input("\nDays to show (default 7): ").strip() or "7")
            if days < 1:
                raise ValueError("days must be at least 1")
        except ValueError as e:
            print(f"\n⚠ Error: {e}")
            return

        today = local_date(utc_now(), self.tz)
        protocols = self.db.list_active_protocols(self.user.id)
        logs = self._logs_around(today, today + timedelta(days=days - 1))

        schedule = build_schedule(protocols, logs, utc_now(), window_days=days, tz=self.tz)

        print("\n" + "="*60)
        print(f"SCHEDULE (NEXT {days} DAYS)")
        print("="*60)
        for day in schedule:
            marker = " (today)" if day.is_today else ""
            print(f"\n{day.day_of_week.capitalize()} {day.date.isoformat()}{marker}")
            if not day.doses:
                print("  -")
            for i, dose in enumerate(day.doses, 1):
                self._print_dose(f"  {i}", dose)

    def log_dose(self):
        """Mark one of today's doses as taken or skipped"""
        print("\n" + "="*60)
        print("LOG DOSE")
        print("="*60)

        now = utc_now()
        today = local_date(now, self.tz)
        protocols = self.db.list_active_protocols(self.user.id)
        doses = doses_today(protocols, self._logs_around(today, today), now, self.tz)
        if not doses:
            print("\n⚠ Nothing scheduled today.")
            return

        for i, dose in enumerate(doses, 1):
            self._print_dose(i, dose)

        try:
            dose = doses[int(input("\nSelect dose (number): ")) - 1]
            skipped = input("Taken or skipped? (t/s, default t): ").strip().lower() == "s"
            notes = input("Notes (optional): ").strip() or None
        except (ValueError, IndexError) as e:
            print(f"\n⚠ Error: {e}")
            return

        data = DoseLogInput(
            protocol_id=dose.protocol_id,
            peptide_name=dose.peptide_name,
            dose=dose.dose,
            dose_number=dose.dose_number,
            scheduled_for=dose.scheduled_for,
            status=DoseStatus.SKIPPED if skipped else DoseStatus.TAKEN,
            taken_at=None if skipped else now,
            notes=notes,
        )
        row, created = self.db.upsert_dose_log(self.user.id, data)
        print(f"\n✓ Dose {'logged' if created else 'updated'} ({natural_key(row.protocol_id, row.scheduled_for, row.dose_number)})")

    def view_overdue(self):
        """Missed doses over the last 30 days"""
        now = utc_now()
        today = local_date(now, self.tz)
        protocols = self.db.list_active_protocols(self.user.id)
        doses = overdue_doses(protocols, self._logs_around(today - timedelta(days=30), today), now, tz=self.tz)

        if not doses:
            print("\n✓ No overdue doses.")
            return

        print("\n" + "="*60)
        print(f"OVERDUE DOSES ({len(doses)})")
        print("="*60)
        for i, dose in enumerate(doses, 1):
            print(f"{i}. {dose.scheduled_date.isoformat()}  {dose.peptide_name} - {dose.dose}")

    def change_status(self):
        """Pause, resume or complete a protocol"""
        protocols = self.db.list_protocols(self.user.id)
        if not protocols:
            print("\n⚠ No protocols.")
            return

        for i, p in enumerate(protocols, 1):
            print(f"{i}. {p.peptide_name} ({p.status.value})")

        try:
            protocol = protocols[int(input("\nSelect protocol (number): ")) - 1]
            status = ProtocolStatus(input("New status (active/paused/completed): ").strip().lower())
        except (ValueError, IndexError) as e:
            print(f"\n⚠ Error: {e}")
            return

        self.db.set_protocol_status(self.user.id, protocol.id, status, local_date(utc_now(), self.tz))
        print(f"\n✓ {protocol.peptide_name} is now {status.value}")

    def sync_status(self):
        """What the server already holds for this user"""
        logs = self.db.count_dose_logs(self.user.id)
        protocols = self.db.count_protocols(self.user.id)
        print("\n" + "="*60)
        print("SYNC STATUS")
        print("="*60)
        print(f"Protocols stored: {protocols}")
        print(f"Dose logs stored: {logs}")
        print(f"Has synced data: {'yes' if logs else 'no'}")

    def analysis_readiness(self):
        """Check whether there is enough data for a weekly AI analysis"""
        week_end = local_date(utc_now(), self.tz)
        week_start = week_end - timedelta(days=6)
        user_data = aggregate_user_data(self.user.id, self.db, week_start, week_end, tz=self.tz)
        result = validate_data_sufficiency(user_data)
        messages = get_validation_messages(result)

        print("\n" + "="*60)
        print(messages["title"].upper())
        print("="*60)
        print(messages["description"])
        print(f"Data quality: {result['dataQuality']}")
        for item in messages["actionItems"]:
            print(f"  - {item}")
        stats = result["stats"]
        print(f"\nWearable days: {stats['daysOfGarminData']}, dose days: {stats['daysOfDoseLogs']}, "
              f"protocols: {stats['activeProtocols']}, completeness: {stats['completenessScore']}%")

    def close(self):
        """Close database session"""
        self.session.close()


def main():
    """Run CLI application"""
    configure_logging()
    cli = PeptideCLI(use_sqlite=True)

    try:
        cli.run()
    except KeyboardInterrupt:
        print("\n\nInterrupted by user. Exiting...")
    finally:
        cli.close()


if __name__ == "__main__":
    main()
