"""
Configuration for Peptide Dose Tracker
"""

import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration"""

    # Database configuration - use DATABASE_URL from environment if available
    DATABASE_URL = os.getenv("DATABASE_URL")

    # If no DATABASE_URL is set, fall back to SQLite for local development
    if not DATABASE_URL:
        DATABASE_URL = "sqlite:///peptide_tracker.db"

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")

    # AI provider
    ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
    ANTHROPIC_API_URL = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages")
    CHAT_MODEL = os.getenv("CHAT_MODEL", "claude-haiku-4-5-20251001")
    ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", "claude-sonnet-4-20250514")

    # All day-level comparisons (today / past / overdue) happen in this zone
    APP_TIMEZONE = os.getenv("APP_TIMEZONE", "UTC")

    # Application settings
    DEBUG = os.getenv("DEBUG", "True").lower() == "true"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def get_database_url(cls, use_sqlite: bool = False) -> str:
        """Get database URL, optionally forcing SQLite"""
        if use_sqlite:
            return "sqlite:///peptide_tracker.db"
        return cls.DATABASE_URL

    @classmethod
    def print_config(cls):
        """Print current configuration (hiding sensitive data)"""
        db_display = cls.DATABASE_URL.split("@")[-1] if "@" in cls.DATABASE_URL else cls.DATABASE_URL
        print("\n" + "="*60)
        print("PEPTIDE DOSE TRACKER CONFIGURATION")
        print("="*60)
        print(f"Database: {db_display}")
        print(f"Timezone: {cls.APP_TIMEZONE}")
        print(f"Log level: {cls.LOG_LEVEL}")
        print(f"Debug mode: {cls.DEBUG}")
        print(f"Anthropic API: {'Configured' if cls.ANTHROPIC_API_KEY else 'Not configured'}")
        print(f"Chat model: {cls.CHAT_MODEL}")
        print("="*60 + "\n")


def configure_logging(level: str = None) -> None:
    """Configure root logging once for the web app and CLI."""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    Config.print_config()
