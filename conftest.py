"""Shared pytest fixtures: a throwaway SQLite store and a Flask test client."""

from datetime import date, datetime, timezone

import pytest

from database import PeptideDB
from models import (
    FrequencyType, Protocol, ProtocolStatus, TimingPreference, create_database, make_session_factory,
)

FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_database(f"sqlite:///{tmp_path / 'tracker.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def db(db_session):
    return PeptideDB(db_session)


@pytest.fixture
def user(db):
    return db.create_user("alice", "alice@example.com", "s3cret")


@pytest.fixture
def make_protocol():
    """Unsaved Protocol with sensible defaults; override any column."""
    def _make(**overrides):
        values = {
            "id": "p1",
            "user_id": 1,
            "peptide_name": "BPC-157",
            "dose_amount": 250.0,
            "dose_unit": "mcg",
            "frequency_type": FrequencyType.DAILY,
            "doses_per_day": 1,
            "timing_preference": TimingPreference.ANY_TIME,
            "start_date": date(2026, 3, 2),
            "status": ProtocolStatus.ACTIVE,
        }
        values.update(overrides)
        return Protocol(**values)
    return _make


class FakeProvider:
    """Stands in for AIProvider in API tests."""

    def __init__(self, chunks=("Your HRV ", "looks stable."), fail_after=None, configured=True):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.configured = configured
        self.contexts = []
        self.closed = False
        self.insight_calls = 0

    def stream_chat_response(self, messages, context, cancel_event=None):
        self.contexts.append(context)
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index >= self.fail_after:
                    raise RuntimeError("upstream dropped")
                if cancel_event is not None and cancel_event.is_set():
                    return
                yield chunk
        finally:
            self.closed = True

    def generate_weekly_insights(self, user_data):
        self.insight_calls += 1
        return {
            "insights": [{"type": "trend", "severity": "info", "title": "Steady week", "body": "",
                          "metrics": ["HRV"], "confidence": "possible", "data_points": {}}],
            "weekly_summary": "A steady week.",
            "recommendations": ["Keep logging"],
            "model": "fake-model",
            "input_tokens": 10,
            "output_tokens": 20,
        }


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def flask_app(engine, fake_provider, monkeypatch):
    from app import app

    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "SESSION_FACTORY", make_session_factory(engine))
    monkeypatch.setitem(app.config, "AI_PROVIDER", fake_provider)
    monkeypatch.setitem(app.config, "CLOCK", lambda: FIXED_NOW)
    monkeypatch.setitem(app.config, "APP_TIMEZONE", "UTC")
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def auth_client(client):
    resp = client.post("/api/register", json={
        "username": "alice", "email": "alice@example.com", "password": "s3cret",
    })
    assert resp.status_code == 201
    return client
