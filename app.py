"""
Peptide Dose Tracker Web Application (JSON API)

Session-authenticated API for the web/mobile client:
- protocols, dose logs and offline sync
- day-by-day dose schedule and overdue list
- wearable daily summaries
- weekly AI insights and streaming AI chat
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, time, timedelta, timezone
from functools import wraps

from flask import Flask, Response, request, session, jsonify
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from ai_provider import AIProvider, AIProviderError
from analysis import aggregate_user_data, get_validation_messages, validate_data_sufficiency
from config import Config, configure_logging
from context import aggregate_chat_context
from database import PeptideDB
from models import ProtocolStatus, create_database, make_session_factory
from payloads import (
    AuthRequired, PayloadError, clamp_pagination, parse_chat_messages, parse_dose_log,
    parse_dose_log_batch, parse_protocol, parse_protocol_batch, parse_wearable_days,
)
from scheduling import build_schedule, overdue_doses, OVERDUE_LOOKBACK_DAYS
from sync import sync_dose_logs
from timeutils import (
    combine_local, local_date, parse_date, reference_tz, to_aware, to_naive_utc, utc_now,
)

MAX_SCHEDULE_DAYS = 31
INSIGHT_CACHE_SECONDS = 3600
DOSE_LOG_DEFAULT_LIMIT = 100
DOSE_LOG_MAX_LIMIT = 1000

configure_logging()

app = Flask(__name__)
app.config["SECRET_KEY"] = Config.SECRET_KEY
app.config["DATABASE_URL"] = Config.DATABASE_URL


# -----------------------------------------------------------------------------
# Database / collaborators
# -----------------------------------------------------------------------------
def init_db(db_url: str = None):
    """Create tables and bind the session factory used by every request."""
    engine = create_database(db_url or app.config["DATABASE_URL"])
    app.config["SESSION_FACTORY"] = make_session_factory(engine)
    return engine


def get_db_session():
    if app.config.get("SESSION_FACTORY") is None:
        init_db()
    return app.config["SESSION_FACTORY"]()


def get_ai_provider() -> AIProvider:
    provider = app.config.get("AI_PROVIDER")
    if provider is None:
        provider = AIProvider()
        app.config["AI_PROVIDER"] = provider
    return provider


def _now() -> datetime:
    clock = app.config.get("CLOCK") or utc_now
    return clock()


def _tz():
    return reference_tz(app.config.get("APP_TIMEZONE"))


# -----------------------------------------------------------------------------
# Auth helpers
# -----------------------------------------------------------------------------
def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return wrapper


def current_user_id() -> int:
    user_id = session.get("user_id")
    if user_id is None:
        raise AuthRequired("Not logged in")
    return user_id


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise PayloadError("Request body must be a JSON object")
    return body


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------
@app.errorhandler(PayloadError)
def handle_payload_error(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(AuthRequired)
def handle_auth_required(e):
    return jsonify({"error": "Unauthorized"}), 401


@app.errorhandler(AIProviderError)
def handle_ai_error(e):
    app.logger.warning("AI provider error: %s", e)
    return jsonify({"error": str(e)}), e.status_code


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return jsonify({"error": e.description}), e.code
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500


# -----------------------------------------------------------------------------
# Auth
# -----------------------------------------------------------------------------
@app.route("/api/register", methods=["POST"])
def register():
    body = _json_body()
    username = (body.get("username") or "").strip()
    email = (body.get("email") or "").strip()
    password = (body.get("password") or "").strip()

    if not username or not email or not password:
        raise PayloadError("All fields are required.")

    db = get_db_session()
    try:
        pdb = PeptideDB(db)
        if pdb.get_user_by_login(username) or pdb.get_user_by_login(email):
            return jsonify({"error": "Username or email already exists."}), 409
        try:
            user = pdb.create_user(username, email, password)
        except IntegrityError:
            return jsonify({"error": "Username or email already exists."}), 409
        session["user_id"] = user.id
        app.logger.info("Registered user %s", user.id)
        return jsonify({"id": user.id, "username": user.username}), 201
    finally:
        db.close()


@app.route("/api/login", methods=["POST"])
def login():
    body = _json_body()
    login_name = (body.get("username") or body.get("email") or "").strip()
    password = (body.get("password") or "").strip()

    if not login_name or not password:
        raise PayloadError("Username and password required.")

    db = get_db_session()
    try:
        user = PeptideDB(db).get_user_by_login(login_name)
        if not user or not user.check_password(password):
            return jsonify({"error": "Invalid credentials."}), 401
        session["user_id"] = user.id
        return jsonify({"id": user.id, "username": user.username})
    finally:
        db.close()


@app.route("/api/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------
@app.route("/api/protocols", methods=["GET"])
@login_required
def list_protocols():
    raw_status = request.args.get("status")
    status = None
    if raw_status:
        try:
            status = ProtocolStatus(raw_status.lower())
        except ValueError:
            raise PayloadError("status must be one of: active, paused, completed") from None

    db = get_db_session()
    try:
        protocols = PeptideDB(db).list_protocols(current_user_id(), status)
        return jsonify({"protocols": [p.to_dict() for p in protocols]})
    finally:
        db.close()


@app.route("/api/protocols", methods=["POST"])
@login_required
def create_protocol():
    data = parse_protocol(_json_body(), _tz())
    db = get_db_session()
    try:
        protocol = PeptideDB(db).create_protocol(current_user_id(), data)
        return jsonify({"protocol": protocol.to_dict()}), 201
    finally:
        db.close()


@app.route("/api/protocols/<protocol_id>", methods=["PATCH"])
@login_required
def update_protocol_status(protocol_id):
    body = _json_body()
    try:
        status = ProtocolStatus(str(body.get("status") or "").lower())
    except ValueError:
        raise PayloadError("status must be one of: active, paused, completed") from None

    db = get_db_session()
    try:
        today = local_date(_now(), _tz())
        protocol = PeptideDB(db).set_protocol_status(current_user_id(), protocol_id, status, today)
        if protocol is None:
            return jsonify({"error": "Protocol not found"}), 404
        return jsonify({"protocol": protocol.to_dict()})
    finally:
        db.close()


@app.route("/api/protocols/sync", methods=["POST"])
@login_required
def sync_protocols():
    items = parse_protocol_batch(_json_body(), _tz())
    if not items:
        return jsonify({"success": True, "synced": 0, "total": 0, "message": "No protocols to sync"})

    db = get_db_session()
    try:
        synced = PeptideDB(db).upsert_protocols(current_user_id(), items)
        app.logger.info("Protocol sync: %d protocols for user %s", synced, current_user_id())
        return jsonify({"success": True, "synced": synced, "total": len(items),
                        "message": f"Synced {synced} protocols"})
    finally:
        db.close()


@app.route("/api/protocols/sync", methods=["GET"])
@login_required
def protocol_sync_status():
    db = get_db_session()
    try:
        count = PeptideDB(db).count_protocols(current_user_id())
        return jsonify({"hasSyncedData": count > 0, "protocolCount": count})
    finally:
        db.close()


# -----------------------------------------------------------------------------
# Dose logs
# -----------------------------------------------------------------------------
@app.route("/api/dose-logs", methods=["GET"])
@login_required
def list_dose_logs():
    tz = _tz()
    try:
        start_day = parse_date(request.args.get("startDate"))
        end_day = parse_date(request.args.get("endDate"))
    except ValueError as e:
        raise PayloadError(str(e)) from None
    limit, _ = clamp_pagination(request.args.get("limit"), 0,
                                default_limit=DOSE_LOG_DEFAULT_LIMIT, max_limit=DOSE_LOG_MAX_LIMIT)

    start = combine_local(start_day, time(0, 0), tz) if start_day else None
    end = combine_local(end_day, time(23, 59, 59), tz) if end_day else None

    db = get_db_session()
    try:
        logs = PeptideDB(db).list_dose_logs(current_user_id(), start=start, end=end, limit=limit)
        return jsonify({"logs": [log.to_dict() for log in logs]})
    finally:
        db.close()


@app.route("/api/dose-logs", methods=["POST"])
@login_required
def upsert_dose_log():
    data = parse_dose_log(_json_body(), _tz())
    db = get_db_session()
    try:
        row, created = PeptideDB(db).upsert_dose_log(current_user_id(), data)
        return jsonify({"log": row.to_dict()}), 201 if created else 200
    finally:
        db.close()


@app.route("/api/dose-logs/sync", methods=["POST"])
@login_required
def sync_dose_log_batch():
    client_logs = parse_dose_log_batch(_json_body(), _tz())
    user_id = current_user_id()

    db = get_db_session()
    try:
        pdb = PeptideDB(db)
        result = sync_dose_logs(
            client_logs,
            pdb.dose_log_keys(user_id),
            lambda batch: pdb.insert_dose_logs(user_id, batch),
        )
        app.logger.info("Dose log sync for user %s: %s", user_id, result.message)
        return jsonify(result.to_dict())
    finally:
        db.close()


@app.route("/api/dose-logs/sync", methods=["GET"])
@login_required
def dose_log_sync_status():
    db = get_db_session()
    try:
        count = PeptideDB(db).count_dose_logs(current_user_id())
        return jsonify({"hasSyncedData": count > 0, "logCount": count})
    finally:
        db.close()


# -----------------------------------------------------------------------------
# Schedule
# -----------------------------------------------------------------------------
def _logs_between(pdb: PeptideDB, user_id: int, first_day, last_day, tz):
    # one day of slack either side: logs are matched on local date, stored in UTC
    start = combine_local(first_day - timedelta(days=1), time(0, 0), tz)
    end = combine_local(last_day + timedelta(days=1), time(23, 59, 59), tz)
    return pdb.list_dose_logs(user_id, start=start, end=end, limit=None, ascending=True)


@app.route("/api/schedule", methods=["GET"])
@login_required
def get_schedule():
    raw_days = request.args.get("days", "7")
    try:
        days = int(raw_days)
    except ValueError:
        raise PayloadError("days must be an integer") from None
    if not 1 <= days <= MAX_SCHEDULE_DAYS:
        raise PayloadError(f"days must be between 1 and {MAX_SCHEDULE_DAYS}")

    tz = _tz()
    now = to_aware(_now(), tz)
    today = local_date(now, tz)
    user_id = current_user_id()

    db = get_db_session()
    try:
        pdb = PeptideDB(db)
        protocols = pdb.list_active_protocols(user_id)
        logs = _logs_between(pdb, user_id, today, today + timedelta(days=days - 1), tz)
        schedule = build_schedule(protocols, logs, now, window_days=days, tz=tz)
        return jsonify({"timezone": tz.key, "schedule": [day.to_dict() for day in schedule]})
    finally:
        db.close()


@app.route("/api/schedule/overdue", methods=["GET"])
@login_required
def get_overdue():
    tz = _tz()
    now = to_aware(_now(), tz)
    today = local_date(now, tz)
    user_id = current_user_id()

    db = get_db_session()
    try:
        pdb = PeptideDB(db)
        protocols = pdb.list_active_protocols(user_id)
        logs = _logs_between(pdb, user_id, today - timedelta(days=OVERDUE_LOOKBACK_DAYS), today, tz)
        doses = overdue_doses(protocols, logs, now, tz=tz)
        return jsonify({"doses": [d.to_dict() for d in doses], "count": len(doses)})
    finally:
        db.close()


# -----------------------------------------------------------------------------
# Wearable data
# -----------------------------------------------------------------------------
@app.route("/api/wearables/import", methods=["POST"])
@login_required
def import_wearable_days():
    days = parse_wearable_days(_json_body())
    if not days:
        raise PayloadError("No daily summaries to import")

    db = get_db_session()
    try:
        inserted, updated = PeptideDB(db).upsert_wearable_days(current_user_id(), days)
        return jsonify({
            "success": True,
            "imported": inserted,
            "updated": updated,
            "total": len(days),
            "dateRange": {"start": days[0]["date"].isoformat(), "end": days[-1]["date"].isoformat()},
        })
    finally:
        db.close()


# -----------------------------------------------------------------------------
# AI insights
# -----------------------------------------------------------------------------
@app.route("/api/insights", methods=["GET"])
@login_required
def list_insights():
    limit, offset = clamp_pagination(request.args.get("limit"), request.args.get("offset"))
    try:
        week_start = parse_date(request.args.get("week_start"))
    except ValueError as e:
        raise PayloadError(str(e)) from None

    db = get_db_session()
    try:
        rows, total = PeptideDB(db).list_insights(current_user_id(), limit, offset, week_start)
        return jsonify({
            "insights": [row.to_dict() for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(rows) < total,
        })
    finally:
        db.close()


@app.route("/api/insights", methods=["DELETE"])
@login_required
def delete_insight():
    insight_id = request.args.get("id")
    if not insight_id:
        raise PayloadError("Insight ID is required")

    db = get_db_session()
    try:
        if not PeptideDB(db).delete_insight(current_user_id(), insight_id):
            return jsonify({"error": "Insight not found"}), 404
        return jsonify({"success": True})
    finally:
        db.close()


@app.route("/api/insights/generate", methods=["POST"])
@login_required
def generate_insights():
    body = request.get_json(silent=True) or {}
    provider = get_ai_provider()
    if not provider.configured:
        return jsonify({"error": "AI service not configured"}), 503

    tz = _tz()
    now = to_aware(_now(), tz)
    week_end = local_date(now, tz)
    week_start = week_end - timedelta(days=6)
    user_id = current_user_id()

    db = get_db_session()
    try:
        pdb = PeptideDB(db)
        existing = pdb.get_insight_for_week(user_id, week_start)
        if existing is not None and not body.get("force") and existing.generated_at:
            age = now - to_aware(existing.generated_at, timezone.utc)
            if age.total_seconds() < INSIGHT_CACHE_SECONDS:
                return jsonify({"insight": existing.to_dict(), "cached": True})

        user_data = aggregate_user_data(user_id, pdb, week_start, week_end, tz=tz)
        validation = validate_data_sufficiency(user_data)
        if not validation["isValid"]:
            return jsonify({
                "error": "Insufficient data for analysis",
                "validation": validation,
                "messages": get_validation_messages(validation),
            }), 400

        result = provider.generate_weekly_insights(user_data)
        insight = pdb.save_insight(
            user_id,
            week_start,
            week_end=week_end,
            metrics_summary=user_data["baselineMetrics"],
            protocol_summary={"activeProtocols": user_data["activeProtocols"],
                              "compliance": user_data["compliance"]},
            correlation_data=user_data["correlations"],
            insights=result["insights"],
            weekly_summary=result["weekly_summary"],
            recommendations=result["recommendations"],
            generated_at=to_naive_utc(now),
            model_version=result["model"],
            input_tokens=result["input_tokens"],
            output_tokens=result["output_tokens"],
        )
        app.logger.info("Generated insights for user %s week %s", user_id, week_start)
        return jsonify({"insight": insight.to_dict(), "cached": False, "validation": validation})
    finally:
        db.close()


def _sse(payload) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.route("/api/insights/chat", methods=["POST"])
@login_required
def insights_chat():
    messages = parse_chat_messages(request.get_json(silent=True))
    provider = get_ai_provider()
    if not provider.configured:
        return jsonify({"error": "AI service not configured"}), 503

    db = get_db_session()
    try:
        context = aggregate_chat_context(current_user_id(), PeptideDB(db), _now(), tz=_tz())
    finally:
        db.close()

    def generate():
        cancel = threading.Event()
        stream = provider.stream_chat_response(messages, context, cancel_event=cancel)
        try:
            for chunk in stream:
                yield _sse({"content": chunk})
            yield "data: [DONE]\n\n"
        except Exception:
            app.logger.exception("Chat stream failed")
            yield _sse({"error": "Stream error"})
        finally:
            # client went away or we are done: stop the upstream stream
            cancel.set()
            stream.close()

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# -----------------------------------------------------------------------------
# Run
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    Config.print_config()
    init_db()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=Config.DEBUG)
