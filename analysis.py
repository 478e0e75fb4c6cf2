"""
Weekly Analysis
---------------
Purpose: gather one week of a user's protocols, doses and wearable metrics,
compare it to a 4-week baseline and look for simple dose/metric
relationships before anything is sent to the AI model.

Returns plain dicts so the result can be embedded in a prompt or stored as
JSON on the AIInsight row.

Used by:
- /api/insights/generate (POST)
- cli.py "Weekly analysis readiness"
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from models import ProtocolStatus
from scheduling import frequency_summary
from timeutils import combine_local, iso_utc, local_date, reference_tz


@dataclass(frozen=True)
class AnalysisThresholds:
    # minimums
    min_wearable_days: int = 7
    min_dose_logs: int = 3
    min_baseline_days: int = 14

    # ideals (used for the quality score)
    ideal_wearable_days: int = 14
    ideal_baseline_days: int = 28
    ideal_dose_days: int = 7

    # quality weights
    wearable_weight: float = 0.3
    dose_weight: float = 0.2
    baseline_weight: float = 0.3
    completeness_weight: float = 0.2

    # quality bands
    band_excellent: float = 0.9
    band_good: float = 0.7
    band_fair: float = 0.5

    # correlations
    min_correlation: float = 0.3
    strong_correlation: float = 0.7
    moderate_correlation: float = 0.5
    lags: tuple = (0, 1, 2)

    baseline_days: int = 28
    change_lookback_days: int = 30


DEFAULT_THRESHOLDS = AnalysisThresholds()

# (wearable column, display name, baseline key)
CORRELATION_METRICS = [
    ("hrv_avg", "HRV", "hrv_avg"),
    ("sleep_score", "Sleep Score", "sleep_score_avg"),
    ("deep_sleep_hours", "Deep Sleep", "deep_sleep_avg"),
    ("stress_avg", "Stress", "stress_avg"),
    ("body_battery_high", "Body Battery", "body_battery_avg"),
    ("resting_hr", "Resting HR", "resting_hr_avg"),
]

COMPLETENESS_METRICS = ["hrv_avg", "sleep_score", "stress_avg", "body_battery_high", "resting_hr", "steps"]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _std(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def _present(days: Sequence[Dict[str, Any]], key: str) -> List[float]:
    return [d[key] for d in days if isinstance(d.get(key), (int, float))]


def calculate_baseline_metrics(wearable_days: Sequence[Dict[str, Any]]) -> Dict[str, float]:
    """Averages over the baseline window; missing metrics average to 0."""
    hrv = _present(wearable_days, "hrv_avg")
    return {
        "hrv_avg": round(_mean(hrv), 1),
        "hrv_std": round(_std(hrv), 1),
        "resting_hr_avg": round(_mean(_present(wearable_days, "resting_hr")), 1),
        "sleep_score_avg": round(_mean(_present(wearable_days, "sleep_score")), 1),
        "deep_sleep_avg": round(_mean(_present(wearable_days, "deep_sleep_hours")), 2),
        "stress_avg": round(_mean(_present(wearable_days, "stress_avg")), 1),
        "body_battery_avg": round(_mean(_present(wearable_days, "body_battery_high")), 1),
        "steps_avg": round(_mean(_present(wearable_days, "steps"))),
    }


def _significance(r: float, cfg: AnalysisThresholds) -> str:
    if abs(r) >= cfg.strong_correlation:
        return "strong"
    if abs(r) >= cfg.moderate_correlation:
        return "moderate"
    return "weak"


def _point_biserial(dose_dates: set, wearable_days, metric: str, lag: int) -> Optional[float]:
    pairs = []
    for day in wearable_days:
        value = day.get(metric)
        if not isinstance(value, (int, float)):
            continue
        target = date.fromisoformat(day["date"]) - timedelta(days=lag)
        pairs.append((target in dose_dates, value))
    if len(pairs) < 3:
        return None

    dosed = [v for flag, v in pairs if flag]
    undosed = [v for flag, v in pairs if not flag]
    if not dosed or not undosed:
        return None
    spread = _std([v for _, v in pairs])
    if spread == 0:
        return None

    n, n1, n0 = len(pairs), len(dosed), len(undosed)
    r = (_mean(dosed) - _mean(undosed)) / spread * math.sqrt(n1 * n0 / (n * n))
    return round(r, 2)


def calculate_correlations(
    dose_logs: Sequence[Dict[str, Any]],
    wearable_days: Sequence[Dict[str, Any]],
    cfg: AnalysisThresholds = DEFAULT_THRESHOLDS,
) -> List[Dict[str, Any]]:
    """Point-biserial correlation between taken-dose days and each metric.

    Tried at 0, 1 and 2 day lags per peptide; only |r| >= 0.3 is kept,
    strongest first.
    """
    if not dose_logs or len(wearable_days) < 3:
        return []

    by_peptide: Dict[str, set] = {}
    for log in dose_logs:
        if log.get("status") != "taken":
            continue
        by_peptide.setdefault(log["peptideName"], set()).add(date.fromisoformat(log["date"]))

    results = []
    for peptide, dose_dates in by_peptide.items():
        for metric, name, _ in CORRELATION_METRICS:
            for lag in cfg.lags:
                r = _point_biserial(dose_dates, wearable_days, metric, lag)
                if r is None or abs(r) < cfg.min_correlation:
                    continue
                results.append({
                    "metric1": peptide,
                    "metric2": name,
                    "correlation": r,
                    "lag_days": lag,
                    "significance": _significance(r, cfg),
                    "direction": "positive" if r > 0 else "negative",
                })

    results.sort(key=lambda c: abs(c["correlation"]), reverse=True)
    return results


def calculate_compliance(dose_logs: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Percentage of logged doses marked taken, overall and per peptide."""
    by_peptide: Dict[str, Dict[str, int]] = {}
    for log in dose_logs:
        entry = by_peptide.setdefault(log["peptideName"], {"taken": 0, "total": 0, "rate": 0})
        entry["total"] += 1
        if log.get("status") == "taken":
            entry["taken"] += 1

    taken = total = 0
    for entry in by_peptide.values():
        entry["rate"] = round(entry["taken"] / entry["total"] * 100)
        taken += entry["taken"]
        total += entry["total"]
    return {"overall": round(taken / total * 100) if total else 0, "byPeptide": by_peptide}


def protocol_changes(protocols, since: date, tz: Optional[ZoneInfo] = None) -> List[Dict[str, Any]]:
    """Protocols started or paused since `since`, newest first."""
    tz = tz or reference_tz()
    changes = []
    for protocol in protocols:
        if protocol.start_date and protocol.start_date >= since:
            changes.append({"date": protocol.start_date.isoformat(), "type": "started",
                            "protocolName": protocol.peptide_name})
        if protocol.status == ProtocolStatus.PAUSED and protocol.updated_at:
            changes.append({"date": local_date(protocol.updated_at, tz).isoformat(), "type": "paused",
                            "protocolName": protocol.peptide_name})
    changes.sort(key=lambda c: c["date"], reverse=True)
    return changes


def _dose_entry(log, tz: ZoneInfo) -> Dict[str, Any]:
    return {
        "date": local_date(log.scheduled_for, tz).isoformat(),
        "peptideName": log.peptide_name,
        "dose": log.dose,
        "status": getattr(log.status, "value", log.status),
        "takenAt": iso_utc(log.taken_at),
        "scheduledFor": iso_utc(log.scheduled_for),
        "notes": log.notes,
    }


def aggregate_user_data(user_id: int, db, week_start: date, week_end: date,
                        cfg: AnalysisThresholds = DEFAULT_THRESHOLDS,
                        tz: Optional[ZoneInfo] = None) -> Dict[str, Any]:
    """Everything the weekly insight prompt needs for [week_start, week_end].

    The week is a range of local dates in `tz`; dose logs are windowed and
    bucketed by their local day.
    """
    tz = tz or reference_tz()
    baseline_start = week_start - timedelta(days=cfg.baseline_days)
    baseline_end = week_start - timedelta(days=1)
    changes_since = week_start - timedelta(days=cfg.change_lookback_days)

    # paused protocols are left out; completed ones still explain the week
    protocols = [p for p in db.list_protocols(user_id) if p.status != ProtocolStatus.PAUSED]
    changed = db.protocols_changed_since(user_id, combine_local(changes_since, time(0, 0), tz))
    logs = db.list_dose_logs(
        user_id,
        start=combine_local(week_start, time(0, 0), tz),
        end=combine_local(week_end, time(23, 59, 59), tz),
        limit=None,
        ascending=True,
    )
    dose_logs = [_dose_entry(log, tz) for log in logs]
    wearable = [row.to_dict() for row in db.wearable_between(user_id, week_start, week_end)]
    baseline_rows = [row.to_dict() for row in db.wearable_between(user_id, baseline_start, baseline_end)]
    baseline = calculate_baseline_metrics(baseline_rows)

    return {
        "weekStart": week_start.isoformat(),
        "weekEnd": week_end.isoformat(),
        "activeProtocols": [
            {
                "id": p.id,
                "name": p.peptide_name,
                "dose": p.dose_label,
                "frequency": frequency_summary(p),
                "startDate": p.start_date.isoformat(),
                "status": getattr(p.status, "value", p.status),
            }
            for p in protocols
        ],
        "protocolChanges": protocol_changes(changed, changes_since, tz),
        "doseLogs": dose_logs,
        "garminData": wearable,
        "baselineMetrics": baseline,
        "compliance": calculate_compliance(dose_logs),
        "correlations": calculate_correlations(dose_logs, wearable, cfg),
    }


def _baseline_days(baseline: Dict[str, float]) -> int:
    # estimate from how many baseline metrics are populated
    keys = ["hrv_avg", "resting_hr_avg", "sleep_score_avg", "stress_avg", "body_battery_avg", "steps_avg"]
    populated = sum(1 for k in keys if (baseline.get(k) or 0) > 0)
    if populated >= 4:
        return 28
    if populated >= 2:
        return 14
    return 0


def data_completeness(wearable_days: Sequence[Dict[str, Any]]) -> float:
    if not wearable_days:
        return 0.0
    total = len(wearable_days) * len(COMPLETENESS_METRICS)
    present = sum(1 for d in wearable_days for k in COMPLETENESS_METRICS if d.get(k) is not None)
    return present / total


def validate_data_sufficiency(user_data: Dict[str, Any],
                              cfg: AnalysisThresholds = DEFAULT_THRESHOLDS) -> Dict[str, Any]:
    """Check the aggregated week against the minimum data requirements.

    Returns isValid, hasMinimumData, missingData, warnings, dataQuality
    (excellent/good/fair/insufficient) and stats.
    """
    wearable = user_data.get("garminData") or []
    logs = user_data.get("doseLogs") or []
    protocols = user_data.get("activeProtocols") or []

    wearable_days = len(wearable)
    dose_days = len({log["date"] for log in logs})
    baseline_days = _baseline_days(user_data.get("baselineMetrics") or {})
    completeness = data_completeness(wearable)

    missing = []
    warnings = []
    if wearable_days < cfg.min_wearable_days:
        missing.append(f"At least {cfg.min_wearable_days} days of wearable data (you have {wearable_days})")
    if len(logs) < cfg.min_dose_logs:
        missing.append(f"At least {cfg.min_dose_logs} logged doses (you have {len(logs)})")
    if not protocols:
        missing.append("At least one active protocol")

    if cfg.min_wearable_days <= wearable_days < cfg.ideal_wearable_days:
        warnings.append(f"More wearable data would improve accuracy ({wearable_days}/{cfg.ideal_wearable_days} days)")
    if baseline_days < cfg.min_baseline_days:
        warnings.append("Limited baseline data - comparisons may be less accurate")
    if completeness < 0.7:
        warnings.append("Some wearable metrics are incomplete for the analysis period")

    score = (
        min(wearable_days / cfg.ideal_wearable_days, 1) * cfg.wearable_weight
        + min(dose_days / cfg.ideal_dose_days, 1) * cfg.dose_weight
        + min(baseline_days / cfg.ideal_baseline_days, 1) * cfg.baseline_weight
        + completeness * cfg.completeness_weight
    )
    if score >= cfg.band_excellent:
        quality = "excellent"
    elif score >= cfg.band_good:
        quality = "good"
    elif score >= cfg.band_fair:
        quality = "fair"
    else:
        quality = "insufficient"

    has_minimum = not missing
    return {
        "isValid": has_minimum and quality != "insufficient",
        "hasMinimumData": has_minimum,
        "missingData": missing,
        "warnings": warnings,
        "dataQuality": quality,
        "stats": {
            "daysOfGarminData": wearable_days,
            "daysOfDoseLogs": dose_days,
            "activeProtocols": len(protocols),
            "completenessScore": round(completeness * 100),
        },
    }


def get_validation_messages(result: Dict[str, Any]) -> Dict[str, Any]:
    quality = result["dataQuality"]
    if result["isValid"] and quality == "excellent":
        return {"title": "Ready for Analysis",
                "description": "You have excellent data coverage. AI insights will be highly accurate.",
                "actionItems": []}
    if result["isValid"] and quality == "good":
        return {"title": "Ready for Analysis",
                "description": "You have good data coverage. AI insights should be reliable.",
                "actionItems": result["warnings"]}
    if result["isValid"] and quality == "fair":
        return {"title": "Limited Data Available",
                "description": "Analysis is possible but insights may be less accurate.",
                "actionItems": result["warnings"]}
    return {"title": "More Data Needed",
            "description": "Please add more data before generating insights.",
            "actionItems": result["missingData"]}
