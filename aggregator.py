"""
Derived metrics for players, attendance, finance and sessions.

Missing or non-numeric inputs count as zero; nothing here raises on bad
document shapes.
"""
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

RATING_ATTRIBUTES = ("Attack", "pace", "Physicality", "Defense", "passing", "Technique")

# Older pages wrote a different attribute vocabulary.
LEGACY_WEIGHTS = {
    "shooting": 0.15,
    "pace": 0.15,
    "positioning": 0.15,
    "passing": 0.15,
    "ballControl": 0.15,
    "crossing": 0.15,
    "sessionRating": 0.1,
}

PRESENT = "present"
LATE = "late"
ABSENT = "absent"


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if value == value else 0.0
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    return n if n == n else 0.0


# -----------------------------
# Player ratings
# -----------------------------

def calculate_overall_rating(attributes: Optional[Dict[str, Any]]) -> int:
    """0-100 score from the six 0-10 attributes; zero/missing values are left out."""
    attributes = attributes or {}
    valid = [n for n in (to_number(attributes.get(k)) for k in RATING_ATTRIBUTES) if n > 0]
    if not valid:
        return 0
    return round(sum(valid) / (len(valid) * 10) * 100)


def calculate_weighted_overall(attributes: Optional[Dict[str, Any]], performance_history: Optional[List[Dict[str, Any]]] = None) -> float:
    latest = dict(attributes or {})
    if performance_history:
        last = (performance_history[-1] or {}).get("attributes") or {}
        for key in list(latest):
            if last.get(key):
                latest[key] = (to_number(latest[key]) + to_number(last[key])) / 2

    total = 0.0
    weight_sum = 0.0
    for attr, weight in LEGACY_WEIGHTS.items():
        value = latest.get(attr)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total += value * weight
            weight_sum += weight
    return round(total / weight_sum, 1) if weight_sum > 0 else 0


def calculate_average_performance(performance_history: Optional[List[Dict[str, Any]]]) -> float:
    if not isinstance(performance_history, list) or not performance_history:
        return 0

    def rating_of(entry):
        entry = entry or {}
        attrs = entry.get("attributes") or {}
        return to_number(attrs.get("sessionRating") or attrs.get("rating") or entry.get("rating"))

    ratings = [r for r in (rating_of(e) for e in performance_history) if r]
    if not ratings:
        return 0
    return round(sum(ratings) / len(ratings), 1)


# -----------------------------
# Attendance
# -----------------------------

def _status(record: Dict[str, Any]) -> str:
    return str(record.get("status") or "").lower()


def present_strict(records: Iterable[Dict[str, Any]]) -> int:
    return sum(1 for r in records if _status(r) == PRESENT)


def present_inclusive_of_late(records: Iterable[Dict[str, Any]]) -> int:
    return sum(1 for r in records if _status(r) in (PRESENT, LATE))


def days_passed_in_year(today: Optional[date] = None) -> int:
    today = today or date.today()
    return today.timetuple().tm_yday


def attendance_percentage(present_days: int, today: Optional[date] = None) -> float:
    days = days_passed_in_year(today)
    return round(present_days / days * 100, 2)


def summarize_user_attendance(records: List[Dict[str, Any]], user_id: str, include_late: bool = False) -> Dict[str, Any]:
    user_records = [r for r in records if str(r.get("userId")) == str(user_id)]
    total = len(user_records)
    present = present_inclusive_of_late(user_records) if include_late else present_strict(user_records)
    return {
        "userId": user_id,
        "total": total,
        "present": present,
        "percentage": round(present / total * 100) if total > 0 else 0,
    }


def summarize_session_attendance(sessions: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Per-player attendance over finished sessions, read from each session's attendance map."""
    summary: Dict[str, Dict[str, Any]] = {}
    for session in sessions:
        if session.get("status") != "Finished":
            continue
        attendance = session.get("attendance") or {}
        for player_id in session.get("assignedPlayers") or []:
            stats = summary.setdefault(player_id, {
                "playerId": player_id,
                "totalSessions": 0,
                "present": 0,
                "absent": 0,
                "unmarked": 0,
                "presentDates": [],
                "absentDates": [],
                "unmarkedDates": [],
            })
            stats["totalSessions"] += 1
            status = ((attendance.get(player_id) or {}).get("status") or "").lower()
            if status == PRESENT:
                stats["present"] += 1
                stats["presentDates"].append(session.get("date"))
            elif status == ABSENT:
                stats["absent"] += 1
                stats["absentDates"].append(session.get("date"))
            else:
                stats["unmarked"] += 1
                stats["unmarkedDates"].append(session.get("date"))

    for stats in summary.values():
        total = stats["totalSessions"]
        stats["percentage"] = round(stats["present"] / total * 100) if total > 0 else 0
    return summary


# -----------------------------
# Finance
# -----------------------------

def financial_totals(records: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    sums: Dict[str, float] = defaultdict(float)
    for rec in records:
        if rec.get("status") == "deleted":
            continue
        sums[rec.get("type")] += to_number(rec.get("amount"))
    income = sums["income"]
    expense = sums["expense"]
    return {"total_income": income, "total_expense": expense, "balance": income - expense}


def convert_currency(amount: float, from_currency: str, to_currency: str, rates: Dict[str, float]) -> float:
    if from_currency == to_currency:
        return amount
    from_rate = rates.get(from_currency) or 1
    to_rate = rates.get(to_currency) or 1
    return amount / from_rate * to_rate


def converted_totals(records: Iterable[Dict[str, Any]], currency: str, rates: Dict[str, float], base: str = "INR") -> Dict[str, float]:
    totals = financial_totals(records)
    income = convert_currency(totals["total_income"], base, currency, rates)
    expense = convert_currency(totals["total_expense"], base, currency, rates)
    return {"total_income": income, "total_expense": expense, "balance": income - expense, "currency": currency}


# -----------------------------
# Sessions
# -----------------------------

def _parse_hhmm(value: Any) -> Optional[time]:
    try:
        hours, minutes = str(value).split(":")[:2]
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        return None


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)[:10]).date()
    except ValueError:
        return None


def derive_session_status(session: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Upcoming / On-going / Finished from the wall clock; stored status is ignored."""
    if session.get("isRecurring"):
        return "Upcoming"
    now = now or datetime.now()
    day = _parse_date(session.get("date"))
    if day is None:
        return session.get("status") or "Upcoming"
    start = datetime.combine(day, _parse_hhmm(session.get("startTime")) or time(0, 0))
    end = datetime.combine(day, _parse_hhmm(session.get("endTime")) or time(0, 0))
    if now < start:
        return "Upcoming"
    if now <= end:
        return "On-going"
    return "Finished"


def format_duration(start_time: Any, end_time: Any) -> str:
    start = _parse_hhmm(start_time)
    end = _parse_hhmm(end_time)
    if start is None or end is None:
        return ""
    anchor = date(2000, 1, 1)
    diff = datetime.combine(anchor, end) - datetime.combine(anchor, start)
    if diff <= timedelta(0):
        return ""
    mins = int(diff.total_seconds() // 60)
    hours, mins = divmod(mins, 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"
