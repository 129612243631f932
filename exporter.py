"""
CSV / XLSX formatting for academy exports.

Every export is built from one table formatter driven by a list of
``Column`` specs. Each export keeps its own header text and column order; they
are not meant to agree with each other.
"""
import base64
import html
import io
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from openpyxl import Workbook

from aggregator import calculate_overall_rating, format_duration, summarize_session_attendance
from errors import InvalidStateTransition
from joiner import find_by_id

logger = logging.getLogger(__name__)

MINIMAL = "minimal"
ALWAYS = "always"


# -----------------------------
# Field escaping
# -----------------------------

def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return json.dumps(value, default=str)


def escape_field(value: Any, policy: str = MINIMAL) -> str:
    text = to_text(value)
    if policy == ALWAYS or any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def or_blank(value: Any) -> Any:
    """Falsy values (0 included) export as an empty cell."""
    return value if value else ""


@dataclass(frozen=True)
class Column:
    name: str
    accessor: Callable[[Any], Any]
    escape: str = MINIMAL


def format_table(columns: List[Column], rows: Iterable[Any], include_header: bool = True) -> str:
    lines = []
    if include_header:
        lines.append(",".join(escape_field(c.name) for c in columns))
    for row in rows:
        lines.append(",".join(escape_field(c.accessor(row), c.escape) for c in columns))
    return "\n".join(lines)


def split_datetime(raw: Any) -> Dict[str, str]:
    if not raw:
        return {"date": "", "time": ""}
    if isinstance(raw, datetime):
        parsed = raw
    else:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return {"date": str(raw), "time": ""}
    return {"date": parsed.date().isoformat(), "time": parsed.strftime("%H:%M:%S")}


def _attrs(doc: Dict[str, Any]) -> Dict[str, Any]:
    return doc.get("attributes") or {}


# -----------------------------
# Column schemas
# -----------------------------

PLAYER_COLUMNS = [
    Column("ID", lambda p: p.get("id") or p.get("_id")),
    Column("Name", lambda p: p.get("name") or "", ALWAYS),
    Column("Position", lambda p: p.get("position") or "", ALWAYS),
    Column("Age", lambda p: or_blank(p.get("age"))),
    Column("Overall Rating", lambda p: calculate_overall_rating(_attrs(p))),
    Column("Attack", lambda p: or_blank(_attrs(p).get("Attack"))),
    Column("Pace", lambda p: or_blank(_attrs(p).get("pace"))),
    Column("Physicality", lambda p: or_blank(_attrs(p).get("Physicality"))),
    Column("Defense", lambda p: or_blank(_attrs(p).get("Defense"))),
    Column("passing", lambda p: or_blank(_attrs(p).get("passing"))),
    Column("Technique", lambda p: or_blank(_attrs(p).get("Technique"))),
    Column("Average Performance", lambda p: or_blank(p.get("averagePerformance"))),
    Column("Stamina", lambda p: or_blank(p.get("stamina"))),
    Column("Enrollment Date", lambda p: or_blank(p.get("enrollmentDate"))),
]

COACH_COLUMNS = [
    Column("ID", lambda c: c.get("id") or c.get("_id")),
    Column("Name", lambda c: c.get("name") or "", ALWAYS),
    Column("Email", lambda c: c.get("email") or "", ALWAYS),
    Column("Specialization", lambda c: c.get("specialization") or "", ALWAYS),
    Column("Experience", lambda c: c.get("experience") or "", ALWAYS),
    Column("Rating", lambda c: or_blank(c.get("rating"))),
]


def _perf_attr(entry: Dict[str, Any], key: str) -> Any:
    return _attrs(entry).get(key) or entry.get(key) or ""


PERFORMANCE_COLUMNS = [
    Column("Player ID", lambda s: or_blank(s.get("playerId"))),
    Column("Player Name", lambda s: s.get("playerName") or "", ALWAYS),
    Column("Date", lambda s: split_datetime(s.get("date"))["date"]),
    Column("Time", lambda s: split_datetime(s.get("date"))["time"]),
    Column("Session ID", lambda s: or_blank(s.get("sessionId"))),
    Column("Type", lambda s: s.get("type") or "training"),
    Column("Attack", lambda s: _perf_attr(s, "Attack")),
    Column("Pace", lambda s: _perf_attr(s, "pace")),
    Column("Physicality", lambda s: _perf_attr(s, "Physicality")),
    Column("Defense", lambda s: _perf_attr(s, "Defense")),
    Column("passing", lambda s: _perf_attr(s, "passing")),
    Column("Technique", lambda s: _perf_attr(s, "Technique")),
    Column("Session Rating", lambda s: or_blank(s.get("sessionRating"))),
    Column("Overall", lambda s: calculate_overall_rating(_attrs(s))),
]

BATCH_COACH_COLUMNS = [
    Column("Role", lambda c: "Coach"),
    Column("ID", lambda c: c.get("id") or "", ALWAYS),
    Column("Name", lambda c: c.get("name") or "", ALWAYS),
    Column("Email", lambda c: c.get("email") or "", ALWAYS),
    Column("Specialization", lambda c: c.get("specialization") or "", ALWAYS),
    Column("Experience", lambda c: c.get("experience") or "", ALWAYS),
    Column("Rating", lambda c: c.get("rating") or "", ALWAYS),
]

BATCH_PLAYER_COLUMNS = [
    Column("Role", lambda p: "Player"),
    Column("ID", lambda p: p.get("id") or "", ALWAYS),
    Column("Name", lambda p: p.get("name") or "", ALWAYS),
    Column("Position", lambda p: p.get("position") or "", ALWAYS),
    Column("Age", lambda p: p.get("age") or "", ALWAYS),
    Column("Overall Rating", lambda p: calculate_overall_rating(_attrs(p)), ALWAYS),
    Column("Attack", lambda p: _attrs(p).get("Attack", ""), ALWAYS),
    Column("pace", lambda p: _attrs(p).get("pace", ""), ALWAYS),
    Column("Physicality", lambda p: _attrs(p).get("Physicality", ""), ALWAYS),
    Column("Defense", lambda p: _attrs(p).get("Defense", ""), ALWAYS),
    Column("passing", lambda p: _attrs(p).get("passing", ""), ALWAYS),
    Column("Technique", lambda p: _attrs(p).get("Technique", ""), ALWAYS),
    Column("averagePerformance", lambda p: p.get("averagePerformance", ""), ALWAYS),
    Column("stamina", lambda p: p.get("stamina", ""), ALWAYS),
    Column("lastUpdated", lambda p: p.get("lastUpdated", ""), ALWAYS),
]

ATTENDANCE_COLUMNS = [
    Column("Player ID", lambda r: r["id"]),
    Column("Player Name", lambda r: r["name"]),
    Column("Total Sessions", lambda r: r["total"]),
    Column("Present", lambda r: r["present"]),
    Column("Absent", lambda r: r["absent"]),
    Column("Unmarked", lambda r: r["unmarked"]),
    Column("Attendance %", lambda r: r["attendance"]),
]


def _joined(value: Any, sep: str = ", ") -> Any:
    if isinstance(value, list):
        return sep.join(to_text(v) for v in value)
    return value or ""


def session_columns(batches: List[Dict[str, Any]]) -> List[Column]:
    def batch_name(s):
        found = find_by_id(batches, s.get("assignedBatch"), ("id",))
        return (found or {}).get("name") or ""

    def player_names(s):
        data = s.get("assignedPlayersData")
        if isinstance(data, list):
            return ", ".join(to_text((p or {}).get("name")) for p in data)
        return ""

    def value(key):
        return lambda s: s.get(key) if s.get(key) is not None else ""

    return [
        Column("Session ID", value("id")),
        Column("Session Name", value("name")),
        Column("Is Recurring", lambda s: "Yes" if s.get("isRecurring") else "No"),
        Column("Parent Session ID", value("parentSessionId")),
        Column("Occurrence Date", value("occurrenceDate")),
        Column("Date", value("date")),
        Column("Start Time", value("startTime")),
        Column("End Time", value("endTime")),
        Column("Duration", lambda s: format_duration(s.get("startTime"), s.get("endTime")) if s.get("startTime") and s.get("endTime") else ""),
        Column("Status", value("status")),
        Column("Days (selectedDays)", lambda s: _joined(s.get("selectedDays"), "; ")),
        Column("Assigned Batch ID", value("assignedBatch")),
        Column("Assigned Batch Name", batch_name),
        Column("Assigned Players (IDs)", lambda s: _joined(s.get("assignedPlayers"))),
        Column("Assigned Players (Names)", player_names),
        Column("Assigned Coaches (IDs)", lambda s: _joined(s.get("coachId"))),
        Column("Assigned Coaches (Names)", lambda s: _joined(s.get("coachNames"))),
        Column("Academy ID", value("academyId")),
        Column("Notes", lambda s: ""),
    ]


# -----------------------------
# Export formatters
# -----------------------------

def format_players_csv(players: List[Dict[str, Any]]) -> str:
    if not players:
        return ""
    return format_table(PLAYER_COLUMNS, players)


def format_coaches_csv(coaches: List[Dict[str, Any]]) -> str:
    if not coaches:
        return ""
    return format_table(COACH_COLUMNS, coaches)


def format_performance_csv(entries: List[Dict[str, Any]]) -> str:
    # An empty export still carries the header line.
    if not entries:
        return format_table(PERFORMANCE_COLUMNS, []) + "\n"
    return format_table(PERFORMANCE_COLUMNS, entries)


def format_sessions_csv(sessions: List[Dict[str, Any]], batches: List[Dict[str, Any]]) -> str:
    return format_table(session_columns(batches), sessions)


def format_batch_block(number: int, batch: Dict[str, Any]) -> str:
    header = f"Batch No.,{number},Batch Name,{escape_field(batch.get('name') or '', ALWAYS)}"
    coaches = format_table(BATCH_COACH_COLUMNS, batch.get("coaches") or [])
    players = format_table(BATCH_PLAYER_COLUMNS, batch.get("playersData") or [])
    return f"{header}\n\n{coaches}\n\n{players}\n\n\n\n"


def format_batch_report(batches: List[Dict[str, Any]]) -> str:
    """
    Multi-section report, one block per batch: header line, coach table,
    player table, then three blank lines before the next block.

    Batches must already be resolved (``coaches`` and ``playersData``).
    """
    report = "".join(format_batch_block(n, b) for n, b in enumerate(batches, start=1))
    return report.strip()


def attendance_report_rows(users: List[Dict[str, Any]], sessions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    report = summarize_session_attendance(sessions)
    rows = []
    for user in users:
        stats = report.get(user.get("id")) or {"totalSessions": 0, "present": 0, "absent": 0, "unmarked": 0}
        total = stats["totalSessions"]
        rows.append({
            "id": user.get("id"),
            "name": user.get("name") or "",
            "total": total,
            "present": stats["present"],
            "absent": stats["absent"],
            "unmarked": stats["unmarked"],
            "attendance": f"{round(stats['present'] / total * 100)}%" if total > 0 else "0%",
        })
    return rows


def format_attendance_csv(users: List[Dict[str, Any]], sessions: List[Dict[str, Any]]) -> str:
    return format_table(ATTENDANCE_COLUMNS, attendance_report_rows(users, sessions))


FINANCE_HEADERS = ["Transaction ID", "Date", "Time", "Description", "Amount", "Quantity"]


def _transaction_id(item: Dict[str, Any]) -> str:
    return item.get("transactionId") or item.get("transaction_id") or item.get("id") or item.get("_id") or ""


def financial_rows(records: List[Dict[str, Any]]) -> Dict[str, List[List[Any]]]:
    out: Dict[str, List[List[Any]]] = {"income": [], "expense": []}
    for item in records:
        if item.get("type") not in out:
            continue
        dt = split_datetime(item.get("date"))
        out[item["type"]].append([
            _transaction_id(item),
            dt["date"],
            dt["time"],
            item.get("description"),
            item.get("amount"),
            item.get("quantity") or 1,
        ])
    return out


def format_financial_workbook(records: List[Dict[str, Any]]) -> bytes:
    rows = financial_rows(records)
    wb = Workbook()
    income = wb.active
    income.title = "Income"
    expenses = wb.create_sheet("Expenses")
    for sheet, data in ((income, rows["income"]), (expenses, rows["expense"])):
        sheet.append(FINANCE_HEADERS)
        for row in data:
            sheet.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# -----------------------------
# Export job state
# -----------------------------

IDLE = "idle"
FETCHING = "fetching"
FORMATTING = "formatting"
DOWNLOADING = "downloading"
ERROR = "error"

TRANSITIONS = {
    IDLE: {FETCHING},
    FETCHING: {FORMATTING, ERROR},
    FORMATTING: {DOWNLOADING, ERROR},
    DOWNLOADING: {IDLE},
    ERROR: {IDLE},
}


class ExportJob:
    """idle -> fetching -> formatting -> downloading -> idle, with error from fetching/formatting."""

    def __init__(self, name: str):
        self.name = name
        self.state = IDLE
        self.history: List[str] = [IDLE]
        self.error: Optional[Exception] = None

    def transition(self, target: str) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, target)
        logger.debug("Export %s: %s -> %s", self.name, self.state, target)
        self.state = target
        self.history.append(target)

    def run(self, fetch: Callable[[], Any], fmt: Callable[[Any], Any], deliver: Callable[[Any], Any]) -> Any:
        if self.state == ERROR:
            self.transition(IDLE)
        self.transition(FETCHING)
        try:
            data = fetch()
            self.transition(FORMATTING)
            content = fmt(data)
        except Exception as e:
            self.error = e
            self.transition(ERROR)
            logger.error("Export %s failed in %s: %s", self.name, self.history[-2], e)
            raise
        self.transition(DOWNLOADING)
        try:
            return deliver(content)
        finally:
            self.transition(IDLE)


# -----------------------------
# Android WebView delivery
# -----------------------------

def _lower(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def is_webview_request(headers: Mapping[str, str]) -> bool:
    h = _lower(headers)
    if h.get("x-requested-with"):
        return True
    ua = (h.get("user-agent") or "").lower()
    return "wv" in ua or ("android" in ua and "webview" in ua)


def is_navigation_request(headers: Mapping[str, str]) -> bool:
    h = _lower(headers)
    if "text/html" in (h.get("accept") or "").lower():
        return True
    return h.get("sec-fetch-mode") == "navigate" or h.get("sec-fetch-dest") == "document"


def export_filename(collection: Optional[str]) -> str:
    return f"export-{collection or 'data'}.json"


def webview_payload(data: Any, collection: Optional[str]) -> Dict[str, Any]:
    raw = json.dumps(data, default=str, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return {
        "apkExport": True,
        "filename": export_filename(collection),
        "mime": "application/json",
        "contentBase64": base64.b64encode(raw).decode("ascii"),
        "originalSize": len(raw),
    }


def webview_html(data: Any, collection: Optional[str]) -> str:
    filename = html.escape(export_filename(collection))
    pretty = html.escape(json.dumps(data, default=str, indent=2, ensure_ascii=False), quote=False)
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width,initial-scale=1"/>
  <title>Export: {filename}</title>
  <style>
    body{{font-family:system-ui,Segoe UI,Roboto,Arial;padding:16px}}
    h1{{font-size:18px;margin-bottom:8px}}
    textarea{{width:100%;height:60vh;margin-top:12px;font-family:monospace;white-space:pre;overflow:auto}}
    p.note{{color:#444;font-size:13px}}
  </style>
</head>
<body>
  <h1>Export Ready: {filename}</h1>
  <p class="note">Copy the JSON from the textarea below and save it manually via your device.</p>
  <hr/>
  <p><strong>Raw JSON (copy/save manually)</strong></p>
  <textarea readonly>{pretty}</textarea>
</body>
</html>"""
