import base64
import csv
import io
import json

import pytest
from openpyxl import load_workbook

from errors import InvalidStateTransition
from exporter import (
    ALWAYS,
    Column,
    ExportJob,
    escape_field,
    format_attendance_csv,
    format_batch_report,
    format_coaches_csv,
    format_financial_workbook,
    format_performance_csv,
    format_players_csv,
    format_sessions_csv,
    format_table,
    is_navigation_request,
    is_webview_request,
    webview_html,
    webview_payload,
)


def parse(text):
    return list(csv.reader(io.StringIO(text)))


@pytest.mark.parametrize("value", [
    'plain',
    'with, comma',
    'say "hi"',
    'two\nlines',
    '"", ,\n"',
])
def test_escaped_fields_parse_back_to_the_original(value):
    columns = [Column("minimal", lambda r: r), Column("always", lambda r: r, ALWAYS)]
    rows = parse(format_table(columns, [value]))
    assert rows[1] == [value, value]


def test_escape_policies():
    assert escape_field("abc") == "abc"
    assert escape_field("abc", ALWAYS) == '"abc"'
    assert escape_field('a"b') == '"a""b"'
    assert escape_field(None) == ""
    assert escape_field(7.0) == "7"
    assert escape_field(["a", "b"]) == '"[""a"", ""b""]"'


def test_players_csv():
    players = [{
        "_id": "65f0", "name": "Asha, Jr.", "position": "Forward", "age": 14,
        "attributes": {"Attack": 8, "pace": 6, "Physicality": 0, "Defense": 7, "passing": 5, "Technique": 0},
        "stamina": 0,
    }]
    rows = parse(format_players_csv(players))
    assert rows[0] == [
        "ID", "Name", "Position", "Age", "Overall Rating", "Attack", "Pace", "Physicality",
        "Defense", "passing", "Technique", "Average Performance", "Stamina", "Enrollment Date",
    ]
    assert rows[1] == ["65f0", "Asha, Jr.", "Forward", "14", "65", "8", "6", "", "7", "5", "", "", "", ""]
    assert format_players_csv([]) == ""


def test_coaches_csv_quotes_text_columns():
    text = format_coaches_csv([{"id": "c1", "name": "Ravi", "email": "r@x.io", "experience": "5 years", "rating": 4.5}])
    assert text.splitlines()[1] == 'c1,"Ravi","r@x.io","","5 years",4.5'


def test_performance_csv_header_only_when_empty():
    text = format_performance_csv([])
    assert text == (
        "Player ID,Player Name,Date,Time,Session ID,Type,Attack,Pace,Physicality,"
        "Defense,passing,Technique,Session Rating,Overall\n"
    )


def test_performance_csv_rows():
    entries = [{
        "playerId": "p1", "playerName": "Asha", "date": "2024-05-10T16:30:00",
        "sessionId": "s1", "attributes": {"Attack": 8, "pace": 6}, "Defense": 7, "sessionRating": 9,
    }]
    rows = parse(format_performance_csv(entries))
    assert rows[1] == ["p1", "Asha", "2024-05-10", "16:30:00", "s1", "training", "8", "6", "", "7", "", "", "9", "70"]


def _batch(name, coaches, players):
    return {
        "name": name,
        "coaches": [{"id": f"c{i}", "name": f"Coach {i}"} for i in range(coaches)],
        "playersData": [{"id": f"p{i}", "name": f"Player {i}", "attributes": {"Attack": 5}} for i in range(players)],
    }


def test_batch_report_sections():
    report = format_batch_report([_batch("Under 14", 2, 3), _batch("Seniors", 1, 1)])
    lines = report.split("\n")

    assert lines[0] == 'Batch No.,1,Batch Name,"Under 14"'
    assert lines[1] == ""
    assert lines[2] == "Role,ID,Name,Email,Specialization,Experience,Rating"
    assert [l.split(",")[0] for l in lines[3:5]] == ["Coach", "Coach"]
    assert lines[5] == ""
    assert lines[6].startswith("Role,ID,Name,Position,Age,Overall Rating,Attack,pace")
    assert [l.split(",")[0] for l in lines[7:10]] == ["Player"] * 3
    assert lines[10:13] == ["", "", ""]
    assert lines[13] == 'Batch No.,2,Batch Name,"Seniors"'
    # trailing separator of the last block is stripped
    assert not report.endswith("\n")
    assert lines[-1].startswith("Player,")


def test_batch_report_player_row_values():
    batch = {"name": "B", "coaches": [], "playersData": [{
        "id": "p1", "name": "Asha", "position": "GK", "age": 12,
        "attributes": {"Attack": 8, "pace": 6, "Physicality": 0, "Defense": 7, "passing": 5, "Technique": 0},
        "averagePerformance": 7.5, "stamina": 80, "lastUpdated": "2024-05-01",
    }]}
    rows = parse(format_batch_report([batch]))
    player = [r for r in rows if r and r[0] == "Player"][0]
    assert player == ["Player", "p1", "Asha", "GK", "12", "65", "8", "6", "0", "7", "5", "0", "7.5", "80", "2024-05-01"]


def test_sessions_csv_has_nineteen_columns():
    sessions = [{
        "id": "s1", "name": "Morning, drills", "isRecurring": True, "date": "2024-05-10",
        "startTime": "06:00", "endTime": "07:15", "status": "Upcoming", "selectedDays": ["Mon", "Wed"],
        "assignedBatch": "b1", "assignedPlayers": ["p1", "p2"],
        "assignedPlayersData": [{"name": "Asha"}, {"name": "Dev"}],
        "coachId": ["c1"], "coachNames": ["Ravi"], "academyId": "A1",
    }]
    rows = parse(format_sessions_csv(sessions, [{"id": "b1", "name": "Under 14"}]))
    assert len(rows[0]) == 19
    assert rows[0][0] == "Session ID"
    assert rows[0][-1] == "Notes"
    assert rows[1] == [
        "s1", "Morning, drills", "Yes", "", "", "2024-05-10", "06:00", "07:15", "1h 15m", "Upcoming",
        "Mon; Wed", "b1", "Under 14", "p1, p2", "Asha, Dev", "c1", "Ravi", "A1", "",
    ]


def test_attendance_csv():
    users = [{"id": "p1", "name": "Asha"}, {"id": "p2", "name": "Dev"}]
    sessions = [{"status": "Finished", "date": "2024-05-10", "assignedPlayers": ["p1"],
                 "attendance": {"p1": {"status": "Present"}}}]
    rows = parse(format_attendance_csv(users, sessions))
    assert rows[1] == ["p1", "Asha", "1", "1", "0", "0", "100%"]
    assert rows[2] == ["p2", "Dev", "0", "0", "0", "0", "0%"]


def test_financial_workbook_has_income_and_expense_sheets():
    records = [
        {"transactionId": "TXN-1", "type": "income", "amount": 500, "description": "Fees", "date": "2024-05-10T09:00:00"},
        {"_id": "65f0", "type": "expense", "amount": 120, "quantity": 3, "description": "Cones", "date": "not a date"},
    ]
    wb = load_workbook(io.BytesIO(format_financial_workbook(records)))
    assert wb.sheetnames == ["Income", "Expenses"]
    income = list(wb["Income"].values)
    assert income[0] == ("Transaction ID", "Date", "Time", "Description", "Amount", "Quantity")
    assert income[1] == ("TXN-1", "2024-05-10", "09:00:00", "Fees", 500, 1)
    expenses = list(wb["Expenses"].values)
    assert expenses[1][:2] == ("65f0", "not a date")
    assert expenses[1][3:] == ("Cones", 120, 3)


class TestExportJob:
    def test_happy_path_returns_to_idle(self):
        job = ExportJob("players")
        result = job.run(lambda: [1, 2], lambda data: len(data), lambda n: f"{n} rows")
        assert result == "2 rows"
        assert job.history == ["idle", "fetching", "formatting", "downloading", "idle"]

    def test_formatting_failure_moves_to_error(self):
        job = ExportJob("players")

        def bad_format(data):
            raise ValueError("bad row")

        with pytest.raises(ValueError):
            job.run(lambda: [], bad_format, lambda c: c)
        assert job.state == "error"
        assert job.history[-2:] == ["formatting", "error"]

        # a failed job can be retried
        assert job.run(lambda: [1], lambda d: d, lambda c: c) == [1]
        assert job.state == "idle"

    def test_illegal_transition(self):
        job = ExportJob("players")
        with pytest.raises(InvalidStateTransition):
            job.transition("downloading")


class TestWebView:
    def test_detection(self):
        assert is_webview_request({"X-Requested-With": "com.academy.app"})
        assert is_webview_request({"user-agent": "Mozilla/5.0 (Linux; Android 13; wv)"})
        assert not is_webview_request({"user-agent": "Mozilla/5.0 (Windows NT 10.0)"})

    def test_navigation(self):
        assert is_navigation_request({"accept": "text/html,application/xhtml+xml"})
        assert is_navigation_request({"sec-fetch-mode": "navigate"})
        assert is_navigation_request({"sec-fetch-dest": "document"})
        assert not is_navigation_request({"accept": "*/*"})

    def test_payload_decodes_to_original_size(self):
        data = [{"name": "Asha ✓"}]
        payload = webview_payload(data, "players")
        raw = base64.b64decode(payload["contentBase64"])
        assert payload["apkExport"] is True
        assert payload["filename"] == "export-players.json"
        assert payload["mime"] == "application/json"
        assert len(raw) == payload["originalSize"]
        assert json.loads(raw.decode("utf-8")) == data

    def test_html_escapes_textarea_content(self):
        page = webview_html([{"note": "</textarea><script>"}], None)
        assert "Export Ready: export-data.json" in page
        assert "</textarea><script>" not in page
