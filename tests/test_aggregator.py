from datetime import date, datetime

import pytest

from aggregator import (
    attendance_percentage,
    calculate_average_performance,
    calculate_overall_rating,
    calculate_weighted_overall,
    convert_currency,
    converted_totals,
    days_passed_in_year,
    derive_session_status,
    financial_totals,
    format_duration,
    present_inclusive_of_late,
    present_strict,
    summarize_session_attendance,
    summarize_user_attendance,
)


class TestOverallRating:
    def test_zero_attributes_are_left_out_of_the_average(self):
        attrs = {"Attack": 8, "pace": 6, "Physicality": 0, "Defense": 7, "passing": 5, "Technique": 0}
        assert calculate_overall_rating(attrs) == 65

    @pytest.mark.parametrize("attrs", [None, {}, {"Attack": 0, "pace": 0}, {"Attack": "", "Defense": None}])
    def test_no_valid_attributes_returns_zero(self, attrs):
        assert calculate_overall_rating(attrs) == 0

    def test_non_numeric_strings_are_ignored(self):
        assert calculate_overall_rating({"Attack": "9", "pace": "fast", "Defense": float("nan")}) == 90

    def test_perfect_scores(self):
        attrs = dict.fromkeys(["Attack", "pace", "Physicality", "Defense", "passing", "Technique"], 10)
        assert calculate_overall_rating(attrs) == 100


def test_weighted_overall_blends_latest_history_entry():
    attrs = {"shooting": 6, "pace": 8}
    history = [{"attributes": {"shooting": 2}}, {"attributes": {"shooting": 8}}]
    # shooting -> (6 + 8) / 2 = 7, pace stays 8, equal weights
    assert calculate_weighted_overall(attrs, history) == 7.5


def test_weighted_overall_without_known_attributes():
    assert calculate_weighted_overall({"Attack": 9}) == 0


def test_average_performance():
    history = [
        {"attributes": {"sessionRating": 8}},
        {"rating": 6},
        {"attributes": {}},
    ]
    assert calculate_average_performance(history) == 7.0
    assert calculate_average_performance([]) == 0
    assert calculate_average_performance(None) == 0


class TestAttendance:
    records = [
        {"userId": "u1", "date": "2024-01-01", "status": "present"},
        {"userId": "u1", "date": "2024-01-02", "status": "late"},
        {"userId": "u1", "date": "2024-01-03", "status": "absent"},
        {"userId": "u2", "date": "2024-01-01", "status": "present"},
    ]

    def test_late_policies_differ(self):
        u1 = [r for r in self.records if r["userId"] == "u1"]
        assert present_strict(u1) == 1
        assert present_inclusive_of_late(u1) == 2

    def test_user_summary(self):
        assert summarize_user_attendance(self.records, "u1") == {"userId": "u1", "total": 3, "present": 1, "percentage": 33}
        assert summarize_user_attendance(self.records, "u1", include_late=True)["percentage"] == 67
        assert summarize_user_attendance(self.records, "nobody")["percentage"] == 0

    def test_days_passed_counts_today(self):
        assert days_passed_in_year(date(2024, 1, 1)) == 1
        assert days_passed_in_year(date(2024, 12, 31)) == 366

    def test_percentage_rounded_to_two_decimals(self):
        assert attendance_percentage(10, date(2023, 1, 30)) == 33.33

    def test_session_summary_only_counts_finished_sessions(self):
        sessions = [
            {"status": "Finished", "date": "2024-03-01", "assignedPlayers": ["p1", "p2"],
             "attendance": {"p1": {"status": "Present"}, "p2": {"status": "Absent"}}},
            {"status": "Finished", "date": "2024-03-02", "assignedPlayers": ["p1"], "attendance": {}},
            {"status": "Upcoming", "date": "2024-03-09", "assignedPlayers": ["p1"]},
        ]
        report = summarize_session_attendance(sessions)
        assert report["p1"]["totalSessions"] == 2
        assert report["p1"]["present"] == 1
        assert report["p1"]["unmarkedDates"] == ["2024-03-02"]
        assert report["p1"]["percentage"] == 50
        assert report["p2"]["absent"] == 1


class TestFinance:
    records = [
        {"type": "income", "amount": 1000},
        {"type": "income", "amount": "250.5"},
        {"type": "expense", "amount": 400},
        {"type": "expense", "amount": 50, "status": "deleted"},
        {"type": "expense", "amount": None},
    ]

    def test_totals_and_balance(self):
        totals = financial_totals(self.records)
        assert totals["total_income"] == 1250.5
        assert totals["total_expense"] == 400
        assert totals["balance"] == totals["total_income"] - totals["total_expense"]

    def test_empty(self):
        assert financial_totals([]) == {"total_income": 0, "total_expense": 0, "balance": 0}

    def test_convert_currency(self):
        rates = {"INR": 1, "USD": 0.012}
        assert convert_currency(1000, "INR", "USD", rates) == pytest.approx(12.0)
        assert convert_currency(12, "USD", "INR", rates) == pytest.approx(1000)
        assert convert_currency(5, "INR", "INR", {}) == 5
        assert convert_currency(5, "INR", "EUR", {}) == 5

    def test_converted_totals(self):
        totals = converted_totals(self.records, "USD", {"INR": 1, "USD": 0.01})
        assert totals["total_income"] == pytest.approx(12.505)
        assert totals["balance"] == pytest.approx(8.505)


class TestSessions:
    session = {"date": "2024-05-10", "startTime": "16:00", "endTime": "17:30"}

    @pytest.mark.parametrize("now,expected", [
        (datetime(2024, 5, 10, 15, 59), "Upcoming"),
        (datetime(2024, 5, 10, 16, 0), "On-going"),
        (datetime(2024, 5, 10, 17, 30), "On-going"),
        (datetime(2024, 5, 10, 17, 31), "Finished"),
    ])
    def test_status_from_wall_clock(self, now, expected):
        assert derive_session_status({**self.session, "status": "Finished"}, now) == expected

    def test_recurring_sessions_are_upcoming(self):
        assert derive_session_status({**self.session, "isRecurring": True}, datetime(2030, 1, 1)) == "Upcoming"

    def test_duration(self):
        assert format_duration("16:00", "17:30") == "1h 30m"
        assert format_duration("16:00", "16:45") == "45m"
        assert format_duration("17:00", "16:00") == ""
        assert format_duration("soon", "16:00") == ""
