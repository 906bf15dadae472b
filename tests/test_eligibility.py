from datetime import datetime, timedelta, timezone

import pytest

from eligibility import (
    ALREADY_ATTEMPTED, ELIGIBLE, EXAM_ENDED, FORBIDDEN, NOT_FOUND, NOT_STARTED, NOT_IN_ROSTER,
    check_access, decide,
)
from errors import AlreadyAttempted, ExamEnded, Forbidden, NotFound
from records import Attempt, Exam, RosterEntry

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 2, tzinfo=timezone.utc)


def _exam(active=True):
    return Exam.from_row({
        "exam_id": 1, "exam_link_id": "abc123", "exam_name": "Midterm",
        "start_date": T1, "end_date": T2, "time_limit_minutes": 60, "is_active": active,
    })


def _roster():
    return RosterEntry.from_row({"exam_id": 1, "student_id": "S1",
                                 "student_email": "S1@Example.com", "student_name": "Student One"})


def _attempt(status="in_progress"):
    return Attempt.from_row({"attempt_id": 9, "exam_id": 1, "student_id": "S1",
                             "status": status, "start_time": T1 + timedelta(hours=1)})


@pytest.mark.parametrize("now, expected", [
    (T1 - timedelta(seconds=1), FORBIDDEN),
    (T1, ELIGIBLE),
    (T1 + timedelta(hours=12), ELIGIBLE),
    (T2 - timedelta(microseconds=1), ELIGIBLE),
    (T2, EXAM_ENDED),
    (T2 + timedelta(days=3), EXAM_ENDED),
])
def test_time_window(now, expected):
    d = decide(_exam(), _roster(), "s1@example.com", None, now)
    assert d.outcome == expected


def test_not_started_reason():
    d = decide(_exam(), _roster(), "s1@example.com", None, T1 - timedelta(hours=1))
    assert d.reason == NOT_STARTED
    with pytest.raises(Forbidden, match="not started"):
        d.raise_for_outcome()


@pytest.mark.parametrize("status", ["in_progress", "completed"])
def test_end_time_dominates_existing_attempt(status):
    d = decide(_exam(), _roster(), "s1@example.com", _attempt(status), T2 + timedelta(minutes=5))
    assert d.outcome == EXAM_ENDED
    with pytest.raises(ExamEnded) as info:
        d.raise_for_outcome()
    assert info.value.envelope()["redirect"] is True


def test_past_end_without_attempt_is_ended_not_eligible():
    d = decide(_exam(), _roster(), "s1@example.com", None, T2 + timedelta(hours=1))
    assert d.outcome == EXAM_ENDED
    assert not d.eligible


@pytest.mark.parametrize("status", ["in_progress", "completed"])
def test_existing_attempt_inside_window(status):
    d = decide(_exam(), _roster(), "s1@example.com", _attempt(status), T1 + timedelta(hours=2))
    assert d.outcome == ALREADY_ATTEMPTED
    with pytest.raises(AlreadyAttempted):
        d.raise_for_outcome()


def test_missing_or_inactive_exam_is_not_found():
    assert decide(None, _roster(), "s1@example.com", None, T1).outcome == NOT_FOUND
    d = decide(_exam(active=False), _roster(), "s1@example.com", None, T1)
    assert d.outcome == NOT_FOUND
    with pytest.raises(NotFound):
        d.raise_for_outcome()


def test_roster_checked_before_time():
    # not in the roster and past the end: roster wins
    d = decide(_exam(), None, "s1@example.com", None, T2 + timedelta(days=1))
    assert d.outcome == FORBIDDEN
    assert d.reason == NOT_IN_ROSTER


def test_email_match_is_case_insensitive_and_trimmed():
    d = decide(_exam(), _roster(), "  s1@EXAMPLE.com ", None, T1 + timedelta(hours=1))
    assert d.eligible
    assert d.roster.display_name == "Student One"


def test_email_mismatch_is_forbidden():
    d = decide(_exam(), _roster(), "other@example.com", None, T1 + timedelta(hours=1))
    assert d.outcome == FORBIDDEN


def test_no_email_checks_membership_only():
    assert decide(_exam(), _roster(), None, None, T1 + timedelta(hours=1)).eligible


def test_check_access_reads_store(store, clock):
    d = check_access(store, "abc123", "S1", "s1@example.com", clock())
    assert d.eligible
    assert d.exam.exam_id == 1

    assert check_access(store, "nope", "S1", "s1@example.com", clock()).outcome == NOT_FOUND
    assert check_access(store, "abc123", "S9", "s9@example.com", clock()).outcome == FORBIDDEN


def test_check_access_has_no_side_effects(store, clock):
    for _ in range(3):
        check_access(store, "abc123", "S1", "s1@example.com", clock())
    assert store.attempts == {}
    assert store.calls["insert_attempt"] == 0
