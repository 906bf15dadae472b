# eligibility.py: whether a student may start or continue an exam attempt.
# decide() is pure over loaded records, so it can run again inside the admission lock.
# Check order fixes the outcome when several hold at once: the end-of-window check
# precedes already-attempted, so a finished exam always points at its results.

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from errors import AlreadyAttempted, AttemptError, ExamEnded, Forbidden, NotFound
from records import Attempt, Exam, RosterEntry

ELIGIBLE = "eligible"
NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
ALREADY_ATTEMPTED = "already_attempted"
EXAM_ENDED = "exam_ended"

NOT_IN_ROSTER = "You are not in the allowed list for this exam"
NOT_STARTED = "This exam has not started yet"


@dataclass(frozen=True)
class Decision:
    outcome: str
    exam: Optional[Exam] = None
    roster: Optional[RosterEntry] = None
    reason: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.outcome == ELIGIBLE

    def raise_for_outcome(self) -> "Decision":
        if self.outcome == ELIGIBLE:
            return self
        raise self.to_error()

    def to_error(self) -> AttemptError:
        if self.outcome == NOT_FOUND:
            return NotFound(self.reason or "Exam not found")
        if self.outcome == FORBIDDEN:
            return Forbidden(self.reason)
        if self.outcome == ALREADY_ATTEMPTED:
            return AlreadyAttempted(self.reason)
        if self.outcome == EXAM_ENDED:
            return ExamEnded(self.reason)
        raise ValueError(f"no error for outcome {self.outcome!r}")


def decide(exam: Optional[Exam], roster: Optional[RosterEntry], email: Optional[str],
           attempt: Optional[Attempt], now: datetime) -> Decision:
    """Evaluate the access rules in their fixed order.

    ``email=None`` checks roster membership only (used once the identity has
    already been matched, e.g. inside admission).
    """
    if exam is None or not exam.is_active:
        return Decision(NOT_FOUND, reason="Exam not found")
    if roster is None or (email is not None and not roster.matches_email(email)):
        return Decision(FORBIDDEN, exam=exam, reason=NOT_IN_ROSTER)
    if exam.has_ended(now):
        return Decision(EXAM_ENDED, exam=exam, roster=roster)
    if attempt is not None:
        return Decision(ALREADY_ATTEMPTED, exam=exam, roster=roster)
    if not exam.has_started(now):
        return Decision(FORBIDDEN, exam=exam, roster=roster, reason=NOT_STARTED)
    return Decision(ELIGIBLE, exam=exam, roster=roster)


def check_access(store, link_id: str, student_id: str, email: Optional[str], now: datetime) -> Decision:
    """Load exam, roster entry and attempt in one transaction and decide."""
    with store.transaction() as tx:
        exam = tx.get_exam_by_link(link_id)
        if exam is None:
            return decide(None, None, email, None, now)
        roster = tx.get_allowed_student(exam.exam_id, student_id)
        attempt = tx.get_attempt(exam.exam_id, student_id)
    return decide(exam, roster, email, attempt, now)
