# admission.py: the single serialization point for starting an attempt.
#
# admit() either resumes the student's in-progress attempt with its frozen
# question set or creates exactly one new attempt together with all of its
# question rows. Both happen under the admission lock (see attempt_store.py),
# with eligibility re-checked inside the lock so a stale check can never create
# an attempt after the exam closed.

import os
import random
from datetime import datetime
from typing import Callable, Dict, List, Optional

from eligibility import decide
from errors import (
    AlreadyAttempted, Conflict, ExamMisconfigured, LockTimeout, NotFound, StoreError,
)
from materializer import select_questions
from records import Attempt, AttemptHandle, Question, utcnow

ADMISSION_LOCK_TIMEOUT_MS = int(os.getenv("ADMISSION_LOCK_TIMEOUT_MS") or 5000)
ADMISSION_LOCK_RETRIES = int(os.getenv("ADMISSION_LOCK_RETRIES") or 1)


class AdmissionController:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow,
                 rng: Optional[random.Random] = None,
                 lock_timeout_ms: int = ADMISSION_LOCK_TIMEOUT_MS,
                 lock_retries: int = ADMISSION_LOCK_RETRIES):
        self.store = store
        self.clock = clock
        self.rng = rng or random.Random()
        self.lock_timeout_ms = lock_timeout_ms
        self.lock_retries = max(0, lock_retries)

    # ------------------------------------------------------------------ public
    def admit_by_link(self, link_id: str, student_id: str, email: Optional[str] = None) -> AttemptHandle:
        with self.store.transaction() as tx:
            exam = tx.get_exam_by_link(link_id)
        if exam is None or not exam.is_active:
            raise NotFound("Exam not found")
        return self.admit(exam.exam_id, student_id, email)

    def admit(self, exam_id: int, student_id: str, email: Optional[str] = None) -> AttemptHandle:
        timeouts = 0
        while True:
            try:
                return self._admit_locked(exam_id, student_id, email)
            except LockTimeout as e:
                timeouts += 1
                if timeouts > self.lock_retries:
                    print(f"[admission] lock timeout exam={exam_id} student={student_id}, giving up")
                    raise StoreError(f"admission lock timeout after {timeouts} tries") from e
                print(f"[admission] lock timeout exam={exam_id} student={student_id}, retrying")
            except Conflict:
                # someone else inserted the row outside our lock; take theirs
                print(f"[admission] unique conflict exam={exam_id} student={student_id}, reading winner")
                return self._read_winner(exam_id, student_id)

    def questions_for(self, attempt_id: int) -> AttemptHandle:
        with self.store.transaction() as tx:
            attempt = tx.get_attempt_by_id(attempt_id)
            if attempt is None:
                raise NotFound("Attempt not found")
            return self._load_handle(tx, attempt, resumed=True)

    # ----------------------------------------------------------------- private
    def _admit_locked(self, exam_id: int, student_id: str, email: Optional[str]) -> AttemptHandle:
        with self.store.admission(exam_id, student_id, self.lock_timeout_ms) as tx:
            now = self.clock()
            exam = tx.get_exam(exam_id)
            roster = tx.get_allowed_student(exam_id, student_id) if exam else None
            existing = tx.get_attempt(exam_id, student_id) if exam else None

            # an in-progress attempt is resumable, so only a completed one blocks
            blocking = existing if existing is not None and existing.is_completed else None
            decide(exam, roster, email, blocking, now).raise_for_outcome()

            if existing is not None:
                return self._load_handle(tx, existing, resumed=True)

            try:
                policy = tx.get_selection_policy(exam)
                questions = select_questions(tx.get_questions_for_exam(exam), policy, self.rng)
            except ValueError as e:
                raise ExamMisconfigured(str(e)) from e

            attempt = tx.insert_attempt(exam_id, student_id, roster.display_name, now)
            tx.insert_attempt_questions(attempt.attempt_id, questions)
            print(f"[admission] exam={exam_id} student={student_id} "
                  f"attempt={attempt.attempt_id} questions={len(questions)}")
            return AttemptHandle(attempt=attempt, questions=questions, answers={}, resumed=False)

    def _read_winner(self, exam_id: int, student_id: str) -> AttemptHandle:
        with self.store.transaction() as tx:
            attempt = tx.get_attempt(exam_id, student_id)
            if attempt is None:
                raise StoreError("unique conflict but no attempt row visible")
            if attempt.is_completed:
                raise AlreadyAttempted()
            return self._load_handle(tx, attempt, resumed=True)

    @staticmethod
    def _load_handle(tx, attempt: Attempt, resumed: bool) -> AttemptHandle:
        rows = tx.get_attempt_questions(attempt.attempt_id)
        by_id: Dict[int, Question] = tx.get_questions([r.question_id for r in rows])
        questions: List[Question] = []
        for r in rows:
            q = by_id.get(r.question_id)
            if q is None:
                raise StoreError(f"question {r.question_id} of attempt {attempt.attempt_id} is missing")
            questions.append(q)
        answers = {r.question_id: r.student_answer for r in rows if r.answered}
        return AttemptHandle(attempt=attempt, questions=questions, answers=answers, resumed=resumed)
