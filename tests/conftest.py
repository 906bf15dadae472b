import itertools
import random
import sys
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import Conflict, LockTimeout, StoreError
from records import (
    COMPLETED, IN_PROGRESS,
    Attempt, AttemptQuestion, Exam, Question, RosterEntry, SelectionPolicy,
)


T_START = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
T_END = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, now):
        self.now = now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class MemoryTx:
    """Same surface as attempt_store.PgTx, backed by MemoryStore dicts."""

    def __init__(self, store):
        self.s = store
        self.undo = []
        self.row_locks = []

    def _lock_row(self, attempt_id, lock):
        if lock and attempt_id not in self.row_locks:
            self.s.row_lock(attempt_id).acquire()
            self.row_locks.append(attempt_id)

    # ---- exam config
    def get_exam_by_link(self, link_id):
        for row in self.s.exams.values():
            if row["exam_link_id"] == link_id:
                return Exam.from_row(row)
        return None

    def get_exam(self, exam_id):
        row = self.s.exams.get(exam_id)
        return Exam.from_row(row) if row else None

    def get_selection_policy(self, exam):
        specs = [r for r in self.s.specs if r["exam_id"] == exam.exam_id]
        return SelectionPolicy.build(exam, specs, self.s.difficulty.get(exam.exam_id))

    # ---- roster
    def get_allowed_student(self, exam_id, student_id):
        row = self.s.roster.get((exam_id, student_id))
        return RosterEntry.from_row(row) if row else None

    # ---- authoring pool
    def get_questions_for_exam(self, exam):
        bank = exam.question_bank_id
        if bank is None:
            raise ValueError(f"exam {exam.exam_id} has no question bank")
        return [Question.from_row(r) for _, r in sorted(self.s.questions.items())
                if r.get("question_bank_id") == bank]

    def get_questions(self, question_ids):
        return {qid: Question.from_row(self.s.questions[qid])
                for qid in question_ids if qid in self.s.questions}

    # ---- attempts
    def get_attempt(self, exam_id, student_id, lock=None):
        for row in self.s.attempts.values():
            if row["exam_id"] == exam_id and row["student_id"] == student_id:
                self._lock_row(row["attempt_id"], lock)
                return Attempt.from_row(dict(row))
        return None

    def get_attempt_by_id(self, attempt_id, lock=None):
        if attempt_id not in self.s.attempts:
            return None
        self._lock_row(attempt_id, lock)
        return Attempt.from_row(dict(self.s.attempts[attempt_id]))

    def insert_attempt(self, exam_id, student_id, student_name, start_time):
        self.s.calls["insert_attempt"] += 1
        if self.s.insert_delay:
            threading.Event().wait(self.s.insert_delay)
        with self.s.mutex:
            for row in self.s.attempts.values():
                if row["exam_id"] == exam_id and row["student_id"] == student_id:
                    raise Conflict("duplicate key value violates unique constraint")
            attempt_id = next(self.s.ids)
            row = {
                "attempt_id": attempt_id, "exam_id": exam_id, "student_id": student_id,
                "student_name": student_name, "status": IN_PROGRESS,
                "start_time": start_time, "end_time": None, "score": None,
            }
            self.s.attempts[attempt_id] = row
        self.undo.append(lambda: self.s.attempts.pop(attempt_id, None))
        return Attempt.from_row(dict(row))

    def insert_attempt_questions(self, attempt_id, questions):
        if self.s.fail_insert_questions:
            raise StoreError("simulated failure while inserting attempt questions")
        for idx, q in enumerate(questions, start=1):
            key = (attempt_id, q.question_id)
            self.s.attempt_questions[key] = {
                "attempt_id": attempt_id, "question_id": q.question_id, "question_order": idx,
                "chapter": q.chapter, "max_score": q.points, "student_answer": None,
                "is_correct": None, "awarded_score": None,
            }
            self.undo.append(lambda key=key: self.s.attempt_questions.pop(key, None))
        return len(questions)

    def get_attempt_questions(self, attempt_id):
        rows = [r for (aid, _), r in self.s.attempt_questions.items() if aid == attempt_id]
        return [AttemptQuestion.from_row(dict(r)) for r in sorted(rows, key=lambda r: r["question_order"])]

    def get_attempt_question(self, attempt_id, question_id):
        row = self.s.attempt_questions.get((attempt_id, question_id))
        return AttemptQuestion.from_row(dict(row)) if row else None

    def record_answer(self, attempt_id, question_id, answer, is_correct, awarded_score, answered_at):
        row = self.s.attempt_questions[(attempt_id, question_id)]
        before = dict(row)
        row.update(student_answer=answer, is_correct=is_correct,
                   awarded_score=awarded_score, answered_at=answered_at)
        self.undo.append(lambda: row.update(before))

    def complete_attempt(self, attempt_id, end_time):
        self.s.calls["complete_attempt"] += 1
        row = self.s.attempts[attempt_id]
        if row["status"] != IN_PROGRESS:
            raise StoreError("not in progress")
        before = dict(row)
        score = sum((r.get("awarded_score") or 0) for (aid, _), r in self.s.attempt_questions.items()
                    if aid == attempt_id)
        row.update(status=COMPLETED, end_time=end_time, score=score)
        self.undo.append(lambda: row.update(before))
        return Attempt.from_row(dict(row))

    # ---- stats
    def in_progress_attempt_ids(self, exam_id):
        return sorted(r["attempt_id"] for r in self.s.attempts.values()
                      if r["exam_id"] == exam_id and r["status"] == IN_PROGRESS)

    def completed_scores(self, exam_id):
        return [float(r["score"]) for r in self.s.attempts.values()
                if r["exam_id"] == exam_id and r["status"] == COMPLETED and r["score"] is not None]


class MemoryStore:
    """In-process stand-in for PgStore with real per-key and per-row locks."""

    def __init__(self):
        self.exams = {}
        self.questions = {}
        self.roster = {}
        self.specs = []
        self.difficulty = {}
        self.attempts = {}
        self.attempt_questions = {}
        self.ids = itertools.count(1)
        self.mutex = threading.RLock()
        self._key_locks = defaultdict(threading.Lock)
        self._row_locks = defaultdict(threading.Lock)
        self.calls = defaultdict(int)
        self.insert_delay = 0.0
        self.fail_insert_questions = False
        self.lock_timeouts_to_raise = 0
        self.admissions = 0

    # ---- seeding helpers
    def add_exam(self, exam_id=1, link="abc123", start=T_START, end=T_END, duration=60,
                 active=True, randomized=True, metadata=None):
        self.exams[exam_id] = {
            "exam_id": exam_id, "exam_name": f"Exam {exam_id}", "exam_link_id": link,
            "start_date": start, "end_date": end, "time_limit_minutes": duration,
            "is_active": active, "is_randomized": randomized,
            "exam_metadata": metadata if metadata is not None else {"question_bank_id": 1},
        }
        return self.exams[exam_id]

    def add_student(self, exam_id=1, student_id="S1", email="s1@example.com", name="Student One"):
        self.roster[(exam_id, student_id)] = {
            "exam_id": exam_id, "student_id": student_id,
            "student_email": email, "student_name": name,
        }

    def add_question(self, question_id, qtype="multiple-choice", points=1, chapter="1",
                     difficulty="medium", bank=1, correct_text="A", texts=("A", "B", "C")):
        options = []
        if qtype in ("multiple-choice", "true/false"):
            if qtype == "true/false":
                texts = ("True", "False")
            for i, text in enumerate(texts):
                options.append({
                    "option_id": question_id * 10 + i,
                    "option_text": text,
                    "is_correct": text == correct_text,
                })
        self.questions[question_id] = {
            "question_id": question_id, "question_bank_id": bank,
            "question_text": f"Question {question_id}", "question_type": qtype,
            "points": points, "chapter": chapter, "difficulty": difficulty,
            "image_url": None, "options": options,
        }
        return self.questions[question_id]

    def correct_option(self, question_id):
        return next(o["option_id"] for o in self.questions[question_id]["options"] if o["is_correct"])

    def wrong_option(self, question_id):
        return next(o["option_id"] for o in self.questions[question_id]["options"] if not o["is_correct"])

    def add_spec(self, exam_id, chapter, num_questions):
        self.specs.append({"exam_id": exam_id, "chapter": chapter, "num_questions": num_questions})

    # ---- locking
    def row_lock(self, attempt_id):
        with self.mutex:
            return self._row_locks[attempt_id]

    def key_lock(self, exam_id, student_id):
        with self.mutex:
            return self._key_locks[(exam_id, student_id)]

    # ---- store surface
    @contextmanager
    def transaction(self):
        tx = MemoryTx(self)
        try:
            yield tx
        except BaseException:
            with self.mutex:
                for undo in reversed(tx.undo):
                    undo()
            raise
        finally:
            for attempt_id in tx.row_locks:
                self.row_lock(attempt_id).release()

    @contextmanager
    def admission(self, exam_id, student_id, lock_timeout_ms):
        with self.mutex:
            if self.lock_timeouts_to_raise > 0:
                self.lock_timeouts_to_raise -= 1
                raise LockTimeout("canceling statement due to lock timeout")
        lock = self.key_lock(exam_id, student_id)
        if not lock.acquire(timeout=lock_timeout_ms / 1000.0):
            raise LockTimeout("canceling statement due to lock timeout")
        try:
            with self.mutex:
                self.admissions += 1
            with self.transaction() as tx:
                yield tx
        finally:
            lock.release()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    s = MemoryStore()
    s.add_exam()
    s.add_student()
    s.add_student(student_id="S2", email="s2@example.com", name="Student Two")
    for qid in range(1, 21):
        s.add_question(qid, chapter=str((qid - 1) % 4 + 1),
                       difficulty=("easy", "medium", "hard")[qid % 3])
    return s


@pytest.fixture
def rng():
    return random.Random(1234)
