# attempt_store.py: durable store for the attempt lifecycle (psycopg3).
#
# Admission lock protocol
# -----------------------
# Admission for one (exam_id, student_id) key runs inside a single transaction
# that first takes
#     pg_advisory_xact_lock(exam_id, hashtext(student_id))
# with a transaction-local lock_timeout. Every admission for the same key
# queues on that lock; the lock is released by COMMIT or ROLLBACK, so it can
# never outlive the request. Answer writes take FOR SHARE on the attempt row and
# finalize takes FOR UPDATE on it; nothing else coordinates across requests.

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from errors import AttemptError, Conflict, LockTimeout, StoreError
from records import (
    IN_PROGRESS, COMPLETED,
    Attempt, AttemptQuestion, Exam, Question, RosterEntry, SelectionPolicy,
)

_EXAM_COLUMNS = """
    exam_id, exam_name, exam_link_id, start_date, end_date, time_limit_minutes,
    is_active, is_randomized, exam_metadata
"""

_ATTEMPT_COLUMNS = """
    attempt_id, exam_id, student_id, student_name, status, start_time, end_time, score
"""

_QUESTION_SELECT = """
    SELECT q.question_id, q.question_text, q.question_type, q.points, q.chapter,
           q.difficulty, q.image_url,
           COALESCE(
             (SELECT json_agg(json_build_object(
                        'option_id', o.option_id,
                        'option_text', o.option_text,
                        'is_correct', o.is_correct) ORDER BY o.option_id)
                FROM question_options o
               WHERE o.question_id = q.question_id),
             '[]'::json) AS options
      FROM questions q
"""

_LOCK_CLAUSES = {None: "", "share": " FOR SHARE", "update": " FOR UPDATE"}


class PgTx:
    """Operations available inside one open transaction."""

    def __init__(self, cur: psycopg.Cursor):
        self.cur = cur

    def _one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        self.cur.execute(sql, params)
        return self.cur.fetchone()

    def _all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        self.cur.execute(sql, params)
        return self.cur.fetchall()

    # ---- exam config ---------------------------------------------------------
    def get_exam_by_link(self, link_id: str) -> Optional[Exam]:
        row = self._one(f"SELECT {_EXAM_COLUMNS} FROM exams WHERE exam_link_id = %s;", (link_id,))
        return Exam.from_row(row) if row else None

    def get_exam(self, exam_id: int) -> Optional[Exam]:
        row = self._one(f"SELECT {_EXAM_COLUMNS} FROM exams WHERE exam_id = %s;", (exam_id,))
        return Exam.from_row(row) if row else None

    def get_selection_policy(self, exam: Exam) -> SelectionPolicy:
        specs = self._all("""
            SELECT chapter, num_questions
              FROM exam_specifications
             WHERE exam_id = %s
             ORDER BY spec_id;
        """, (exam.exam_id,))
        dist = self._one("""
            SELECT easy_percentage, medium_percentage, hard_percentage
              FROM exam_difficulty_distribution
             WHERE exam_id = %s;
        """, (exam.exam_id,))
        return SelectionPolicy.build(exam, specs, dist)

    # ---- roster --------------------------------------------------------------
    def get_allowed_student(self, exam_id: int, student_id: str) -> Optional[RosterEntry]:
        row = self._one("""
            SELECT exam_id, student_id, student_name, student_email
              FROM allowed_students
             WHERE exam_id = %s AND student_id = %s;
        """, (exam_id, student_id))
        return RosterEntry.from_row(row) if row else None

    # ---- authoring pool ------------------------------------------------------
    def get_questions_for_exam(self, exam: Exam) -> List[Question]:
        bank_id = exam.question_bank_id
        if bank_id is None:
            raise ValueError(f"exam {exam.exam_id} has no question bank")
        rows = self._all(_QUESTION_SELECT + " WHERE q.question_bank_id = %s ORDER BY q.question_id;",
                         (bank_id,))
        return [Question.from_row(r) for r in rows]

    def get_questions(self, question_ids: Sequence[int]) -> Dict[int, Question]:
        if not question_ids:
            return {}
        rows = self._all(_QUESTION_SELECT + " WHERE q.question_id = ANY(%s);", (list(question_ids),))
        return {int(r["question_id"]): Question.from_row(r) for r in rows}

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, exam_id: int, student_id: str, lock: Optional[str] = None) -> Optional[Attempt]:
        row = self._one(
            f"SELECT {_ATTEMPT_COLUMNS} FROM student_exams WHERE exam_id = %s AND student_id = %s"
            f"{_LOCK_CLAUSES[lock]};",
            (exam_id, student_id),
        )
        return Attempt.from_row(row) if row else None

    def get_attempt_by_id(self, attempt_id: int, lock: Optional[str] = None) -> Optional[Attempt]:
        row = self._one(
            f"SELECT {_ATTEMPT_COLUMNS} FROM student_exams WHERE attempt_id = %s{_LOCK_CLAUSES[lock]};",
            (attempt_id,),
        )
        return Attempt.from_row(row) if row else None

    def insert_attempt(self, exam_id: int, student_id: str, student_name: str, start_time: datetime) -> Attempt:
        row = self._one(f"""
            INSERT INTO student_exams (exam_id, student_id, student_name, status, start_time)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {_ATTEMPT_COLUMNS};
        """, (exam_id, student_id, student_name, IN_PROGRESS, start_time))
        return Attempt.from_row(row)

    def insert_attempt_questions(self, attempt_id: int, questions: Sequence[Question]) -> int:
        params = [
            (attempt_id, q.question_id, idx, q.chapter, q.points)
            for idx, q in enumerate(questions, start=1)
        ]
        self.cur.executemany("""
            INSERT INTO student_exam_questions
                (attempt_id, question_id, question_order, chapter, max_score)
            VALUES (%s, %s, %s, %s, %s);
        """, params)
        return len(params)

    def get_attempt_questions(self, attempt_id: int) -> List[AttemptQuestion]:
        rows = self._all("""
            SELECT attempt_id, question_id, question_order, chapter, max_score,
                   student_answer, is_correct, awarded_score
              FROM student_exam_questions
             WHERE attempt_id = %s
             ORDER BY question_order;
        """, (attempt_id,))
        return [AttemptQuestion.from_row(r) for r in rows]

    def get_attempt_question(self, attempt_id: int, question_id: int) -> Optional[AttemptQuestion]:
        row = self._one("""
            SELECT attempt_id, question_id, question_order, chapter, max_score,
                   student_answer, is_correct, awarded_score
              FROM student_exam_questions
             WHERE attempt_id = %s AND question_id = %s;
        """, (attempt_id, question_id))
        return AttemptQuestion.from_row(row) if row else None

    def record_answer(self, attempt_id: int, question_id: int, answer: str,
                      is_correct: Optional[bool], awarded_score: Optional[float],
                      answered_at: datetime) -> None:
        self.cur.execute("""
            UPDATE student_exam_questions
               SET student_answer = %s,
                   is_correct     = %s,
                   awarded_score  = %s,
                   answered_at    = %s
             WHERE attempt_id = %s AND question_id = %s;
        """, (answer, is_correct, awarded_score, answered_at, attempt_id, question_id))

    def complete_attempt(self, attempt_id: int, end_time: datetime) -> Attempt:
        # score is summed from the stored per-question rows, never from the caller
        row = self._one(f"""
            UPDATE student_exams
               SET status   = %s,
                   end_time = %s,
                   score    = (SELECT COALESCE(SUM(awarded_score), 0)
                                 FROM student_exam_questions
                                WHERE attempt_id = %s)
             WHERE attempt_id = %s AND status = %s
            RETURNING {_ATTEMPT_COLUMNS};
        """, (COMPLETED, end_time, attempt_id, attempt_id, IN_PROGRESS))
        if not row:
            raise StoreError(f"attempt {attempt_id} was not in progress at finalize")
        return Attempt.from_row(row)

    # ---- stats ---------------------------------------------------------------
    def in_progress_attempt_ids(self, exam_id: int) -> List[int]:
        rows = self._all("""
            SELECT attempt_id FROM student_exams
             WHERE exam_id = %s AND status = %s
             ORDER BY attempt_id;
        """, (exam_id, IN_PROGRESS))
        return [int(r["attempt_id"]) for r in rows]

    def completed_scores(self, exam_id: int) -> List[float]:
        rows = self._all("""
            SELECT score FROM student_exams
             WHERE exam_id = %s AND status = %s AND score IS NOT NULL;
        """, (exam_id, COMPLETED))
        return [float(r["score"]) for r in rows]


class PgStore:
    """Checks a pooled connection out per unit of work; see the lock protocol above."""

    def __init__(self, get_conn: Callable):
        self._get_conn = get_conn

    @contextmanager
    def transaction(self) -> Iterator[PgTx]:
        with _translated():
            with self._get_conn() as conn:
                try:
                    with conn.cursor(row_factory=dict_row) as cur:
                        yield PgTx(cur)
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise

    @contextmanager
    def admission(self, exam_id: int, student_id: str, lock_timeout_ms: int) -> Iterator[PgTx]:
        with self.transaction() as tx:
            tx.cur.execute("SELECT set_config('lock_timeout', %s, true);", (f"{int(lock_timeout_ms)}ms",))
            tx.cur.execute("SELECT pg_advisory_xact_lock(%s::int, hashtext(%s));", (exam_id, student_id))
            yield tx


@contextmanager
def _translated() -> Iterator[None]:
    try:
        yield
    except AttemptError:
        raise
    except pg_errors.LockNotAvailable as e:
        raise LockTimeout(str(e)) from e
    except pg_errors.UniqueViolation as e:
        raise Conflict(str(e)) from e
    except psycopg.Error as e:
        # PoolTimeout is an OperationalError, so it lands here too
        raise StoreError(f"{type(e).__name__}: {e}") from e
    except Exception as e:
        # missing DB config from get_conn, or a row that fails record validation
        raise StoreError(f"{type(e).__name__}: {e}") from e
