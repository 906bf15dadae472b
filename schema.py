# schema.py: tables read and written by the attempt lifecycle.
# Authoring tables (exams, questions, options, chapter specifications) and the roster are owned
# by other parts of the platform; they are declared here so a fresh database
# can run the service and its integration checks.

from typing import Callable, List

AUTHORING_DDL: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS exams (
        exam_id            INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        exam_name          VARCHAR(255) NOT NULL,
        exam_link_id       VARCHAR(16) UNIQUE,
        start_date         TIMESTAMPTZ NOT NULL,
        end_date           TIMESTAMPTZ NOT NULL,
        time_limit_minutes INTEGER NOT NULL DEFAULT 0,
        is_active          BOOLEAN NOT NULL DEFAULT true,
        is_randomized      BOOLEAN NOT NULL DEFAULT true,
        exam_metadata      JSONB,
        created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT exams_window_check CHECK (end_date > start_date)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        question_id      INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        question_bank_id INTEGER,
        question_text    TEXT NOT NULL,
        question_type    VARCHAR(32) NOT NULL,
        points           INTEGER NOT NULL DEFAULT 1,
        chapter          VARCHAR(50),
        difficulty       VARCHAR(20) NOT NULL DEFAULT 'medium',
        image_url        TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS question_options (
        option_id   INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        question_id INTEGER NOT NULL REFERENCES questions(question_id) ON DELETE CASCADE,
        option_text VARCHAR(255) NOT NULL,
        is_correct  BOOLEAN NOT NULL DEFAULT false
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_specifications (
        spec_id       INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        exam_id       INTEGER NOT NULL REFERENCES exams(exam_id) ON DELETE CASCADE,
        chapter       VARCHAR(255) NOT NULL,
        num_questions INTEGER NOT NULL CHECK (num_questions > 0)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exam_difficulty_distribution (
        exam_id           INTEGER PRIMARY KEY REFERENCES exams(exam_id) ON DELETE CASCADE,
        easy_percentage   INTEGER NOT NULL CHECK (easy_percentage BETWEEN 0 AND 100),
        medium_percentage INTEGER NOT NULL CHECK (medium_percentage BETWEEN 0 AND 100),
        hard_percentage   INTEGER NOT NULL CHECK (hard_percentage BETWEEN 0 AND 100),
        CONSTRAINT total_hundred CHECK (easy_percentage + medium_percentage + hard_percentage = 100)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS allowed_students (
        allowed_id    INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        exam_id       INTEGER NOT NULL REFERENCES exams(exam_id) ON DELETE CASCADE,
        student_id    VARCHAR(255) NOT NULL,
        student_name  VARCHAR(255) NOT NULL,
        student_email VARCHAR(255) NOT NULL,
        UNIQUE (exam_id, student_id)
    );
    """,
]

# One row per (exam, student): no row means "not started".
ATTEMPT_DDL: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS student_exams (
        attempt_id   INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        exam_id      INTEGER NOT NULL REFERENCES exams(exam_id) ON DELETE CASCADE,
        student_id   VARCHAR(255) NOT NULL,
        student_name VARCHAR(255) NOT NULL DEFAULT '',
        status       VARCHAR(20) NOT NULL DEFAULT 'in_progress',
        start_time   TIMESTAMPTZ NOT NULL,
        end_time     TIMESTAMPTZ,
        score        NUMERIC(8,2),
        UNIQUE (exam_id, student_id),
        CONSTRAINT student_exams_status_check CHECK (status IN ('in_progress', 'completed'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS student_exam_questions (
        attempt_question_id INTEGER PRIMARY KEY GENERATED ALWAYS AS IDENTITY,
        attempt_id     INTEGER NOT NULL REFERENCES student_exams(attempt_id) ON DELETE CASCADE,
        question_id    INTEGER NOT NULL REFERENCES questions(question_id),
        question_order INTEGER NOT NULL,
        chapter        VARCHAR(255),
        max_score      NUMERIC(8,2) NOT NULL DEFAULT 0,
        student_answer TEXT,
        is_correct     BOOLEAN,
        awarded_score  NUMERIC(8,2),
        answered_at    TIMESTAMPTZ,
        UNIQUE (attempt_id, question_order),
        UNIQUE (attempt_id, question_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_exams_link ON exams(exam_link_id);",
    "CREATE INDEX IF NOT EXISTS idx_student_exams_exam_status ON student_exams(exam_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_questions_bank_chapter ON questions(question_bank_id, chapter);",
]


def ensure_schema(execute: Callable, include_authoring: bool = True) -> int:
    """Create missing tables; returns the number of statements run."""
    statements = (AUTHORING_DDL if include_authoring else []) + ATTEMPT_DDL
    for stmt in statements:
        execute(stmt, ())
    return len(statements)
