# records.py: typed records for exams, rosters, attempts and their frozen question sets.
# Store rows arrive as plain dicts (dict_row); each record has a from_row constructor
# that validates and coerces one, so lifecycle code never handles loose payloads.

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
ATTEMPT_STATUSES = (IN_PROGRESS, COMPLETED)

AUTO_GRADED_TYPES = ("multiple-choice", "true/false")
DIFFICULTIES = ("easy", "medium", "hard")


def _as_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"{field_name} must be a timestamp, got {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_optional_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    return _as_datetime(value, field_name)


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be an integer, got {value!r}") from None


def _as_score(value: Any) -> Optional[float]:
    if value is None:
        return None
    # NUMERIC columns arrive as Decimal
    return float(Decimal(str(value)))


def _as_json(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class Exam:
    exam_id: int
    link_id: str
    name: str
    start_date: datetime
    end_date: datetime
    duration_minutes: int
    is_active: bool = True
    is_randomized: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Exam":
        start = _as_datetime(row.get("start_date"), "start_date")
        end = _as_datetime(row.get("end_date"), "end_date")
        if end <= start:
            raise ValueError("end_date must be after start_date")
        return cls(
            exam_id=_as_int(row.get("exam_id"), "exam_id"),
            link_id=str(row.get("exam_link_id") or ""),
            name=str(row.get("exam_name") or ""),
            start_date=start,
            end_date=end,
            duration_minutes=_as_int(row.get("time_limit_minutes") or 0, "time_limit_minutes"),
            is_active=bool(row.get("is_active", True)),
            is_randomized=bool(row.get("is_randomized", True)),
            metadata=_as_json(row.get("exam_metadata")),
        )

    def has_started(self, now: datetime) -> bool:
        return now >= self.start_date

    def has_ended(self, now: datetime) -> bool:
        # window is [start_date, end_date)
        return now >= self.end_date

    @property
    def question_bank_id(self) -> Optional[int]:
        raw = self.metadata.get("question_bank_id")
        return int(raw) if raw not in (None, "") else None

    @property
    def total_questions(self) -> Optional[int]:
        raw = self.metadata.get("total_questions")
        return int(raw) if raw not in (None, "") else None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.exam_id,
            "name": self.name,
            "duration": self.duration_minutes,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }


@dataclass(frozen=True)
class RosterEntry:
    exam_id: int
    student_id: str
    email: str
    display_name: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RosterEntry":
        student_id = str(row.get("student_id") or "").strip()
        if not student_id:
            raise ValueError("student_id is required")
        return cls(
            exam_id=_as_int(row.get("exam_id"), "exam_id"),
            student_id=student_id,
            email=str(row.get("student_email") or "").strip(),
            display_name=str(row.get("student_name") or ""),
        )

    def matches_email(self, email: Optional[str]) -> bool:
        return bool(email) and self.email.lower() == str(email).strip().lower()


@dataclass(frozen=True)
class Attempt:
    attempt_id: int
    exam_id: int
    student_id: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    score: Optional[float] = None
    student_name: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Attempt":
        status = str(row.get("status") or "")
        if status not in ATTEMPT_STATUSES:
            raise ValueError(f"unknown attempt status {status!r}")
        return cls(
            attempt_id=_as_int(row.get("attempt_id"), "attempt_id"),
            exam_id=_as_int(row.get("exam_id"), "exam_id"),
            student_id=str(row.get("student_id")),
            status=status,
            start_time=_as_datetime(row.get("start_time"), "start_time"),
            end_time=_as_optional_datetime(row.get("end_time"), "end_time"),
            score=_as_score(row.get("score")),
            student_name=str(row.get("student_name") or ""),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED

    @property
    def in_progress(self) -> bool:
        return self.status == IN_PROGRESS

    def duration_deadline(self, exam: Exam) -> Optional[datetime]:
        if exam.duration_minutes <= 0:
            return None
        return self.start_time + timedelta(minutes=exam.duration_minutes)


@dataclass(frozen=True)
class Option:
    option_id: int
    option_text: str
    is_correct: bool = False

    def public(self) -> Dict[str, Any]:
        return {"option_id": self.option_id, "option_text": self.option_text}


@dataclass(frozen=True)
class Question:
    question_id: int
    question_type: str
    text: str
    points: float
    chapter: Optional[str] = None
    difficulty: str = "medium"
    image_url: Optional[str] = None
    options: Tuple[Option, ...] = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any], options: Optional[List[Mapping[str, Any]]] = None) -> "Question":
        raw_options = options if options is not None else (row.get("options") or [])
        if isinstance(raw_options, str):
            raw_options = json.loads(raw_options)
        opts = tuple(
            Option(
                option_id=_as_int(o.get("option_id"), "option_id"),
                option_text=str(o.get("option_text") or ""),
                is_correct=bool(o.get("is_correct")),
            )
            for o in raw_options
            if o and o.get("option_id") is not None
        )
        difficulty = str(row.get("difficulty") or "medium").lower()
        if difficulty not in DIFFICULTIES:
            difficulty = "medium"
        return cls(
            question_id=_as_int(row.get("question_id"), "question_id"),
            question_type=str(row.get("question_type") or ""),
            text=str(row.get("question_text") or ""),
            points=float(row.get("points") or 0),
            chapter=(str(row["chapter"]) if row.get("chapter") is not None else None),
            difficulty=difficulty,
            image_url=row.get("image_url"),
            options=opts,
        )

    @property
    def auto_graded(self) -> bool:
        return self.question_type in AUTO_GRADED_TYPES

    def public(self) -> Dict[str, Any]:
        """Client view of the question; correctness never leaves the server."""
        return {
            "question_id": self.question_id,
            "question_text": self.text,
            "question_type": self.question_type,
            "points": self.points,
            "chapter": self.chapter,
            "image_url": self.image_url,
            "options": [o.public() for o in self.options] if self.auto_graded else None,
        }


@dataclass(frozen=True)
class AttemptQuestion:
    attempt_id: int
    question_id: int
    order_index: int
    max_score: float
    chapter: Optional[str] = None
    student_answer: Optional[str] = None
    is_correct: Optional[bool] = None
    awarded_score: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AttemptQuestion":
        return cls(
            attempt_id=_as_int(row.get("attempt_id"), "attempt_id"),
            question_id=_as_int(row.get("question_id"), "question_id"),
            order_index=_as_int(row.get("question_order"), "question_order"),
            max_score=float(row.get("max_score") or 0),
            chapter=(str(row["chapter"]) if row.get("chapter") is not None else None),
            student_answer=row.get("student_answer"),
            is_correct=row.get("is_correct"),
            awarded_score=_as_score(row.get("awarded_score")),
        )

    @property
    def answered(self) -> bool:
        return self.student_answer is not None


@dataclass(frozen=True)
class ChapterSpec:
    chapter: str
    num_questions: int


@dataclass(frozen=True)
class SelectionPolicy:
    chapters: Tuple[ChapterSpec, ...] = ()
    difficulty: Optional[Dict[str, int]] = None
    randomized: bool = True
    total_questions: Optional[int] = None

    @classmethod
    def build(cls, exam: Exam, spec_rows: List[Mapping[str, Any]],
              difficulty_row: Optional[Mapping[str, Any]] = None) -> "SelectionPolicy":
        chapters = tuple(
            ChapterSpec(str(r.get("chapter")), _as_int(r.get("num_questions"), "num_questions"))
            for r in spec_rows
            if r.get("chapter") is not None and int(r.get("num_questions") or 0) > 0
        )
        difficulty: Optional[Dict[str, int]] = None
        if difficulty_row:
            difficulty = {
                "easy": int(difficulty_row.get("easy_percentage") or 0),
                "medium": int(difficulty_row.get("medium_percentage") or 0),
                "hard": int(difficulty_row.get("hard_percentage") or 0),
            }
        else:
            meta = exam.metadata.get("difficultyDistribution")
            if isinstance(meta, dict) and meta:
                difficulty = {k: int(meta.get(k) or 0) for k in DIFFICULTIES}
        if difficulty is not None and sum(difficulty.values()) != 100:
            raise ValueError(f"difficulty distribution must sum to 100, got {difficulty}")
        return cls(
            chapters=chapters,
            difficulty=difficulty,
            randomized=exam.is_randomized,
            total_questions=exam.total_questions,
        )


@dataclass
class AttemptHandle:
    attempt: Attempt
    questions: List[Question]
    answers: Dict[int, Optional[str]] = field(default_factory=dict)
    resumed: bool = False

    @property
    def question_ids(self) -> List[int]:
        return [q.question_id for q in self.questions]


@dataclass
class GradeResult:
    attempt_id: int
    score: float
    max_score: float
    completed_at: Optional[datetime]
    chapters: List[Dict[str, Any]]
    already_finalized: bool = False

    @property
    def percent(self) -> float:
        if not self.max_score:
            return 0.0
        return round(100.0 * self.score / self.max_score, 2)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "score": self.score,
            "max_score": self.max_score,
            "percent": self.percent,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "chapters": self.chapters,
            "already_submitted": self.already_finalized,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
