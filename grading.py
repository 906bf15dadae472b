# grading.py: closes an attempt and reports its score.

from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

from errors import NotFound
from records import AttemptQuestion, GradeResult, utcnow


def chapter_breakdown(rows: Sequence[AttemptQuestion]) -> List[Dict[str, Any]]:
    """Per-chapter counts in first-seen order; ungraded free text is 'pending'."""
    chapters: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        name = r.chapter or "Uncategorized"
        c = chapters.setdefault(name, {
            "chapter": name, "questions": 0, "answered": 0, "correct": 0,
            "incorrect": 0, "pending": 0, "awarded": 0.0, "possible": 0.0,
        })
        c["questions"] += 1
        c["possible"] += r.max_score
        if not r.answered:
            continue
        c["answered"] += 1
        if r.is_correct is None:
            c["pending"] += 1
        elif r.is_correct:
            c["correct"] += 1
        else:
            c["incorrect"] += 1
        c["awarded"] += r.awarded_score or 0.0
    return list(chapters.values())


def finalize(store, attempt_id: int, clock: Callable[[], datetime] = utcnow) -> GradeResult:
    """Complete an in-progress attempt, or return the stored result of a completed one.

    The second and later calls never rewrite the score.
    """
    with store.transaction() as tx:
        attempt = tx.get_attempt_by_id(attempt_id, lock="update")
        if attempt is None:
            raise NotFound("Attempt not found")
        already = attempt.is_completed
        if not already:
            attempt = tx.complete_attempt(attempt_id, clock())
            print(f"[grading] finalized attempt={attempt_id} score={attempt.score}")
        rows = tx.get_attempt_questions(attempt_id)

    return GradeResult(
        attempt_id=attempt_id,
        score=attempt.score or 0.0,
        max_score=sum(r.max_score for r in rows),
        completed_at=attempt.end_time,
        chapters=chapter_breakdown(rows),
        already_finalized=already,
    )
