# stats.py: thin read projection over finalized attempts.

from datetime import datetime
from typing import Any, Callable, Dict, List

from errors import Forbidden, NotFound
from grading import finalize
from records import utcnow


def finalize_expired(store, exam_id: int, clock: Callable[[], datetime] = utcnow) -> List[int]:
    """Finalize every attempt of a closed exam that was never submitted."""
    with store.transaction() as tx:
        pending = tx.in_progress_attempt_ids(exam_id)
    for attempt_id in pending:
        finalize(store, attempt_id, clock)
    if pending:
        print(f"[stats] auto-finalized {len(pending)} attempt(s) for exam={exam_id}")
    return pending


def _cohort(scores: List[float]) -> Dict[str, Any]:
    if not scores:
        return {"count": 0, "average": None, "highest": None, "lowest": None}
    return {
        "count": len(scores),
        "average": round(sum(scores) / len(scores), 2),
        "highest": max(scores),
        "lowest": min(scores),
    }


def student_stats(store, link_id: str, student_id: str, clock: Callable[[], datetime] = utcnow) -> Dict[str, Any]:
    with store.transaction() as tx:
        exam = tx.get_exam_by_link(link_id)
        if exam is None:
            raise NotFound("Exam not found")
        attempt = tx.get_attempt(exam.exam_id, student_id)
    if attempt is None:
        raise NotFound("No attempt found for this student")

    ended = exam.has_ended(clock())
    if attempt.in_progress and not ended:
        raise Forbidden("Results are not available until the exam is submitted or ends")
    if ended:
        finalize_expired(store, exam.exam_id, clock)

    result = finalize(store, attempt.attempt_id, clock)
    with store.transaction() as tx:
        scores = tx.completed_scores(exam.exam_id)

    return {
        "exam": exam.summary(),
        "student": {"student_id": student_id, "name": attempt.student_name},
        "result": result.as_dict(),
        "cohort": _cohort(scores),
    }
