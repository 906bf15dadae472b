# ledger.py: per-question answer writes (last write wins).
# The attempt row is read FOR SHARE so a concurrent finalize (FOR UPDATE) is
# ordered strictly before or after this write.

import os
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from errors import AttemptClosed, InvalidRequest, NotFound, TimeExpired
from records import Question, utcnow

ENFORCE_DURATION_LIMIT = os.getenv("ENFORCE_DURATION_LIMIT", "").lower() in {"1", "true", "yes"}


def grade_answer(question: Question, answer: str, max_score: float) -> Tuple[Optional[bool], Optional[float]]:
    """(is_correct, awarded_score) for auto-graded types, (None, None) otherwise.

    The answer to a choice question is an option id; true/false also accepts
    the option text ("True"/"False").
    """
    if not question.auto_graded:
        return None, None
    chosen = None
    text = str(answer).strip()
    for opt in question.options:
        if str(opt.option_id) == text:
            chosen = opt
            break
    if chosen is None and question.question_type == "true/false":
        for opt in question.options:
            if opt.option_text.strip().lower() == text.lower():
                chosen = opt
                break
    is_correct = bool(chosen and chosen.is_correct)
    return is_correct, (max_score if is_correct else 0.0)


def submit_answer(store, attempt_id: int, question_id: int, answer: Any,
                  clock: Callable[[], datetime] = utcnow,
                  enforce_duration: Optional[bool] = None) -> Dict[str, Any]:
    if answer is None or (isinstance(answer, str) and not answer.strip()):
        raise InvalidRequest("Answer must not be empty")
    if enforce_duration is None:
        enforce_duration = ENFORCE_DURATION_LIMIT
    answer = str(answer)

    with store.transaction() as tx:
        attempt = tx.get_attempt_by_id(attempt_id, lock="share")
        if attempt is None:
            raise NotFound("Attempt not found")
        if attempt.is_completed:
            raise AttemptClosed()
        exam = tx.get_exam(attempt.exam_id)
        if exam is None:
            raise NotFound("Exam not found")

        now = clock()
        if exam.has_ended(now):
            raise TimeExpired()
        deadline = attempt.duration_deadline(exam)
        if enforce_duration and deadline is not None and now >= deadline:
            raise TimeExpired("Your time limit for this exam has expired")

        slot = tx.get_attempt_question(attempt_id, question_id)
        if slot is None:
            raise NotFound("Question is not part of this attempt")
        question = tx.get_questions([question_id]).get(question_id)
        if question is None:
            raise NotFound("Question not found")

        is_correct, awarded = grade_answer(question, answer, slot.max_score)
        tx.record_answer(attempt_id, question_id, answer, is_correct, awarded, now)

    return {
        "attempt_id": attempt_id,
        "question_id": question_id,
        "saved_at": now.isoformat(),
        "graded": is_correct is not None,
    }
