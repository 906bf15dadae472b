# materializer.py: picks the ordered question list for one new attempt.
# Pure: never touches the store. Called exactly once per attempt, inside the
# admission lock.

import math
import random
from typing import Dict, List, Optional, Sequence

from records import DIFFICULTIES, ChapterSpec, Question, SelectionPolicy


def _split_by_difficulty(n: int, dist: Dict[str, int], available: Dict[str, int]) -> Dict[str, int]:
    easy = math.ceil(n * dist.get("easy", 0) / 100.0)
    # both ceilings can overshoot n together; medium gives way so the chapter never exceeds n
    medium = min(math.ceil(n * dist.get("medium", 0) / 100.0), n - easy)
    hard = n - easy - medium
    if easy <= available["easy"] and medium <= available["medium"] and hard <= available["hard"]:
        return {"easy": easy, "medium": medium, "hard": hard}

    # not enough in some bucket: spread over what exists, proportional to availability
    total = sum(available.values())
    remaining = min(n, total)
    easy = math.ceil(remaining * available["easy"] / total) if available["easy"] else 0
    remaining -= easy
    if not available["medium"]:
        medium = 0
    elif not available["hard"]:
        medium = remaining
    else:
        medium = math.ceil(remaining * available["medium"] / (available["medium"] + available["hard"]))
    remaining -= medium
    hard = max(remaining, 0) if available["hard"] else 0
    return {"easy": easy, "medium": medium, "hard": hard}


def _pick_chapter(spec: ChapterSpec, questions: List[Question], dist: Optional[Dict[str, int]],
                  rng: random.Random) -> List[Question]:
    if not questions:
        raise ValueError(f"No questions available for chapter {spec.chapter}")
    if not dist:
        return rng.sample(questions, min(spec.num_questions, len(questions)))

    buckets = {d: [q for q in questions if q.difficulty == d] for d in DIFFICULTIES}
    counts = _split_by_difficulty(spec.num_questions, dist, {d: len(b) for d, b in buckets.items()})
    picked: List[Question] = []
    for d in DIFFICULTIES:
        k = min(counts[d], len(buckets[d]))
        if k > 0:
            picked.extend(rng.sample(buckets[d], k))
    return picked


def select_questions(pool: Sequence[Question], policy: SelectionPolicy,
                     rng: Optional[random.Random] = None) -> List[Question]:
    """Return the ordered questions for one attempt.

    Raises ValueError when the pool cannot satisfy the policy at all
    (an empty pool, or a configured chapter with no questions).
    """
    rng = rng or random.Random()
    pool = list(pool)

    if policy.chapters:
        by_chapter: Dict[str, List[Question]] = {}
        for q in pool:
            by_chapter.setdefault(q.chapter or "", []).append(q)
        selected: List[Question] = []
        seen = set()
        for spec in policy.chapters:
            for q in _pick_chapter(spec, by_chapter.get(spec.chapter, []), policy.difficulty, rng):
                if q.question_id not in seen:
                    seen.add(q.question_id)
                    selected.append(q)
    else:
        selected = pool
        if policy.total_questions and policy.total_questions < len(pool):
            if policy.randomized:
                selected = rng.sample(pool, policy.total_questions)
            else:
                selected = pool[:policy.total_questions]

    if not selected:
        raise ValueError("No questions available for this exam")
    if policy.randomized:
        rng.shuffle(selected)
    return selected
