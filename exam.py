# exam.py
# -----------------------------------------------------------------------------
# Student exam-taking endpoints (JSON only).
# - validate-access: read-only eligibility check for a link + identity
# - questions: admit (or resume) the attempt and return its frozen question set
# - answer: last-write-wins save of one answer
# - submit: finalize + score; repeated calls return the stored result
# - stats: per-student result and cohort figures once results are available
# Every failure is {"ok": false, "error": <code>, "message": ...}.
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, g, jsonify, request, url_for
from werkzeug.exceptions import HTTPException

from admission import AdmissionController
from eligibility import check_access
from errors import AttemptError, ExamEnded, InvalidRequest, NotFound, StoreError
from grading import finalize
from ledger import submit_answer
from records import utcnow
from stats import student_stats


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "" or "/api").
    Required deps: store
    Optional deps: clock, rng, admission
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    # ---- deps ----------------------------------------------------------------
    store = deps["store"]
    clock: Callable = deps.get("clock") or utcnow
    admission: AdmissionController = deps.get("admission") or AdmissionController(
        store, clock=clock, rng=deps.get("rng"))

    # ------------------------------ payload helpers ----------------------------
    def _payload() -> Dict[str, Any]:
        if request.method == "GET":
            return request.args.to_dict()
        data = request.get_json(silent=True)
        if data is None:
            data = request.form.to_dict()
        if not isinstance(data, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return data

    def _field(data: Dict[str, Any], *keys: str) -> Any:
        for k in keys:
            if data.get(k) not in (None, ""):
                return data[k]
        return None

    def _required_str(data: Dict[str, Any], *keys: str) -> str:
        v = _field(data, *keys)
        if v is None or not str(v).strip():
            raise InvalidRequest(f"Missing required field: {keys[0]}")
        return str(v).strip()

    def _required_int(data: Dict[str, Any], *keys: str) -> int:
        v = _field(data, *keys)
        try:
            return int(v)
        except (TypeError, ValueError):
            raise InvalidRequest(f"Field {keys[0]} must be an integer") from None

    def _resolve_attempt_id(link_id: str, student_id: str) -> int:
        with store.transaction() as tx:
            exam = tx.get_exam_by_link(link_id)
            if exam is None or not exam.is_active:
                raise NotFound("Exam not found")
            attempt = tx.get_attempt(exam.exam_id, student_id)
        if attempt is None:
            raise NotFound("No attempt found for this student")
        return attempt.attempt_id

    def _stats_url(link_id: Optional[str]) -> Optional[str]:
        if not link_id:
            return None
        return url_for(f"{bp.name}.stats", link_id=link_id)

    # ------------------------------- error envelope ----------------------------
    @bp.errorhandler(AttemptError)
    def _attempt_error(e: AttemptError):
        if isinstance(e, StoreError):
            print(f"[exam] store error on {request.path}: {e.message}")
        elif isinstance(e, ExamEnded) and "stats_url" not in e.extra:
            link_id = (request.view_args or {}).get("link_id") or g.get("exam_link_id")
            e.extra["stats_url"] = _stats_url(link_id)
        return jsonify(e.envelope()), e.http_status

    @bp.errorhandler(Exception)
    def _unexpected_error(e: Exception):
        if isinstance(e, HTTPException):
            return e
        print(f"[exam] unexpected error on {request.path}: {type(e).__name__}: {e}")
        return jsonify(StoreError().envelope()), StoreError.http_status

    # ----------------------------------- routes --------------------------------
    @bp.post("/exam/validate-access")
    def validate_access():
        data = _payload()
        link_id = _required_str(data, "exam_link_id", "examLinkId", "link_id")
        student_id = _required_str(data, "student_id", "studentId")
        email = _required_str(data, "email")
        g.exam_link_id = link_id

        decision = check_access(store, link_id, student_id, email, clock()).raise_for_outcome()
        exam, roster = decision.exam, decision.roster
        body = exam.summary()
        body["student_name"] = roster.display_name
        return jsonify({"ok": True, "exam": body})

    @bp.post("/exam/<link_id>/questions")
    def questions(link_id):
        data = _payload()
        student_id = _required_str(data, "student_id", "studentId")
        email = _field(data, "email")

        handle = admission.admit_by_link(link_id, student_id, email)
        items = []
        for q in handle.questions:
            item = q.public()
            item["saved_answer"] = handle.answers.get(q.question_id)
            items.append(item)
        attempt = handle.attempt
        return jsonify({
            "ok": True,
            "attempt_id": attempt.attempt_id,
            "status": attempt.status,
            "start_time": attempt.start_time.isoformat(),
            "resumed": handle.resumed,
            "questions": items,
        })

    @bp.post("/exam/<link_id>/answer")
    def answer(link_id):
        data = _payload()
        student_id = _required_str(data, "student_id", "studentId")
        question_id = _required_int(data, "question_id", "questionId")
        value = _field(data, "answer", "selected_option_id", "selectedOptionId")

        attempt_id = _resolve_attempt_id(link_id, student_id)
        ack = submit_answer(store, attempt_id, question_id, value, clock)
        return jsonify({"ok": True, **ack})

    @bp.post("/exam/<link_id>/submit")
    def submit(link_id):
        data = _payload()
        student_id = _required_str(data, "student_id", "studentId")

        attempt_id = _resolve_attempt_id(link_id, student_id)
        result = finalize(store, attempt_id, clock)
        return jsonify({"ok": True, **result.as_dict()})

    @bp.route("/exam/<link_id>/stats", methods=["GET", "POST"])
    def stats(link_id):
        data = _payload()
        student_id = _required_str(data, "student_id", "studentId")
        return jsonify({"ok": True, **student_stats(store, link_id, student_id, clock)})

    return bp
