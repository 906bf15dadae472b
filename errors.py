# errors.py
# Reason codes for every expected outcome of the attempt lifecycle.
# Everything except StoreError is a business outcome and is shown to the
# caller as-is; StoreError keeps its detail for the log only.

from typing import Any, Dict, Optional


class AttemptError(Exception):
    code = "error"
    http_status = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class InvalidRequest(AttemptError):
    code = "invalid_request"
    http_status = 400
    default_message = "Missing or invalid fields"


class NotFound(AttemptError):
    code = "not_found"
    http_status = 404
    default_message = "Not found"


class Forbidden(AttemptError):
    code = "forbidden"
    http_status = 403
    default_message = "Access denied"


class AlreadyAttempted(AttemptError):
    code = "already_attempted"
    http_status = 403
    default_message = "You have already attempted this exam"


class ExamEnded(AttemptError):
    """The exam window is over; callers should fetch results instead."""
    code = "exam_ended"
    http_status = 403
    default_message = "This exam has already ended"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        extra.setdefault("redirect", True)
        super().__init__(message, **extra)


class AttemptClosed(AttemptError):
    code = "attempt_closed"
    http_status = 409
    default_message = "This attempt has already been submitted"


class TimeExpired(AttemptError):
    code = "time_expired"
    http_status = 403
    default_message = "Exam time has expired"


class ExamMisconfigured(AttemptError):
    code = "exam_misconfigured"
    http_status = 409
    default_message = "The exam has no questions available for its configuration"


class Conflict(AttemptError):
    # Raised by the store on a unique violation; admission resolves it by
    # reading the winning attempt, so it never reaches a client.
    code = "conflict"
    http_status = 409
    default_message = "Concurrent admission detected"


class LockTimeout(AttemptError):
    code = "lock_timeout"
    http_status = 503
    default_message = "Timed out waiting for the admission lock"


class StoreError(AttemptError):
    code = "server_error"
    http_status = 500
    default_message = "An internal error occurred"

    def envelope(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.default_message}


__all__ = [
    "AttemptError", "InvalidRequest", "NotFound", "Forbidden", "AlreadyAttempted",
    "ExamEnded", "AttemptClosed", "TimeExpired", "ExamMisconfigured", "Conflict",
    "LockTimeout", "StoreError",
]
