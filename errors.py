# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy for the attempt/grading engine.
# Engine functions raise these; the blueprint turns them into JSON responses.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Optional


class EngineError(Exception):
    status = 400
    code = "ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message}


class Unauthenticated(EngineError):
    status = 401
    code = "UNAUTHENTICATED"


class Unauthorized(EngineError):
    status = 403
    code = "FORBIDDEN"


class NotFound(EngineError):
    status = 404
    code = "NOT_FOUND"


class InvalidState(EngineError):
    status = 400
    code = "INVALID_STATE"


class PolicyViolation(EngineError):
    """Policy refusals carry a machine-readable code (TEST_NOT_OPEN, MAX_ATTEMPTS_REACHED, ...)."""
    status = 403
    code = "POLICY_VIOLATION"

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, code)
        if status:
            self.status = status


class DependencyFailure(EngineError):
    """Persistence or AI provider failure. The detail is for logs only."""
    status = 502
    code = "DEPENDENCY_FAILURE"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__("Something went wrong. Please try again.", code)
        self.detail = detail


class BadRequest(EngineError):
    status = 400
    code = "BAD_REQUEST"


# Availability reasons -> policy codes
AVAILABILITY_CODES = {
    "not published": "TEST_NOT_PUBLISHED",
    "not yet open": "TEST_NOT_OPEN",
    "past deadline": "TEST_PAST_DEADLINE",
}
