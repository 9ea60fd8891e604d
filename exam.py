# exam.py
# -----------------------------------------------------------------------------
# Test-attempt JSON API (club + tournament tests share every route).
# - Start/resume, save answers, proctor events, tab tracking, submit
# - Admin: attempt listing, manual grading, AI suggestions, score release
# - Student results go through the score-release filter
# Engine errors are rendered as {"ok": false, "error": CODE, "message": ...}.
# -----------------------------------------------------------------------------

import os
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Callable

import psycopg
from flask import Blueprint, request, jsonify, g, current_app

import ai_grading
import attempts
import authoring
from errors import BadRequest, DependencyFailure, EngineError, Unauthenticated


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/scio").
    Required deps: transaction
    Optional deps: log_activity, now, authorizer, suggest
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    # ---- Required deps -------------------------------------------------------
    transaction: Callable = deps["transaction"]
    log_activity: Optional[Callable] = deps.get("log_activity")

    # ---- Config --------------------------------------------------------------
    FILL_BLANK_CASE_SENSITIVE      = (os.getenv("FILL_BLANK_CASE_SENSITIVE", "0").lower() in ("1", "true", "yes"))
    FILL_BLANK_COLLAPSE_WHITESPACE = (os.getenv("FILL_BLANK_COLLAPSE_WHITESPACE", "1").lower() in ("1", "true", "yes"))
    ANSWER_CHAR_LIMIT              = int(os.getenv("ANSWER_CHAR_LIMIT") or 20000)

    engine: Dict[str, Any] = {
        "transaction": transaction,
        "log_activity": log_activity,
        "now": deps.get("now"),
        "authorizer": deps.get("authorizer"),
        "suggest": deps.get("suggest"),
        "grading": {
            "case_sensitive": FILL_BLANK_CASE_SENSITIVE,
            "collapse_whitespace": FILL_BLANK_COLLAPSE_WHITESPACE,
            "answer_char_limit": ANSWER_CHAR_LIMIT,
        },
    }

    # ------------------------------- helpers ----------------------------------
    def _actor() -> Dict[str, Any]:
        if not getattr(g, "user_id", None):
            raise Unauthenticated("Sign in required")
        return {"user_id": g.user_id, "email": getattr(g, "user_email", None)}

    def _body() -> Dict[str, Any]:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    def _client() -> Dict[str, Any]:
        fwd = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        return {
            "ip": fwd or request.remote_addr,
            "user_agent": request.headers.get("User-Agent"),
            "fingerprint": _body().get("fingerprint"),
        }

    def _ok(**payload):
        return jsonify(_jsonable({"ok": True, **payload}))

    # ------------------------------- errors -----------------------------------
    @bp.errorhandler(EngineError)
    def _engine_error(e: EngineError):
        if isinstance(e, DependencyFailure):
            current_app.logger.error("[exam] dependency failure (%s): %s", e.code, e.detail)
        return jsonify(e.to_dict()), e.status

    @bp.errorhandler(psycopg.Error)
    def _db_error(e: psycopg.Error):
        current_app.logger.exception("[exam] database error: %s", e)
        err = DependencyFailure(str(e), "DB_UNAVAILABLE")
        return jsonify(err.to_dict()), err.status

    # ------------------------------- authoring --------------------------------
    @bp.post("/tests")
    def create_test():
        test = authoring.create_test(engine, _actor(), _body())
        return _ok(test=_public_test(test)), 201

    @bp.post("/tests/<test_id>/questions")
    def add_question(test_id: str):
        question = authoring.add_question(engine, _actor(), test_id, _body())
        return _ok(question=question), 201

    @bp.post("/tests/<test_id>/publish")
    def publish_test(test_id: str):
        test = authoring.publish_test(engine, _actor(), test_id, _body())
        return _ok(test=_public_test(test))

    @bp.post("/tests/<test_id>/release-scores")
    def release_scores(test_id: str):
        test = authoring.release_scores(engine, _actor(), test_id)
        return _ok(test=_public_test(test))

    # ------------------------------- taking -----------------------------------
    @bp.get("/tests/<test_id>/availability")
    def availability(test_id: str):
        return _ok(**attempts.availability_for(engine, _actor(), test_id))

    @bp.post("/tests/<test_id>/attempts/start")
    def start_attempt(test_id: str):
        data = _body()
        out = attempts.start_or_resume(engine, _actor(), test_id,
                                       client=_client(), password=data.get("test_password"))
        return _ok(**out)

    @bp.post("/tests/<test_id>/attempts/<attempt_id>/answers")
    def save_answer(test_id: str, attempt_id: str):
        data = _body()
        question_id = data.get("question_id")
        if not question_id:
            raise BadRequest("question_id is required")
        answer = attempts.save_answer(engine, _actor(), test_id, attempt_id, str(question_id), data)
        return _ok(answer=answer)

    @bp.post("/tests/<test_id>/attempts/<attempt_id>/proctor-events")
    def proctor_event(test_id: str, attempt_id: str):
        data = _body()
        event = attempts.record_proctor_event(engine, _actor(), test_id, attempt_id,
                                              data.get("kind"), data.get("meta"))
        return _ok(event=event), 201

    @bp.patch("/tests/<test_id>/attempts/<attempt_id>/tab-tracking")
    def tab_tracking(test_id: str, attempt_id: str):
        data = _body()
        attempt = attempts.update_tab_tracking(engine, _actor(), test_id, attempt_id,
                                               data.get("tab_switch_count"), data.get("time_off_page_seconds"))
        return _ok(attempt=attempt)

    @bp.post("/tests/<test_id>/attempts/<attempt_id>/submit")
    def submit_attempt(test_id: str, attempt_id: str):
        return _ok(**attempts.submit(engine, _actor(), test_id, attempt_id, client=_client()))

    @bp.get("/tests/<test_id>/my-results")
    def my_results(test_id: str):
        return _ok(**attempts.get_results(engine, _actor(), test_id))

    # ------------------------------- admin ------------------------------------
    @bp.get("/tests/<test_id>/attempts")
    def list_attempts(test_id: str):
        return _ok(attempts=attempts.list_attempts_for_test(engine, _actor(), test_id))

    @bp.patch("/tests/<test_id>/attempts/<attempt_id>/grade")
    def grade_attempt(test_id: str, attempt_id: str):
        out = attempts.grade_answers(engine, _actor(), test_id, attempt_id, _body().get("grades"))
        return _ok(**out)

    @bp.post("/tests/<test_id>/attempts/<attempt_id>/ai/grade")
    def ai_grade(test_id: str, attempt_id: str):
        data = _body()
        mode = (data.get("mode") or "single").lower()
        answer_id = "all" if mode == "all" else data.get("answer_id")
        if not answer_id:
            raise BadRequest("answer_id is required for single mode")
        part_index = data.get("part_index")
        if part_index is not None:
            try:
                part_index = int(part_index)
            except (TypeError, ValueError):
                raise BadRequest("part_index must be an integer")
        suggestions = ai_grading.request_suggestions(engine, _actor(), test_id, attempt_id,
                                                     str(answer_id), part_index)
        return _ok(suggestions=suggestions)

    @bp.get("/tests/<test_id>/attempts/<attempt_id>/ai/suggestions")
    def ai_suggestions(test_id: str, attempt_id: str):
        return _ok(suggestions=ai_grading.list_suggestions(engine, _actor(), test_id, attempt_id))

    return bp


# -----------------------------------------------------------------------------#
# Serialization helpers
# -----------------------------------------------------------------------------#
def _jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return obj


def _public_test(test: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in (test or {}).items() if k != "test_password_hash"}
    out["has_password"] = bool((test or {}).get("test_password_hash"))
    return out
