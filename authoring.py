# authoring.py
# -----------------------------------------------------------------------------
# Just enough test authoring to run the engine: create a draft, add questions,
# publish, release scores. Legacy prompt encodings are normalised HERE so the
# grader only ever sees first-class frq_parts / blank_answers.
# -----------------------------------------------------------------------------

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from werkzeug.security import generate_password_hash

import grading
from attempts import audit, authorizer_for, current_time, load_test, new_id
from availability import as_datetime
from errors import BadRequest, InvalidState, PolicyViolation
from release import RELEASE_MODES

QUESTION_TYPES = ("MCQ_SINGLE", "MCQ_MULTI", "SHORT_TEXT", "LONG_TEXT", "NUMERIC")
MIN_PASSWORD_LEN = 6


def _dt(payload: Dict[str, Any], key: str) -> Optional[datetime]:
    try:
        return as_datetime(payload.get(key))
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be an ISO-8601 datetime")


def _pos_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    try:
        v = int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{key} must be a positive integer")
    if v <= 0:
        raise BadRequest(f"{key} must be a positive integer")
    return v


def _release_mode(payload: Dict[str, Any], default: str) -> str:
    mode = (payload.get("score_release_mode") or default).upper()
    if mode not in RELEASE_MODES:
        raise BadRequest(f"score_release_mode must be one of {', '.join(RELEASE_MODES)}")
    return mode


def _require_draft(test: Dict[str, Any]) -> None:
    if test.get("status") != "DRAFT":
        raise InvalidState("Published tests cannot be edited", "TEST_NOT_EDITABLE")


# ------------------------------- tests ---------------------------------------
def create_test(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> Dict[str, Any]:
    scope_kind = (payload.get("scope_kind") or "CLUB").upper()
    if scope_kind not in ("CLUB", "TOURNAMENT"):
        raise BadRequest("scope_kind must be CLUB or TOURNAMENT")
    if scope_kind == "CLUB" and not payload.get("club_id"):
        raise BadRequest("club_id is required for club tests")
    if scope_kind == "TOURNAMENT" and not payload.get("tournament_id"):
        raise BadRequest("tournament_id is required for tournament tests")
    name = (payload.get("name") or "").strip()
    if not name:
        raise BadRequest("name is required")

    row = {
        "id": new_id(),
        "scope_kind": scope_kind,
        "club_id": payload.get("club_id") if scope_kind == "CLUB" else None,
        "tournament_id": payload.get("tournament_id") if scope_kind == "TOURNAMENT" else None,
        "event_id": payload.get("event_id"),
        "name": name[:200],
        "description": payload.get("description"),
        "instructions": payload.get("instructions"),
        "status": "DRAFT",
        "duration_minutes": _pos_int(payload, "duration_minutes") or 60,
        "max_attempts": _pos_int(payload, "max_attempts"),
        "score_release_mode": _release_mode(payload, "FULL_TEST"),
        "created_by_user_id": (actor or {}).get("user_id"),
    }
    with deps["transaction"]() as store:
        authorizer_for(deps, store).require(actor, "administer", row)
        return store.insert_test(row)


# ------------------------------- questions -----------------------------------
def _options(qtype: str, raw: Any) -> List[Dict[str, Any]]:
    if qtype not in grading.MCQ_TYPES:
        return []
    if not isinstance(raw, list) or len(raw) < 2:
        raise BadRequest("Multiple-choice questions need at least two options")
    opts = [{"label": str(o.get("label") or "").strip(), "is_correct": bool(o.get("is_correct"))}
            for o in raw if isinstance(o, dict)]
    if any(not o["label"] for o in opts):
        raise BadRequest("Every option needs a label")
    n_correct = sum(1 for o in opts if o["is_correct"])
    if n_correct == 0:
        raise BadRequest("Mark at least one option as correct")
    if qtype == "MCQ_SINGLE" and n_correct != 1:
        raise BadRequest("Single-choice questions need exactly one correct option")
    return opts


def _frq_parts(payload: Dict[str, Any], prompt_md: str):
    parts = payload.get("frq_parts")
    if parts:
        out = []
        for i, p in enumerate(parts):
            try:
                pts = float(p.get("points"))
            except (TypeError, ValueError, AttributeError):
                raise BadRequest(f"frq_parts[{i}].points must be a number")
            if pts <= 0:
                raise BadRequest(f"frq_parts[{i}].points must be positive")
            out.append({"label": str(p.get("label") or chr(ord("a") + i)),
                        "points": pts, "prompt": str(p.get("prompt") or "")})
        return prompt_md, out
    return grading.parse_frq_prompt(prompt_md)


def _blank_points(raw: Any, n: int, points: float) -> Optional[List[Optional[float]]]:
    """Per-blank weights must fit inside the question's points; nulls share the remainder."""
    if not raw:
        return None
    if not isinstance(raw, list) or len(raw) != n:
        raise BadRequest("blank_points must have one entry per blank")
    out: List[Optional[float]] = []
    for i, p in enumerate(raw):
        if p is None:
            out.append(None)
            continue
        v = grading._num(p)
        if v is None or not math.isfinite(v) or v < 0:
            raise BadRequest(f"blank_points[{i}] must be a non-negative number or null")
        out.append(v)
    total = sum(v for v in out if v is not None)
    if None in out:
        if total > points + grading.NUMERIC_EPS:
            raise BadRequest("blank_points add up to more than the question's points")
    elif abs(total - points) > grading.NUMERIC_EPS:
        raise BadRequest("blank_points must add up to the question's points")
    return out


def add_question(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                 payload: Dict[str, Any]) -> Dict[str, Any]:
    qtype = (payload.get("type") or "").upper()
    if qtype not in QUESTION_TYPES:
        raise BadRequest(f"type must be one of {', '.join(QUESTION_TYPES)}")
    prompt_md = (payload.get("prompt_md") or "").strip()
    if not prompt_md:
        raise BadRequest("prompt_md is required")

    row: Dict[str, Any] = {"type": qtype, "explanation": payload.get("explanation")}

    frq_parts: List[Dict[str, Any]] = []
    if qtype in grading.TEXT_TYPES:
        prompt_md, frq_parts = _frq_parts(payload, prompt_md)
    if qtype == "SHORT_TEXT" and grading.blank_count(prompt_md) and not frq_parts:
        prompt_md = grading.number_blanks(prompt_md)
        answers = payload.get("blank_answers")
        blank_pts = payload.get("blank_points")
        if answers is None:
            answers, blank_pts = grading.parse_blank_key(payload.get("explanation"))
            if blank_pts:
                blank_pts = (blank_pts + [None] * len(answers))[:len(answers)]
        if answers:
            if len(answers) != grading.blank_count(prompt_md):
                raise BadRequest("blank_answers must have one entry per blank")
            row["blank_answers"] = answers
            row["blank_points"] = blank_pts or None

    if qtype == "NUMERIC":
        try:
            row["correct_numeric"] = float(payload.get("correct_numeric"))
        except (TypeError, ValueError):
            raise BadRequest("correct_numeric is required for numeric questions")
        tol = payload.get("numeric_tolerance")
        if tol not in (None, ""):
            try:
                row["numeric_tolerance"] = abs(float(tol))
            except (TypeError, ValueError):
                raise BadRequest("numeric_tolerance must be a number")

    if frq_parts:
        row["frq_parts"] = frq_parts
        points = sum(p["points"] for p in frq_parts)
    else:
        try:
            points = float(payload.get("points"))
        except (TypeError, ValueError):
            raise BadRequest("points must be a positive number")
    if points <= 0:
        raise BadRequest("points must be a positive number")
    if row.get("blank_answers"):
        row["blank_points"] = _blank_points(row.get("blank_points"), len(row["blank_answers"]), points)

    options = _options(qtype, payload.get("options"))

    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        _require_draft(test)
        row.update({
            "id": new_id(),
            "test_id": test_id,
            "prompt_md": prompt_md,
            "points": round(points, 2),
            "q_order": store.next_question_order(test_id),
        })
        question = store.insert_question(row)
        question["options"] = [
            store.insert_option({"id": new_id(), "question_id": question["id"], "label": o["label"],
                                 "is_correct": o["is_correct"], "o_order": i})
            for i, o in enumerate(options)
        ]
    return question


# ------------------------------- publish / release ---------------------------
def publish_test(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                 payload: Dict[str, Any]) -> Dict[str, Any]:
    payload = payload or {}
    start_at = _dt(payload, "start_at")
    end_at = _dt(payload, "end_at")
    late = _dt(payload, "allow_late_until")
    if start_at and end_at and end_at <= start_at:
        raise BadRequest("end_at must be after start_at")
    if late and end_at and late < end_at:
        raise BadRequest("allow_late_until cannot be before end_at")

    password = payload.get("test_password")
    if password is not None and password != "" and len(str(password)) < MIN_PASSWORD_LEN:
        raise BadRequest(f"Test password must be at least {MIN_PASSWORD_LEN} characters")

    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        _require_draft(test)
        if store.count_questions(test_id) == 0:
            raise BadRequest("Cannot publish a test with no questions")
        fields: Dict[str, Any] = {
            "status": "PUBLISHED",
            "start_at": start_at,
            "end_at": end_at,
            "allow_late_until": late,
            "score_release_mode": _release_mode(payload, test.get("score_release_mode") or "FULL_TEST"),
            "release_scores_at": _dt(payload, "release_scores_at"),
            "updated_at": current_time(deps),
        }
        if "duration_minutes" in payload:
            fields["duration_minutes"] = _pos_int(payload, "duration_minutes") or test.get("duration_minutes") or 60
        if "max_attempts" in payload:
            fields["max_attempts"] = _pos_int(payload, "max_attempts")
        if password:
            fields["test_password_hash"] = generate_password_hash(str(password))
        updated = store.update_test(test_id, fields)

    audit(deps, actor, "test_published", {"score_release_mode": updated.get("score_release_mode")},
          test_id=test_id)
    return updated


def release_scores(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str) -> Dict[str, Any]:
    now = current_time(deps)
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        if test.get("scope_kind") == "TOURNAMENT" and test.get("tournament_id"):
            tournament = store.get_tournament(test["tournament_id"]) or {}
            ends = as_datetime(tournament.get("end_at"))
            if ends and now < ends:
                raise PolicyViolation("Scores can only be released after the tournament ends",
                                      "TOURNAMENT_NOT_ENDED")
        updated = store.update_test(test_id, {"scores_released": True, "updated_at": now})

    audit(deps, actor, "scores_released", {}, test_id=test_id)
    return updated
