# attempts.py
# -----------------------------------------------------------------------------
# Attempt lifecycle: start/resume, answer saving, proctoring intake, submit,
# manual grading and student results.
#
# Every operation takes a deps dict:
#   transaction   (required) context manager yielding a Store for one DB transaction
#   log_activity  (optional) best-effort audit sink, called after commit
#   now           (optional) callable returning an aware datetime
#   authorizer    (optional) Store -> Authorizer factory
#   grading       (optional) {"case_sensitive": bool, "collapse_whitespace": bool,
#                             "answer_char_limit": int}
# -----------------------------------------------------------------------------

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg.errors import UniqueViolation

import grading
import proctoring
from access import Authorizer, check_test_password
from availability import is_available
from errors import (
    AVAILABILITY_CODES, BadRequest, InvalidState, NotFound, PolicyViolation, Unauthorized,
)
from release import filter_for_release

ACTIVE_STATUSES = ("NOT_STARTED", "IN_PROGRESS")
TERMINAL_STATUSES = ("SUBMITTED", "GRADED")
DEFAULT_ANSWER_CHAR_LIMIT = 20000
# request metadata kept for coaches, never shown back to the student
FORENSIC_FIELDS = ("client_fingerprint", "ip_at_start", "ip_at_submit", "user_agent_at_start", "user_agent_at_submit")


# ------------------------------- deps helpers --------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_time(deps: Dict[str, Any]) -> datetime:
    return (deps.get("now") or _utcnow)()


def authorizer_for(deps: Dict[str, Any], store) -> Authorizer:
    factory: Callable = deps.get("authorizer") or Authorizer
    return factory(store)


def _grading_opts(deps: Dict[str, Any]) -> Dict[str, Any]:
    opts = deps.get("grading") or {}
    return {
        "case_sensitive": bool(opts.get("case_sensitive", False)),
        "collapse_whitespace": bool(opts.get("collapse_whitespace", True)),
        "answer_char_limit": int(opts.get("answer_char_limit") or DEFAULT_ANSWER_CHAR_LIMIT),
    }


def audit(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], a_type: str,
          payload: Dict[str, Any], test_id: Optional[str] = None,
          attempt_id: Optional[str] = None) -> None:
    log_activity = deps.get("log_activity")
    if not log_activity:
        return
    try:
        log_activity((actor or {}).get("user_id"), a_type, payload, test_id=test_id, attempt_id=attempt_id)
    except Exception as e:
        print(f"[activity] {a_type} not recorded (safe): {e}")


def new_id() -> str:
    return uuid.uuid4().hex


def client_fingerprint(client: Dict[str, Any]) -> Optional[str]:
    """Use the client-supplied fingerprint, else hash IP + user agent."""
    fp = (client.get("fingerprint") or "").strip()
    if fp:
        return fp[:200]
    basis = f"{client.get('ip') or ''}|{client.get('user_agent') or ''}"
    if basis == "|":
        return None
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


# ------------------------------- loaders -------------------------------------
def load_test(store, test_id: str) -> Dict[str, Any]:
    test = store.get_test(test_id)
    if not test:
        raise NotFound("Test not found")
    return test


def load_attempt(store, test_id: str, attempt_id: str, for_update: bool = False) -> Dict[str, Any]:
    attempt = store.get_attempt(attempt_id, for_update=for_update)
    if not attempt or attempt.get("test_id") != test_id:
        raise NotFound("Attempt not found")
    return attempt


def _load_owned(deps, store, actor, test_id: str, attempt_id: str,
                for_update: bool = False) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    test = load_test(store, test_id)
    ctx = authorizer_for(deps, store).require(actor, "view_results", test)
    attempt = load_attempt(store, test_id, attempt_id, for_update=for_update)
    if attempt.get("membership_id") != ctx["membership"]["id"]:
        raise Unauthorized("Not your attempt")
    return test, attempt


def _require_in_progress(attempt: Dict[str, Any]) -> None:
    if attempt.get("status") != "IN_PROGRESS":
        raise InvalidState("Cannot modify submitted attempt", "ATTEMPT_FINALIZED")


def _attach_questions(answers: List[Dict[str, Any]], questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Answers sorted by question order, each carrying its question."""
    by_id = {q["id"]: q for q in questions}
    order = {q["id"]: q.get("q_order") or 0 for q in questions}
    out = []
    for a in sorted(answers, key=lambda a: (order.get(a.get("question_id"), 1 << 30), a.get("id") or "")):
        row = dict(a)
        row["question"] = by_id.get(a.get("question_id"))
        out.append(row)
    return out


# ------------------------------- availability --------------------------------
def availability_for(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str) -> Dict[str, Any]:
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).resolve(actor, test)
    return is_available(test, current_time(deps))


# ------------------------------- start / resume ------------------------------
def _start_in_tx(deps, store, actor, test_id: str, client: Dict[str, Any],
                 password: Optional[str], now: datetime) -> Tuple[Dict[str, Any], bool]:
    test = load_test(store, test_id)
    ctx = authorizer_for(deps, store).require(actor, "take", test)
    membership, is_admin = ctx["membership"], ctx["is_admin"]

    if not is_admin:
        check_test_password(test, password)

    avail = is_available(test, now)
    if not avail["available"]:
        reason = avail["reason"]
        raise PolicyViolation(f"Test is {reason}", AVAILABILITY_CODES.get(reason))

    existing = store.find_active_attempt(membership["id"], test_id)
    if existing:
        return existing, True

    if test.get("max_attempts") and not is_admin:
        used = store.count_terminal_attempts(membership["id"], test_id)
        if used >= int(test["max_attempts"]):
            raise PolicyViolation("Maximum attempts reached", "MAX_ATTEMPTS_REACHED")

    attempt = store.insert_attempt({
        "id": new_id(),
        "test_id": test_id,
        "membership_id": membership["id"],
        "user_id": actor.get("user_id"),
        "status": "IN_PROGRESS",
        "started_at": now,
        "client_fingerprint": client_fingerprint(client),
        "ip_at_start": client.get("ip"),
        "user_agent_at_start": (client.get("user_agent") or "")[:500] or None,
    })
    return attempt, False


def start_or_resume(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                    client: Optional[Dict[str, Any]] = None,
                    password: Optional[str] = None) -> Dict[str, Any]:
    """
    Returns {"attempt": ..., "resumed": bool}. Starting twice never creates two
    live attempts: a concurrent start that loses the unique-index race resumes.
    """
    client = client or {}
    now = current_time(deps)
    try:
        with deps["transaction"]() as store:
            attempt, resumed = _start_in_tx(deps, store, actor, test_id, client, password, now)
    except UniqueViolation:
        with deps["transaction"]() as store:
            attempt, resumed = _start_in_tx(deps, store, actor, test_id, client, password, now)
        if not resumed:
            raise InvalidState("Could not start attempt, please retry", "START_CONFLICT")

    audit(deps, actor, "attempt_resumed" if resumed else "attempt_started",
           {"status": attempt.get("status")}, test_id=test_id, attempt_id=attempt["id"])
    return {"attempt": attempt, "resumed": resumed}


# ------------------------------- answers -------------------------------------
def _clamp(s: Any, limit: int) -> str:
    return str(s if s is not None else "")[:max(0, int(limit))]


def _answer_fields(question: Dict[str, Any], payload: Dict[str, Any], limit: int) -> Dict[str, Any]:
    qtype = question.get("type")
    fields: Dict[str, Any] = {}

    if "selected_option_ids" in payload:
        chosen = [str(x) for x in (payload.get("selected_option_ids") or [])]
        valid = {str(o["id"]) for o in (question.get("options") or [])}
        if qtype not in grading.MCQ_TYPES and chosen:
            raise BadRequest("This question does not take options")
        if any(c not in valid for c in chosen):
            raise BadRequest("Unknown option for this question")
        if qtype == "MCQ_SINGLE" and len(chosen) > 1:
            raise BadRequest("Select only one option")
        fields["selected_option_ids"] = sorted(set(chosen))

    if "numeric_answer" in payload:
        raw = payload.get("numeric_answer")
        if raw is None or raw == "":
            fields["numeric_answer"] = None
        else:
            try:
                fields["numeric_answer"] = float(raw)
            except (TypeError, ValueError):
                raise BadRequest("numeric_answer must be a number")

    n_parts = len(question.get("frq_parts") or []) or grading.blank_count(question.get("prompt_md"))

    if "answer_parts" in payload and payload.get("answer_parts") is not None:
        parts = payload.get("answer_parts")
        if not isinstance(parts, list):
            raise BadRequest("answer_parts must be a list")
        fields["answer_parts"] = [_clamp(p, limit) for p in parts]

    if "answer_text" in payload:
        text = payload.get("answer_text")
        fields["answer_text"] = _clamp(text, limit) if text is not None else None
        # Legacy clients send parts joined with " | "
        if n_parts and "answer_parts" not in fields and text and grading.ANSWER_DELIM in text:
            fields["answer_parts"] = grading.split_part_answers(fields["answer_text"], n_parts)

    if "marked_for_review" in payload:
        fields["marked_for_review"] = bool(payload.get("marked_for_review"))
    return fields


def save_answer(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                attempt_id: str, question_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    limit = _grading_opts(deps)["answer_char_limit"]
    with deps["transaction"]() as store:
        _test, attempt = _load_owned(deps, store, actor, test_id, attempt_id)
        _require_in_progress(attempt)
        question = next((q for q in store.get_questions(test_id) if q["id"] == question_id), None)
        if not question:
            raise NotFound("Question not found")
        fields = _answer_fields(question, payload or {}, limit)
        return store.upsert_answer(new_id(), attempt_id, question_id, fields)


# ------------------------------- proctoring ----------------------------------
def record_proctor_event(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                         attempt_id: str, kind: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    kind = (kind or "").strip().upper()
    if kind not in proctoring.EVENT_KINDS:
        raise BadRequest(f"Unknown proctor event kind: {kind or '(empty)'}")
    if meta is not None and not isinstance(meta, dict):
        raise BadRequest("meta must be an object")
    if meta and len(json.dumps(meta)) > 4000:
        raise BadRequest("meta is too large")
    with deps["transaction"]() as store:
        _test, attempt = _load_owned(deps, store, actor, test_id, attempt_id)
        _require_in_progress(attempt)
        return store.insert_proctor_event(attempt_id, kind, current_time(deps), meta)


def update_tab_tracking(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                        attempt_id: str, tab_switch_count: Any = None,
                        time_off_page_seconds: Any = None) -> Dict[str, Any]:
    values = {}
    for name, raw in (("tab_switch_count", tab_switch_count), ("time_off_page_seconds", time_off_page_seconds)):
        if raw is None:
            continue
        try:
            v = int(raw)
        except (TypeError, ValueError):
            raise BadRequest(f"{name} must be an integer")
        if v < 0:
            raise BadRequest(f"{name} must be non-negative")
        values[name] = v

    with deps["transaction"]() as store:
        _test, attempt = _load_owned(deps, store, actor, test_id, attempt_id, for_update=True)
        _require_in_progress(attempt)
        # Counters only move forward
        fields = {k: max(int(attempt.get(k) or 0), v) for k, v in values.items()}
        return store.update_attempt(attempt_id, fields)


# ------------------------------- submit --------------------------------------
def submit(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str, attempt_id: str,
           client: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Grade everything and close the attempt in one transaction.
    Returns {"attempt", "needs_manual_grading", "proctoring_score"}.
    """
    client = client or {}
    opts = _grading_opts(deps)
    now = current_time(deps)

    with deps["transaction"]() as store:
        _test, attempt = _load_owned(deps, store, actor, test_id, attempt_id, for_update=True)
        if attempt.get("status") != "IN_PROGRESS":
            raise InvalidState("Attempt already submitted", "ALREADY_SUBMITTED")

        questions = store.get_questions(test_id)
        answers = {a["question_id"]: a for a in store.get_answers(attempt_id)}
        results = []
        for q in questions:
            r = grading.grade(q, answers.get(q["id"]),
                              case_sensitive=opts["case_sensitive"],
                              collapse_whitespace=opts["collapse_whitespace"])
            results.append((q, r))

        needs_manual = any(r["needs_manual_grade"] for _, r in results)
        earned = round(sum(r["points_awarded"] for _, r in results if not r["needs_manual_grade"]), 2)
        p_score = proctoring.score(store.get_proctor_events(attempt_id))

        updated = store.update_attempt(attempt_id, {
            "status": "SUBMITTED" if needs_manual else "GRADED",
            "submitted_at": now,
            "grade_earned": earned,
            "proctoring_score": p_score,
            "ip_at_submit": client.get("ip"),
            "user_agent_at_submit": (client.get("user_agent") or "")[:500] or None,
        })
        for q, r in results:
            existing = answers.get(q["id"])
            store.upsert_answer((existing or {}).get("id") or new_id(), attempt_id, q["id"], {
                "points_awarded": r["points_awarded"],
                "graded_at": None if r["needs_manual_grade"] else now,
            })

    audit(deps, actor, "attempt_submitted",
           {"status": updated["status"], "grade_earned": earned, "proctoring_score": p_score,
            "needs_manual_grading": needs_manual},
           test_id=test_id, attempt_id=attempt_id)
    return {"attempt": updated, "needs_manual_grading": needs_manual, "proctoring_score": p_score}


# ------------------------------- manual grading ------------------------------
def _as_points(raw: Any, name: str) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be a number")


def _grade_fields(question: Dict[str, Any], answer: Dict[str, Any], g: Dict[str, Any],
                  finalized: bool, now: datetime) -> Tuple[Dict[str, Any], Optional[float]]:
    parts = question.get("frq_parts") or []
    max_points = float(question.get("points") or 0)

    if parts and g.get("part_points") is not None:
        if not isinstance(g["part_points"], dict):
            raise BadRequest("part_points must be an object keyed by part index")
        updates = {}
        for k, raw in g["part_points"].items():
            try:
                idx = int(k)
            except (TypeError, ValueError):
                raise BadRequest("part_points keys must be part indexes")
            if idx < 0 or idx >= len(parts):
                raise BadRequest(f"Part index {idx} out of range")
            pts = _as_points(raw, "part points")
            if pts is None and finalized:
                raise InvalidState("Cannot ungrade a graded attempt", "ATTEMPT_FINALIZED")
            if pts is not None and not (0 <= pts <= float(parts[idx].get("points") or 0)):
                raise BadRequest(f"Points for part {idx} must be between 0 and {parts[idx].get('points')}")
            updates[str(idx)] = pts
        merged = grading.merge_part_points(answer.get("part_points"), updates)
        total = grading.part_total(merged)
        done = grading.all_parts_graded(merged, parts)
        return {"part_points": merged, "points_awarded": total, "graded_at": now if done else None}, total

    pts = _as_points(g.get("points_awarded"), "points_awarded")
    if pts is None:
        if finalized:
            raise InvalidState("Cannot ungrade a graded attempt", "ATTEMPT_FINALIZED")
        return {"points_awarded": None, "graded_at": None}, None
    if pts < 0 or pts > max_points:
        raise BadRequest(f"Points must be between 0 and {max_points:g}")
    return {"points_awarded": pts, "graded_at": now}, pts


def grade_answers(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                  attempt_id: str, grades: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Admin grading of individual answers; promotes the attempt to GRADED once nothing is left."""
    if not isinstance(grades, list) or not grades:
        raise BadRequest("grades must be a non-empty list")
    now = current_time(deps)

    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        attempt = load_attempt(store, test_id, attempt_id, for_update=True)
        if attempt.get("status") not in TERMINAL_STATUSES:
            raise InvalidState("Attempt has not been submitted", "NOT_SUBMITTED")
        finalized = attempt["status"] == "GRADED"
        questions = {q["id"]: q for q in store.get_questions(test_id)}

        for g in grades:
            answer = store.get_answer(str(g.get("answer_id") or ""))
            if not answer or answer.get("attempt_id") != attempt_id:
                raise NotFound("Answer not found")
            question = questions.get(answer["question_id"])
            if not question:
                raise NotFound("Question not found")
            fields, pts = _grade_fields(question, answer, g, finalized, now)
            if "grader_note" in g:
                fields["grader_note"] = (str(g["grader_note"])[:2000] if g["grader_note"] is not None else None)
            store.update_answer(answer["id"], fields)

            sid = g.get("ai_suggestion_id")
            if sid and pts is not None:
                s = store.get_suggestion(sid)
                if s and s.get("answer_id") == answer["id"]:
                    accepted = abs(pts - float(s.get("suggested_points") or 0)) < 0.01
                    store.update_suggestion(sid, {
                        "status": "ACCEPTED" if accepted else "OVERRIDDEN",
                        "accepted_points": pts,
                        "updated_at": now,
                    })

        answers = store.get_answers(attempt_id)
        earned = round(sum(float(a["points_awarded"]) for a in answers
                           if a.get("graded_at") and a.get("points_awarded") is not None), 2)
        all_graded = all(a.get("graded_at") for a in answers) and len(answers) >= len(questions)
        status = "GRADED" if (finalized or all_graded) else attempt["status"]
        updated = store.update_attempt(attempt_id, {"grade_earned": earned, "status": status})
        answers = _attach_questions(answers, list(questions.values()))

    audit(deps, actor, "attempt_graded",
           {"answers": [str(g.get("answer_id")) for g in grades], "status": status, "grade_earned": earned},
           test_id=test_id, attempt_id=attempt_id)
    return {"attempt": updated, "answers": answers}


# ------------------------------- listings ------------------------------------
def list_attempts_for_test(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str) -> List[Dict[str, Any]]:
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        questions = store.get_questions(test_id)
        out = []
        for attempt in store.list_attempts(test_id):
            row = dict(attempt)
            row["answers"] = _attach_questions(store.get_answers(attempt["id"]), questions)
            row["proctor_events"] = store.get_proctor_events(attempt["id"])
            out.append(row)
        return out


def get_results(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str) -> Dict[str, Any]:
    """The caller's latest finished attempt, filtered by the test's release settings."""
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        ctx = authorizer_for(deps, store).require(actor, "view_results", test)
        attempt = store.latest_terminal_attempt(ctx["membership"]["id"], test_id)
        if not attempt:
            raise NotFound("No submitted attempt for this test")
        full = {k: v for k, v in attempt.items() if k not in FORENSIC_FIELDS}
        full["answers"] = _attach_questions(store.get_answers(attempt["id"]), store.get_questions(test_id))

    out = filter_for_release(full, test.get("score_release_mode"), test.get("release_scores_at"),
                             current_time(deps), released=bool(test.get("scores_released")))
    out["score_release_mode"] = test.get("score_release_mode")
    out["release_scores_at"] = test.get("release_scores_at")
    return out
