# ai_grading.py
# -----------------------------------------------------------------------------
# AI-assisted FRQ grading suggestions (advisory only).
# - Provider calls happen OUTSIDE any DB transaction
# - Results merge into the stored suggestion afterwards (one per answer)
# - Multi-part FRQs: grading some parts keeps earlier part suggestions
# - Provider failure -> DependencyFailure; attempts/answers are never touched
# -----------------------------------------------------------------------------

import json
import os
import re
from typing import Any, Callable, Dict, List, Optional

import requests

import grading
from attempts import audit, authorizer_for, load_attempt, load_test, current_time, new_id
from errors import BadRequest, DependencyFailure, NotFound

# ---- Config ------------------------------------------------------------------
OPENAI_API_KEY      = (os.getenv("OPENAI_API_KEY") or "").strip()
OPENAI_GRADER_MODEL = (os.getenv("OPENAI_GRADER_MODEL") or "gpt-4o-mini").strip()
AI_GRADING_ENABLED  = (os.getenv("AI_GRADING_ENABLED", "1").lower() in ("1", "true", "yes"))
AI_GRADING_TIMEOUT  = int(os.getenv("AI_GRADING_TIMEOUT_SEC") or 90)


# ------------------------------- OpenAI calls ---------------------------------
def openai_chat_json(messages: List[Dict[str, str]], model: str, temperature: float, max_tokens: int) -> Dict[str, Any]:
    if not OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set (env_variables).")
    r = requests.post(
        "https://api.openai.com/v1/chat/completions",
        headers={"Authorization": f"Bearer {OPENAI_API_KEY}", "Content-Type": "application/json"},
        json={
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        },
        timeout=AI_GRADING_TIMEOUT,
    )
    r.raise_for_status()
    data = r.json()
    content = (data["choices"][0]["message"]["content"] or "").strip()
    try:
        return json.loads(content)
    except ValueError:
        m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
        return json.loads(m.group(1) if m else content)


def request_frq_suggestion(question_prompt: str, rubric: str, max_points: float,
                           student_response: str) -> Dict[str, Any]:
    """Ask the model for a rubric-based score. Points are clamped to [0, max_points]."""
    if not AI_GRADING_ENABLED:
        raise RuntimeError("AI grading is disabled")
    sys = (
        "You are a careful Science Olympiad free-response grader. Grade ONLY against the rubric. "
        "Award partial credit where the rubric allows it. "
        "Return JSON {\"suggested_score\": number, \"summary\": \"<=400 chars\", "
        "\"strengths\": \"<=300 chars\", \"gaps\": \"<=300 chars\", \"rubric_alignment\": \"<=300 chars\"}."
    )
    usr = f"""
MAX_POINTS: {max_points}

QUESTION:
---
{(question_prompt or '').strip()}
---

RUBRIC:
---
{(rubric or 'No rubric provided.').strip()}
---

STUDENT RESPONSE:
---
{(student_response or '').strip()}
---
"""
    data = openai_chat_json(
        [{"role": "system", "content": sys}, {"role": "user", "content": usr}],
        model=OPENAI_GRADER_MODEL, temperature=0.0, max_tokens=600
    ) or {}
    pts = float(data.get("suggested_score") or 0.0)
    return {
        "suggested_score": max(0.0, min(round(pts, 2), float(max_points))),
        "max_score": float(max_points),
        "summary": str(data.get("summary") or "")[:400],
        "strengths": str(data.get("strengths") or "")[:300],
        "gaps": str(data.get("gaps") or "")[:300],
        "rubric_alignment": str(data.get("rubric_alignment") or "")[:300],
        "raw_response": data,
    }


# ------------------------------- engine --------------------------------------
def _is_frq(question: Dict[str, Any]) -> bool:
    if question.get("type") not in grading.TEXT_TYPES:
        return False
    return not (grading.is_fill_blank(question) and question.get("blank_answers"))


def _call(suggest: Callable, **kwargs) -> Dict[str, Any]:
    try:
        return suggest(**kwargs)
    except Exception as e:
        raise DependencyFailure(f"AI provider error: {e}", "AI_UNAVAILABLE")


def _grade_target(suggest: Callable, t: Dict[str, Any], part_index: Optional[int]) -> Dict[str, Any]:
    q, a = t["question"], t["answer"]
    rubric = q.get("explanation") or "No rubric provided."
    parts = q.get("frq_parts") or []
    if not parts:
        return {"single": _call(suggest, question_prompt=q.get("prompt_md") or "", rubric=rubric,
                                max_points=float(q.get("points") or 0),
                                student_response=a.get("answer_text") or "")}

    answers = grading.answer_parts_of(q, a, len(parts))
    indexes = [part_index] if part_index is not None else list(range(len(parts)))
    fresh = {}
    for i in indexes:
        part = parts[i]
        s = _call(suggest, question_prompt=part.get("prompt") or "", rubric=rubric,
                  max_points=float(part.get("points") or 0), student_response=answers[i])
        fresh[i] = {
            "part_index": i,
            "part_label": part.get("label"),
            "part_points": float(part.get("points") or 0),
            "suggested_score": s["suggested_score"],
            "max_score": float(part.get("points") or 0),
            "summary": s.get("summary"),
            "strengths": s.get("strengths"),
            "gaps": s.get("gaps"),
            "rubric_alignment": s.get("rubric_alignment"),
        }
    return {"parts": fresh}


def _suggestion_row(test_id: str, attempt_id: str, t: Dict[str, Any], result: Dict[str, Any],
                    existing: Optional[Dict[str, Any]], user_id: Any, now) -> Dict[str, Any]:
    q, a = t["question"], t["answer"]
    row = {
        "id": (existing or {}).get("id") or new_id(),
        "test_id": test_id,
        "attempt_id": attempt_id,
        "answer_id": a["id"],
        "question_id": q["id"],
        "requested_by_user_id": user_id,
        "status": "PENDING",
        "accepted_points": None,
        "updated_at": now,
    }
    if "single" in result:
        s = result["single"]
        row.update({
            "suggested_points": s["suggested_score"],
            "max_points": s.get("max_score") or float(q.get("points") or 0),
            "summary": s.get("summary"),
            "strengths": s.get("strengths"),
            "gaps": s.get("gaps"),
            "rubric_alignment": s.get("rubric_alignment"),
            "raw_response": s.get("raw_response"),
        })
        return row

    parts = q.get("frq_parts") or []
    raw = (existing or {}).get("raw_response") or {}
    earlier = raw.get("part_suggestions") if isinstance(raw, dict) and raw.get("is_multipart") else None
    merged = grading.merge_part_suggestions(earlier, result["parts"], parts)
    row.update({
        "suggested_points": grading.suggested_total(merged),
        "max_points": float(q.get("points") or 0),
        "summary": "\n".join(f"({p['part_label']}) {p['summary']}" for p in merged if p.get("summary")) or None,
        "strengths": None,
        "gaps": None,
        "rubric_alignment": None,
        "raw_response": {"is_multipart": True, "part_suggestions": merged},
    })
    return row


def request_suggestions(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                        attempt_id: str, answer_id: str = "all",
                        part_index: Optional[int] = None) -> List[Dict[str, Any]]:
    """answer_id is an answer id or "all" (every FRQ answer of the attempt)."""
    suggest: Callable = deps.get("suggest") or request_frq_suggestion

    # 1) short read: what to grade
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        attempt = load_attempt(store, test_id, attempt_id)
        questions = {q["id"]: q for q in store.get_questions(test_id)}
        targets = [{"answer": a, "question": questions[a["question_id"]]}
                   for a in store.get_answers(attempt_id)
                   if a["question_id"] in questions and _is_frq(questions[a["question_id"]])]
    if not targets:
        raise BadRequest("No FRQ answers available for AI grading")
    if answer_id != "all":
        targets = [t for t in targets if t["answer"]["id"] == answer_id]
        if not targets:
            raise NotFound("FRQ answer not found")
    if part_index is not None:
        for t in targets:
            parts = t["question"].get("frq_parts") or []
            if parts and not (0 <= part_index < len(parts)):
                raise BadRequest(f"Part index {part_index} out of range")

    audit(deps, actor, "ai_grade_requested",
           {"answers": [t["answer"]["id"] for t in targets], "part_index": part_index},
           test_id=test_id, attempt_id=attempt["id"])

    # 2) provider calls, no transaction held
    results = [(t, _grade_target(suggest, t, part_index)) for t in targets]

    # 3) merge under a fresh read
    now = current_time(deps)
    saved = []
    with deps["transaction"]() as store:
        for t, result in results:
            existing = store.get_suggestion_for_answer(t["answer"]["id"])
            row = _suggestion_row(test_id, attempt_id, t, result, existing, (actor or {}).get("user_id"), now)
            saved.append(store.save_suggestion(row))
    return saved


def list_suggestions(deps: Dict[str, Any], actor: Optional[Dict[str, Any]], test_id: str,
                     attempt_id: str) -> List[Dict[str, Any]]:
    with deps["transaction"]() as store:
        test = load_test(store, test_id)
        authorizer_for(deps, store).require(actor, "administer", test)
        load_attempt(store, test_id, attempt_id)
        return store.list_suggestions(attempt_id)
