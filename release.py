# release.py
# Score-release filter: decides what a student may see of their own attempt.

import copy
from datetime import datetime
from typing import Any, Dict, Optional

from availability import as_datetime

RELEASE_MODES = ("NONE", "SCORE_ONLY", "SCORE_WITH_WRONG", "FULL_TEST")

# Attempt fields that are always safe to show once the attempt exists
_SUMMARY_FIELDS = ("id", "test_id", "status", "started_at", "submitted_at")

# Question fields that reveal the answer key
_KEY_FIELDS = ("explanation", "correct_numeric", "blank_answers", "blank_points")


def is_released(release_at: Any, now: datetime, released: bool = False) -> bool:
    if released:
        return True
    at = as_datetime(release_at)
    return at is not None and now >= at


def _strip_key(question: Dict[str, Any]) -> Dict[str, Any]:
    q = dict(question)
    for f in _KEY_FIELDS:
        q.pop(f, None)
    q["options"] = [{k: v for k, v in o.items() if k != "is_correct"} for o in (q.get("options") or [])]
    return q


def _is_imperfect(answer: Dict[str, Any]) -> bool:
    q = answer.get("question") or {}
    earned = float(answer.get("points_awarded") or 0)
    return earned < float(q.get("points") or 0)


def filter_for_release(attempt: Dict[str, Any], mode: Optional[str], release_at: Any,
                       now: datetime, released: bool = False) -> Dict[str, Any]:
    """
    Returns {"released": bool, "attempt": dict}.
    Unreleased results carry only the attempt summary (no scores, no answers).
    """
    if not is_released(release_at, now, released):
        return {"released": False, "attempt": {k: attempt.get(k) for k in _SUMMARY_FIELDS}}

    mode = (mode or "FULL_TEST").upper()
    out = copy.deepcopy(attempt)

    if mode == "NONE":
        out["grade_earned"] = None
        out["proctoring_score"] = None
        out["answers"] = None
        return {"released": True, "attempt": out}

    if mode == "SCORE_ONLY":
        out["answers"] = None
        return {"released": True, "attempt": out}

    answers = out.get("answers") or []
    if mode == "SCORE_WITH_WRONG":
        answers = [a for a in answers if _is_imperfect(a)]

    if mode != "FULL_TEST":
        for a in answers:
            if a.get("question"):
                a["question"] = _strip_key(a["question"])

    out["answers"] = answers
    return {"released": True, "attempt": out}
