# grading.py
# -----------------------------------------------------------------------------
# Auto-grader + multi-part FRQ helpers.
# - MCQ: all-or-nothing exact set match
# - NUMERIC: |student - correct| <= tolerance (inclusive)
# - Fill-in-the-blank: per-blank credit, proportional points
# - Other text: manual grading (0 points until a human/AI score exists)
# Legacy encodings (---FRQ_PARTS--- prompt blocks, " | " answers, JSON blank
# keys in the explanation) are parsed here at authoring/save time only.
# -----------------------------------------------------------------------------

import json
import re
from typing import Any, Dict, List, Optional, Tuple

BLANK_RE = re.compile(r"\[blank\d*\]")
FRQ_PARTS_RE = re.compile(r"---FRQ_PARTS---\n\n([\s\S]+)$")
FRQ_PART_RE = re.compile(r"\[PART:([a-z]):(\d+(?:\.\d+)?)\]\n([\s\S]*?)(?=\n\n\[PART:|$)")
ANSWER_DELIM = " | "

MCQ_TYPES = ("MCQ_SINGLE", "MCQ_MULTI")
TEXT_TYPES = ("SHORT_TEXT", "LONG_TEXT")
NUMERIC_EPS = 1e-9


def _num(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _pts(v: float) -> float:
    return round(float(v), 2)


# ------------------------------ legacy parsing --------------------------------
def blank_count(prompt_md: Optional[str]) -> int:
    return len(BLANK_RE.findall(prompt_md or ""))


def is_fill_blank(question: Dict[str, Any]) -> bool:
    return (question.get("type") == "SHORT_TEXT") and blank_count(question.get("prompt_md")) > 0


def number_blanks(prompt_md: str) -> str:
    """Rewrite every [blank]/[blankN] marker as [blank1], [blank2], ... in order."""
    counter = {"n": 0}

    def _sub(_m):
        counter["n"] += 1
        return f"[blank{counter['n']}]"

    return BLANK_RE.sub(_sub, prompt_md or "")


def parse_blank_key(explanation: Any) -> Tuple[List[Any], List[Optional[float]]]:
    """
    Legacy answer keys live in the explanation field as JSON:
    {"answers": [...], "points": [...]} or a bare list of answers.
    Returns (answers, points); both empty when nothing parses.
    """
    if not explanation:
        return [], []
    data = explanation
    if isinstance(explanation, str):
        try:
            data = json.loads(explanation)
        except ValueError:
            return [], []
    if isinstance(data, list):
        return list(data), []
    if isinstance(data, dict):
        answers = data.get("answers") or []
        points = [_num(p) for p in (data.get("points") or [])]
        return list(answers), points
    return [], []


def parse_frq_prompt(prompt_md: Optional[str]) -> Tuple[str, List[Dict[str, Any]]]:
    """Split a legacy multi-part prompt into (stem, [{label, points, prompt}, ...])."""
    text = prompt_md or ""
    m = FRQ_PARTS_RE.search(text)
    if not m:
        return text, []
    parts = [
        {"label": pm.group(1), "points": float(pm.group(2)), "prompt": pm.group(3).strip()}
        for pm in FRQ_PART_RE.finditer(m.group(1))
    ]
    if not parts:
        return text, []
    return text[:m.start()].rstrip(), parts


def split_part_answers(answer_text: Optional[str], n: int) -> List[str]:
    segs = (answer_text or "").split(ANSWER_DELIM) if answer_text else []
    if len(segs) < n:
        segs += [""] * (n - len(segs))
    return segs[:n] if n else segs


def answer_parts_of(question: Dict[str, Any], answer: Dict[str, Any], n: int) -> List[str]:
    parts = answer.get("answer_parts")
    if isinstance(parts, list) and parts:
        out = [str(p if p is not None else "") for p in parts][:n]
        return out + [""] * (n - len(out))
    return split_part_answers(answer.get("answer_text"), n)


# ------------------------------ blanks ----------------------------------------
def _norm_text(s: Any, case_sensitive: bool, collapse_whitespace: bool) -> str:
    t = str(s if s is not None else "").strip()
    if collapse_whitespace:
        t = re.sub(r"\s+", " ", t)
    return t if case_sensitive else t.lower()


def blank_weights(points: float, n: int, specified: Optional[List[Optional[float]]]) -> List[float]:
    """Per-blank points. Unspecified blanks share whatever the specified ones leave over."""
    if n <= 0:
        return []
    per_blank = [_num(p) for p in (specified or [])][:n]
    per_blank += [None] * (n - len(per_blank))
    given = [p for p in per_blank if p is not None]
    if not given:
        return [points / n] * n
    rest = max(0.0, points - sum(given))
    free = sum(1 for p in per_blank if p is None)
    share = (rest / free) if free else 0.0
    return [p if p is not None else share for p in per_blank]


def _grade_blanks(question: Dict[str, Any], answer: Dict[str, Any],
                  case_sensitive: bool, collapse_whitespace: bool) -> Optional[float]:
    n = blank_count(question.get("prompt_md"))
    key = question.get("blank_answers") or []
    if not key or len(key) < n:
        return None
    weights = blank_weights(float(question.get("points") or 0), n, question.get("blank_points"))
    given = answer_parts_of(question, answer, n)
    earned = 0.0
    for i in range(n):
        accepted = key[i] if isinstance(key[i], list) else [key[i]]
        student = _norm_text(given[i], case_sensitive, collapse_whitespace)
        if student and any(student == _norm_text(a, case_sensitive, collapse_whitespace) for a in accepted):
            earned += weights[i]
    return earned


# ------------------------------ grade -----------------------------------------
def grade(question: Dict[str, Any], answer: Optional[Dict[str, Any]],
          case_sensitive: bool = False, collapse_whitespace: bool = True) -> Dict[str, Any]:
    """
    Grade one answer. Returns {"points_awarded": float, "needs_manual_grade": bool}.
    A missing answer scores 0 and is not sent to manual grading.
    """
    qtype = question.get("type")
    points = float(question.get("points") or 0)

    if answer is None:
        return {"points_awarded": 0.0, "needs_manual_grade": False}

    if qtype in MCQ_TYPES:
        correct = {str(o["id"]) for o in (question.get("options") or []) if o.get("is_correct")}
        chosen = {str(x) for x in (answer.get("selected_option_ids") or [])}
        ok = bool(correct) and chosen == correct
        return {"points_awarded": _pts(points if ok else 0.0), "needs_manual_grade": False}

    if qtype == "NUMERIC":
        student = _num(answer.get("numeric_answer"))
        correct = _num(question.get("correct_numeric"))
        tol = abs(_num(question.get("numeric_tolerance")) or 0.0)
        ok = student is not None and correct is not None and abs(student - correct) <= tol + NUMERIC_EPS
        return {"points_awarded": _pts(points if ok else 0.0), "needs_manual_grade": False}

    if is_fill_blank(question):
        earned = _grade_blanks(question, answer, case_sensitive, collapse_whitespace)
        if earned is not None:
            return {"points_awarded": _pts(earned), "needs_manual_grade": False}

    # Free response, multi-part FRQ, or a blank prompt with no key
    return {"points_awarded": 0.0, "needs_manual_grade": True}


# ------------------------------ multi-part FRQ --------------------------------
def part_total(part_points: Dict[Any, Any]) -> Optional[float]:
    """Sum of graded parts; None if no part has a score yet."""
    scored = [float(part_points[k]) for k in (part_points or {}) if part_points[k] is not None]
    return _pts(sum(scored)) if scored else None


def all_parts_graded(part_points: Dict[Any, Any], parts: List[Dict[str, Any]]) -> bool:
    pp = {str(k): v for k, v in (part_points or {}).items()}
    return all(pp.get(str(i)) is not None for i in range(len(parts)))


def merge_part_points(existing: Dict[Any, Any], updates: Dict[Any, Any]) -> Dict[str, Any]:
    merged = {str(k): v for k, v in (existing or {}).items()}
    for k, v in (updates or {}).items():
        merged[str(k)] = v
    return merged


def part_placeholder(index: int, part: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "part_index": index,
        "part_label": part.get("label"),
        "part_points": float(part.get("points") or 0),
        "suggested_score": None,
        "max_score": float(part.get("points") or 0),
        "summary": None,
        "strengths": None,
        "gaps": None,
        "rubric_alignment": None,
    }


def merge_part_suggestions(existing: Optional[List[Dict[str, Any]]],
                           fresh: Dict[int, Dict[str, Any]],
                           parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Combine newly graded parts with what an earlier request produced.
    Fresh results win; other parts keep their earlier entry or get a placeholder.
    """
    by_index = {}
    for p in existing or []:
        try:
            by_index[int(p.get("part_index"))] = p
        except (TypeError, ValueError):
            continue
    out: List[Dict[str, Any]] = []
    for i, part in enumerate(parts):
        if i in fresh:
            out.append(fresh[i])
        elif i in by_index:
            out.append(by_index[i])
        else:
            out.append(part_placeholder(i, part))
    return out


def suggested_total(part_suggestions: List[Dict[str, Any]]) -> float:
    return _pts(sum(float(p["suggested_score"]) for p in part_suggestions
                    if p.get("suggested_score") is not None))
