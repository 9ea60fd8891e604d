# proctoring.py
# Proctoring score: 100 minus capped per-kind deductions, floored at 0.

from collections import Counter
from typing import Any, Dict, Iterable, Tuple

# kind -> (points per event, max total deduction for the kind)
DEDUCTIONS: Dict[str, Tuple[float, float]] = {
    "TAB_SWITCH":      (5.0, 40.0),
    "BLUR":            (2.0, 20.0),
    "EXIT_FULLSCREEN": (5.0, 30.0),
    "COPY":            (3.0, 15.0),
    "PASTE":           (5.0, 25.0),
    "CONTEXT_MENU":    (1.0, 5.0),
    "DEVTOOLS_OPEN":   (10.0, 40.0),
    "PRINT_ATTEMPT":   (10.0, 20.0),
    "RESIZE":          (0.5, 5.0),
}

# Neutral signals that never cost points
NEUTRAL_KINDS = {"FOCUS", "ENTER_FULLSCREEN"}

EVENT_KINDS = set(DEDUCTIONS) | NEUTRAL_KINDS


def _kind_of(event: Any) -> str:
    if isinstance(event, dict):
        return str(event.get("kind") or "").upper()
    return str(event or "").upper()


def score(events: Iterable[Any]) -> float:
    counts = Counter(_kind_of(e) for e in (events or []))
    total = 0.0
    for kind in sorted(counts):
        weight, cap = DEDUCTIONS.get(kind, (0.0, 0.0))
        total += min(cap, weight * counts[kind])
    return round(max(0.0, 100.0 - total), 2)
