# store.py
# -----------------------------------------------------------------------------
# All SQL for the attempt/grading engine. A Store wraps ONE psycopg connection;
# main.transaction() hands one out inside conn.transaction() so every call made
# through it commits or rolls back together.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Iterable, List, Optional

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

# Columns that may be written through the generic insert/update helpers
_TEST_COLS = {
    "id", "scope_kind", "club_id", "tournament_id", "event_id", "name", "description",
    "instructions", "status", "start_at", "end_at", "allow_late_until", "duration_minutes",
    "max_attempts", "score_release_mode", "release_scores_at", "scores_released",
    "test_password_hash", "created_by_user_id", "updated_at",
}
_QUESTION_COLS = {
    "id", "test_id", "type", "prompt_md", "explanation", "points", "q_order",
    "correct_numeric", "numeric_tolerance", "blank_answers", "blank_points", "frq_parts",
}
_ATTEMPT_COLS = {
    "id", "test_id", "membership_id", "user_id", "status", "started_at", "submitted_at",
    "grade_earned", "proctoring_score", "tab_switch_count", "time_off_page_seconds",
    "client_fingerprint", "ip_at_start", "ip_at_submit", "user_agent_at_start",
    "user_agent_at_submit",
}
_ANSWER_COLS = {
    "selected_option_ids", "numeric_answer", "answer_text", "answer_parts",
    "marked_for_review", "points_awarded", "part_points", "graded_at", "grader_note",
}
_SUGGESTION_COLS = {
    "id", "test_id", "attempt_id", "answer_id", "question_id", "requested_by_user_id",
    "suggested_points", "max_points", "summary", "strengths", "gaps", "rubric_alignment",
    "raw_response", "status", "accepted_points", "updated_at",
}
_JSON_COLS = {
    "blank_answers", "blank_points", "frq_parts", "selected_option_ids", "answer_parts",
    "part_points", "raw_response", "meta", "payload",
}


def _adapt(col: str, value: Any) -> Any:
    if col in _JSON_COLS and value is not None:
        return Jsonb(value)
    return value


def _checked(fields: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    allowed = set(allowed)
    bad = [k for k in fields if k not in allowed]
    if bad:
        raise ValueError(f"unknown column(s): {', '.join(sorted(bad))}")
    return fields


class Store:
    def __init__(self, conn):
        self.conn = conn

    # ---- low-level -----------------------------------------------------------
    def _all(self, q: str, params: Any = None) -> List[Dict[str, Any]]:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall() if cur.description else []

    def _one(self, q: str, params: Any = None) -> Optional[Dict[str, Any]]:
        rows = self._all(q, params)
        return rows[0] if rows else None

    def _insert(self, table: str, row: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
        _checked(row, allowed)
        cols = list(row)
        placeholders = ", ".join(["%s"] * len(cols))
        return self._one(
            f"INSERT INTO public.{table} ({', '.join(cols)}) VALUES ({placeholders}) RETURNING *;",
            [_adapt(c, row[c]) for c in cols],
        )

    def _update(self, table: str, row_id: str, fields: Dict[str, Any],
                allowed: Iterable[str]) -> Optional[Dict[str, Any]]:
        _checked(fields, allowed)
        if not fields:
            return self._one(f"SELECT * FROM public.{table} WHERE id = %s;", (row_id,))
        cols = list(fields)
        sets = ", ".join(f"{c} = %s" for c in cols)
        return self._one(
            f"UPDATE public.{table} SET {sets} WHERE id = %s RETURNING *;",
            [_adapt(c, fields[c]) for c in cols] + [row_id],
        )

    # ---- tests & questions ---------------------------------------------------
    def get_test(self, test_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM public.tests WHERE id = %s;", (test_id,))

    def insert_test(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("tests", row, _TEST_COLS)

    def update_test(self, test_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("tests", test_id, fields, _TEST_COLS)

    def get_questions(self, test_id: str) -> List[Dict[str, Any]]:
        questions = self._all("""
            SELECT * FROM public.questions WHERE test_id = %s ORDER BY q_order ASC;
        """, (test_id,))
        if not questions:
            return []
        options = self._all("""
            SELECT * FROM public.question_options
             WHERE question_id = ANY(%s)
             ORDER BY o_order ASC, id ASC;
        """, ([q["id"] for q in questions],))
        by_q: Dict[str, List[Dict[str, Any]]] = {}
        for o in options:
            by_q.setdefault(o["question_id"], []).append(o)
        for q in questions:
            q["options"] = by_q.get(q["id"], [])
        return questions

    def count_questions(self, test_id: str) -> int:
        row = self._one("SELECT COUNT(*) AS n FROM public.questions WHERE test_id = %s;", (test_id,))
        return int((row or {}).get("n") or 0)

    def next_question_order(self, test_id: str) -> int:
        row = self._one("""
            SELECT COALESCE(MAX(q_order), 0) + 1 AS n FROM public.questions WHERE test_id = %s;
        """, (test_id,))
        return int((row or {}).get("n") or 1)

    def insert_question(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("questions", row, _QUESTION_COLS)

    def insert_option(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("question_options", row, {"id", "question_id", "label", "is_correct", "o_order"})

    # ---- access lookups ------------------------------------------------------
    def get_user_memberships(self, user_id: int) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM public.memberships WHERE user_id = %s;", (user_id,))

    def get_tournament(self, tournament_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM public.tournaments WHERE id = %s;", (tournament_id,))

    def find_confirmed_registration(self, tournament_id: str, club_ids: List[str],
                                    team_ids: List[str]) -> Optional[Dict[str, Any]]:
        return self._one("""
            SELECT * FROM public.tournament_registrations
             WHERE tournament_id = %s
               AND status = 'CONFIRMED'
               AND (team_id = ANY(%s) OR club_id = ANY(%s))
             ORDER BY (team_id IS NULL) ASC
             LIMIT 1;
        """, (tournament_id, list(team_ids), list(club_ids)))

    def is_tournament_admin(self, tournament_id: str, user_id: int) -> bool:
        row = self._one("""
            SELECT 1 AS ok FROM public.tournament_admins WHERE tournament_id = %s AND user_id = %s;
        """, (tournament_id, user_id))
        return bool(row)

    def has_roster_assignment(self, membership_id: str, event_id: str) -> bool:
        row = self._one("""
            SELECT 1 AS ok FROM public.roster_assignments
             WHERE membership_id = %s AND event_id = %s
             LIMIT 1;
        """, (membership_id, event_id))
        return bool(row)

    def get_test_assignments(self, test_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM public.test_assignments WHERE test_id = %s;", (test_id,))

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, attempt_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        lock = " FOR UPDATE" if for_update else ""
        return self._one(f"SELECT * FROM public.attempts WHERE id = %s{lock};", (attempt_id,))

    def find_active_attempt(self, membership_id: str, test_id: str) -> Optional[Dict[str, Any]]:
        return self._one("""
            SELECT * FROM public.attempts
             WHERE membership_id = %s AND test_id = %s
               AND status IN ('NOT_STARTED', 'IN_PROGRESS')
             LIMIT 1;
        """, (membership_id, test_id))

    def count_terminal_attempts(self, membership_id: str, test_id: str) -> int:
        row = self._one("""
            SELECT COUNT(*) AS n FROM public.attempts
             WHERE membership_id = %s AND test_id = %s
               AND status IN ('SUBMITTED', 'GRADED');
        """, (membership_id, test_id))
        return int((row or {}).get("n") or 0)

    def latest_terminal_attempt(self, membership_id: str, test_id: str) -> Optional[Dict[str, Any]]:
        return self._one("""
            SELECT * FROM public.attempts
             WHERE membership_id = %s AND test_id = %s
               AND status IN ('SUBMITTED', 'GRADED')
             ORDER BY submitted_at DESC NULLS LAST, created_at DESC
             LIMIT 1;
        """, (membership_id, test_id))

    def insert_attempt(self, row: Dict[str, Any]) -> Dict[str, Any]:
        # A second live attempt trips attempts_one_active -> psycopg.errors.UniqueViolation
        return self._insert("attempts", row, _ATTEMPT_COLS)

    def update_attempt(self, attempt_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("attempts", attempt_id, fields, _ATTEMPT_COLS)

    def list_attempts(self, test_id: str) -> List[Dict[str, Any]]:
        return self._all("""
            SELECT a.*, m.user_id AS member_user_id, m.team_id, u.email AS user_email, u.full_name
              FROM public.attempts a
              JOIN public.memberships m ON m.id = a.membership_id
              LEFT JOIN public.users u ON u.id = m.user_id
             WHERE a.test_id = %s
             ORDER BY a.submitted_at DESC NULLS LAST, a.created_at DESC;
        """, (test_id,))

    # ---- answers -------------------------------------------------------------
    def get_answers(self, attempt_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM public.attempt_answers WHERE attempt_id = %s;", (attempt_id,))

    def get_answer(self, answer_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM public.attempt_answers WHERE id = %s;", (answer_id,))

    def upsert_answer(self, answer_id: str, attempt_id: str, question_id: str,
                      fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert the (attempt, question) answer or update only the given columns."""
        _checked(fields, _ANSWER_COLS)
        cols = list(fields)
        values = [_adapt(c, fields[c]) for c in cols]
        if cols:
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in cols) + ", updated_at = now()"
        else:
            updates = "updated_at = now()"
        col_sql = ", ".join(["id", "attempt_id", "question_id"] + cols)
        placeholders = ", ".join(["%s"] * (3 + len(cols)))
        return self._one(f"""
            INSERT INTO public.attempt_answers ({col_sql})
            VALUES ({placeholders})
            ON CONFLICT (attempt_id, question_id) DO UPDATE SET {updates}
            RETURNING *;
        """, [answer_id, attempt_id, question_id] + values)

    def update_answer(self, answer_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("attempt_answers", answer_id, fields, _ANSWER_COLS)

    # ---- proctoring ----------------------------------------------------------
    def insert_proctor_event(self, attempt_id: str, kind: str, ts: Any,
                             meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._one("""
            INSERT INTO public.proctor_events (attempt_id, kind, ts, meta)
            VALUES (%s, %s, %s, %s)
            RETURNING *;
        """, (attempt_id, kind, ts, _adapt("meta", meta)))

    def get_proctor_events(self, attempt_id: str) -> List[Dict[str, Any]]:
        return self._all("""
            SELECT * FROM public.proctor_events WHERE attempt_id = %s ORDER BY ts ASC, id ASC;
        """, (attempt_id,))

    # ---- AI suggestions ------------------------------------------------------
    def get_suggestion(self, suggestion_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM public.ai_grading_suggestions WHERE id = %s;", (suggestion_id,))

    def get_suggestion_for_answer(self, answer_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM public.ai_grading_suggestions WHERE answer_id = %s;", (answer_id,))

    def save_suggestion(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """One suggestion per answer: a new request replaces the previous one."""
        _checked(row, _SUGGESTION_COLS)
        cols = list(row)
        keep = {"id", "answer_id", "test_id", "attempt_id", "updated_at"}
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in cols if c not in keep)
        return self._one(f"""
            INSERT INTO public.ai_grading_suggestions ({', '.join(cols)})
            VALUES ({', '.join(['%s'] * len(cols))})
            ON CONFLICT (answer_id) DO UPDATE SET {updates}, updated_at = now()
            RETURNING *;
        """, [_adapt(c, row[c]) for c in cols])

    def update_suggestion(self, suggestion_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._update("ai_grading_suggestions", suggestion_id, fields, _SUGGESTION_COLS)

    def list_suggestions(self, attempt_id: str) -> List[Dict[str, Any]]:
        return self._all("""
            SELECT * FROM public.ai_grading_suggestions
             WHERE attempt_id = %s
             ORDER BY created_at DESC;
        """, (attempt_id,))

    # ---- audit ---------------------------------------------------------------
    def insert_activity(self, user_id: Optional[int], a_type: str, payload: Dict[str, Any],
                        test_id: Optional[str] = None, attempt_id: Optional[str] = None) -> None:
        self._all("""
            INSERT INTO public.activity_log (user_id, test_id, attempt_id, a_type, payload)
            VALUES (%s, %s, %s, %s, %s);
        """, (user_id, test_id, attempt_id, a_type, _adapt("payload", payload)))
