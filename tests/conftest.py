import copy
import itertools
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg.errors import UniqueViolation


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


T0 = datetime(2026, 3, 7, 9, 0, tzinfo=timezone.utc)


class MemoryStore:
    """Dict-backed stand-in for store.Store. transaction() rolls back on error."""

    def __init__(self):
        self.data = {
            "tests": {}, "questions": {}, "options": {}, "memberships": {}, "tournaments": {},
            "registrations": [], "tournament_admins": [], "roster": [], "assignments": [],
            "attempts": {}, "answers": {}, "events": [], "suggestions": {}, "activity": [],
            "users": {},
        }
        self._seq = itertools.count(1)

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.data)
        try:
            yield self
        except BaseException:
            self.data = snapshot
            raise

    # ---- seeding -------------------------------------------------------------
    def add_member(self, user_id, club_id="club-1", role="MEMBER", team_id=None, email=None):
        mid = f"m-{user_id}-{club_id}"
        self.data["users"][user_id] = {"id": user_id, "email": email or f"user{user_id}@example.org",
                                      "full_name": f"User {user_id}"}
        self.data["memberships"][mid] = {"id": mid, "user_id": user_id, "club_id": club_id,
                                         "team_id": team_id, "role": role}
        return self.data["memberships"][mid]

    def add_test(self, **fields):
        row = {
            "id": f"t-{next(self._seq)}", "scope_kind": "CLUB", "club_id": "club-1",
            "tournament_id": None, "event_id": None, "name": "Anatomy Invitational",
            "status": "PUBLISHED", "start_at": None, "end_at": None, "allow_late_until": None,
            "duration_minutes": 50, "max_attempts": None, "score_release_mode": "FULL_TEST",
            "release_scores_at": None, "scores_released": False, "test_password_hash": None,
        }
        row.update(fields)
        self.data["tests"][row["id"]] = row
        return row

    def add_question(self, test_id, qtype, points=1, options=None, **fields):
        qid = f"q-{next(self._seq)}"
        row = {
            "id": qid, "test_id": test_id, "type": qtype, "prompt_md": fields.pop("prompt_md", "Q"),
            "explanation": None, "points": points, "q_order": self.next_question_order(test_id),
            "correct_numeric": None, "numeric_tolerance": None, "blank_answers": None,
            "blank_points": None, "frq_parts": None,
        }
        row.update(fields)
        self.data["questions"][qid] = row
        for i, (label, ok) in enumerate(options or []):
            oid = f"{qid}-o{i}"
            self.data["options"][oid] = {"id": oid, "question_id": qid, "label": label,
                                         "is_correct": ok, "o_order": i}
        return self._question(qid)

    def _question(self, qid):
        q = dict(self.data["questions"][qid])
        q["options"] = sorted((dict(o) for o in self.data["options"].values() if o["question_id"] == qid),
                              key=lambda o: o["o_order"])
        return q

    # ---- tests & questions ---------------------------------------------------
    def get_test(self, test_id):
        row = self.data["tests"].get(test_id)
        return dict(row) if row else None

    def insert_test(self, row):
        full = {"scores_released": False, "test_password_hash": None, "start_at": None,
                "end_at": None, "allow_late_until": None, "release_scores_at": None}
        full.update(row)
        self.data["tests"][row["id"]] = full
        return dict(full)

    def update_test(self, test_id, fields):
        self.data["tests"][test_id].update(fields)
        return dict(self.data["tests"][test_id])

    def get_questions(self, test_id):
        qs = sorted((q for q in self.data["questions"].values() if q["test_id"] == test_id),
                    key=lambda q: q["q_order"])
        return [self._question(q["id"]) for q in qs]

    def count_questions(self, test_id):
        return len([q for q in self.data["questions"].values() if q["test_id"] == test_id])

    def next_question_order(self, test_id):
        orders = [q["q_order"] for q in self.data["questions"].values() if q["test_id"] == test_id]
        return max(orders, default=0) + 1

    def insert_question(self, row):
        full = {"explanation": None, "correct_numeric": None, "numeric_tolerance": None,
                "blank_answers": None, "blank_points": None, "frq_parts": None}
        full.update(row)
        self.data["questions"][row["id"]] = full
        return dict(full)

    def insert_option(self, row):
        self.data["options"][row["id"]] = dict(row)
        return dict(row)

    # ---- access lookups ------------------------------------------------------
    def get_user_memberships(self, user_id):
        return [dict(m) for m in self.data["memberships"].values() if m["user_id"] == user_id]

    def get_tournament(self, tournament_id):
        row = self.data["tournaments"].get(tournament_id)
        return dict(row) if row else None

    def find_confirmed_registration(self, tournament_id, club_ids, team_ids):
        regs = [r for r in self.data["registrations"]
                if r["tournament_id"] == tournament_id and r.get("status") == "CONFIRMED"
                and (r.get("team_id") in team_ids or r.get("club_id") in club_ids)]
        regs.sort(key=lambda r: r.get("team_id") is None)
        return dict(regs[0]) if regs else None

    def is_tournament_admin(self, tournament_id, user_id):
        return (tournament_id, user_id) in self.data["tournament_admins"]

    def has_roster_assignment(self, membership_id, event_id):
        return (membership_id, event_id) in self.data["roster"]

    def get_test_assignments(self, test_id):
        return [dict(a) for a in self.data["assignments"] if a["test_id"] == test_id]

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, attempt_id, for_update=False):
        row = self.data["attempts"].get(attempt_id)
        return dict(row) if row else None

    def _attempts_for(self, membership_id, test_id, statuses):
        return [a for a in self.data["attempts"].values()
                if a["membership_id"] == membership_id and a["test_id"] == test_id
                and a["status"] in statuses]

    def find_active_attempt(self, membership_id, test_id):
        rows = self._attempts_for(membership_id, test_id, ("NOT_STARTED", "IN_PROGRESS"))
        return dict(rows[0]) if rows else None

    def count_terminal_attempts(self, membership_id, test_id):
        return len(self._attempts_for(membership_id, test_id, ("SUBMITTED", "GRADED")))

    def latest_terminal_attempt(self, membership_id, test_id):
        rows = self._attempts_for(membership_id, test_id, ("SUBMITTED", "GRADED"))
        rows.sort(key=lambda a: (a["submitted_at"], a["created_seq"]), reverse=True)
        return dict(rows[0]) if rows else None

    def insert_attempt(self, row):
        if self._attempts_for(row["membership_id"], row["test_id"], ("NOT_STARTED", "IN_PROGRESS")):
            raise UniqueViolation('duplicate key value violates unique constraint "attempts_one_active"')
        full = {"submitted_at": None, "grade_earned": None, "proctoring_score": None,
                "tab_switch_count": 0, "time_off_page_seconds": 0, "ip_at_submit": None,
                "user_agent_at_submit": None, "created_seq": next(self._seq)}
        full.update(row)
        self.data["attempts"][row["id"]] = full
        return dict(full)

    def update_attempt(self, attempt_id, fields):
        self.data["attempts"][attempt_id].update(fields)
        return dict(self.data["attempts"][attempt_id])

    def list_attempts(self, test_id):
        out = []
        for a in self.data["attempts"].values():
            if a["test_id"] != test_id:
                continue
            m = self.data["memberships"].get(a["membership_id"]) or {}
            u = self.data["users"].get(m.get("user_id")) or {}
            out.append(dict(a, member_user_id=m.get("user_id"), team_id=m.get("team_id"),
                            user_email=u.get("email"), full_name=u.get("full_name")))
        return out

    # ---- answers -------------------------------------------------------------
    def get_answers(self, attempt_id):
        return [dict(a) for a in self.data["answers"].values() if a["attempt_id"] == attempt_id]

    def get_answer(self, answer_id):
        row = self.data["answers"].get(answer_id)
        return dict(row) if row else None

    def upsert_answer(self, answer_id, attempt_id, question_id, fields):
        for row in self.data["answers"].values():
            if row["attempt_id"] == attempt_id and row["question_id"] == question_id:
                row.update(fields)
                return dict(row)
        row = {"id": answer_id, "attempt_id": attempt_id, "question_id": question_id,
               "selected_option_ids": None, "numeric_answer": None, "answer_text": None,
               "answer_parts": None, "marked_for_review": False, "points_awarded": None,
               "part_points": None, "graded_at": None, "grader_note": None}
        row.update(fields)
        self.data["answers"][answer_id] = row
        return dict(row)

    def update_answer(self, answer_id, fields):
        self.data["answers"][answer_id].update(fields)
        return dict(self.data["answers"][answer_id])

    # ---- proctoring ----------------------------------------------------------
    def insert_proctor_event(self, attempt_id, kind, ts, meta=None):
        row = {"id": next(self._seq), "attempt_id": attempt_id, "kind": kind, "ts": ts, "meta": meta}
        self.data["events"].append(row)
        return dict(row)

    def get_proctor_events(self, attempt_id):
        rows = [dict(e) for e in self.data["events"] if e["attempt_id"] == attempt_id]
        return sorted(rows, key=lambda e: (e["ts"], e["id"]))

    # ---- AI suggestions ------------------------------------------------------
    def get_suggestion(self, suggestion_id):
        row = self.data["suggestions"].get(suggestion_id)
        return dict(row) if row else None

    def get_suggestion_for_answer(self, answer_id):
        for row in self.data["suggestions"].values():
            if row["answer_id"] == answer_id:
                return dict(row)
        return None

    def save_suggestion(self, row):
        existing = self.get_suggestion_for_answer(row["answer_id"])
        if existing:
            stored = self.data["suggestions"][existing["id"]]
            stored.update({k: v for k, v in row.items() if k not in ("id", "answer_id", "test_id", "attempt_id")})
            return dict(stored)
        full = dict(row, created_seq=next(self._seq))
        self.data["suggestions"][row["id"]] = full
        return dict(full)

    def update_suggestion(self, suggestion_id, fields):
        self.data["suggestions"][suggestion_id].update(fields)
        return dict(self.data["suggestions"][suggestion_id])

    def list_suggestions(self, attempt_id):
        rows = [dict(s) for s in self.data["suggestions"].values() if s["attempt_id"] == attempt_id]
        return sorted(rows, key=lambda s: s["created_seq"], reverse=True)

    # ---- audit ---------------------------------------------------------------
    def insert_activity(self, user_id, a_type, payload, test_id=None, attempt_id=None):
        self.data["activity"].append({"user_id": user_id, "a_type": a_type, "payload": payload,
                                      "test_id": test_id, "attempt_id": attempt_id})


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def audit_log():
    return []


@pytest.fixture
def deps(store, clock, audit_log):
    def log_activity(user_id, a_type, payload=None, test_id=None, attempt_id=None):
        audit_log.append({"user_id": user_id, "a_type": a_type, "payload": payload,
                          "test_id": test_id, "attempt_id": attempt_id})

    return {"transaction": store.transaction, "log_activity": log_activity, "now": clock}


@pytest.fixture
def student(store):
    store.add_member(7, role="MEMBER")
    return {"user_id": 7, "email": "user7@example.org"}


@pytest.fixture
def coach(store):
    store.add_member(1, role="ADMIN")
    return {"user_id": 1, "email": "user1@example.org"}
