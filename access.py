# access.py
# -----------------------------------------------------------------------------
# One authorization capability for every engine operation.
#   auth = Authorizer(store)
#   ctx  = auth.require(actor, "take", test)   -> {"membership", "is_admin"}
#   auth.can(actor, "administer", test)        -> bool
# Only the scope lookup branches on CLUB vs TOURNAMENT; everything else is
# scope-agnostic.
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Optional

from werkzeug.security import check_password_hash

from errors import EngineError, NotFound, PolicyViolation, Unauthenticated, Unauthorized

ACTIONS = ("take", "view_results", "administer")


def actor_user_id(actor: Optional[Dict[str, Any]]) -> int:
    if not actor or not actor.get("user_id"):
        raise Unauthenticated("Sign in required")
    return actor["user_id"]


def check_test_password(test: Dict[str, Any], password: Optional[str]) -> None:
    """Raises NEED_TEST_PASSWORD (401) when a configured password is missing or wrong."""
    pw_hash = test.get("test_password_hash")
    if not pw_hash:
        return
    if not password:
        raise PolicyViolation("This test requires a password", "NEED_TEST_PASSWORD", status=401)
    if not check_password_hash(pw_hash, password):
        raise PolicyViolation("Incorrect test password", "NEED_TEST_PASSWORD", status=401)


class Authorizer:
    def __init__(self, store):
        self.store = store

    # ---- scope resolution ----------------------------------------------------
    def _club_scope(self, user_id: int, test: Dict[str, Any]) -> Dict[str, Any]:
        memberships = self.store.get_user_memberships(user_id)
        membership = next((m for m in memberships if m.get("club_id") == test.get("club_id")), None)
        if not membership:
            raise Unauthorized("Not a member of this club")
        return {"membership": membership, "is_admin": (membership.get("role") == "ADMIN")}

    def _tournament_scope(self, user_id: int, test: Dict[str, Any]) -> Dict[str, Any]:
        tid = test.get("tournament_id")
        is_admin = self.store.is_tournament_admin(tid, user_id)
        memberships = self.store.get_user_memberships(user_id)
        club_ids = [m["club_id"] for m in memberships]
        team_ids = [m["team_id"] for m in memberships if m.get("team_id")]
        reg = self.store.find_confirmed_registration(tid, club_ids, team_ids) if memberships else None
        if not reg and not is_admin:
            # Tests outside one's tournament must not reveal that they exist
            raise NotFound("Test not found")
        membership = None
        if reg:
            if reg.get("team_id"):
                membership = next((m for m in memberships
                                   if m["club_id"] == reg["club_id"] and m.get("team_id") == reg["team_id"]), None)
            else:
                membership = next((m for m in memberships if m["club_id"] == reg["club_id"]), None)
        return {"membership": membership, "is_admin": is_admin}

    def resolve(self, actor: Optional[Dict[str, Any]], test: Dict[str, Any]) -> Dict[str, Any]:
        user_id = actor_user_id(actor)
        if test.get("scope_kind") == "TOURNAMENT":
            return self._tournament_scope(user_id, test)
        return self._club_scope(user_id, test)

    # ---- assignment ----------------------------------------------------------
    def _assignment_matches(self, a: Dict[str, Any], membership: Dict[str, Any]) -> bool:
        kind = a.get("assigned_scope")
        if kind == "CLUB":
            return True
        if kind == "TEAM":
            return bool(a.get("team_id")) and a.get("team_id") == membership.get("team_id")
        if kind == "PERSONAL":
            return a.get("target_membership_id") == membership.get("id")
        if kind == "EVENT":
            return bool(a.get("event_id")) and self.store.has_roster_assignment(membership["id"], a["event_id"])
        return False

    def _check_assigned(self, test: Dict[str, Any], membership: Dict[str, Any]) -> None:
        if test.get("event_id") and not self.store.has_roster_assignment(membership["id"], test["event_id"]):
            raise Unauthorized("Not assigned to this event", "NOT_ASSIGNED")
        assignments: List[Dict[str, Any]] = self.store.get_test_assignments(test["id"])
        if assignments and not any(self._assignment_matches(a, membership) for a in assignments):
            raise Unauthorized("This test is not assigned to you", "NOT_ASSIGNED")

    # ---- capability ----------------------------------------------------------
    def require(self, actor: Optional[Dict[str, Any]], action: str, test: Dict[str, Any]) -> Dict[str, Any]:
        if action not in ACTIONS:
            raise ValueError(f"unknown action: {action}")
        ctx = self.resolve(actor, test)
        if action == "administer":
            if not ctx["is_admin"]:
                raise Unauthorized("Only admins can do this")
            return ctx
        if not ctx["membership"]:
            raise Unauthorized("No membership for this test")
        if action == "take" and not ctx["is_admin"]:
            self._check_assigned(test, ctx["membership"])
        return ctx

    def can(self, actor: Optional[Dict[str, Any]], action: str, test: Dict[str, Any]) -> bool:
        try:
            self.require(actor, action, test)
        except EngineError:
            return False
        return True
